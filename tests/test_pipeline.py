"""
Test cases for the differential expression and enrichment pipeline.
"""

import json
import logging

import numpy as np
import polars as pl
import pytest
from tomli_w import dump as tomli_w_dump

from degsea.config import AnalysisSettings
from degsea.data import CountMatrix, GeneSet, SampleMetadata
from degsea.exceptions import ConfigurationError, DegenerateInputError
from degsea.pipeline import DifferentialEnrichmentPipeline, run_analysis

SAMPLES = ('ctrl_1', 'ctrl_2', 'ctrl_3', 'treat_1', 'treat_2', 'treat_3')
N_UP = 20


def _simulate_counts(n_genes=200, seed=7):
    """Negative binomial counts where the first N_UP genes are fourfold up in treated samples."""
    rng = np.random.default_rng(seed)
    dispersion = 0.05
    base = rng.uniform(50, 500, size=n_genes)
    depth = np.array([1.0, 1.2, 0.8, 1.1, 0.9, 1.0])
    mu = base[:, None] * depth[None, :]
    mu[:N_UP, 3:] *= 4.0
    values = rng.negative_binomial(1.0 / dispersion, 1.0 / (1.0 + mu * dispersion))

    gene_ids = [f"gene{i:03d}" for i in range(n_genes)] + ['gene_silent', 'gene_single']
    values = np.vstack([values, [0, 0, 0, 0, 0, 0], [0, 1, 0, 0, 0, 0]])
    return CountMatrix(tuple(gene_ids), SAMPLES, values)


def _gene_sets(counts, seed=3):
    rng = np.random.default_rng(seed)
    background = [g for g in counts.gene_ids[N_UP:200]]
    gene_sets = [GeneSet('UP_SET', counts.gene_ids[:N_UP], 'fourfold up in treated samples')]
    for i in range(5):
        gene_sets.append(GeneSet(f"RANDOM_{i}", rng.choice(background, 20, replace=False)))
    return gene_sets


@pytest.fixture
def counts():
    return _simulate_counts()


@pytest.fixture
def metadata():
    return SampleMetadata({s: s.split('_')[0] for s in SAMPLES})


@pytest.fixture
def settings():
    return AnalysisSettings(permutation_count=200)


@pytest.fixture
def input_files(tmp_path, counts):
    """Write counts, sample sheet, gene sets and identifier mapping to disk."""
    counts_file = tmp_path / 'counts.tsv'
    counts.to_polars().write_csv(counts_file, separator='\t')

    sample_sheet = tmp_path / 'samples.tsv'
    pl.DataFrame({
        'sample_id': list(SAMPLES),
        'condition': [s.split('_')[0] for s in SAMPLES],
    }).write_csv(sample_sheet, separator='\t')

    # Gene sets use symbols that the mapping translates to count table ids
    gene_sets_file = tmp_path / 'sets.gmt'
    with open(gene_sets_file, 'w') as f:
        for gene_set in _gene_sets(counts):
            symbols = [g.replace('gene', 'SYM') for g in sorted(gene_set.genes)]
            f.write('\t'.join([gene_set.name, 'na'] + symbols + ['UNKNOWN1']) + '\n')

    mapping_file = tmp_path / 'mapping.tsv'
    pl.DataFrame({
        'source': [g.replace('gene', 'SYM') for g in counts.gene_ids],
        'target': list(counts.gene_ids),
    }).write_csv(mapping_file, separator='\t')

    return {
        'counts_file': counts_file,
        'sample_sheet': sample_sheet,
        'gene_sets_file': gene_sets_file,
        'id_mapping_file': mapping_file,
    }


@pytest.fixture
def config_file(tmp_path, input_files):
    config = {
        'input': {key: str(path) for key, path in input_files.items()},
        'output': {
            'directory': str(tmp_path / 'results'),
            'save_intermediate': True
        },
        'analysis': {
            'group_a': 'ctrl',
            'group_b': 'treat',
            'num_threads': 1
        },
        'enrichment': {
            'min_size': 10,
            'permutation_count': 200,
            'random_seed': 42
        }
    }
    config_path = tmp_path / 'config.toml'
    with open(config_path, 'wb') as f:
        tomli_w_dump(config, f)
    return config_path


def test_run_analysis(counts, metadata, settings):
    """Full run from counts to enrichment."""
    result = run_analysis(
        counts, metadata, _gene_sets(counts), 'ctrl', 'treat', seed=42, settings=settings
    )

    # Genes with total count <= 1 never reach the statistics
    assert 'gene_silent' not in result.counts.gene_ids
    assert 'gene_single' not in result.counts.gene_ids
    assert result.de_result.table.height == 200
    assert result.size_factors.sample_ids == SAMPLES

    de_table = result.de_result.table
    up = de_table.filter(pl.col('gene_id').is_in(list(counts.gene_ids[:N_UP])))
    assert up['log2_fold_change'].mean() == pytest.approx(2.0, abs=0.3)
    assert up['significant'].sum() >= N_UP - 2

    assert len(set(result.ranked.gene_ids[:N_UP]) & set(counts.gene_ids[:N_UP])) >= N_UP - 3

    up_set = result.enrichment.get('UP_SET')
    assert up_set['enrichment_score'] > 0.8
    assert up_set['normalized_enrichment_score'] > 0
    assert up_set['p_value'] < 0.05
    assert up_set['status'] == 'ok'
    assert result.enrichment.permutation_num == 200


def test_run_analysis_is_deterministic(counts, metadata, settings):
    """Two runs with the same inputs and seed give identical tables."""
    gene_sets = _gene_sets(counts)
    first = run_analysis(counts, metadata, gene_sets, 'ctrl', 'treat', seed=42, settings=settings)
    second = run_analysis(counts, metadata, gene_sets, 'ctrl', 'treat', seed=42, settings=settings)

    assert first.de_result.table.equals(second.de_result.table)
    assert first.enrichment.table.equals(second.enrichment.table)
    np.testing.assert_array_equal(first.dispersion.final, second.dispersion.final)


def test_run_analysis_without_gene_sets(counts, metadata):
    result = run_analysis(counts, metadata, None, 'ctrl', 'treat')
    assert result.enrichment is None
    assert len(result.ranked) == 200
    assert result.dispersion.residual_df == 4


def test_run_analysis_dispersion_across_all_samples(counts, metadata):
    """Without pooling, the fourfold genes inflate their own dispersion."""
    pooled = run_analysis(counts, metadata, None, 'ctrl', 'treat')
    across = run_analysis(
        counts, metadata, None, 'ctrl', 'treat',
        settings=AnalysisSettings(pool_dispersion_within_groups=False)
    )

    assert across.dispersion.residual_df == 5
    assert np.median(across.dispersion.final[:N_UP]) > np.median(pooled.dispersion.final[:N_UP])


def test_run_analysis_requires_seed(counts, metadata, settings):
    with pytest.raises(ConfigurationError, match="random seed"):
        run_analysis(counts, metadata, _gene_sets(counts), 'ctrl', 'treat', settings=settings)


def test_run_analysis_insufficient_replicates(counts):
    labels = {s: 'ctrl' for s in SAMPLES}
    labels['treat_3'] = 'treat'
    with pytest.raises(DegenerateInputError, match="replicates") as exc_info:
        run_analysis(counts, SampleMetadata(labels), None, 'ctrl', 'treat')
    assert exc_info.value.details['group'] == 'treat'


def test_pipeline_initialization(config_file):
    """Inputs are loaded and gene set identifiers mapped on construction."""
    pipeline = DifferentialEnrichmentPipeline(str(config_file))

    assert pipeline.counts.n_samples == 6
    assert pipeline.config.group_a == 'ctrl'
    assert pipeline.result is None
    assert [gs.name for gs in pipeline.gene_sets][0] == 'UP_SET'
    assert pipeline.mapping_report.n_unmatched == 6
    assert 'gene000' in pipeline.gene_sets[0].genes


def test_pipeline_missing_input_file(tmp_path, config_file, input_files):
    input_files['counts_file'].unlink()
    with pytest.raises(FileNotFoundError, match="counts_file"):
        DifferentialEnrichmentPipeline(str(config_file))


def test_pipeline_run_saves_results(tmp_path, config_file):
    pipeline = DifferentialEnrichmentPipeline(str(config_file))
    result = pipeline.run()

    assert result is pipeline.result
    data_dir = tmp_path / 'results' / 'data'
    for name in ('de_results.csv', 'enrichment_results.csv', 'size_factors.csv',
                 'analysis_summary.json', 'pipeline_config.json'):
        assert (data_dir / name).exists()

    de_table = pl.read_csv(data_dir / 'de_results.csv')
    assert de_table.height == 200
    assert 'adjusted_p_value' in de_table.columns

    enrichment = pl.read_csv(data_dir / 'enrichment_results.csv')
    up_row = enrichment.filter(pl.col('set_name') == 'UP_SET').row(0, named=True)
    assert ';' in up_row['leading_edge']

    with open(data_dir / 'analysis_summary.json') as f:
        summary = json.load(f)
    assert summary['group_b'] == 'treat'
    assert summary['genes_after_filter'] == 200
    assert summary['random_seed'] == 42
    assert summary['identifier_mapping']['unmatched_identifiers'] == 6
    unmatched_by_set = summary['identifier_mapping']['unmatched_by_set']
    assert sorted(unmatched_by_set) == ['RANDOM_0', 'RANDOM_1', 'RANDOM_2', 'RANDOM_3', 'RANDOM_4', 'UP_SET']
    assert unmatched_by_set['UP_SET'] == ['UNKNOWN1']
    assert summary['dispersion_pooled_within_groups'] is True
    assert summary['settings']['permutation_count'] == 200

    intermediate = tmp_path / 'results' / 'intermediate'
    assert (intermediate / 'dispersion.csv').exists()
    assert (intermediate / 'normalized_counts.csv').exists()


def test_pipeline_without_enrichment(tmp_path, input_files):
    config = {
        'input': {
            'counts_file': str(input_files['counts_file']),
            'sample_sheet': str(input_files['sample_sheet']),
        },
        'output': {'directory': str(tmp_path / 'plain')},
        'analysis': {'group_a': 'ctrl', 'group_b': 'treat'},
    }
    config_path = tmp_path / 'plain.toml'
    with open(config_path, 'wb') as f:
        tomli_w_dump(config, f)

    pipeline = DifferentialEnrichmentPipeline(str(config_path))
    result = pipeline.run()

    assert result.enrichment is None
    assert (tmp_path / 'plain' / 'data' / 'de_results.csv').exists()
    assert not (tmp_path / 'plain' / 'data' / 'enrichment_results.csv').exists()
    assert not (tmp_path / 'plain' / 'intermediate').exists()


def test_save_results_before_run(tmp_path, config_file, caplog):
    pipeline = DifferentialEnrichmentPipeline(str(config_file))
    with caplog.at_level(logging.WARNING):
        pipeline.save_results(str(tmp_path / 'early'))
    assert "No results to save" in caplog.text
    assert not (tmp_path / 'early').exists()
