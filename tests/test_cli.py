"""Tests for the command line interface."""

import logging

import numpy as np
import polars as pl
import pytest
from tomli_w import dump as tomli_w_dump

from degsea.cli import main, parse_args, update_config


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        if getattr(handler, '_degsea', False):
            root_logger.removeHandler(handler)
            handler.close()


@pytest.fixture
def base_config():
    return {
        'input': {'counts_file': 'counts.tsv', 'sample_sheet': 'samples.tsv'},
        'output': {'directory': 'results'},
        'analysis': {'group_a': 'ctrl', 'group_b': 'treat'},
    }


@pytest.fixture
def run_inputs(tmp_path):
    """Small count table and sample sheet on disk."""
    rng = np.random.default_rng(1)
    samples = ['c1', 'c2', 'c3', 't1', 't2', 't3']
    mu = rng.uniform(30, 300, size=(60, 1)) * np.ones((1, 6))
    mu[:5, 3:] *= 5
    values = rng.negative_binomial(20, 20 / (20 + mu))

    counts = pl.DataFrame({'gene_id': [f"g{i:02d}" for i in range(60)]})
    counts = counts.with_columns([pl.Series(s, values[:, j]) for j, s in enumerate(samples)])
    counts_file = tmp_path / 'counts.tsv'
    counts.write_csv(counts_file, separator='\t')

    sample_sheet = tmp_path / 'samples.tsv'
    pl.DataFrame({
        'sample_id': samples,
        'condition': ['ctrl'] * 3 + ['treat'] * 3,
    }).write_csv(sample_sheet, separator='\t')

    gene_sets_file = tmp_path / 'sets.gmt'
    gene_sets_file.write_text(
        "FIRST_FIVE\tna\t" + "\t".join(f"g{i:02d}" for i in range(5)) + "\n"
        "LATER\tna\t" + "\t".join(f"g{i:02d}" for i in range(30, 40)) + "\n"
    )
    return counts_file, sample_sheet, gene_sets_file


def test_update_config_overrides(base_config):
    args = parse_args([
        'config.toml',
        '--counts', 'other.tsv',
        '--gene-sets', 'sets.gmt',
        '--output-dir', 'elsewhere',
        '--save-intermediate',
        '--group-b', 'knockout',
        '--num-threads', '4',
        '--permutations', '250',
        '--seed', '0',
        '--min-size', '5',
        '--max-size', '50',
    ])
    config = update_config(base_config, args)

    assert config['input']['counts_file'] == 'other.tsv'
    assert config['input']['gene_sets_file'] == 'sets.gmt'
    assert config['input']['sample_sheet'] == 'samples.tsv'
    assert config['output'] == {'directory': 'elsewhere', 'save_intermediate': True}
    assert config['analysis'] == {'group_a': 'ctrl', 'group_b': 'knockout', 'num_threads': 4}
    assert config['enrichment'] == {
        'permutation_count': 250,
        'random_seed': 0,
        'min_size': 5,
        'max_size': 50,
    }


def test_update_config_no_enrichment(base_config):
    config = update_config(base_config, parse_args(['config.toml', '--no-enrichment']))
    assert config['enrichment']['run'] is False


def test_main_unreadable_config(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc_info:
        main([str(tmp_path / 'absent.toml')])
    assert exc_info.value.code == 1
    assert "Error loading configuration file" in capsys.readouterr().out


def test_main_runs_pipeline(tmp_path, base_config, run_inputs):
    counts_file, sample_sheet, gene_sets_file = run_inputs
    config_path = tmp_path / 'config.toml'
    with open(config_path, 'wb') as f:
        tomli_w_dump(base_config, f)

    out_dir = tmp_path / 'out'
    main([
        str(config_path),
        '--counts', str(counts_file),
        '--sample-sheet', str(sample_sheet),
        '--gene-sets', str(gene_sets_file),
        '--output-dir', str(out_dir),
        '--permutations', '100',
        '--seed', '11',
        '--min-size', '5',
    ])

    assert (out_dir / 'logs' / 'pipeline.log').exists()
    assert (out_dir / 'data' / 'de_results.csv').exists()
    enrichment = pl.read_csv(out_dir / 'data' / 'enrichment_results.csv')
    assert enrichment['set_name'].to_list() == ['FIRST_FIVE', 'LATER']
    assert not (tmp_path / 'temp_config.toml').exists()


def test_main_exits_on_pipeline_failure(tmp_path, base_config, run_inputs):
    counts_file, sample_sheet, _ = run_inputs
    base_config['input'] = {'counts_file': str(counts_file), 'sample_sheet': str(sample_sheet)}
    base_config['analysis']['group_b'] = 'missing_group'
    config_path = tmp_path / 'config.toml'
    with open(config_path, 'wb') as f:
        tomli_w_dump(base_config, f)

    with pytest.raises(SystemExit) as exc_info:
        main([str(config_path), '--output-dir', str(tmp_path / 'out')])
    assert exc_info.value.code == 1
    assert not (tmp_path / 'temp_config.toml').exists()
