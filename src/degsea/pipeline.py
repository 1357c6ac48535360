"""Main pipeline implementation for differential expression and gene set enrichment."""

import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence

import numpy as np
import polars as pl

from degsea.config import AnalysisSettings, PipelineConfig
from degsea.data import (
    CountMatrix,
    GeneSet,
    MappingReport,
    SampleMetadata,
    filter_low_counts,
    load_counts,
    load_gene_sets,
    load_id_mapping,
    load_sample_sheet,
    map_gene_set_identifiers,
)
from degsea.enrichment import EnrichmentResult, run_enrichment
from degsea.stats import (
    DETestResult,
    GeneDispersion,
    NormalizedCounts,
    RankedGeneList,
    SizeFactors,
    compute_size_factors,
    differential_expression,
    estimate_dispersion,
    normalize_counts,
    rank_genes,
)
from degsea.utils import ensure_dir

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class AnalysisResult:
    """Outputs of every stage of one analysis run."""

    counts: CountMatrix
    size_factors: SizeFactors
    normalized: NormalizedCounts
    dispersion: GeneDispersion
    de_result: DETestResult
    ranked: RankedGeneList
    enrichment: Optional[EnrichmentResult]
    settings: AnalysisSettings


def run_analysis(
    counts: CountMatrix,
    metadata: SampleMetadata,
    gene_sets: Optional[Iterable[GeneSet]],
    group_a: str,
    group_b: str,
    *,
    seed: Optional[int] = None,
    settings: AnalysisSettings = AnalysisSettings(),
    show_progress: bool = False
) -> AnalysisResult:
    """
    Run every stage from raw counts to gene set enrichment.

    Args:
        counts: Raw count matrix
        metadata: Sample labels
        gene_sets: Gene sets to test, or None to stop after ranking
        group_a: Reference group
        group_b: Comparison group
        seed: Permutation seed, required when ``gene_sets`` is given
        settings: Analysis parameters
        show_progress: Display a progress bar during permutation testing

    Returns:
        AnalysisResult holding each stage's output
    """
    metadata.validate(counts.sample_ids, group_a, group_b, settings.min_replicates_per_group)

    logger.info("Step 1: Filtering low-count genes")
    filtered = filter_low_counts(counts, settings.low_count_filter_threshold)

    logger.info("Step 2: Estimating size factors")
    size_factors = compute_size_factors(filtered)
    normalized = normalize_counts(filtered, size_factors)

    logger.info("Step 3: Estimating dispersions")
    dispersion = estimate_dispersion(
        normalized,
        groups=(
            [metadata.labels[s] for s in filtered.sample_ids]
            if settings.pool_dispersion_within_groups else None
        ),
        fit_type=settings.dispersion_fit_type,
        outlier_sd=settings.outlier_sd
    )

    logger.info(f"Step 4: Testing {group_b} against {group_a}")
    de_result = differential_expression(
        normalized,
        dispersion,
        metadata,
        group_a,
        group_b,
        min_replicates=settings.min_replicates_per_group,
        fdr_method=settings.fdr_method,
        alpha=settings.fdr_alpha
    )
    ranked = rank_genes(de_result)

    enrichment = None
    if gene_sets is not None:
        logger.info("Step 5: Gene set enrichment")
        enrichment = run_enrichment(
            ranked,
            gene_sets,
            seed=seed,
            min_size=settings.enrichment_min_size,
            max_size=settings.enrichment_max_size,
            permutation_num=settings.permutation_count,
            weight=settings.enrichment_weight,
            fdr_method=settings.fdr_method,
            alpha=settings.fdr_alpha,
            num_threads=settings.num_threads,
            show_progress=show_progress
        )

    return AnalysisResult(
        counts=filtered,
        size_factors=size_factors,
        normalized=normalized,
        dispersion=dispersion,
        de_result=de_result,
        ranked=ranked,
        enrichment=enrichment,
        settings=settings
    )


class DifferentialEnrichmentPipeline:
    """Config-driven runner for differential expression and gene set enrichment."""

    def __init__(self, config_path: str):
        """Initialise the pipeline with a configuration file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config = PipelineConfig(config_path)
        self.logger = logging.getLogger(__name__)
        self.result: Optional[AnalysisResult] = None
        self.mapping_report: Optional[MappingReport] = None
        self._load_input_data()

    def _load_input_data(self):
        """Load and validate input data files."""
        self.logger.debug("Starting to load input data files")

        for file_key, file_path in self.config.input_files.items():
            if not (file_key.endswith('_file') or file_key == 'sample_sheet'):
                continue
            if not Path(file_path).is_file():
                error_msg = f"Input file not found: {file_path} (specified as {file_key})"
                self.logger.error(error_msg)
                raise FileNotFoundError(error_msg)

        self.counts = load_counts(self.config.input_files['counts_file'])
        self.metadata = load_sample_sheet(
            self.config.input_files['sample_sheet'],
            sample_column=self.config.sample_column,
            group_column=self.config.group_column
        )

        self.gene_sets: Optional[Sequence[GeneSet]] = None
        if self.config.run_enrichment:
            self.gene_sets = load_gene_sets(self.config.input_files['gene_sets_file'])
            if 'id_mapping_file' in self.config.input_files:
                mapping = load_id_mapping(self.config.input_files['id_mapping_file'])
                self.gene_sets, self.mapping_report = map_gene_set_identifiers(self.gene_sets, mapping)
        else:
            self.logger.info("Gene set enrichment disabled or no gene sets configured")

        self.logger.info(
            f"Comparing '{self.config.group_b}' against '{self.config.group_a}' across "
            f"{self.counts.n_samples} samples"
        )
        self.logger.debug("Finished loading input data files")

    def run(self) -> AnalysisResult:
        """Run the pipeline and save its results."""
        self.logger.info("Starting differential expression and enrichment pipeline")
        start_time = time.time()

        self.result = run_analysis(
            self.counts,
            self.metadata,
            self.gene_sets,
            self.config.group_a,
            self.config.group_b,
            seed=self.config.random_seed,
            settings=self.config.analysis_settings(),
            show_progress=True
        )

        self.logger.info("Saving results")
        self.save_results()

        elapsed_time = time.time() - start_time
        self.logger.info(f"Pipeline completed in {elapsed_time:.2f} seconds")
        return self.result

    def save_results(self, output_dir: Optional[str] = None):
        """Save analysis results.

        Args:
            output_dir: Optional output directory path. If not provided,
                        uses the directory from the configuration.
        """
        if self.result is None:
            self.logger.warning("No results to save. Run the pipeline first.")
            return

        output_path = Path(output_dir) if output_dir else self.config.get_output_path()
        data_path = ensure_dir(output_path / 'data')
        result = self.result

        de_file = data_path / 'de_results.csv'
        result.de_result.table.write_csv(de_file)
        self.logger.info(f"Saved differential expression results to {de_file}")

        result.size_factors.to_polars().write_csv(data_path / 'size_factors.csv')

        if result.enrichment is not None:
            enrichment_file = data_path / 'enrichment_results.csv'
            result.enrichment.table.with_columns(
                pl.col('leading_edge').list.join(';')
            ).write_csv(enrichment_file)
            self.logger.info(f"Saved enrichment results to {enrichment_file}")

        de_table = result.de_result.table
        summary = {
            'group_a': result.de_result.group_a,
            'group_b': result.de_result.group_b,
            'schema_version': result.de_result.schema_version,
            'genes_after_filter': result.counts.n_genes,
            'genes_tested': de_table.filter(pl.col('status') == 'ok').height,
            'genes_untestable': de_table.filter(pl.col('status') == 'untestable').height,
            'genes_significant': de_table.filter(pl.col('significant').fill_null(False)).height,
            'size_factors': result.size_factors.to_dict(),
            'dispersion_fit_type': result.dispersion.fit_type,
            'dispersion_prior_variance': result.dispersion.prior_variance,
            'dispersion_prior_df': (
                result.dispersion.prior_df if np.isfinite(result.dispersion.prior_df) else None
            ),
            'dispersion_pooled_within_groups': result.settings.pool_dispersion_within_groups,
            'settings': asdict(result.settings),
        }
        if result.enrichment is not None:
            enrichment_table = result.enrichment.table
            summary.update({
                'random_seed': result.enrichment.seed,
                'gene_sets_scored': enrichment_table.filter(pl.col('status') != 'skipped').height,
                'gene_sets_skipped': enrichment_table.filter(pl.col('status') == 'skipped').height,
                'gene_sets_significant': enrichment_table.filter(
                    pl.col('significant').fill_null(False)).height,
            })
        if self.mapping_report is not None:
            summary['identifier_mapping'] = {
                'total_identifiers': self.mapping_report.total_identifiers,
                'mapped_identifiers': self.mapping_report.mapped_identifiers,
                'unmatched_identifiers': self.mapping_report.n_unmatched,
                'unmatched_by_set': {
                    name: list(ids) for name, ids in sorted(self.mapping_report.unmatched.items())
                },
            }

        summary_file = data_path / 'analysis_summary.json'
        with open(summary_file, 'w') as f:
            json.dump(summary, f, indent=2)
        self.logger.info(f"Saved summary to {summary_file}")

        config_file = data_path / 'pipeline_config.json'
        with open(config_file, 'w') as f:
            json.dump(self.config.config, f, indent=2, default=str)
        self.logger.info(f"Saved configuration to {config_file}")

        if self.config.output_config.get('save_intermediate', False):
            intermediate_path = ensure_dir(output_path / 'intermediate')
            result.dispersion.to_polars().write_csv(intermediate_path / 'dispersion.csv')
            result.normalized.to_polars().write_csv(intermediate_path / 'normalized_counts.csv')
            self.logger.info(f"Saved intermediate files to {intermediate_path}")
