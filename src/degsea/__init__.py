"""
Differential Expression and Gene Set Enrichment
===============================================

A Python package for two-group differential expression of RNA-seq counts
followed by pre-ranked gene set enrichment analysis.
"""

from .config import AnalysisSettings, PipelineConfig
from .data import (
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
from .enrichment import (
    EnrichmentResult,
    enrichment_score,
    run_enrichment,
    running_enrichment_sum,
)
from .exceptions import (
    ConfigurationError,
    DegenerateInputError,
    DegseaError,
    DegseaWarning,
    GeneSetSizeOutOfRangeWarning,
    IdentifierMismatchError,
    UntestableGeneWarning,
)
from .pipeline import AnalysisResult, DifferentialEnrichmentPipeline, run_analysis
from .stats import (
    SCHEMA_VERSION,
    DETestResult,
    GeneDispersion,
    NormalizedCounts,
    RankedGeneList,
    SizeFactors,
    adjust_p_values,
    compute_size_factors,
    differential_expression,
    estimate_dispersion,
    normalize_counts,
    rank_genes,
)
from .utils import ensure_dir, setup_logging

__version__ = "0.1.0"

__all__ = [
    "AnalysisResult",
    "AnalysisSettings",
    "ConfigurationError",
    "CountMatrix",
    "DETestResult",
    "DegenerateInputError",
    "DegseaError",
    "DegseaWarning",
    "DifferentialEnrichmentPipeline",
    "EnrichmentResult",
    "GeneDispersion",
    "GeneSet",
    "GeneSetSizeOutOfRangeWarning",
    "IdentifierMismatchError",
    "MappingReport",
    "NormalizedCounts",
    "PipelineConfig",
    "RankedGeneList",
    "SCHEMA_VERSION",
    "SampleMetadata",
    "SizeFactors",
    "UntestableGeneWarning",
    "adjust_p_values",
    "compute_size_factors",
    "differential_expression",
    "enrichment_score",
    "ensure_dir",
    "estimate_dispersion",
    "filter_low_counts",
    "load_counts",
    "load_gene_sets",
    "load_id_mapping",
    "load_sample_sheet",
    "map_gene_set_identifiers",
    "normalize_counts",
    "rank_genes",
    "run_analysis",
    "run_enrichment",
    "running_enrichment_sum",
    "setup_logging",
]
