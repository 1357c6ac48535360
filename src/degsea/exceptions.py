"""
Exceptions and warnings raised by the differential expression and
enrichment stages.

Fatal problems (structural input errors, bad parameters, gene sets that
share no identifiers with the ranking) raise a ``DegseaError`` subclass.
Per-gene and per-set problems never abort a run: the affected rows are
marked in the result table and summarised once through a ``DegseaWarning``.
"""

from typing import Any, Dict, Optional


class DegseaError(Exception):
    """Base exception for all degsea errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        return self.message


class DegenerateInputError(DegseaError, ValueError):
    """
    Raised when the count matrix or sample metadata cannot support the analysis.

    Covers non-rectangular or negative counts, genes with zero counts in
    every sample, unlabelled samples and groups with too few replicates.
    ``details`` names the offending gene or sample identifiers.
    """

    pass


class IdentifierMismatchError(DegseaError, ValueError):
    """Raised when no gene set shares any identifier with the ranked list."""

    pass


class ConfigurationError(DegseaError, ValueError):
    """Raised for invalid configuration files or analysis parameters."""

    pass


class DegseaWarning(UserWarning):
    """Base class for non-fatal degsea warnings."""

    pass


class UntestableGeneWarning(DegseaWarning):
    """Genes with zero mean in both groups were reported as untestable."""

    pass


class GeneSetSizeOutOfRangeWarning(DegseaWarning):
    """Gene sets outside the configured size bounds were skipped."""

    pass
