"""
Statistical core of the differential expression pipeline: size factor
normalisation, dispersion estimation, the dispersion-aware Wald test,
multiple testing correction and gene ranking.
"""

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
import logging
import warnings

import numba as nb
import numpy as np
import polars as pl
import statsmodels.api as sm
from scipy import special, stats
from statsmodels.stats.multitest import multipletests
from statsmodels.tools.sm_exceptions import DomainWarning

from degsea.data import CountMatrix, SampleMetadata, _preview, _read_only
from degsea.exceptions import ConfigurationError, DegenerateInputError, UntestableGeneWarning

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

FDR_METHODS = ('fdr_bh', 'fdr_by')
DISPERSION_FIT_TYPES = ('parametric', 'local', 'mean')

DE_RESULT_SCHEMA = {
    'gene_id': pl.Utf8,
    'base_mean': pl.Float64,
    'mean_a': pl.Float64,
    'mean_b': pl.Float64,
    'log2_fold_change': pl.Float64,
    'lfc_se': pl.Float64,
    'test_statistic': pl.Float64,
    'p_value': pl.Float64,
    'adjusted_p_value': pl.Float64,
    'dispersion': pl.Float64,
    'significant': pl.Boolean,
    'status': pl.Utf8,
}


#  Numba kernels

@nb.njit(parallel=True)
def _pooled_variance(values, group_index, n_groups):
    """
    Per-gene variance pooled within groups.

    Args:
        values: Normalised counts (n_genes, n_samples)
        group_index: Group index of each sample
        n_groups: Number of distinct groups

    Returns:
        Array of pooled variances with n_samples - n_groups degrees of freedom
    """
    n_genes, n_samples = values.shape
    dof = n_samples - n_groups
    out = np.zeros(n_genes)

    for i in nb.prange(n_genes):
        sums = np.zeros(n_groups)
        sizes = np.zeros(n_groups)
        for j in range(n_samples):
            g = group_index[j]
            sums[g] += values[i, j]
            sizes[g] += 1.0
        sq_diff = 0.0
        for j in range(n_samples):
            g = group_index[j]
            diff = values[i, j] - sums[g] / sizes[g]
            sq_diff += diff * diff
        out[i] = sq_diff / dof

    return out


#  Stage outputs

@dataclass(frozen=True, eq=False)
class SizeFactors:
    """One positive scale factor per sample."""

    sample_ids: Tuple[str, ...]
    values: np.ndarray

    def __post_init__(self):
        values = np.asarray(self.values, dtype=np.float64)
        if values.shape != (len(self.sample_ids),):
            raise DegenerateInputError(
                f"Expected {len(self.sample_ids)} size factors, got shape {values.shape}"
            )
        if not np.all(np.isfinite(values) & (values > 0)):
            raise DegenerateInputError(
                "Size factors must be positive and finite",
                {'values': values.tolist()}
            )
        object.__setattr__(self, 'sample_ids', tuple(self.sample_ids))
        object.__setattr__(self, 'values', _read_only(values))

    def to_dict(self) -> Dict[str, float]:
        return {s: float(v) for s, v in zip(self.sample_ids, self.values)}

    def to_polars(self) -> pl.DataFrame:
        return pl.DataFrame({'sample_id': list(self.sample_ids), 'size_factor': self.values})


@dataclass(frozen=True, eq=False)
class NormalizedCounts:
    """Raw counts divided by their sample's size factor."""

    gene_ids: Tuple[str, ...]
    sample_ids: Tuple[str, ...]
    values: np.ndarray
    size_factors: np.ndarray

    def to_polars(self) -> pl.DataFrame:
        data = {'gene_id': list(self.gene_ids)}
        for j, sample in enumerate(self.sample_ids):
            data[sample] = self.values[:, j]
        return pl.DataFrame(data)


@dataclass(frozen=True, eq=False)
class GeneDispersion:
    """
    Per-gene dispersion estimates.

    Attributes:
        gene_ids: Gene identifiers
        base_mean: Mean normalised count across all samples
        raw: Method-of-moments dispersion, NaN where not estimable
        trend: Fitted mean-dispersion trend evaluated at each gene
        final: Shrunken dispersion used by the test
        outlier: Genes whose raw dispersion was kept because it lies far above the trend
        estimable: Genes with a positive raw dispersion
        fit_type: Trend model actually used ('parametric', 'local' or 'mean')
        prior_variance: Spread of log gene variances around the trend beyond sampling noise
        sampling_variance: Expected sampling variance of a log gene variance, trigamma(df / 2)
        residual_df: Degrees of freedom of each gene's own variance estimate
        prior_df: Degrees of freedom carried by the trend, infinite when the
            genes show no spread beyond sampling noise
    """

    gene_ids: Tuple[str, ...]
    base_mean: np.ndarray
    raw: np.ndarray
    trend: np.ndarray
    final: np.ndarray
    outlier: np.ndarray
    estimable: np.ndarray
    fit_type: str
    prior_variance: float
    sampling_variance: float
    residual_df: int = 1
    prior_df: float = np.inf

    def wald_df(self) -> np.ndarray:
        """Degrees of freedom of the Wald statistic for each gene.

        Outliers keep their own dispersion and get only the residual degrees of freedom.
        """
        return np.where(self.outlier, float(self.residual_df), self.residual_df + self.prior_df)

    def to_polars(self) -> pl.DataFrame:
        return pl.DataFrame({
            'gene_id': list(self.gene_ids),
            'base_mean': self.base_mean,
            'raw_dispersion': self.raw,
            'trend_dispersion': self.trend,
            'dispersion': self.final,
            'outlier': self.outlier,
            'estimable': self.estimable,
        }).with_columns(pl.col('raw_dispersion').fill_nan(None))


@dataclass(frozen=True, eq=False)
class DETestResult:
    """
    Differential expression results, one row per gene.

    Rows with ``status == 'untestable'`` carry nulls in every test column.
    Positive ``log2_fold_change`` means higher expression in ``group_b``.
    """

    table: pl.DataFrame
    group_a: str
    group_b: str
    schema_version: int = SCHEMA_VERSION

    def __post_init__(self):
        if self.table.columns != list(DE_RESULT_SCHEMA):
            raise ValueError(
                f"DE result table columns {self.table.columns} do not match schema "
                f"version {self.schema_version}"
            )

    def __len__(self) -> int:
        return self.table.height

    def tested(self) -> pl.DataFrame:
        return self.table.filter(pl.col('status') == 'ok')

    def get(self, gene_id: str) -> Dict:
        rows = self.table.filter(pl.col('gene_id') == gene_id)
        if rows.height == 0:
            raise KeyError(gene_id)
        return rows.row(0, named=True)


@dataclass(frozen=True, eq=False)
class RankedGeneList:
    """
    Genes ordered by test statistic, descending, ties broken by gene id.
    """

    gene_ids: Tuple[str, ...]
    statistics: np.ndarray

    def __post_init__(self):
        gene_ids = tuple(str(g) for g in self.gene_ids)
        values = np.asarray(self.statistics, dtype=np.float64)
        if values.shape != (len(gene_ids),):
            raise DegenerateInputError(
                f"Ranked list has {len(gene_ids)} genes but {values.size} statistics"
            )
        if not np.all(np.isfinite(values)):
            raise DegenerateInputError("Ranked list statistics must be finite")
        if len(set(gene_ids)) != len(gene_ids):
            raise DegenerateInputError("Ranked list contains duplicate gene identifiers")
        for i in range(len(gene_ids) - 1):
            a, b = values[i], values[i + 1]
            if a < b or (a == b and gene_ids[i] > gene_ids[i + 1]):
                raise DegenerateInputError(
                    f"Ranked list is not sorted at position {i} ({gene_ids[i]}, {gene_ids[i + 1]})"
                )
        object.__setattr__(self, 'gene_ids', gene_ids)
        object.__setattr__(self, 'statistics', _read_only(values))

    def __len__(self) -> int:
        return len(self.gene_ids)

    def __iter__(self):
        return iter(zip(self.gene_ids, self.statistics.tolist()))

    @classmethod
    def from_statistics(cls, statistics: Mapping[str, float]) -> 'RankedGeneList':
        """
        Rank genes from a mapping of gene id to statistic.

        Non-finite statistics are dropped.
        """
        items = [(str(g), float(s)) for g, s in statistics.items() if s is not None and np.isfinite(s)]
        dropped = len(statistics) - len(items)
        if dropped:
            logger.warning(f"Dropped {dropped} gene(s) with missing or non-finite statistics from ranking")
        items.sort(key=lambda kv: (-kv[1], kv[0]))
        return cls(
            gene_ids=tuple(g for g, _ in items),
            statistics=np.array([s for _, s in items], dtype=np.float64)
        )

    def to_polars(self) -> pl.DataFrame:
        return pl.DataFrame({
            'rank': np.arange(len(self.gene_ids), dtype=np.int64),
            'gene_id': list(self.gene_ids),
            'test_statistic': self.statistics,
        })


#  Normaliser

def compute_size_factors(counts: CountMatrix) -> SizeFactors:
    """
    Median-of-ratios size factors.

    For each sample the size factor is the median, over genes with a non-zero
    count in every sample, of the ratio between the sample's count and the
    gene's geometric mean across samples.

    Args:
        counts: Count matrix, already passed through the low-count filter

    Returns:
        SizeFactors in sample order

    Raises:
        DegenerateInputError: With fewer than two samples, a gene with zero
            counts in every sample, or no gene observed in every sample
    """
    if counts.n_samples < 2:
        raise DegenerateInputError(
            f"Size factor estimation needs at least 2 samples, got {counts.n_samples}",
            {'sample_ids': list(counts.sample_ids)}
        )
    if counts.n_genes == 0:
        raise DegenerateInputError("Count matrix contains no genes")

    all_zero = np.where(counts.counts.sum(axis=1) == 0)[0]
    if len(all_zero):
        bad = [counts.gene_ids[i] for i in all_zero]
        raise DegenerateInputError(
            f"Genes with zero counts in every sample: {_preview(bad)}",
            {'gene_ids': bad}
        )

    values = counts.counts.astype(np.float64)
    usable = (values > 0).all(axis=1)
    if not usable.any():
        raise DegenerateInputError(
            "Every gene has a zero count in at least one sample; "
            "the geometric-mean reference is undefined"
        )

    log_values = np.log(values[usable])
    log_geo_means = log_values.mean(axis=1)
    factors = np.exp(np.median(log_values - log_geo_means[:, None], axis=0))

    logger.info(
        f"Size factors from {int(usable.sum())} of {counts.n_genes} genes: "
        f"min={factors.min():.3f}, max={factors.max():.3f}"
    )
    return SizeFactors(counts.sample_ids, factors)


def normalize_counts(counts: CountMatrix, size_factors: SizeFactors) -> NormalizedCounts:
    """Divide each sample's counts by its size factor."""
    if tuple(size_factors.sample_ids) != tuple(counts.sample_ids):
        raise DegenerateInputError(
            "Size factor samples do not match count matrix samples",
            {'count_samples': list(counts.sample_ids), 'size_factor_samples': list(size_factors.sample_ids)}
        )
    values = counts.counts / size_factors.values[None, :]
    return NormalizedCounts(
        gene_ids=counts.gene_ids,
        sample_ids=counts.sample_ids,
        values=_read_only(values),
        size_factors=size_factors.values
    )


#  Dispersion estimator

class _TrendFitError(Exception):
    pass


def _fit_parametric_trend(base_mean, raw, estimable, max_iterations: int = 10) -> np.ndarray:
    """Fit dispersion = a0 + a1 / mean with an iterated Gamma GLM."""
    coefs = np.array([0.1, 1.0])
    for _ in range(max_iterations):
        ratio = raw / (coefs[0] + coefs[1] / base_mean)
        use = estimable & (ratio > 1e-4) & (ratio < 15)
        if use.sum() < 3:
            raise _TrendFitError(f"only {int(use.sum())} genes available for the parametric fit")

        design = sm.add_constant(1.0 / base_mean[use], has_constant='add')
        # Identity link is outside the canonical Gamma domain
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', DomainWarning)
            model = sm.GLM(
                raw[use],
                design,
                family=sm.families.Gamma(link=sm.families.links.Identity())
            )
            new_coefs = np.asarray(model.fit(start_params=coefs).params)
        if not np.all(np.isfinite(new_coefs)) or np.any(new_coefs <= 0):
            raise _TrendFitError(f"non-positive coefficients {new_coefs}")

        converged = np.sum(np.log(new_coefs / coefs) ** 2) < 1e-6
        coefs = new_coefs
        if converged:
            break
    else:
        logger.debug(f"Parametric dispersion fit did not converge in {max_iterations} iterations")

    logger.debug(f"Parametric dispersion trend: {coefs[0]:.4g} + {coefs[1]:.4g} / mean")
    return coefs[0] + coefs[1] / base_mean


def _fit_local_trend(base_mean, raw, estimable) -> np.ndarray:
    """Lowess of log dispersion on log mean."""
    if estimable.sum() < 10:
        raise _TrendFitError(f"only {int(estimable.sum())} estimable genes for the local fit")

    x = np.log(base_mean[estimable])
    y = np.log(raw[estimable])
    xvals = np.clip(np.log(base_mean), x.min(), x.max())
    smoothed = sm.nonparametric.lowess(y, x, frac=0.66, xvals=xvals)
    if not np.all(np.isfinite(smoothed)):
        raise _TrendFitError("lowess produced non-finite values")
    return np.exp(smoothed)


def _fit_mean_trend(base_mean, raw, estimable, min_dispersion: float) -> np.ndarray:
    qualifying = raw[estimable & (raw >= 10 * min_dispersion)]
    value = float(stats.trim_mean(qualifying, 0.001)) if len(qualifying) else min_dispersion
    return np.full(base_mean.shape, max(value, min_dispersion))


def _fit_dispersion_trend(base_mean, raw, estimable, fit_type, min_dispersion) -> Tuple[np.ndarray, str]:
    if fit_type not in DISPERSION_FIT_TYPES:
        raise ConfigurationError(
            f"Unknown dispersion fit type '{fit_type}'. Use one of {', '.join(DISPERSION_FIT_TYPES)}",
            {'fit_type': fit_type}
        )

    if fit_type != 'mean':
        fitter = _fit_parametric_trend if fit_type == 'parametric' else _fit_local_trend
        try:
            return fitter(base_mean, raw, estimable), fit_type
        except (_TrendFitError, ValueError, np.linalg.LinAlgError, FloatingPointError) as e:
            logger.warning(f"{fit_type.capitalize()} dispersion trend fit failed ({e}); using mean dispersion")

    return _fit_mean_trend(base_mean, raw, estimable, min_dispersion), 'mean'


def _trigamma_inverse(x: float, max_iterations: int = 50) -> float:
    """Solve trigamma(y) = x for y by Newton iteration."""
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x
    y = 0.5 + 1.0 / x
    for _ in range(max_iterations):
        tri = float(special.polygamma(1, y))
        step = tri * (1.0 - tri / x) / float(special.polygamma(2, y))
        y += step
        if -step / y < 1e-8:
            break
    return y


def _prior_degrees_of_freedom(log_ratio, sampling_variance: float) -> Tuple[float, float]:
    """
    Prior degrees of freedom from the spread of log gene variances around the trend.

    The variance of log(s^2 / trend) is the sampling variance of a log sample
    variance plus trigamma(d0 / 2), where d0 is the prior degrees of freedom.

    Returns:
        Tuple of (prior variance, prior degrees of freedom)
    """
    if len(log_ratio) < 3:
        return 0.0, np.inf
    prior_variance = float(np.var(log_ratio, ddof=1)) - sampling_variance
    if prior_variance <= 0:
        return 0.0, np.inf
    return prior_variance, 2.0 * _trigamma_inverse(prior_variance)


def estimate_dispersion(
    normalized: NormalizedCounts,
    groups: Optional[Sequence[str]] = None,
    fit_type: str = 'parametric',
    outlier_sd: float = 2.0,
    min_dispersion: float = 1e-8
) -> GeneDispersion:
    """
    Estimate one dispersion per gene and shrink it toward the mean-dispersion trend.

    Raw dispersions come from the method of moments,
    (variance - mean(1/s) * mean) / mean^2, with the variance pooled within
    ``groups`` when given. A trend of dispersion against mean is fitted across
    genes. Each gene's variance is then moderated toward the variance the
    trend implies, weighting the two by their degrees of freedom, and the
    final dispersion is read back from the moderated variance. The prior
    degrees of freedom come from how far log gene variances spread around
    the trend beyond their sampling noise.

    Args:
        normalized: Normalised counts
        groups: Optional condition label per sample, in sample order
        fit_type: 'parametric', 'local' or 'mean'
        outlier_sd: Genes whose log variance lies this many SDs above the trend keep their raw dispersion
        min_dispersion: Floor for dispersion estimates

    Returns:
        GeneDispersion aligned with ``normalized.gene_ids``
    """
    values = normalized.values
    n_genes, n_samples = values.shape

    if groups is None:
        group_index = np.zeros(n_samples, dtype=np.int64)
        n_groups = 1
    else:
        if len(groups) != n_samples:
            raise DegenerateInputError(
                f"Got {len(groups)} group labels for {n_samples} samples"
            )
        levels = sorted(set(groups))
        group_index = np.array([levels.index(g) for g in groups], dtype=np.int64)
        n_groups = len(levels)

    dof = n_samples - n_groups
    if dof < 1:
        raise DegenerateInputError(
            f"No residual degrees of freedom: {n_samples} samples in {n_groups} group(s)",
            {'sample_ids': list(normalized.sample_ids)}
        )

    base_mean = values.mean(axis=1)
    zero_mean = np.where(base_mean == 0)[0]
    if len(zero_mean):
        bad = [normalized.gene_ids[i] for i in zero_mean]
        raise DegenerateInputError(
            f"Genes with zero counts reached dispersion estimation: {_preview(bad)}",
            {'gene_ids': bad}
        )

    variance = _pooled_variance(np.ascontiguousarray(values, dtype=np.float64), group_index, n_groups)
    xim = float(np.mean(1.0 / normalized.size_factors))
    raw = (variance - xim * base_mean) / base_mean ** 2
    estimable = raw > min_dispersion

    trend, fit_used = _fit_dispersion_trend(base_mean, raw, estimable, fit_type, min_dispersion)
    trend_variance = xim * base_mean + trend * base_mean ** 2

    sampling_variance = float(special.polygamma(1, dof / 2.0))
    observed = variance > 0
    log_ratio = np.log(variance[observed] / trend_variance[observed])
    prior_variance, prior_df = _prior_degrees_of_freedom(log_ratio, sampling_variance)

    if np.isinf(prior_df):
        moderated = trend_variance
    else:
        moderated = (prior_df * trend_variance + dof * variance) / (prior_df + dof)
    shrunk = (moderated - xim * base_mean) / base_mean ** 2

    outlier = np.zeros(n_genes, dtype=bool)
    if len(log_ratio) >= 3:
        centre = float(np.mean(log_ratio))
        spread = float(np.std(log_ratio, ddof=1))
        with np.errstate(divide='ignore'):
            gene_log_ratio = np.log(variance / trend_variance)
        outlier = estimable & (gene_log_ratio > centre + outlier_sd * spread)

    final = np.where(estimable, shrunk, trend)
    final = np.where(outlier, raw, final)
    final = np.maximum(final, min_dispersion)

    logger.info(
        f"Dispersion: {int(estimable.sum())} of {n_genes} genes estimable, "
        f"trend={fit_used}, prior df={prior_df:.1f}, "
        f"{int(outlier.sum())} outlier(s) kept unshrunk"
    )

    return GeneDispersion(
        gene_ids=normalized.gene_ids,
        base_mean=_read_only(base_mean),
        raw=_read_only(np.where(estimable, raw, np.nan)),
        trend=_read_only(trend),
        final=_read_only(final),
        outlier=_read_only(outlier),
        estimable=_read_only(estimable),
        fit_type=fit_used,
        prior_variance=prior_variance,
        sampling_variance=sampling_variance,
        residual_df=dof,
        prior_df=prior_df
    )


#  Multiple testing

def _check_fdr_method(method: str) -> None:
    if method not in FDR_METHODS:
        raise ConfigurationError(
            f"Unsupported FDR method '{method}'. Use one of {', '.join(FDR_METHODS)}",
            {'fdr_method': method}
        )


def adjust_p_values(
    p_values,
    method: str = 'fdr_bh',
    alpha: float = 0.05
) -> Tuple[np.ndarray, np.ndarray]:
    """
    False discovery rate adjustment that passes NaN entries through.

    NaN p-values are left out of the correction, so they do not count toward
    the number of tests.

    Args:
        p_values: Array of p-values in [0, 1], NaN for untested entries
        method: 'fdr_bh' (Benjamini-Hochberg) or 'fdr_by'
        alpha: Significance level for the reject flags

    Returns:
        Tuple of (adjusted p-values, reject flags)
    """
    _check_fdr_method(method)
    p = np.asarray(p_values, dtype=np.float64)
    valid = ~np.isnan(p)
    if np.any((p[valid] < 0) | (p[valid] > 1)):
        raise ValueError("P-values must lie in [0, 1]")

    adjusted = np.full(p.shape, np.nan)
    reject = np.zeros(p.shape, dtype=bool)
    if valid.any():
        rejected, corrected, _, _ = multipletests(p[valid], alpha=alpha, method=method)
        adjusted[valid] = corrected
        reject[valid] = rejected
    return adjusted, reject


#  Differential tester

def differential_expression(
    normalized: NormalizedCounts,
    dispersion: GeneDispersion,
    metadata: SampleMetadata,
    group_a: str,
    group_b: str,
    min_replicates: int = 2,
    fdr_method: str = 'fdr_bh',
    alpha: float = 0.05
) -> DETestResult:
    """
    Per-gene Wald test of group_b against group_a.

    The standard error of the log fold change combines Poisson noise and the
    gene's dispersion, so for the same fold change a more dispersed gene gets
    a smaller statistic. P-values come from a Student t distribution with the
    degrees of freedom of the moderated dispersion, or the normal
    distribution when the dispersions were taken from the trend alone.

    Args:
        normalized: Normalised counts
        dispersion: Dispersion estimates for the same genes
        metadata: Sample labels
        group_a: Reference group
        group_b: Comparison group; positive fold changes mean higher here
        min_replicates: Minimum samples per group
        fdr_method: Multiple testing method
        alpha: Significance level for the ``significant`` column

    Returns:
        DETestResult with one row per gene
    """
    _check_fdr_method(fdr_method)
    if tuple(dispersion.gene_ids) != tuple(normalized.gene_ids):
        raise DegenerateInputError("Dispersion estimates do not match the normalised count genes")
    metadata.validate(normalized.sample_ids, group_a, group_b, min_replicates)

    columns_a = [j for j, s in enumerate(normalized.sample_ids) if metadata.labels[s] == group_a]
    columns_b = [j for j, s in enumerate(normalized.sample_ids) if metadata.labels[s] == group_b]
    values_a = normalized.values[:, columns_a]
    values_b = normalized.values[:, columns_b]
    sf_a = normalized.size_factors[columns_a]
    sf_b = normalized.size_factors[columns_b]
    n_a, n_b = len(columns_a), len(columns_b)

    mean_a = values_a.mean(axis=1)
    mean_b = values_b.mean(axis=1)
    base_mean = normalized.values[:, columns_a + columns_b].mean(axis=1)
    testable = (mean_a > 0) | (mean_b > 0)

    # Half a read spread across the group keeps one-sided zeros finite
    mu_a = np.where(mean_a > 0, mean_a, 0.5 / (n_a * sf_a.mean()))
    mu_b = np.where(mean_b > 0, mean_b, 0.5 / (n_b * sf_b.mean()))

    disp = dispersion.final
    var_log_a = (np.mean(1.0 / sf_a) / mu_a + disp) / n_a
    var_log_b = (np.mean(1.0 / sf_b) / mu_b + disp) / n_b

    log2_fold_change = np.log2(mu_b) - np.log2(mu_a)
    lfc_se = np.sqrt(var_log_a + var_log_b) / np.log(2)
    statistic = log2_fold_change / lfc_se

    # Moderated variances carry finite degrees of freedom; infinite means normal
    df = dispersion.wald_df()
    finite_df = np.isfinite(df)
    p_value = 2.0 * np.where(
        finite_df,
        stats.t.sf(np.abs(statistic), np.where(finite_df, df, 1.0)),
        stats.norm.sf(np.abs(statistic))
    )

    untested = ~testable
    for arr in (log2_fold_change, lfc_se, statistic, p_value):
        arr[untested] = np.nan

    adjusted, reject = adjust_p_values(p_value, fdr_method, alpha)

    n_untestable = int(untested.sum())
    if n_untestable:
        bad = [g for g, u in zip(normalized.gene_ids, untested) if u]
        message = (
            f"{n_untestable} gene(s) have zero mean in both '{group_a}' and '{group_b}' "
            f"and were reported as untestable: {_preview(bad)}"
        )
        logger.warning(message)
        warnings.warn(message, UntestableGeneWarning, stacklevel=2)

    significant: List[Optional[bool]] = [
        bool(r) if t else None for r, t in zip(reject, testable)
    ]
    table = pl.DataFrame(
        {
            'gene_id': list(normalized.gene_ids),
            'base_mean': base_mean,
            'mean_a': mean_a,
            'mean_b': mean_b,
            'log2_fold_change': log2_fold_change,
            'lfc_se': lfc_se,
            'test_statistic': statistic,
            'p_value': p_value,
            'adjusted_p_value': adjusted,
            'dispersion': np.asarray(disp, dtype=np.float64),
            'significant': significant,
            'status': ['ok' if t else 'untestable' for t in testable],
        },
        schema=DE_RESULT_SCHEMA
    ).with_columns(
        pl.col(['log2_fold_change', 'lfc_se', 'test_statistic', 'p_value', 'adjusted_p_value']).fill_nan(None)
    )

    n_significant = int(np.sum(reject & testable))
    logger.info(
        f"Tested {int(testable.sum())} genes ({group_b} vs {group_a}): "
        f"{n_significant} significant at {fdr_method} < {alpha}"
    )
    return DETestResult(table, group_a, group_b)


#  Ranking

def rank_genes(de_result: DETestResult) -> RankedGeneList:
    """
    Order tested genes by test statistic, descending, ties by gene id ascending.

    Genes without a statistic are dropped.
    """
    ranked = de_result.table.filter(
        pl.col('test_statistic').is_not_null()
    ).sort(['test_statistic', 'gene_id'], descending=[True, False])

    dropped = de_result.table.height - ranked.height
    if dropped:
        logger.info(f"Ranking excludes {dropped} untestable gene(s)")

    return RankedGeneList(
        gene_ids=tuple(ranked['gene_id'].to_list()),
        statistics=ranked['test_statistic'].to_numpy()
    )
