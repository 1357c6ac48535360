"""
Pre-ranked gene set enrichment analysis.

Each gene set is scored with a weighted Kolmogorov-Smirnov running sum over
the ranked gene list, and its significance is estimated against random gene
sets of the same size drawn from the list.
"""

from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple
import logging
import multiprocessing
import warnings

import numba as nb
import numpy as np
import polars as pl
from tqdm.auto import tqdm

from degsea.data import GeneSet, _duplicates, _preview
from degsea.exceptions import (
    ConfigurationError,
    DegenerateInputError,
    GeneSetSizeOutOfRangeWarning,
    IdentifierMismatchError,
)
from degsea.stats import SCHEMA_VERSION, RankedGeneList, _check_fdr_method, adjust_p_values
from degsea.utils import tqdm_kwargs

logger = logging.getLogger(__name__)

ENRICHMENT_RESULT_SCHEMA = {
    'set_name': pl.Utf8,
    'set_size': pl.Int64,
    'matched_size': pl.Int64,
    'enrichment_score': pl.Float64,
    'normalized_enrichment_score': pl.Float64,
    'p_value': pl.Float64,
    'adjusted_p_value': pl.Float64,
    'significant': pl.Boolean,
    'rank_at_max': pl.Int64,
    'leading_edge': pl.List(pl.Utf8),
    'n_permutations': pl.Int64,
    'status': pl.Utf8,
}


#  Numba kernels

@nb.njit
def _walk_extremes(positions, hit_weights, n_genes):
    """
    Extreme deviation of the running sum, evaluated only at hit positions.

    Between hits the sum falls linearly, so its maximum is reached just after
    a hit and its minimum just before one.

    Args:
        positions: Sorted 0-based ranks of set members
        hit_weights: Weight of each member, aligned with ``positions``
        n_genes: Length of the ranked list

    Returns:
        Tuple of (enrichment score, rank at which it is reached)
    """
    k = positions.shape[0]
    norm = 0.0
    for j in range(k):
        norm += hit_weights[j]
    miss_step = 1.0 / (n_genes - k)

    running = 0.0
    max_dev = 0.0
    max_pos = 0
    min_dev = 0.0
    min_pos = 0
    for j in range(k):
        misses = positions[j] - j
        before = running - misses * miss_step
        if before < min_dev:
            min_dev = before
            min_pos = positions[j] - 1
        if norm > 0:
            running += hit_weights[j] / norm
        else:
            running += 1.0 / k
        after = running - misses * miss_step
        if after > max_dev:
            max_dev = after
            max_pos = positions[j]

    if max_dev >= -min_dev:
        return max_dev, max_pos
    return min_dev, min_pos


@nb.njit(parallel=True)
def _null_enrichment_scores(perm_positions, abs_weights, n_genes):
    """
    Enrichment scores of random gene sets.

    Args:
        perm_positions: (n_permutations, k) array of sorted random ranks
        abs_weights: Weight of every gene in the ranked list
        n_genes: Length of the ranked list

    Returns:
        Array of null enrichment scores
    """
    n_perm, k = perm_positions.shape
    out = np.empty(n_perm)
    for p in nb.prange(n_perm):
        positions = perm_positions[p]
        hits = np.empty(k)
        for j in range(k):
            hits[j] = abs_weights[positions[j]]
        es, _ = _walk_extremes(positions, hits, n_genes)
        out[p] = es
    return out


@nb.njit
def _running_sum(is_hit, abs_weights, n_hits):
    n = is_hit.shape[0]
    norm = 0.0
    for i in range(n):
        if is_hit[i]:
            norm += abs_weights[i]
    miss_step = 1.0 / (n - n_hits)

    out = np.empty(n)
    running = 0.0
    for i in range(n):
        if is_hit[i]:
            if norm > 0:
                running += abs_weights[i] / norm
            else:
                running += 1.0 / n_hits
        else:
            running -= miss_step
        out[i] = running
    return out


#  Results

@dataclass(frozen=True, eq=False)
class EnrichmentResult:
    """
    Enrichment results, one row per gene set.

    Skipped sets keep their row with ``status == 'skipped'`` and nulls in
    every score column.
    """

    table: pl.DataFrame
    seed: int
    permutation_num: int
    schema_version: int = SCHEMA_VERSION

    def __post_init__(self):
        if self.table.columns != list(ENRICHMENT_RESULT_SCHEMA):
            raise ValueError(
                f"Enrichment result table columns {self.table.columns} do not match schema "
                f"version {self.schema_version}"
            )

    def __len__(self) -> int:
        return self.table.height

    def scored(self) -> pl.DataFrame:
        return self.table.filter(pl.col('status') != 'skipped')

    def get(self, set_name: str) -> Dict:
        rows = self.table.filter(pl.col('set_name') == set_name)
        if rows.height == 0:
            raise KeyError(set_name)
        return rows.row(0, named=True)


#  Scoring

def _gene_weights(ranked: RankedGeneList, weight: float) -> np.ndarray:
    if weight == 0:
        return np.ones(len(ranked))
    return np.ascontiguousarray(np.abs(ranked.statistics) ** weight)


def _member_positions(ranked: RankedGeneList, gene_set: GeneSet) -> np.ndarray:
    index = {g: i for i, g in enumerate(ranked.gene_ids)}
    return np.array(sorted(index[g] for g in gene_set.genes if g in index), dtype=np.int64)


def running_enrichment_sum(
    ranked: RankedGeneList,
    gene_set: GeneSet,
    weight: float = 1.0
) -> np.ndarray:
    """
    Full running-sum curve of ``gene_set`` over ``ranked``.

    Args:
        ranked: Ranked gene list
        gene_set: Gene set; members absent from the list are ignored
        weight: Exponent applied to |statistic| for member steps

    Returns:
        Array with the running sum after each position of the ranked list
    """
    positions = _member_positions(ranked, gene_set)
    if len(positions) == 0 or len(positions) >= len(ranked):
        raise DegenerateInputError(
            f"Gene set '{gene_set.name}' must cover some but not all of the ranked list "
            f"({len(positions)} of {len(ranked)} genes)"
        )
    is_hit = np.zeros(len(ranked), dtype=np.bool_)
    is_hit[positions] = True
    return _running_sum(is_hit, _gene_weights(ranked, weight), len(positions))


def enrichment_score(
    ranked: RankedGeneList,
    gene_set: GeneSet,
    weight: float = 1.0
) -> Tuple[float, int]:
    """
    Enrichment score of one gene set without permutation testing.

    Returns:
        Tuple of (enrichment score, 0-based rank at which it is reached)
    """
    positions = _member_positions(ranked, gene_set)
    if len(positions) == 0 or len(positions) >= len(ranked):
        raise DegenerateInputError(
            f"Gene set '{gene_set.name}' must cover some but not all of the ranked list "
            f"({len(positions)} of {len(ranked)} genes)"
        )
    weights = _gene_weights(ranked, weight)
    es, rank_at_max = _walk_extremes(positions, weights[positions], len(ranked))
    return float(es), int(rank_at_max)


def _permutation_significance(es: float, null_scores: np.ndarray) -> Tuple[float, float, str]:
    """
    Sign-specific empirical p-value and normalised enrichment score.

    The observed score is compared with null scores of the same sign, and
    normalised by their mean magnitude.

    Returns:
        Tuple of (p-value, NES or NaN, status)
    """
    if es >= 0:
        same_sign = null_scores[null_scores >= 0]
        as_extreme = np.sum(same_sign >= es)
    else:
        same_sign = null_scores[null_scores < 0]
        as_extreme = np.sum(same_sign <= es)

    scale = np.abs(same_sign.mean()) if len(same_sign) else 0.0
    if scale == 0:
        as_extreme = np.sum(np.abs(null_scores) >= abs(es))
        p_value = (as_extreme + 1) / (len(null_scores) + 1)
        return float(p_value), float('nan'), 'no_null'

    p_value = (as_extreme + 1) / (len(same_sign) + 1)
    return float(p_value), float(es / scale), 'ok'


def _score_gene_set(
    positions: np.ndarray,
    abs_weights: np.ndarray,
    n_genes: int,
    permutation_num: int,
    seed_seq: np.random.SeedSequence
) -> Dict:
    """
    Score one gene set and its permutation null.

    Defined at module level so it can run in worker processes.
    """
    rng = np.random.default_rng(seed_seq)
    k = len(positions)

    es, rank_at_max = _walk_extremes(positions, abs_weights[positions], n_genes)

    perm_positions = np.empty((permutation_num, k), dtype=np.int64)
    for i in range(permutation_num):
        perm_positions[i] = rng.choice(n_genes, size=k, replace=False)
    perm_positions.sort(axis=1)

    null_scores = _null_enrichment_scores(perm_positions, abs_weights, n_genes)
    p_value, nes, status = _permutation_significance(es, null_scores)

    if es >= 0:
        leading = positions[positions <= rank_at_max]
    else:
        leading = positions[positions > rank_at_max]

    return {
        'enrichment_score': float(es),
        'normalized_enrichment_score': nes,
        'p_value': p_value,
        'rank_at_max': int(rank_at_max),
        'leading_positions': leading.tolist(),
        'status': status,
    }


def _validate_parameters(seed, min_size, max_size, permutation_num, weight):
    if seed is None:
        raise ConfigurationError("A random seed is required for permutation testing")
    if permutation_num < 1:
        raise ConfigurationError(
            f"Permutation count must be at least 1, got {permutation_num}",
            {'permutation_num': permutation_num}
        )
    if min_size < 1 or max_size < min_size:
        raise ConfigurationError(
            f"Invalid gene set size bounds [{min_size}, {max_size}]",
            {'min_size': min_size, 'max_size': max_size}
        )
    if weight < 0:
        raise ConfigurationError(f"Weight must be non-negative, got {weight}", {'weight': weight})


def run_enrichment(
    ranked: RankedGeneList,
    gene_sets: Iterable[GeneSet],
    *,
    seed: int,
    min_size: int = 15,
    max_size: int = 500,
    permutation_num: int = 1000,
    weight: float = 1.0,
    fdr_method: str = 'fdr_bh',
    alpha: float = 0.05,
    num_threads: int = 1,
    show_progress: bool = False
) -> EnrichmentResult:
    """
    Test each gene set for enrichment at either end of the ranked list.

    Args:
        ranked: Genes ranked by test statistic
        gene_sets: Gene sets in the ranked list's identifier namespace
        seed: Seed for the permutation generator
        min_size: Smallest matched set size to test
        max_size: Largest matched set size to test
        permutation_num: Random gene sets drawn per tested set
        weight: Exponent applied to |statistic| for member steps (0 gives the unweighted KS walk)
        fdr_method: Multiple testing method across tested sets
        alpha: Significance level for the ``significant`` column
        num_threads: Worker processes used to score sets
        show_progress: Display a progress bar

    Returns:
        EnrichmentResult with one row per gene set, ordered by set name

    Raises:
        IdentifierMismatchError: If no gene set shares an identifier with the ranked list
    """
    _validate_parameters(seed, min_size, max_size, permutation_num, weight)
    _check_fdr_method(fdr_method)

    gene_sets = sorted(gene_sets, key=lambda gs: gs.name)
    names = [gs.name for gs in gene_sets]
    duplicated = sorted(_duplicates(names))
    if duplicated:
        raise DegenerateInputError(
            f"Duplicate gene set names: {_preview(duplicated)}",
            {'set_names': duplicated}
        )
    if not gene_sets:
        raise DegenerateInputError("No gene sets supplied for enrichment")
    n_genes = len(ranked)
    if n_genes == 0:
        raise DegenerateInputError("Ranked gene list is empty")

    abs_weights = _gene_weights(ranked, weight)
    index = {g: i for i, g in enumerate(ranked.gene_ids)}
    seeds = dict(zip(names, np.random.SeedSequence(seed).spawn(len(gene_sets))))

    matched_sizes: Dict[str, int] = {}
    to_score: List[Tuple[str, np.ndarray]] = []
    skipped: List[str] = []
    total_members = 0
    total_matched = 0

    for gene_set in gene_sets:
        positions = np.array(sorted(index[g] for g in gene_set.genes if g in index), dtype=np.int64)
        matched = len(positions)
        matched_sizes[gene_set.name] = matched
        total_members += len(gene_set)
        total_matched += matched
        if matched < len(gene_set):
            logger.debug(
                f"Gene set '{gene_set.name}': {len(gene_set) - matched} of {len(gene_set)} "
                f"identifiers not in ranked list"
            )

        if matched < min_size or matched > max_size or matched >= n_genes:
            skipped.append(gene_set.name)
        else:
            to_score.append((gene_set.name, positions))

    if total_matched == 0:
        raise IdentifierMismatchError(
            f"None of the {total_members} identifiers in {len(gene_sets)} gene set(s) "
            f"occur in the ranked list of {n_genes} genes",
            {'set_names': names, 'example_ranked_ids': list(ranked.gene_ids[:5])}
        )

    logger.info(
        f"Gene set identifiers: {total_matched} of {total_members} found in ranked list, "
        f"{total_members - total_matched} unmatched"
    )

    if skipped:
        message = (
            f"{len(skipped)} gene set(s) outside size bounds [{min_size}, {max_size}] "
            f"were skipped: {_preview(skipped)}"
        )
        logger.warning(message)
        warnings.warn(message, GeneSetSizeOutOfRangeWarning, stacklevel=2)

    if to_score and 1.0 / (permutation_num + 1) >= alpha / len(to_score):
        logger.warning(
            f"{permutation_num} permutations cannot reach p-values below "
            f"{alpha / len(to_score):.2e} needed for {len(to_score)} sets at alpha={alpha}"
        )

    logger.info(f"Scoring {len(to_score)} gene sets with {permutation_num} permutations each")

    scored: Dict[str, Dict] = {}
    progress = dict(tqdm_kwargs, disable=not show_progress)
    if num_threads > 1 and len(to_score) > 1:
        context = multiprocessing.get_context('spawn')
        with ProcessPoolExecutor(max_workers=num_threads, mp_context=context) as executor:
            futures = {
                executor.submit(
                    _score_gene_set, positions, abs_weights, n_genes, permutation_num, seeds[name]
                ): name
                for name, positions in to_score
            }
            with tqdm(total=len(futures), desc="Gene set permutations", unit="set", **progress) as pbar:
                for future in as_completed(futures):
                    scored[futures[future]] = future.result()
                    pbar.update(1)
    else:
        for name, positions in tqdm(to_score, desc="Gene set permutations", unit="set", **progress):
            scored[name] = _score_gene_set(positions, abs_weights, n_genes, permutation_num, seeds[name])

    scored_names = [name for name in names if name in scored]
    adjusted, reject = adjust_p_values(
        [scored[name]['p_value'] for name in scored_names], fdr_method, alpha
    )
    adjusted_by_name = dict(zip(scored_names, zip(adjusted.tolist(), reject.tolist())))

    rows = []
    for gene_set in gene_sets:
        name = gene_set.name
        row = {
            'set_name': name,
            'set_size': len(gene_set),
            'matched_size': matched_sizes[name],
            'enrichment_score': None,
            'normalized_enrichment_score': None,
            'p_value': None,
            'adjusted_p_value': None,
            'significant': None,
            'rank_at_max': None,
            'leading_edge': None,
            'n_permutations': None,
            'status': 'skipped',
        }
        if name in scored:
            result = scored[name]
            nes = result['normalized_enrichment_score']
            padj, rejected = adjusted_by_name[name]
            row.update({
                'enrichment_score': result['enrichment_score'],
                'normalized_enrichment_score': None if np.isnan(nes) else nes,
                'p_value': result['p_value'],
                'adjusted_p_value': padj,
                'significant': bool(rejected),
                'rank_at_max': result['rank_at_max'],
                'leading_edge': [ranked.gene_ids[i] for i in result['leading_positions']],
                'n_permutations': permutation_num,
                'status': result['status'],
            })
        rows.append(row)

    table = pl.DataFrame(rows, schema=ENRICHMENT_RESULT_SCHEMA)
    n_significant = table.filter(pl.col('significant').fill_null(False)).height
    logger.info(
        f"Enrichment complete: {len(scored)} sets tested, {len(skipped)} skipped, "
        f"{n_significant} significant at {fdr_method} < {alpha}"
    )
    return EnrichmentResult(table, seed, permutation_num)
