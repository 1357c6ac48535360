"""
Data model and input handling for the differential expression pipeline.

The core stages only ever see the immutable containers defined here. The
loaders turn tab/comma separated count tables, sample sheets, GMT gene set
files and identifier mapping tables into those containers.
"""

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
import logging

import numpy as np
import polars as pl

from degsea.exceptions import ConfigurationError, DegenerateInputError

logger = logging.getLogger(__name__)

# Number of offending identifiers quoted in error messages
_MAX_REPORTED_IDS = 10


def _preview(ids: Sequence[str]) -> str:
    shown = ', '.join(str(i) for i in list(ids)[:_MAX_REPORTED_IDS])
    if len(ids) > _MAX_REPORTED_IDS:
        shown += f", ... ({len(ids)} total)"
    return shown


def _duplicates(ids: Sequence[str]) -> List[str]:
    seen = set()
    dups = []
    for i in ids:
        if i in seen and i not in dups:
            dups.append(i)
        seen.add(i)
    return dups


def _read_only(values: np.ndarray) -> np.ndarray:
    values = np.array(values, copy=True)
    values.setflags(write=False)
    return values


@dataclass(frozen=True, eq=False)
class CountMatrix:
    """
    Immutable gene x sample table of non-negative integer counts.

    Attributes:
        gene_ids: Gene identifiers, one per row
        sample_ids: Sample identifiers, one per column
        counts: Read-only int64 array of shape (n_genes, n_samples)
    """

    gene_ids: Tuple[str, ...]
    sample_ids: Tuple[str, ...]
    counts: np.ndarray

    def __post_init__(self):
        gene_ids = tuple(str(g) for g in self.gene_ids)
        sample_ids = tuple(str(s) for s in self.sample_ids)
        values = np.asarray(self.counts)

        if values.ndim != 2:
            raise DegenerateInputError(
                f"Count matrix must be two-dimensional, got {values.ndim} dimension(s)",
                {'shape': values.shape}
            )
        if values.shape != (len(gene_ids), len(sample_ids)):
            raise DegenerateInputError(
                f"Count matrix shape {values.shape} does not match "
                f"{len(gene_ids)} genes x {len(sample_ids)} samples",
                {'shape': values.shape, 'n_genes': len(gene_ids), 'n_samples': len(sample_ids)}
            )

        dup_genes = _duplicates(gene_ids)
        if dup_genes:
            raise DegenerateInputError(
                f"Duplicate gene identifiers: {_preview(dup_genes)}",
                {'gene_ids': dup_genes}
            )
        dup_samples = _duplicates(sample_ids)
        if dup_samples:
            raise DegenerateInputError(
                f"Duplicate sample identifiers: {_preview(dup_samples)}",
                {'sample_ids': dup_samples}
            )

        if values.dtype.kind == 'f':
            bad_rows = np.where(np.isnan(values).any(axis=1))[0]
            if len(bad_rows):
                bad = [gene_ids[i] for i in bad_rows]
                raise DegenerateInputError(
                    f"Count matrix is not rectangular: missing values for genes {_preview(bad)}",
                    {'gene_ids': bad}
                )
            bad_rows = np.where((values != np.round(values)).any(axis=1))[0]
            if len(bad_rows):
                bad = [gene_ids[i] for i in bad_rows]
                raise DegenerateInputError(
                    f"Counts must be integers; non-integral values for genes {_preview(bad)}",
                    {'gene_ids': bad}
                )
        elif values.dtype.kind not in 'iub':
            raise DegenerateInputError(
                f"Counts must be numeric, got dtype {values.dtype}",
                {'dtype': str(values.dtype)}
            )

        negative_rows = np.where((values < 0).any(axis=1))[0]
        if len(negative_rows):
            bad = [gene_ids[i] for i in negative_rows]
            raise DegenerateInputError(
                f"Counts must be non-negative; negative values for genes {_preview(bad)}",
                {'gene_ids': bad}
            )

        object.__setattr__(self, 'gene_ids', gene_ids)
        object.__setattr__(self, 'sample_ids', sample_ids)
        object.__setattr__(self, 'counts', _read_only(values.astype(np.int64)))

    @property
    def n_genes(self) -> int:
        return len(self.gene_ids)

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)

    @classmethod
    def from_polars(cls, df: pl.DataFrame, gene_column: str = 'gene_id') -> 'CountMatrix':
        """
        Build a count matrix from a wide table.

        Args:
            df: DataFrame with one gene identifier column and one column per sample
            gene_column: Name of the gene identifier column

        Returns:
            CountMatrix with samples in column order
        """
        if gene_column not in df.columns:
            raise DegenerateInputError(
                f"Gene identifier column '{gene_column}' not found in count table",
                {'columns': df.columns}
            )

        sample_columns = [col for col in df.columns if col != gene_column]
        non_numeric = [col for col in sample_columns if not df.schema[col].is_numeric()]
        if non_numeric:
            raise DegenerateInputError(
                f"Non-numeric sample columns in count table: {_preview(non_numeric)}",
                {'sample_ids': non_numeric}
            )

        null_counts = df.select(sample_columns).null_count().row(0)
        with_nulls = [col for col, n in zip(sample_columns, null_counts) if n > 0]
        if with_nulls:
            missing_genes = df.filter(
                pl.any_horizontal([pl.col(c).is_null() for c in with_nulls])
            )[gene_column].cast(pl.Utf8).to_list()
            raise DegenerateInputError(
                f"Count table is not rectangular: samples {_preview(with_nulls)} "
                f"are missing counts for genes {_preview(missing_genes)}",
                {'sample_ids': with_nulls, 'gene_ids': missing_genes}
            )

        return cls(
            gene_ids=tuple(df[gene_column].cast(pl.Utf8).to_list()),
            sample_ids=tuple(sample_columns),
            counts=df.select(sample_columns).to_numpy()
        )

    def to_polars(self, gene_column: str = 'gene_id') -> pl.DataFrame:
        data = {gene_column: list(self.gene_ids)}
        for j, sample in enumerate(self.sample_ids):
            data[sample] = self.counts[:, j]
        return pl.DataFrame(data)

    def subset_genes(self, gene_ids: Iterable[str]) -> 'CountMatrix':
        """Return a new matrix restricted to ``gene_ids``, keeping the original row order."""
        keep = set(gene_ids)
        mask = np.array([g in keep for g in self.gene_ids], dtype=bool)
        return CountMatrix(
            gene_ids=tuple(g for g, m in zip(self.gene_ids, mask) if m),
            sample_ids=self.sample_ids,
            counts=self.counts[mask]
        )

    def subset_samples(self, sample_ids: Sequence[str]) -> 'CountMatrix':
        """Return a new matrix with the given samples, in the given order."""
        index = {s: j for j, s in enumerate(self.sample_ids)}
        missing = [s for s in sample_ids if s not in index]
        if missing:
            raise DegenerateInputError(
                f"Samples not present in count matrix: {_preview(missing)}",
                {'sample_ids': missing}
            )
        columns = [index[s] for s in sample_ids]
        return CountMatrix(
            gene_ids=self.gene_ids,
            sample_ids=tuple(sample_ids),
            counts=self.counts[:, columns]
        )


@dataclass(frozen=True, eq=False)
class SampleMetadata:
    """Mapping from sample identifier to its condition label."""

    labels: Mapping[str, str]

    def __post_init__(self):
        object.__setattr__(
            self, 'labels', MappingProxyType({str(k): str(v) for k, v in self.labels.items()})
        )

    @classmethod
    def from_polars(
        cls,
        df: pl.DataFrame,
        sample_column: str = 'sample_id',
        group_column: str = 'condition'
    ) -> 'SampleMetadata':
        missing = [col for col in (sample_column, group_column) if col not in df.columns]
        if missing:
            raise ConfigurationError(
                f"Sample sheet is missing column(s): {', '.join(missing)}",
                {'columns': df.columns, 'missing': missing}
            )

        samples = df[sample_column].cast(pl.Utf8).to_list()
        dups = _duplicates(samples)
        if dups:
            raise DegenerateInputError(
                f"Samples labelled more than once in sample sheet: {_preview(dups)}",
                {'sample_ids': dups}
            )

        unlabelled = df.filter(pl.col(group_column).is_null())[sample_column].cast(pl.Utf8).to_list()
        if unlabelled:
            raise DegenerateInputError(
                f"Samples without a group label: {_preview(unlabelled)}",
                {'sample_ids': unlabelled}
            )

        return cls(dict(zip(samples, df[group_column].cast(pl.Utf8).to_list())))

    def groups(self) -> List[str]:
        return sorted(set(self.labels.values()))

    def samples_in(self, group: str, order: Optional[Sequence[str]] = None) -> List[str]:
        """
        Samples carrying ``group``.

        Args:
            group: Group label
            order: Optional sample order to follow (e.g. count matrix columns)

        Returns:
            List of sample identifiers
        """
        order = order if order is not None else list(self.labels.keys())
        return [s for s in order if self.labels.get(s) == group]

    def validate(
        self,
        sample_ids: Sequence[str],
        group_a: str,
        group_b: str,
        min_replicates: int = 2
    ) -> None:
        """
        Check that the labels support a two-group comparison of ``sample_ids``.

        Args:
            sample_ids: Samples of the count matrix being analysed
            group_a: Reference group label
            group_b: Comparison group label
            min_replicates: Minimum number of samples per group

        Raises:
            DegenerateInputError: If a sample is unlabelled, the label set is not
                exactly {group_a, group_b}, or a group has too few replicates
        """
        if group_a == group_b:
            raise DegenerateInputError(
                f"Cannot compare group '{group_a}' with itself",
                {'group_a': group_a, 'group_b': group_b}
            )

        unlabelled = [s for s in sample_ids if s not in self.labels]
        if unlabelled:
            raise DegenerateInputError(
                f"Samples in count matrix without a group label: {_preview(unlabelled)}",
                {'sample_ids': unlabelled}
            )

        levels = sorted({self.labels[s] for s in sample_ids})
        if set(levels) != {group_a, group_b}:
            raise DegenerateInputError(
                f"Sample labels {levels} do not match the compared groups "
                f"'{group_a}' and '{group_b}'",
                {'labels': levels, 'group_a': group_a, 'group_b': group_b}
            )

        for group in (group_a, group_b):
            members = self.samples_in(group, sample_ids)
            if len(members) < min_replicates:
                raise DegenerateInputError(
                    f"Group '{group}' has {len(members)} sample(s); at least "
                    f"{min_replicates} replicates are required",
                    {'group': group, 'sample_ids': members, 'min_replicates': min_replicates}
                )

        extra = [s for s in self.labels if s not in set(sample_ids)]
        if extra:
            logger.debug(f"Ignoring {len(extra)} labelled sample(s) absent from the count matrix")


@dataclass(frozen=True)
class GeneSet:
    """Named, immutable set of gene identifiers."""

    name: str
    genes: FrozenSet[str]
    description: str = ''

    def __post_init__(self):
        object.__setattr__(self, 'genes', frozenset(str(g) for g in self.genes))

    def __len__(self) -> int:
        return len(self.genes)


@dataclass(frozen=True)
class MappingReport:
    """Audit trail of an identifier translation over a gene set collection."""

    total_identifiers: int
    mapped_identifiers: int
    unmatched: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    @property
    def n_unmatched(self) -> int:
        return self.total_identifiers - self.mapped_identifiers


def filter_low_counts(counts: CountMatrix, threshold: int = 1) -> CountMatrix:
    """
    Drop genes whose total count across all samples is <= ``threshold``.

    Args:
        counts: Raw count matrix
        threshold: Genes with total count at or below this value are removed

    Returns:
        New CountMatrix without the low-count genes
    """
    if threshold < 0:
        raise ConfigurationError(
            f"Low-count filter threshold must be non-negative, got {threshold}",
            {'threshold': threshold}
        )

    totals = counts.counts.sum(axis=1)
    keep = totals > threshold
    n_dropped = int((~keep).sum())
    logger.info(
        f"Low-count filter (total <= {threshold}) removed {n_dropped} of "
        f"{counts.n_genes} genes"
    )

    return CountMatrix(
        gene_ids=tuple(g for g, k in zip(counts.gene_ids, keep) if k),
        sample_ids=counts.sample_ids,
        counts=counts.counts[keep]
    )


def map_gene_set_identifiers(
    gene_sets: Iterable[GeneSet],
    mapping: Mapping[str, str]
) -> Tuple[Tuple[GeneSet, ...], MappingReport]:
    """
    Translate gene set members into the count table's identifier namespace.

    Identifiers without a mapping are dropped and reported, never silently lost.

    Args:
        gene_sets: Gene sets in the source namespace
        mapping: Source identifier -> target identifier

    Returns:
        Tuple of (translated gene sets, mapping report)
    """
    translated = []
    unmatched: Dict[str, Tuple[str, ...]] = {}
    total = 0
    mapped = 0

    for gene_set in gene_sets:
        members = sorted(gene_set.genes)
        hits = [mapping[g] for g in members if g in mapping]
        misses = tuple(g for g in members if g not in mapping)
        total += len(members)
        mapped += len(hits)
        if misses:
            unmatched[gene_set.name] = misses
            logger.debug(f"Gene set '{gene_set.name}': {len(misses)} of {len(members)} identifiers unmapped")
        translated.append(GeneSet(gene_set.name, frozenset(hits), gene_set.description))

    report = MappingReport(total, mapped, MappingProxyType(unmatched))
    logger.info(
        f"Identifier mapping translated {report.mapped_identifiers} of "
        f"{report.total_identifiers} gene set members; {report.n_unmatched} unmatched "
        f"across {len(unmatched)} set(s)"
    )
    return tuple(translated), report


def _separator_for(file_path: Path) -> str:
    return ',' if Path(file_path).suffix.lower() == '.csv' else '\t'


def load_counts(file_path: Union[str, Path], gene_column: Optional[str] = None) -> CountMatrix:
    """
    Load a count table.

    Args:
        file_path: Path to a tab-separated (or .csv) count table with genes as rows
        gene_column: Gene identifier column; defaults to the first column

    Returns:
        CountMatrix
    """
    df = pl.read_csv(
        file_path,
        separator=_separator_for(file_path),
        has_header=True
    )
    gene_column = gene_column or df.columns[0]
    counts = CountMatrix.from_polars(df, gene_column=gene_column)
    logger.info(f"Loaded {counts.n_genes} genes x {counts.n_samples} samples from {file_path}")
    return counts


def load_sample_sheet(
    file_path: Union[str, Path],
    sample_column: str = 'sample_id',
    group_column: str = 'condition'
) -> SampleMetadata:
    """
    Load the sample to condition mapping.

    Args:
        file_path: Path to sample sheet
        sample_column: Column holding sample identifiers
        group_column: Column holding condition labels

    Returns:
        SampleMetadata
    """
    df = pl.read_csv(
        file_path,
        separator=_separator_for(file_path),
        has_header=True,
        infer_schema_length=0
    )
    return SampleMetadata.from_polars(df, sample_column, group_column)


def load_gene_sets(file_path: Union[str, Path]) -> Tuple[GeneSet, ...]:
    """
    Load gene sets from a GMT file.

    Each line holds a set name, a description and one gene identifier per
    remaining tab-separated field.

    Args:
        file_path: Path to GMT file

    Returns:
        Tuple of GeneSet in file order
    """
    gene_sets = []
    seen = set()
    with open(file_path) as f:
        for line_no, line in enumerate(f, start=1):
            line = line.rstrip('\n\r')
            if not line.strip() or line.startswith('#'):
                continue
            fields = line.split('\t')
            if len(fields) < 2:
                logger.warning(f"Skipping malformed GMT line {line_no} in {file_path}")
                continue
            name = fields[0].strip()
            if name in seen:
                raise DegenerateInputError(
                    f"Duplicate gene set name '{name}' at line {line_no} of {file_path}",
                    {'set_name': name, 'line': line_no}
                )
            seen.add(name)
            genes = frozenset(g.strip() for g in fields[2:] if g.strip())
            gene_sets.append(GeneSet(name, genes, fields[1].strip()))

    logger.info(f"Loaded {len(gene_sets)} gene sets from {file_path}")
    return tuple(gene_sets)


def load_id_mapping(
    file_path: Union[str, Path],
    source_column: str = 'source',
    target_column: str = 'target'
) -> Dict[str, str]:
    """
    Load a one-to-one identifier mapping table.

    Args:
        file_path: Path to mapping file
        source_column: Column holding gene set identifiers
        target_column: Column holding count table identifiers

    Returns:
        Dictionary mapping source to target identifiers; for a source listed
        more than once the first target wins
    """
    df = pl.read_csv(
        file_path,
        separator=_separator_for(file_path),
        has_header=True,
        columns=[source_column, target_column],
        infer_schema_length=0
    ).drop_nulls()

    mapping: Dict[str, str] = {}
    conflicts = 0
    for source, target in df.iter_rows():
        if source in mapping:
            if mapping[source] != target:
                conflicts += 1
            continue
        mapping[source] = target

    if conflicts:
        logger.warning(f"{conflicts} identifier(s) in {file_path} map to more than one target; kept the first")
    logger.info(f"Loaded {len(mapping)} identifier mappings from {file_path}")
    return mapping
