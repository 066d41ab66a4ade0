"""
Utility functions for preparing gene sets and statistic matrices.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
import logging
import math
from pathlib import Path

import numpy as np
import polars as pl
from scipy import sparse

from setsig.errors import InvalidInputError

logger = logging.getLogger(__name__)


def _is_missing(element) -> bool:
    """Check whether a set element is a missing or empty identifier."""
    if element is None:
        return True
    if isinstance(element, float) and math.isnan(element):
        return True
    return isinstance(element, str) and element == ""


def prepare_sets(sets: Mapping[str, Iterable[str]]) -> pl.DataFrame:
    """
    Flatten a named collection of sets into a (set, element) relation.

    Missing and empty identifiers are dropped and duplicated elements
    within a set are collapsed. Sets with no remaining elements do not
    appear in the relation.

    Args:
        sets: Mapping from set name to a collection of element identifiers

    Returns:
        DataFrame with columns 'sets' and 'elements', one row per distinct
        (set, element) pair in order of first appearance
    """
    if not isinstance(sets, Mapping):
        raise InvalidInputError("`sets` must be a mapping of set names to element lists")

    set_col: List[str] = []
    element_col: List[str] = []
    for name, elements in sets.items():
        if not isinstance(name, str) or name == "":
            raise InvalidInputError("All sets must have non-empty string names")

        # A bare string is a single element, not a sequence of characters
        if isinstance(elements, str):
            elements = [elements]

        for element in elements:
            if _is_missing(element):
                continue
            set_col.append(name)
            element_col.append(str(element))

    return pl.DataFrame(
        {'sets': set_col, 'elements': element_col},
        schema={'sets': pl.Utf8, 'elements': pl.Utf8}
    ).unique(maintain_order=True)


def build_incidence(
    relation: pl.DataFrame,
    elements: Optional[Sequence[str]] = None
) -> Tuple[sparse.csr_matrix, List[str], List[str]]:
    """
    Build a sparse set-by-element incidence matrix.

    Args:
        relation: DataFrame with 'sets' and 'elements' columns (see prepare_sets)
        elements: Column labels of the matrix. Elements of the relation not in
            this sequence are ignored; elements in it but in no set give
            all-zero columns. Defaults to the relation's elements.

    Returns:
        Tuple of (incidence matrix, set names, element names)
    """
    if elements is None:
        elements = relation['elements'].unique(maintain_order=True).to_list()
    else:
        elements = list(elements)

    relation = relation.filter(pl.col('elements').is_in(elements))
    set_names = relation['sets'].unique(maintain_order=True).to_list()

    columns = pl.DataFrame(
        {'elements': elements, 'col': np.arange(len(elements), dtype=np.int64)},
        schema={'elements': pl.Utf8, 'col': pl.Int64}
    )
    relation = relation.join(columns, on='elements', how='inner')
    rows = pl.DataFrame(
        {'sets': set_names, 'row': np.arange(len(set_names), dtype=np.int64)},
        schema={'sets': pl.Utf8, 'row': pl.Int64}
    )
    relation = relation.join(rows, on='sets', how='inner')

    imat = sparse.csr_matrix(
        (
            np.ones(relation.height, dtype=np.float64),
            (relation['row'].to_numpy(), relation['col'].to_numpy())
        ),
        shape=(len(set_names), len(elements))
    )
    return imat, set_names, elements


def filter_sets(
    sets: Mapping[str, Iterable[str]],
    background: Optional[Iterable[str]] = None,
    min_size: int = 1,
    max_size: Union[int, float] = float('inf')
) -> Dict[str, List[str]]:
    """
    Restrict sets to a background and filter them by size.

    Args:
        sets: Mapping from set name to element identifiers
        background: Optional collection of identifiers each set is restricted to
        min_size: Minimum number of elements a set must keep
        max_size: Maximum number of elements a set may keep

    Returns:
        Dictionary of the surviving sets with cleaned, deduplicated elements
    """
    if min_size < 1:
        raise InvalidInputError("`min_size` must be at least 1")
    if min_size > max_size:
        raise InvalidInputError("`min_size` must not be greater than `max_size`")

    relation = prepare_sets(sets)
    if background is not None:
        relation = relation.filter(pl.col('elements').is_in(list(background)))

    sizes = relation.group_by('sets', maintain_order=True).agg(pl.len().alias('n'))
    keep = sizes.filter((pl.col('n') >= min_size) & (pl.col('n') <= max_size))['sets']
    relation = relation.filter(pl.col('sets').is_in(keep))

    filtered: Dict[str, List[str]] = {}
    for name, element in relation.iter_rows():
        filtered.setdefault(name, []).append(element)

    logger.debug(f"Kept {len(filtered)} of {len(sets)} sets after size filtering")
    return filtered


def validate_statistic_matrix(
    statistic: pl.DataFrame,
    gene_col: str = 'gene_id'
) -> Tuple[List[str], List[str], np.ndarray]:
    """
    Check a statistic matrix and extract its values.

    Args:
        statistic: DataFrame with a gene identifier column and one numeric
            column per contrast
        gene_col: Name of the gene identifier column

    Returns:
        Tuple of (gene ids, contrast names, float matrix with NaN for missing values)
    """
    if not isinstance(statistic, pl.DataFrame):
        raise InvalidInputError("`statistic` must be a polars DataFrame")

    if gene_col not in statistic.columns:
        raise InvalidInputError(
            f"`statistic` must have row names: identifier column '{gene_col}' not found"
        )

    contrasts = [col for col in statistic.columns if col != gene_col]
    if not contrasts:
        raise InvalidInputError("`statistic` must have at least one contrast column")

    non_numeric = [col for col in contrasts if not statistic.schema[col].is_numeric()]
    if non_numeric:
        raise InvalidInputError(
            f"`statistic` must be numeric; non-numeric columns: {', '.join(non_numeric)}"
        )

    genes = statistic[gene_col].cast(pl.Utf8)
    if genes.null_count() > 0:
        raise InvalidInputError("`statistic` row names must not be missing")
    if genes.n_unique() != statistic.height:
        raise InvalidInputError("`statistic` row names must be unique")

    values = statistic.select(
        [pl.col(col).cast(pl.Float64) for col in contrasts]
    ).to_numpy().astype(np.float64)

    n_present = np.sum(~np.isnan(values), axis=0)
    if np.any(n_present < 3):
        raise InvalidInputError(
            "Each column of `statistic` must have at least 3 non-missing values"
        )

    return genes.to_list(), contrasts, values


def load_statistic_matrix(file_path: Path, gene_col: str = 'gene_id') -> pl.DataFrame:
    """
    Load a matrix of per-gene statistics.

    Args:
        file_path: Path to a tab-delimited file with a gene identifier column
            and one column per contrast
        gene_col: Name of the gene identifier column

    Returns:
        DataFrame with the identifier column and Float64 contrast columns
    """
    df = pl.read_csv(
        file_path,
        separator='\t',
        has_header=True,
        null_values=['NA', ''],
        infer_schema_length=10000
    )

    if gene_col not in df.columns:
        raise InvalidInputError(f"Column '{gene_col}' not found in {file_path}")

    contrasts = [col for col in df.columns if col != gene_col]
    df = df.with_columns(
        [pl.col(gene_col).cast(pl.Utf8)] +
        [pl.col(col).cast(pl.Float64) for col in contrasts]
    )
    logger.info(f"Loaded statistics for {df.height} genes and {len(contrasts)} contrast(s)")
    return df


def load_gmt(file_path: Path) -> Dict[str, List[str]]:
    """
    Load gene sets from a GMT file.

    Args:
        file_path: Path to GMT file (name, description, then one gene per field)

    Returns:
        Dictionary mapping set names to gene identifiers
    """
    sets: Dict[str, List[str]] = {}
    with open(file_path, 'r') as f:
        for line_number, line in enumerate(f, start=1):
            line = line.rstrip('\r\n')
            if not line.strip():
                continue
            fields = line.split('\t')
            if len(fields) < 2:
                raise InvalidInputError(
                    f"Malformed GMT line {line_number} in {file_path}: expected at least 2 fields"
                )
            name = fields[0]
            if name in sets:
                logger.warning(f"Duplicate set name '{name}' in {file_path}; merging elements")
            sets.setdefault(name, []).extend(gene for gene in fields[2:] if gene)

    logger.info(f"Loaded {len(sets)} gene sets from {file_path}")
    return sets


def write_gmt(
    sets: Mapping[str, Iterable[str]],
    file_path: Path,
    descriptions: Optional[Mapping[str, str]] = None
) -> None:
    """
    Write gene sets to a GMT file.

    Args:
        sets: Mapping from set name to gene identifiers
        file_path: Output path
        descriptions: Optional mapping from set name to description
    """
    descriptions = descriptions or {}
    relation = prepare_sets(sets)
    with open(file_path, 'w') as f:
        for (name,), group in relation.group_by('sets', maintain_order=True):
            fields = [name, descriptions.get(name, 'NA')] + group['elements'].to_list()
            f.write('\t'.join(fields) + '\n')
