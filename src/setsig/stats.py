"""
Statistical functions for competitive gene set testing.

Implements CAMERA-PR, the pre-ranked Correlation Adjusted MEan RAnk gene set
test (Wu & Smyth, 2012), for a matrix of per-gene statistics with one column
per contrast. Each set is compared with the genes outside it using either a
two-sample t-test or a Wilcoxon-Mann-Whitney rank-sum test, with the variance
inflated for the assumed correlation between genes in the set.

All per-set aggregates (set sizes, sums of statistics, sums of ranks) are
computed for every set and contrast at once by multiplying the sparse
set-by-gene incidence matrix with a dense gene-by-contrast matrix.

References:
    Wu, D., and Smyth, G. K. (2012). Camera: a competitive gene set test
    accounting for inter-gene correlation. Nucleic Acids Research 40, e133.
"""

from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Tuple, Union
import logging
import warnings

import numba as nb
import numpy as np
import polars as pl
from scipy import sparse, stats
from statsmodels.stats.multitest import multipletests

from setsig.data import build_incidence, prepare_sets, validate_statistic_matrix
from setsig.errors import AllSetsDroppedError, DroppedSetsWarning, InvalidInputError


logger = logging.getLogger(__name__)


@nb.njit
def _tie_sum(sorted_values):
    """
    Sum t(t+1)(t-1) over groups of tied values.

    Args:
        sorted_values: Sorted array without missing values

    Returns:
        The tie term of the rank-sum variance (0 when there are no ties)
    """
    total = 0.0
    n = len(sorted_values)
    i = 0
    while i < n:
        j = i + 1
        while j < n and sorted_values[j] == sorted_values[i]:
            j += 1
        t = j - i
        total += t * (t + 1) * (t - 1)
        i = j
    return total


def _rank_columns(values: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Rank each column, ignoring missing values.

    Args:
        values: Gene-by-contrast matrix with NaN for missing values

    Returns:
        Tuple of (average ranks with 0 in place of missing values,
        tie term for each column)
    """
    ranks = np.zeros_like(values)
    ties = np.zeros(values.shape[1])
    for j in range(values.shape[1]):
        present = ~np.isnan(values[:, j])
        column = values[present, j]
        ranks[present, j] = stats.rankdata(column, method='average')
        ties[j] = _tie_sum(np.sort(column))
    return ranks, ties


class SetTestResult(NamedTuple):
    """Set-by-contrast results of a set test."""
    statistic: np.ndarray
    p_up: np.ndarray
    p_down: np.ndarray
    df: Optional[np.ndarray] = None


def rank_set_test(
    values: np.ndarray,
    imat: sparse.csr_matrix,
    m: np.ndarray,
    G: np.ndarray,
    correlation: np.ndarray
) -> SetTestResult:
    """
    Correlation-adjusted Wilcoxon-Mann-Whitney test of every set in every contrast.

    Args:
        values: Gene-by-contrast statistics with NaN for missing values
        imat: Set-by-gene incidence matrix
        m: Set-by-contrast number of set genes with a non-missing statistic
        G: Number of non-missing statistics in each contrast
        correlation: Inter-gene correlation of each set

    Returns:
        SetTestResult with standard normal z-statistics
    """
    ranks, ties = _rank_columns(values)

    m2 = G - m
    sum_ranks_in_set = imat @ ranks
    m_prod = m * m2
    U = m_prod + m * (m + 1) / 2 - sum_ranks_in_set
    mu = 0.5 * m_prod

    rho = correlation[:, np.newaxis]
    sigma2 = (
        np.arcsin(1)
        + (m2 - 1) * (np.arcsin(0.5) + (m - 1) * np.arcsin(rho / 2))
        + (m - 1) * np.arcsin((rho + 1) / 2)
    )
    sigma2 = sigma2 * m_prod / 2 / np.pi

    # Exact variance of the rank sum when genes are independent
    zero_cor = correlation == 0
    if np.any(zero_cor):
        sigma2[zero_cor] = (m_prod * (G + 1) / 12)[zero_cor]

    sigma2 = sigma2 * (1 - ties / (m * (m + 1) * (m - 1)))

    with np.errstate(invalid='ignore', divide='ignore'):
        z_lower = (U + 0.5 - mu) / np.sqrt(sigma2)
        z_upper = (U - 0.5 - mu) / np.sqrt(sigma2)

    p_down = stats.norm.sf(z_upper)
    p_up = stats.norm.cdf(z_lower)

    return SetTestResult(
        statistic=np.where(p_down < p_up, z_upper, z_lower),
        p_up=p_up,
        p_down=p_down
    )


def parametric_set_test(
    values: np.ndarray,
    imat: sparse.csr_matrix,
    m: np.ndarray,
    G: np.ndarray,
    correlation: np.ndarray
) -> SetTestResult:
    """
    Correlation-adjusted two-sample t-test of every set in every contrast.

    Args:
        values: Gene-by-contrast statistics with NaN for missing values
        imat: Set-by-gene incidence matrix
        m: Set-by-contrast number of set genes with a non-missing statistic
        G: Number of non-missing statistics in each contrast
        correlation: Inter-gene correlation of each set

    Returns:
        SetTestResult with t-statistics and G - 2 degrees of freedom
    """
    mean_stat = np.nanmean(values, axis=0)
    var_stat = np.nanvar(values, axis=0, ddof=1)

    m2 = G - m
    df = G - 2
    vif = 1 + (m - 1) * correlation[:, np.newaxis]

    # Zero-filled so the incidence product gives the sum over non-missing values
    filled = np.where(np.isnan(values), 0.0, values)
    mean_stat_in_set = (imat @ filled) / m

    # Difference between the means of statistics in and not in the set
    delta = G / m2 * (mean_stat_in_set - mean_stat)

    # Pooled within-group variance, removing the between-group part
    var_stat_pooled = ((G - 1) * var_stat - delta ** 2 * m * m2 / G) / df

    with np.errstate(invalid='ignore', divide='ignore'):
        t_stat = delta / np.sqrt(var_stat_pooled * (vif / m + 1 / m2))

    df_mat = np.broadcast_to(df, t_stat.shape)
    return SetTestResult(
        statistic=t_stat,
        p_up=stats.t.sf(t_stat, df_mat),
        p_down=stats.t.cdf(t_stat, df_mat),
        df=df_mat
    )


SetTest = Callable[[np.ndarray, sparse.csr_matrix, np.ndarray, np.ndarray, np.ndarray], SetTestResult]

_SET_TESTS: Dict[bool, SetTest] = {
    True: rank_set_test,
    False: parametric_set_test,
}


def perform_fdr_analysis(p_values, alpha: float = 0.05) -> Dict[str, list]:
    """
    Perform Benjamini-Hochberg FDR analysis on p-values.

    Missing (NaN) p-values are left out of the adjustment and get a NaN
    adjusted value.

    Args:
        p_values: Array of p-values
        alpha: Significance level

    Returns:
        Dictionary with FDR results
    """
    if len(p_values) == 0:
        raise ValueError("Input p-values array cannot be empty")

    p_values = np.asarray(p_values, dtype=np.float64)
    present = ~np.isnan(p_values)
    reject = np.zeros(len(p_values), dtype=bool)
    pvals_corrected = np.full(len(p_values), np.nan)

    if np.any(present):
        reject[present], pvals_corrected[present], _, _ = multipletests(
            p_values[present],
            alpha=alpha,
            method='fdr_bh'
        )

    return {
        'reject': reject.astype(bool).tolist(),  # Convert to Python bool list
        'pvals_corrected': pvals_corrected.tolist()
    }


def _resolve_correlation(
    inter_gene_cor: Union[float, Mapping[str, float]],
    set_names: List[str]
) -> Tuple[np.ndarray, bool]:
    """
    Expand the inter-gene correlation to one value per set.

    Args:
        inter_gene_cor: Single correlation or mapping from set name to correlation
        set_names: Names of the sets being tested

    Returns:
        Tuple of (correlation of each set, whether a single value was given)
    """
    if inter_gene_cor is None:
        raise InvalidInputError("Missing or None `inter_gene_cor` not allowed")

    fixed = not isinstance(inter_gene_cor, Mapping)
    supplied = [inter_gene_cor] if fixed else list(inter_gene_cor.values())

    try:
        supplied = np.asarray(supplied, dtype=np.float64)
    except (TypeError, ValueError):
        raise InvalidInputError("`inter_gene_cor` must be numeric")

    if np.any(np.isnan(supplied)):
        raise InvalidInputError("Missing or None `inter_gene_cor` not allowed")

    if np.any(np.abs(supplied) >= 1):
        raise InvalidInputError("`inter_gene_cor` must be between -1 and 1")

    if fixed:
        return np.full(len(set_names), supplied[0]), True

    missing = [name for name in set_names if name not in inter_gene_cor]
    if missing:
        raise InvalidInputError(
            "Length of `inter_gene_cor` must be 1 or the same length as `sets`. "
            f"If the latter, its names must match the set names; missing: {', '.join(missing[:5])}"
        )

    return np.array([float(inter_gene_cor[name]) for name in set_names]), False


def _assemble_results(
    contrasts: List[str],
    set_names: List[str],
    m: np.ndarray,
    correlation: Optional[np.ndarray],
    result: SetTestResult,
    sort: bool,
    adjust_globally: bool
) -> pl.DataFrame:
    """Build one table per contrast and combine them in contrast order."""
    n_sets = len(set_names)
    n_records = n_sets * len(contrasts)

    # The rank test's continuity correction can make p_up + p_down exceed 1
    p_value = np.minimum(2 * np.minimum(result.p_up, result.p_down), 1.0)
    direction = np.where(result.p_down < result.p_up, 'Down', 'Up')
    contrast_dtype = pl.Enum(contrasts)

    frames = []
    for j, contrast in enumerate(contrasts):
        columns = {
            'Contrast': pl.Series([contrast] * n_sets, dtype=contrast_dtype),
            'GeneSet': pl.Series(set_names, dtype=pl.Utf8),
            'NGenes': pl.Series(m[:, j].astype(np.int64)),
        }
        if correlation is not None:
            columns['Correlation'] = pl.Series(correlation, dtype=pl.Float64)
        columns['Direction'] = pl.Series(direction[:, j].tolist(), dtype=pl.Utf8)
        columns['Statistic'] = pl.Series(result.statistic[:, j], dtype=pl.Float64)
        if result.df is not None:
            columns['df'] = pl.Series(result.df[:, j].astype(np.int64))
        columns['PValue'] = pl.Series(p_value[:, j], dtype=pl.Float64)
        frame = pl.DataFrame(columns)

        if n_records > 1 and not adjust_globally and n_sets > 1:
            fdr = perform_fdr_analysis(p_value[:, j])['pvals_corrected']
            frame = frame.with_columns(pl.Series('FDR', fdr, dtype=pl.Float64))

        if n_records > 1 and sort:
            frame = frame.sort('PValue', maintain_order=True)

        frames.append(frame)

    table = pl.concat(frames)

    # Adjust p-values across all contrasts together
    if n_records > 1 and adjust_globally:
        fdr = perform_fdr_analysis(table['PValue'].to_numpy())['pvals_corrected']
        table = table.with_columns(pl.Series('FDR', fdr, dtype=pl.Float64))

    return table


def camera_pr(
    statistic: pl.DataFrame,
    sets: Mapping[str, List[str]],
    use_ranks: bool = False,
    inter_gene_cor: Union[float, Mapping[str, float]] = 0.01,
    sort: bool = True,
    adjust_globally: bool = False,
    gene_col: str = 'gene_id'
) -> pl.DataFrame:
    """
    Competitive gene set test accounting for inter-gene correlation.

    Tests whether the genes of each set are highly (or lowly) ranked relative
    to the other genes in terms of a differential expression statistic, for
    every column (contrast) of ``statistic``. Genes that belong to no set are
    kept as background: they count toward the number of genes outside every
    set.

    Args:
        statistic: DataFrame with a gene identifier column and one numeric
            column of statistics (e.g. moderated t-statistics, possibly
            missing) per contrast
        sets: Mapping from set name to gene identifiers
        use_ranks: Perform a rank-based test instead of a parametric one
        inter_gene_cor: Inter-gene correlation within tested sets, either a
            single value or a mapping from set name to value
        sort: Sort the results of each contrast by p-value
        adjust_globally: Adjust p-values from all contrasts together instead
            of separately within each contrast
        gene_col: Name of the gene identifier column of ``statistic``

    Returns:
        DataFrame with columns Contrast, GeneSet, NGenes, [Correlation],
        Direction, Statistic, [df], PValue and [FDR]. Correlation is only
        included when ``inter_gene_cor`` is a mapping, df only for the
        parametric test and FDR only when more than one record is returned.

    Raises:
        InvalidInputError: If an input fails a precondition
        AllSetsDroppedError: If no set has at least 2 and fewer than all
            non-missing genes in every contrast
    """
    genes, contrasts, values = validate_statistic_matrix(statistic, gene_col=gene_col)

    relation = prepare_sets(sets).filter(pl.col('elements').is_in(genes))
    if relation.height == 0:
        raise InvalidInputError("No genes in `sets` match the row names of `statistic`")

    # Columns for genes outside every set are all zero
    imat, set_names, _ = build_incidence(relation, genes)
    n_background = int(np.sum(np.asarray(imat.sum(axis=0)).ravel() == 0))
    logger.debug(f"Testing {len(set_names)} sets against {len(genes)} genes "
                 f"({n_background} genes are not in any set)")

    present = ~np.isnan(values)
    G = present.sum(axis=0).astype(np.float64)
    m = imat @ present.astype(np.float64)

    # Sets that are too small or too large in at least one contrast
    extreme = np.any((m < 2) | (m == G), axis=1)
    if np.any(extreme):
        if np.all(extreme):
            raise AllSetsDroppedError(
                "No sets have at least 2 and fewer than all non-missing genes in "
                f"every contrast. Check that the '{gene_col}' column of `statistic` "
                "matches genes in `sets`."
            )

        dropped = [name for name, is_extreme in zip(set_names, extreme) if is_extreme]
        warnings.warn(
            f"{len(dropped)} set(s) with fewer than 2 genes, or with every non-missing "
            f"gene, in at least one contrast will be dropped: {', '.join(dropped[:5])}"
            + (", ..." if len(dropped) > 5 else ""),
            DroppedSetsWarning,
            stacklevel=2
        )
        keep = np.flatnonzero(~extreme)
        imat = imat[keep]
        m = m[keep]
        set_names = [set_names[i] for i in keep]

    correlation, fixed_cor = _resolve_correlation(inter_gene_cor, set_names)

    logger.debug(f"Running {'rank-based' if use_ranks else 'parametric'} test of "
                 f"{len(set_names)} sets in {len(contrasts)} contrast(s)")
    result = _SET_TESTS[bool(use_ranks)](values, imat, m, G, correlation)

    return _assemble_results(
        contrasts,
        set_names,
        m,
        None if fixed_cor else correlation,
        result,
        sort=sort,
        adjust_globally=adjust_globally
    )
