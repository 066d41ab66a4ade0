"""
Similarity-based clustering of sets.

Groups highly similar (redundant) sets so that near-duplicates can be
removed before testing. Follows the procedure used to reduce the redundancy
of the Reactome and Gene Ontology collections of MSigDB v7.0: pairwise
similarities below a cutoff are set to 0, the dissimilarities (1 - similarity)
are clustered with complete linkage and the tree is cut at height 0.9.
"""

from typing import Dict, Iterable, List, Mapping, Tuple
import logging
import math

import numpy as np
import polars as pl
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform

from setsig.data import build_incidence, prepare_sets
from setsig.errors import InvalidInputError


logger = logging.getLogger(__name__)


SIMILARITY_TYPES = ('jaccard', 'overlap', 'otsuka')

# hclust method names mapped to scipy linkage methods
_LINKAGE_METHODS: Dict[str, str] = {
    'single': 'single',
    'complete': 'complete',
    'average': 'average',
    'weighted': 'weighted',
    'mcquitty': 'weighted',
    'centroid': 'centroid',
    'median': 'median',
    'ward': 'ward',
    'ward.D2': 'ward',
}


def _check_type(type: str) -> str:
    if type not in SIMILARITY_TYPES:
        raise InvalidInputError(
            f"Unknown similarity type '{type}'. Choose one of: {', '.join(SIMILARITY_TYPES)}"
        )
    return type


def _sorted_relation(sets: Mapping[str, Iterable[str]]) -> pl.DataFrame:
    """Element relation with sets in alphanumeric order of their names."""
    relation = prepare_sets(sets)
    names = sorted(relation['sets'].unique().to_list())
    order = pl.DataFrame({'sets': names, '_order': np.arange(len(names))},
                         schema={'sets': pl.Utf8, '_order': pl.Int64})
    return (
        relation
        .with_row_index('_row')
        .join(order, on='sets', how='inner')
        .sort(['_order', '_row'])
        .drop(['_order', '_row'])
    )


def _similarity_from_relation(relation: pl.DataFrame, type: str) -> Tuple[np.ndarray, List[str], np.ndarray]:
    imat, set_names, _ = build_incidence(relation)
    intersection = (imat @ imat.T).toarray()
    sizes = np.diag(intersection).copy()

    n1 = sizes[:, np.newaxis]
    n2 = sizes[np.newaxis, :]
    if type == 'jaccard':
        denominator = n1 + n2 - intersection
    elif type == 'overlap':
        denominator = np.minimum(n1, n2)
    else:
        denominator = np.sqrt(n1 * n2)

    return intersection / denominator, set_names, sizes


def pairwise_similarity(
    sets: Mapping[str, Iterable[str]],
    type: str = 'jaccard'
) -> Tuple[np.ndarray, List[str]]:
    """
    Calculate all pairwise similarity coefficients between sets.

    For sets A and B the coefficients are:

    - jaccard: |A & B| / |A | B|
    - overlap: |A & B| / min(|A|, |B|)
    - otsuka:  |A & B| / sqrt(|A| * |B|)

    Args:
        sets: Mapping from set name to element identifiers
        type: Similarity coefficient ('jaccard', 'overlap' or 'otsuka')

    Returns:
        Tuple of (symmetric similarity matrix, set names in alphanumeric order)
    """
    _check_type(type)
    similarity, set_names, _ = _similarity_from_relation(_sorted_relation(sets), type)
    return similarity, set_names


def minimum_set_sizes(cutoff: float, type: str = 'jaccard') -> Tuple[int, int, int]:
    """
    Minimum set and intersection sizes needed to reach a similarity cutoff.

    Sets smaller than this always end up as singleton clusters unless they
    are aliased or, for the overlap coefficient, subsets of another set.

    Args:
        cutoff: Similarity cutoff in [0, 1)
        type: Similarity coefficient ('jaccard', 'overlap' or 'otsuka')

    Returns:
        Tuple of (size of the smaller set, size of the larger set, intersection size)
    """
    _check_type(type)
    if not 0 <= cutoff < 1:
        raise InvalidInputError("`cutoff` must be at least 0 and less than 1")

    if type == 'jaccard':
        n1 = math.ceil(cutoff / (1 - cutoff))
        return n1, n1 + 1, n1
    if type == 'overlap':
        n1 = 1 + math.ceil(cutoff / (1 - cutoff))
        return n1, n1, n1 - 1
    n1 = math.ceil(cutoff ** 2 / (1 - cutoff ** 2))
    return n1, n1 + 1, n1


def _number_by_appearance(labels: np.ndarray) -> np.ndarray:
    """Renumber cluster labels 1, 2, ... in order of first appearance."""
    _, first, inverse = np.unique(labels, return_index=True, return_inverse=True)
    rank = np.empty(len(first), dtype=np.int64)
    rank[np.argsort(first)] = np.arange(1, len(first) + 1)
    return rank[inverse]


def cluster_sets(
    sets: Mapping[str, Iterable[str]],
    type: str = 'jaccard',
    cutoff: float = 0.85,
    method: str = 'complete',
    h: float = 0.9
) -> pl.DataFrame:
    """
    Determine clusters of highly similar sets.

    Only sets that reach ``cutoff`` with at least one other set are clustered;
    the remaining sets are appended as singleton clusters.

    Args:
        sets: Mapping from set name to element identifiers
        type: Similarity coefficient ('jaccard', 'overlap' or 'otsuka')
        cutoff: Minimum similarity for two sets to count as similar
        method: Linkage method. With the default 'complete', sets only share
            a cluster when their similarity to every other set in it is at
            least ``cutoff``.
        h: Height at which the tree is cut to define clusters

    Returns:
        DataFrame with columns set, cluster and set_size, sorted by cluster,
        then by descending set size, then by set name
    """
    _check_type(type)
    if not 0 <= cutoff <= 1:
        raise InvalidInputError("`cutoff` must be between 0 and 1")
    if method not in _LINKAGE_METHODS:
        raise InvalidInputError(
            f"Unknown linkage method '{method}'. Choose one of: {', '.join(_LINKAGE_METHODS)}"
        )

    similarity, set_names, sizes = _similarity_from_relation(_sorted_relation(sets), type)
    np.fill_diagonal(similarity, 0)
    similarity[similarity < cutoff] = 0

    # Sets similar to at least one other set
    connected = np.any(similarity > 0, axis=1)
    names = np.array(set_names, dtype=object)

    if not np.any(connected):
        logger.info("No pair of sets passes the similarity cutoff.")
        clusters = pl.DataFrame({
            'set': set_names,
            'cluster': np.arange(1, len(set_names) + 1, dtype=np.int64),
            'set_size': sizes.astype(np.int64),
        }, schema={'set': pl.Utf8, 'cluster': pl.Int64, 'set_size': pl.Int64})
    else:
        dissimilarity = 1 - similarity[np.ix_(connected, connected)]
        np.fill_diagonal(dissimilarity, 0)
        tree = linkage(squareform(dissimilarity, checks=False), method=_LINKAGE_METHODS[method])
        labels = _number_by_appearance(fcluster(tree, t=h, criterion='distance'))

        n_isolated = int(np.sum(~connected))
        logger.debug(f"Clustered {int(np.sum(connected))} connected sets; "
                     f"{n_isolated} sets are singletons")

        clusters = pl.DataFrame({
            'set': list(names[connected]) + list(names[~connected]),
            'cluster': np.concatenate([
                labels,
                labels.max() + np.arange(1, n_isolated + 1, dtype=np.int64)
            ]),
            'set_size': np.concatenate([sizes[connected], sizes[~connected]]).astype(np.int64),
        }, schema={'set': pl.Utf8, 'cluster': pl.Int64, 'set_size': pl.Int64})

    return clusters.sort(['cluster', 'set_size', 'set'], descending=[False, True, False])


def select_representatives(clusters: pl.DataFrame, largest: bool = True) -> List[str]:
    """
    Pick one set from each cluster.

    Args:
        clusters: Output of cluster_sets
        largest: Keep the largest set of each cluster (ties broken by name);
            otherwise keep the smallest

    Returns:
        Names of the selected sets in cluster order
    """
    ordered = clusters.sort(['cluster', 'set_size', 'set'], descending=[False, largest, False])
    return ordered.unique(subset='cluster', keep='first', maintain_order=True)['set'].to_list()
