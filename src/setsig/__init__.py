"""
setsig
======

Competitive gene set testing (CAMERA-PR) and similarity-based clustering
of redundant gene sets.
"""

from .errors import (
    SetSigError as SetSigError,
    InvalidInputError as InvalidInputError,
    AllSetsDroppedError as AllSetsDroppedError,
    DroppedSetsWarning as DroppedSetsWarning,
)
from .data import (
    prepare_sets as prepare_sets,
    build_incidence as build_incidence,
    filter_sets as filter_sets,
    load_statistic_matrix as load_statistic_matrix,
    load_gmt as load_gmt,
    write_gmt as write_gmt,
)
from .stats import (
    camera_pr as camera_pr,
    perform_fdr_analysis as perform_fdr_analysis,
)
from .cluster import (
    cluster_sets as cluster_sets,
    pairwise_similarity as pairwise_similarity,
    minimum_set_sizes as minimum_set_sizes,
    select_representatives as select_representatives,
)
from .config import PipelineConfig
from .pipeline import SetEnrichmentPipeline
from .utils import setup_logging as setup_logging, ensure_dir as ensure_dir

__version__ = "0.1.0"

__all__ = [
    "SetSigError",
    "InvalidInputError",
    "AllSetsDroppedError",
    "DroppedSetsWarning",
    "prepare_sets",
    "build_incidence",
    "filter_sets",
    "load_statistic_matrix",
    "load_gmt",
    "write_gmt",
    "camera_pr",
    "perform_fdr_analysis",
    "cluster_sets",
    "pairwise_similarity",
    "minimum_set_sizes",
    "select_representatives",
    "PipelineConfig",
    "SetEnrichmentPipeline",
    "setup_logging",
    "ensure_dir",
]
