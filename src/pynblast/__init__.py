"""pynblast: NBLAST morphological similarity scoring for neuron point clouds."""

try:
    from ._version import version as __version__
except ImportError:
    __version__ = "unknown"

from .batch import ScoreMatrix, batch_score
from .dotprops import DEFAULT_K, DotProp, build_dotprop, build_dotprops
from .errors import (
    BatchCancelledError,
    DegenerateNeighborhoodError,
    EmptyDotPropError,
    EmptyInputError,
    InsufficientPointsError,
    InvalidScoreTableError,
    NblastError,
)
from .parquet import dotprops_from_parquet, read_point_clouds
from .score_table import ScoreTable, load_score_table, lookup
from .scoring import (
    combine_scores,
    dist_dots,
    pairwise_score,
    raw_score,
    self_score,
    symmetric_score,
)
from .spatial import (
    BruteForceIndex,
    KDTreeIndex,
    SpatialIndex,
    build_index,
    k_nearest,
    nearest,
)

__all__ = [
    "__version__",
    # Spatial index
    "SpatialIndex",
    "KDTreeIndex",
    "BruteForceIndex",
    "build_index",
    "nearest",
    "k_nearest",
    # DotProp construction
    "DEFAULT_K",
    "DotProp",
    "build_dotprop",
    "build_dotprops",
    # Score table
    "ScoreTable",
    "load_score_table",
    "lookup",
    # Pairwise scoring
    "dist_dots",
    "raw_score",
    "self_score",
    "pairwise_score",
    "symmetric_score",
    "combine_scores",
    # Batch scoring
    "ScoreMatrix",
    "batch_score",
    # Point tables
    "read_point_clouds",
    "dotprops_from_parquet",
    # Errors
    "NblastError",
    "EmptyInputError",
    "InsufficientPointsError",
    "DegenerateNeighborhoodError",
    "EmptyDotPropError",
    "InvalidScoreTableError",
    "BatchCancelledError",
]
