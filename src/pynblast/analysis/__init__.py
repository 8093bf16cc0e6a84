"""Downstream analysis of NBLAST score matrices."""

from .clustering import (
    ClusterResult,
    cluster_scores,
    compute_linkage,
    extract_clusters,
    symmetric_similarity,
)

__all__ = [
    "ClusterResult",
    "cluster_scores",
    "compute_linkage",
    "extract_clusters",
    "symmetric_similarity",
]
