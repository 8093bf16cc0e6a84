"""Hierarchical clustering of neurons by NBLAST score.

Scores are made symmetric (mean of both directions, each normalised by
its query's self score), turned into distances ``1 - s`` and clustered
with scipy's hierarchical linkage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
from scipy.cluster.hierarchy import fcluster, leaves_list, linkage
from scipy.spatial.distance import squareform

if TYPE_CHECKING:
    from collections.abc import Hashable

    from numpy.typing import NDArray

    from ..batch import ScoreMatrix

logger = logging.getLogger(__name__)


@dataclass
class ClusterResult:
    """Container for clustering results."""

    similarity_matrix: NDArray[np.float64]
    distance_matrix: NDArray[np.float64]
    linkage_matrix: NDArray[np.float64]
    neuron_ids: list[Hashable]
    reorder_indices: NDArray[np.intp]
    labels: NDArray[np.int32] = field(default_factory=lambda: np.array([], dtype=np.int32))


def symmetric_similarity(
    matrix: ScoreMatrix,
) -> tuple[list[Hashable], NDArray[np.float64]]:
    """Mean-symmetrised, normalised similarity from an all-by-all matrix.

    Parameters
    ----------
    matrix : ScoreMatrix
        Dense matrix with identical query and target ids. Raw scores are
        normalised row-wise by the diagonal (the self scores).

    Returns
    -------
    tuple[list, NDArray[np.float64]]
        (neuron_ids, similarity) with a 1.0 diagonal.

    Raises
    ------
    ValueError
        If the matrix is not square over the same ids, or has missing
        scores.
    """
    if matrix.query_ids != matrix.target_ids:
        raise ValueError("Clustering needs an all-by-all matrix over the same ids")
    values = np.array(matrix.values, dtype=np.float64)
    if not np.all(np.isfinite(values)):
        raise ValueError("Score matrix has missing or non-finite scores")

    if not matrix.normalized:
        self_hits = np.diag(values).copy()
        if np.any(self_hits == 0.0):
            raise ValueError("Cannot normalise raw scores with a zero self score")
        values = values / self_hits[:, np.newaxis]

    sim = (values + values.T) / 2.0
    np.fill_diagonal(sim, 1.0)
    return list(matrix.query_ids), sim


def compute_linkage(
    distance_matrix: NDArray[np.float64],
    method: str = "average",
) -> NDArray[np.float64]:
    """Linkage tree over NBLAST distances.

    Parameters
    ----------
    distance_matrix : NDArray[np.float64]
        Square, symmetric ``1 - similarity`` matrix from mean-symmetrised
        normalised NBLAST scores, clipped at 0 with a zero diagonal.
        Only the upper triangle is used.
    method : str
        Any :func:`scipy.cluster.hierarchy.linkage` method. ``"ward"`` and
        ``"centroid"`` assume Euclidean distances, which ``1 - s`` is not,
        so ``"average"`` is the usual choice for NBLAST.

    Returns
    -------
    NDArray[np.float64]
        (n - 1, 4) scipy linkage matrix; leaves are rows of
        ``distance_matrix``.
    """
    condensed = squareform(distance_matrix, checks=False)
    return linkage(condensed, method=method)


def extract_clusters(
    linkage_matrix: NDArray[np.float64],
    n_clusters: int,
) -> NDArray[np.int32]:
    """Flat cluster labels (1-indexed) from a linkage matrix."""
    return fcluster(linkage_matrix, t=n_clusters, criterion="maxclust").astype(np.int32)


def cluster_scores(
    matrix: ScoreMatrix,
    method: str = "average",
    n_clusters: int = 5,
) -> ClusterResult:
    """Cluster neurons from an all-by-all NBLAST score matrix.

    Parameters
    ----------
    matrix : ScoreMatrix
        Dense all-by-all matrix (see :func:`symmetric_similarity`).
    method : str
        Linkage method.
    n_clusters : int
        Number of clusters to extract via fcluster.

    Returns
    -------
    ClusterResult
        Complete clustering result.
    """
    neuron_ids, sim = symmetric_similarity(matrix)
    if len(neuron_ids) < 2:
        raise ValueError("Clustering needs at least two neurons")

    dist = np.maximum(1.0 - sim, 0.0)
    np.fill_diagonal(dist, 0.0)

    logger.info(
        f"Computing {method} linkage for {len(neuron_ids)} neurons, "
        f"distance range [{dist.min():.3f}, {dist.max():.3f}]"
    )

    Z = compute_linkage(dist, method=method)
    labels = extract_clusters(Z, n_clusters)
    reorder = leaves_list(Z)

    actual_k = int(len(np.unique(labels)))
    if actual_k < n_clusters:
        logger.warning(
            f"Requested {n_clusters} clusters but fcluster produced only "
            f"{actual_k}: the dendrogram does not support that many distinct "
            f"groups"
        )
    else:
        logger.info(f"Clustering complete: {actual_k} clusters")

    return ClusterResult(
        similarity_matrix=sim,
        distance_matrix=dist,
        linkage_matrix=Z,
        neuron_ids=neuron_ids,
        reorder_indices=reorder,
        labels=labels,
    )
