"""Nearest-neighbour indices over 3D point clouds.

The builder and the scorer only talk to the :class:`SpatialIndex`
protocol, so the concrete index can be swapped without touching either.
Two implementations are provided:

1. :class:`KDTreeIndex`, backed by ``scipy.spatial.cKDTree`` (the default)
2. :class:`BruteForceIndex`, exhaustive distances, useful for small clouds
   and as a reference when checking other indices

Both break exact distance ties by the lowest stored point index, so
results are reproducible for a fixed index and query.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np
from scipy.spatial import cKDTree
from scipy.spatial.distance import cdist

from .errors import EmptyInputError, InsufficientPointsError

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)


@runtime_checkable
class SpatialIndex(Protocol):
    """Capability interface shared by all point indices."""

    @property
    def points(self) -> NDArray[np.float64]: ...

    def __len__(self) -> int: ...

    def nearest(self, point: ArrayLike) -> tuple[int, float]: ...

    def k_nearest(self, point: ArrayLike, k: int) -> list[tuple[int, float]]: ...

    def nearest_many(
        self, points: ArrayLike
    ) -> tuple[NDArray[np.intp], NDArray[np.float64]]: ...


def as_points(points: ArrayLike) -> NDArray[np.float64]:
    """Coerce input to a contiguous (N, 3) float64 array.

    Raises
    ------
    ValueError
        If the input cannot be shaped as (N, 3).
    """
    arr = np.asarray(points, dtype=np.float64)
    if arr.size == 0:
        return np.empty((0, 3), dtype=np.float64)
    arr = np.atleast_2d(arr)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"Expected points of shape (N, 3), got {arr.shape}")
    return np.ascontiguousarray(arr)


def _as_point(point: ArrayLike) -> NDArray[np.float64]:
    arr = np.asarray(point, dtype=np.float64).reshape(-1)
    if arr.shape != (3,):
        raise ValueError(f"Expected a single 3D point, got shape {arr.shape}")
    return arr


def _frozen_points(points: ArrayLike) -> NDArray[np.float64]:
    arr = as_points(points)
    if len(arr) == 0:
        raise EmptyInputError("Cannot build a spatial index over zero points")
    if not np.all(np.isfinite(arr)):
        raise ValueError("Cannot build a spatial index over non-finite points")
    arr = arr.copy()
    arr.setflags(write=False)
    return arr


def _check_k(k: int, n_points: int) -> None:
    if k < 1:
        raise InsufficientPointsError(f"k must be at least 1, got {k}")
    if k > n_points:
        raise InsufficientPointsError(
            f"Requested {k} neighbours but the index holds only {n_points} points"
        )


class KDTreeIndex:
    """k-d tree index over a fixed point cloud.

    Parameters
    ----------
    points : ArrayLike
        (N, 3) coordinates. Copied and frozen; the index is never
        modified after construction.

    Raises
    ------
    EmptyInputError
        If ``points`` is empty.
    """

    def __init__(self, points: ArrayLike):
        self._points = _frozen_points(points)
        self._tree = cKDTree(self._points)

    def __reduce__(self):
        return (type(self), (self._points,))

    @property
    def points(self) -> NDArray[np.float64]:
        return self._points

    def __len__(self) -> int:
        return len(self._points)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(n_points={len(self)})"

    def nearest(self, point: ArrayLike) -> tuple[int, float]:
        """Return ``(index, distance)`` of the closest stored point."""
        return self.k_nearest(point, 1)[0]

    def k_nearest(self, point: ArrayLike, k: int) -> list[tuple[int, float]]:
        """Return the ``k`` closest stored points, ascending by distance.

        Exact distance ties are ordered by stored index. The tree is
        queried for a growing number of candidates until every point tied
        with the k-th distance has been seen, so the tie-break also holds
        at the cut-off.

        Raises
        ------
        InsufficientPointsError
            If ``k`` is below 1 or exceeds the number of stored points.
        """
        n = len(self)
        _check_k(k, n)
        point = _as_point(point)

        n_candidates = k
        while True:
            n_query = min(n_candidates + 1, n)
            dists, idxs = self._tree.query(point, k=n_query)
            dists = np.atleast_1d(dists)
            idxs = np.atleast_1d(idxs)
            if n_query == n or dists[-1] > dists[k - 1]:
                break
            n_candidates *= 2

        order = np.lexsort((idxs, dists))[:k]
        return [(int(idxs[i]), float(dists[i])) for i in order]

    def nearest_many(
        self, points: ArrayLike
    ) -> tuple[NDArray[np.intp], NDArray[np.float64]]:
        """Vectorised :meth:`nearest` for an (M, 3) array of query points.

        Returns
        -------
        tuple[NDArray[np.intp], NDArray[np.float64]]
            (indices, distances), each of length M.
        """
        points = as_points(points)
        if len(points) == 0:
            return np.empty(0, dtype=np.intp), np.empty(0, dtype=np.float64)

        if len(self) == 1:
            dists, idxs = self._tree.query(points, k=1)
            return np.asarray(idxs, dtype=np.intp), np.asarray(dists, dtype=np.float64)

        # Second neighbour flags the rows where the first one may be tied
        dists, idxs = self._tree.query(points, k=2)
        out_idx = idxs[:, 0].astype(np.intp)
        out_dist = dists[:, 0].astype(np.float64)

        tied = np.flatnonzero(dists[:, 0] == dists[:, 1])
        for row in tied:
            out_idx[row], out_dist[row] = self.nearest(points[row])

        if len(tied):
            logger.debug(f"Resolved {len(tied)} nearest-neighbour ties by index")
        return out_idx, out_dist


class BruteForceIndex:
    """Exhaustive-search index; same contract as :class:`KDTreeIndex`."""

    def __init__(self, points: ArrayLike):
        self._points = _frozen_points(points)

    @property
    def points(self) -> NDArray[np.float64]:
        return self._points

    def __len__(self) -> int:
        return len(self._points)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(n_points={len(self)})"

    def nearest(self, point: ArrayLike) -> tuple[int, float]:
        return self.k_nearest(point, 1)[0]

    def k_nearest(self, point: ArrayLike, k: int) -> list[tuple[int, float]]:
        _check_k(k, len(self))
        point = _as_point(point)
        dists = cdist(point[np.newaxis], self._points)[0]
        # Stable sort keeps lower indices first on exact ties
        order = np.argsort(dists, kind="stable")[:k]
        return [(int(i), float(dists[i])) for i in order]

    def nearest_many(
        self, points: ArrayLike
    ) -> tuple[NDArray[np.intp], NDArray[np.float64]]:
        points = as_points(points)
        if len(points) == 0:
            return np.empty(0, dtype=np.intp), np.empty(0, dtype=np.float64)
        dists = cdist(points, self._points)
        # argmin returns the first occurrence, i.e. the lowest index
        idxs = np.argmin(dists, axis=1).astype(np.intp)
        return idxs, dists[np.arange(len(points)), idxs]


def build_index(points: ArrayLike) -> SpatialIndex:
    """Build the default spatial index over ``points``.

    Raises
    ------
    EmptyInputError
        If ``points`` is empty.
    """
    return KDTreeIndex(points)


def nearest(index: SpatialIndex, point: ArrayLike) -> tuple[int, float]:
    """Closest stored point to ``point`` as ``(index, distance)``."""
    return index.nearest(point)


def k_nearest(index: SpatialIndex, point: ArrayLike, k: int) -> list[tuple[int, float]]:
    """The ``k`` closest stored points to ``point``, ascending by distance."""
    return index.k_nearest(point, k)
