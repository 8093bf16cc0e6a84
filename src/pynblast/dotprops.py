"""Point-and-tangent neuron representation (dotprops).

A :class:`DotProp` stores, for every sampled point of a neuron, the local
principal direction of the point cloud around it. Tangents are estimated
from the ``k`` nearest neighbours of each point (the point itself is not
counted): the eigenvector with the largest eigenvalue of the
neighbourhood's inertia matrix.

Tangent estimation is vectorised with numpy: neighbourhoods are gathered
into a single (N, k, 3) array and all inertia matrices are decomposed in
one batched ``numpy.linalg.eigh`` call.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable, Mapping
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Literal

import numpy as np

from .errors import (
    DegenerateNeighborhoodError,
    EmptyInputError,
    InsufficientPointsError,
)
from .spatial import KDTreeIndex, SpatialIndex, as_points

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)

# Neighbours per point, excluding the point itself
DEFAULT_K = 5

# Allowed deviation of a tangent's norm from 1
UNIT_TOLERANCE = 1e-6

IndexFactory = Callable[["ArrayLike"], SpatialIndex]


def _frozen(arr: NDArray) -> NDArray:
    arr = np.array(arr, dtype=np.float64, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class DotProp:
    """Neuron as points with unit tangents and an optional alpha.

    Attributes
    ----------
    points : NDArray[np.float64]
        (N, 3) coordinates in sample order.
    tangents : NDArray[np.float64]
        (N, 3) unit vectors, ``tangents[i]`` is the local direction at
        ``points[i]``. Signs are arbitrary.
    alpha : NDArray[np.float64] or None
        (N,) local linearity ``(l1 - l2) / (l1 + l2 + l3)`` of each tangent
        estimate, in [0, 1].
    index : SpatialIndex or None
        Nearest-neighbour index over ``points``. Built from the points if
        not given; ``None`` only for an empty DotProp.

    All arrays are copied and made read-only, so a DotProp can be shared
    between threads without locking.

    Raises
    ------
    ValueError
        If array shapes disagree, a point is not finite, a tangent is not
        unit length, alpha is outside [0, 1] (or nan), or a supplied index
        does not match the points.
    """

    points: NDArray[np.float64]
    tangents: NDArray[np.float64]
    alpha: NDArray[np.float64] | None = None
    index: SpatialIndex | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        points = as_points(self.points)
        if not np.all(np.isfinite(points)):
            raise ValueError("DotProp points must be finite")
        tangents = np.asarray(self.tangents, dtype=np.float64)
        if tangents.size == 0:
            tangents = tangents.reshape(0, 3)
        tangents = np.atleast_2d(tangents)

        if tangents.shape != points.shape:
            raise ValueError(
                f"Got {len(points)} points but tangents of shape {tangents.shape}"
            )

        norms = np.linalg.norm(tangents, axis=1)
        bad = np.flatnonzero(~(np.abs(norms - 1.0) <= UNIT_TOLERANCE))
        if len(bad):
            raise ValueError(
                f"{len(bad)} tangents are not unit vectors "
                f"(first at index {bad[0]}, norm={norms[bad[0]]:.6g})"
            )

        alpha = self.alpha
        if alpha is not None:
            alpha = np.asarray(alpha, dtype=np.float64).reshape(-1)
            if alpha.shape != (len(points),):
                raise ValueError(
                    f"Got {len(points)} points but alpha of shape {alpha.shape}"
                )
            if not np.all((alpha >= 0.0) & (alpha <= 1.0)):
                raise ValueError("alpha values must be finite and lie in [0, 1]")
            alpha = _frozen(alpha)

        index = self.index
        if index is None and len(points):
            index = KDTreeIndex(points)
        elif index is not None and len(index) != len(points):
            raise ValueError(
                f"Index holds {len(index)} points but DotProp has {len(points)}"
            )

        object.__setattr__(self, "points", _frozen(points))
        object.__setattr__(self, "tangents", _frozen(tangents))
        object.__setattr__(self, "alpha", alpha)
        object.__setattr__(self, "index", index)

    def __reduce__(self):
        # Rebuild through __init__ so unpickled arrays are read-only again
        return (type(self), (self.points, self.tangents, self.alpha, self.index))

    def __len__(self) -> int:
        return len(self.points)

    @property
    def is_empty(self) -> bool:
        return len(self.points) == 0

    @property
    def has_alpha(self) -> bool:
        return self.alpha is not None

    @classmethod
    def from_tangents(
        cls,
        points: ArrayLike,
        tangents: ArrayLike,
        alpha: ArrayLike | None = None,
        index_factory: IndexFactory = KDTreeIndex,
    ) -> DotProp:
        """Create a DotProp from precomputed tangents.

        Unlike :func:`build_dotprop` this accepts any number of points,
        including one (or zero, giving an empty DotProp).
        """
        points = as_points(points)
        index = index_factory(points) if len(points) else None
        return cls(points=points, tangents=tangents, alpha=alpha, index=index)


def neighbourhood_indices(index: SpatialIndex, k: int) -> NDArray[np.intp]:
    """Indices of the ``k`` nearest neighbours of every stored point.

    The point itself is excluded. When coincident duplicates push the
    point out of its own ``k + 1`` nearest (ties go to the lowest index),
    the farthest candidate is dropped instead.

    Returns
    -------
    NDArray[np.intp]
        (N, k) neighbour indices, rows ordered by ascending distance.
    """
    points = index.points
    out = np.empty((len(points), k), dtype=np.intp)
    for i, point in enumerate(points):
        candidates = [j for j, _ in index.k_nearest(point, k + 1)]
        if i in candidates:
            candidates.remove(i)
        out[i] = candidates[:k]
    return out


def estimate_tangents(
    neighbours: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Principal direction and linearity of each neighbourhood.

    Parameters
    ----------
    neighbours : NDArray[np.float64]
        (N, k, 3) array; row ``i`` holds the neighbour coordinates of
        point ``i``.

    Returns
    -------
    tuple[NDArray[np.float64], NDArray[np.float64]]
        (tangents, alpha): (N, 3) unit vectors and (N,) values of
        ``(l1 - l2) / (l1 + l2 + l3)`` with eigenvalues sorted descending.

    Raises
    ------
    DegenerateNeighborhoodError
        If a neighbourhood has zero variance (all neighbours coincident).
    """
    neighbours = np.asarray(neighbours, dtype=np.float64)

    # Centring coincident points can leave rounding noise, so test exactly
    coincident = np.all(neighbours == neighbours[:, :1, :], axis=(1, 2))
    if np.any(coincident):
        raise DegenerateNeighborhoodError(int(np.flatnonzero(coincident)[0]))

    centred = neighbours - neighbours.mean(axis=1, keepdims=True)
    inertia = np.einsum("nki,nkj->nij", centred, centred)

    # eigh returns eigenvalues in ascending order
    eigvals, eigvecs = np.linalg.eigh(inertia)
    eigvals = np.clip(eigvals, 0.0, None)
    total = eigvals.sum(axis=1)

    bad = np.flatnonzero(~np.isfinite(total) | (total <= 0.0))
    if len(bad):
        raise DegenerateNeighborhoodError(int(bad[0]))

    tangents = eigvecs[:, :, -1]
    tangents = tangents / np.linalg.norm(tangents, axis=1, keepdims=True)
    alpha = (eigvals[:, -1] - eigvals[:, -2]) / total
    return tangents, np.clip(alpha, 0.0, 1.0)


def build_dotprop(
    points: ArrayLike,
    k: int = DEFAULT_K,
    index_factory: IndexFactory = KDTreeIndex,
) -> DotProp:
    """Build a DotProp from raw 3D samples.

    Parameters
    ----------
    points : ArrayLike
        (N, 3) sample coordinates. Order is preserved.
    k : int, default=5
        Neighbours used per tangent, not counting the point itself.
    index_factory : callable, default=KDTreeIndex
        Spatial index type, used both for the neighbourhood search and
        for the returned DotProp's own index.

    Returns
    -------
    DotProp
        With tangents and alpha for every point.

    Raises
    ------
    EmptyInputError
        If no points are given.
    InsufficientPointsError
        If ``k < 1`` or there are fewer than ``k + 1`` points.
    DegenerateNeighborhoodError
        If any neighbourhood has zero variance.
    """
    points = as_points(points)
    n_points = len(points)
    if n_points == 0:
        raise EmptyInputError("Cannot build a DotProp from zero points")
    if k < 1:
        raise InsufficientPointsError(f"k must be at least 1, got {k}")
    if n_points < k + 1:
        raise InsufficientPointsError(
            f"Need at least {k + 1} points for k={k}, got {n_points}"
        )

    # Transient index for the neighbourhood search only
    search_index = index_factory(points)
    neighbour_idx = neighbourhood_indices(search_index, k)
    tangents, alpha = estimate_tangents(points[neighbour_idx])

    logger.debug(f"Built DotProp from {n_points} points with k={k}")
    return DotProp(
        points=points,
        tangents=tangents,
        alpha=alpha,
        index=index_factory(points),
    )


def _build_single(args: tuple) -> tuple[Hashable, DotProp]:
    """Worker function for parallel construction."""
    neuron_id, points, k, index_factory = args
    return neuron_id, build_dotprop(points, k=k, index_factory=index_factory)


def build_dotprops(
    points_by_id: Mapping[Hashable, ArrayLike],
    k: int = DEFAULT_K,
    index_factory: IndexFactory = KDTreeIndex,
    n_workers: int = 1,
    on_error: Literal["raise", "skip"] = "raise",
) -> dict[Hashable, DotProp]:
    """Build one DotProp per neuron, each exactly once.

    Parameters
    ----------
    points_by_id : Mapping
        Neuron id to (N, 3) sample coordinates.
    k : int, default=5
        Neighbours per tangent.
    index_factory : callable, default=KDTreeIndex
        Spatial index type. Must be picklable when ``n_workers > 1``.
    n_workers : int, default=1
        Number of worker processes. Use 1 for serial construction.
    on_error : {"raise", "skip"}, default="raise"
        ``"raise"`` re-raises the first construction error; ``"skip"``
        logs it and leaves the neuron out of the result.

    Returns
    -------
    dict
        Neuron id to DotProp, in the order of ``points_by_id``.
    """
    if on_error not in ("raise", "skip"):
        raise ValueError(f"on_error must be 'raise' or 'skip', got {on_error!r}")

    built: dict[Hashable, DotProp] = {}
    total = len(points_by_id)

    def _handle_error(neuron_id: Hashable, exc: Exception) -> None:
        if on_error == "raise":
            logger.error(f"Error building DotProp for {neuron_id!r}: {exc}")
            raise exc
        logger.warning(f"Skipping {neuron_id!r}: {exc}")

    if n_workers > 1:
        args_list = [
            (neuron_id, as_points(points), k, index_factory)
            for neuron_id, points in points_by_id.items()
        ]
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            futures = {
                executor.submit(_build_single, args): args[0] for args in args_list
            }
            try:
                for future in as_completed(futures):
                    neuron_id = futures[future]
                    try:
                        _, dotprop = future.result()
                    except ValueError as e:
                        _handle_error(neuron_id, e)
                        continue
                    built[neuron_id] = dotprop
                    if len(built) % 100 == 0:
                        logger.info(f"Built {len(built)}/{total} DotProps")
            except BaseException:
                for future in futures:
                    future.cancel()
                raise
        # as_completed yields in completion order
        built = {nid: built[nid] for nid in points_by_id if nid in built}
    else:
        for neuron_id, points in points_by_id.items():
            try:
                built[neuron_id] = build_dotprop(
                    points, k=k, index_factory=index_factory
                )
            except ValueError as e:
                _handle_error(neuron_id, e)
                continue
            if len(built) % 100 == 0:
                logger.info(f"Built {len(built)}/{total} DotProps")

    logger.info(f"Built {len(built)} of {total} DotProps with k={k}")
    return built
