"""Precomputed NBLAST score tables.

A score table maps the distance between a query point and its nearest
target point, together with the absolute dot product of their tangents,
to a score contribution. Tables are trained elsewhere and loaded here
from plain boundary arrays, a labelled ``pandas.DataFrame`` or a CSV file.

Each bin is identified by its upper bound; its lower bound is the
previous bin's upper bound, or 0 for the first bin. A value exactly on an
upper bound belongs to the next bin. Values beyond either end of the
table fall into the first or last bin: lookups clamp, they never fail.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from scipy.interpolate import RegularGridInterpolator

from .errors import InvalidScoreTableError

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)

# Interval labels as written by R/pandas, e.g. "(0,0.75]" or "[0.1, 0.2)"
_INTERVAL_RE = re.compile(
    r"^\s*[\[(]\s*([^,\s]+)\s*,\s*([^\])\s]+)\s*[\])]\s*$"
)


def _validate_bounds(
    bounds: ArrayLike,
    name: str,
    upper_limit: float | None = None,
    allow_inf_last: bool = False,
) -> NDArray[np.float64]:
    arr = np.asarray(bounds, dtype=np.float64).reshape(-1)
    if arr.size == 0:
        raise InvalidScoreTableError(f"{name} must contain at least one boundary")

    finite_part = arr[:-1] if allow_inf_last and np.isposinf(arr[-1]) else arr
    if not np.all(np.isfinite(finite_part)):
        raise InvalidScoreTableError(f"{name} must be finite")
    if arr[0] <= 0.0:
        raise InvalidScoreTableError(
            f"{name} are upper bounds and must be positive, got {arr[0]}"
        )
    if np.any(np.diff(arr) <= 0.0):
        raise InvalidScoreTableError(f"{name} must be strictly increasing")
    if upper_limit is not None and arr[-1] > upper_limit:
        raise InvalidScoreTableError(
            f"{name} must not exceed {upper_limit}, got {arr[-1]}"
        )

    arr = arr.copy()
    arr.setflags(write=False)
    return arr


def _bin_centres(bounds: NDArray[np.float64]) -> NDArray[np.float64]:
    lower = np.concatenate([[0.0], bounds[:-1]])
    upper = bounds.copy()
    # An open-ended last bin is represented by its lower edge
    if np.isposinf(upper[-1]):
        upper[-1] = lower[-1]
    return (lower + upper) / 2.0


def find_bins(values: ArrayLike, bounds: NDArray[np.float64]) -> NDArray[np.intp]:
    """Bin index of each value given the bins' upper bounds.

    Values below the first bound fall in bin 0 and values at or above the
    last bound fall in the last bin.
    """
    idx = np.searchsorted(bounds, values, side="right")
    return np.minimum(idx, len(bounds) - 1)


@dataclass(frozen=True, eq=False)
class ScoreTable:
    """Immutable (distance, |dot|) -> score lookup table.

    Attributes
    ----------
    dist_bounds : NDArray[np.float64]
        Upper bounds of the distance bins, strictly increasing. The last
        bin is open-ended, so its bound may be ``inf``.
    dot_bounds : NDArray[np.float64]
        Upper bounds of the absolute-dot-product bins, strictly increasing
        within (0, 1].
    cells : NDArray[np.float64]
        (len(dist_bounds), len(dot_bounds)) scores.
    interpolate : bool
        If True, scores are bilinearly interpolated between bin centres
        instead of taken from the containing bin.

    Raises
    ------
    InvalidScoreTableError
        If any boundary array or the cell shape is malformed.
    """

    dist_bounds: NDArray[np.float64]
    dot_bounds: NDArray[np.float64]
    cells: NDArray[np.float64]
    interpolate: bool = False
    _interpolator: RegularGridInterpolator | None = field(
        default=None, init=False, repr=False
    )

    def __post_init__(self) -> None:
        dist_bounds = _validate_bounds(
            self.dist_bounds, "dist_bounds", allow_inf_last=True
        )
        dot_bounds = _validate_bounds(self.dot_bounds, "dot_bounds", upper_limit=1.0)

        shape = (len(dist_bounds), len(dot_bounds))
        cells = np.asarray(self.cells, dtype=np.float64)
        if cells.ndim == 1 and cells.size == shape[0] * shape[1]:
            # Flat cells are given in dot-major (row-major) order
            cells = cells.reshape(shape)
        if cells.shape != shape:
            raise InvalidScoreTableError(
                f"Expected {shape[0]}x{shape[1]} cells for the given bounds, "
                f"got shape {cells.shape}"
            )
        if not np.all(np.isfinite(cells)):
            raise InvalidScoreTableError("Score table cells must be finite")
        cells = cells.copy()
        cells.setflags(write=False)

        interpolator = None
        if self.interpolate:
            if min(shape) < 2:
                raise InvalidScoreTableError(
                    "Interpolation needs at least two bins along each axis"
                )
            interpolator = RegularGridInterpolator(
                (_bin_centres(dist_bounds), _bin_centres(dot_bounds)),
                cells,
                method="linear",
            )

        object.__setattr__(self, "dist_bounds", dist_bounds)
        object.__setattr__(self, "dot_bounds", dot_bounds)
        object.__setattr__(self, "cells", cells)
        object.__setattr__(self, "_interpolator", interpolator)

    @property
    def shape(self) -> tuple[int, int]:
        return self.cells.shape

    @property
    def max_distance(self) -> float:
        """Upper bound of the last finite distance bin."""
        finite = self.dist_bounds[np.isfinite(self.dist_bounds)]
        return float(finite[-1]) if len(finite) else float("inf")

    def is_distance_non_increasing(self) -> bool:
        """Whether scores never increase with distance for any dot bin.

        Under this condition a query's self score is the highest raw score
        it can reach against any target.
        """
        return bool(np.all(np.diff(self.cells, axis=0) <= 0.0))

    def lookup(self, distance: ArrayLike, abs_dot: ArrayLike) -> Any:
        """Score for each (distance, |dot|) pair.

        ``abs_dot`` is clamped to [0, 1] and ``distance`` to [0, inf).
        Scalars in give a float out; arrays give an array.
        """
        dist = np.maximum(np.asarray(distance, dtype=np.float64), 0.0)
        dot = np.clip(np.asarray(abs_dot, dtype=np.float64), 0.0, 1.0)
        dist, dot = np.broadcast_arrays(dist, dot)

        if self._interpolator is None:
            scores = self.cells[
                find_bins(dist, self.dist_bounds), find_bins(dot, self.dot_bounds)
            ]
        else:
            d_grid, t_grid = self._interpolator.grid
            sample = np.stack(
                [
                    np.clip(dist, d_grid[0], d_grid[-1]),
                    np.clip(dot, t_grid[0], t_grid[-1]),
                ],
                axis=-1,
            )
            scores = np.reshape(self._interpolator(sample), dist.shape)

        if np.ndim(scores) == 0:
            return float(scores)
        return scores

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, interpolate: bool = False) -> ScoreTable:
        """Load a table with distance bins as rows and dot bins as columns.

        Labels may be numbers (taken as upper bounds) or interval strings
        such as ``"(0,0.75]"`` whose right-hand value is the upper bound.
        """
        dist_bounds = [_parse_upper_bound(label) for label in df.index]
        dot_bounds = [_parse_upper_bound(label) for label in df.columns]
        return cls(
            dist_bounds=dist_bounds,
            dot_bounds=dot_bounds,
            cells=df.to_numpy(dtype=np.float64),
            interpolate=interpolate,
        )

    @classmethod
    def from_csv(cls, path: Path | str, interpolate: bool = False) -> ScoreTable:
        """Load a table from a CSV file whose first column holds distance bins."""
        df = pd.read_csv(Path(path), index_col=0)
        table = cls.from_dataframe(df, interpolate=interpolate)
        logger.info(
            f"Loaded {table.shape[0]}x{table.shape[1]} score table from {path}, "
            f"distances binned up to {table.max_distance:g}"
        )
        return table

    def to_dataframe(self) -> pd.DataFrame:
        """The table as a DataFrame labelled with interval strings."""
        return pd.DataFrame(
            np.array(self.cells),
            index=_interval_labels(self.dist_bounds),
            columns=_interval_labels(self.dot_bounds),
        )


def _parse_upper_bound(label: Any) -> float:
    if isinstance(label, (int, float, np.integer, np.floating)):
        return float(label)
    text = str(label)
    match = _INTERVAL_RE.match(text)
    try:
        return float(match.group(2) if match else text)
    except ValueError:
        raise InvalidScoreTableError(
            f"Cannot parse bin label {label!r} as a number or interval"
        ) from None


def _interval_labels(bounds: NDArray[np.float64]) -> list[str]:
    lower = np.concatenate([[0.0], bounds[:-1]])
    return [f"({lo:g},{hi:g}]" for lo, hi in zip(lower, bounds)]


def load_score_table(
    dist_bounds: ArrayLike,
    dot_bounds: ArrayLike,
    cells: ArrayLike,
    interpolate: bool = False,
) -> ScoreTable:
    """Build a :class:`ScoreTable` from boundary arrays and scores.

    Parameters
    ----------
    dist_bounds : ArrayLike
        Distance bin upper bounds, strictly increasing.
    dot_bounds : ArrayLike
        Absolute dot product bin upper bounds, strictly increasing in (0, 1].
    cells : ArrayLike
        Either a (n_dist, n_dot) array, or a flat sequence in dot-major
        order (all dot bins of the first distance bin, then the next).
    interpolate : bool, default=False
        Interpolate between bin centres instead of using the containing bin.

    Raises
    ------
    InvalidScoreTableError
        If the inputs do not describe a valid table.
    """
    return ScoreTable(
        dist_bounds=dist_bounds,
        dot_bounds=dot_bounds,
        cells=cells,
        interpolate=interpolate,
    )


def lookup(table: ScoreTable, distance: float, abs_dot: float) -> float:
    """Score contribution of a single (distance, |dot|) pair."""
    return table.lookup(distance, abs_dot)
