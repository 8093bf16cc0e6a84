"""Pairwise NBLAST scoring.

For every point of the query, the nearest point of the target is found
through the target's spatial index. The distance between the two and the
absolute dot product of their tangents are looked up in a score table and
the contributions are summed. The raw score is therefore asymmetric: it
depends on how many points the query has and where they lie.

A normalised score divides the raw score by the query's self score, the
query scored against itself.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal

import numpy as np

from .errors import EmptyDotPropError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .dotprops import DotProp
    from .score_table import ScoreTable

logger = logging.getLogger(__name__)

ScoreKind = Literal["forward", "mean", "min", "max"]
SCORE_KINDS: tuple[str, ...] = ("forward", "mean", "min", "max")


def _check_not_empty(dotprop: DotProp, role: str) -> None:
    if dotprop.is_empty:
        raise EmptyDotPropError(f"{role} DotProp has no points")


def dist_dots(
    query: DotProp,
    target: DotProp,
    use_alpha: bool = False,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Nearest-neighbour distance and tangent alignment for each query point.

    Parameters
    ----------
    query, target : DotProp
        Non-empty DotProps.
    use_alpha : bool, default=False
        Scale each absolute dot product by ``sqrt(alpha_q * alpha_t)``,
        which down-weights points in poorly linear neighbourhoods.

    Returns
    -------
    tuple[NDArray[np.float64], NDArray[np.float64]]
        (distances, abs_dots), one entry per query point.

    Raises
    ------
    EmptyDotPropError
        If either DotProp has zero points.
    ValueError
        If ``use_alpha`` is set and either DotProp has no alpha.
    """
    _check_not_empty(query, "Query")
    _check_not_empty(target, "Target")

    matched, dists = target.index.nearest_many(query.points)
    dots = np.abs(np.einsum("ij,ij->i", query.tangents, target.tangents[matched]))

    if use_alpha:
        if not (query.has_alpha and target.has_alpha):
            raise ValueError("use_alpha requires both DotProps to carry alpha")
        dots = dots * np.sqrt(query.alpha * target.alpha[matched])

    return dists, dots


def raw_score(
    query: DotProp,
    target: DotProp,
    table: ScoreTable,
    use_alpha: bool = False,
) -> float:
    """Sum of score contributions of every query point against ``target``."""
    dists, dots = dist_dots(query, target, use_alpha=use_alpha)
    return float(np.sum(table.lookup(dists, dots)))


def self_score(query: DotProp, table: ScoreTable, use_alpha: bool = False) -> float:
    """Raw score of ``query`` against itself.

    For tables whose scores never increase with distance this is the
    highest raw score the query can reach against any target.
    """
    return raw_score(query, query, table, use_alpha=use_alpha)


def normalize_score(raw: float, self_hit: float) -> float:
    """Divide a raw score by the query's self score.

    The result is not clamped: tables with negative regions can push it
    outside [0, 1]. A zero self score gives ``nan``.
    """
    if self_hit == 0.0:
        logger.warning("Self score is zero; normalised score is undefined (nan)")
        return float("nan")
    return raw / self_hit


def pairwise_score(
    query: DotProp,
    target: DotProp,
    table: ScoreTable,
    normalize: bool = False,
    use_alpha: bool = False,
) -> float:
    """NBLAST score of ``query`` against ``target``.

    Parameters
    ----------
    query, target : DotProp
        Non-empty DotProps.
    table : ScoreTable
        Score lookup table.
    normalize : bool, default=False
        Divide by the query's self score.
    use_alpha : bool, default=False
        Weight alignment by local linearity (see :func:`dist_dots`).

    Returns
    -------
    float
        The raw or normalised score.

    Raises
    ------
    EmptyDotPropError
        If either DotProp has zero points.
    """
    score = raw_score(query, target, table, use_alpha=use_alpha)
    if normalize:
        score = normalize_score(score, self_score(query, table, use_alpha=use_alpha))
    return score


def combine_scores(forward: float, reverse: float, kind: ScoreKind) -> float:
    """Reduce the two directional scores of a pair."""
    if kind == "forward":
        return forward
    if kind == "mean":
        return (forward + reverse) / 2.0
    if kind == "min":
        return min(forward, reverse)
    if kind == "max":
        return max(forward, reverse)
    raise ValueError(f"scores must be one of {SCORE_KINDS}, got {kind!r}")


def symmetric_score(
    a: DotProp,
    b: DotProp,
    table: ScoreTable,
    normalize: bool = False,
    use_alpha: bool = False,
) -> float:
    """Mean of the scores of ``a`` against ``b`` and ``b`` against ``a``."""
    forward = pairwise_score(a, b, table, normalize=normalize, use_alpha=use_alpha)
    reverse = pairwise_score(b, a, table, normalize=normalize, use_alpha=use_alpha)
    return combine_scores(forward, reverse, "mean")
