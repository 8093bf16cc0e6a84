"""Exceptions raised by the NBLAST core.

All errors are local to the call that raised them: the package holds no
global state, so a failed construction or scoring call never affects
later calls. Input errors derive from ``ValueError`` so callers that already guard
input validation with ``except ValueError`` keep working. Cancellation is
not an input error and derives from ``RuntimeError``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .batch import ScoreMatrix


class NblastError(ValueError):
    """Base class for all NBLAST errors."""


class EmptyInputError(NblastError):
    """No points were supplied where at least one is required."""


class InsufficientPointsError(NblastError):
    """Fewer points than the requested neighbourhood size."""


class DegenerateNeighborhoodError(NblastError):
    """A local neighbourhood has zero variance, so it has no principal direction."""

    def __init__(self, point_index: int, message: str | None = None):
        self.point_index = point_index
        super().__init__(
            message
            or f"Neighbourhood of point {point_index} has zero variance; "
            "cannot estimate a tangent"
        )

    def __reduce__(self):
        # Raised inside build_dotprops worker processes
        return (type(self), (self.point_index, str(self)))


class EmptyDotPropError(NblastError):
    """A DotProp with zero points was passed to scoring."""


class InvalidScoreTableError(NblastError):
    """Score table boundaries or cells are malformed."""


class BatchCancelledError(RuntimeError):
    """A batch run was cancelled through its cancellation event.

    Attributes
    ----------
    partial : ScoreMatrix
        Scores computed before cancellation; slots that were never
        computed are absent from the matrix.
    """

    def __init__(self, partial: ScoreMatrix):
        self.partial = partial
        super().__init__(
            f"Batch cancelled after {len(partial)} of "
            f"{partial.n_requested} pairs"
        )
