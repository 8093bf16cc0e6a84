"""Batch NBLAST scoring across many neurons.

A batch run scores a set of (query, target) pairs drawn from a mapping of
already-built DotProps. Each directional score (query against target) is
computed exactly once per run and written to its own slot of a pre-sized
array, so worker threads never share a write location:

1. Plan: collect the directional scores the requested pairs need, including
   self scores for normalisation and reverse scores for symmetric kinds
2. Score: worker threads consume chunks of directional work items
3. Assemble: combine directions into the final :class:`ScoreMatrix`

DotProps and the score table are only read during a run. The run is
fail-fast: the first error cancels the remaining work and propagates.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Hashable, Iterable, Iterator, Mapping
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Callable

import numpy as np
import pandas as pd

from .errors import BatchCancelledError, EmptyDotPropError
from .scoring import SCORE_KINDS, ScoreKind, combine_scores, normalize_score, raw_score

if TYPE_CHECKING:
    import threading

    from numpy.typing import NDArray

    from .dotprops import DotProp
    from .score_table import ScoreTable

logger = logging.getLogger(__name__)

DEFAULT_N_WORKERS = os.cpu_count() or 1

# Directional scores per work item
DEFAULT_CHUNKSIZE = 64

Pair = tuple[Hashable, Hashable]
ProgressCallback = Callable[[str, int, int], None]


class ScoreMatrix:
    """Scores keyed by (query id, target id).

    A dense matrix holds every query/target combination; a sparse one
    only the pairs that were requested. Mapping-style access covers
    computed pairs only.

    Parameters
    ----------
    query_ids, target_ids : list
        Row and column labels.
    values : NDArray[np.float64]
        (n_queries, n_targets) scores; entries that were not computed are
        ignored.
    computed : NDArray[np.bool_]
        Which entries hold a score.
    requested : NDArray[np.bool_], optional
        Which entries were asked for. Defaults to ``computed``.
    normalized : bool
        Whether scores were divided by self scores.
    scores : str
        How the two directions of each pair were combined.
    """

    def __init__(
        self,
        query_ids: list[Hashable],
        target_ids: list[Hashable],
        values: NDArray[np.float64],
        computed: NDArray[np.bool_],
        requested: NDArray[np.bool_] | None = None,
        normalized: bool = False,
        scores: str = "forward",
    ):
        shape = (len(query_ids), len(target_ids))
        if values.shape != shape or computed.shape != shape:
            raise ValueError(
                f"Expected arrays of shape {shape}, got values {values.shape} "
                f"and computed {computed.shape}"
            )
        self.query_ids = list(query_ids)
        self.target_ids = list(target_ids)
        self.normalized = normalized
        self.scores = scores

        self._values = np.where(computed, values, np.nan)
        self._computed = computed.copy()
        self._requested = (computed if requested is None else requested).copy()
        for arr in (self._values, self._computed, self._requested):
            arr.setflags(write=False)

        self._rows = {qid: i for i, qid in enumerate(self.query_ids)}
        self._cols = {tid: j for j, tid in enumerate(self.target_ids)}

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({len(self.query_ids)}x{len(self.target_ids)}, "
            f"computed={len(self)}, normalized={self.normalized}, "
            f"scores={self.scores!r})"
        )

    def _slot(self, key: Pair) -> tuple[int, int]:
        query_id, target_id = key
        i = self._rows[query_id]
        j = self._cols[target_id]
        if not self._computed[i, j]:
            raise KeyError(key)
        return i, j

    def __getitem__(self, key: Pair) -> float:
        i, j = self._slot(key)
        return float(self._values[i, j])

    def get(self, key: Pair, default: float | None = None) -> float | None:
        try:
            return self[key]
        except KeyError:
            return default

    def __contains__(self, key: object) -> bool:
        try:
            self._slot(key)  # type: ignore[arg-type]
        except (KeyError, TypeError, ValueError):
            return False
        return True

    def __len__(self) -> int:
        return int(self._computed.sum())

    def __iter__(self) -> Iterator[Pair]:
        for i, j in zip(*np.nonzero(self._computed)):
            yield self.query_ids[i], self.target_ids[j]

    def keys(self) -> list[Pair]:
        return list(self)

    def items(self) -> Iterator[tuple[Pair, float]]:
        for i, j in zip(*np.nonzero(self._computed)):
            yield (self.query_ids[i], self.target_ids[j]), float(self._values[i, j])

    @property
    def values(self) -> NDArray[np.float64]:
        """(n_queries, n_targets) scores, ``nan`` where not computed."""
        return self._values

    @property
    def n_requested(self) -> int:
        return int(self._requested.sum())

    @property
    def is_dense(self) -> bool:
        return bool(self._requested.all())

    @property
    def is_complete(self) -> bool:
        """Whether every requested pair has a score."""
        return bool(np.array_equal(self._computed, self._requested))

    def to_frame(self) -> pd.DataFrame:
        """Square DataFrame with query ids as index and target ids as columns."""
        return pd.DataFrame(
            np.array(self._values), index=self.query_ids, columns=self.target_ids
        )

    def to_long(self) -> pd.DataFrame:
        """Long-form table with columns query, target, score."""
        rows, cols = np.nonzero(self._computed)
        return pd.DataFrame(
            {
                "query": [self.query_ids[i] for i in rows],
                "target": [self.target_ids[j] for j in cols],
                "score": self._values[rows, cols],
            }
        )


def _first_seen(values: Iterable[Hashable]) -> list[Hashable]:
    return list(dict.fromkeys(values))


def _plan_slots(
    dotprops: Mapping[Hashable, DotProp],
    pairs: Iterable[Pair] | None,
) -> tuple[list[Hashable], list[Hashable], list[Pair]]:
    """Row ids, column ids and requested pairs of a batch run."""
    if pairs is None:
        ids = list(dotprops)
        return ids, ids, [(q, t) for q in ids for t in ids]

    requested = _first_seen((q, t) for q, t in pairs)
    for query_id, target_id in requested:
        for neuron_id in (query_id, target_id):
            if neuron_id not in dotprops:
                raise KeyError(f"No DotProp for neuron id {neuron_id!r}")

    query_ids = _first_seen(q for q, _ in requested)
    target_ids = _first_seen(t for _, t in requested)
    return query_ids, target_ids, requested


def _plan_directions(
    requested: list[Pair],
    normalize: bool,
    need_reverse: bool,
) -> dict[Pair, int]:
    """Every directional raw score the run needs, mapped to its slot."""
    directions: dict[Pair, int] = {}

    def _add(query_id: Hashable, target_id: Hashable) -> None:
        if (query_id, target_id) not in directions:
            directions[(query_id, target_id)] = len(directions)

    for query_id, target_id in requested:
        _add(query_id, target_id)
        if normalize:
            _add(query_id, query_id)
        if need_reverse:
            _add(target_id, query_id)
            if normalize:
                _add(target_id, target_id)
    return directions


def _score_chunk(
    chunk: list[tuple[int, Pair]],
    dotprops: Mapping[Hashable, DotProp],
    table: ScoreTable,
    use_alpha: bool,
    raw: NDArray[np.float64],
    cancel_event: threading.Event | None,
) -> int:
    """Compute one chunk of directional scores into their slots of ``raw``."""
    if cancel_event is not None and cancel_event.is_set():
        return 0
    for slot, (query_id, target_id) in chunk:
        raw[slot] = raw_score(
            dotprops[query_id], dotprops[target_id], table, use_alpha=use_alpha
        )
    return len(chunk)


def batch_score(
    dotprops: Mapping[Hashable, DotProp],
    table: ScoreTable,
    pairs: Iterable[Pair] | None = None,
    normalize: bool = False,
    scores: ScoreKind = "forward",
    use_alpha: bool = False,
    n_workers: int = DEFAULT_N_WORKERS,
    chunksize: int = DEFAULT_CHUNKSIZE,
    cancel_event: threading.Event | None = None,
    progress_callback: ProgressCallback | None = None,
) -> ScoreMatrix:
    """Score many (query, target) pairs in parallel.

    Parameters
    ----------
    dotprops : Mapping
        Neuron id to already-built DotProp. DotProps are never rebuilt.
    table : ScoreTable
        Score lookup table shared by all pairs.
    pairs : iterable of (query id, target id), optional
        Pairs to score. If None, every combination of ids is scored,
        self pairs included.
    normalize : bool, default=False
        Divide each directional score by its query's self score.
    scores : {"forward", "mean", "min", "max"}, default="forward"
        "forward" returns query-against-target scores; the others combine
        them with the target-against-query score.
    use_alpha : bool, default=False
        Weight alignment by local linearity.
    n_workers : int
        Worker threads. Defaults to the number of CPUs; 1 or less runs
        in the calling thread.
    chunksize : int, default=64
        Directional scores per work item.
    cancel_event : threading.Event, optional
        Checked before each work item is dispatched and before it starts.
        Once set, no further work starts and :class:`BatchCancelledError`
        is raised carrying the scores finished so far.
    progress_callback : callable, optional
        Called with (message, n_done, n_total) after each work item.

    Returns
    -------
    ScoreMatrix
        Dense when ``pairs`` is None, otherwise restricted to ``pairs``.

    Raises
    ------
    KeyError
        If ``pairs`` names an id missing from ``dotprops``.
    EmptyDotPropError
        If a DotProp used by the run has no points.
    BatchCancelledError
        If ``cancel_event`` was set before the run finished.
    """
    if scores not in SCORE_KINDS:
        raise ValueError(f"scores must be one of {SCORE_KINDS}, got {scores!r}")
    if chunksize < 1:
        raise ValueError(f"chunksize must be at least 1, got {chunksize}")

    query_ids, target_ids, requested = _plan_slots(dotprops, pairs)

    used_ids = _first_seen([*query_ids, *target_ids])
    for neuron_id in used_ids:
        if dotprops[neuron_id].is_empty:
            raise EmptyDotPropError(f"DotProp {neuron_id!r} has no points")

    directions = _plan_directions(
        requested, normalize=normalize, need_reverse=scores != "forward"
    )
    raw = np.full(len(directions), np.nan, dtype=np.float64)
    work = list(directions.items())
    chunks = [
        [(slot, pair) for pair, slot in work[i : i + chunksize]]
        for i in range(0, len(work), chunksize)
    ]

    n_total = len(directions)
    logger.info(
        f"Scoring {len(requested)} pairs over {len(used_ids)} neurons: "
        f"{n_total} directional scores in {len(chunks)} chunks, "
        f"n_workers={max(n_workers, 1)}, normalize={normalize}, scores={scores}"
    )

    def _progress(n_done: int) -> None:
        logger.debug(f"Batch progress: {n_done}/{n_total}")
        if progress_callback is not None:
            progress_callback("Scoring pairs", n_done, n_total)

    def _cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    n_done = 0
    if n_workers <= 1:
        for chunk in chunks:
            if _cancelled():
                break
            n_done += _score_chunk(chunk, dotprops, table, use_alpha, raw, None)
            _progress(n_done)
    else:
        n_done = _run_parallel(
            chunks, dotprops, table, use_alpha, raw,
            n_workers, cancel_event, _progress,
        )

    matrix = _assemble(
        query_ids, target_ids, requested, directions, raw,
        normalize=normalize, scores=scores,
    )

    if _cancelled() and not matrix.is_complete:
        logger.warning(
            f"Batch cancelled: {len(matrix)}/{matrix.n_requested} pairs scored"
        )
        raise BatchCancelledError(matrix)

    finite = matrix.values[np.isfinite(matrix.values)]
    if len(finite):
        logger.info(
            f"Batch complete: {len(matrix)} scores, "
            f"range [{finite.min():.3f}, {finite.max():.3f}]"
        )
    return matrix


def _run_parallel(
    chunks: list[list[tuple[int, Pair]]],
    dotprops: Mapping[Hashable, DotProp],
    table: ScoreTable,
    use_alpha: bool,
    raw: NDArray[np.float64],
    n_workers: int,
    cancel_event: threading.Event | None,
    progress: Callable[[int], None],
) -> int:
    """Dispatch chunks to a thread pool, at most two per worker in flight."""
    max_in_flight = 2 * n_workers
    pending = iter(chunks)
    n_done = 0

    def _cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        in_flight = set()
        exhausted = False
        try:
            while True:
                while not exhausted and len(in_flight) < max_in_flight:
                    if _cancelled():
                        exhausted = True
                        break
                    chunk = next(pending, None)
                    if chunk is None:
                        exhausted = True
                        break
                    in_flight.add(
                        executor.submit(
                            _score_chunk, chunk, dotprops, table,
                            use_alpha, raw, cancel_event,
                        )
                    )

                if not in_flight:
                    break

                finished, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in finished:
                    # Re-raises the worker's exception: fail-fast
                    n_done += future.result()
                    progress(n_done)
        except BaseException:
            for future in in_flight:
                future.cancel()
            raise

    return n_done


def _assemble(
    query_ids: list[Hashable],
    target_ids: list[Hashable],
    requested: list[Pair],
    directions: dict[Pair, int],
    raw: NDArray[np.float64],
    normalize: bool,
    scores: ScoreKind,
) -> ScoreMatrix:
    """Combine directional raw scores into the final matrix."""
    rows = {qid: i for i, qid in enumerate(query_ids)}
    cols = {tid: j for j, tid in enumerate(target_ids)}
    shape = (len(query_ids), len(target_ids))
    values = np.full(shape, np.nan, dtype=np.float64)
    computed = np.zeros(shape, dtype=bool)
    wanted = np.zeros(shape, dtype=bool)

    def _directional(query_id: Hashable, target_id: Hashable) -> float | None:
        score = raw[directions[(query_id, target_id)]]
        if np.isnan(score):
            return None
        score = float(score)
        if normalize:
            self_hit = raw[directions[(query_id, query_id)]]
            if np.isnan(self_hit):
                return None
            score = normalize_score(score, float(self_hit))
        return score

    for query_id, target_id in requested:
        i, j = rows[query_id], cols[target_id]
        wanted[i, j] = True

        forward = _directional(query_id, target_id)
        if forward is None:
            continue
        reverse = forward
        if scores != "forward":
            reverse = _directional(target_id, query_id)
            if reverse is None:
                continue

        values[i, j] = combine_scores(forward, reverse, scores)
        computed[i, j] = True

    return ScoreMatrix(
        query_ids,
        target_ids,
        values,
        computed,
        requested=wanted,
        normalized=normalize,
        scores=scores,
    )
