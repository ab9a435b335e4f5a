"""
One global step of the automaton.

The sweep walks the slices of the previous generation in order, keeping a
window of three slices (``w-1``, ``w``, ``w+1``): every neighbor of a cell in
slice ``w`` lives in that window. Each cell is toppled and its remainder and
shares are added into the next generation, whose slices are allocated as the
window advances. Slice ``w-1`` of the previous generation is retired as soon
as the window moves past it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Union

import numpy as np

from .lattice import NeighborTable, neighbor_table
from .store import INT64, FileBackedStore, InMemoryStore
from .topple import Neighbor, topple, topple_slice_int64

logger = logging.getLogger(__name__)

GridStore = Union[InMemoryStore, FileBackedStore]


@dataclass(frozen=True)
class AetherState:
    """
    A fully computed generation and the counters needed to continue it.

    ``bound``: every canonical position whose first coordinate exceeds it
    holds zero; the grid holds slices ``0 .. bound + 2``.
    ``even_turn``: whether cells with an even coordinate sum are expected to
    topple on the next step.
    ``changed``: whether the step that produced this generation changed any
    value (``None`` when unknown).
    """

    grid: GridStore
    dimension: int
    initial_value: int
    step: int
    bound: int
    even_turn: bool
    changed: Optional[bool] = None

    @property
    def n_slices(self) -> int:
        return self.bound + 3


class SweepObserver(Protocol):
    def begin(self, state: AetherState) -> None: ...

    def record(self, table: NeighborTable, toppled: np.ndarray) -> None: ...

    def end(self, state: AetherState) -> None: ...


def initial_bound(dimension: int) -> int:
    return dimension + 1


def initial_state(grid: GridStore, dimension: int, initial_value: int) -> AetherState:
    return AetherState(
        grid=grid,
        dimension=dimension,
        initial_value=initial_value,
        step=0,
        bound=initial_bound(dimension),
        even_turn=initial_value >= 0,
        changed=None,
    )


def even_turn_at(initial_value: int, step: int) -> bool:
    return (initial_value >= 0) == (step % 2 == 0)


def _topple_slice_exact(
    table: NeighborTable,
    window,
    nxt: GridStore,
    toppled: np.ndarray,
) -> bool:
    """Topple one slice cell by cell with Python integers."""
    w = table.w
    prev_mid = window[1]
    any_toppled = False
    for j in range(table.size):
        neighbors = []
        for k in range(int(table.count[j])):
            d = int(table.delta[j, k])
            idx = int(table.index[j, k])
            neighbors.append(
                Neighbor(
                    value=int(window[d + 1][idx]),
                    symmetry=int(table.symmetry[j, k]),
                    multiplier=int(table.multiplier[j, k]),
                    target=(w + d, idx),
                )
            )
        result = topple(int(prev_mid[j]), neighbors)
        nxt.add(w, j, result.remainder)
        for (target_w, target_index), amount in result.outgoing:
            nxt.add(target_w, target_index, amount)
        toppled[j] = result.changed
        any_toppled = any_toppled or result.changed
    return any_toppled


def _topple_slice_compiled(
    table: NeighborTable,
    window,
    nxt: InMemoryStore,
    toppled: np.ndarray,
) -> bool:
    w = table.w
    next_lo = nxt.ensure_slice(w - 1) if w > 0 else np.zeros(0, dtype=np.int64)
    next_mid = nxt.ensure_slice(w)
    next_hi = nxt.ensure_slice(w + 1)
    return bool(
        topple_slice_int64(
            window[0],
            window[1],
            window[2],
            next_lo,
            next_mid,
            next_hi,
            table.delta,
            table.index,
            table.symmetry,
            table.multiplier,
            table.count,
            toppled,
        )
    )


def advance(state: AetherState, observer: Optional[SweepObserver] = None) -> AetherState:
    """
    Compute the next generation.

    The previous generation is consumed: its slices are retired as the sweep
    passes them and it is released once the new one is complete. If anything
    goes wrong the partial next generation is discarded before the error
    propagates, and an in-memory previous generation that already lost
    slices is marked unusable.
    """
    prev = state.grid
    dimension = state.dimension
    edge = state.bound + 2
    nxt = prev.spawn(state.step + 1, state.bound + 4)
    compiled = isinstance(prev, InMemoryStore) and prev.implementation == INT64
    slice_kernel = _topple_slice_compiled if compiled else _topple_slice_exact

    try:
        if observer is not None:
            observer.begin(state)
        changed = False
        frontier_toppled = False
        window = [prev.slice(-1), prev.slice(0), prev.slice(1)]
        for w in range(edge):
            table = neighbor_table(dimension, w)
            toppled = np.zeros(table.size, dtype=np.bool_)
            if slice_kernel(table, window, nxt, toppled):
                changed = True
                if w >= edge - 2:
                    frontier_toppled = True
            if observer is not None:
                observer.record(table, toppled)
            prev.retire(w - 1)
            window = [window[1], window[2], prev.slice(w + 2)]

        bound = state.bound + 1 if frontier_toppled else state.bound
        nxt.finish(bound + 3)
    except BaseException:
        nxt.discard()
        prev.abandon()
        raise

    prev.release()
    new_state = AetherState(
        grid=nxt,
        dimension=dimension,
        initial_value=state.initial_value,
        step=state.step + 1,
        bound=bound,
        even_turn=not state.even_turn,
        changed=changed,
    )
    if observer is not None:
        observer.end(new_state)
    logger.debug(
        "Step %d done: bound=%d changed=%s", new_state.step, new_state.bound, changed
    )
    return new_state


__all__ = [
    "AetherState",
    "GridStore",
    "SweepObserver",
    "advance",
    "even_turn_at",
    "initial_bound",
    "initial_state",
]
