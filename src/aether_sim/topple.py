"""
The Aether toppling rule.

A cell shares the amount by which it exceeds its lower neighbors, "peeling"
them from the highest to the lowest: at every level the excess over that
level is split evenly among the cell and all neighbors still below it, the
cell keeping one share plus whatever integer division could not hand out.
Neighbors of equal value form one level, so ties always get the same share.
No quantity is created or destroyed.

``topple`` works on Python integers and arbitrary neighbor targets; the numba
kernel ``topple_slice_int64`` applies the same rule to a whole slice of a
fixed-width generation.
"""

from __future__ import annotations

from typing import Any, Hashable, List, NamedTuple, Sequence, Tuple

import numpy as np
from numba import njit


class Neighbor(NamedTuple):
    value: int
    symmetry: int
    multiplier: int
    target: Hashable


class ToppleResult(NamedTuple):
    remainder: int
    outgoing: List[Tuple[Any, int]]
    changed: bool


def topple(value: int, neighbors: Sequence[Neighbor]) -> ToppleResult:
    """
    Apply the toppling rule to one cell.

    ``symmetry`` is how many lattice neighbors a descriptor stands for and
    takes part in the share count; ``multiplier`` scales the amount credited
    to the stored target. Returns the value left at the cell, the non-zero
    ``(target, amount)`` credits and whether any share was non-zero.
    """
    lower = sorted(
        (n for n in neighbors if n.value < value), key=lambda n: n.value, reverse=True
    )
    if not lower:
        return ToppleResult(value, [], False)

    amounts = [0] * len(lower)
    share_count = sum(n.symmetry for n in lower) + 1
    running = value
    changed = False
    start = 0
    while start < len(lower):
        level = lower[start].value
        end = start
        level_symmetry = 0
        while end < len(lower) and lower[end].value == level:
            level_symmetry += lower[end].symmetry
            end += 1
        # running > level, so floor division truncates
        share = (running - level) // share_count
        if share != 0:
            changed = True
            for k in range(start, len(lower)):
                amounts[k] += share * lower[k].multiplier
            running -= (share_count - 1) * share
        share_count -= level_symmetry
        start = end

    outgoing = [(n.target, amount) for n, amount in zip(lower, amounts) if amount != 0]
    return ToppleResult(running, outgoing, changed)


@njit(cache=True)
def _accumulate(next_lo, next_mid, next_hi, delta, idx, amount):
    if delta < 0:
        next_lo[idx] += amount
    elif delta == 0:
        next_mid[idx] += amount
    else:
        next_hi[idx] += amount


@njit(cache=True)
def topple_slice_int64(
    prev_lo: np.ndarray,
    prev_mid: np.ndarray,
    prev_hi: np.ndarray,
    next_lo: np.ndarray,
    next_mid: np.ndarray,
    next_hi: np.ndarray,
    delta: np.ndarray,
    index: np.ndarray,
    symmetry: np.ndarray,
    multiplier: np.ndarray,
    count: np.ndarray,
    toppled: np.ndarray,
) -> bool:
    """
    Topple every cell of slice ``w`` of an int64 generation.

    ``prev_*``/``next_*`` are slices ``w-1``, ``w`` and ``w+1`` of the
    previous and next generations; the neighbor arrays come from a
    ``NeighborTable``. Writes the per-cell toppled flags into ``toppled`` and
    returns whether any cell toppled.
    """
    width = delta.shape[1]
    values = np.empty(width, dtype=np.int64)
    order = np.empty(width, dtype=np.int64)
    any_toppled = False
    for j in range(count.shape[0]):
        value = prev_mid[j]
        n_lower = 0
        for k in range(count[j]):
            d = delta[j, k]
            idx = index[j, k]
            if d < 0:
                nv = prev_lo[idx]
            elif d == 0:
                nv = prev_mid[idx]
            else:
                nv = prev_hi[idx]
            if nv < value:
                # insertion keeps values[:n_lower] descending
                pos = n_lower
                while pos > 0 and values[pos - 1] < nv:
                    values[pos] = values[pos - 1]
                    order[pos] = order[pos - 1]
                    pos -= 1
                values[pos] = nv
                order[pos] = k
                n_lower += 1

        cell_toppled = False
        if n_lower > 0:
            share_count = 1
            for p in range(n_lower):
                share_count += symmetry[j, order[p]]
            start = 0
            while start < n_lower:
                level = values[start]
                end = start
                level_symmetry = 0
                while end < n_lower and values[end] == level:
                    level_symmetry += symmetry[j, order[end]]
                    end += 1
                share = (value - level) // share_count
                if share != 0:
                    cell_toppled = True
                    for p in range(start, n_lower):
                        k = order[p]
                        _accumulate(
                            next_lo,
                            next_mid,
                            next_hi,
                            delta[j, k],
                            index[j, k],
                            share * multiplier[j, k],
                        )
                    value -= (share_count - 1) * share
                share_count -= level_symmetry
                start = end

        next_mid[j] += value
        toppled[j] = cell_toppled
        if cell_toppled:
            any_toppled = True
    return any_toppled


__all__ = ["Neighbor", "ToppleResult", "topple", "topple_slice_int64"]
