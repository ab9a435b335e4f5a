"""
Symmetry-reduced addressing of the lattice Z^D.

A single source at the origin makes every generation invariant under the
signed permutations of the axes, so only the canonical sector
``c0 >= c1 >= ... >= c_{D-1} >= 0`` is stored. Canonical positions are laid
out in lexicographic order; the closed-form ``offset`` maps each one to its
record index without any lookup table, and the positions sharing a first
coordinate ("slice" ``w``) are contiguous.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from math import comb, factorial
from typing import Iterator, List, Sequence, Tuple

import numpy as np

Position = Tuple[int, ...]

INT32_MAX = int(np.iinfo(np.int32).max)


def is_canonical(position: Sequence[int]) -> bool:
    """True when the coordinates are non-negative and sorted descending."""
    if len(position) == 0 or position[-1] < 0:
        return False
    return all(position[i] >= position[i + 1] for i in range(len(position) - 1))


def _assert_canonical(position: Sequence[int]) -> None:
    assert is_canonical(position), f"not a canonical position: {tuple(position)}"


def canonicalize(position: Sequence[int]) -> Tuple[Position, Position, Position]:
    """
    Map a lattice position to its canonical representative.

    Returns ``(canonical, signs, permutation)`` where ``canonical[i]`` is
    ``abs(position[permutation[i]])`` and ``signs[k]`` is the sign of
    ``position[k]`` (``+1`` for zero).
    """
    signs = tuple(-1 if c < 0 else 1 for c in position)
    permutation = tuple(sorted(range(len(position)), key=lambda k: -abs(position[k])))
    canonical = tuple(abs(position[k]) for k in permutation)
    return canonical, signs, permutation


def decanonicalize(
    canonical: Sequence[int], signs: Sequence[int], permutation: Sequence[int]
) -> Position:
    """Inverse of :func:`canonicalize`."""
    position = [0] * len(canonical)
    for i, k in enumerate(permutation):
        position[k] = signs[k] * canonical[i]
    return tuple(position)


def canonical_form(position: Sequence[int]) -> Position:
    return tuple(sorted((abs(c) for c in position), reverse=True))


def position_count(dimension: int, n: int) -> int:
    """Number of canonical positions whose first coordinate is below ``n``."""
    assert dimension > 0 and n >= 0
    return comb(n + dimension - 1, dimension)


def slice_size(dimension: int, w: int) -> int:
    """Number of canonical positions whose first coordinate equals ``w``."""
    assert dimension > 0 and w >= 0
    return comb(w + dimension - 1, dimension - 1)


def offset(canonical: Sequence[int]) -> int:
    """
    Record index of a canonical position.

    Term ``i`` counts the canonical tails that precede ``c_i`` at depth ``i``;
    the first term is ``position_count(D, c0)`` and the last two are the
    triangular number ``c(c+1)/2`` and the last coordinate itself.
    """
    _assert_canonical(canonical)
    dimension = len(canonical)
    return sum(comb(c + dimension - 1 - i, dimension - i) for i, c in enumerate(canonical))


def slice_offset(canonical: Sequence[int]) -> int:
    """Index of a canonical position inside its slice."""
    _assert_canonical(canonical)
    dimension = len(canonical)
    return sum(
        comb(canonical[i] + dimension - 1 - i, dimension - i) for i in range(1, dimension)
    )


def _descending_tuples(length: int, top: int) -> Iterator[Position]:
    if length == 0:
        yield ()
        return
    for head in range(top + 1):
        for tail in _descending_tuples(length - 1, head):
            yield (head,) + tail


def slice_positions(dimension: int, w: int) -> Iterator[Position]:
    """Canonical positions with first coordinate ``w`` in offset order."""
    assert dimension > 0 and w >= 0
    for tail in _descending_tuples(dimension - 1, w):
        yield (w,) + tail


def orbit_size(canonical: Sequence[int]) -> int:
    """Number of lattice positions equivalent to ``canonical``."""
    _assert_canonical(canonical)
    size = factorial(len(canonical))
    for multiplicity in Counter(canonical).values():
        size //= factorial(multiplicity)
    return size << sum(1 for c in canonical if c != 0)


def coordinate_parity_even(position: Sequence[int]) -> bool:
    return sum(position) % 2 == 0


@dataclass(frozen=True)
class NeighborTable:
    """
    Distinct canonical neighbors of every cell of one slice.

    Row ``j`` describes the cell at slice index ``j``; only the first
    ``count[j]`` columns are meaningful. ``delta`` is the target's first
    coordinate minus the slice's, ``index`` its slice index.
    """

    dimension: int
    w: int
    delta: np.ndarray
    index: np.ndarray
    symmetry: np.ndarray
    multiplier: np.ndarray
    count: np.ndarray
    even: np.ndarray

    @property
    def size(self) -> int:
        return int(self.count.shape[0])


def neighbor_descriptors(canonical: Sequence[int]) -> List[Tuple[Position, int, int]]:
    """
    Fold the 2*D lattice neighbors of a canonical cell onto canonical targets.

    Returns a list of ``(target, symmetry, multiplier)`` in first-seen order.
    The symmetry counts always add up to ``2 * D``.
    """
    _assert_canonical(canonical)
    folded = {}
    for axis in range(len(canonical)):
        for step in (1, -1):
            moved = list(canonical)
            moved[axis] += step
            target = canonical_form(moved)
            folded[target] = folded.get(target, 0) + 1
    own_orbit = orbit_size(canonical)
    descriptors = []
    for target, symmetry in folded.items():
        multiplier, rest = divmod(symmetry * own_orbit, orbit_size(target))
        assert rest == 0
        descriptors.append((target, symmetry, multiplier))
    return descriptors


def neighbor_table(dimension: int, w: int) -> NeighborTable:
    """
    Build the neighbor table of slice ``w``.

    Built fresh on every call; a sweep holds only the table of the slice it
    is toppling.
    """
    n_cells = slice_size(dimension, w)
    width = 2 * dimension
    delta = np.zeros((n_cells, width), dtype=np.int8)
    index_dtype = np.int32 if n_cells <= INT32_MAX else np.int64
    index = np.zeros((n_cells, width), dtype=index_dtype)
    symmetry = np.zeros((n_cells, width), dtype=np.int8)
    multiplier = np.zeros((n_cells, width), dtype=np.int32)
    count = np.zeros(n_cells, dtype=np.int8)
    even = np.zeros(n_cells, dtype=np.bool_)
    for j, cell in enumerate(slice_positions(dimension, w)):
        even[j] = coordinate_parity_even(cell)
        descriptors = neighbor_descriptors(cell)
        count[j] = len(descriptors)
        for k, (target, sym, mult) in enumerate(descriptors):
            delta[j, k] = target[0] - w
            index[j, k] = slice_offset(target)
            symmetry[j, k] = sym
            multiplier[j, k] = mult
    return NeighborTable(
        dimension=dimension,
        w=w,
        delta=delta,
        index=index,
        symmetry=symmetry,
        multiplier=multiplier,
        count=count,
        even=even,
    )


__all__ = [
    "NeighborTable",
    "canonical_form",
    "canonicalize",
    "coordinate_parity_even",
    "decanonicalize",
    "is_canonical",
    "neighbor_descriptors",
    "neighbor_table",
    "offset",
    "orbit_size",
    "position_count",
    "slice_offset",
    "slice_positions",
    "slice_size",
]
