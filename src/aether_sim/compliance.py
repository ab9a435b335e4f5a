"""
Toppling alternation compliance.

Tracks whether each cell toppled exactly when the alternation hypothesis
says it should: cells with an even coordinate sum on one step, odd ones on
the next. A cell complies when ``toppled == its_turn``. The observer only
reads what the sweep reports and never affects the simulation.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np

from .lattice import (
    canonical_form,
    coordinate_parity_even,
    position_count,
    slice_offset,
)
from .sweep import AetherState


class AlternationCompliance:
    def __init__(self, dimension: int) -> None:
        self.dimension = dimension
        self.step: Optional[int] = None
        # parity flag of the recorded step
        self.even_turn: Optional[bool] = None
        self._slices: List[np.ndarray] = []
        self._pending: List[np.ndarray] = []
        self._pending_turn: Optional[bool] = None

    # -------------------------------------------------------------- observer
    def begin(self, state: AetherState) -> None:
        self._pending = []
        self._pending_turn = state.even_turn

    def record(self, table, toppled: np.ndarray) -> None:
        its_turn = table.even == self._pending_turn
        self._pending.append(toppled == its_turn)

    def end(self, state: AetherState) -> None:
        self._slices = self._pending
        self.even_turn = self._pending_turn
        self.step = state.step
        self._pending = []

    # ----------------------------------------------------------------- query
    @property
    def recorded(self) -> bool:
        return self.step is not None

    @property
    def n_slices(self) -> int:
        return len(self._slices)

    def value_at(self, position: Sequence[int]) -> bool:
        """Compliance of the last recorded step at any lattice position."""
        if not self.recorded:
            raise RuntimeError("No step has been recorded yet")
        canonical = canonical_form(position)
        w = canonical[0]
        if w < len(self._slices):
            return bool(self._slices[w][slice_offset(canonical)])
        # outside the swept region nothing topples
        its_turn = coordinate_parity_even(canonical) == self.even_turn
        return not its_turn

    # ------------------------------------------------------------- serialize
    def flat(self) -> np.ndarray:
        if not self._slices:
            return np.zeros(0, dtype=np.bool_)
        return np.concatenate(self._slices)

    @classmethod
    def from_flat(
        cls,
        dimension: int,
        flat: np.ndarray,
        n_slices: int,
        step: int,
        even_turn: bool,
    ) -> "AlternationCompliance":
        expected = position_count(dimension, n_slices)
        if flat.shape != (expected,):
            raise ValueError(
                f"Compliance grid holds {flat.size} values, expected {expected}"
            )
        compliance = cls(dimension)
        compliance._slices = [
            flat[position_count(dimension, w) : position_count(dimension, w + 1)].astype(
                np.bool_
            )
            for w in range(n_slices)
        ]
        compliance.step = step
        compliance.even_turn = even_turn
        return compliance


__all__ = ["AlternationCompliance"]
