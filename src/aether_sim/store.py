"""
Generation stores.

A generation holds one value per canonical position, grouped in slices of
equal first coordinate. ``InMemoryStore`` keeps one numpy array per slice so
that slices can be allocated while a generation is being built and released
once the sweep no longer needs them. ``FileBackedStore`` keeps the same
values as fixed-width records in a raw file addressed with the closed-form
offset, so a generation may be larger than physical memory.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .lattice import (
    orbit_size,
    position_count,
    slice_offset,
    slice_positions,
    slice_size,
)

logger = logging.getLogger(__name__)

BIG_INT = "big_int"
INT64 = "int64"

RECORD_DTYPE = np.dtype("<i8")
RECORD_SIZE = RECORD_DTYPE.itemsize
FILE_NAME_FORMAT = "step={step}.data"


def dtype_for(implementation: str) -> np.dtype:
    if implementation == BIG_INT:
        return np.dtype(object)
    if implementation == INT64:
        return np.dtype(np.int64)
    raise ValueError(f"Unknown implementation: {implementation!r}")


def zeros(n: int, dtype: np.dtype) -> np.ndarray:
    # np.zeros(..., dtype=object) is filled with the Python int 0
    return np.zeros(n, dtype=dtype)


class InMemoryStore:
    """Slices of one generation held as numpy arrays."""

    def __init__(
        self,
        dimension: int,
        implementation: str,
        slices: Sequence[Optional[np.ndarray]],
    ) -> None:
        self.dimension = dimension
        self.implementation = implementation
        self.dtype = dtype_for(implementation)
        self._slices: List[Optional[np.ndarray]] = list(slices)
        self._retired = set()
        self._abandoned = False

    # ------------------------------------------------------------------ build
    @classmethod
    def single_source(
        cls, dimension: int, implementation: str, value: int, n_slices: int
    ) -> "InMemoryStore":
        dtype = dtype_for(implementation)
        slices = [zeros(slice_size(dimension, w), dtype) for w in range(n_slices)]
        slices[0][0] = value
        return cls(dimension, implementation, slices)

    @classmethod
    def from_flat(
        cls, dimension: int, implementation: str, flat: np.ndarray, n_slices: int
    ) -> "InMemoryStore":
        """Rebuild from records in offset order."""
        dtype = dtype_for(implementation)
        expected = position_count(dimension, n_slices)
        if flat.shape != (expected,):
            raise ValueError(
                f"Grid holds {flat.size} values, expected {expected} for {n_slices} slices"
            )
        slices = []
        for w in range(n_slices):
            start = position_count(dimension, w)
            part = flat[start : start + slice_size(dimension, w)]
            if dtype == object:
                slices.append(np.array([int(v) for v in part], dtype=object))
            else:
                slices.append(part.astype(dtype, copy=True))
        return cls(dimension, implementation, slices)

    def spawn(self, step: int, n_slices: int) -> "InMemoryStore":
        """An empty generation whose slices are allocated on demand."""
        self._check_usable()
        return InMemoryStore(self.dimension, self.implementation, [None] * n_slices)

    def ensure_slice(self, w: int) -> np.ndarray:
        while len(self._slices) <= w:
            self._slices.append(None)
        current = self._slices[w]
        if current is None:
            current = zeros(slice_size(self.dimension, w), self.dtype)
            self._slices[w] = current
        return current

    def finish(self, n_slices: int) -> None:
        for w in range(n_slices):
            self.ensure_slice(w)
        del self._slices[n_slices:]

    # ------------------------------------------------------------------ access
    @property
    def n_slices(self) -> int:
        return len(self._slices)

    def slice(self, w: int) -> np.ndarray:
        self._check_usable()
        if w < 0:
            return zeros(0, self.dtype)
        if w >= len(self._slices):
            return zeros(slice_size(self.dimension, w), self.dtype)
        if w in self._retired:
            raise RuntimeError(f"Slice {w} of this generation has been released")
        current = self._slices[w]
        if current is None:
            return zeros(slice_size(self.dimension, w), self.dtype)
        return current

    def add(self, w: int, index: int, amount: int) -> None:
        self.ensure_slice(w)[index] += amount

    def get(self, canonical: Sequence[int]) -> int:
        self._check_usable()
        w = canonical[0]
        if w >= len(self._slices):
            return 0
        return int(self.slice(w)[slice_offset(canonical)])

    def retire(self, w: int) -> None:
        if 0 <= w < len(self._slices):
            self._slices[w] = None
            self._retired.add(w)

    def release(self) -> None:
        self._slices = []
        self._retired = set()

    def discard(self) -> None:
        self.release()

    def abandon(self) -> None:
        """
        Mark this generation unusable if a failed step already retired some
        of its slices.
        """
        if self._retired:
            self.release()
            self._abandoned = True

    def _check_usable(self) -> None:
        if self._abandoned:
            raise RuntimeError(
                "This generation was partly consumed by a step that did not "
                "complete; restore the last snapshot"
            )

    # ------------------------------------------------------------------ export
    def cells(self) -> Iterator[Tuple[Tuple[int, ...], int]]:
        """Yield ``(canonical, value)`` for every stored cell."""
        self._check_usable()
        for w in range(len(self._slices)):
            values = self.slice(w)
            for position, value in zip(slice_positions(self.dimension, w), values):
                yield position, int(value)

    def lattice_sum(self) -> int:
        return sum(value * orbit_size(position) for position, value in self.cells() if value)

    def flat(self) -> np.ndarray:
        self._check_usable()
        parts = [self.slice(w) for w in range(len(self._slices))]
        if not parts:
            return zeros(0, self.dtype)
        return np.concatenate(parts)


class FileBackedStore:
    """
    One generation as little-endian int64 records in offset order.

    Reads of the previous generation go through ``slice`` (one contiguous
    slice per call); accumulation is read-modify-write per record. Stores
    that are not ``owned`` (restored from a backup) are never deleted.
    """

    implementation = INT64
    dtype = np.dtype(np.int64)

    def __init__(
        self,
        path: str | os.PathLike[str],
        dimension: int,
        n_slices: int,
        *,
        writable: bool,
        owned: bool = True,
        grid_folder: Optional[str | os.PathLike[str]] = None,
    ) -> None:
        self.path = Path(path)
        self.dimension = dimension
        self.n_slices = n_slices
        self.owned = owned
        self.grid_folder = Path(grid_folder) if grid_folder is not None else self.path.parent
        self._fh = open(self.path, "r+b" if writable else "rb")

    # ------------------------------------------------------------------ build
    @classmethod
    def create(
        cls, path: str | os.PathLike[str], dimension: int, n_slices: int
    ) -> "FileBackedStore":
        """Create a zero-filled file with room for ``n_slices`` slices."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as fh:
            # extending a file fills it with zero bytes
            fh.truncate(position_count(dimension, n_slices) * RECORD_SIZE)
        logger.debug("Created generation file %s (%d slices)", path, n_slices)
        return cls(path, dimension, n_slices, writable=True)

    @classmethod
    def single_source(
        cls, path: str | os.PathLike[str], dimension: int, value: int, n_slices: int
    ) -> "FileBackedStore":
        store = cls.create(path, dimension, n_slices)
        store.add(0, 0, value)
        return store

    def spawn(self, step: int, n_slices: int) -> "FileBackedStore":
        return FileBackedStore.create(
            self.grid_folder / FILE_NAME_FORMAT.format(step=step), self.dimension, n_slices
        )

    def ensure_slice(self, w: int) -> None:
        if w >= self.n_slices:
            raise IndexError(f"Slice {w} is beyond the {self.n_slices} slices of {self.path}")

    def finish(self, n_slices: int) -> None:
        self.ensure_slice(n_slices - 1)
        self._fh.flush()

    # ------------------------------------------------------------------ access
    def _seek(self, w: int, index: int) -> None:
        self._fh.seek((position_count(self.dimension, w) + index) * RECORD_SIZE)

    def slice(self, w: int) -> np.ndarray:
        if w < 0:
            return zeros(0, self.dtype)
        n = slice_size(self.dimension, w)
        if w >= self.n_slices:
            return zeros(n, self.dtype)
        self._seek(w, 0)
        raw = self._fh.read(n * RECORD_SIZE)
        if len(raw) != n * RECORD_SIZE:
            raise OSError(f"Short read of slice {w} from {self.path}")
        return np.frombuffer(raw, dtype=RECORD_DTYPE).astype(np.int64)

    def read(self, w: int, index: int) -> int:
        self._seek(w, index)
        raw = self._fh.read(RECORD_SIZE)
        if len(raw) != RECORD_SIZE:
            raise OSError(f"Short read at slice {w}, index {index} of {self.path}")
        return int(np.frombuffer(raw, dtype=RECORD_DTYPE)[0])

    def add(self, w: int, index: int, amount: int) -> None:
        self.ensure_slice(w)
        total = self.read(w, index) + int(amount)
        # raises OverflowError when the sum leaves the int64 range
        record = np.array([total], dtype=RECORD_DTYPE).tobytes()
        self._seek(w, index)
        self._fh.write(record)

    def get(self, canonical: Sequence[int]) -> int:
        w = canonical[0]
        if w >= self.n_slices:
            return 0
        return self.read(w, slice_offset(canonical))

    def retire(self, w: int) -> None:
        """Nothing to free: records live on disk."""

    def close(self) -> None:
        if not self._fh.closed:
            self._fh.close()

    def release(self) -> None:
        """Close the file and delete it if this store owns it."""
        self.close()
        if self.owned and self.path.exists():
            self.path.unlink()
            logger.debug("Deleted generation file %s", self.path)

    def abandon(self) -> None:
        """The previous generation file is left intact."""

    def discard(self) -> None:
        self.close()
        if self.path.exists():
            self.path.unlink()
            logger.debug("Discarded partial generation file %s", self.path)

    # ------------------------------------------------------------------ export
    def cells(self) -> Iterator[Tuple[Tuple[int, ...], int]]:
        for w in range(self.n_slices):
            values = self.slice(w)
            for position, value in zip(slice_positions(self.dimension, w), values):
                yield position, int(value)

    def lattice_sum(self) -> int:
        return sum(value * orbit_size(position) for position, value in self.cells() if value)


__all__ = [
    "BIG_INT",
    "FILE_NAME_FORMAT",
    "FileBackedStore",
    "INT64",
    "InMemoryStore",
    "RECORD_DTYPE",
    "RECORD_SIZE",
    "dtype_for",
]
