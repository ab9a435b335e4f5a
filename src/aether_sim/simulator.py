"""
Aether single-source simulator.

``AetherSimulator`` owns the current ``AetherState`` and threads it through
``sweep.advance`` one step at a time. It builds the initial generation
(in memory with Python or int64 integers, or in a file), answers point
queries on the whole lattice, and saves or restores runs through the
``snapshot`` codec.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from . import snapshot, utils
from .compliance import AlternationCompliance
from .lattice import canonical_form
from .store import BIG_INT, FILE_NAME_FORMAT, INT64, FileBackedStore, InMemoryStore
from .sweep import AetherState, advance, initial_bound, initial_state

logger = logging.getLogger(__name__)

MEMORY = "memory"
FILE = "file"


@dataclass
class AetherConfig:
    dimension: int = 2
    initial_value: int = 1_000
    implementation: str = BIG_INT  # {"big_int", "int64"}
    storage: str = MEMORY  # {"memory", "file"}
    folder: Optional[str] = None  # working folder for file storage
    track_compliance: bool = False
    log_every: int = 100

    def validate(self) -> None:
        if self.dimension < 1:
            raise ValueError("Grid dimension must be greater than zero.")
        if self.implementation not in (BIG_INT, INT64):
            raise ValueError(f"Unknown implementation: {self.implementation!r}")
        if self.storage not in (MEMORY, FILE):
            raise ValueError(f"Unknown storage: {self.storage!r}")
        if self.storage == FILE:
            if self.implementation != INT64:
                raise ValueError("File storage holds int64 records; use implementation='int64'")
            if self.folder is None:
                raise ValueError("File storage needs a working folder")
        if self.implementation == INT64:
            lowest = utils.min_allowed_single_source_value(self.dimension, utils.INT64_MAX)
            if not lowest <= self.initial_value <= utils.INT64_MAX:
                raise ValueError(
                    f"Initial value must lie in [{lowest:,}, {utils.INT64_MAX:,}] for the "
                    f"int64 implementation in {self.dimension}D. Use a different "
                    "initial value or the big_int implementation."
                )


@dataclass
class RunResult:
    """Outcome of :func:`run_model`."""

    simulator: "AetherSimulator"
    meta: Dict[str, Any] = field(default_factory=dict)


class AetherSimulator:
    """
    Facade over one run.

    Responsibilities:
    1. Build the single-source generation (or take a restored state).
    2. Advance it, keeping the optional compliance observer in step.
    3. Answer point queries and lattice sums.
    4. Save/restore snapshots and release generation files on close.
    """

    def __init__(
        self,
        config: AetherConfig | None = None,
        *,
        state: Optional[AetherState] = None,
        compliance: Optional[AlternationCompliance] = None,
    ) -> None:
        self.config = config or AetherConfig()
        self.config.validate()
        self._state = state if state is not None else self._build_initial_state()
        if compliance is None and self.config.track_compliance:
            compliance = AlternationCompliance(self._state.dimension)
        self.compliance = compliance
        self._started = time.time()

    def _build_initial_state(self) -> AetherState:
        cfg = self.config
        n_slices = initial_bound(cfg.dimension) + 3
        if cfg.storage == FILE:
            folder = utils.grid_folder(cfg.folder, cfg.dimension, cfg.initial_value)
            folder.mkdir(parents=True, exist_ok=True)
            for stale in folder.glob("step=*.data"):
                stale.unlink()
            grid = FileBackedStore.single_source(
                folder / FILE_NAME_FORMAT.format(step=0),
                cfg.dimension,
                cfg.initial_value,
                n_slices,
            )
        else:
            grid = InMemoryStore.single_source(
                cfg.dimension, cfg.implementation, cfg.initial_value, n_slices
            )
        logger.info(
            "Aether %dD, initial value %s, %s/%s",
            cfg.dimension,
            cfg.initial_value,
            cfg.implementation,
            cfg.storage,
        )
        return initial_state(grid, cfg.dimension, cfg.initial_value)

    # ------------------------------------------------------------------ state
    @property
    def state(self) -> AetherState:
        return self._state

    @property
    def dimension(self) -> int:
        return self._state.dimension

    @property
    def initial_value(self) -> int:
        return self._state.initial_value

    @property
    def step(self) -> int:
        return self._state.step

    @property
    def bound(self) -> int:
        return self._state.bound

    @property
    def even_turn(self) -> bool:
        return self._state.even_turn

    @property
    def changed(self) -> Optional[bool]:
        return self._state.changed

    # ------------------------------------------------------------------ public
    def advance(self) -> bool:
        """Compute one step. Returns whether any value changed."""
        self._state = advance(self._state, self.compliance)
        if self.config.log_every and self._state.step % self.config.log_every == 0:
            logger.info(
                "[aether] step=%d bound=%d changed=%s elapsed=%.1fs",
                self._state.step,
                self._state.bound,
                self._state.changed,
                time.time() - self._started,
            )
        return bool(self._state.changed)

    def run(self, max_steps: Optional[int] = None) -> int:
        """Advance until a step changes nothing or ``max_steps`` are done."""
        steps = 0
        while max_steps is None or steps < max_steps:
            changed = self.advance()
            steps += 1
            if not changed:
                logger.info("Stable after step %d", self._state.step)
                break
        return steps

    def value_at(self, position: Sequence[int]) -> int:
        if len(position) != self.dimension:
            raise ValueError(
                f"Expected {self.dimension} coordinates, got {len(position)}"
            )
        canonical = canonical_form(position)
        if canonical[0] > self._state.bound:
            return 0
        return self._state.grid.get(canonical)

    def compliance_at(self, position: Sequence[int]) -> bool:
        if self.compliance is None:
            raise RuntimeError("This run does not track toppling alternation compliance")
        if len(position) != self.dimension:
            raise ValueError(
                f"Expected {self.dimension} coordinates, got {len(position)}"
            )
        return self.compliance.value_at(position)

    def lattice_sum(self) -> int:
        """Sum of the values over the whole lattice."""
        return self._state.grid.lattice_sum()

    def meta(self) -> Dict[str, Any]:
        return {
            "model": "aether",
            "dimension": self.dimension,
            "initial_value": self.initial_value,
            "implementation": self.config.implementation,
            "storage": self.config.storage,
            "step": self.step,
            "bound": self.bound,
            "changed": self.changed,
            "time_elapsed": time.time() - self._started,
        }

    # ------------------------------------------------------------------ persistence
    def save(self, path: str | os.PathLike[str]) -> None:
        """Write an ``.npz`` snapshot of an in-memory run."""
        snapshot.save_snapshot(path, snapshot.to_container(self._state, self.compliance))

    def backup(self, backup_dir: str | os.PathLike[str]) -> Path:
        """Back up a file-backed run into ``backup_dir``."""
        return snapshot.backup_file_backed(self._state, backup_dir)

    @classmethod
    def restore(
        cls,
        path: str | os.PathLike[str],
        *,
        implementation: Optional[str] = None,
        track_compliance: bool = False,
        log_every: int = 100,
    ) -> "AetherSimulator":
        """
        Resume an in-memory run from an ``.npz`` snapshot.

        Without an explicit ``implementation`` the one recorded in the
        snapshot is used. When compliance is tracked but the snapshot holds
        no compliance grid, one step is computed to rebuild it.
        """
        container = snapshot.load_snapshot(path)
        if implementation is None:
            implementation = container.get(
                snapshot.INITIAL_CONFIGURATION_IMPLEMENTATION_TYPE, BIG_INT
            )
        state, compliance = snapshot.from_container(container, implementation=implementation)
        config = AetherConfig(
            dimension=state.dimension,
            initial_value=state.initial_value,
            implementation=implementation,
            storage=MEMORY,
            track_compliance=track_compliance,
            log_every=log_every,
        )
        if not track_compliance:
            compliance = None
        return cls._resume(config, state, compliance)

    @classmethod
    def restore_backup(
        cls,
        backup_dir: str | os.PathLike[str],
        folder: str | os.PathLike[str],
        *,
        track_compliance: bool = False,
        log_every: int = 100,
    ) -> "AetherSimulator":
        """Resume a file-backed run; new generations go under ``folder``."""
        state = snapshot.restore_file_backed(backup_dir, folder)
        config = AetherConfig(
            dimension=state.dimension,
            initial_value=state.initial_value,
            implementation=INT64,
            storage=FILE,
            folder=str(folder),
            track_compliance=track_compliance,
            log_every=log_every,
        )
        return cls._resume(config, state, None)

    @classmethod
    def _resume(
        cls,
        config: AetherConfig,
        state: AetherState,
        compliance: Optional[AlternationCompliance],
    ) -> "AetherSimulator":
        simulator = cls(config, state=state, compliance=compliance)
        if config.track_compliance and not simulator.compliance.recorded:
            logger.info(
                "Snapshot of step %d has no compliance data; recomputing one step",
                state.step,
            )
            simulator.advance()
        logger.info("Restored step %d (bound %d)", simulator.step, simulator.bound)
        return simulator

    # ------------------------------------------------------------------ lifecycle
    def close(self) -> None:
        """Release the current generation (deleting its file when owned)."""
        self._state.grid.release()

    def __enter__(self) -> "AetherSimulator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def load_config(path: str | os.PathLike[str]) -> AetherConfig:
    """Build an ``AetherConfig`` from a JSON or TOML file."""
    params = utils.load_params(path)
    try:
        config = AetherConfig(**params)
    except TypeError as exc:
        raise ValueError(f"Invalid configuration in {path}: {exc}") from exc
    config.validate()
    return config


def run_model(
    config: AetherConfig | Dict[str, Any] | None = None,
    max_steps: Optional[int] = None,
) -> RunResult:
    """
    Run a simulation until it stabilizes or ``max_steps`` are done.

    The returned simulator is still open; close it when done.
    """
    if config is None:
        config = AetherConfig()
    elif isinstance(config, dict):
        config = AetherConfig(**config)
    simulator = AetherSimulator(config)
    simulator.run(max_steps=max_steps)
    meta = simulator.meta()
    meta["config"] = asdict(config)
    return RunResult(simulator=simulator, meta=meta)


__all__ = ["AetherConfig", "AetherSimulator", "RunResult", "load_config", "run_model"]
