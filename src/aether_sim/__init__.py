"""
Aether Simulation Library - Single-Source Cellular Automaton Core

This package evolves the Aether automaton on the infinite lattice Z^D from a
single source at the origin:
- AetherSimulator: facade that advances, queries and saves a run
- lattice: symmetry-reduced addressing of canonical positions
- topple: the toppling rule (Python integers and a numba int64 kernel)
- store / sweep: generation storage (in memory or file-backed) and the step
- snapshot: tagged snapshots and file-backed backups
"""

from .simulator import AetherConfig, AetherSimulator, RunResult, load_config, run_model
from .sweep import AetherState, advance
from .compliance import AlternationCompliance
from .snapshot import SnapshotCompatibilityError
from .store import BIG_INT, INT64, FileBackedStore, InMemoryStore
from . import lattice, topple, utils

__all__ = [
    # Simulator
    "AetherSimulator",
    "AetherConfig",
    "RunResult",
    "run_model",
    "load_config",
    # Engine
    "AetherState",
    "advance",
    "AlternationCompliance",
    "InMemoryStore",
    "FileBackedStore",
    "BIG_INT",
    "INT64",
    # Errors
    "SnapshotCompatibilityError",
    # Modules
    "lattice",
    "topple",
    "utils",
]
