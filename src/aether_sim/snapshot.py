"""
Saving and restoring runs.

In-memory generations are written as a tagged key/value container (an
``.npz`` file through ``utils.save_arrays``): the grid as a flat array in
offset order next to the tags describing how to read it. Restoring checks
every tag against the exact values this package writes and rejects anything
else.

File-backed generations are backed up as a folder: ``properties.json`` plus
``grid/step=<n>.data``, a byte copy of the current generation file.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

from . import utils
from .compliance import AlternationCompliance
from .lattice import position_count
from .store import (
    BIG_INT,
    FILE_NAME_FORMAT,
    INT64,
    RECORD_DTYPE,
    RECORD_SIZE,
    FileBackedStore,
    InMemoryStore,
)
from .sweep import AetherState, even_turn_at

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

# keys
MODEL = "model"
FORMAT = "format_version"
STEP = "step"
CONFIGURATION_CHANGED_FROM_PREVIOUS_STEP = "configuration_changed_from_previous_step"
EVEN_TURN = "even_positions_turn_to_topple"
GRID = "grid"
GRID_TYPE = "grid_type"
GRID_DIMENSION = "grid_dimension"
GRID_IMPLEMENTATION_TYPE = "grid_implementation_type"
GRID_SLICES = "grid_slices"
INITIAL_CONFIGURATION = "initial_configuration"
INITIAL_CONFIGURATION_TYPE = "initial_configuration_type"
INITIAL_CONFIGURATION_IMPLEMENTATION_TYPE = "initial_configuration_implementation_type"
COORDINATE_BOUNDS = "coordinate_bounds"
COORDINATE_BOUNDS_IMPLEMENTATION_TYPE = "coordinate_bounds_implementation_type"
TOPPLING_ALTERNATION_COMPLIANCE = "toppling_alternation_compliance"
TOPPLING_ALTERNATION_COMPLIANCE_IMPLEMENTATION_TYPE = (
    "toppling_alternation_compliance_implementation_type"
)
TOPPLING_ALTERNATION_COMPLIANCE_SLICES = "toppling_alternation_compliance_slices"
RECORD_FORMAT = "record_format"

# values
AETHER = "aether"
SINGLE_SOURCE_AT_ORIGIN = "single_source_at_origin"
INFINITE_REGULAR = "infinite_regular"
MAX_COORDINATE_INTEGER = "max_coordinate_integer"
GRID_IMPLEMENTATIONS = {
    BIG_INT: "anisotropic_big_int_offset_order",
    INT64: "anisotropic_int64_offset_order",
}
FILE_GRID_IMPLEMENTATION = "file_int64_offset_order"
BOOLEAN_OFFSET_ORDER = "anisotropic_boolean_offset_order"

PROPERTIES_FILE_NAME = "properties.json"


class SnapshotCompatibilityError(ValueError):
    """A snapshot was written for a different model or configuration."""


def _require(container: Mapping[str, Any], key: str, expected: Any) -> None:
    if key not in container:
        raise SnapshotCompatibilityError(f"Snapshot is missing the {key!r} tag")
    actual = container[key]
    if isinstance(actual, np.ndarray) and actual.ndim == 0:
        actual = actual.item()
    if actual != expected:
        raise SnapshotCompatibilityError(
            f"Snapshot tag {key!r} is {actual!r}, expected {expected!r}"
        )


def _require_present(container: Mapping[str, Any], key: str) -> Any:
    if key not in container:
        raise SnapshotCompatibilityError(f"Snapshot is missing the {key!r} tag")
    return container[key]


def _check_common(
    container: Mapping[str, Any],
    implementation: str,
    dimension: Optional[int],
) -> int:
    version = _require_present(container, FORMAT)
    if int(version) > FORMAT_VERSION:
        raise SnapshotCompatibilityError(
            f"Snapshot format version {version} is newer than supported ({FORMAT_VERSION})"
        )
    _require(container, MODEL, AETHER)
    _require(container, INITIAL_CONFIGURATION_TYPE, SINGLE_SOURCE_AT_ORIGIN)
    _require(container, INITIAL_CONFIGURATION_IMPLEMENTATION_TYPE, implementation)
    _require(container, GRID_TYPE, INFINITE_REGULAR)
    _require(container, COORDINATE_BOUNDS_IMPLEMENTATION_TYPE, MAX_COORDINATE_INTEGER)
    found_dimension = int(_require_present(container, GRID_DIMENSION))
    if dimension is not None:
        _require(container, GRID_DIMENSION, dimension)
    if found_dimension < 1:
        raise SnapshotCompatibilityError(f"Invalid grid dimension {found_dimension}")
    return found_dimension


def _restored_even_turn(container: Mapping[str, Any], initial_value: int, step: int) -> bool:
    expected = even_turn_at(initial_value, step)
    if EVEN_TURN in container:
        _require(container, EVEN_TURN, expected)
    return expected


# ---------------------------------------------------------------------- npz


def to_container(
    state: AetherState, compliance: Optional[AlternationCompliance] = None
) -> Dict[str, Any]:
    """Describe an in-memory state as a tagged key/value container."""
    grid = state.grid
    if not isinstance(grid, InMemoryStore):
        raise TypeError("File-backed runs are saved with backup_file_backed()")
    container: Dict[str, Any] = {
        FORMAT: FORMAT_VERSION,
        MODEL: AETHER,
        INITIAL_CONFIGURATION: state.initial_value,
        INITIAL_CONFIGURATION_TYPE: SINGLE_SOURCE_AT_ORIGIN,
        INITIAL_CONFIGURATION_IMPLEMENTATION_TYPE: grid.implementation,
        GRID: grid.flat(),
        GRID_TYPE: INFINITE_REGULAR,
        GRID_DIMENSION: state.dimension,
        GRID_IMPLEMENTATION_TYPE: GRID_IMPLEMENTATIONS[grid.implementation],
        GRID_SLICES: grid.n_slices,
        COORDINATE_BOUNDS: state.bound,
        COORDINATE_BOUNDS_IMPLEMENTATION_TYPE: MAX_COORDINATE_INTEGER,
        STEP: state.step,
        CONFIGURATION_CHANGED_FROM_PREVIOUS_STEP: state.changed,
        EVEN_TURN: state.even_turn,
    }
    if compliance is not None and compliance.recorded and compliance.step == state.step:
        container[TOPPLING_ALTERNATION_COMPLIANCE] = compliance.flat()
        container[TOPPLING_ALTERNATION_COMPLIANCE_IMPLEMENTATION_TYPE] = BOOLEAN_OFFSET_ORDER
        container[TOPPLING_ALTERNATION_COMPLIANCE_SLICES] = compliance.n_slices
    return container


def from_container(
    container: Mapping[str, Any],
    *,
    implementation: str = BIG_INT,
    dimension: Optional[int] = None,
) -> Tuple[AetherState, Optional[AlternationCompliance]]:
    """
    Rebuild a state from a container written by :func:`to_container`.

    Raises ``SnapshotCompatibilityError`` when any tag differs from what
    this implementation writes. The compliance grid is ``None`` when the
    container does not carry one.
    """
    if implementation not in GRID_IMPLEMENTATIONS:
        raise SnapshotCompatibilityError(f"Unknown implementation {implementation!r}")
    dimension = _check_common(container, implementation, dimension)
    _require(container, GRID_IMPLEMENTATION_TYPE, GRID_IMPLEMENTATIONS[implementation])
    initial_value = int(_require_present(container, INITIAL_CONFIGURATION))
    step = int(_require_present(container, STEP))
    bound = int(_require_present(container, COORDINATE_BOUNDS))
    n_slices = int(container.get(GRID_SLICES, bound + 3))
    if n_slices != bound + 3:
        raise SnapshotCompatibilityError(
            f"Grid has {n_slices} slices but bound {bound} needs {bound + 3}"
        )
    flat = np.asarray(_require_present(container, GRID))
    try:
        grid = InMemoryStore.from_flat(dimension, implementation, flat, n_slices)
    except ValueError as exc:
        raise SnapshotCompatibilityError(str(exc)) from exc

    changed = utils.optional_bool(container.get(CONFIGURATION_CHANGED_FROM_PREVIOUS_STEP))
    state = AetherState(
        grid=grid,
        dimension=dimension,
        initial_value=initial_value,
        step=step,
        bound=bound,
        even_turn=_restored_even_turn(container, initial_value, step),
        changed=changed,
    )

    compliance = None
    if TOPPLING_ALTERNATION_COMPLIANCE in container:
        _require(
            container,
            TOPPLING_ALTERNATION_COMPLIANCE_IMPLEMENTATION_TYPE,
            BOOLEAN_OFFSET_ORDER,
        )
        try:
            compliance = AlternationCompliance.from_flat(
                dimension,
                np.asarray(container[TOPPLING_ALTERNATION_COMPLIANCE]),
                int(_require_present(container, TOPPLING_ALTERNATION_COMPLIANCE_SLICES)),
                step=step,
                even_turn=not state.even_turn,
            )
        except ValueError as exc:
            raise SnapshotCompatibilityError(str(exc)) from exc
    return state, compliance


def save_snapshot(path: str | os.PathLike[str], container: Mapping[str, Any]) -> None:
    utils.save_arrays(path, dict(container))
    logger.info("Saved snapshot of step %s to %s", container.get(STEP), path)


def load_snapshot(path: str | os.PathLike[str]) -> Dict[str, Any]:
    if not Path(path).exists():
        raise FileNotFoundError(f"Missing snapshot: {path}")
    return utils.load_arrays(path)


# -------------------------------------------------------------- file-backed


def backup_file_backed(state: AetherState, backup_dir: str | os.PathLike[str]) -> Path:
    """Copy the current generation file and its properties into ``backup_dir``."""
    grid = state.grid
    if not isinstance(grid, FileBackedStore):
        raise TypeError("Only file-backed runs can be backed up as a folder")
    grid.finish(state.n_slices)
    backup_dir = Path(backup_dir)
    grid_backup = backup_dir / utils.GRID_FOLDER_NAME
    grid_backup.mkdir(parents=True, exist_ok=True)
    target = grid_backup / FILE_NAME_FORMAT.format(step=state.step)
    source = grid.path.resolve()
    for stale in grid_backup.glob("step=*.data"):
        if stale.resolve() != source:
            stale.unlink()
    if target.resolve() != source:
        shutil.copyfile(grid.path, target)
    properties = {
        FORMAT: FORMAT_VERSION,
        MODEL: AETHER,
        INITIAL_CONFIGURATION: state.initial_value,
        INITIAL_CONFIGURATION_TYPE: SINGLE_SOURCE_AT_ORIGIN,
        INITIAL_CONFIGURATION_IMPLEMENTATION_TYPE: INT64,
        GRID_TYPE: INFINITE_REGULAR,
        GRID_DIMENSION: state.dimension,
        GRID_IMPLEMENTATION_TYPE: FILE_GRID_IMPLEMENTATION,
        GRID_SLICES: grid.n_slices,
        RECORD_FORMAT: RECORD_DTYPE.str,
        COORDINATE_BOUNDS: state.bound,
        COORDINATE_BOUNDS_IMPLEMENTATION_TYPE: MAX_COORDINATE_INTEGER,
        STEP: state.step,
        CONFIGURATION_CHANGED_FROM_PREVIOUS_STEP: state.changed,
        EVEN_TURN: state.even_turn,
    }
    utils.write_params(backup_dir / PROPERTIES_FILE_NAME, properties)
    logger.info("Backed up step %d to %s", state.step, backup_dir)
    return backup_dir


def restore_file_backed(
    backup_dir: str | os.PathLike[str],
    folder: str | os.PathLike[str],
    *,
    dimension: Optional[int] = None,
) -> AetherState:
    """
    Reopen a backed-up generation read-only.

    The backed-up file is never deleted; the next generations are written to
    the run's grid folder under ``folder``.
    """
    backup_dir = Path(backup_dir)
    properties_path = backup_dir / PROPERTIES_FILE_NAME
    if not properties_path.exists():
        raise FileNotFoundError(f"Missing properties file at '{properties_path}'")
    grid_backup = backup_dir / utils.GRID_FOLDER_NAME
    if not grid_backup.exists():
        raise FileNotFoundError(f"Missing grid folder at '{grid_backup}'")

    properties = utils.load_params(properties_path)
    dimension = _check_common(properties, INT64, dimension)
    _require(properties, GRID_IMPLEMENTATION_TYPE, FILE_GRID_IMPLEMENTATION)
    _require(properties, RECORD_FORMAT, RECORD_DTYPE.str)
    initial_value = int(_require_present(properties, INITIAL_CONFIGURATION))
    step = int(_require_present(properties, STEP))
    bound = int(_require_present(properties, COORDINATE_BOUNDS))
    n_slices = int(_require_present(properties, GRID_SLICES))
    if n_slices < bound + 3:
        raise SnapshotCompatibilityError(
            f"Grid has {n_slices} slices but bound {bound} needs {bound + 3}"
        )

    data_path = grid_backup / FILE_NAME_FORMAT.format(step=step)
    if not data_path.exists():
        raise FileNotFoundError(f"Missing grid file at '{data_path}'")
    expected_size = position_count(dimension, n_slices) * RECORD_SIZE
    actual_size = data_path.stat().st_size
    if actual_size != expected_size:
        raise SnapshotCompatibilityError(
            f"Grid file {data_path} has {actual_size} bytes, expected {expected_size}"
        )

    grid = FileBackedStore(
        data_path,
        dimension,
        n_slices,
        writable=False,
        owned=False,
        grid_folder=utils.grid_folder(folder, dimension, initial_value),
    )
    return AetherState(
        grid=grid,
        dimension=dimension,
        initial_value=initial_value,
        step=step,
        bound=bound,
        even_turn=_restored_even_turn(properties, initial_value, step),
        changed=utils.optional_bool(properties.get(CONFIGURATION_CHANGED_FROM_PREVIOUS_STEP)),
    )


__all__ = [
    "SnapshotCompatibilityError",
    "backup_file_backed",
    "from_container",
    "load_snapshot",
    "restore_file_backed",
    "save_snapshot",
    "to_container",
]
