# src/aether_sim/utils.py
from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover
    tomllib = None  # type: ignore

INT64_MAX = int(np.iinfo(np.int64).max)
MAX_INITIAL_VALUE_LENGTH_IN_PATH = 20
GRID_FOLDER_NAME = "grid"


def now_str() -> str:
    return time.strftime("%Y%m%d-%H%M%S")


def max_neighboring_values_difference(dimension: int, source_value: int) -> int:
    """
    Largest value difference between neighbors over the whole evolution of
    a single source.

    For a non-negative source it is the source itself.
    """
    if dimension <= 0:
        raise ValueError("Grid dimension must be greater than zero.")
    if source_value < 0:
        if dimension > 1:
            return abs(source_value + (-source_value // 2) * (2 * dimension + 1))
        return -source_value
    return source_value


def min_allowed_single_source_value(dimension: int, max_allowed_value: int) -> int:
    """
    Most negative single source whose neighbor differences never exceed
    ``max_allowed_value``.
    """
    if max_allowed_value < 0:
        raise ValueError("Max allowed cannot be less than zero.")
    if max_allowed_value == 0:
        return 0
    if dimension <= 0:
        raise ValueError("Grid dimension must be greater than zero.")
    if dimension == 1:
        return -max_allowed_value
    double_dimension_minus_one = 2 * dimension - 1
    if max_allowed_value < double_dimension_minus_one:
        return -1
    candidate = -((2 * max_allowed_value) // double_dimension_minus_one)
    # the closed form can be off by one
    if max_neighboring_values_difference(dimension, candidate - 1) > max_allowed_value:
        return candidate
    return candidate - 1


def initial_value_folder_name(
    initial_value: int, max_length: int = MAX_INITIAL_VALUE_LENGTH_IN_PATH
) -> str:
    """Folder name for a run; huge initial values fall back to a timestamp."""
    text = str(initial_value)
    if len(text) > max_length:
        return now_str()
    return text


def subfolder_path(dimension: int, folder_name: str) -> Path:
    return Path("Aether") / f"{dimension}D" / folder_name


def grid_folder(
    folder: str | os.PathLike[str], dimension: int, initial_value: int
) -> Path:
    """Where a file-backed run keeps its generation files."""
    return (
        Path(folder)
        / subfolder_path(dimension, initial_value_folder_name(initial_value))
        / GRID_FOLDER_NAME
    )


def save_arrays(
    path: str | os.PathLike[str], data: Dict[str, Any], *, overwrite: bool = True
) -> None:
    """
    Serialize a key/value container to ``.npz``.

    Array values are stored at top level, everything else in a pickled
    ``meta`` dict.
    """
    out_dir = Path(path).parent
    out_dir.mkdir(parents=True, exist_ok=True)
    out: Dict[str, Any] = {}
    meta_clean = {}
    for key, value in data.items():
        if isinstance(value, np.ndarray):
            out[key] = value
        else:
            meta_clean[key] = value
    out["meta"] = np.array(meta_clean, dtype=object)

    if not overwrite and Path(path).exists():
        raise FileExistsError(f"{path} already exists")
    np.savez_compressed(path, **out)


def load_arrays(path: str | os.PathLike[str]) -> Dict[str, Any]:
    """Inverse of :func:`save_arrays`."""
    with np.load(path, allow_pickle=True) as data:
        meta: Dict[str, Any] = {}
        if "meta" in data:
            meta_raw = data["meta"]
            meta = dict(meta_raw.item()) if hasattr(meta_raw, "item") else dict(meta_raw)
        for key in data.files:
            if key != "meta" and key not in meta:
                meta[key] = data[key]
    return meta


def load_params(path: str | os.PathLike[str]) -> Dict[str, Any]:
    """
    Load simulation parameters from JSON or TOML.
    """
    path = str(path)
    with open(path, "rb") as fh:
        data = fh.read()
    suffix = Path(path).suffix.lower()
    if suffix in {".json", ""}:
        return json.loads(data.decode("utf-8"))
    if suffix in {".toml", ".tml"}:
        if tomllib is None:
            raise RuntimeError("tomllib is unavailable; cannot parse TOML files")
        return tomllib.loads(data.decode("utf-8"))
    raise ValueError(f"Unsupported parameter file format: {suffix}")


def write_params(path: str | os.PathLike[str], params: Dict[str, Any]) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(params, fh, indent=2, sort_keys=True)


def optional_bool(value: Any) -> Optional[bool]:
    return None if value is None else bool(value)
