"""
Output path helpers for the parameterization exports.

Keeps the CLI naming conventions in one place.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

PathLike = Union[str, Path]

PARAMETERIZATION_SUFFIX = ".uv.obj"
LAYOUT_SUFFIX = ".layout.png"


def _as_path(value: PathLike) -> Path:
    return value if isinstance(value, Path) else Path(value)


def _resolve_output_path(input_path: PathLike, output_path: Optional[PathLike], suffix: str) -> Path:
    if output_path:
        return _as_path(output_path)
    path = _as_path(input_path)
    return path.with_name(path.stem + suffix)


def parameterization_output_path(input_path: PathLike, output_path: Optional[PathLike] = None) -> Path:
    return _resolve_output_path(input_path, output_path, PARAMETERIZATION_SUFFIX)


def layout_output_path(input_path: PathLike, output_path: Optional[PathLike] = None) -> Path:
    """Preview image next to ``input_path`` (or next to an explicit mesh output)."""
    if output_path:
        out = _as_path(output_path)
        if out.suffix.lower() == ".png":
            return out
        return out.with_name(out.stem + LAYOUT_SUFFIX)
    return _resolve_output_path(input_path, None, LAYOUT_SUFFIX)
