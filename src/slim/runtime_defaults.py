"""
Runtime defaults for solver and CLI processing.

Values can be overridden via environment variables to avoid hardcoded tuning
in multiple entrypoints.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
import os


ENV_ITERATIONS = "SLIMMAPPER_ITERATIONS"
ENV_SOFT_PENALTY = "SLIMMAPPER_SOFT_PENALTY"
ENV_PROXIMAL_PENALTY = "SLIMMAPPER_PROXIMAL_PENALTY"
ENV_EXP_FACTOR = "SLIMMAPPER_EXP_FACTOR"
ENV_CG_TOLERANCE = "SLIMMAPPER_CG_TOLERANCE"
ENV_CG_MAX_ITERATIONS = "SLIMMAPPER_CG_MAX_ITERATIONS"
ENV_LINE_SEARCH_MAX_HALVINGS = "SLIMMAPPER_LINE_SEARCH_MAX_HALVINGS"
ENV_RENDER_RESOLUTION = "SLIMMAPPER_RENDER_RESOLUTION"


@dataclass(frozen=True)
class RuntimeDefaults:
    iterations: int
    soft_penalty: float
    proximal_penalty: float
    exp_factor: float
    cg_tolerance: float
    cg_max_iterations: int
    line_search_max_halvings: int
    render_resolution: int


def _read_int_env(
    env_name: str,
    default: int,
    *,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    raw = os.environ.get(env_name)
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default

    if min_value is not None and value < min_value:
        return default
    if max_value is not None and value > max_value:
        return default
    return value


def _read_float_env(
    env_name: str,
    default: float,
    *,
    min_value: float | None = None,
    max_value: float | None = None,
    exclusive_min: bool = False,
) -> float:
    raw = os.environ.get(env_name)
    if raw is None:
        return default
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        return default

    if not math.isfinite(value):
        return default
    if min_value is not None:
        if value < min_value or (exclusive_min and value == min_value):
            return default
    if max_value is not None and value > max_value:
        return default
    return value


def load_runtime_defaults() -> RuntimeDefaults:
    return RuntimeDefaults(
        iterations=_read_int_env(ENV_ITERATIONS, 20, min_value=1, max_value=10000),
        soft_penalty=_read_float_env(ENV_SOFT_PENALTY, 1e5, min_value=0.0),
        proximal_penalty=_read_float_env(
            ENV_PROXIMAL_PENALTY, 1e-4, min_value=0.0, max_value=1.0, exclusive_min=True
        ),
        exp_factor=_read_float_env(ENV_EXP_FACTOR, 1.0, min_value=0.0, exclusive_min=True),
        cg_tolerance=_read_float_env(
            ENV_CG_TOLERANCE, 1e-8, min_value=0.0, max_value=1e-2, exclusive_min=True
        ),
        cg_max_iterations=_read_int_env(ENV_CG_MAX_ITERATIONS, 2000, min_value=10),
        line_search_max_halvings=_read_int_env(
            ENV_LINE_SEARCH_MAX_HALVINGS, 12, min_value=1, max_value=64
        ),
        render_resolution=_read_int_env(ENV_RENDER_RESOLUTION, 1024, min_value=64, max_value=16384),
    )


DEFAULTS = load_runtime_defaults()
