"""
Flip-avoiding line search.

Given current positions x and a candidate x + d, every element's signed
area (2D) or volume (3D) along x + t d is a quadratic or cubic polynomial in
t. The first positive root over all elements bounds the step; the search
then backtracks from 0.8 of that bound (capped at a full step) until the
energy decreases. No accepted step can invert an element.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional
import logging

import numpy as np

from .runtime_defaults import DEFAULTS

_LOGGER = logging.getLogger(__name__)

EnergyCallback = Callable[[np.ndarray], float]

_LEADING_COEFF_TOL = 1e-10
_REAL_ROOT_TOL = 1e-10
STEP_SAFETY = 0.8


@dataclass
class LineSearchResult:
    positions: np.ndarray
    energy: float
    step_size: float
    accepted: bool


def _smallest_positive_quadratic_roots(a: np.ndarray, b: np.ndarray, c: np.ndarray) -> np.ndarray:
    """Smallest positive root of a t^2 + b t + c per entry (inf when none)."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    c = np.asarray(c, dtype=np.float64)
    out = np.full(a.shape, np.inf, dtype=np.float64)

    scale = np.maximum(np.maximum(np.abs(b), np.abs(c)), 1e-300)
    quadratic = np.abs(a) > _LEADING_COEFF_TOL * scale
    linear = ~quadratic & (np.abs(b) > 0)

    with np.errstate(divide="ignore", invalid="ignore"):
        disc = b * b - 4.0 * a * c
        has_real = quadratic & (disc >= 0)
        sq = np.sqrt(np.where(has_real, disc, 0.0))
        denom = np.where(has_real, 2.0 * a, 1.0)
        t1 = (-b + sq) / denom
        t2 = (-b - sq) / denom
        for t in (t1, t2):
            good = has_real & (t > 0)
            out[good] = np.minimum(out[good], t[good])

        t_lin = np.where(linear, -c / np.where(linear, b, 1.0), -1.0)
        good = linear & (t_lin > 0)
        out[good] = np.minimum(out[good], t_lin[good])
    return out


def _smallest_positive_cubic_roots(
    a: np.ndarray, b: np.ndarray, c: np.ndarray, d: np.ndarray
) -> np.ndarray:
    """Smallest positive real root of a t^3 + b t^2 + c t + d per entry (inf when none)."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    c = np.asarray(c, dtype=np.float64)
    d = np.asarray(d, dtype=np.float64)
    scale = np.maximum(np.maximum(np.abs(b), np.abs(c)), np.maximum(np.abs(d), 1e-300))
    cubic = np.abs(a) > _LEADING_COEFF_TOL * scale

    out = np.full(a.shape, np.inf, dtype=np.float64)
    if np.any(~cubic):
        out[~cubic] = _smallest_positive_quadratic_roots(b[~cubic], c[~cubic], d[~cubic])

    if np.any(cubic):
        ac = a[cubic]
        p2 = b[cubic] / ac
        p1 = c[cubic] / ac
        p0 = d[cubic] / ac
        k = int(ac.shape[0])
        companion = np.zeros((k, 3, 3), dtype=np.float64)
        companion[:, 0, 0] = -p2
        companion[:, 0, 1] = -p1
        companion[:, 0, 2] = -p0
        companion[:, 1, 0] = 1.0
        companion[:, 2, 1] = 1.0
        roots = np.linalg.eigvals(companion)
        mag = np.maximum(np.abs(roots), 1.0)
        real = np.abs(roots.imag) <= _REAL_ROOT_TOL * mag
        t = np.where(real & (roots.real > 0), roots.real, np.inf)
        out[cubic] = t.min(axis=1)
    return out


def _cross2(u: np.ndarray, v: np.ndarray) -> np.ndarray:
    return u[:, 0] * v[:, 1] - u[:, 1] * v[:, 0]


def _triple(u: np.ndarray, v: np.ndarray, w: np.ndarray) -> np.ndarray:
    return np.einsum("ij,ij->i", u, np.cross(v, w))


def max_step_to_singularity(
    elements: np.ndarray,
    positions: np.ndarray,
    direction: np.ndarray,
) -> float:
    """Largest t such that no element of x + s d degenerates for 0 <= s < t."""
    el = np.asarray(elements, dtype=np.int64)
    x = np.asarray(positions, dtype=np.float64)
    dx = np.asarray(direction, dtype=np.float64)

    e = [x[el[:, k]] - x[el[:, 0]] for k in range(1, el.shape[1])]
    de = [dx[el[:, k]] - dx[el[:, 0]] for k in range(1, el.shape[1])]

    if el.shape[1] == 3:
        a = _cross2(de[0], de[1])
        b = _cross2(e[0], de[1]) + _cross2(de[0], e[1])
        c = _cross2(e[0], e[1])
        roots = _smallest_positive_quadratic_roots(a, b, c)
    else:
        e1, e2, e3 = e
        d1, d2, d3 = de
        c3 = _triple(d1, d2, d3)
        c2 = _triple(e1, d2, d3) + _triple(d1, e2, d3) + _triple(d1, d2, e3)
        c1 = _triple(d1, e2, e3) + _triple(e1, d2, e3) + _triple(e1, e2, d3)
        c0 = _triple(e1, e2, e3)
        roots = _smallest_positive_cubic_roots(c3, c2, c1, c0)

    if roots.size == 0:
        return float("inf")
    return float(np.min(roots))


def backtracking_line_search(
    positions: np.ndarray,
    direction: np.ndarray,
    step_size: float,
    energy_fn: EnergyCallback,
    baseline: float,
    *,
    max_halvings: int = DEFAULTS.line_search_max_halvings,
) -> LineSearchResult:
    """Halve the step until the energy drops below ``baseline``."""
    x = np.asarray(positions, dtype=np.float64)
    step = float(step_size)
    for _ in range(int(max_halvings)):
        candidate = x + step * direction
        energy = float(energy_fn(candidate))
        if energy < baseline:
            return LineSearchResult(positions=candidate, energy=energy, step_size=step, accepted=True)
        step *= 0.5

    return LineSearchResult(positions=x.copy(), energy=float(baseline), step_size=0.0, accepted=False)


def flip_avoiding_line_search(
    elements: np.ndarray,
    current: np.ndarray,
    candidate: np.ndarray,
    energy_fn: EnergyCallback,
    baseline: Optional[float] = None,
    *,
    max_halvings: int = DEFAULTS.line_search_max_halvings,
) -> LineSearchResult:
    """
    Safeguarded step from ``current`` towards ``candidate``.

    Args:
        elements: (m, 3|4) connectivity
        current: (n, d) positions at the start of the step
        candidate: (n, d) proposed positions
        energy_fn: raw energy of a position set
        baseline: raw energy at ``current``; computed when None

    Returns:
        LineSearchResult; when no decreasing step is found the positions are
        ``current`` and the energy is ``baseline`` with ``accepted=False``.
    """
    x = np.asarray(current, dtype=np.float64)
    direction = np.asarray(candidate, dtype=np.float64) - x
    if baseline is None:
        baseline = float(energy_fn(x))

    max_step = max_step_to_singularity(elements, x, direction)
    step = min(1.0, STEP_SAFETY * max_step)
    _LOGGER.debug("Line search: max step to singularity %.6g, start step %.6g", max_step, step)

    result = backtracking_line_search(
        x, direction, step, energy_fn, float(baseline), max_halvings=max_halvings
    )
    if not result.accepted:
        _LOGGER.warning(
            "Line search exhausted after %d halvings (baseline energy %.12g)",
            int(max_halvings),
            float(baseline),
        )
    return result
