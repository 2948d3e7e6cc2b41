"""
Distortion energy families.

Every energy is a function of the singular values of an element's Jacobian.
The table below keys each supported energy kind to three pure functions:

- ``gradient``: dE/ds per singular value together with the target singular
  values the proxy pulls towards,
- ``energy``: exact per-element energy (before the mass weighting),
- ``fit``: the per-element matrix the global step steers towards
  (closest rotation for the isometric family, similarity for the conformal one).

All functions are vectorized over elements: singular values come in as an
``(m, d)`` array sorted in descending order per row.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Tuple

import numpy as np

SINGULAR_VALUE_EPS = 1e-8

GradientFn = Callable[[np.ndarray, float], Tuple[np.ndarray, np.ndarray]]
EnergyFn = Callable[[np.ndarray, float], np.ndarray]
FitFn = Callable[["object", np.ndarray], np.ndarray]


class EnergyKind(str, Enum):
    ISOMETRIC = "isometric"
    SYMMETRIC_DIRICHLET = "symmetric_dirichlet"
    LOG_ISOMETRIC = "log_isometric"
    CONFORMAL = "conformal"
    EXP_CONFORMAL = "exp_conformal"
    EXP_SYMMETRIC_DIRICHLET = "exp_symmetric_dirichlet"

    @classmethod
    def parse(cls, value: "EnergyKind | str") -> "EnergyKind":
        """Accepts enum members, values, member names and the usual short aliases."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
        aliases = {
            "arap": cls.ISOMETRIC,
            "log_arap": cls.LOG_ISOMETRIC,
            "sd": cls.SYMMETRIC_DIRICHLET,
            "exp_sd": cls.EXP_SYMMETRIC_DIRICHLET,
            "amips": cls.CONFORMAL,
        }
        if text in aliases:
            return aliases[text]
        for member in cls:
            if text == member.value:
                return member
        raise ValueError(f"Unknown energy kind: {value!r}")


# Exact energies


def isometric_energy(sing: np.ndarray, exp_factor: float = 1.0) -> np.ndarray:
    return np.sum((sing - 1.0) ** 2, axis=1)


def symmetric_dirichlet_energy(sing: np.ndarray, exp_factor: float = 1.0) -> np.ndarray:
    return np.sum(sing ** 2 + sing ** -2, axis=1)


def log_isometric_energy(sing: np.ndarray, exp_factor: float = 1.0) -> np.ndarray:
    return np.sum(np.log(np.abs(sing)) ** 2, axis=1)


def conformal_energy(sing: np.ndarray, exp_factor: float = 1.0) -> np.ndarray:
    d = int(sing.shape[1])
    det = np.abs(np.prod(sing, axis=1))
    return np.sum(sing ** 2, axis=1) / (d * det ** (2.0 / d))


# Gradients and targets


def isometric_gradient(sing: np.ndarray, exp_factor: float = 1.0) -> Tuple[np.ndarray, np.ndarray]:
    return 2.0 * (sing - 1.0), np.ones_like(sing)


def symmetric_dirichlet_gradient(
    sing: np.ndarray, exp_factor: float = 1.0
) -> Tuple[np.ndarray, np.ndarray]:
    return 2.0 * (sing - sing ** -3), np.ones_like(sing)


def log_isometric_gradient(sing: np.ndarray, exp_factor: float = 1.0) -> Tuple[np.ndarray, np.ndarray]:
    return 2.0 * np.log(sing) / sing, np.ones_like(sing)


def conformal_gradient(sing: np.ndarray, exp_factor: float = 1.0) -> Tuple[np.ndarray, np.ndarray]:
    """
    Gradient of the conformal (MIPS-like) energy.

    2D targets both singular values at their geometric mean. 3D uses a single
    shared target built from s1 and s3 only; s2 does not enter the target.
    """
    d = int(sing.shape[1])
    if d == 2:
        s1 = sing[:, 0]
        s2 = sing[:, 1]
        grad = np.column_stack(
            [
                1.0 / (2.0 * s2) - s2 / (2.0 * s1 ** 2),
                1.0 / (2.0 * s1) - s1 / (2.0 * s2 ** 2),
            ]
        )
        closest = np.sqrt(s1 * s2)
        return grad, np.column_stack([closest, closest])

    s1 = sing[:, 0]
    s2 = sing[:, 1]
    s3 = sing[:, 2]
    common = 9.0 * np.abs(s1 * s2 * s3) ** (5.0 / 3.0)
    grad = np.column_stack(
        [
            -2.0 * s2 * s3 * (s2 ** 2 + s3 ** 2 - 2.0 * s1 ** 2),
            -2.0 * s1 * s3 * (s1 ** 2 + s3 ** 2 - 2.0 * s2 ** 2),
            -2.0 * s1 * s2 * (s1 ** 2 + s2 ** 2 - 2.0 * s3 ** 2),
        ]
    ) / common[:, None]
    closest = np.sqrt((s1 ** 2 + s3 ** 2) / 2.0)
    return grad, np.column_stack([closest, closest, closest])


def _exponential(base_energy: EnergyFn, base_gradient: GradientFn) -> Tuple[EnergyFn, GradientFn]:
    """Wraps a base energy in exp(f * E), chaining the gradient through the exponential."""

    def energy(sing: np.ndarray, exp_factor: float = 1.0) -> np.ndarray:
        return np.exp(exp_factor * base_energy(sing, exp_factor))

    def gradient(sing: np.ndarray, exp_factor: float = 1.0) -> Tuple[np.ndarray, np.ndarray]:
        grad, targets = base_gradient(sing, exp_factor)
        scale = np.exp(exp_factor * base_energy(sing, exp_factor)) * exp_factor
        return grad * scale[:, None], targets

    return energy, gradient


# Fit matrices


def rotation_fit(decomposition, targets: np.ndarray) -> np.ndarray:
    return np.array(decomposition.rotation, dtype=np.float64, copy=True)


def projection_fit(decomposition, targets: np.ndarray) -> np.ndarray:
    """U * diag(targets) * V^T per element."""
    return np.einsum("eik,ek,ejk->eij", decomposition.u, targets, decomposition.v)


@dataclass(frozen=True)
class EnergyFamily:
    kind: EnergyKind
    gradient: GradientFn
    energy: EnergyFn
    fit: FitFn

    @property
    def uses_rotation_fit(self) -> bool:
        return self.fit is rotation_fit


_exp_sd_energy, _exp_sd_gradient = _exponential(symmetric_dirichlet_energy, symmetric_dirichlet_gradient)
_exp_conf_energy, _exp_conf_gradient = _exponential(conformal_energy, conformal_gradient)

ENERGY_FAMILIES: dict[EnergyKind, EnergyFamily] = {
    EnergyKind.ISOMETRIC: EnergyFamily(
        EnergyKind.ISOMETRIC, isometric_gradient, isometric_energy, rotation_fit
    ),
    EnergyKind.SYMMETRIC_DIRICHLET: EnergyFamily(
        EnergyKind.SYMMETRIC_DIRICHLET,
        symmetric_dirichlet_gradient,
        symmetric_dirichlet_energy,
        rotation_fit,
    ),
    EnergyKind.LOG_ISOMETRIC: EnergyFamily(
        EnergyKind.LOG_ISOMETRIC, log_isometric_gradient, log_isometric_energy, rotation_fit
    ),
    EnergyKind.CONFORMAL: EnergyFamily(
        EnergyKind.CONFORMAL, conformal_gradient, conformal_energy, projection_fit
    ),
    EnergyKind.EXP_CONFORMAL: EnergyFamily(
        EnergyKind.EXP_CONFORMAL, _exp_conf_gradient, _exp_conf_energy, projection_fit
    ),
    EnergyKind.EXP_SYMMETRIC_DIRICHLET: EnergyFamily(
        EnergyKind.EXP_SYMMETRIC_DIRICHLET, _exp_sd_gradient, _exp_sd_energy, rotation_fit
    ),
}


def energy_family(kind: EnergyKind | str) -> EnergyFamily:
    return ENERGY_FAMILIES[EnergyKind.parse(kind)]


def singular_value_weights(
    family: EnergyFamily,
    sing: np.ndarray,
    exp_factor: float = 1.0,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per-singular-value proxy weights.

    w_i = sqrt(E'(s_i) / (2 * (s_i - t_i))). Where s_i is within
    SINGULAR_VALUE_EPS of its target the quotient is a removable singularity
    and the weight is pinned to 1.

    Returns:
        (weights, targets), both (m, d)
    """
    sing = np.asarray(sing, dtype=np.float64)
    grad, targets = family.gradient(sing, exp_factor)
    diff = sing - targets
    degenerate = np.abs(diff) < SINGULAR_VALUE_EPS
    safe_diff = np.where(degenerate, 1.0, diff)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        ratio = grad / (2.0 * safe_diff)
        weights = np.sqrt(np.maximum(ratio, 0.0))
    weights[degenerate] = 1.0
    return weights, targets
