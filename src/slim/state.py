"""
Solver state shared by every stage of the local/global optimization.

The state is a single mutable aggregate owned by the caller for the whole
session. Stages read it and write only the fields documented on them;
per-element buffers are allocated once by precompute and rewritten in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
from scipy import sparse

from .energies import EnergyFamily, EnergyKind, energy_family
from .runtime_defaults import DEFAULTS


class InvalidInputError(ValueError):
    pass


# Fixed once precompute has run; operators, masses and energy_value depend on them
FROZEN_AFTER_PRECOMPUTE = frozenset({"elements", "dimension", "energy", "rest_positions"})


def dimension_for_arity(arity: int) -> int:
    """Triangles map to 2D, tetrahedra to 3D."""
    if arity == 3:
        return 2
    if arity == 4:
        return 3
    raise InvalidInputError(
        f"Elements must be triangles (3 indices) or tetrahedra (4 indices), got {arity}"
    )


@dataclass
class SolverState:
    """
    Mutable solver aggregate.

    Attributes:
        rest_positions: (n, 2|3) rest coordinates the distortion is measured against
        elements: (m, 3) triangles or (m, 4) tetrahedra
        positions: (n, dimension) working coordinates
        energy: distortion energy kind
        constraint_indices: (k,) softly constrained vertex indices
        constraint_targets: (k, dimension) target coordinates for those vertices
        soft_penalty: shared penalty weight of the soft constraints
        proximal_penalty: weight anchoring each global solve to the previous iterate
        exp_factor: factor of the exponential energies
        mesh_improvement_3d: build 3D operators against a regular reference tetrahedron

    elements, dimension, energy and rest_positions are read-only once
    precompute has run.
    """
    rest_positions: np.ndarray
    elements: np.ndarray
    positions: np.ndarray
    energy: EnergyKind = EnergyKind.SYMMETRIC_DIRICHLET
    constraint_indices: Optional[np.ndarray] = None
    constraint_targets: Optional[np.ndarray] = None
    soft_penalty: float = DEFAULTS.soft_penalty
    proximal_penalty: float = DEFAULTS.proximal_penalty
    exp_factor: float = DEFAULTS.exp_factor
    mesh_improvement_3d: bool = False

    # Derived once
    dimension: int = field(default=0, init=False)

    # Filled by precompute
    gradient_operators: Tuple[sparse.csr_matrix, ...] = field(default=(), init=False, repr=False)
    masses: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    mass_weights: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    mesh_mass: float = field(default=0.0, init=False)
    weights: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    fit_matrices: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    jacobians: Optional[np.ndarray] = field(default=None, init=False, repr=False)

    # Rebuilt every global step
    system_matrix: Optional[sparse.csr_matrix] = field(default=None, init=False, repr=False)
    rhs: Optional[np.ndarray] = field(default=None, init=False, repr=False)

    energy_value: float = field(default=float("nan"), init=False)
    iteration: int = field(default=0, init=False)
    has_precompute: bool = field(default=False, init=False)

    def __post_init__(self):
        self.energy = EnergyKind.parse(self.energy)

        elements = np.asarray(self.elements)
        if elements.ndim != 2:
            raise InvalidInputError(f"elements must be a 2D index array, got shape {elements.shape}")
        self.dimension = dimension_for_arity(int(elements.shape[1]))
        if elements.shape[0] == 0:
            raise InvalidInputError("elements is empty")
        if not np.issubdtype(elements.dtype, np.integer):
            rounded = np.rint(elements)
            if not np.array_equal(rounded, elements):
                raise InvalidInputError("elements must contain integer vertex indices")
            elements = rounded
        self.elements = elements.astype(np.int64, copy=True)

        rest = np.asarray(self.rest_positions, dtype=np.float64)
        if rest.ndim != 2 or rest.shape[0] == 0:
            raise InvalidInputError(f"rest_positions must be (n, 2|3), got shape {rest.shape}")
        if self.dimension == 2 and rest.shape[1] not in (2, 3):
            raise InvalidInputError("triangle meshes need 2D or 3D rest positions")
        if self.dimension == 3 and rest.shape[1] != 3:
            raise InvalidInputError("tetrahedral meshes need 3D rest positions")
        if not np.isfinite(rest).all():
            raise InvalidInputError("rest_positions contains non-finite values")
        self.rest_positions = rest.copy()

        n = int(rest.shape[0])
        if self.elements.min() < 0 or self.elements.max() >= n:
            raise InvalidInputError("element indices out of range")

        positions = np.asarray(self.positions, dtype=np.float64)
        if positions.shape != (n, self.dimension):
            raise InvalidInputError(
                f"positions must be ({n}, {self.dimension}), got shape {positions.shape}"
            )
        if not np.isfinite(positions).all():
            raise InvalidInputError("positions contains non-finite values")
        self.positions = positions.copy()

        if self.constraint_indices is None:
            indices = np.zeros((0,), dtype=np.int64)
        else:
            indices = np.asarray(self.constraint_indices, dtype=np.int64).reshape(-1)
        if self.constraint_targets is None:
            targets = np.zeros((0, self.dimension), dtype=np.float64)
        else:
            targets = np.asarray(self.constraint_targets, dtype=np.float64).reshape(-1, self.dimension)
        if indices.shape[0] != targets.shape[0]:
            raise InvalidInputError(
                f"{indices.shape[0]} constrained vertices but {targets.shape[0]} targets"
            )
        if indices.size and (indices.min() < 0 or indices.max() >= n):
            raise InvalidInputError("constraint index out of range")
        self.constraint_indices = indices
        self.constraint_targets = targets

        self.soft_penalty = float(self.soft_penalty)
        self.proximal_penalty = float(self.proximal_penalty)
        self.exp_factor = float(self.exp_factor)
        if self.soft_penalty < 0:
            raise InvalidInputError("soft_penalty must be non-negative")
        if self.proximal_penalty <= 0:
            raise InvalidInputError("proximal_penalty must be positive")

    def __setattr__(self, name, value):
        if name in FROZEN_AFTER_PRECOMPUTE and getattr(self, "has_precompute", False):
            raise AttributeError(f"{name} cannot change after precompute; build a new SolverState")
        super().__setattr__(name, value)

    @property
    def n_vertices(self) -> int:
        return int(self.rest_positions.shape[0])

    @property
    def n_elements(self) -> int:
        return int(self.elements.shape[0])

    @property
    def family(self) -> EnergyFamily:
        return energy_family(self.energy)

    @property
    def has_constraints(self) -> bool:
        return int(self.constraint_indices.size) > 0
