"""
SLIM (Scalable Locally Injective Mappings) driver.

Based on: "Scalable Locally Injective Mappings" (Rabinovich, Poranne,
Panozzo & Sorkine-Hornung, 2017)

Each iteration minimizes a reweighted quadratic proxy of the distortion
energy (local step + global step) and then moves towards the proxy minimum
with a flip-avoiding line search, so the running energy never increases
and no element ever inverts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional
import logging

import numpy as np

from .energies import EnergyKind
from .geometry import element_masses, gradient_operators
from .line_search import flip_avoiding_line_search
from .linear_solvers import SPDSolver, SolveFailedError, solver_for_dimension
from .local_global import compute_element_energies, compute_energy, global_step, local_step
from .logging_utils import forget_log_once, log_once
from .runtime_defaults import DEFAULTS
from .state import InvalidInputError, SolverState

_LOGGER = logging.getLogger(__name__)

STATIONARY_TOL = 1e-10

STATUS_ACCEPTED = "accepted"
STATUS_EXHAUSTED = "line_search_exhausted"
STATUS_STATIONARY = "stationary"


def _exhausted_key(state: SolverState) -> str:
    return f"slim:line_search_exhausted:{id(state)}"


@dataclass
class IterationReport:
    """Outcome of one committed iteration (energy is mass-normalized)."""
    iteration: int
    energy: float
    step_size: float
    status: str

    @property
    def moved(self) -> bool:
        return self.status == STATUS_ACCEPTED


def precompute(state: SolverState) -> SolverState:
    """
    One-time setup: operators, masses, per-element buffers, initial weights and energy.

    Calling it again on an already prepared state is a no-op.
    """
    if state.has_precompute:
        return state

    d = int(state.dimension)
    m = int(state.n_elements)

    state.gradient_operators = gradient_operators(
        state.rest_positions,
        state.elements,
        regular_reference=bool(state.mesh_improvement_3d and d == 3),
    )

    masses = element_masses(state.rest_positions, state.elements)
    mesh_mass = float(masses.sum())
    if not np.isfinite(mesh_mass) or mesh_mass <= 0:
        raise InvalidInputError("Mesh has zero total area/volume")
    state.masses = masses
    state.mesh_mass = mesh_mass
    state.mass_weights = np.tile(masses, d * d)

    state.weights = np.zeros((m, d, d), dtype=np.float64)
    state.fit_matrices = np.zeros((m, d, d), dtype=np.float64)
    state.jacobians = np.zeros((m, d, d), dtype=np.float64)

    local_step(state)
    state.energy_value = compute_energy(state, state.positions) / state.mesh_mass
    state.iteration = 0
    state.has_precompute = True
    # object ids are reused, so a new state starts with fresh warnings
    forget_log_once(_exhausted_key(state))

    _LOGGER.debug(
        "Precompute done: dim=%d, %d elements, %d vertices, energy=%s, initial=%.12g",
        d,
        m,
        state.n_vertices,
        state.energy.value,
        state.energy_value,
    )
    return state


def slim_precompute(
    rest_positions: np.ndarray,
    elements: np.ndarray,
    initial_positions: np.ndarray,
    energy: EnergyKind | str = EnergyKind.SYMMETRIC_DIRICHLET,
    constraint_indices: Optional[np.ndarray] = None,
    constraint_targets: Optional[np.ndarray] = None,
    soft_penalty: float = DEFAULTS.soft_penalty,
    *,
    exp_factor: float = DEFAULTS.exp_factor,
    proximal_penalty: float = DEFAULTS.proximal_penalty,
    mesh_improvement_3d: bool = False,
) -> SolverState:
    """
    Build a solver state and run precompute on it.

    Args:
        rest_positions: (n, 2|3) rest shape
        elements: (m, 3) triangles or (m, 4) tetrahedra
        initial_positions: (n, d) injective initial guess
        energy: distortion energy kind (enum member or name)
        constraint_indices: optional softly constrained vertex indices
        constraint_targets: targets for ``constraint_indices``
        soft_penalty: penalty weight of the soft constraints

    Raises:
        InvalidInputError: bad arity, shapes or degenerate rest elements
    """
    state = SolverState(
        rest_positions=rest_positions,
        elements=elements,
        positions=initial_positions,
        energy=EnergyKind.parse(energy),
        constraint_indices=constraint_indices,
        constraint_targets=constraint_targets,
        soft_penalty=soft_penalty,
        proximal_penalty=proximal_penalty,
        exp_factor=exp_factor,
        mesh_improvement_3d=mesh_improvement_3d,
    )
    return precompute(state)


def set_soft_penalty(state: SolverState, penalty: float) -> None:
    """
    Change the soft-constraint penalty between iterations.

    The running energy is re-evaluated so the next line search compares
    against the energy that includes the new penalty.
    """
    penalty = float(penalty)
    if not np.isfinite(penalty) or penalty < 0:
        raise InvalidInputError(f"soft penalty must be a non-negative number, got {penalty!r}")
    state.soft_penalty = penalty
    if state.has_precompute:
        state.energy_value = compute_energy(state, state.positions) / state.mesh_mass


def solve(
    state: SolverState,
    iterations: int,
    *,
    solver: Optional[SPDSolver] = None,
    max_halvings: int = DEFAULTS.line_search_max_halvings,
) -> list[IterationReport]:
    """
    Run ``iterations`` local/global/line-search cycles.

    Positions and energy are committed only at the end of an iteration, so a
    failure leaves the state at the last committed iterate.

    Raises:
        SolveFailedError: the global linear solve failed
    """
    if not state.has_precompute:
        precompute(state)
    if solver is None:
        solver = solver_for_dimension(state.dimension)

    def energy_fn(positions: np.ndarray) -> float:
        return compute_energy(state, positions)

    reports: list[IterationReport] = []
    for _ in range(max(0, int(iterations))):
        local_step(state)
        try:
            candidate = global_step(state, solver)
        except SolveFailedError:
            _LOGGER.warning("Global solve failed at iteration %d", state.iteration, exc_info=True)
            raise

        direction = candidate - state.positions
        scale = max(1.0, float(np.max(np.abs(state.positions))))
        if float(np.max(np.abs(direction))) <= STATIONARY_TOL * scale:
            state.iteration += 1
            reports.append(
                IterationReport(state.iteration, float(state.energy_value), 0.0, STATUS_STATIONARY)
            )
            continue

        result = flip_avoiding_line_search(
            state.elements,
            state.positions,
            candidate,
            energy_fn,
            state.energy_value * state.mesh_mass,
            max_halvings=max_halvings,
        )

        state.iteration += 1
        if result.accepted:
            state.positions[...] = result.positions
            state.energy_value = result.energy / state.mesh_mass
            status = STATUS_ACCEPTED
        else:
            log_once(
                _LOGGER,
                _exhausted_key(state),
                logging.WARNING,
                "Line search found no decreasing step; keeping positions (iteration %d)",
                state.iteration,
            )
            status = STATUS_EXHAUSTED

        reports.append(
            IterationReport(state.iteration, float(state.energy_value), float(result.step_size), status)
        )
        _LOGGER.debug(
            "Iteration %d: energy=%.12g step=%.6g status=%s",
            state.iteration,
            state.energy_value,
            result.step_size,
            status,
        )

    return reports


@dataclass
class SlimSolver:
    """
    Object wrapper around a solver state.

    Keeps a history of iteration reports across repeated ``solve`` calls.
    """
    state: SolverState
    solver: Optional[SPDSolver] = None
    history: list[IterationReport] = field(default_factory=list)

    def __post_init__(self):
        precompute(self.state)
        if self.solver is None:
            self.solver = solver_for_dimension(self.state.dimension)

    @classmethod
    def create(
        cls,
        rest_positions: np.ndarray,
        elements: np.ndarray,
        initial_positions: np.ndarray,
        energy: EnergyKind | str = EnergyKind.SYMMETRIC_DIRICHLET,
        constraint_indices: Optional[np.ndarray] = None,
        constraint_targets: Optional[np.ndarray] = None,
        soft_penalty: float = DEFAULTS.soft_penalty,
        **kwargs,
    ) -> "SlimSolver":
        state = slim_precompute(
            rest_positions,
            elements,
            initial_positions,
            energy,
            constraint_indices,
            constraint_targets,
            soft_penalty,
            **kwargs,
        )
        return cls(state=state)

    @property
    def positions(self) -> np.ndarray:
        return self.state.positions

    @property
    def energy(self) -> float:
        return float(self.state.energy_value)

    @property
    def dimension(self) -> int:
        return int(self.state.dimension)

    def solve(self, iterations: int, **kwargs) -> list[IterationReport]:
        reports = solve(self.state, iterations, solver=self.solver, **kwargs)
        self.history.extend(reports)
        return reports

    def set_soft_penalty(self, penalty: float) -> None:
        set_soft_penalty(self.state, penalty)

    def compute_energy(self, positions: Optional[np.ndarray] = None) -> float:
        """Raw energy of ``positions`` (current positions when None)."""
        x = self.state.positions if positions is None else positions
        return compute_energy(self.state, x)

    def element_distortion(self) -> np.ndarray:
        return compute_element_energies(self.state, self.state.positions)
