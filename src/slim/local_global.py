"""
Weighted local/global steps and the exact energy evaluator.

Layout conventions (d = dimension, m = #elements, n = #vertices):

- Jacobians are (m, d, d) with J[e, i, a] = D_a x_i, i.e. row i is the
  gradient of output coordinate i.
- Flattened positions are axis-major: index j * n + v.
- Rows of the design matrix are ordered (i * d + a) * m + e; block row
  (i, a) is [W_i1 D_a, ..., W_id D_a].
"""

from __future__ import annotations

from typing import Optional, Sequence
import logging

import numpy as np
from scipy import sparse

from .energies import singular_value_weights
from .geometry import polar_svd
from .linear_solvers import SPDSolver, SolveFailedError, solver_for_dimension
from .state import SolverState

_LOGGER = logging.getLogger(__name__)


def compute_jacobians(
    operators: Sequence[sparse.spmatrix],
    positions: np.ndarray,
    out: Optional[np.ndarray] = None,
) -> np.ndarray:
    d = len(operators)
    m = int(operators[0].shape[0])
    x = np.asarray(positions, dtype=np.float64)
    if out is None:
        out = np.empty((m, d, d), dtype=np.float64)
    for axis, op in enumerate(operators):
        out[:, :, axis] = op @ x
    return out


def flatten_positions(positions: np.ndarray) -> np.ndarray:
    return np.ascontiguousarray(np.asarray(positions, dtype=np.float64).T).reshape(-1)


def unflatten_positions(flat: np.ndarray, n_vertices: int, dimension: int) -> np.ndarray:
    return np.asarray(flat, dtype=np.float64).reshape(dimension, n_vertices).T.copy()


def local_step(state: SolverState) -> None:
    """
    Refresh per-element Jacobians, proxy weights and fit matrices.

    Writes ``state.jacobians``, ``state.weights`` and ``state.fit_matrices`` in place.
    """
    compute_jacobians(state.gradient_operators, state.positions, out=state.jacobians)
    decomposition = polar_svd(state.jacobians)

    family = state.family
    sing_weights, targets = singular_value_weights(
        family, decomposition.singular_values, state.exp_factor
    )

    u = decomposition.u
    state.weights[...] = np.einsum("eik,ek,ejk->eij", u, sing_weights, u)
    state.fit_matrices[...] = family.fit(decomposition, targets)


def build_design_matrix(state: SolverState) -> sparse.csr_matrix:
    """A with block row (i, a) = [W_i1 D_a, ..., W_id D_a]."""
    d = int(state.dimension)
    m = int(state.n_elements)
    n = int(state.n_vertices)
    w = state.weights

    rows: list[np.ndarray] = []
    cols: list[np.ndarray] = []
    vals: list[np.ndarray] = []
    for axis, op in enumerate(state.gradient_operators):
        coo = op.tocoo()
        r = coo.row.astype(np.int64, copy=False)
        c = coo.col.astype(np.int64, copy=False)
        v = coo.data
        for i in range(d):
            block_row = (i * d + axis) * m
            for j in range(d):
                rows.append(block_row + r)
                cols.append(j * n + c)
                vals.append(v * w[r, i, j])

    a = sparse.coo_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
        shape=(d * d * m, d * n),
    )
    return a.tocsr()


def fit_targets(state: SolverState) -> np.ndarray:
    """Flattened W_e F_e in the design matrix row order."""
    wf = state.weights @ state.fit_matrices  # (m, d, d): [e, i, a]
    return np.ascontiguousarray(np.transpose(wf, (1, 2, 0))).reshape(-1)


def build_linear_system(state: SolverState) -> None:
    """
    Assemble the normal equations of the weighted proxy.

    L = A^T M A + proximal * I (+ soft constraint diagonal),
    rhs = A^T M f + proximal * x (+ penalty * targets).
    Writes ``state.system_matrix`` and ``state.rhs``.
    """
    d = int(state.dimension)
    n = int(state.n_vertices)

    a = build_design_matrix(state)
    at = a.T.tocsr()
    mass = state.mass_weights

    size = d * n
    system = at @ sparse.diags(mass) @ a + state.proximal_penalty * sparse.identity(size, format="csr")
    rhs = at @ (mass * fit_targets(state)) + state.proximal_penalty * flatten_positions(state.positions)

    if state.has_constraints and state.soft_penalty > 0:
        system, rhs = _add_soft_constraints(state, system, rhs)

    state.system_matrix = sparse.csr_matrix(system)
    state.rhs = np.asarray(rhs, dtype=np.float64)


def _add_soft_constraints(
    state: SolverState, system: sparse.spmatrix, rhs: np.ndarray
) -> tuple[sparse.spmatrix, np.ndarray]:
    d = int(state.dimension)
    n = int(state.n_vertices)
    p = float(state.soft_penalty)
    b = state.constraint_indices

    idx = np.concatenate([axis * n + b for axis in range(d)])
    penalty = sparse.coo_matrix(
        (np.full(idx.shape[0], p, dtype=np.float64), (idx, idx)), shape=system.shape
    )
    rhs = np.array(rhs, dtype=np.float64, copy=True)
    np.add.at(rhs, idx, p * state.constraint_targets.T.reshape(-1))
    return system + penalty, rhs


def global_step(state: SolverState, solver: Optional[SPDSolver] = None) -> np.ndarray:
    """
    Solve the weighted proxy for candidate positions.

    Returns:
        (n, d) candidate positions; ``state.positions`` is left untouched

    Raises:
        SolveFailedError: non-finite system data, failed factorization,
            CG non-convergence or a non-finite solution
    """
    if not (np.isfinite(state.weights).all() and np.isfinite(state.fit_matrices).all()):
        raise SolveFailedError("Local step produced non-finite weights or fit matrices")

    build_linear_system(state)
    if not (np.isfinite(state.system_matrix.data).all() and np.isfinite(state.rhs).all()):
        raise SolveFailedError("Assembled system contains non-finite entries")

    if solver is None:
        solver = solver_for_dimension(state.dimension)
    guess = flatten_positions(state.positions)
    solution = solver.solve(state.system_matrix, state.rhs, guess)
    return unflatten_positions(solution, state.n_vertices, state.dimension)


def compute_element_energies(state: SolverState, positions: np.ndarray) -> np.ndarray:
    """Exact per-element energy (before mass weighting) at ``positions``."""
    jacobians = compute_jacobians(state.gradient_operators, positions)
    sing = polar_svd(jacobians).singular_values
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        return state.family.energy(sing, state.exp_factor)


def soft_constraint_energy(state: SolverState, positions: np.ndarray) -> float:
    if not state.has_constraints:
        return 0.0
    x = np.asarray(positions, dtype=np.float64)
    diff = state.constraint_targets - x[state.constraint_indices]
    return float(state.soft_penalty * np.sum(diff * diff))


def compute_energy(state: SolverState, positions: np.ndarray) -> float:
    """
    Raw (not mass-normalized) energy of ``positions``, soft constraints included.

    Reads the state but never writes to it, so it can be called repeatedly
    from inside a line search.
    """
    per_element = compute_element_energies(state, positions)
    return float(np.dot(state.masses, per_element)) + soft_constraint_energy(state, positions)
