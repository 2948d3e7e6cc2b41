"""
Sparse symmetric positive-definite solvers behind one interface.

The global step only ever calls ``solve(matrix, rhs, guess)``; the mesh
dimension decides which implementation is wired in. 2D systems are factored
directly, 3D systems go through warm-started preconditioned CG.
"""

from __future__ import annotations

from typing import Optional
import logging

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import LinearOperator, cg, splu

from .runtime_defaults import DEFAULTS

_LOGGER = logging.getLogger(__name__)


class SolveFailedError(RuntimeError):
    pass


class SPDSolver:
    name = "base"

    def solve(
        self,
        matrix: sparse.spmatrix,
        rhs: np.ndarray,
        guess: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        raise NotImplementedError

    @staticmethod
    def _check_solution(x: np.ndarray, solver_name: str) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64).ravel()
        if not np.isfinite(x).all():
            raise SolveFailedError(f"{solver_name} produced a non-finite solution")
        return x


class DirectSPDSolver(SPDSolver):
    """Sparse LU factorization (SuperLU) of the SPD system; the guess is ignored."""

    name = "direct"

    def solve(
        self,
        matrix: sparse.spmatrix,
        rhs: np.ndarray,
        guess: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        a = sparse.csc_matrix(matrix)
        try:
            lu = splu(a)
        except RuntimeError as e:
            raise SolveFailedError(f"Sparse factorization failed: {e}") from e
        x = lu.solve(np.asarray(rhs, dtype=np.float64))
        return self._check_solution(x, "Sparse factorization")


class IterativeSPDSolver(SPDSolver):
    """Jacobi-preconditioned conjugate gradients, warm-started from ``guess``."""

    name = "iterative"

    def __init__(
        self,
        tolerance: float = DEFAULTS.cg_tolerance,
        max_iterations: int = DEFAULTS.cg_max_iterations,
    ):
        """
        Args:
            tolerance: relative residual tolerance
            max_iterations: lower bound on the iteration budget (10 * size is used when larger)
        """
        self.tolerance = float(tolerance)
        self.max_iterations = int(max_iterations)

    def solve(
        self,
        matrix: sparse.spmatrix,
        rhs: np.ndarray,
        guess: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        a = sparse.csr_matrix(matrix)
        b = np.asarray(rhs, dtype=np.float64).ravel()
        size = int(b.shape[0])

        diag = np.asarray(a.diagonal(), dtype=np.float64)
        if not np.all(diag > 0) or not np.isfinite(diag).all():
            raise SolveFailedError("System matrix has a non-positive diagonal (not SPD)")
        inv_diag = 1.0 / diag
        preconditioner = LinearOperator((size, size), matvec=lambda v: inv_diag * np.ravel(v))

        x0 = None if guess is None else np.asarray(guess, dtype=np.float64).ravel()
        maxiter = max(self.max_iterations, 10 * size)
        x, info = cg(a, b, x0=x0, rtol=self.tolerance, atol=0.0, maxiter=maxiter, M=preconditioner)
        if info > 0:
            raise SolveFailedError(f"Conjugate gradients did not converge in {maxiter} iterations")
        if info < 0:
            raise SolveFailedError(f"Conjugate gradients failed (info={info})")
        _LOGGER.debug("CG converged (size=%d)", size)
        return self._check_solution(x, "Conjugate gradients")


def solver_for_dimension(dimension: int) -> SPDSolver:
    if int(dimension) == 2:
        return DirectSPDSolver()
    return IterativeSPDSolver()
