"""
SLIM: locally injective mappings by reweighted local/global optimization
"""

from .energies import EnergyKind
from .state import SolverState, InvalidInputError
from .linear_solvers import SolveFailedError, DirectSPDSolver, IterativeSPDSolver
from .slim import IterationReport, SlimSolver, precompute, slim_precompute, solve, set_soft_penalty
from .mesh_loader import MeshLoader, MeshData, save_parameterization
from .initial_guess import tutte_embedding
from .parameterizer import SlimParameterizer, ParameterizationResult
from .layout_renderer import LayoutRenderer, LayoutImage

__all__ = [
    # Solver
    'EnergyKind',
    'SolverState',
    'IterationReport',
    'SlimSolver',
    'precompute',
    'slim_precompute',
    'solve',
    'set_soft_penalty',
    # Errors
    'InvalidInputError',
    'SolveFailedError',
    # Linear solvers
    'DirectSPDSolver',
    'IterativeSPDSolver',
    # Mesh I/O
    'MeshLoader',
    'MeshData',
    'save_parameterization',
    # Surface parameterization
    'tutte_embedding',
    'SlimParameterizer',
    'ParameterizationResult',
    # Layout preview
    'LayoutRenderer',
    'LayoutImage',
]
