"""
Surface Parameterization Module

Flattens a triangle surface to the plane with the SLIM solver: the surface
is cleaned up, each connected piece gets an injective Tutte layout, the
solver minimizes the chosen distortion energy from there, and the pieces
are packed side by side.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import logging

import numpy as np
from scipy import sparse
from scipy.sparse.csgraph import connected_components

from .energies import EnergyKind
from .initial_guess import tutte_embedding
from .mesh_loader import MeshData
from .runtime_defaults import DEFAULTS
from .slim import IterationReport, SlimSolver
from .state import InvalidInputError

_LOGGER = logging.getLogger(__name__)


@dataclass
class ParameterizationResult:
    """
    Planar layout of a surface.

    Attributes:
        uv: (N, 2) layout coordinates, in the mesh's units
        faces: (M, 3) triangles indexing ``uv``
        mesh: cleaned surface the layout belongs to
        vertex_map: (N,) index of each layout vertex in the input mesh
        distortion_per_face: (M,) per-triangle energy of the final layout
        energy: energy kind that was minimized
        energy_history: normalized energy before the first and after every iteration
        reports: iteration reports of every piece, in order
    """
    uv: np.ndarray
    faces: np.ndarray
    mesh: MeshData
    vertex_map: np.ndarray
    distortion_per_face: np.ndarray
    energy: EnergyKind
    energy_history: List[float] = field(default_factory=list)
    reports: List[IterationReport] = field(default_factory=list)

    @property
    def n_vertices(self) -> int:
        return len(self.uv)

    @property
    def n_faces(self) -> int:
        return len(self.faces)

    @property
    def bounds(self) -> np.ndarray:
        """[[min_u, min_v], [max_u, max_v]]"""
        if self.uv.size == 0:
            return np.zeros((2, 2), dtype=np.float64)
        return np.array([self.uv.min(axis=0), self.uv.max(axis=0)])

    @property
    def extents(self) -> np.ndarray:
        return self.bounds[1] - self.bounds[0]

    @property
    def width(self) -> float:
        return float(self.extents[0])

    @property
    def height(self) -> float:
        return float(self.extents[1])

    @property
    def final_energy(self) -> float:
        return float(self.energy_history[-1]) if self.energy_history else float("nan")

    @property
    def mean_distortion(self) -> float:
        if self.distortion_per_face.size == 0:
            return 0.0
        return float(np.mean(self.distortion_per_face))

    @property
    def max_distortion(self) -> float:
        if self.distortion_per_face.size == 0:
            return 0.0
        return float(np.max(self.distortion_per_face))

    def get_pixel_coordinates(self, width: int, height: int) -> np.ndarray:
        """Layout in image pixels, aspect ratio kept, y pointing down."""
        ext = self.extents.copy()
        ext[ext <= 0] = 1.0
        scale = min((width - 1) / ext[0], (height - 1) / ext[1])
        pixels = (self.uv - self.bounds[0]) * scale
        pixels[:, 1] = (height - 1) - pixels[:, 1]
        return pixels


def sanitize_mesh(mesh: MeshData) -> Tuple[MeshData, np.ndarray]:
    """
    Drop faces that are non-finite, repeat an index or have (near) zero area,
    then keep only referenced vertices.

    Returns:
        (cleaned mesh, original index of each kept vertex)
    """
    vertices = np.asarray(mesh.vertices, dtype=np.float64)
    faces = np.asarray(mesh.faces, dtype=np.int64)
    if faces.ndim != 2 or faces.shape[0] == 0 or faces.shape[1] != 3:
        raise InvalidInputError("mesh has no triangles")

    a, b, c = faces[:, 0], faces[:, 1], faces[:, 2]
    mask = (a != b) & (b != c) & (a != c)
    finite_v = np.all(np.isfinite(vertices), axis=1)
    mask &= finite_v[a] & finite_v[b] & finite_v[c]
    faces = faces[mask]

    if faces.shape[0]:
        v0, v1, v2 = (vertices[faces[:, k]] for k in range(3))
        area2 = np.linalg.norm(np.cross(v1 - v0, v2 - v0), axis=1)
        faces = faces[area2 > 1e-12]
    if faces.shape[0] == 0:
        raise InvalidInputError("mesh has no non-degenerate triangles")

    dropped = int(mesh.n_faces - faces.shape[0])
    if dropped:
        _LOGGER.info("Dropped %d degenerate face(s) before parameterization", dropped)

    vertex_map = np.unique(faces.reshape(-1))
    new_faces = np.searchsorted(vertex_map, faces)
    cleaned = MeshData(
        vertices=vertices[vertex_map],
        faces=new_faces,
        unit=mesh.unit,
        filepath=mesh.filepath,
    )
    return cleaned, vertex_map


def face_components(n_vertices: int, faces: np.ndarray) -> List[np.ndarray]:
    """Face index sets of the vertex-connected components, largest first."""
    f = np.asarray(faces, dtype=np.int64)
    i = np.concatenate([f[:, 0], f[:, 1]])
    j = np.concatenate([f[:, 1], f[:, 2]])
    graph = sparse.coo_matrix((np.ones(i.shape[0]), (i, j)), shape=(n_vertices, n_vertices))
    n_comp, labels = connected_components(graph, directed=False)
    face_labels = labels[f[:, 0]]
    comps = [np.flatnonzero(face_labels == k) for k in range(n_comp)]
    comps = [c for c in comps if c.size]
    return sorted(comps, key=lambda c: int(c.size), reverse=True)


class SlimParameterizer:
    """
    Distortion-minimizing surface flattening.

    Usage:
        parameterizer = SlimParameterizer(energy="symmetric_dirichlet", iterations=20)
        result = parameterizer.parameterize(mesh)
    """

    def __init__(
        self,
        energy: EnergyKind | str = EnergyKind.SYMMETRIC_DIRICHLET,
        iterations: int = DEFAULTS.iterations,
        soft_penalty: float = DEFAULTS.soft_penalty,
        exp_factor: float = DEFAULTS.exp_factor,
    ):
        self.energy = EnergyKind.parse(energy)
        self.iterations = int(iterations)
        self.soft_penalty = float(soft_penalty)
        self.exp_factor = float(exp_factor)

    def parameterize(
        self,
        mesh: MeshData,
        initial_uv: Optional[np.ndarray] = None,
        constraint_indices: Optional[np.ndarray] = None,
        constraint_targets: Optional[np.ndarray] = None,
    ) -> ParameterizationResult:
        """
        Flatten ``mesh``.

        Args:
            mesh: triangle surface with at least one boundary per piece
            initial_uv: (N, 2) injective starting layout in input vertex order;
                a Tutte embedding per piece is used when None
            constraint_indices: input vertex indices pulled towards targets
            constraint_targets: (K, 2) layout targets for those vertices

        Raises:
            InvalidInputError: unusable mesh, layout or constraints
            SolveFailedError: the linear solve broke down
        """
        if mesh is None:
            raise InvalidInputError("mesh is None")

        clean, vertex_map = sanitize_mesh(mesh)
        indices, targets = self._remap_constraints(
            vertex_map, constraint_indices, constraint_targets
        )
        start_uv = None
        if initial_uv is not None:
            uv_in = np.asarray(initial_uv, dtype=np.float64)
            if uv_in.ndim != 2 or uv_in.shape[0] != mesh.n_vertices or uv_in.shape[1] < 2:
                raise InvalidInputError(
                    f"initial_uv must be ({mesh.n_vertices}, 2), got shape {uv_in.shape}"
                )
            start_uv = uv_in[vertex_map, :2]

        components = face_components(clean.n_vertices, clean.faces)
        uv_all = np.zeros((clean.n_vertices, 2), dtype=np.float64)
        distortion = np.zeros((clean.n_faces,), dtype=np.float64)
        reports: List[IterationReport] = []
        history: Optional[np.ndarray] = None
        total_mass = 0.0

        cursor_x = 0.0
        gap = float(max(1e-6, 0.02 * float(np.max(clean.extents))))

        for face_indices in components:
            sub_faces = clean.faces[face_indices]
            sub_vertices = np.unique(sub_faces.reshape(-1))
            local_faces = np.searchsorted(sub_vertices, sub_faces)
            piece = MeshData(vertices=clean.vertices[sub_vertices], faces=local_faces, unit=clean.unit)

            if start_uv is None:
                uv0 = tutte_embedding(piece)
            else:
                uv0 = start_uv[sub_vertices]

            in_piece = np.isin(indices, sub_vertices)
            solver = SlimSolver.create(
                piece.vertices,
                piece.faces,
                uv0,
                self.energy,
                np.searchsorted(sub_vertices, indices[in_piece]),
                targets[in_piece],
                self.soft_penalty,
                exp_factor=self.exp_factor,
            )
            mass = solver.state.mesh_mass
            piece_history = [solver.energy]
            for report in solver.solve(self.iterations):
                piece_history.append(report.energy)
            reports.extend(solver.history)

            weighted = np.asarray(piece_history, dtype=np.float64) * mass
            history = weighted if history is None else history + weighted
            total_mass += mass

            uv = solver.positions.copy()
            if len(components) > 1 and not indices.size:
                uv -= uv.min(axis=0)
                uv[:, 0] += cursor_x
                cursor_x = float(uv[:, 0].max()) + gap
            uv_all[sub_vertices] = uv
            distortion[face_indices] = solver.element_distortion()

        energy_history = [float(e) for e in (history / total_mass)] if history is not None else []
        _LOGGER.info(
            "Parameterized %d vertices / %d faces in %d piece(s): energy %.6g -> %.6g",
            clean.n_vertices,
            clean.n_faces,
            len(components),
            energy_history[0] if energy_history else float("nan"),
            energy_history[-1] if energy_history else float("nan"),
        )

        return ParameterizationResult(
            uv=uv_all,
            faces=clean.faces,
            mesh=clean,
            vertex_map=vertex_map,
            distortion_per_face=distortion,
            energy=self.energy,
            energy_history=energy_history,
            reports=reports,
        )

    @staticmethod
    def _remap_constraints(
        vertex_map: np.ndarray,
        constraint_indices: Optional[np.ndarray],
        constraint_targets: Optional[np.ndarray],
    ) -> Tuple[np.ndarray, np.ndarray]:
        if constraint_indices is None:
            return np.zeros((0,), dtype=np.int64), np.zeros((0, 2), dtype=np.float64)

        indices = np.asarray(constraint_indices, dtype=np.int64).reshape(-1)
        targets = np.asarray(constraint_targets, dtype=np.float64).reshape(-1, 2)
        if indices.shape[0] != targets.shape[0]:
            raise InvalidInputError(
                f"{indices.shape[0]} constrained vertices but {targets.shape[0]} targets"
            )
        pos = np.searchsorted(vertex_map, indices)
        pos = np.clip(pos, 0, len(vertex_map) - 1)
        if not np.array_equal(vertex_map[pos], indices):
            raise InvalidInputError("constrained vertex is not part of any usable face")
        return pos, targets
