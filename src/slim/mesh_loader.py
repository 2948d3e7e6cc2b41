"""
Mesh Loader Module

Triangle mesh container and trimesh-based file I/O.

Supports: OBJ, PLY, STL, OFF, GLTF/GLB formats
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List, Union
import logging

import numpy as np
import trimesh

_LOGGER = logging.getLogger(__name__)


@dataclass
class MeshData:
    """
    Triangle mesh container.

    Attributes:
        vertices: (N, 3) vertex coordinates
        faces: (M, 3) triangle indices
        uv_coords: (N, 2) per-vertex UV coordinates (optional)
        unit: coordinate unit ('mm', 'cm', 'm')
        filepath: source file path
    """
    vertices: np.ndarray
    faces: np.ndarray
    uv_coords: Optional[np.ndarray] = None
    unit: str = 'mm'
    filepath: Optional[Path] = None

    _bounds: Optional[np.ndarray] = field(default=None, repr=False)
    _surface_area: Optional[float] = field(default=None, repr=False)

    def __post_init__(self):
        self.vertices = np.asarray(self.vertices, dtype=np.float64)
        self.faces = np.asarray(self.faces, dtype=np.int64)
        if self.uv_coords is not None:
            self.uv_coords = np.asarray(self.uv_coords, dtype=np.float64)

    @property
    def n_vertices(self) -> int:
        return len(self.vertices)

    @property
    def n_faces(self) -> int:
        return len(self.faces)

    @property
    def bounds(self) -> np.ndarray:
        """[[min_x, min_y, min_z], [max_x, max_y, max_z]]"""
        if self._bounds is None:
            self._bounds = np.array([self.vertices.min(axis=0), self.vertices.max(axis=0)])
        return self._bounds

    @property
    def extents(self) -> np.ndarray:
        return self.bounds[1] - self.bounds[0]

    @property
    def face_areas(self) -> np.ndarray:
        v0 = self.vertices[self.faces[:, 0]]
        v1 = self.vertices[self.faces[:, 1]]
        v2 = self.vertices[self.faces[:, 2]]
        return np.linalg.norm(np.cross(v1 - v0, v2 - v0), axis=1) / 2.0

    @property
    def surface_area(self) -> float:
        if self._surface_area is None:
            self._surface_area = float(self.face_areas.sum())
        return self._surface_area

    def get_boundary_halfedges(self) -> np.ndarray:
        """
        Directed boundary edges (K, 2).

        A half-edge a->b lies on the boundary when no face contains b->a, so
        the returned edges follow the face winding (interior on the left).
        """
        f = self.faces
        if f.shape[0] == 0:
            return np.zeros((0, 2), dtype=np.int64)
        halfedges = np.concatenate([f[:, [0, 1]], f[:, [1, 2]], f[:, [2, 0]]], axis=0)

        n = max(int(self.n_vertices), int(f.max()) + 1)
        forward = halfedges[:, 0] * n + halfedges[:, 1]
        backward = halfedges[:, 1] * n + halfedges[:, 0]
        is_boundary = ~np.isin(forward, backward)
        return halfedges[is_boundary]

    def get_boundary_loops(self) -> List[np.ndarray]:
        """
        Ordered boundary loops, each an (L,) vertex index array without the repeated start.

        Loops shorter than three vertices are dropped.
        """
        halfedges = self.get_boundary_halfedges()
        if len(halfedges) == 0:
            return []

        successors: dict[int, list[int]] = {}
        for a, b in halfedges:
            successors.setdefault(int(a), []).append(int(b))

        loops: list[np.ndarray] = []
        while successors:
            start = next(iter(successors))
            loop = [start]
            curr = start
            while True:
                nexts = successors.get(curr)
                if not nexts:
                    break
                nxt = nexts.pop()
                if not nexts:
                    del successors[curr]
                if nxt == start:
                    break
                loop.append(nxt)
                curr = nxt
                if len(loop) > len(halfedges):
                    break

            if len(loop) >= 3:
                loops.append(np.asarray(loop, dtype=np.int64))

        return loops

    def get_boundary_vertices(self) -> np.ndarray:
        """Longest boundary loop in order (empty for closed meshes)."""
        loops = self.get_boundary_loops()
        if not loops:
            return np.zeros((0,), dtype=np.int64)
        return max(loops, key=lambda a: int(a.size)).copy()

    @property
    def is_closed(self) -> bool:
        return len(self.get_boundary_halfedges()) == 0

    def to_trimesh(self) -> 'trimesh.Trimesh':
        return trimesh.Trimesh(vertices=self.vertices, faces=self.faces, process=False)

    @classmethod
    def from_trimesh(cls, mesh: 'trimesh.Trimesh',
                     filepath: Optional[Path] = None,
                     unit: str = 'mm') -> 'MeshData':
        visual = getattr(mesh, "visual", None)
        uv = getattr(visual, "uv", None) if visual is not None else None
        return cls(
            vertices=mesh.vertices,
            faces=mesh.faces,
            uv_coords=uv,
            unit=unit,
            filepath=filepath,
        )


class MeshLoader:
    """
    Mesh file loader for the common 3D formats.

    Supported formats:
        - OBJ (Wavefront)
        - PLY (Polygon File Format)
        - STL (Stereolithography)
        - OFF (Object File Format)
        - GLTF/GLB (GL Transmission Format)
    """

    SUPPORTED_FORMATS = {
        '.obj': 'Wavefront OBJ',
        '.ply': 'Polygon File Format',
        '.stl': 'Stereolithography',
        '.off': 'Object File Format',
        '.gltf': 'GL Transmission Format',
        '.glb': 'GL Transmission Format (Binary)',
    }

    def __init__(self, default_unit: str = 'mm'):
        self.default_unit = default_unit

    @classmethod
    def get_supported_formats(cls) -> dict:
        return cls.SUPPORTED_FORMATS.copy()

    def _check_path(self, filepath: Union[str, Path]) -> Path:
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"File not found: {filepath}")
        ext = filepath.suffix.lower()
        if ext not in self.SUPPORTED_FORMATS:
            raise ValueError(
                f"Unsupported format: {ext}\n"
                f"Supported formats: {list(self.SUPPORTED_FORMATS.keys())}"
            )
        return filepath

    @staticmethod
    def _read_trimesh(filepath: Path) -> 'trimesh.Trimesh':
        # process=False keeps the file's vertex order and duplicates
        mesh = trimesh.load(str(filepath), force='mesh', process=False, maintain_order=True)

        if isinstance(mesh, trimesh.Scene):
            meshes = [g for g in mesh.geometry.values() if isinstance(g, trimesh.Trimesh)]
            if len(meshes) == 0:
                raise ValueError(f"No valid mesh found in: {filepath}")
            mesh = trimesh.util.concatenate(meshes)

        if not isinstance(mesh, trimesh.Trimesh):
            raise TypeError(f"Expected trimesh.Trimesh, got {type(mesh).__name__}")
        return mesh

    def load(self, filepath: Union[str, Path], unit: Optional[str] = None) -> MeshData:
        """
        Load a triangle mesh.

        Raises:
            FileNotFoundError: the file does not exist
            ValueError: unsupported format or no mesh in the file
        """
        filepath = self._check_path(filepath)
        mesh = self._read_trimesh(filepath)
        mesh_data = MeshData.from_trimesh(mesh, filepath=filepath, unit=unit or self.default_unit)
        _LOGGER.debug(
            "Loaded %s: %d vertices, %d faces", filepath, mesh_data.n_vertices, mesh_data.n_faces
        )
        return mesh_data

    def get_file_info(self, filepath: Union[str, Path]) -> dict:
        """Summary of a mesh file; read errors are reported under 'error'."""
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"File not found: {filepath}")

        ext = filepath.suffix.lower()
        info = {
            'filename': filepath.name,
            'format': self.SUPPORTED_FORMATS.get(ext, 'Unknown'),
            'extension': ext,
            'file_size_mb': round(filepath.stat().st_size / (1024 * 1024), 2),
        }

        try:
            mesh = MeshData.from_trimesh(self._read_trimesh(filepath))
            info['n_vertices'] = mesh.n_vertices
            info['n_faces'] = mesh.n_faces
            info['boundary_loops'] = len(mesh.get_boundary_loops())
            info['has_uv'] = mesh.uv_coords is not None
        except (ValueError, TypeError, OSError) as e:
            info['error'] = str(e)

        return info


def save_parameterization(
    uv: np.ndarray,
    faces: np.ndarray,
    filepath: Union[str, Path],
) -> Path:
    """Write a flat layout as a mesh with vertices (u, v, 0)."""
    filepath = Path(filepath)
    uv = np.asarray(uv, dtype=np.float64)
    vertices = np.zeros((uv.shape[0], 3), dtype=np.float64)
    vertices[:, :2] = uv[:, :2]

    mesh = trimesh.Trimesh(vertices=vertices, faces=np.asarray(faces, dtype=np.int64), process=False)

    filepath.parent.mkdir(parents=True, exist_ok=True)
    mesh.export(str(filepath))
    _LOGGER.info("Saved parameterization: %s", filepath)
    return filepath
