"""
Injective initial layouts for disk-topology surfaces.

The local/global solver needs a starting point without inverted triangles.
Tutte's embedding provides one: the boundary is pinned to a convex polygon
and every interior vertex sits at the average of its neighbors, which is
guaranteed to be a bijection onto the polygon.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import splu

from .geometry import signed_volumes
from .mesh_loader import MeshData
from .state import InvalidInputError

_LOGGER = logging.getLogger(__name__)


def boundary_circle(vertices: np.ndarray, boundary: np.ndarray) -> np.ndarray:
    """
    Place boundary vertices on a circle, spaced by arc length.

    The radius keeps the circle perimeter equal to the boundary length so the
    layout stays in the mesh's units.
    """
    verts = np.asarray(vertices, dtype=np.float64)
    b_pts = verts[boundary]
    seg = np.linalg.norm(np.roll(b_pts, -1, axis=0) - b_pts, axis=1)
    perim = float(seg.sum())
    if perim <= 1e-12:
        radius = 1.0
        angles = np.linspace(0.0, 2.0 * np.pi, len(boundary), endpoint=False)
    else:
        radius = perim / (2.0 * np.pi)
        angles = 2.0 * np.pi * np.concatenate([[0.0], np.cumsum(seg)[:-1]]) / perim
    return np.column_stack([np.cos(angles), np.sin(angles)]) * radius


def uniform_laplacian(n_vertices: int, faces: np.ndarray) -> sparse.csr_matrix:
    """Graph Laplacian with unit edge weights (degree on the diagonal)."""
    f = np.asarray(faces, dtype=np.int64)
    i = np.concatenate([f[:, 0], f[:, 1], f[:, 2]])
    j = np.concatenate([f[:, 1], f[:, 2], f[:, 0]])
    adj = sparse.coo_matrix((np.ones(i.shape[0]), (i, j)), shape=(n_vertices, n_vertices)).tocsr()
    adj = ((adj + adj.T) > 0).astype(np.float64)
    degree = np.asarray(adj.sum(axis=1)).ravel()
    return (sparse.diags(degree) - adj).tocsr()


def tutte_embedding(mesh: MeshData) -> np.ndarray:
    """
    Uniform-weight Tutte embedding of a mesh with at least one boundary loop.

    The longest boundary loop is fixed to a circle; other loops stay free.

    Returns:
        (N, 2) layout with positively oriented triangles

    Raises:
        InvalidInputError: closed meshes or unreferenced vertices
    """
    n = int(mesh.n_vertices)
    faces = np.asarray(mesh.faces, dtype=np.int64)
    boundary = mesh.get_boundary_vertices()
    if len(boundary) < 3:
        raise InvalidInputError("Tutte embedding needs a mesh with a boundary loop")

    used = np.zeros(n, dtype=bool)
    used[faces.reshape(-1)] = True
    if not used.all():
        raise InvalidInputError(f"{int((~used).sum())} vertices are not referenced by any face")

    uv = np.zeros((n, 2), dtype=np.float64)
    uv[boundary] = boundary_circle(mesh.vertices, boundary)

    is_boundary = np.zeros(n, dtype=bool)
    is_boundary[boundary] = True
    interior = np.flatnonzero(~is_boundary)

    if interior.size:
        lap = uniform_laplacian(n, faces)
        l_ii = lap[interior][:, interior].tocsc()
        l_ib = lap[interior][:, boundary]
        rhs = -(l_ib @ uv[boundary])
        lu = splu(l_ii)
        uv[interior, 0] = lu.solve(np.ascontiguousarray(rhs[:, 0]))
        uv[interior, 1] = lu.solve(np.ascontiguousarray(rhs[:, 1]))

    areas = signed_volumes(uv, faces)
    if np.sum(areas) < 0:
        # boundary loop ran clockwise relative to the face winding
        uv[:, 1] *= -1.0
        areas = -areas

    n_flipped = int(np.count_nonzero(areas <= 0))
    if n_flipped:
        _LOGGER.warning("Tutte embedding has %d non-positive triangles", n_flipped)
    _LOGGER.debug("Tutte embedding: %d boundary, %d interior vertices", len(boundary), interior.size)
    return uv
