"""
Geometry collaborators of the solver: rest frames, gradient operators,
element masses, signed volumes and a batched polar SVD.
"""

from dataclasses import dataclass
from typing import Tuple
import logging

import numpy as np
from scipy import sparse

from .state import InvalidInputError, dimension_for_arity

_LOGGER = logging.getLogger(__name__)

_DEGENERATE_TOL = 1e-14

# Unit-edge regular tetrahedron, positively oriented (edge matrix columns)
_REGULAR_TET_EDGES = np.array(
    [
        [1.0, 0.5, 0.5],
        [0.0, np.sqrt(3.0) / 2.0, np.sqrt(3.0) / 6.0],
        [0.0, 0.0, np.sqrt(2.0 / 3.0)],
    ],
    dtype=np.float64,
)


@dataclass
class PolarDecomposition:
    """
    Batched polar/singular value decomposition A = U diag(s) V^T = R T.

    Attributes:
        rotation: (m, d, d) closest proper rotation R (det = +1)
        stretch: (m, d, d) factor T with A = R T
        u: (m, d, d) left singular vectors
        singular_values: (m, d) non-negative, descending per row
        v: (m, d, d) right singular vectors (not transposed)
    """
    rotation: np.ndarray
    stretch: np.ndarray
    u: np.ndarray
    singular_values: np.ndarray
    v: np.ndarray


def polar_svd(matrices: np.ndarray) -> PolarDecomposition:
    """
    Polar decomposition through the SVD.

    When U V^T is a reflection the last right singular vector is negated for
    the rotation only; U, V and the singular values are returned as computed.
    """
    a = np.asarray(matrices, dtype=np.float64)
    u, s, vt = np.linalg.svd(a)
    v = np.swapaxes(vt, 1, 2)

    rotation = u @ vt
    flipped = np.linalg.det(rotation) < 0
    if np.any(flipped):
        w = v[flipped].copy()
        w[:, :, -1] *= -1.0
        rotation[flipped] = u[flipped] @ np.swapaxes(w, 1, 2)

    stretch = np.swapaxes(rotation, 1, 2) @ a
    return PolarDecomposition(rotation=rotation, stretch=stretch, u=u, singular_values=s, v=v)


def pad_to_3d(points: np.ndarray) -> np.ndarray:
    pts = np.asarray(points, dtype=np.float64)
    if pts.shape[1] == 3:
        return pts
    out = np.zeros((pts.shape[0], 3), dtype=np.float64)
    out[:, : pts.shape[1]] = pts
    return out


def local_basis(vertices: np.ndarray, faces: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Orthonormal frame per triangle.

    B1 follows the first edge, B3 is the unit normal and B2 = B3 x B1 completes
    a right-handed frame, so every triangle has positive area in its own frame.
    """
    v = pad_to_3d(vertices)
    f = np.asarray(faces, dtype=np.int64)
    e1 = v[f[:, 1]] - v[f[:, 0]]
    e2 = v[f[:, 2]] - v[f[:, 0]]

    b1 = e1 / np.linalg.norm(e1, axis=1, keepdims=True)
    normal = np.cross(b1, e2)
    b3 = normal / np.linalg.norm(normal, axis=1, keepdims=True)
    b2 = np.cross(b3, b1)
    return b1, b2, b3


def edge_matrices(positions: np.ndarray, elements: np.ndarray) -> np.ndarray:
    """(m, d, d) matrices whose columns are x_k - x_0 for k = 1..d, in the positions' own axes."""
    x = np.asarray(positions, dtype=np.float64)
    el = np.asarray(elements, dtype=np.int64)
    origin = x[el[:, 0]]
    cols = [x[el[:, k]] - origin for k in range(1, el.shape[1])]
    return np.stack(cols, axis=2)


def rest_edge_matrices(
    rest_positions: np.ndarray,
    elements: np.ndarray,
    *,
    regular_reference: bool = False,
) -> np.ndarray:
    """
    Rest-shape edge matrices expressed in each element's reference frame.

    Triangles with 2D rest coordinates use the plane axes directly; triangles
    embedded in 3D are expressed in their local basis. Tetrahedra use world
    axes, or the regular reference tetrahedron when ``regular_reference``.
    """
    el = np.asarray(elements, dtype=np.int64)
    rest = np.asarray(rest_positions, dtype=np.float64)
    dim = dimension_for_arity(int(el.shape[1]))

    if dim == 3:
        if regular_reference:
            return np.broadcast_to(_REGULAR_TET_EDGES, (el.shape[0], 3, 3)).copy()
        return edge_matrices(rest, el)

    if rest.shape[1] == 2:
        return edge_matrices(rest, el)

    v = pad_to_3d(rest)
    b1, b2, _ = local_basis(v, el)
    e1 = v[el[:, 1]] - v[el[:, 0]]
    e2 = v[el[:, 2]] - v[el[:, 0]]
    out = np.empty((el.shape[0], 2, 2), dtype=np.float64)
    out[:, 0, 0] = np.einsum("ij,ij->i", e1, b1)
    out[:, 1, 0] = np.einsum("ij,ij->i", e1, b2)
    out[:, 0, 1] = np.einsum("ij,ij->i", e2, b1)
    out[:, 1, 1] = np.einsum("ij,ij->i", e2, b2)
    return out


def gradient_operators(
    rest_positions: np.ndarray,
    elements: np.ndarray,
    *,
    regular_reference: bool = False,
) -> Tuple[sparse.csr_matrix, ...]:
    """
    Per-element gradient operators D_1..D_d, each (m, n).

    For a per-vertex scalar field f, (D_a f)[e] is the a-th component of the
    gradient of the piecewise-linear interpolant of f on element e.

    Raises:
        InvalidInputError: when an element is degenerate in its rest shape
    """
    el = np.asarray(elements, dtype=np.int64)
    rest = np.asarray(rest_positions, dtype=np.float64)
    m = int(el.shape[0])
    n = int(rest.shape[0])
    dim = dimension_for_arity(int(el.shape[1]))

    edges = rest_edge_matrices(rest, el, regular_reference=regular_reference)
    det = np.linalg.det(edges)
    scale = np.max(np.abs(edges).reshape(m, -1), axis=1) ** dim
    degenerate = np.abs(det) <= _DEGENERATE_TOL * np.maximum(scale, 1e-300)
    if np.any(degenerate):
        raise InvalidInputError(
            f"{int(np.count_nonzero(degenerate))} degenerate element(s) in the rest shape "
            f"(first: {int(np.flatnonzero(degenerate)[0])})"
        )

    # grad f = E^{-T} (f_k - f_0)
    coeffs = np.swapaxes(np.linalg.inv(edges), 1, 2)  # (m, d, d): [e, axis, k]

    rows = np.repeat(np.arange(m, dtype=np.int64), dim + 1)
    cols = el.reshape(-1)
    operators = []
    for axis in range(dim):
        vals = np.empty((m, dim + 1), dtype=np.float64)
        vals[:, 1:] = coeffs[:, axis, :]
        vals[:, 0] = -coeffs[:, axis, :].sum(axis=1)
        op = sparse.coo_matrix((vals.reshape(-1), (rows, cols)), shape=(m, n)).tocsr()
        op.sum_duplicates()
        operators.append(op)

    _LOGGER.debug("Built %d gradient operators for %d elements / %d vertices", dim, m, n)
    return tuple(operators)


def element_masses(rest_positions: np.ndarray, elements: np.ndarray) -> np.ndarray:
    """Rest area (triangles) or volume (tetrahedra) per element."""
    el = np.asarray(elements, dtype=np.int64)
    rest = np.asarray(rest_positions, dtype=np.float64)
    dim = dimension_for_arity(int(el.shape[1]))

    if dim == 2:
        v = pad_to_3d(rest)
        e1 = v[el[:, 1]] - v[el[:, 0]]
        e2 = v[el[:, 2]] - v[el[:, 0]]
        return np.linalg.norm(np.cross(e1, e2), axis=1) * 0.5

    return np.abs(np.linalg.det(edge_matrices(rest, el))) / 6.0


def signed_volumes(positions: np.ndarray, elements: np.ndarray) -> np.ndarray:
    """Signed area (2D) or signed volume (3D) of each element at ``positions``."""
    el = np.asarray(elements, dtype=np.int64)
    x = np.asarray(positions, dtype=np.float64)
    dim = int(el.shape[1]) - 1
    if x.shape[1] != dim:
        raise InvalidInputError(f"positions must have {dim} columns, got {x.shape[1]}")
    factor = 0.5 if dim == 2 else 1.0 / 6.0
    return np.linalg.det(edge_matrices(x, el)) * factor
