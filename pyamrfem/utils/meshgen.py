"""pyamrfem.utils.meshgen
Mesh generators for quick tests.

Every generator returns a :class:`~pyamrfem.core.mesh.Mesh` over a box
``[0, L]^d`` with its root sides tagged by the box face they lie on:
0/1 for ``x = 0`` / ``x = Lx``, 2/3 for ``y``, 4/5 for ``z``.
"""
import itertools
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import Delaunay

from pyamrfem.core.celltypes import CellType, cell_info
from pyamrfem.core.config import AMRConfig
from pyamrfem.core.mesh import Mesh

__all__ = ["structured_line", "structured_quad", "structured_triangles", "delaunay_rectangle",
           "structured_hex", "structured_prism", "structured_tets", "box_boundary_ids"]


def _grid(lengths: Sequence[float], counts: Sequence[int], offset=None) -> np.ndarray:
    # lexicographic, x fastest
    axes = [np.linspace(0.0, L, n + 1) for L, n in zip(lengths, counts)]
    mesh = np.meshgrid(*axes[::-1], indexing="ij")
    coords = np.column_stack([m.ravel() for m in mesh[::-1]])
    if offset is not None:
        coords = coords + np.asarray(offset, dtype=float)
    return coords


def _gid(idx: Sequence[int], counts: Sequence[int]) -> int:
    gid, stride = 0, 1
    for i, n in zip(idx, counts):
        gid += i * stride
        stride *= n + 1
    return gid


def box_boundary_ids(coords: np.ndarray, connectivity, cell_types, *, tol: float = 1e-12) -> dict:
    """
    Tag every element side that lies on a face of the bounding box of
    *coords*.  Returns ``{(elem_id, side): {tag}}``.
    """
    coords = np.asarray(coords, dtype=float)
    lo, hi = coords.min(axis=0), coords.max(axis=0)
    if isinstance(cell_types, (str, CellType)):
        cell_types = [cell_types] * len(connectivity)
    tags = {}
    for eid, (conn, ct) in enumerate(zip(connectivity, cell_types)):
        info = cell_info(ct)
        for s in range(info.n_sides):
            pts = coords[[conn[i] for i in info.side_nodes(s)]]
            for d in range(coords.shape[1]):
                if np.all(np.abs(pts[:, d] - lo[d]) < tol):
                    tags.setdefault((eid, s), set()).add(2 * d)
                elif np.all(np.abs(pts[:, d] - hi[d]) < tol):
                    tags.setdefault((eid, s), set()).add(2 * d + 1)
    return tags


def _build(coords, conn, ct, config) -> Mesh:
    return Mesh(coords, conn, ct,
                boundary_ids=box_boundary_ids(coords, conn, ct),
                config=config)


def structured_line(L: float, *, n: int, offset: Optional[float] = None,
                    config: Optional[AMRConfig] = None) -> Mesh:
    coords = _grid([L], [n], None if offset is None else [offset])
    conn = [(i, i + 1) for i in range(n)]
    return _build(coords, conn, CellType.EDGE2, config)


def structured_quad(Lx: float, Ly: float, *, nx: int, ny: int,
                    offset: Optional[Tuple[float, float]] = None,
                    config: Optional[AMRConfig] = None) -> Mesh:
    """Structured QUAD4 mesh, corners counter-clockwise from bottom-left."""
    counts = (nx, ny)
    coords = _grid((Lx, Ly), counts, offset)
    conn = []
    for j in range(ny):
        for i in range(nx):
            conn.append((_gid((i, j), counts), _gid((i + 1, j), counts),
                         _gid((i + 1, j + 1), counts), _gid((i, j + 1), counts)))
    return _build(coords, conn, CellType.QUAD4, config)


def _split_quads(nx: int, ny: int):
    counts = (nx, ny)
    tris = []
    for j in range(ny):
        for i in range(nx):
            bl, br = _gid((i, j), counts), _gid((i + 1, j), counts)
            tl, tr = _gid((i, j + 1), counts), _gid((i + 1, j + 1), counts)
            tris.append((bl, br, tr))
            tris.append((bl, tr, tl))
    return tris


def structured_triangles(Lx: float, Ly: float, *, nx_quads: int, ny_quads: int,
                         offset: Optional[Tuple[float, float]] = None,
                         config: Optional[AMRConfig] = None) -> Mesh:
    """Each quad of an ``nx_quads x ny_quads`` grid split along its rising diagonal."""
    coords = _grid((Lx, Ly), (nx_quads, ny_quads), offset)
    return _build(coords, _split_quads(nx_quads, ny_quads), CellType.TRI3, config)


def delaunay_rectangle(length: float, height: float, nx: int = 10, ny: int = 10,
                       config: Optional[AMRConfig] = None) -> Mesh:
    x = np.linspace(0.0, length, nx)
    y = np.linspace(0.0, height, ny)
    X, Y = np.meshgrid(x, y)
    pts = np.column_stack([X.ravel(), Y.ravel()])
    elems = Delaunay(pts).simplices.copy()

    # make triangles CCW
    def signed_area(a, b, c):
        return (b[0]-a[0])*(c[1]-a[1]) - (b[1]-a[1])*(c[0]-a[0])
    for t in elems:
        a, b, c = pts[t]
        if signed_area(a, b, c) < 0:
            t[1], t[2] = t[2], t[1]
    return _build(pts, elems.tolist(), CellType.TRI3, config)


def structured_hex(Lx: float, Ly: float, Lz: float, *, nx: int, ny: int, nz: int,
                   offset: Optional[Tuple[float, float, float]] = None,
                   config: Optional[AMRConfig] = None) -> Mesh:
    counts = (nx, ny, nz)
    coords = _grid((Lx, Ly, Lz), counts, offset)
    conn = []
    for k in range(nz):
        for j in range(ny):
            for i in range(nx):
                bottom = [(i, j, k), (i + 1, j, k), (i + 1, j + 1, k), (i, j + 1, k)]
                top = [(a, b, c + 1) for a, b, c in bottom]
                conn.append(tuple(_gid(p, counts) for p in bottom + top))
    return _build(coords, conn, CellType.HEX8, config)


def structured_prism(Lx: float, Ly: float, Lz: float, *, nx: int, ny: int, nz: int,
                     offset: Optional[Tuple[float, float, float]] = None,
                     config: Optional[AMRConfig] = None) -> Mesh:
    """Triangulated ``nx x ny`` grid extruded through ``nz`` layers of PRISM6."""
    coords = _grid((Lx, Ly, Lz), (nx, ny, nz), offset)
    layer = (nx + 1) * (ny + 1)
    conn = []
    for k in range(nz):
        for tri in _split_quads(nx, ny):
            bottom = [n + k * layer for n in tri]
            conn.append(tuple(bottom + [n + layer for n in bottom]))
    return _build(coords, conn, CellType.PRISM6, config)


def structured_tets(Lx: float, Ly: float, Lz: float, *, nx: int, ny: int, nz: int,
                    offset: Optional[Tuple[float, float, float]] = None,
                    config: Optional[AMRConfig] = None) -> Mesh:
    """Kuhn split of every hexahedral cell into six positively oriented TET4."""
    counts = (nx, ny, nz)
    coords = _grid((Lx, Ly, Lz), counts, offset)
    conn = []
    for k in range(nz):
        for j in range(ny):
            for i in range(nx):
                for perm in itertools.permutations(range(3)):
                    corner = [i, j, k]
                    path = [_gid(corner, counts)]
                    for axis in perm:
                        corner[axis] += 1
                        path.append(_gid(corner, counts))
                    a, b, c, d = coords[path]
                    if np.linalg.det(np.column_stack([b - a, c - a, d - a])) < 0:
                        path[1], path[2] = path[2], path[1]
                    conn.append(tuple(path))
    return _build(coords, conn, CellType.TET4, config)
