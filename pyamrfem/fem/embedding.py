"""pyamrfem.fem.embedding
Parent-to-child transfer tables for isotropic refinement.

For every refinable cell type the module holds, per child, the *embedding
matrix* ``E`` with ``E[k, j] = N_j(x_k)``: the parent's shape function ``j``
evaluated at the reference position of child node ``k``.  Multiplying parent
nodal values by ``E`` yields the child's nodal values, exactly for any field
the parent interpolates.  Rows sum to one because the parent basis is a
partition of unity.

Each parent side also gets its *side-children table*: the ordered
``(child, child_side)`` pairs whose union is that parent side.  A child side
belongs to parent side ``s`` when every one of its nodes has zero weight on
all parent nodes off ``s``.

The tables are evaluated once, in exact rational arithmetic, when the module
is imported and are exposed as read-only arrays.  Nothing else is stored.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import reduce
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import sympy as sp

from pyamrfem.core.celltypes import CellType, REFINABLE_TYPES, cell_info
from pyamrfem.core.errors import InvalidCellType
from pyamrfem.fem.reference import get_reference

logger = logging.getLogger(__name__)

_H = sp.Rational(1, 2)

# Midpoint lattice of the reference triangle and the four children built on it.
_TRI_POINTS = ((0, 0), (1, 0), (0, 1), (_H, 0), (_H, _H), (0, _H))
_TRI_CHILDREN = ((0, 3, 5), (3, 1, 4), (5, 4, 2), (3, 4, 5))

# Tetrahedron: four corner children, then the interior octahedron cut along
# the diagonal between the midpoints of edges 0-2 and 1-3 (points 6 and 8).
_TET_POINTS = ((0, 0, 0), (1, 0, 0), (0, 1, 0), (0, 0, 1),
               (_H, 0, 0), (_H, _H, 0), (0, _H, 0),
               (0, 0, _H), (_H, 0, _H), (0, _H, _H))
_TET_CHILDREN = ((0, 4, 6, 7), (4, 1, 5, 8), (6, 5, 2, 9), (7, 8, 9, 3),
                 (6, 8, 4, 5), (6, 8, 5, 9), (6, 8, 9, 7), (6, 8, 7, 4))


def _tensor_children(ref_nodes, dim):
    # child c has bit b_d = (c >> d) & 1 per axis; parent coordinate a in
    # {-1, 1} maps to (a + 2 b - 1) / 2 in the child
    children = []
    for c in range(2 ** dim):
        bits = [(c >> d) & 1 for d in range(dim)]
        children.append(tuple(
            tuple(sp.Rational(a + 2 * b - 1, 2) for a, b in zip(node, bits))
            for node in ref_nodes
        ))
    return tuple(children)


def _simplex_children(points, children):
    return tuple(tuple(tuple(sp.nsimplify(x) for x in points[i]) for i in child)
                 for child in children)


def _prism_children():
    # four triangle children stacked on two layers, bottom layer first
    out = []
    for layer in (0, 1):
        z_lo, z_hi = sp.Integer(layer - 1), sp.Integer(layer)
        for tri in _TRI_CHILDREN:
            base = [tuple(sp.nsimplify(x) for x in _TRI_POINTS[i]) for i in tri]
            out.append(tuple((x, y, z_lo) for x, y in base) +
                       tuple((x, y, z_hi) for x, y in base))
    return tuple(out)


def child_reference_nodes(cell_type) -> Tuple[Tuple[Tuple[sp.Rational, ...], ...], ...]:
    """Reference coordinates (in the parent frame) of every child's nodes."""
    info = cell_info(cell_type)
    ct = info.cell_type
    if ct in (CellType.EDGE2, CellType.QUAD4, CellType.HEX8):
        return _tensor_children(info.reference_nodes, info.dim)
    if ct is CellType.TRI3:
        return _simplex_children(_TRI_POINTS, _TRI_CHILDREN)
    if ct is CellType.TET4:
        return _simplex_children(_TET_POINTS, _TET_CHILDREN)
    if ct is CellType.PRISM6:
        return _prism_children()
    raise InvalidCellType(f"{ct.name} cannot be refined.")


@dataclass(frozen=True)
class EmbeddingTable:
    cell_type: CellType
    exact: Tuple[Tuple[Tuple[sp.Rational, ...], ...], ...]
    matrices: Tuple[np.ndarray, ...]
    side_children: Tuple[Tuple[Tuple[int, int], ...], ...]
    # parent node j -> (child, child-local node) reproducing it
    vertex_owner: Tuple[Tuple[int, int], ...]


def _frozen(arr: np.ndarray) -> np.ndarray:
    arr = np.ascontiguousarray(arr, dtype=float)
    arr.flags.writeable = False
    return arr


def _build_table(ct: CellType) -> EmbeddingTable:
    info = cell_info(ct)
    ref = get_reference(ct)
    children = child_reference_nodes(ct)
    if len(children) != info.n_children:
        raise RuntimeError(f"{ct.name}: {len(children)} children, catalog says {info.n_children}.")

    exact = tuple(tuple(tuple(ref.shape_exact(p)) for p in child) for child in children)
    matrices = tuple(_frozen(np.array([[float(w) for w in row] for row in E])) for E in exact)

    side_children = []
    for s in range(info.n_sides):
        on_side = set(info.side_nodes(s))
        pairs = []
        for c, E in enumerate(exact):
            for cs in range(info.n_sides):
                rows = [E[k] for k in info.side_nodes(cs)]
                if all(w == 0 for row in rows for j, w in enumerate(row) if j not in on_side):
                    pairs.append((c, cs))
        side_children.append(tuple(pairs))

    owner = []
    for j in range(info.n_nodes):
        found = None
        for c, E in enumerate(exact):
            for k, row in enumerate(E):
                if row[j] == 1:
                    found = (c, k)
                    break
            if found is not None:
                break
        if found is None:
            raise RuntimeError(f"{ct.name}: parent node {j} is not a node of any child.")
        owner.append(found)

    logger.debug("Built embedding table for %s: %d children, %d sides.",
                 ct.name, len(matrices), info.n_sides)
    return EmbeddingTable(ct, exact, matrices, tuple(side_children), tuple(owner))


_TABLES: Dict[CellType, EmbeddingTable] = {ct: _build_table(ct) for ct in REFINABLE_TYPES}


def embedding_table(cell_type) -> EmbeddingTable:
    ct = CellType.from_name(cell_type)
    try:
        return _TABLES[ct]
    except KeyError:
        raise InvalidCellType(f"{ct.name} has no refinement tables.") from None


def embedding_matrix(cell_type, child: int) -> np.ndarray:
    """Read-only ``(n_nodes, n_nodes)`` array mapping parent to child nodal values."""
    table = embedding_table(cell_type)
    if not 0 <= child < len(table.matrices):
        raise IndexError(f"{table.cell_type.name} has no child {child}.")
    return table.matrices[child]


def side_children(cell_type, side: int) -> Tuple[Tuple[int, int], ...]:
    """``(child, child_side)`` pairs covering parent *side*, in child order."""
    table = embedding_table(cell_type)
    if not 0 <= side < len(table.side_children):
        raise IndexError(f"{table.cell_type.name} has no side {side}.")
    return table.side_children[side]


def parent_side_of(cell_type, child: int, child_side: int) -> Optional[int]:
    """Parent side that contains *child_side* of *child*, or None if interior."""
    table = embedding_table(cell_type)
    for s, pairs in enumerate(table.side_children):
        if (child, child_side) in pairs:
            return s
    return None


def embedding_path(cell_type, child_path: Sequence[int]) -> np.ndarray:
    """
    Compose embedding matrices along a descent ``ancestor -> ... -> element``.

    ``child_path[0]`` is the child index taken at the ancestor, the last entry
    the element's own child index.  An empty path gives the identity.
    """
    n = cell_info(cell_type).n_nodes
    mats = [embedding_matrix(cell_type, c) for c in child_path]
    return reduce(lambda acc, E: E @ acc, mats, np.eye(n))


def transfer(cell_type, child: int, parent_values) -> np.ndarray:
    """Prolongate parent nodal values (shape ``(n_nodes, ...)``) onto *child*."""
    vals = np.asarray(parent_values, dtype=float)
    return np.tensordot(embedding_matrix(cell_type, child), vals, axes=(1, 0))


def restrict(cell_type, child_values) -> np.ndarray:
    """
    Recover parent nodal values from the children's nodal values by
    injection: each parent node takes the value of the child node sitting on
    top of it.
    """
    table = embedding_table(cell_type)
    vals = [np.asarray(v, dtype=float) for v in child_values]
    if len(vals) != len(table.matrices):
        raise ValueError(f"Expected values for {len(table.matrices)} children, got {len(vals)}.")
    return np.stack([vals[c][k] for c, k in table.vertex_owner])
