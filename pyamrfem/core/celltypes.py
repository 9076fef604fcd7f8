"""pyamrfem.core.celltypes
Static catalog of the supported cell types.

Every geometric and topological fact about a cell type lives in a single
:class:`CellInfo` record, looked up through :func:`cell_info`.  Node and side
numbering follow the usual conventions of Lagrange finite-element codes::

    QUAD4         TRI3          HEX8                  PRISM6
    3-----2       2             7-------6                 5
    |     |       |\\           /|      /|                /|\\
    |     |       | \\         4-------5 |               / | \\
    0-----1       0--1        | 3-----|-2             3-------4
                              |/      |/              |  2    |
                              0-------1               | / \\   |
                                                      0-------1

Sides are listed with the node order of the side element built from them.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Tuple

import numpy as np

from pyamrfem.core.errors import InvalidCellType


class CellType(Enum):
    NODE1 = "NODE1"
    EDGE2 = "EDGE2"
    TRI3 = "TRI3"
    QUAD4 = "QUAD4"
    TET4 = "TET4"
    PRISM6 = "PRISM6"
    HEX8 = "HEX8"

    @classmethod
    def from_name(cls, name) -> "CellType":
        """Accept a CellType, or a case-insensitive name such as ``'hex8'``."""
        if isinstance(name, cls):
            return name
        try:
            return cls(str(name).upper())
        except ValueError:
            raise InvalidCellType(f"Unsupported cell type {name!r}.") from None

    def __repr__(self):
        return f"CellType.{self.name}"


# Interpolation orders
FIRST = 1


@dataclass(frozen=True)
class CellInfo:
    cell_type: CellType
    dim: int
    reference_nodes: Tuple[Tuple[int, ...], ...]
    sides: Tuple[Tuple[int, ...], ...]
    side_types: Tuple[CellType, ...]
    n_children: int
    vtk_type: int
    vtk_perm: Tuple[int, ...]
    tecplot_conn: Tuple[int, ...]
    default_order: int = FIRST
    n_sub_elem: int = 1

    @property
    def n_nodes(self) -> int:
        return len(self.reference_nodes)

    @property
    def n_sides(self) -> int:
        return len(self.sides)

    def side_nodes(self, side: int) -> Tuple[int, ...]:
        if not 0 <= side < len(self.sides):
            raise IndexError(f"{self.cell_type.name} has no side {side}.")
        return self.sides[side]

    def side_type(self, side: int) -> CellType:
        if not 0 <= side < len(self.sides):
            raise IndexError(f"{self.cell_type.name} has no side {side}.")
        return self.side_types[side]

    def reference_array(self) -> np.ndarray:
        """Reference vertex coordinates as a ``(n_nodes, dim)`` float array."""
        return np.asarray(self.reference_nodes, dtype=float).reshape(self.n_nodes, self.dim)


_N, _E, _T, _Q = CellType.NODE1, CellType.EDGE2, CellType.TRI3, CellType.QUAD4

_CATALOG = {
    CellType.NODE1: CellInfo(
        cell_type=CellType.NODE1, dim=0,
        reference_nodes=((),),
        sides=(), side_types=(),
        n_children=0,
        vtk_type=1, vtk_perm=(0,), tecplot_conn=(0,),
    ),
    CellType.EDGE2: CellInfo(
        cell_type=CellType.EDGE2, dim=1,
        reference_nodes=((-1,), (1,)),
        sides=((0,), (1,)), side_types=(_N, _N),
        n_children=2,
        vtk_type=3, vtk_perm=(0, 1), tecplot_conn=(0, 1),
    ),
    CellType.TRI3: CellInfo(
        cell_type=CellType.TRI3, dim=2,
        reference_nodes=((0, 0), (1, 0), (0, 1)),
        sides=((0, 1), (1, 2), (2, 0)), side_types=(_E, _E, _E),
        n_children=4,
        vtk_type=5, vtk_perm=(0, 1, 2), tecplot_conn=(0, 1, 2, 2),
    ),
    CellType.QUAD4: CellInfo(
        cell_type=CellType.QUAD4, dim=2,
        reference_nodes=((-1, -1), (1, -1), (1, 1), (-1, 1)),
        sides=((0, 1), (1, 2), (2, 3), (3, 0)), side_types=(_E, _E, _E, _E),
        n_children=4,
        vtk_type=9, vtk_perm=(0, 1, 2, 3), tecplot_conn=(0, 1, 2, 3),
    ),
    CellType.TET4: CellInfo(
        cell_type=CellType.TET4, dim=3,
        reference_nodes=((0, 0, 0), (1, 0, 0), (0, 1, 0), (0, 0, 1)),
        sides=((0, 2, 1), (0, 1, 3), (1, 2, 3), (2, 0, 3)),
        side_types=(_T, _T, _T, _T),
        n_children=8,
        vtk_type=10, vtk_perm=(0, 1, 2, 3), tecplot_conn=(0, 1, 2, 2, 3, 3, 3, 3),
    ),
    CellType.PRISM6: CellInfo(
        cell_type=CellType.PRISM6, dim=3,
        reference_nodes=((0, 0, -1), (1, 0, -1), (0, 1, -1),
                         (0, 0, 1), (1, 0, 1), (0, 1, 1)),
        sides=((0, 2, 1), (0, 1, 4, 3), (1, 2, 5, 4), (2, 0, 3, 5), (3, 4, 5)),
        side_types=(_T, _Q, _Q, _Q, _T),
        n_children=8,
        # VTK wants the base triangle oriented away from the top face
        vtk_type=13, vtk_perm=(0, 2, 1, 3, 5, 4),
        tecplot_conn=(0, 1, 2, 2, 3, 4, 5, 5),
    ),
    CellType.HEX8: CellInfo(
        cell_type=CellType.HEX8, dim=3,
        reference_nodes=((-1, -1, -1), (1, -1, -1), (1, 1, -1), (-1, 1, -1),
                         (-1, -1, 1), (1, -1, 1), (1, 1, 1), (-1, 1, 1)),
        sides=((0, 3, 2, 1), (0, 1, 5, 4), (1, 2, 6, 5),
               (2, 3, 7, 6), (3, 0, 4, 7), (4, 5, 6, 7)),
        side_types=(_Q, _Q, _Q, _Q, _Q, _Q),
        n_children=8,
        vtk_type=12, vtk_perm=tuple(range(8)), tecplot_conn=tuple(range(8)),
    ),
}

SUPPORTED_TYPES: Tuple[CellType, ...] = tuple(_CATALOG)
REFINABLE_TYPES: Tuple[CellType, ...] = tuple(t for t, info in _CATALOG.items() if info.n_children)


def cell_info(cell_type) -> CellInfo:
    """Return the catalog record for *cell_type* (a CellType or its name)."""
    ct = CellType.from_name(cell_type)
    try:
        return _CATALOG[ct]
    except KeyError:
        raise InvalidCellType(f"Unsupported cell type {cell_type!r}.") from None


def n_nodes(cell_type) -> int:
    return cell_info(cell_type).n_nodes


def n_sides(cell_type) -> int:
    return cell_info(cell_type).n_sides


def n_children(cell_type) -> int:
    return cell_info(cell_type).n_children


def default_order(cell_type) -> int:
    return cell_info(cell_type).default_order


def side_type(cell_type, side: int) -> CellType:
    return cell_info(cell_type).side_type(side)


def side_nodes(cell_type, side: int) -> Tuple[int, ...]:
    return cell_info(cell_type).side_nodes(side)


def vtk_connectivity(cell_type, nodes) -> list:
    """Reorder *nodes* (global ids in catalog order) for a VTK cell."""
    info = cell_info(cell_type)
    return [nodes[i] for i in info.vtk_perm]


def tecplot_connectivity(cell_type, nodes) -> list:
    """Tecplot writes every 3D cell as a brick and every 2D cell as a quad."""
    info = cell_info(cell_type)
    return [nodes[i] for i in info.tecplot_conn]


def side_key(nodes) -> Tuple[int, ...]:
    """Orientation-free key for a side given its global node ids."""
    return tuple(sorted(int(n) for n in nodes))
