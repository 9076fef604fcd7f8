import numpy as np
from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple, List, Dict, Optional

from pyamrfem.core.celltypes import CellType, cell_info


class RefinementFlag(Enum):
    DO_NOTHING = 0
    REFINE = 1
    COARSEN = 2
    JUST_REFINED = 3
    JUST_COARSENED = 4


class Node:
    def __init__(self, id, coords, tag=None):
        self.id = int(id)
        self.coords = np.asarray(coords, dtype=float).ravel()
        self.tag = tag
        # {master node id: coefficient} when this node hangs on a coarser side
        self.constraint: Optional[Dict[int, float]] = None

    @property
    def x(self):
        return self.coords[0]

    @property
    def y(self):
        return self.coords[1] if self.coords.size > 1 else 0.0

    @property
    def z(self):
        return self.coords[2] if self.coords.size > 2 else 0.0

    @property
    def is_constrained(self) -> bool:
        return bool(self.constraint)

    def __repr__(self):
        xyz = ", ".join(f"{c:.3f}" for c in self.coords)
        return f"Node {self.id}({xyz}, tag='{self.tag}')"

    def __getitem__(self, idx):
        return self.coords[idx]

    def __iter__(self):
        yield from self.coords

    def __len__(self):
        return self.coords.size


@dataclass(slots=True)
class Element:
    id: int                            # Element ID
    cell_type: CellType
    nodes: Tuple[int, ...]             # Global node ids in catalog order
    parent: Optional[int] = None       # Non-owning back reference, None for roots
    children: List[int] = field(default_factory=list)
    level: int = 0
    partition: int = 0
    child_index: Optional[int] = None  # Position inside the parent's child list
    flag: RefinementFlag = RefinementFlag.DO_NOTHING

    def __post_init__(self):
        info = cell_info(self.cell_type)
        self.cell_type = info.cell_type
        self.nodes = tuple(int(n) for n in self.nodes)
        if len(self.nodes) != info.n_nodes:
            raise ValueError(f"{info.cell_type.name} needs {info.n_nodes} nodes, "
                             f"got {len(self.nodes)}.")

    @property
    def active(self) -> bool:
        return not self.children

    @property
    def is_root(self) -> bool:
        return self.parent is None

    @property
    def n_sides(self) -> int:
        return cell_info(self.cell_type).n_sides

    def side_nodes(self, side: int) -> Tuple[int, ...]:
        """Global node ids of *side* in catalog order."""
        return tuple(self.nodes[i] for i in cell_info(self.cell_type).side_nodes(side))


def build_side(elem: Element, side: int, *, side_id: int = -1) -> Element:
    """
    Build a new lower-dimensional element coincident with *side* of *elem*.

    The side element has the catalog's side type and the side's nodes in
    catalog order.  It shares level and partition with *elem* but is not part
    of any mesh; the caller owns it.
    """
    info = cell_info(elem.cell_type)
    return Element(
        id=side_id,
        cell_type=info.side_type(side),
        nodes=elem.side_nodes(side),
        level=elem.level,
        partition=elem.partition,
    )
