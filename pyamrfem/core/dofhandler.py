# dofhandler.py

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from pyamrfem.core.constraints import ConstraintSet
from pyamrfem.core.mesh import Mesh

logger = logging.getLogger(__name__)


def _readonly(arr) -> np.ndarray:
    arr = np.asarray(arr, dtype=np.int64)
    arr.flags.writeable = False
    return arr


def _fields(given: Optional[Mapping[str, int]], kind: str) -> Tuple[Tuple[str, int], ...]:
    out = []
    for name, ncomp in (given or {}).items():
        if int(ncomp) < 1:
            raise ValueError(f"{kind} field '{name}' needs at least one component, got {ncomp}.")
        out.append((str(name), int(ncomp)))
    return tuple(out)


# -----------------------------------------------------------------------------
#  Result
# -----------------------------------------------------------------------------
class DofMap:
    """
    Immutable result of one numbering pass.

    Free unknowns occupy ``0 .. n_free-1`` in contiguous per-partition blocks
    (``offsets[r] .. offsets[r+1]-1`` belongs to partition ``r``).
    Constrained unknowns get representative indices ``n_free .. n_total-1``;
    they carry no equation of their own and resolve to free unknowns through
    :meth:`contributors`.
    """

    def __init__(self, *, node_fields, element_fields, node_dofs, element_dofs,
                 element_nodes, offsets, n_free, n_total, contributions, owners,
                 boundary_nodes, revision):
        self.node_fields: Tuple[Tuple[str, int], ...] = node_fields
        self.element_fields: Tuple[Tuple[str, int], ...] = element_fields
        self._node_dofs = MappingProxyType(node_dofs)
        self._element_field_dofs = MappingProxyType(element_dofs)
        self._element_nodes = MappingProxyType(element_nodes)
        self.offsets: np.ndarray = _readonly(offsets)
        self.n_free: int = int(n_free)
        self.n_total: int = int(n_total)
        self._contributions = MappingProxyType(contributions)
        self._owners = MappingProxyType(owners)
        self._boundary_nodes = MappingProxyType(boundary_nodes)
        self.revision: int = int(revision)

    # ..........................................................................
    @property
    def field_names(self) -> List[str]:
        return [f for f, _ in self.node_fields] + [f for f, _ in self.element_fields]

    @property
    def n_constrained(self) -> int:
        return self.n_total - self.n_free

    @property
    def n_partitions(self) -> int:
        return len(self.offsets) - 1

    def is_current(self, mesh: Mesh) -> bool:
        return self.revision == mesh.revision

    def is_constrained(self, dof: int) -> bool:
        return self.n_free <= int(dof) < self.n_total

    def local_range(self, rank: int) -> range:
        """Free dofs owned by partition *rank*."""
        return range(int(self.offsets[rank]), int(self.offsets[rank + 1]))

    def node_owner(self, nid: int) -> int:
        return self._owners[int(nid)]

    def dof_owner(self, dof: int) -> int:
        """Partition owning a free dof."""
        dof = int(dof)
        if not 0 <= dof < self.n_free:
            raise ValueError(f"DOF {dof} is not a free unknown (n_free={self.n_free}).")
        return int(np.searchsorted(self.offsets, dof, side="right") - 1)

    # ..........................................................................
    def dof_of(self, nid: int, field: str, component: int = 0) -> int:
        try:
            return int(self.node_dofs(nid, field)[component])
        except KeyError:
            raise KeyError(f"Node {nid} carries no dofs of field '{field}'.") from None

    def node_dofs(self, nid: int, field: str) -> np.ndarray:
        """Dofs of one nodal field at *nid*, one per component."""
        return self._node_dofs[(int(nid), field)]

    def element_dofs(self, eid: int, field: Optional[str] = None) -> np.ndarray:
        """
        Global dofs of an active element.

        With *field* given: that field's dofs, node by node then component by
        component (or the element-local dofs of an element field).  Without:
        every nodal field in declaration order per node, followed by the
        element fields.
        """
        eid = int(eid)
        if eid not in self._element_nodes:
            raise KeyError(f"Element {eid} was not active when the dofs were distributed.")
        nodes = self._element_nodes[eid]
        node_names = [f for f, _ in self.node_fields]
        if field is not None:
            if field in node_names:
                return _readonly(np.concatenate([self.node_dofs(n, field) for n in nodes]))
            if (eid, field) in self._element_field_dofs:
                return self._element_field_dofs[(eid, field)]
            raise KeyError(f"Unknown field '{field}'.")
        parts = [self._node_dofs[(n, f)] for n in nodes for f in node_names]
        parts += [self._element_field_dofs[(eid, f)] for f, _ in self.element_fields]
        if not parts:
            return _readonly(np.empty(0))
        return _readonly(np.concatenate(parts))

    def contributors(self, dof: int) -> Tuple[Tuple[int, float], ...]:
        """
        ``((free dof, coefficient), ...)`` making up *dof*.  A free dof is
        its own single contributor.
        """
        dof = int(dof)
        if 0 <= dof < self.n_free:
            return ((dof, 1.0),)
        try:
            return self._contributions[dof]
        except KeyError:
            raise IndexError(f"DOF {dof} out of range (n_total={self.n_total}).") from None

    def prolongation(self) -> sp.csr_matrix:
        """``(n_total, n_free)`` matrix expanding free values to every unknown."""
        rows = list(range(self.n_free))
        cols = list(range(self.n_free))
        vals = [1.0] * self.n_free
        for d, contrib in sorted(self._contributions.items()):
            for m, c in contrib:
                rows.append(d)
                cols.append(m)
                vals.append(c)
        return sp.csr_matrix((vals, (rows, cols)), shape=(self.n_total, self.n_free))

    def boundary_dofs(self, tag: int, field: Optional[str] = None) -> np.ndarray:
        """Sorted dofs of nodal fields on active sides carrying boundary *tag*."""
        names = [f for f, _ in self.node_fields] if field is None else [field]
        out = set()
        for n in self._boundary_nodes.get(int(tag), ()):
            for f in names:
                out.update(int(d) for d in self._node_dofs[(n, f)])
        return _readonly(sorted(out))

    def __repr__(self):
        return (f"<DofMap n_free={self.n_free}, n_total={self.n_total}, "
                f"partitions={self.n_partitions}, revision={self.revision}>")


# -----------------------------------------------------------------------------
#  Main class
# -----------------------------------------------------------------------------
class DofHandler:
    """Global DOF numbering over the active elements of an adaptive mesh."""

    def __init__(self,
                 mesh: Mesh,
                 node_fields: Optional[Mapping[str, int]] = None,
                 element_fields: Optional[Mapping[str, int]] = None,
                 constraints: Optional[ConstraintSet] = None,
                 local_order: Optional[Mapping[int, Sequence[int]]] = None):
        """
        Parameters
        ----------
        mesh : Mesh
        node_fields : dict[str, int]
            Nodal fields and their component counts, e.g. ``{'u': 3, 'p': 1}``.
            Declaration order is numbering order.
        element_fields : dict[str, int], optional
            Element-local fields (one block of components per active element).
        constraints : ConstraintSet, optional
            Hanging-node constraints built on the same mesh revision.  Without
            it every nodal unknown is free.
        local_order : dict[int, sequence[int]], optional
            Per-partition visiting order of the owned active elements, e.g.
            from a bandwidth-reducing reordering.  Default: ascending id.
        """
        if not node_fields and not element_fields:
            raise ValueError("DofHandler needs at least one field.")
        self.mesh = mesh
        self.node_fields = _fields(node_fields, "Nodal")
        self.element_fields = _fields(element_fields, "Element")
        clash = {f for f, _ in self.node_fields} & {f for f, _ in self.element_fields}
        if clash:
            raise ValueError(f"Fields declared both nodal and element-local: {sorted(clash)}.")
        self.constraints = constraints
        self.local_order = local_order or {}

    # ..........................................................................
    def _ordered_elements(self, rank: int) -> List[int]:
        owned = self.mesh.active_elements(rank)
        if rank not in self.local_order:
            return owned
        order = [int(e) for e in self.local_order[rank]]
        if sorted(order) != owned:
            raise ValueError(
                f"local_order[{rank}] must be a permutation of the {len(owned)} active "
                f"elements owned by partition {rank}."
            )
        return order

    def _node_owners(self, active: Sequence[int]) -> Dict[int, int]:
        owners: Dict[int, int] = {}
        for eid in active:
            elem = self.mesh.elements[eid]
            for n in elem.nodes:
                owners[n] = min(owners.get(n, elem.partition), elem.partition)
        return owners

    def _boundary_nodes(self, active: Sequence[int]) -> Dict[int, List[int]]:
        tagged: Dict[int, set] = {}
        for eid in active:
            elem = self.mesh.elements[eid]
            for s in range(elem.n_sides):
                for tag in self.mesh.boundary_ids(eid, s):
                    tagged.setdefault(tag, set()).update(elem.side_nodes(s))
        return {tag: sorted(nodes) for tag, nodes in tagged.items()}

    def distribute(self) -> DofMap:
        """
        Number every unknown from scratch.

        Partitions are visited by ascending rank.  Inside a partition the
        owned active elements are visited in local order; each element
        numbers the nodes it owns that have not been seen yet (node order,
        then fields in declaration order, then components), followed by its
        element fields.  Constrained nodes are set aside and numbered after
        all free unknowns in the order they were met.

        Raises
        ------
        ValueError
            The constraint set was built on another mesh revision, or for a
            single partition while others hold active elements.
        ElementLocked
            A partition is in the middle of a refinement pass.
        """
        mesh = self.mesh
        cset = self.constraints
        if cset is not None and not cset.is_current(mesh):
            raise ValueError(
                f"Constraint set is stale (built at revision {cset.revision}, "
                f"mesh is at {mesh.revision}); rebuild it before distributing dofs."
            )
        if cset is not None and cset.rank is not None:
            others = sorted({mesh.element(e).partition for e in mesh.active_elements()} - {cset.rank})
            if others:
                raise ValueError(
                    f"Constraint set only covers partition {cset.rank}; partitions {others} "
                    f"have active elements. Build it with rank=None before distributing dofs."
                )

        with mesh.indexing_phase():
            ranks = range(mesh.n_partitions)
            active = mesh.active_elements()
            owners = self._node_owners(active)

            node_dofs: Dict[Tuple[int, str], np.ndarray] = {}
            element_dofs: Dict[Tuple[int, str], np.ndarray] = {}
            element_nodes: Dict[int, Tuple[int, ...]] = {}
            constrained: List[int] = []
            seen: set = set()
            offsets = [0]
            nxt = 0

            for r in ranks:
                for eid in self._ordered_elements(r):
                    elem = mesh.elements[eid]
                    element_nodes[eid] = elem.nodes
                    for n in elem.nodes:
                        if owners[n] != r or n in seen:
                            continue
                        seen.add(n)
                        if cset is not None and n in cset:
                            constrained.append(n)
                            continue
                        for f, ncomp in self.node_fields:
                            node_dofs[(n, f)] = _readonly(np.arange(nxt, nxt + ncomp))
                            nxt += ncomp
                    for f, ncomp in self.element_fields:
                        element_dofs[(eid, f)] = _readonly(np.arange(nxt, nxt + ncomp))
                        nxt += ncomp
                offsets.append(nxt)
            n_free = nxt

            for n in constrained:
                for f, ncomp in self.node_fields:
                    node_dofs[(n, f)] = _readonly(np.arange(nxt, nxt + ncomp))
                    nxt += ncomp
            n_total = nxt

            contributions: Dict[int, Tuple[Tuple[int, float], ...]] = {}
            for n in constrained:
                masters = cset.masters(n)
                for f, ncomp in self.node_fields:
                    for c in range(ncomp):
                        row = []
                        for m, coeff in sorted(masters.items()):
                            if (m, f) not in node_dofs or m in cset:
                                raise ValueError(
                                    f"Node {n}: master {m} has no free dofs; constraints do not "
                                    f"match the active mesh."
                                )
                            row.append((int(node_dofs[(m, f)][c]), float(coeff)))
                        contributions[int(node_dofs[(n, f)][c])] = tuple(row)

            boundary = self._boundary_nodes(active)

        logger.info("Distributed %d free and %d constrained dofs over %d partitions.",
                    n_free, n_total - n_free, len(offsets) - 1)
        return DofMap(
            node_fields=self.node_fields,
            element_fields=self.element_fields,
            node_dofs=node_dofs,
            element_dofs=element_dofs,
            element_nodes=element_nodes,
            offsets=offsets,
            n_free=n_free,
            n_total=n_total,
            contributions=contributions,
            owners=owners,
            boundary_nodes=boundary,
            revision=mesh.revision,
        )
