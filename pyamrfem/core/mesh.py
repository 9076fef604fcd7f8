from __future__ import annotations

import copy
import logging
from collections import defaultdict
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Set, Tuple

import numpy as np

from pyamrfem.core.celltypes import CellType, cell_info, side_key, vtk_connectivity, tecplot_connectivity
from pyamrfem.core.config import AMRConfig, CONFIG
from pyamrfem.core.errors import (
    IllegalCoarsen, IllegalRefine, InconsistentPartition, InvalidCellType, RefinementDepthExceeded,
)
from pyamrfem.core.phase import PartitionPhase
from pyamrfem.core.topology import Element, Node, RefinementFlag
from pyamrfem.fem import embedding

logger = logging.getLogger(__name__)


class SideNeighbor(NamedTuple):
    """Result of a neighbor query across a side.

    ``via``/``via_side`` is the element (the queried one or one of its
    ancestors) whose side coincides exactly with ``side`` of ``eid``.
    """
    eid: int
    side: int
    via: int
    via_side: int


@dataclass
class ChangeSet:
    """What one refine/coarsen batch did on a partition."""
    refined: List[int] = field(default_factory=list)
    coarsened: List[int] = field(default_factory=list)
    new_elements: List[int] = field(default_factory=list)
    removed_elements: List[int] = field(default_factory=list)
    released_nodes: List[int] = field(default_factory=list)

    def __bool__(self):
        return bool(self.refined or self.coarsened)


class Mesh:
    """
    Hierarchical mesh stored as an arena of elements addressed by id.

    Root elements come from the constructor.  :meth:`refine` adds children
    and keeps the parent as an inactive element, :meth:`coarsen` drops the
    children again.  Nodes created by refinement are keyed by their weighted
    parent-node support, so neighbors refining independently share the same
    midpoint and face nodes.  Nodes are reference counted over the active
    elements and released when the last one goes away.
    """

    def __init__(self,
                 nodes,
                 connectivity: Sequence[Sequence[int]],
                 cell_types,
                 *,
                 partitions: Optional[Sequence[int]] = None,
                 boundary_ids: Optional[Mapping[Tuple[int, int], Iterable[int]]] = None,
                 config: Optional[AMRConfig] = None):
        """
        Parameters
        ----------
        nodes : array_like (n_nodes, dim) | list[Node]
            Node coordinates; plain arrays get ids ``0..n_nodes-1``.
        connectivity : sequence of sequences
            Global node ids of every root element in catalog order.
        cell_types : CellType | str | sequence
            One type for all elements, or one per element.
        partitions : sequence of int, optional
            Owning partition of every root (default: all on partition 0).
        boundary_ids : dict[(elem_id, side) -> iterable[int]], optional
            Boundary tags of root sides.  Read-only; descendants see them
            through the side-children tables.
        config : AMRConfig, optional
        """
        self.config: AMRConfig = config or CONFIG
        self.nodes: Dict[int, Node] = {}
        self.elements: Dict[int, Element] = {}
        self.node_data: Dict[str, Dict[int, np.ndarray]] = {}
        self.element_data: Dict[str, Dict[int, np.ndarray]] = {}
        self.revision: int = 0

        self._node_refs: Dict[int, int] = defaultdict(int)
        self._node_keys: Dict[tuple, int] = {}
        self._key_of_node: Dict[int, tuple] = {}
        self._side_map: Dict[Tuple[int, ...], List[Tuple[int, int]]] = defaultdict(list)
        self._phases: Dict[int, PartitionPhase] = {}
        self._ghosts: Dict[int, Set[int]] = {}

        if isinstance(nodes, np.ndarray) or (len(nodes) and not isinstance(nodes[0], Node)):
            coords = np.atleast_2d(np.asarray(nodes, dtype=float))
            nodes = [Node(i, xyz) for i, xyz in enumerate(coords)]
        for nd in nodes:
            self.nodes[nd.id] = nd
        self.dim: int = int(max((nd.coords.size for nd in self.nodes.values()), default=0))
        self._next_node_id = max(self.nodes, default=-1) + 1

        n_elem = len(connectivity)
        if isinstance(cell_types, (str, CellType)):
            cell_types = [cell_types] * n_elem
        if len(cell_types) != n_elem:
            raise ValueError(f"Got {len(cell_types)} cell types for {n_elem} elements.")
        if partitions is None:
            partitions = [0] * n_elem
        if len(partitions) != n_elem:
            raise ValueError(f"Got {len(partitions)} partition ids for {n_elem} elements.")

        self._next_elem_id = 0
        for conn, ct, part in zip(connectivity, cell_types, partitions):
            missing = [n for n in conn if int(n) not in self.nodes]
            if missing:
                raise KeyError(f"Element {self._next_elem_id} references unknown nodes {missing}.")
            elem = Element(id=self._next_elem_id, cell_type=ct, nodes=tuple(conn), partition=int(part))
            self._add_element(elem)

        self._boundary: Dict[Tuple[int, int], frozenset] = {}
        for (eid, side), tags in (boundary_ids or {}).items():
            elem = self.element(eid)
            if not 0 <= side < elem.n_sides:
                raise IndexError(f"Element {eid} has no side {side}.")
            self._boundary[(int(eid), int(side))] = frozenset(int(t) for t in tags)

    # ------------------------------------------------------------------
    # Basic queries
    # ------------------------------------------------------------------
    def element(self, eid: int) -> Element:
        try:
            return self.elements[int(eid)]
        except KeyError:
            raise IndexError(f"Element ID {eid} does not exist.") from None

    def node(self, nid: int) -> Node:
        try:
            return self.nodes[int(nid)]
        except KeyError:
            raise IndexError(f"Node ID {nid} does not exist.") from None

    def active_elements(self, rank: Optional[int] = None) -> List[int]:
        """Ids of the active elements (optionally only those owned by *rank*), ascending."""
        return [eid for eid, e in sorted(self.elements.items())
                if e.active and (rank is None or e.partition == rank)]

    @property
    def n_active(self) -> int:
        return sum(1 for e in self.elements.values() if e.active)

    @property
    def partitions(self) -> List[int]:
        return sorted({e.partition for e in self.elements.values()})

    @property
    def n_partitions(self) -> int:
        return max(self.partitions, default=-1) + 1

    def node_coords(self, eid: int) -> np.ndarray:
        """Physical coordinates of the element's nodes, shape ``(n_nodes, dim)``."""
        elem = self.element(eid)
        return np.array([self.nodes[n].coords for n in elem.nodes], dtype=float)

    def side_nodes(self, eid: int, side: int) -> Tuple[int, ...]:
        return self.element(eid).side_nodes(side)

    def ancestors(self, eid: int) -> List[int]:
        """Parent, grandparent, ... up to the root."""
        out = []
        elem = self.element(eid)
        while elem.parent is not None:
            out.append(elem.parent)
            elem = self.elements[elem.parent]
        return out

    def child_path(self, ancestor: int, eid: int) -> List[int]:
        """Child indices taken on the way down from *ancestor* to *eid*."""
        path = []
        elem = self.element(eid)
        while elem.id != ancestor:
            if elem.parent is None:
                raise ValueError(f"Element {ancestor} is not an ancestor of {eid}.")
            path.append(elem.child_index)
            elem = self.elements[elem.parent]
        return path[::-1]

    def boundary_ids(self, eid: int, side: int) -> frozenset:
        """
        Boundary tags of *side* of *eid*.  Sides of refined elements inherit the
        tags of the root side they lie on; interior sides have none.
        """
        elem = self.element(eid)
        while elem.parent is not None:
            side = embedding.parent_side_of(elem.cell_type, elem.child_index, side)
            if side is None:
                return frozenset()
            elem = self.elements[elem.parent]
        return self._boundary.get((elem.id, side), frozenset())

    def active_connectivity(self, fmt: str = "vtk") -> Dict[CellType, np.ndarray]:
        """
        Active elements grouped by cell type, with node ids permuted by the
        catalog's export tables (``'vtk'``, ``'tecplot'`` or ``'native'``).
        """
        reorder = {"vtk": vtk_connectivity, "tecplot": tecplot_connectivity,
                   "native": lambda ct, nodes: list(nodes)}
        if fmt not in reorder:
            raise ValueError(f"Unsupported connectivity format '{fmt}'.")
        groups: Dict[CellType, list] = defaultdict(list)
        for eid in self.active_elements():
            elem = self.elements[eid]
            groups[elem.cell_type].append(reorder[fmt](elem.cell_type, elem.nodes))
        return {ct: np.asarray(rows, dtype=int) for ct, rows in groups.items()}

    # ------------------------------------------------------------------
    # Partitions, phases and ghosts
    # ------------------------------------------------------------------
    def phase(self, rank: int) -> PartitionPhase:
        if rank not in self._phases:
            self._phases[rank] = PartitionPhase(rank)
        return self._phases[rank]

    @contextmanager
    def indexing_phase(self, ranks: Optional[Iterable[int]] = None):
        """Hold every partition (or the given ones) in the read-only indexing phase."""
        with ExitStack() as stack:
            for r in (self.partitions if ranks is None else ranks):
                stack.enter_context(self.phase(r).indexing())
            yield

    def set_partitions(self, partition_of: Mapping[int, int]) -> None:
        """
        Apply partition ids computed by an external partitioner.  Inactive
        elements not listed take the partition of their first child.
        """
        for eid, rank in partition_of.items():
            self.element(eid).partition = int(rank)
        for eid in sorted(self.elements, key=lambda i: -self.elements[i].level):
            elem = self.elements[eid]
            if not elem.active and eid not in partition_of:
                elem.partition = self.elements[elem.children[0]].partition
        self._ghosts.clear()
        self.revision += 1

    def set_ghosts(self, rank: int, element_ids: Iterable[int]) -> None:
        """Record the remote elements made visible to *rank* by a ghost exchange."""
        self._ghosts[rank] = set(int(e) for e in element_ids)

    def ghost_candidates(self, rank: int) -> Set[int]:
        """Remote elements (any level) sharing a node with an active element of *rank*."""
        owned_nodes = {n for eid in self.active_elements(rank) for n in self.elements[eid].nodes}
        return {eid for eid, e in self.elements.items()
                if e.partition != rank and owned_nodes.intersection(e.nodes)}

    def _check_visible(self, eid: int, rank: Optional[int]) -> None:
        if rank is None:
            return
        elem = self.elements[eid]
        if elem.partition != rank and eid not in self._ghosts.get(rank, ()):
            raise InconsistentPartition(
                f"Element {eid} belongs to partition {elem.partition} and was not ghosted "
                f"on partition {rank}; run the ghost exchange first."
            )

    def _check_owner(self, elem: Element, rank: Optional[int]) -> None:
        if rank is not None and elem.partition != rank:
            raise InconsistentPartition(
                f"Element {elem.id} is owned by partition {elem.partition}, not {rank}."
            )

    # ------------------------------------------------------------------
    # Neighbors
    # ------------------------------------------------------------------
    def _same_lineage(self, a: int, b: int) -> bool:
        return a in self.ancestors(b) or b in self.ancestors(a)

    def neighbor(self, eid: int, side: int, *, rank: Optional[int] = None) -> Optional[SideNeighbor]:
        """
        Element across *side* of *eid* at the same or a coarser level.

        Starting at *eid*, look for another element with exactly the same
        side; if there is none, move to the parent side containing this one
        and try again.  Returns None on the domain boundary.  With *rank*
        given, a neighbor on an un-ghosted partition raises
        :class:`InconsistentPartition`.
        """
        cur = self.element(eid)
        cur_side = side
        while True:
            key = side_key(cur.side_nodes(cur_side))
            cands = [(o, s) for o, s in self._side_map.get(key, ())
                     if o != cur.id and self.elements[o].level <= cur.level
                     and not self._same_lineage(o, cur.id)]
            if cands:
                other, other_side = max(cands, key=lambda c: self.elements[c[0]].level)
                self._check_visible(other, rank)
                return SideNeighbor(other, other_side, cur.id, cur_side)
            if cur.parent is None:
                return None
            parent_side = embedding.parent_side_of(cur.cell_type, cur.child_index, cur_side)
            if parent_side is None:
                return None
            cur, cur_side = self.elements[cur.parent], parent_side

    def on_boundary(self, eid: int, side: int) -> bool:
        return self.neighbor(eid, side) is None

    # ------------------------------------------------------------------
    # Arena bookkeeping
    # ------------------------------------------------------------------
    def _add_element(self, elem: Element) -> None:
        self.elements[elem.id] = elem
        self._next_elem_id = max(self._next_elem_id, elem.id + 1)
        for s in range(elem.n_sides):
            self._side_map[side_key(elem.side_nodes(s))].append((elem.id, s))
        if elem.active:
            for n in elem.nodes:
                self._node_refs[n] += 1

    def _remove_element(self, elem: Element) -> None:
        for s in range(elem.n_sides):
            key = side_key(elem.side_nodes(s))
            self._side_map[key].remove((elem.id, s))
            if not self._side_map[key]:
                del self._side_map[key]
        for n in elem.nodes:
            self._node_refs[n] -= 1
        for store in self.element_data.values():
            store.pop(elem.id, None)
        del self.elements[elem.id]

    def _release_node(self, nid: int) -> None:
        del self.nodes[nid]
        del self._node_refs[nid]
        key = self._key_of_node.pop(nid, None)
        if key is not None:
            del self._node_keys[key]
        for store in self.node_data.values():
            store.pop(nid, None)

    def _embedded_node(self, parent: Element, exact_row, row: np.ndarray, parent_xyz: np.ndarray) -> int:
        support = [(parent.nodes[j], w) for j, w in enumerate(exact_row) if w != 0]
        if len(support) == 1:
            return support[0][0]
        key = tuple(sorted(support, key=lambda item: item[0]))
        nid = self._node_keys.get(key)
        if nid is not None:
            return nid
        nid = self._next_node_id
        self._next_node_id += 1
        self.nodes[nid] = Node(nid, row @ parent_xyz)
        self._node_keys[key] = nid
        self._key_of_node[nid] = key
        for store in self.node_data.values():
            if all(n in store for n in parent.nodes):
                vals = np.stack([np.asarray(store[n], dtype=float) for n in parent.nodes])
                store[nid] = np.tensordot(row, vals, axes=(0, 0))
        return nid

    # ------------------------------------------------------------------
    # Nodal and element-local field data
    # ------------------------------------------------------------------
    def set_node_data(self, name: str, values) -> None:
        """
        Attach a continuous nodal field.  *values* maps node id -> value, or is
        a callable evaluated at each node's coordinates.  New nodes get values
        interpolated with the embedding weights.
        """
        if callable(values):
            values = {nid: values(nd.coords) for nid, nd in self.nodes.items()}
        self.node_data[name] = {int(n): np.asarray(v, dtype=float) for n, v in values.items()}

    def set_element_data(self, name: str, values: Mapping[int, Sequence]) -> None:
        """
        Attach element-local nodal values ``(n_nodes, ...)`` per active element.
        Refinement prolongates them to the children; coarsening restores the
        parent's values by injection.
        """
        store = {}
        for eid, v in values.items():
            arr = np.asarray(v, dtype=float)
            if arr.shape[0] != cell_info(self.element(eid).cell_type).n_nodes:
                raise ValueError(f"Element {eid}: expected one row per node, got shape {arr.shape}.")
            store[int(eid)] = arr
        self.element_data[name] = store

    # ------------------------------------------------------------------
    # Refinement tree
    # ------------------------------------------------------------------
    def refine(self, eid: int, *, rank: Optional[int] = None, _in_batch: bool = False) -> List[int]:
        """
        Split an active element into the catalog's number of children.

        Raises
        ------
        IllegalRefine
            The element already has children.
        RefinementDepthExceeded
            The element is already at ``config.max_level``.
        ElementLocked
            The element's partition is being indexed, or a running batch holds it.
        InconsistentPartition
            *rank* is given and does not own the element.
        """
        elem = self.element(eid)
        self._check_owner(elem, rank)
        self.phase(elem.partition).check_mutable(elem.id, in_batch=_in_batch)
        if not elem.active:
            raise IllegalRefine(f"Element {eid} is not active; only leaves can be refined.")
        info = cell_info(elem.cell_type)
        if info.n_children == 0:
            raise InvalidCellType(f"{info.cell_type.name} elements cannot be refined.")
        if elem.level >= self.config.max_level:
            raise RefinementDepthExceeded(
                f"Element {eid} is at level {elem.level}; max_level is {self.config.max_level}."
            )

        table = embedding.embedding_table(elem.cell_type)
        parent_xyz = self.node_coords(eid)
        children: List[int] = []
        for c, E in enumerate(table.matrices):
            child_nodes = [self._embedded_node(elem, table.exact[c][k], E[k], parent_xyz)
                           for k in range(info.n_nodes)]
            child = Element(
                id=self._next_elem_id,
                cell_type=elem.cell_type,
                nodes=tuple(child_nodes),
                parent=elem.id,
                level=elem.level + 1,
                partition=elem.partition,
                child_index=c,
                flag=RefinementFlag.JUST_REFINED,
            )
            self._add_element(child)
            children.append(child.id)
            for store in self.element_data.values():
                if elem.id in store:
                    store[child.id] = embedding.transfer(elem.cell_type, c, store[elem.id])

        elem.children = children
        elem.flag = RefinementFlag.DO_NOTHING
        for n in elem.nodes:
            self._node_refs[n] -= 1
        self.revision += 1
        logger.debug("Refined element %d (%s, level %d) into %s.",
                     eid, info.cell_type.name, elem.level, children)
        return children

    def coarsen(self, eid: int, *, rank: Optional[int] = None, _in_batch: bool = False) -> List[int]:
        """
        Remove the children of *eid* and make it active again.

        Every child must be an active leaf flagged ``COARSEN``.  Returns the
        ids of nodes released because no active element references them.
        """
        elem = self.element(eid)
        self._check_owner(elem, rank)
        self.phase(elem.partition).check_mutable(elem.id, in_batch=_in_batch)
        if elem.active:
            raise IllegalCoarsen(f"Element {eid} is active; it has no children to remove.")
        kids = [self.elements[c] for c in elem.children]
        for kid in kids:
            # children may have been moved to another partition
            self._check_owner(kid, rank)
            self.phase(kid.partition).check_mutable(kid.id, in_batch=_in_batch)
            if not kid.active:
                raise IllegalCoarsen(
                    f"Element {eid}: child {kid.id} has children of its own; coarsen it first."
                )
        unflagged = [kid.id for kid in kids if kid.flag is not RefinementFlag.COARSEN]
        if unflagged:
            raise IllegalCoarsen(f"Element {eid}: children {unflagged} are not flagged for coarsening.")

        for name, store in self.element_data.items():
            if all(kid.id in store for kid in kids):
                store[elem.id] = embedding.restrict(elem.cell_type, [store[kid.id] for kid in kids])

        for n in elem.nodes:
            self._node_refs[n] += 1
        candidates = []
        for kid in kids:
            candidates.extend(kid.nodes)
            self._remove_element(kid)
        released = sorted({n for n in candidates if self._node_refs.get(n, 0) == 0})
        for n in released:
            self._release_node(n)

        elem.children = []
        elem.flag = RefinementFlag.JUST_COARSENED
        self.revision += 1
        logger.debug("Coarsened element %d; released nodes %s.", eid, released)
        return released

    def flag_for_refinement(self, element_ids: Iterable[int]) -> None:
        for eid in element_ids:
            self.element(eid).flag = RefinementFlag.REFINE

    def flag_for_coarsening(self, parent_ids: Iterable[int]) -> None:
        """Flag every child of the given parents for coarsening."""
        for pid in parent_ids:
            for c in self.element(pid).children:
                self.elements[c].flag = RefinementFlag.COARSEN

    def _coarsenable_parents(self, rank: Optional[int]) -> List[int]:
        parents = set()
        for e in self.elements.values():
            if e.active and e.flag is RefinementFlag.COARSEN and e.parent is not None:
                parents.add(e.parent)
        out = []
        for pid in sorted(parents):
            parent = self.elements[pid]
            if rank is not None and parent.partition != rank:
                continue
            kids = [self.elements[c] for c in parent.children]
            if rank is not None and any(k.partition != rank for k in kids):
                continue
            if all(k.active and k.flag is RefinementFlag.COARSEN for k in kids):
                out.append(pid)
        return out

    def refine_and_coarsen_elements(self,
                                    *,
                                    rank: Optional[int] = None,
                                    barrier: Optional[Callable[[ChangeSet], None]] = None) -> ChangeSet:
        """
        Apply every refinement flag in one pass: coarsen fully flagged
        families first, then refine flagged leaves.

        If anything fails before the barrier, the mesh is rolled back and the
        error propagates.  *barrier* is the collective hook of the ghost
        exchange; it receives the change set, which is final from then on.
        """
        ranks = self.partitions if rank is None else [rank]
        to_coarsen = self._coarsenable_parents(rank)
        to_refine = [eid for eid in self.active_elements(rank)
                     if self.elements[eid].flag is RefinementFlag.REFINE]
        locked = set(to_refine)
        for pid in to_coarsen:
            locked.add(pid)
            locked.update(self.elements[pid].children)

        change = ChangeSet()
        with ExitStack() as stack:
            for r in ranks:
                stack.enter_context(self.phase(r).writing(
                    eid for eid in locked if self.elements[eid].partition == r))
            saved = self._save_state()
            try:
                for pid in to_coarsen:
                    change.removed_elements.extend(self.elements[pid].children)
                    change.released_nodes.extend(self.coarsen(pid, rank=rank, _in_batch=True))
                    change.coarsened.append(pid)
                for eid in to_refine:
                    change.new_elements.extend(self.refine(eid, rank=rank, _in_batch=True))
                    change.refined.append(eid)
            except Exception:
                self._restore_state(saved)
                logger.warning("Refinement pass aborted before the barrier; mesh rolled back.")
                raise

            # leftover COARSEN flags belong to incomplete families
            for e in self.elements.values():
                if e.flag is RefinementFlag.COARSEN and (rank is None or e.partition == rank):
                    e.flag = RefinementFlag.DO_NOTHING

            if barrier is not None:
                barrier(change)

        logger.info("Refinement pass: %d refined, %d coarsened, %d active elements.",
                    len(change.refined), len(change.coarsened), self.n_active)
        return change

    def uniformly_refine(self, n: int = 1) -> None:
        for _ in range(n):
            for eid in self.active_elements():
                self.refine(eid)

    # ------------------------------------------------------------------
    # State capture
    # ------------------------------------------------------------------
    _STATE_FIELDS = ("nodes", "elements", "node_data", "element_data", "revision",
                     "_node_refs", "_node_keys", "_key_of_node", "_side_map",
                     "_next_node_id", "_next_elem_id")

    def _save_state(self) -> dict:
        return copy.deepcopy({name: getattr(self, name) for name in self._STATE_FIELDS})

    def _restore_state(self, saved: dict) -> None:
        for name, value in saved.items():
            setattr(self, name, value)

    def snapshot(self) -> dict:
        """
        Plain-data description of the hierarchy (nodes, elements with
        parent/child links and partitions, boundary tags) for an external
        checkpoint layer.  :meth:`from_snapshot` rebuilds the mesh exactly.
        """
        return {
            "nodes": {nid: nd.coords.tolist() for nid, nd in sorted(self.nodes.items())},
            "elements": [
                {"id": e.id, "cell_type": e.cell_type.value, "nodes": list(e.nodes),
                 "parent": e.parent, "children": list(e.children), "level": e.level,
                 "partition": e.partition, "child_index": e.child_index}
                for _, e in sorted(self.elements.items())
            ],
            "boundary_ids": {f"{eid}:{side}": sorted(tags) for (eid, side), tags in self._boundary.items()},
            "next_node_id": self._next_node_id,
            "next_elem_id": self._next_elem_id,
        }

    @classmethod
    def from_snapshot(cls, data: dict, *, config: Optional[AMRConfig] = None) -> "Mesh":
        nodes = [Node(int(nid), xyz) for nid, xyz in data["nodes"].items()]
        roots = [e for e in data["elements"] if e["parent"] is None]
        boundary = {}
        for key, tags in data.get("boundary_ids", {}).items():
            eid, side = (int(v) for v in key.split(":"))
            boundary[(eid, side)] = tags
        mesh = cls(nodes, [], [], config=config)
        for rec in data["elements"]:
            elem = Element(id=rec["id"], cell_type=rec["cell_type"], nodes=tuple(rec["nodes"]),
                           parent=rec["parent"], children=list(rec["children"]), level=rec["level"],
                           partition=rec["partition"], child_index=rec["child_index"])
            mesh._add_element(elem)
        # re-key embedded nodes so later refinements find and share them
        for rec in data["elements"]:
            elem = mesh.elements[rec["id"]]
            if elem.children:
                table = embedding.embedding_table(elem.cell_type)
                for c, kid in enumerate(elem.children):
                    for k, row in enumerate(table.exact[c]):
                        support = [(elem.nodes[j], w) for j, w in enumerate(row) if w != 0]
                        if len(support) > 1:
                            key = tuple(sorted(support, key=lambda item: item[0]))
                            nid = mesh.elements[kid].nodes[k]
                            mesh._node_keys[key] = nid
                            mesh._key_of_node[nid] = key
        mesh._boundary = {k: frozenset(int(t) for t in v) for k, v in boundary.items()}
        mesh._next_node_id = max(int(data.get("next_node_id", 0)), mesh._next_node_id)
        mesh._next_elem_id = max(int(data.get("next_elem_id", 0)), mesh._next_elem_id)
        logger.debug("Restored mesh with %d roots and %d elements.", len(roots), len(mesh.elements))
        return mesh

    def __repr__(self):
        return (f"<Mesh n_nodes={len(self.nodes)}, "
                f"n_elements={len(self.elements)}, "
                f"n_active={self.n_active}, "
                f"partitions={self.partitions}>")
