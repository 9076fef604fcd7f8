"""pyamrfem.core.constraints
Hanging-node constraints of a non-conforming mesh.

A node of a refined element that lies on the side of an active, coarser
neighbor but is not one of that neighbor's nodes is *hanging*: its value is
not free but the neighbor's interpolant at that point.  Each hanging node
gets one row ``{master node id: coefficient}``.  The coefficients are the
composed embedding weights from the ancestor that shares the coarse side
down to the fine element, so they are exact for first-order bases.

When a master is itself constrained (neighbors more than one level apart)
the row is expanded by substitution, one pass at a time, until a pass
changes nothing.
"""
from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from pyamrfem.core.celltypes import cell_info
from pyamrfem.core.config import AMRConfig
from pyamrfem.core.errors import UnsupportedConstraintDepth
from pyamrfem.core.mesh import Mesh
from pyamrfem.fem import embedding

logger = logging.getLogger(__name__)


class ConstraintSet:
    """
    Read-only table of constraint rows, tied to the mesh revision it was
    built from.
    """

    def __init__(self, rows: Mapping[int, Mapping[int, float]], revision: int, rank: Optional[int] = None):
        self._rows = MappingProxyType({int(t): MappingProxyType(dict(r)) for t, r in rows.items()})
        self.revision = int(revision)
        self.rank = rank

    @property
    def rows(self) -> Mapping[int, Mapping[int, float]]:
        return self._rows

    @property
    def targets(self) -> Tuple[int, ...]:
        return tuple(sorted(self._rows))

    def masters(self, nid: int) -> Mapping[int, float]:
        """Masters of *nid* with their coefficients; empty for a free node."""
        return self._rows.get(int(nid), MappingProxyType({}))

    def is_current(self, mesh: Mesh) -> bool:
        return self.revision == mesh.revision

    def __contains__(self, nid) -> bool:
        return int(nid) in self._rows

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self):
        return iter(self.targets)

    def as_sparse(self, node_index: Mapping[int, int]) -> sp.csr_matrix:
        """
        Node-level constraint matrix ``C`` with ``u_all = C @ u``.

        ``node_index`` maps node ids to row/column positions.  Free nodes get
        an identity row, constrained nodes their master coefficients, and
        constrained columns stay empty.
        """
        n = len(node_index)
        rows, cols, vals = [], [], []
        for nid, i in node_index.items():
            if nid in self._rows:
                for m, c in self._rows[nid].items():
                    rows.append(i)
                    cols.append(node_index[m])
                    vals.append(c)
            else:
                rows.append(i)
                cols.append(i)
                vals.append(1.0)
        return sp.csr_matrix((vals, (rows, cols)), shape=(n, n))

    def __repr__(self):
        return f"<ConstraintSet n_targets={len(self)}, revision={self.revision}, rank={self.rank}>"


def _hanging_rows(mesh: Mesh, eid: int, side: int, rank: Optional[int], tol: float) -> Dict[int, Dict[int, float]]:
    nb = mesh.neighbor(eid, side, rank=rank)
    if nb is None or nb.via == eid:
        # boundary, conforming, or a finer neighbor that constrains itself
        return {}
    coarse = mesh.elements[nb.eid]
    if not coarse.active:
        logger.debug("Element %d side %d: coarse neighbor %d is refined; skipped.", eid, side, nb.eid)
        return {}

    elem = mesh.elements[eid]
    via = mesh.elements[nb.via]
    W = embedding.embedding_path(elem.cell_type, mesh.child_path(via.id, eid))
    shared = set(coarse.side_nodes(nb.side))
    local = elem.side_nodes(side)
    out = {}
    for k in cell_info(elem.cell_type).side_nodes(side):
        nid = elem.nodes[k]
        if nid in shared:
            continue
        row = {via.nodes[j]: float(w) for j, w in enumerate(W[k]) if abs(w) > tol}
        if not set(row) <= shared:
            raise RuntimeError(
                f"Element {eid} side {side}: node {nid} depends on nodes off the coarse side {sorted(row)}."
            )
        out[nid] = row
    logger.debug("Element %d side %d hangs on element %d: %d nodes %s.",
                 eid, side, coarse.id, len(out), [n for n in local if n in out])
    return out


def _expand(rows: Dict[int, Dict[int, float]], config: AMRConfig) -> None:
    for pass_no in range(1, config.max_constraint_passes + 1):
        changed = 0
        for target in sorted(rows):
            row = rows[target]
            if not any(m in rows for m in row):
                continue
            new: Dict[int, float] = {}
            for m, c in row.items():
                for mm, cc in (rows[m].items() if m in rows else ((m, 1.0),)):
                    new[mm] = new.get(mm, 0.0) + c * cc
            new = {m: c for m, c in new.items() if abs(c) > config.tol}
            if target in new:
                raise UnsupportedConstraintDepth(f"Node {target} ends up constraining itself.")
            rows[target] = new
            changed += 1
        logger.debug("Constraint substitution pass %d: %d rows changed.", pass_no, changed)
        if changed == 0:
            return
    raise UnsupportedConstraintDepth(
        f"Constraint chains did not settle within {config.max_constraint_passes} passes."
    )


def build_constraints(mesh: Mesh, rank: Optional[int] = None, config: Optional[AMRConfig] = None) -> ConstraintSet:
    """
    Build the hanging-node constraints of the active mesh.

    Parameters
    ----------
    mesh : Mesh
    rank : int, optional
        Only scan the active elements owned by this partition.  Their remote
        neighbors must have been ghosted with :meth:`Mesh.set_ghosts`.
    config : AMRConfig, optional
        Supplies ``tol`` and ``max_constraint_passes``; defaults to the
        mesh's configuration.

    Returns
    -------
    ConstraintSet
        Each hanging node appears once, with masters that are free nodes on
        the coarse side.  ``Node.constraint`` is refreshed to match.

    Raises
    ------
    UnsupportedConstraintDepth
        Chains do not settle in ``config.max_constraint_passes`` passes, or a
        node would depend on itself.
    InconsistentPartition
        A neighbor on another partition has not been ghosted.
    """
    config = config or mesh.config
    rows: Dict[int, Dict[int, float]] = {}
    scanned: set = set()
    for eid in mesh.active_elements(rank):
        elem = mesh.elements[eid]
        scanned.update(elem.nodes)
        for side in range(elem.n_sides):
            for nid, row in _hanging_rows(mesh, eid, side, rank, config.tol).items():
                rows.setdefault(nid, row)

    for target, row in rows.items():
        if target in row:
            raise UnsupportedConstraintDepth(f"Node {target} is listed as its own master.")
    _expand(rows, config)

    _refresh_nodes(mesh, rows, scanned if rank is not None else mesh.nodes)
    logger.info("Built %d hanging-node constraints (rank=%s, revision %d).",
                len(rows), rank, mesh.revision)
    return ConstraintSet(rows, mesh.revision, rank)


def _refresh_nodes(mesh: Mesh, rows: Mapping[int, Mapping[int, float]], node_ids: Iterable[int]) -> None:
    for nid in node_ids:
        mesh.nodes[nid].constraint = None
    for nid, row in rows.items():
        mesh.nodes[nid].constraint = dict(row)


def constraint_residual(cset: ConstraintSet, values: Mapping[int, float]) -> float:
    """Largest violation ``|u_t - sum_m c_m u_m|`` of nodal *values* over all rows."""
    worst = 0.0
    for t, row in cset.rows.items():
        ref = sum(c * values[m] for m, c in row.items())
        worst = max(worst, float(np.max(np.abs(np.asarray(values[t]) - ref))))
    return worst
