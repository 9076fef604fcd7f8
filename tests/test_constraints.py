import pytest
import numpy as np
from numpy.testing import assert_allclose

from pyamrfem.core.config import AMRConfig
from pyamrfem.core.constraints import build_constraints, constraint_residual
from pyamrfem.core.errors import InconsistentPartition, UnsupportedConstraintDepth
from pyamrfem.utils.meshgen import structured_hex, structured_prism, structured_quad, structured_tets


def _linear(x):
    return 1.0 + 2.0 * x[0] - x[1] + (0.5 * x[2] if len(x) > 2 else 0.0)


class TestQuad:
    def test_conforming_mesh_has_no_constraints(self):
        mesh = structured_quad(2.0, 2.0, nx=2, ny=2)
        mesh.uniformly_refine(1)
        assert len(build_constraints(mesh)) == 0

    def test_single_hanging_node(self, node_at):
        mesh = structured_quad(2.0, 1.0, nx=2, ny=1)
        mesh.refine(1)
        cset = build_constraints(mesh)

        mid = node_at(mesh, [1.0, 0.5])
        assert cset.targets == (mid,)
        assert dict(cset.masters(mid)) == pytest.approx({1: 0.5, 4: 0.5})
        assert mesh.nodes[mid].constraint == pytest.approx({1: 0.5, 4: 0.5})
        assert cset.masters(0) == {}
        assert cset.is_current(mesh)

    def test_two_levels_deep(self, node_at):
        mesh = structured_quad(2.0, 1.0, nx=2, ny=1)
        kids = mesh.refine(1)
        mesh.refine(kids[0])
        cset = build_constraints(mesh)
        q = node_at(mesh, [1.0, 0.25])
        assert dict(cset.masters(q)) == pytest.approx({1: 0.75, 4: 0.25})

    def test_chain_is_resolved(self, node_at):
        mesh = structured_quad(2.0, 1.0, nx=2, ny=1)
        kids = mesh.refine(1)
        mesh.refine(kids[2])  # top-left child
        cset = build_constraints(mesh)

        centre = node_at(mesh, [1.5, 0.5])
        n = node_at(mesh, [1.25, 0.5])
        # (1.25, 0.5) hangs on (1, 0.5), which itself hangs on the coarse element
        assert dict(cset.masters(n)) == pytest.approx({1: 0.25, 4: 0.25, centre: 0.5})
        assert len(cset) == 4
        for t in cset.targets:
            assert not set(cset.masters(t)) & set(cset.targets)

    def test_chain_needs_enough_passes(self):
        mesh = structured_quad(2.0, 1.0, nx=2, ny=1)
        kids = mesh.refine(1)
        mesh.refine(kids[2])
        with pytest.raises(UnsupportedConstraintDepth):
            build_constraints(mesh, config=AMRConfig(max_constraint_passes=1))

    def test_coarsening_clears_constraints(self, node_at):
        mesh = structured_quad(2.0, 1.0, nx=2, ny=1)
        mesh.refine(1)
        mid = node_at(mesh, [1.0, 0.5])
        build_constraints(mesh)
        assert mesh.nodes[mid].is_constrained

        mesh.refine(0)
        cset = build_constraints(mesh)
        assert len(cset) == 0
        assert not mesh.nodes[mid].is_constrained


class TestHex:
    def test_face_centre_has_four_corner_masters(self, node_at):
        mesh = structured_hex(2.0, 1.0, 1.0, nx=2, ny=1, nz=1)
        mesh.refine(1)
        cset = build_constraints(mesh)

        centre = node_at(mesh, [1.0, 0.5, 0.5])
        assert dict(cset.masters(centre)) == pytest.approx({1: 0.25, 4: 0.25, 7: 0.25, 10: 0.25})
        edge = node_at(mesh, [1.0, 0.0, 0.5])
        assert dict(cset.masters(edge)) == pytest.approx({1: 0.5, 7: 0.5})
        assert len(cset) == 5


@pytest.mark.parametrize("make", [
    lambda: structured_quad(2.0, 2.0, nx=2, ny=2),
    lambda: structured_hex(2.0, 2.0, 1.0, nx=2, ny=2, nz=1),
    lambda: structured_prism(2.0, 2.0, 1.0, nx=2, ny=2, nz=1),
    lambda: structured_tets(2.0, 1.0, 1.0, nx=2, ny=1, nz=1),
])
def test_linear_fields_satisfy_constraints(make):
    mesh = make()
    first = mesh.active_elements()[0]
    kids = mesh.refine(first)
    mesh.refine(kids[-1])
    cset = build_constraints(mesh)
    assert len(cset) > 0

    values = {nid: _linear(nd.coords) for nid, nd in mesh.nodes.items()}
    assert constraint_residual(cset, values) < 1e-12

    index = {nid: i for i, nid in enumerate(sorted(mesh.nodes))}
    u = np.array([values[n] for n in sorted(mesh.nodes)])
    u_free = u.copy()
    u_free[[index[t] for t in cset.targets]] = 0.0
    assert_allclose(cset.as_sparse(index) @ u_free, u, atol=1e-12)


class TestPartitions:
    def test_needs_ghosts(self, node_at):
        mesh = structured_quad(2.0, 1.0, nx=2, ny=1)
        kids = mesh.refine(1)
        mesh.set_partitions({0: 0, **{k: 1 for k in kids}})
        assert mesh.element(1).partition == 1

        with pytest.raises(InconsistentPartition):
            build_constraints(mesh, rank=1)

        mesh.set_ghosts(1, mesh.ghost_candidates(1))
        cset = build_constraints(mesh, rank=1)
        assert cset.targets == (node_at(mesh, [1.0, 0.5]),)
        assert cset.rank == 1
        # the coarse side has nothing to constrain
        mesh.set_ghosts(0, mesh.ghost_candidates(0))
        assert len(build_constraints(mesh, rank=0)) == 0

    def test_revision_tracking(self):
        mesh = structured_quad(2.0, 1.0, nx=2, ny=1)
        mesh.refine(1)
        cset = build_constraints(mesh)
        mesh.refine(0)
        assert not cset.is_current(mesh)
