import pytest
import numpy as np
from numpy.testing import assert_allclose, assert_equal

from pyamrfem.core.celltypes import CellType
from pyamrfem.core.config import AMRConfig
from pyamrfem.core.errors import IllegalCoarsen, IllegalRefine, InvalidCellType, RefinementDepthExceeded
from pyamrfem.core.mesh import Mesh, SideNeighbor
from pyamrfem.core.topology import RefinementFlag, build_side
from pyamrfem.fem.embedding import transfer
from pyamrfem.utils.meshgen import (
    structured_hex, structured_line, structured_prism, structured_quad,
    structured_tets, structured_triangles, delaunay_rectangle,
)

_PRISM_XYZ = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0],
                       [0, 0, 1], [1, 0, 1], [0, 1, 1]], dtype=float)


def single_prism():
    return Mesh(_PRISM_XYZ, [[0, 1, 2, 3, 4, 5]], "PRISM6")


class TestRefineCoarsen:
    def test_quad_refine(self, node_at):
        mesh = structured_quad(1.0, 1.0, nx=1, ny=1)
        rev = mesh.revision
        kids = mesh.refine(0)

        assert len(kids) == 4
        assert mesh.n_active == 4
        assert not mesh.element(0).active
        assert len(mesh.nodes) == 9
        assert mesh.revision > rev
        for c, eid in enumerate(kids):
            kid = mesh.element(eid)
            assert (kid.parent, kid.level, kid.child_index) == (0, 1, c)
            assert kid.flag is RefinementFlag.JUST_REFINED
        centre = node_at(mesh, [0.5, 0.5])
        assert all(centre in mesh.element(k).nodes for k in kids)

    def test_prism_refine_then_coarsen(self):
        mesh = single_prism()
        kids = mesh.refine(0)
        assert len(kids) == 8
        assert len(mesh.nodes) == 18
        assert all(mesh.element(k).cell_type is CellType.PRISM6 for k in kids)

        mesh.flag_for_coarsening([0])
        released = mesh.coarsen(0)

        assert len(released) == 12
        assert mesh.element(0).active
        assert mesh.element(0).nodes == (0, 1, 2, 3, 4, 5)
        assert sorted(mesh.nodes) == [0, 1, 2, 3, 4, 5]
        assert mesh.active_elements() == [0]
        assert mesh.element(0).flag is RefinementFlag.JUST_COARSENED

    def test_ids_are_not_reused(self):
        mesh = structured_quad(1.0, 1.0, nx=1, ny=1)
        first = mesh.refine(0)
        mesh.flag_for_coarsening([0])
        mesh.coarsen(0)
        second = mesh.refine(0)
        assert not set(first) & set(second)

    def test_neighbors_share_new_nodes(self, node_at):
        mesh = structured_quad(2.0, 1.0, nx=2, ny=1)
        mesh.refine(0)
        mesh.refine(1)
        assert len(mesh.nodes) == 15
        mid = node_at(mesh, [1.0, 0.5])
        users = [e for e in mesh.active_elements() if mid in mesh.element(e).nodes]
        assert len(users) == 4

    def test_refine_inactive(self):
        mesh = structured_quad(1.0, 1.0, nx=1, ny=1)
        mesh.refine(0)
        with pytest.raises(IllegalRefine):
            mesh.refine(0)

    def test_max_level(self):
        mesh = structured_quad(1.0, 1.0, nx=1, ny=1, config=AMRConfig(max_level=1))
        kids = mesh.refine(0)
        with pytest.raises(RefinementDepthExceeded):
            mesh.refine(kids[0])
        assert mesh.element(kids[0]).active

    def test_point_cells_do_not_refine(self):
        mesh = Mesh(np.zeros((1, 1)), [[0]], "NODE1")
        with pytest.raises(InvalidCellType):
            mesh.refine(0)

    def test_coarsen_errors(self):
        mesh = structured_quad(1.0, 1.0, nx=1, ny=1)
        with pytest.raises(IllegalCoarsen):
            mesh.coarsen(0)  # active, nothing to remove
        kids = mesh.refine(0)
        with pytest.raises(IllegalCoarsen):
            mesh.coarsen(0)  # children not flagged
        mesh.refine(kids[0])
        mesh.flag_for_coarsening([0])
        with pytest.raises(IllegalCoarsen):
            mesh.coarsen(0)  # kids[0] is no longer a leaf

    def test_uniform_refinement_counts(self):
        mesh = structured_quad(1.0, 1.0, nx=1, ny=1)
        mesh.uniformly_refine(2)
        assert mesh.n_active == 16
        assert len(mesh.nodes) == 25
        assert {mesh.element(e).level for e in mesh.active_elements()} == {2}

    def test_line_refinement(self):
        mesh = structured_line(1.0, n=2)
        mesh.uniformly_refine(1)
        xs = sorted(nd.x for nd in mesh.nodes.values())
        assert_allclose(xs, np.linspace(0.0, 1.0, 5))


@pytest.mark.parametrize("make, n_active, n_nodes", [
    (lambda: structured_triangles(1.0, 1.0, nx_quads=1, ny_quads=1), 8, 9),
    (lambda: structured_hex(1.0, 1.0, 1.0, nx=1, ny=1, nz=1), 8, 27),
    (lambda: structured_tets(1.0, 1.0, 1.0, nx=1, ny=1, nz=1), 48, 27),
    (lambda: structured_prism(1.0, 1.0, 1.0, nx=1, ny=1, nz=1), 16, 27),
])
def test_uniform_refinement_matches_grid(make, n_active, n_nodes):
    mesh = make()
    mesh.uniformly_refine(1)
    assert mesh.n_active == n_active
    assert len(mesh.nodes) == n_nodes
    coords = np.array([nd.coords for nd in mesh.nodes.values()])
    assert len(np.unique(np.round(coords, 12), axis=0)) == n_nodes


def test_refined_tets_keep_orientation_and_volume():
    mesh = structured_tets(1.0, 2.0, 1.0, nx=1, ny=1, nz=1)
    mesh.uniformly_refine(1)
    vols = []
    for eid in mesh.active_elements():
        X = mesh.node_coords(eid)
        vols.append(np.linalg.det(X[1:] - X[0]) / 6.0)
    assert min(vols) > 0.0
    assert np.isclose(sum(vols), 2.0)


def test_delaunay_mesh_refines_conformingly():
    mesh = delaunay_rectangle(1.0, 1.0, nx=3, ny=3)
    n_edges = len({tuple(sorted(e)) for eid in mesh.active_elements()
                   for e in (mesh.side_nodes(eid, s) for s in range(3))})
    n_nodes = len(mesh.nodes)
    mesh.uniformly_refine(1)
    assert len(mesh.nodes) == n_nodes + n_edges


class TestNeighbors:
    def test_same_level(self):
        mesh = structured_quad(2.0, 1.0, nx=2, ny=1)
        assert mesh.neighbor(0, 1) == SideNeighbor(1, 3, 0, 1)
        assert mesh.neighbor(0, 3) is None
        assert mesh.on_boundary(1, 1)

    def test_coarser_neighbor_found_through_parent(self):
        mesh = structured_quad(2.0, 1.0, nx=2, ny=1)
        kids = mesh.refine(1)
        # child 0 is the bottom-left child; its left side lies on parent side 3
        assert mesh.neighbor(kids[0], 3) == SideNeighbor(0, 1, 1, 3)
        # interior sides see siblings
        assert mesh.neighbor(kids[0], 1).eid == kids[1]
        # from the coarse side the neighbor is the refined (inactive) element
        nb = mesh.neighbor(0, 1)
        assert (nb.eid, nb.via) == (1, 0)
        assert not mesh.element(nb.eid).active

    def test_line_neighbors(self):
        mesh = structured_line(2.0, n=2)
        kids = mesh.refine(1)
        assert mesh.neighbor(kids[0], 0).eid == 0
        assert mesh.neighbor(0, 1).eid == 1

    def test_ancestors_and_paths(self):
        mesh = structured_quad(1.0, 1.0, nx=1, ny=1)
        kids = mesh.refine(0)
        grand = mesh.refine(kids[3])
        assert mesh.ancestors(grand[1]) == [kids[3], 0]
        assert mesh.child_path(0, grand[1]) == [3, 1]
        with pytest.raises(ValueError):
            mesh.child_path(kids[0], grand[1])


class TestBoundaryIds:
    def test_root_tags(self):
        mesh = structured_quad(1.0, 1.0, nx=1, ny=1)
        assert [set(mesh.boundary_ids(0, s)) for s in range(4)] == [{2}, {1}, {3}, {0}]

    def test_children_inherit_tags(self):
        mesh = structured_quad(1.0, 1.0, nx=1, ny=1)
        kids = mesh.refine(0)
        assert mesh.boundary_ids(kids[0], 0) == {2}
        assert mesh.boundary_ids(kids[0], 3) == {0}
        assert mesh.boundary_ids(kids[0], 1) == frozenset()
        grand = mesh.refine(kids[1])
        assert mesh.boundary_ids(grand[1], 1) == {1}

    def test_hex_face_tags(self):
        mesh = structured_hex(1.0, 1.0, 1.0, nx=1, ny=1, nz=1)
        kids = mesh.refine(0)
        top = [k for k in kids if mesh.boundary_ids(k, 5) == {5}]
        assert len(top) == 4

    def test_bad_side(self):
        with pytest.raises(IndexError):
            Mesh(_PRISM_XYZ, [[0, 1, 2, 3, 4, 5]], "PRISM6", boundary_ids={(0, 5): [1]})


class TestDataTransfer:
    def test_nodal_field_follows_refinement(self):
        mesh = structured_quad(1.0, 1.0, nx=2, ny=2)
        f = lambda x: 1.0 + 2.0 * x[0] - 3.0 * x[1]
        mesh.set_node_data("T", f)
        mesh.uniformly_refine(1)
        for nid, nd in mesh.nodes.items():
            assert np.isclose(mesh.node_data["T"][nid], f(nd.coords))

    def test_nodal_field_dropped_with_nodes(self):
        mesh = structured_quad(1.0, 1.0, nx=1, ny=1)
        mesh.set_node_data("T", {n: float(n) for n in mesh.nodes})
        mesh.refine(0)
        mesh.flag_for_coarsening([0])
        mesh.coarsen(0)
        assert sorted(mesh.node_data["T"]) == [0, 1, 2, 3]

    def test_element_field_round_trip(self):
        mesh = single_prism()
        vals = np.arange(12, dtype=float).reshape(6, 2)
        mesh.set_element_data("u", {0: vals})
        kids = mesh.refine(0)
        assert_allclose(mesh.element_data["u"][kids[5]], transfer(CellType.PRISM6, 5, vals))
        mesh.flag_for_coarsening([0])
        mesh.coarsen(0)
        assert_allclose(mesh.element_data["u"][0], vals)
        assert set(mesh.element_data["u"]) == {0}

    def test_element_field_shape_checked(self):
        mesh = single_prism()
        with pytest.raises(ValueError):
            mesh.set_element_data("u", {0: np.zeros(5)})


class TestExportAndSnapshot:
    def test_active_connectivity(self):
        mesh = single_prism()
        vtk = mesh.active_connectivity("vtk")
        assert_equal(vtk[CellType.PRISM6], [[0, 2, 1, 3, 5, 4]])
        mesh.refine(0)
        assert mesh.active_connectivity("tecplot")[CellType.PRISM6].shape == (8, 8)
        with pytest.raises(ValueError):
            mesh.active_connectivity("gmsh")

    def test_snapshot_round_trip(self):
        mesh = structured_quad(2.0, 1.0, nx=2, ny=1)
        mesh.set_partitions({0: 0, 1: 1})
        kids = mesh.refine(0)
        mesh.refine(kids[2])

        clone = Mesh.from_snapshot(mesh.snapshot())
        assert sorted(clone.elements) == sorted(mesh.elements)
        for eid, elem in mesh.elements.items():
            other = clone.element(eid)
            assert (other.nodes, other.parent, other.children, other.level,
                    other.partition, other.child_index) == \
                   (elem.nodes, elem.parent, elem.children, elem.level,
                    elem.partition, elem.child_index)
        assert clone.boundary_ids(kids[0], 3) == {0}

        # refining the neighbor must reuse the existing midpoint in both meshes
        mesh.refine(1)
        clone.refine(1)
        assert len(clone.nodes) == len(mesh.nodes)
        assert max(clone.elements) == max(mesh.elements)


def test_build_side():
    mesh = single_prism()
    side = build_side(mesh.element(0), 2)
    assert side.cell_type is CellType.QUAD4
    assert side.nodes == (1, 2, 5, 4)
