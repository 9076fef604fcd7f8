# conftest.py
import logging

import numpy as np
import pytest


@pytest.fixture(autouse=True)
def amr_debug_logging(caplog):
    """Run every test with the package's debug logging switched on."""
    caplog.set_level(logging.DEBUG, logger="pyamrfem")


def find_node(mesh, xyz, tol=1e-12):
    """Id of the mesh node at *xyz*."""
    xyz = np.asarray(xyz, dtype=float)
    hits = [nid for nid, nd in mesh.nodes.items() if np.allclose(nd.coords, xyz, atol=tol)]
    if len(hits) != 1:
        raise LookupError(f"{len(hits)} nodes at {xyz.tolist()}")
    return hits[0]


@pytest.fixture
def node_at():
    return find_node
