"""pyamrfem.fem.reference.lagrange
First-order Lagrange bases on every reference cell of the catalog, built
symbolically with SymPy.
"""
from functools import lru_cache
from typing import List, Tuple

import sympy as sp

from pyamrfem.core.celltypes import CellType, cell_info

XI = sp.symbols('xi eta zeta')


def _tensor_p1(ref_nodes, variables) -> List[sp.Expr]:
    # node with reference coordinates a in {-1, 1}^d: prod (1 + a_k x_k) / 2
    out = []
    for node in ref_nodes:
        expr = sp.Integer(1)
        for a, x in zip(node, variables):
            expr *= (1 + a * x) / sp.Integer(2)
        out.append(sp.expand(expr))
    return out


def _simplex_p1(variables) -> List[sp.Expr]:
    return [1 - sum(variables)] + list(variables)


@lru_cache(maxsize=None)
def lagrange_p1(cell_type: CellType) -> Tuple[Tuple[sp.Expr, ...], Tuple[sp.Symbol, ...]]:
    """
    Symbolic first-order shape functions for *cell_type*.

    Returns ``(N, variables)`` where ``N[i]`` equals one at reference node
    ``i`` of the catalog and zero at the others.
    """
    info = cell_info(cell_type)
    variables = XI[:info.dim]
    ct = info.cell_type
    if ct is CellType.NODE1:
        N = [sp.Integer(1)]
    elif ct in (CellType.EDGE2, CellType.QUAD4, CellType.HEX8):
        N = _tensor_p1(info.reference_nodes, variables)
    elif ct in (CellType.TRI3, CellType.TET4):
        N = _simplex_p1(variables)
    elif ct is CellType.PRISM6:
        xi, eta, zeta = variables
        tri = _simplex_p1((xi, eta))
        N = [sp.expand(t * (1 - zeta) / 2) for t in tri] + \
            [sp.expand(t * (1 + zeta) / 2) for t in tri]
    else:  # pragma: no cover - catalog and this switch must agree
        raise KeyError(ct)
    return tuple(N), tuple(variables)


def _check_kronecker(cell_type: CellType) -> None:
    """Internal consistency check: N_i(x_j) == delta_ij."""
    N, variables = lagrange_p1(cell_type)
    nodes = cell_info(cell_type).reference_nodes
    for j, node in enumerate(nodes):
        subs = dict(zip(variables, node))
        for i, Ni in enumerate(N):
            val = Ni.subs(subs)
            if val != (1 if i == j else 0):
                raise RuntimeError(
                    f"Shape function {i} of {cell_type.name} is {val} at node {j}."
                )


if __name__ == "__main__":
    for ct in CellType:
        _check_kronecker(ct)
    print("lagrange_p1 OK")
