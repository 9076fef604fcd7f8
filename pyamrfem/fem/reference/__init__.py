# pyamrfem.fem.reference
"""
Reference-element factory for the cell catalog.
"""
from functools import lru_cache

import numpy as np
import sympy as sp

from pyamrfem.core.celltypes import CellType, default_order
from pyamrfem.fem.reference.lagrange import lagrange_p1


class Ref:
    def __init__(self, cell_type, exprs, variables):
        self.cell_type = cell_type
        self.exprs = exprs
        self.variables = variables
        self.n_basis = len(exprs)
        self.shape_lambda = sp.lambdify(variables, sp.Matrix(exprs), 'numpy')

    def shape(self, *xi) -> np.ndarray:
        """Basis values at reference point *xi* as a float vector."""
        if len(xi) != len(self.variables):
            raise ValueError(f"{self.cell_type.name} expects {len(self.variables)} "
                             f"reference coordinates, got {len(xi)}.")
        vals = np.asarray(self.shape_lambda(*xi), dtype=float).ravel()
        # constant bases come back as a single scalar from lambdify
        return np.broadcast_to(vals, (self.n_basis,)).copy() if vals.size == 1 else vals

    def shape_exact(self, point):
        """Basis values at a rational reference *point*, as SymPy numbers."""
        subs = {v: sp.nsimplify(c) for v, c in zip(self.variables, point)}
        return [sp.nsimplify(N.subs(subs)) for N in self.exprs]

    def interpolate(self, nodal_values, *xi) -> np.ndarray:
        """Evaluate ``sum_i N_i(xi) v_i`` for nodal values of shape ``(n_basis, ...)``."""
        vals = np.asarray(nodal_values, dtype=float)
        return np.tensordot(self.shape(*xi), vals, axes=(0, 0))


@lru_cache(maxsize=None)
def get_reference(cell_type, poly_order: int = None) -> Ref:
    ct = CellType.from_name(cell_type)
    order = default_order(ct) if poly_order is None else poly_order
    if order != 1:
        raise ValueError(f"Only first-order Lagrange bases are available, got order {order}.")
    exprs, variables = lagrange_p1(ct)
    return Ref(ct, exprs, variables)


__all__ = ["Ref", "get_reference"]
