"""
Implicit integration of the compartmental cable equation.

Each compartment i obeys

    c_i dv_i/dt = - g_pas_i (v_i - e_pas_i) - sum_k g_k,i (v_i - E_k)
                  + sum_j g_ax_ij (v_j - v_i) + I_inj_i

where the sum over k runs over ion channel and synaptic conductances and the
sum over j over the tree neighbours of i. The step is backward Euler with all
membrane conductances evaluated at the start of the step, which yields one
sparse linear system per step.

Units: c in nF, conductances in uS, voltages in mV, currents in nA, dt in ms.
"""

from typing import Optional

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import spsolve
from pyramidal_sim.cells import PyramidalCell, get_node_parent
from pyramidal_sim.mechanisms import AREA_CONDUCTANCE_SCALE
from pyramidal_sim.utils import get_module_logger

# This logger will inherit its settings from the root logger, created in pyramidal_sim.env
logger = get_module_logger(__name__)

## uF/cm2 * um2 -> nF
AREA_CAPACITANCE_SCALE = 1e-5


def axial_conductance_matrix(cell: PyramidalCell) -> sp.csc_matrix:
    """
    Returns the axial coupling matrix G of the cell, such that G v is the
    net axial current leaving each compartment. G is a symmetric graph
    Laplacian weighted by the coupling conductance (uS) of each tree edge.
    """
    n = len(cell)
    rows, cols, vals = [], [], []
    for node in cell.compartments:
        parent, edge = get_node_parent(cell, node, return_edge_data=True)
        if parent is None:
            continue
        resistance = parent.half_axial_resistance(
            edge["parent_offset"]
        ) + node.half_axial_resistance(edge["child_offset"])
        g = 1.0 / resistance
        i, j = node.index, parent.index
        rows.extend([i, j, i, j])
        cols.extend([i, j, j, i])
        vals.extend([g, g, -g, -g])
    return sp.csc_matrix((vals, (rows, cols)), shape=(n, n))


class CableSolver:
    """
    Fixed-step backward Euler integrator for the voltages of a
    :class:'PyramidalCell'. Geometry and passive properties are read once at
    construction; rebuild the solver after changing them.
    """

    def __init__(self, cell: PyramidalCell, dt: float) -> None:
        if dt <= 0.0:
            raise ValueError(f"CableSolver: time step must be positive, got {dt}")
        self.cell = cell
        self.dt = dt
        areas = cell.areas()
        self.capacitance = (
            np.asarray([c.cm for c in cell.compartments])
            * areas
            * AREA_CAPACITANCE_SCALE
        )
        self.g_pas = (
            np.asarray([c.g_pas for c in cell.compartments])
            * areas
            * AREA_CONDUCTANCE_SCALE
        )
        self.e_pas = np.asarray([c.e_pas for c in cell.compartments])
        self.G = axial_conductance_matrix(cell)
        self.c_dt = self.capacitance / dt

    def __len__(self) -> int:
        return len(self.capacitance)

    def step(
        self,
        v: np.ndarray,
        g: Optional[np.ndarray] = None,
        gE: Optional[np.ndarray] = None,
        i_inj: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Advances the voltages by one time step.

        :param v: compartment voltages at the start of the step (mV)
        :param g: summed membrane conductance per compartment, excluding the leak (uS)
        :param gE: summed conductance times reversal potential per compartment (uS mV)
        :param i_inj: injected current per compartment, positive inward (nA)
        :return: compartment voltages at the end of the step
        """
        n = len(self)
        if g is None:
            g = np.zeros(n)
        if gE is None:
            gE = np.zeros(n)
        if i_inj is None:
            i_inj = np.zeros(n)
        diag = self.c_dt + self.g_pas + g
        A = (self.G + sp.diags(diag, format="csc")).tocsc()
        b = self.c_dt * v + self.g_pas * self.e_pas + gE + i_inj
        return np.atleast_1d(spsolve(A, b))

    def steady_state(
        self,
        g: Optional[np.ndarray] = None,
        gE: Optional[np.ndarray] = None,
        i_inj: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """Returns the voltage distribution at which all membrane and axial currents balance."""
        n = len(self)
        if g is None:
            g = np.zeros(n)
        if gE is None:
            gE = np.zeros(n)
        if i_inj is None:
            i_inj = np.zeros(n)
        A = (self.G + sp.diags(self.g_pas + g, format="csc")).tocsc()
        b = self.g_pas * self.e_pas + gE + i_inj
        return np.atleast_1d(spsolve(A, b))
