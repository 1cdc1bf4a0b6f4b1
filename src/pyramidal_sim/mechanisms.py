"""
Voltage-gated membrane currents.

Each mechanism class holds the state of one current type for every
compartment it is inserted into, as arrays indexed by insertion slot.
Kinetics follow the Traub-Miles formulation as adapted by Destexhe for
cortical pyramidal cells; the M-current follows Yamada et al. (1989).

Units: v in mV, t in ms, gbar in S/cm2, areas in um2, conductances in uS,
currents in nA.
"""

from typing import Dict, List, Sequence, Tuple, Type

import numpy as np
from pyramidal_sim.utils import get_module_logger

# This logger will inherit its settings from the root logger, created in pyramidal_sim.env
logger = get_module_logger(__name__)

## S/cm2 * um2 -> uS
AREA_CONDUCTANCE_SCALE = 1e-2


def vtrap(x, y):
    """
    Computes x / (exp(x/y) - 1) with the removable singularity at x = 0
    replaced by its first order expansion.
    """
    x = np.asarray(x, dtype=np.float64)
    z = x / y
    small = np.abs(z) < 1e-6
    safe_z = np.where(small, 1.0, z)
    with np.errstate(over="ignore"):
        result = np.where(small, y * (1.0 - z / 2.0), x / np.expm1(safe_z))
    return result


class DensityMechanism:
    """
    Base class for membrane current mechanisms distributed over compartments.

    Subclasses define `name`, `parameters` (name -> default value),
    `states` (gating variable names), the rate function `steady_states`
    and the open fraction `open_fraction`.
    """

    name: str = None
    parameters: Dict[str, float] = {}
    states: Tuple[str, ...] = ()
    reversal: str = None

    def __init__(
        self,
        indices: Sequence[int],
        areas: Sequence[float],
        params: Dict[str, Sequence[float]],
        celsius: float = 36.0,
    ) -> None:
        """
        :param indices: compartment indices the mechanism is inserted into
        :param areas: membrane area of each of these compartments (um2)
        :param params: parameter name -> per-slot values; missing parameters take default values
        :param celsius: temperature (degC)
        """
        self.indices = np.asarray(indices, dtype=np.int64)
        self.areas = np.asarray(areas, dtype=np.float64)
        n = len(self.indices)
        if self.areas.shape != (n,):
            raise ValueError(
                f"{self.name}: expected {n} compartment areas, got {self.areas.shape}"
            )
        for param_name in params:
            if param_name not in self.parameters:
                raise ValueError(f"{self.name}: unknown parameter {param_name}")
        self.params = {}
        for param_name, default in self.parameters.items():
            values = params.get(param_name, None)
            if values is None:
                values = np.full(n, default, dtype=np.float64)
            else:
                values = np.asarray(values, dtype=np.float64)
                if values.shape != (n,):
                    raise ValueError(
                        f"{self.name}: parameter {param_name} has shape {values.shape}, expected ({n},)"
                    )
            self.params[param_name] = values
        self.celsius = celsius
        self.gating = {state: np.zeros(n) for state in self.states}

    def __len__(self) -> int:
        return len(self.indices)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(n={len(self)})"

    @property
    def tadj(self) -> float:
        return 1.0

    def steady_states(
        self, v: np.ndarray
    ) -> Dict[str, Tuple[np.ndarray, np.ndarray]]:
        """Returns state name -> (inf, tau) evaluated at local voltages `v`."""
        raise NotImplementedError

    def open_fraction(self) -> np.ndarray:
        raise NotImplementedError

    def init(self, v: np.ndarray) -> None:
        """Sets all gating variables to their steady state at the given compartment voltages."""
        local_v = v[self.indices]
        for state, (inf, _) in self.steady_states(local_v).items():
            self.gating[state][:] = np.clip(inf, 0.0, 1.0)

    def advance(self, v: np.ndarray, dt: float) -> None:
        """Advances gating variables over dt with voltages held at `v` (exponential Euler)."""
        local_v = v[self.indices]
        for state, (inf, tau) in self.steady_states(local_v).items():
            x = self.gating[state]
            x[:] = inf + (x - inf) * np.exp(-dt / tau)
            np.clip(x, 0.0, 1.0, out=x)

    def conductance(self) -> np.ndarray:
        """Membrane conductance (uS) per insertion slot."""
        return (
            self.params["gbar"]
            * self.open_fraction()
            * self.areas
            * AREA_CONDUCTANCE_SCALE
        )

    def reversal_potential(self) -> np.ndarray:
        return self.params[self.reversal]

    def current(self, v: np.ndarray) -> np.ndarray:
        """Outward current (nA) per insertion slot."""
        return self.conductance() * (v[self.indices] - self.reversal_potential())


class NaTraub(DensityMechanism):
    """Fast sodium current, m^3 h, with threshold shift `vtraub`."""

    name = "na"
    parameters = {"gbar": 0.012, "ena": 50.0, "vtraub": -63.0}
    states = ("m", "h")
    reversal = "ena"

    @property
    def tadj(self) -> float:
        return 3.0 ** ((self.celsius - 36.0) / 10.0)

    def steady_states(self, v):
        v2 = v - self.params["vtraub"]
        am = 0.32 * vtrap(13.0 - v2, 4.0)
        bm = 0.28 * vtrap(v2 - 40.0, 5.0)
        ah = 0.128 * np.exp((17.0 - v2) / 18.0)
        bh = 4.0 / (1.0 + np.exp((40.0 - v2) / 5.0))
        tadj = self.tadj
        return {
            "m": (am / (am + bm), 1.0 / ((am + bm) * tadj)),
            "h": (ah / (ah + bh), 1.0 / ((ah + bh) * tadj)),
        }

    def open_fraction(self):
        m = self.gating["m"]
        return m * m * m * self.gating["h"]


class KdrTraub(DensityMechanism):
    """Delayed rectifier potassium current, n^4."""

    name = "kdr"
    parameters = {"gbar": 0.01, "ek": -90.0, "vtraub": -63.0}
    states = ("n",)
    reversal = "ek"

    @property
    def tadj(self) -> float:
        return 3.0 ** ((self.celsius - 36.0) / 10.0)

    def steady_states(self, v):
        v2 = v - self.params["vtraub"]
        an = 0.032 * vtrap(15.0 - v2, 5.0)
        bn = 0.5 * np.exp((10.0 - v2) / 40.0)
        return {"n": (an / (an + bn), 1.0 / ((an + bn) * self.tadj))}

    def open_fraction(self):
        n2 = self.gating["n"] * self.gating["n"]
        return n2 * n2


class MCurrent(DensityMechanism):
    """Slow non-inactivating potassium current (M-current)."""

    name = "im"
    parameters = {"gbar": 0.0004, "ek": -90.0, "taumax": 1000.0}
    states = ("m",)
    reversal = "ek"

    @property
    def tadj(self) -> float:
        return 2.3 ** ((self.celsius - 36.0) / 10.0)

    def steady_states(self, v):
        x = v + 35.0
        inf = 1.0 / (1.0 + np.exp(-x / 10.0))
        tau_peak = self.params["taumax"] / self.tadj
        tau = tau_peak / (3.3 * np.exp(x / 20.0) + np.exp(-x / 20.0))
        return {"m": (inf, tau)}

    def open_fraction(self):
        return self.gating["m"]


mechanism_registry: Dict[str, Type[DensityMechanism]] = {
    cls.name: cls for cls in (NaTraub, KdrTraub, MCurrent)
}


def make_mechanism(
    mech_name: str,
    indices: List[int],
    areas: List[float],
    params: Dict[str, List[float]],
    celsius: float = 36.0,
) -> DensityMechanism:
    if mech_name not in mechanism_registry:
        raise ValueError(
            f"make_mechanism: unknown mechanism {mech_name}; "
            f"known mechanisms are {sorted(mechanism_registry)}"
        )
    return mechanism_registry[mech_name](indices, areas, params, celsius=celsius)
