from typing import Dict, Optional

import numpy as np
from pyramidal_sim.cells import Compartment, PyramidalCell
from pyramidal_sim.config import ElectrodeConfig
from pyramidal_sim.stgen import EPS
from pyramidal_sim.utils import get_module_logger

# This logger will inherit its settings from the root logger, created in pyramidal_sim.env
logger = get_module_logger(__name__)


class IClamp:
    """
    Current clamp electrode injecting a rectangular current pulse into one
    compartment. Positive amplitudes depolarize.
    """

    def __init__(
        self,
        compartment: Compartment,
        loc: float = 0.5,
        delay: float = 0.0,
        dur: float = 0.0,
        amp: float = 0.0,
        name: Optional[str] = None,
    ) -> None:
        self.name = name
        self.configure(compartment, loc, delay, dur, amp)

    def __repr__(self) -> str:
        return (
            f"IClamp({self.name}, {self.compartment.name}, delay={self.delay}, "
            f"dur={self.dur}, amp={self.amp})"
        )

    def configure(
        self,
        compartment: Compartment,
        loc: float,
        delay: float,
        dur: float,
        amp: float,
    ) -> None:
        """
        :param compartment: :class:'Compartment' receiving the current
        :param loc: position within the compartment's section
        :param delay: onset of the pulse (ms)
        :param dur: duration of the pulse (ms)
        :param amp: amplitude (nA)
        """
        if delay < 0.0 or dur < 0.0:
            raise ValueError(
                f"IClamp: delay and duration must be non-negative, got {delay}, {dur}"
            )
        self.compartment = compartment
        self.loc = loc
        self.delay = delay
        self.dur = dur
        self.amp = amp

    def current(self, t: float) -> float:
        """Injected current (nA) at time t."""
        if (t >= self.delay - EPS) and (t < self.delay + self.dur - EPS):
            return self.amp
        return 0.0

    def inject(self, t: float, i_inj: np.ndarray) -> None:
        i_inj[self.compartment.index] += self.current(t)


def make_electrodes(
    cell: PyramidalCell, electrode_configs: Dict[str, ElectrodeConfig]
) -> Dict[str, IClamp]:
    electrodes = {}
    for name, config in electrode_configs.items():
        compartment = cell.get_compartment(config.section, config.loc)
        electrodes[name] = IClamp(
            compartment,
            loc=config.loc,
            delay=config.delay,
            dur=config.dur,
            amp=config.amp,
            name=name,
        )
    return electrodes
