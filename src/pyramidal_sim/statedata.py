"""In-memory recording of probe voltages and their running statistics."""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from pyramidal_sim.cells import Compartment, PyramidalCell
from pyramidal_sim.utils import RunningStats, get_module_logger

# This logger will inherit its settings from the root logger, created in pyramidal_sim.env
logger = get_module_logger(__name__)


class StateRecorder:
    def __init__(
        self,
        cell: PyramidalCell,
        probes: Sequence[str],
        rec_interval: int = 1,
    ) -> None:
        """
        Samples the voltage of the probe compartments every `rec_interval`
        integration steps.

        :param cell: :class:'PyramidalCell'
        :param probes: section names (sampled at their centre) or compartment names
        :param rec_interval: number of integration steps per sample
        """
        if rec_interval < 1:
            raise ValueError(
                f"StateRecorder: recording interval must be at least one step, got {rec_interval}"
            )
        self.cell = cell
        self.probes: Dict[str, Compartment] = {
            name: cell.get_compartment(name) for name in probes
        }
        self.rec_interval = rec_interval
        self.t: List[float] = []
        self.samples: Dict[str, List[float]] = {name: [] for name in self.probes}
        self.stats: Dict[str, RunningStats] = {
            name: RunningStats() for name in self.probes
        }

    def clear(self) -> None:
        self.t = []
        for name in self.probes:
            self.samples[name] = []
            self.stats[name].clear()

    def record(self, step: int, t: float, v: np.ndarray) -> None:
        if step % self.rec_interval != 0:
            return
        self.t.append(t)
        for name, compartment in self.probes.items():
            x = float(v[compartment.index])
            self.samples[name].append(x)
            self.stats[name].update(x)

    def time(self) -> np.ndarray:
        return np.asarray(self.t)

    def trace(
        self, probe: str, t_start: Optional[float] = None
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Returns sample times and voltages of a probe, optionally discarding samples before `t_start`."""
        t = np.asarray(self.t)
        v = np.asarray(self.samples[probe])
        if t_start is not None:
            keep = t >= t_start
            t, v = t[keep], v[keep]
        return t, v

    def summary(self, probe: str, t_start: Optional[float] = None) -> Dict[str, float]:
        if t_start is None:
            s = self.stats[probe]
        else:
            s = RunningStats()
            for x in self.trace(probe, t_start=t_start)[1]:
                s.update(x)
        return {
            "n": s.n,
            "mean": s.mean(),
            "sd": s.standard_deviation(),
            "skewness": s.skewness(),
            "kurtosis": s.kurtosis(),
            "min": s.min,
            "max": s.max,
        }

    def histogram(
        self,
        probe: str,
        bins: int = 50,
        t_start: Optional[float] = None,
        value_range: Optional[Tuple[float, float]] = None,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Returns (counts, bin_edges) of the probe voltage samples.
        """
        _, v = self.trace(probe, t_start=t_start)
        return np.histogram(v, bins=bins, range=value_range)
