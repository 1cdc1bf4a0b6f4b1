"""Routines to keep track of simulation computation time and report progress of a run."""

import datetime
import time

from pyramidal_sim.utils import get_module_logger

# This logger will inherit its settings from the root logger, created in pyramidal_sim.env
logger = get_module_logger(__name__)


class SimTimeEvent:
    def __init__(
        self,
        tstop: float,
        dt_status: float = 100.0,
    ) -> None:
        wt = time.time()
        self.tstop = tstop
        self.dt_status = dt_status
        self.walltime_start = wt
        self.walltime_status = wt
        self.t_status = 0.0
        self.tcsum = 0.0
        self.nstatus = 0

    def reset(self, t: float = 0.0) -> None:
        wt = time.time()
        self.walltime_start = wt
        self.walltime_status = wt
        self.t_status = t
        self.tcsum = 0.0
        self.nstatus = 0

    def __call__(self, t: float) -> None:
        if self.dt_status is None or self.dt_status <= 0.0:
            return
        if t - self.t_status >= self.dt_status:
            self.simstatus(t)

    def simstatus(self, t: float) -> None:
        wt = time.time()
        tt = wt - self.walltime_status
        self.tcsum += tt
        self.nstatus += 1
        ## remaining physical time
        trem = max(self.tstop - t, 0.0)
        ## wall time per ms of simulated time so far
        rate = self.tcsum / max(t, 1e-9)
        logger.info(
            f"*** computation time at t={t:.2f} ms was {tt:.2f} s; "
            f"remaining simulation time is {trem:.2f} ms"
        )
        logger.info(
            f"*** estimated computation time to completion is {rate * trem:.2f} s "
            f"({str(datetime.timedelta(seconds=int(rate * trem)))})"
        )
        self.walltime_status = wt
        self.t_status = t

    @property
    def elapsed(self) -> float:
        return time.time() - self.walltime_start
