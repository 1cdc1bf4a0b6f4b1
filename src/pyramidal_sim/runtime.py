"""
Fixed-step run control for a single cell bombardment model.

Every step from t to t + dt proceeds in this order:

1. presynaptic generators decide release at t;
2. aggregated synapse mechanisms process release transitions at t and
   advance their binding state to t + dt;
3. ion channel gating is advanced to t + dt using the voltages at t;
4. electrode currents are evaluated at t + dt, the time the implicit
   solve advances to;
5. the cable equation is solved for the voltages at t + dt;
6. the new voltages are stored, and are read by mechanisms only in the next step.
"""

from typing import Any, Optional

import time

import numpy as np
from pyramidal_sim.env import Env
from pyramidal_sim.statedata import StateRecorder
from pyramidal_sim.utils import get_module_logger
from pyramidal_sim.utils.simtime import SimTimeEvent

# This logger will inherit its settings from the root logger, created in pyramidal_sim.env
logger = get_module_logger(__name__)

## generator parameters that may be changed between runs
runtime_generator_params = ("frequency", "correlation", "latency", "duration")
## electrode parameters that may be changed between runs
runtime_electrode_params = ("delay", "dur", "amp")


class Simulator:
    def __init__(self, env: Env) -> None:
        """
        :param env: :class:'Env' with the model to simulate
        """
        self.env = env
        self.cell = env.cell
        self.dt = env.dt
        self.recorder = StateRecorder(
            env.cell,
            env.simulation.probes,
            rec_interval=env.simulation.rec_interval,
        )
        self.sim_time = SimTimeEvent(
            env.tstop, dt_status=env.simulation.status_interval
        )
        self.step_count = 0
        n = len(self.cell)
        self._g = np.zeros(n)
        self._gE = np.zeros(n)
        self._i_inj = np.zeros(n)
        self.initialized = False

    @property
    def t(self) -> float:
        return self.step_count * self.dt

    def reseed(self, seed: int) -> None:
        self.env.reseed(seed)

    def initialize(self, v_init: Optional[float] = None) -> None:
        """
        Sets all compartment voltages to `v_init`, gating variables to their
        steady state, synapses to rest, and clears the recordings.
        """
        if v_init is None:
            v_init = self.env.v_init
        self.cell.v[:] = v_init
        for mech in self.cell.mechanisms.values():
            mech.init(self.cell.v)
        for generator in self.env.generators.values():
            generator.reset()
        for mechanism in self.env.synapse_mechanisms.values():
            mechanism.init()
        self.step_count = 0
        self.recorder.clear()
        self.recorder.record(0, 0.0, self.cell.v)
        self.sim_time.reset()
        self.initialized = True

    def step(self) -> None:
        if not self.initialized:
            raise RuntimeError("Simulator.step: initialize must be called before step")
        env = self.env
        dt = self.dt
        t = self.t
        v = self.cell.v
        g, gE, i_inj = self._g, self._gE, self._i_inj
        g[:] = 0.0
        gE[:] = 0.0
        i_inj[:] = 0.0

        for generator in env.generators.values():
            generator.step(t)

        for mechanism in env.synapse_mechanisms.values():
            mechanism.update(t, dt)
            gs = mechanism.conductance()
            np.add.at(g, mechanism.compartment_indices, gs)
            np.add.at(gE, mechanism.compartment_indices, gs * mechanism.params.Erev)

        for mech in self.cell.mechanisms.values():
            mech.advance(v, dt)
            gc = mech.conductance()
            np.add.at(g, mech.indices, gc)
            np.add.at(gE, mech.indices, gc * mech.reversal_potential())

        for electrode in env.electrodes.values():
            electrode.inject(t + dt, i_inj)

        self.cell.v[:] = env.solver.step(v, g, gE, i_inj)
        self.step_count += 1
        self.recorder.record(self.step_count, self.t, self.cell.v)
        self.sim_time(self.t)

    def run(
        self,
        n_steps: Optional[int] = None,
        seed: Optional[int] = None,
        v_init: Optional[float] = None,
    ) -> StateRecorder:
        """
        Runs the model from initial conditions.

        :param n_steps: number of steps; defaults to tstop / dt
        :param seed: if given, the generators are reseeded before the run
        :param v_init: initial membrane potential (mV)
        :return: :class:'StateRecorder' with the probe recordings
        """
        if n_steps is None:
            n_steps = self.env.simulation.n_steps
        if seed is not None:
            self.reseed(seed)
        self.initialize(v_init)
        st = time.time()
        for _ in range(n_steps):
            self.step()
        logger.info(
            f"Simulator: ran {n_steps} steps ({n_steps * self.dt:.1f} ms) "
            f"in {time.time() - st:.2f} s"
        )
        return self.recorder

    def set_parameter(self, path: str, value: Any) -> None:
        """
        Changes a numeric model parameter between runs. Supported paths:

        - `Global Parameters.v_init`
        - `Simulation.tstop`
        - `Synapse Mechanisms.<mechanism>.<Alpha|Beta|Cmax|Cdur|Erev|Deadtime|gmax>`
        - `Synapse Groups.<group>.generator.<frequency|correlation|latency|duration>`
        - `Electrodes.<electrode>.<delay|dur|amp>`

        Structural parameters (temperature, time step, morphology, placement,
        capacity) require a new :class:'Env'.
        """
        env = self.env
        keys = path.split(".")
        section = keys[0]
        if section == "Global Parameters" and keys[1:] == ["v_init"]:
            env.global_parameters.v_init = value
        elif section == "Simulation" and keys[1:] == ["tstop"]:
            env.simulation.tstop = value
            self.sim_time.tstop = env.simulation.tstop
        elif section == "Synapse Mechanisms" and len(keys) == 3:
            name, param_name = keys[1], keys[2]
            if name not in env.synapse_mechanism_params:
                raise KeyError(f"set_parameter: unknown synapse mechanism {name}")
            if param_name == "capacity":
                raise ValueError(
                    f"set_parameter: {path} is structural and cannot be changed at runtime"
                )
            setattr(env.synapse_mechanism_params[name], param_name, value)
        elif (
            section == "Synapse Groups"
            and len(keys) == 4
            and keys[2] == "generator"
            and keys[3] in runtime_generator_params
        ):
            name, param_name = keys[1], keys[3]
            if name not in env.synapse_groups:
                raise KeyError(f"set_parameter: unknown synapse group {name}")
            generator_config = env.synapse_groups[name].generator
            setattr(generator_config, param_name, value)
            if name in env.generators:
                setattr(
                    env.generators[name],
                    param_name,
                    getattr(generator_config, param_name),
                )
        elif (
            section == "Electrodes"
            and len(keys) == 3
            and keys[2] in runtime_electrode_params
        ):
            name, param_name = keys[1], keys[2]
            if name not in env.electrodes:
                raise KeyError(f"set_parameter: unknown electrode {name}")
            electrode_config = env.electrode_configs[name]
            setattr(electrode_config, param_name, value)
            setattr(
                env.electrodes[name],
                param_name,
                getattr(electrode_config, param_name),
            )
        else:
            raise ValueError(
                f"set_parameter: {path} is not a runtime parameter"
            )
        logger.info(f"set_parameter: {path} = {value}")
