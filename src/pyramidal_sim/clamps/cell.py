"""
Measurements on the bombarded cell: voltage statistics and input resistance
from paired current injection runs.
"""

from typing import Any, Dict, Optional

import numpy as np
from pyramidal_sim.config import ElectrodeConfig
from pyramidal_sim.env import Env
from pyramidal_sim.runtime import Simulator
from pyramidal_sim.stimulus import IClamp
from pyramidal_sim.utils import get_module_logger

# This logger will inherit its settings from the root logger, created in pyramidal_sim.env
logger = get_module_logger(__name__)


def measure_deflection(t, v, t0, t1, stim_amp=None):
    """Measure voltage deflection (min or max, between start and end)."""

    t = np.asarray(t)
    v = np.asarray(v)
    start_index = int(np.argwhere(t >= t0 * 0.999)[0][0])
    end_index = int(np.argwhere(t >= t1 * 0.999)[0][0])

    deflect_fn = np.argmin
    if stim_amp is not None and (stim_amp > 0):
        deflect_fn = np.argmax

    v_window = v[start_index:end_index]
    peak_index = int(deflect_fn(v_window)) + start_index

    return {
        "t_peak": t[peak_index],
        "v_peak": v[peak_index],
        "peak_index": peak_index,
        "t_baseline": t[start_index],
        "v_baseline": v[start_index],
        "baseline_index": start_index,
        "stim_amp": stim_amp,
    }


def get_electrode(env: Env, name: str, section: str = "soma") -> IClamp:
    """Returns the named electrode, adding one at the centre of `section` if it does not exist."""
    if name not in env.electrodes:
        env.electrode_configs[name] = ElectrodeConfig(section=section)
        env.electrodes[name] = IClamp(
            env.cell.get_compartment(section), loc=0.5, name=name
        )
    return env.electrodes[name]


def measure_vm_statistics(
    env: Env,
    seed: Optional[int] = None,
    t_start: float = 0.0,
    probe: Optional[str] = None,
    bins: int = 50,
    n_steps: Optional[int] = None,
    simulator: Optional[Simulator] = None,
) -> Dict[str, Any]:
    """
    Runs the model and returns the :meth:'StateRecorder.summary' statistics
    and histogram of the probe voltage, discarding samples before `t_start`.
    """
    if simulator is None:
        simulator = Simulator(env)
    if probe is None:
        probe = env.simulation.probes[0]
    recorder = simulator.run(n_steps=n_steps, seed=seed)
    summary = recorder.summary(probe, t_start=t_start)
    if summary["n"] == 0:
        raise RuntimeError(
            f"measure_vm_statistics: no samples of {probe} after t = {t_start} ms"
        )
    counts, edges = recorder.histogram(probe, bins=bins, t_start=t_start)
    results = {"probe": probe}
    results.update(summary)
    results["hist_counts"] = counts
    results["hist_edges"] = edges
    logger.info(
        f"measure_vm_statistics: {probe} Vm = {results['mean']:.3f} +/- {results['sd']:.3f} mV"
    )
    return results


def measure_input_resistance(
    env: Env,
    stim_amp: float = -0.1,
    seed: Optional[int] = None,
    t_start: float = 0.0,
    electrode: str = "soma",
    probe: Optional[str] = None,
    n_steps: Optional[int] = None,
) -> Dict[str, float]:
    """
    Estimates the input resistance from two runs with identical presynaptic
    release sequences, one without and one with a constant current injected
    at the electrode:

        Rin = (mean V_on - mean V_off) / stim_amp

    :param env: :class:'Env'
    :param stim_amp: injected current (nA)
    :param seed: generator seed used for both runs; defaults to the seed of the env
    :param t_start: samples before this time are discarded (ms)
    :param electrode: name of the electrode; one is added at the soma if it does not exist
    :param probe: probe used for the voltage; defaults to the first configured probe
    :return: dict with Rin (MOhm) and the mean voltages of both runs (mV)
    """
    if stim_amp == 0.0:
        raise ValueError("measure_input_resistance: stim_amp must be non-zero")
    if seed is None:
        seed = env.random_seed

    simulator = Simulator(env)
    get_electrode(env, electrode)
    path = f"Electrodes.{electrode}"
    saved = {
        param_name: getattr(env.electrodes[electrode], param_name)
        for param_name in ("delay", "dur", "amp")
    }
    if n_steps is None:
        n_steps = env.simulation.n_steps
    duration = n_steps * env.dt + env.dt

    try:
        simulator.set_parameter(f"{path}.delay", 0.0)
        simulator.set_parameter(f"{path}.dur", duration)

        simulator.set_parameter(f"{path}.amp", 0.0)
        off = measure_vm_statistics(
            env, seed=seed, t_start=t_start, probe=probe, n_steps=n_steps,
            simulator=simulator,
        )
        simulator.set_parameter(f"{path}.amp", stim_amp)
        on = measure_vm_statistics(
            env, seed=seed, t_start=t_start, probe=probe, n_steps=n_steps,
            simulator=simulator,
        )
    finally:
        for param_name, value in saved.items():
            simulator.set_parameter(f"{path}.{param_name}", value)

    Rin = (on["mean"] - off["mean"]) / stim_amp
    results = {
        "Rin": Rin,
        "v_off": off["mean"],
        "v_on": on["mean"],
        "sd_off": off["sd"],
        "sd_on": on["sd"],
        "stim_amp": stim_amp,
    }
    logger.info(f"measure_input_resistance: results = {results}")
    return results


def measure_passive(
    env: Env,
    stim_amp: float = -0.1,
    prelength: float = 100.0,
    stimdur: float = 200.0,
    seed: Optional[int] = None,
    electrode: str = "soma",
    probe: Optional[str] = None,
) -> Dict[str, float]:
    """
    Estimates the input resistance from the peak deflection produced by a
    current step of duration `stimdur` applied after `prelength` ms.
    """
    if stim_amp == 0.0:
        raise ValueError("measure_passive: stim_amp must be non-zero")
    simulator = Simulator(env)
    get_electrode(env, electrode)
    if probe is None:
        probe = env.simulation.probes[0]
    path = f"Electrodes.{electrode}"
    saved = {
        param_name: getattr(env.electrodes[electrode], param_name)
        for param_name in ("delay", "dur", "amp")
    }
    n_steps = int(round((prelength + stimdur) / env.dt)) + 1
    try:
        simulator.set_parameter(f"{path}.delay", prelength)
        simulator.set_parameter(f"{path}.dur", stimdur)
        simulator.set_parameter(f"{path}.amp", stim_amp)
        recorder = simulator.run(n_steps=n_steps, seed=seed)
    finally:
        for param_name, value in saved.items():
            simulator.set_parameter(f"{path}.{param_name}", value)

    t, v = recorder.trace(probe)
    deflection_results = measure_deflection(
        t, v, prelength, prelength + stimdur, stim_amp=stim_amp
    )
    v_peak = deflection_results["v_peak"]
    v_baseline = deflection_results["v_baseline"]
    Rin = (v_peak - v_baseline) / stim_amp
    results = {
        "Rin": float(Rin),
        "v_peak": float(v_peak),
        "v_baseline": float(v_baseline),
        "t_peak": float(deflection_results["t_peak"]),
    }
    logger.info(f"measure_passive: results = {results}")
    return results
