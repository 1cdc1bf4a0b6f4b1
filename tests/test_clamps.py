import numpy as np
import pytest
from pyramidal_sim.clamps.cell import (
    measure_deflection,
    measure_input_resistance,
    measure_passive,
    measure_vm_statistics,
)
from pyramidal_sim.env import Env
from pyramidal_sim.runtime import Simulator


def quiet_groups():
    return {
        "Exc": {
            "type": "excitatory",
            "mechanism": "AMPA",
            "sections": ["dend"],
            "unit_area": 20.0,
            "generator": {"frequency": 0.0},
        }
    }


def test_measure_deflection():
    t = np.arange(0.0, 100.0, 0.5)
    v = np.full(len(t), -70.0)
    window = (t >= 20.0) & (t < 60.0)
    v[window] = -70.0 - 5.0 * (1.0 - np.exp(-(t[window] - 20.0) / 5.0))
    results = measure_deflection(t, v, 20.0, 60.0, stim_amp=-0.1)
    assert results["v_baseline"] == -70.0
    assert results["t_peak"] == pytest.approx(59.5)
    assert results["v_peak"] == pytest.approx(v[window].min())

    results = measure_deflection(t, -140.0 - v, 20.0, 60.0, stim_amp=0.1)
    assert results["v_peak"] == pytest.approx(-140.0 - v[window].min())


def test_input_resistance_passive(small_model):
    env = Env(config=small_model(groups=quiet_groups()))
    stim_amp = -0.05
    results = measure_input_resistance(
        env, stim_amp=stim_amp, seed=1, t_start=30.0, n_steps=500
    )

    solver = env.solver
    i_inj = np.zeros(len(env.cell))
    i_inj[env.cell.root.index] = stim_amp
    v_rest = solver.steady_state()[0]
    v_on = solver.steady_state(i_inj=i_inj)[0]
    expected = (v_on - v_rest) / stim_amp
    assert results["Rin"] > 0.0
    assert results["Rin"] == pytest.approx(expected, rel=1e-3)
    assert results["v_on"] < results["v_off"]

    ## electrode settings are restored
    assert env.electrodes["soma"].amp == 0.0
    assert env.electrodes["soma"].dur == 0.0


def test_input_resistance_bombardment(small_model):
    env = Env(config=small_model())
    results = measure_input_resistance(
        env, stim_amp=-0.1, seed=5, t_start=10.0, n_steps=400
    )
    assert results["Rin"] > 0.0
    ## both runs see the same release sequence
    again = measure_input_resistance(
        env, stim_amp=-0.1, seed=5, t_start=10.0, n_steps=400
    )
    assert again["Rin"] == results["Rin"]


def test_input_resistance_new_electrode(small_model):
    env = Env(config=small_model(groups=quiet_groups()))
    results = measure_input_resistance(
        env, stim_amp=0.05, seed=1, t_start=30.0, n_steps=500, electrode="rin"
    )
    assert "rin" in env.electrodes
    assert results["v_on"] > results["v_off"]
    with pytest.raises(ValueError):
        measure_input_resistance(env, stim_amp=0.0)


def test_measure_passive(small_model):
    env = Env(config=small_model(groups=quiet_groups()))
    results = measure_passive(env, stim_amp=-0.05, prelength=10.0, stimdur=40.0)
    reference = measure_input_resistance(
        env, stim_amp=-0.05, seed=1, t_start=30.0, n_steps=500
    )
    assert results["v_peak"] < results["v_baseline"]
    assert results["Rin"] == pytest.approx(reference["Rin"], rel=1e-2)


def test_measure_vm_statistics(small_model):
    env = Env(config=small_model())
    stats = measure_vm_statistics(env, seed=2, t_start=10.0, bins=20, n_steps=300)
    assert stats["probe"] == "soma"
    assert stats["min"] <= stats["mean"] <= stats["max"]
    assert stats["sd"] >= 0.0
    assert stats["hist_counts"].sum() == 41
    assert len(stats["hist_edges"]) == 21

    sim = Simulator(env)
    sim.run(n_steps=300, seed=2)
    ## same statistics as the recorder summary, with the sample standard deviation
    _, v = sim.recorder.trace("soma", t_start=10.0)
    assert stats["sd"] == pytest.approx(np.std(v, ddof=1))
    summary = sim.recorder.summary("soma", t_start=10.0)
    for key in ("n", "mean", "sd", "skewness", "kurtosis", "min", "max"):
        assert stats[key] == pytest.approx(summary[key])

    again = measure_vm_statistics(
        env, seed=2, t_start=10.0, bins=20, n_steps=300, simulator=sim
    )
    assert again["mean"] == stats["mean"]
