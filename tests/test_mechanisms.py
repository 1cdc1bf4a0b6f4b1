import math

import numpy as np
import pytest
from pyramidal_sim.cable import CableSolver
from pyramidal_sim.cells import init_biophysics, make_cell
from pyramidal_sim.config import Config
from pyramidal_sim.mechanisms import (
    KdrTraub,
    MCurrent,
    NaTraub,
    make_mechanism,
    vtrap,
)


def test_vtrap():
    assert vtrap(0.0, 4.0) == pytest.approx(4.0)
    assert vtrap(1e-9, 4.0) == pytest.approx(4.0)
    x = np.asarray([-10.0, 5.0, 20.0])
    np.testing.assert_allclose(vtrap(x, 4.0), x / (np.exp(x / 4.0) - 1.0))


@pytest.mark.parametrize("cls", [NaTraub, KdrTraub, MCurrent])
def test_gating_bounds(cls):
    n = 20
    mech = cls(np.arange(n), np.full(n, 100.0), {})
    rng = np.random.RandomState(1)
    v = rng.uniform(-120.0, 80.0, size=n)
    mech.init(v)
    for _ in range(500):
        v = rng.uniform(-120.0, 80.0, size=n)
        mech.advance(v, rng.uniform(0.001, 5.0))
        for state in mech.gating.values():
            assert np.all(state >= 0.0)
            assert np.all(state <= 1.0)
    assert np.all(mech.conductance() >= 0.0)


def test_steady_state_at_rest():
    v = np.asarray([-80.0])
    na = NaTraub([0], [100.0], {"vtraub": [-55.0]})
    na.init(v)
    assert na.gating["m"][0] < 0.01
    assert na.gating["h"][0] > 0.9
    im = MCurrent([0], [100.0], {})
    im.init(v)
    assert im.gating["m"][0] < 0.05


def test_current():
    kdr = KdrTraub([0], [1000.0], {"gbar": [0.01]})
    kdr.gating["n"][:] = 1.0
    ## 0.01 S/cm2 over 1000 um2 is 0.1 uS
    assert kdr.conductance()[0] == pytest.approx(0.1)
    assert kdr.current(np.asarray([-90.0]))[0] == pytest.approx(0.0)
    assert kdr.current(np.asarray([-40.0]))[0] == pytest.approx(5.0)


def test_temperature():
    na36 = NaTraub([0], [100.0], {}, celsius=36.0)
    na26 = NaTraub([0], [100.0], {}, celsius=26.0)
    tau36 = na36.steady_states(np.asarray([-60.0]))["m"][1]
    tau26 = na26.steady_states(np.asarray([-60.0]))["m"][1]
    assert tau26[0] == pytest.approx(3.0 * tau36[0])


def test_make_mechanism_errors():
    with pytest.raises(ValueError):
        make_mechanism("cat", [0], [1.0], {})
    with pytest.raises(ValueError):
        make_mechanism("na", [0], [1.0], {"gkbar": [0.1]})
    with pytest.raises(ValueError):
        make_mechanism("na", [0, 1], [1.0, 1.0], {"gbar": [0.1]})


def test_spiking():
    cell = make_cell([{"name": "soma", "type": "soma", "L": 20.0, "diam": 20.0}])
    mech_dict = Config(
        {
            "Biophysics": {
                "soma": {
                    "pas": {"g": {"value": 1e-4}, "e": {"value": -70.0}},
                    "na": {"gbar": {"value": 0.05}, "vtraub": {"value": -55.0}},
                    "kdr": {"gbar": {"value": 0.005}, "vtraub": {"value": -55.0}},
                }
            }
        }
    ).biophysics
    mechanisms = init_biophysics(cell, mech_dict)
    dt = 0.025
    solver = CableSolver(cell, dt)
    v = np.full(1, -70.0)
    for mech in mechanisms.values():
        mech.init(v)

    i_inj = np.asarray([0.2])
    v_max = -math.inf
    for _ in range(int(50.0 / dt)):
        g = np.zeros(1)
        gE = np.zeros(1)
        for mech in mechanisms.values():
            mech.advance(v, dt)
            gc = mech.conductance()
            np.add.at(g, mech.indices, gc)
            np.add.at(gE, mech.indices, gc * mech.reversal_potential())
        v = solver.step(v, g, gE, i_inj)
        v_max = max(v_max, v[0])
    assert v_max > 0.0
