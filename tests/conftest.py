import copy

import pytest
from pyramidal_sim.config import Config


def passive_biophysics(g_pas=5e-4, e_pas=-70.0, Ra=150.0, cm=1.0):
    return {
        "soma": {
            "cable": {"Ra": {"value": Ra}, "cm": {"value": cm}},
            "pas": {"g": {"value": g_pas}, "e": {"value": e_pas}},
        },
        "dend": {
            "cable": {"Ra": {"origin": "soma"}, "cm": {"origin": "soma"}},
            "pas": {"g": {"origin": "soma"}, "e": {"origin": "soma"}},
        },
    }


def small_model_data(biophysics=None, groups=None):
    """Soma with one four-compartment basal dendrite."""
    if biophysics is None:
        biophysics = passive_biophysics()
    if groups is None:
        groups = {
            "Exc": {
                "type": "excitatory",
                "mechanism": "AMPA",
                "sections": ["dend"],
                "unit_area": 20.0,
                "generator": {"frequency": 20.0, "correlation": 0.1},
            },
            "Inh": {
                "type": "inhibitory",
                "mechanism": "GABAa",
                "sections": ["soma"],
                "unit_area": 50.0,
                "generator": {"frequency": 5.5, "correlation": 0.0},
            },
        }
    return {
        "Global Parameters": {"celsius": 36.0, "v_init": -70.0},
        "Simulation": {
            "dt": 0.1,
            "tstop": 50.0,
            "rec_dt": 0.5,
            "probes": ["soma"],
            "status_interval": 0.0,
        },
        "Random Seeds": {"Presynaptic Generators": 3},
        "Morphology": [
            {"name": "soma", "type": "soma", "L": 20.0, "diam": 20.0},
            {
                "name": "dend",
                "type": "basal",
                "L": 100.0,
                "diam": 2.0,
                "nseg": 4,
                "parent": "soma",
                "parent_loc": 1.0,
            },
        ],
        "Biophysics": biophysics,
        "Synapse Mechanisms": {
            "AMPA": {
                "Alpha": 1.1,
                "Beta": 0.67,
                "Cmax": 1.0,
                "Cdur": 1.0,
                "Erev": 0.0,
                "Deadtime": 1.0,
                "gmax": 0.0012,
            },
            "GABAa": {
                "Alpha": 5.0,
                "Beta": 0.18,
                "Cmax": 1.0,
                "Cdur": 1.0,
                "Erev": -80.0,
                "Deadtime": 1.0,
                "gmax": 0.0006,
            },
        },
        "Synapse Groups": groups,
        "Electrodes": {
            "soma": {"section": "soma", "loc": 0.5, "delay": 0.0, "dur": 0.0, "amp": 0.0}
        },
    }


@pytest.fixture
def small_model():
    """Returns a factory of :class:'Config' objects for a small soma and dendrite model."""

    def factory(**kwargs):
        return Config(copy.deepcopy(small_model_data(**kwargs)))

    return factory
