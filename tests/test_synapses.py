import math
from collections import defaultdict

import numpy as np
import pytest
from pyramidal_sim.cells import make_cell
from pyramidal_sim.config import KineticSynapse, SynapseGroupConfig
from pyramidal_sim.stgen import PresynapticGenerator, PresynapticIndexError
from pyramidal_sim.synapses import (
    MultiSynapseMechanism,
    SynapseCapacityError,
    exptable,
    insert_group_syns,
    make_shared_synapse_mech,
    resolve_synapse_placement,
    synapse_seg_count,
)


def soma_cell():
    return make_cell([{"name": "soma", "type": "soma", "L": 20.0, "diam": 20.0}])


def dend_cell():
    return make_cell(
        [
            {"name": "soma", "type": "soma", "L": 20.0, "diam": 20.0},
            {
                "name": "dend",
                "type": "basal",
                "L": 200.0,
                "diam": 2.0,
                "nseg": 8,
                "parent": "soma",
            },
            {
                "name": "thin",
                "type": "apical",
                "L": 10.0,
                "diam": 0.1,
                "nseg": 2,
                "parent": "soma",
                "parent_loc": 0.0,
            },
        ]
    )


def test_exptable():
    assert exptable(-1.0) == pytest.approx(math.exp(-1.0))
    assert exptable(0.0) == 1.0
    assert exptable(-25.0) == 0.0
    assert exptable(-100.0) == 0.0
    assert exptable(30.0) == 0.0
    np.testing.assert_allclose(
        exptable(np.asarray([-30.0, -2.0, 2.0, 1000.0])),
        [0.0, math.exp(-2.0), math.exp(2.0), 0.0],
    )


@pytest.mark.parametrize(
    "area, unit_area, count",
    [
        (100.0, 10.0, 10),
        (104.9, 10.0, 10),
        (105.0, 10.0, 11),
        (4.9, 10.0, 0),
        (5.0, 10.0, 1),
        (0.0, 10.0, 0),
        (1256.6, 20.0, 63),
    ],
)
def test_density(area, unit_area, count):
    assert synapse_seg_count(area, unit_area) == count


def test_placement():
    cell = dend_cell()
    group = SynapseGroupConfig(
        type="excitatory", mechanism="AMPA", sections=["dend"], unit_area=20.0
    )
    placement = resolve_synapse_placement(cell, "Exc", group)
    dend = cell.sections["dend"]
    ## 25 um x 2 um compartments: 157.08 um2 -> 8 synapses; thin compartments are excluded
    assert placement.counts == [8] * 8
    assert placement.compartments == dend
    assert placement.total == 64
    expected_area = sum(c.area() for c in dend) + sum(
        c.area() for c in cell.sections["thin"]
    )
    assert placement.total_area == pytest.approx(expected_area)
    assert [r.link_offset for r in placement] == list(range(0, 64, 8))

    compartment, loc, index = placement.locate(17)
    assert compartment is dend[2]
    assert loc == pytest.approx(2.5 / 8)
    assert index == 17
    with pytest.raises(IndexError):
        placement.locate(64)


def test_distance_groups():
    cell = dend_cell()
    prox = resolve_synapse_placement(
        cell,
        "Prox",
        SynapseGroupConfig(
            type="inhibitory",
            mechanism="GABAa",
            sections=["soma", "dend"],
            unit_area=10.0,
            max_distance=60.0,
        ),
    )
    dist = resolve_synapse_placement(
        cell,
        "Dist",
        SynapseGroupConfig(
            type="inhibitory",
            mechanism="GABAa",
            sections=["dend"],
            unit_area=10.0,
            min_distance=60.0,
        ),
    )
    assert all(c.distance < 60.0 for c in prox.compartments)
    assert all(c.distance >= 60.0 for c in dist.compartments)
    assert not set(prox.compartments) & set(dist.compartments)
    assert prox.compartments[0] is cell.root


def test_empty_group():
    cell = dend_cell()
    group = SynapseGroupConfig(
        type="excitatory", mechanism="AMPA", sections=["apical"], unit_area=20.0
    )
    placement = resolve_synapse_placement(cell, "Thin", group)
    assert len(placement) == 0
    assert placement.total == 0
    mechanism = MultiSynapseMechanism("Thin.AMPA", KineticSynapse())
    assert insert_group_syns(mechanism, placement) == 0
    mechanism.init()
    mechanism.update(0.0, 0.1)
    assert len(mechanism.conductance()) == 0


def test_capacity():
    cell = soma_cell()
    mechanism = MultiSynapseMechanism("AMPA", KineticSynapse(capacity=3))
    syn = mechanism.add_instance(cell.root)
    for i in range(3):
        assert syn.add_link(i) == i
    for _ in range(3):
        with pytest.raises(SynapseCapacityError):
            syn.add_link(3)
    assert syn.nsyn == 3
    assert mechanism.nlinks == 3


def test_capacity_from_placement():
    cell = soma_cell()
    group = SynapseGroupConfig(
        type="excitatory", mechanism="AMPA", sections=["soma"], unit_area=1.0
    )
    placement = resolve_synapse_placement(cell, "Soma", group)
    assert placement.total == 1257
    mechanism = MultiSynapseMechanism("Soma.AMPA", KineticSynapse())
    with pytest.raises(SynapseCapacityError):
        insert_group_syns(mechanism, placement)


def test_shared_instance():
    cell = dend_cell()
    mechanism = MultiSynapseMechanism("AMPA", KineticSynapse())
    syns_dict = defaultdict(dict)
    a = make_shared_synapse_mech(mechanism, cell.root, syns_dict)
    b = make_shared_synapse_mech(mechanism, cell.root, syns_dict)
    c = make_shared_synapse_mech(mechanism, cell.sections["dend"][0], syns_dict)
    assert a is b
    assert a is not c
    assert len(mechanism) == 2


def single_link_mechanism(**params):
    cell = soma_cell()
    mechanism = MultiSynapseMechanism("AMPA", KineticSynapse(**params))
    syn = mechanism.add_instance(cell.root)
    syn.add_link(0)
    mechanism.init()
    return mechanism, syn


def test_ampa_waveform():
    """One link released at t = 5 ms with the default AMPA kinetics."""
    dt = 0.1
    params = KineticSynapse()
    mechanism, syn = single_link_mechanism()
    generator = PresynapticGenerator(
        "pre", 1, dt, frequency=1000.0 / dt, latency=5.0, duration=dt / 2.0, seed=1
    )
    mechanism.generator = generator

    t = []
    g = []
    for i in range(200):
        generator.step(i * dt)
        mechanism.update(i * dt, dt)
        t.append((i + 1) * dt)
        g.append(syn.conductance())
    t = np.asarray(t)
    g = np.asarray(g)

    assert np.all(g[t < 5.0 + 1e-9] == 0.0)
    rising = (t > 5.0 + 1e-9) & (t < 6.0 + 1e-9)
    assert np.all(np.diff(g[rising]) > 0.0)

    peak_index = int(np.argmax(g))
    assert t[peak_index] == pytest.approx(6.0)
    g_peak = params.gmax * params.Rinf * (1.0 - math.exp(-1.0 / params.Rtau))
    assert g[peak_index] == pytest.approx(g_peak, rel=1e-9)
    assert g[peak_index] < params.gmax * params.Rinf

    ## decay with time constant 1 / Beta after the end of the pulse
    decay = t >= 6.0 - 1e-9
    expected = g_peak * np.exp(-params.Beta * (t[decay] - 6.0))
    np.testing.assert_allclose(g[decay], expected, rtol=1e-9)
    assert g[np.argmin(np.abs(t - 15.0))] < 0.01 * g_peak
    assert syn.nopen == 0


def test_kinetic_positivity_and_decay():
    dt = 0.1
    cell = soma_cell()
    mechanism = MultiSynapseMechanism("GABAa", KineticSynapse(Alpha=5.0, Beta=0.18, Deadtime=0.5))
    syn = mechanism.add_instance(cell.root)
    n = 50
    for i in range(n):
        syn.add_link(i)
    mechanism.init()
    rng = np.random.RandomState(3)

    n_release = 500
    for i in range(n_release):
        released = rng.random_sample(n) < 0.2
        mechanism.update(i * dt, dt, released)
        assert syn.Ron >= 0.0
        assert syn.Roff >= 0.0
    assert mechanism.n_releases.sum() > 0

    quiet = np.zeros(n, dtype=bool)
    ron = []
    roff = []
    for i in range(n_release, n_release + 1000):
        mechanism.update(i * dt, dt, quiet)
        assert syn.Ron >= 0.0
        assert syn.Roff >= 0.0
        ron.append(syn.Ron)
        roff.append(syn.Roff)
    ## skip the steps in which pulses still end
    settle = int(math.ceil(1.0 / dt)) + 1
    assert np.all(np.diff(ron[settle:]) <= 0.0)
    assert np.all(np.diff(roff[settle:]) <= 0.0)
    assert roff[-1] < 1e-6 * max(roff)


def test_aggregate_matches_links():
    dt = 0.1
    cell = soma_cell()
    mechanism = MultiSynapseMechanism("AMPA", KineticSynapse())
    syn = mechanism.add_instance(cell.root)
    n = 20
    for i in range(n):
        syn.add_link(i)
    mechanism.init()
    rng = np.random.RandomState(4)
    for i in range(300):
        released = rng.random_sample(n) < 0.05
        mechanism.update(i * dt, dt, released)
        total = mechanism.link_state((i + 1) * dt).sum()
        assert syn.Ron + syn.Roff == pytest.approx(total, abs=1e-9)


@pytest.mark.parametrize("deadtime", [0.5, 2.5])
def test_refractory(deadtime):
    dt = 0.1
    mechanism, syn = single_link_mechanism(Deadtime=deadtime)
    released = np.ones(1, dtype=bool)
    onsets = []
    for i in range(500):
        t = i * dt
        before = mechanism.lastrelease[0]
        mechanism.update(t, dt, released)
        if mechanism.lastrelease[0] != before:
            onsets.append(t)
    intervals = np.diff(onsets)
    assert len(onsets) > 10
    assert np.all(intervals >= deadtime - 1e-9)
    ## a link is released again only after its pulse has ended
    assert np.all(intervals >= 1.0 - 1e-9)


def test_presynaptic_index_error():
    dt = 0.1
    cell = soma_cell()
    generator = PresynapticGenerator("Exc", 3, dt, seed=1)
    mechanism = MultiSynapseMechanism("Exc.AMPA", KineticSynapse(), generator=generator)
    syn = mechanism.add_instance(cell.root)
    syn.add_link(0)
    syn.add_link(5)
    mechanism.init()
    generator.step(0.0)
    with pytest.raises(PresynapticIndexError) as excinfo:
        mechanism.update(0.0, dt)
    assert "Exc.AMPA" in str(excinfo.value)
    assert "5" in str(excinfo.value)


def test_current():
    mechanism, syn = single_link_mechanism()
    mechanism.update(0.0, 0.1, np.ones(1, dtype=bool))
    g = syn.conductance()
    assert g > 0.0
    assert syn.current(-70.0) == pytest.approx(g * -70.0)
    np.testing.assert_allclose(
        mechanism.current(np.asarray([-70.0])), [g * -70.0]
    )
