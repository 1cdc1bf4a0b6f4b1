"""
Synapse placement and aggregated kinetic synapse mechanisms.

Placement converts compartment membrane area into integer synapse counts for
a synapse group. The aggregated mechanism represents every synapse of a
group that shares a compartment as a single mechanism instance: all of its
links share the rate constants of a first-order transmitter binding model
(Destexhe, Mainen & Sejnowski 1994), so the summed binding state is tracked
as two aggregate scalars, Ron for links currently receiving transmitter and
Roff for links that are not, plus per-link release timestamps.
"""

import bisect
import math
from collections import defaultdict
from typing import (
    DefaultDict,
    Dict,
    Iterator,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
)

import numpy as np
from pyramidal_sim.cells import Compartment, PyramidalCell, filter_nodes
from pyramidal_sim.config import KineticSynapse, SynapseGroupConfig
from pyramidal_sim.stgen import EPS, PresynapticGenerator
from pyramidal_sim.utils import get_module_logger

# This logger will inherit its settings from the root logger, created in pyramidal_sim.env
logger = get_module_logger(__name__)

## aggregate states below this value are set to zero
STATE_TOLERANCE = 1e-12


class SynapseCapacityError(RuntimeError):
    """Raised when more links are attached to an aggregated mechanism than it can hold."""


def exptable(x):
    """
    Bounded exponential: exp(x) for -25 < x < 25 and 0 otherwise.
    Arguments are non-positive in normal use.
    """
    x = np.asarray(x, dtype=np.float64)
    inside = (x > -25.0) & (x < 25.0)
    result = np.where(inside, np.exp(np.where(inside, x, 0.0)), 0.0)
    if result.ndim == 0:
        return float(result)
    return result


# ------------------------------- Placement ------------------------------------------------------------------------- #


def synapse_seg_count(area: float, unit_area: float) -> int:
    """
    Number of synapses on a compartment of the given membrane area, rounding
    half up; compartments smaller than half the unit area receive none.
    """
    return int(math.floor(area / unit_area + 0.5))


def synapse_seg_counts(
    compartments: Sequence[Compartment], unit_area: float
) -> List[int]:
    """
    Computes per-compartment synapse counts for a uniform density of one
    synapse per `unit_area` um2 of membrane.
    """
    if unit_area <= 0.0:
        raise ValueError(f"synapse_seg_counts: unit area must be positive, got {unit_area}")
    return [synapse_seg_count(c.area(), unit_area) for c in compartments]


class SynapsePlacement(NamedTuple):
    compartment: Compartment
    loc: float
    count: int
    link_offset: int


class PlacementTable:
    """
    Immutable placement of the synapses of one group. Synapses are numbered
    consecutively in compartment order; the synapses of a record occupy the
    local indices [link_offset, link_offset + count).
    """

    def __init__(
        self,
        name: str,
        records: Sequence[SynapsePlacement],
        total_area: float,
        generator_offset: int = 0,
    ) -> None:
        self.name = name
        self.records: Tuple[SynapsePlacement, ...] = tuple(records)
        self.total_area = total_area
        self.generator_offset = generator_offset
        self._offsets = [r.link_offset for r in self.records]
        self.total = sum(r.count for r in self.records)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[SynapsePlacement]:
        return iter(self.records)

    def __repr__(self) -> str:
        return (
            f"PlacementTable({self.name}, compartments={len(self)}, synapses={self.total})"
        )

    @property
    def compartments(self) -> List[Compartment]:
        return [r.compartment for r in self.records]

    @property
    def counts(self) -> List[int]:
        return [r.count for r in self.records]

    def locate(self, syn_index: int) -> Tuple[Compartment, float, int]:
        """
        Maps a group-local synapse index to its compartment, its position
        within the compartment's section and its presynaptic generator index.
        """
        if syn_index < 0 or syn_index >= self.total:
            raise IndexError(
                f"{self.name}: synapse index {syn_index} out of range for {self.total} synapses"
            )
        i = bisect.bisect_right(self._offsets, syn_index) - 1
        record = self.records[i]
        return record.compartment, record.loc, self.generator_offset + syn_index


def resolve_synapse_placement(
    cell: PyramidalCell,
    name: str,
    group: SynapseGroupConfig,
    generator_offset: int = 0,
) -> PlacementTable:
    """
    Builds the placement table of a synapse group from the compartments
    of the given section types within the group's distance range.

    :param cell: :class:'PyramidalCell'
    :param name: name of the synapse group
    :param group: :class:'SynapseGroupConfig'
    :param generator_offset: presynaptic index of the first synapse of the group
    :return: :class:'PlacementTable'
    """
    candidates = filter_nodes(
        cell,
        swc_types=list(group.sections),
        min_distance=group.min_distance,
        max_distance=group.max_distance,
    )
    counts = synapse_seg_counts(candidates, group.unit_area)
    records = []
    link_offset = 0
    for compartment, count in zip(candidates, counts):
        if count == 0:
            continue
        records.append(
            SynapsePlacement(compartment, compartment.loc, count, link_offset)
        )
        link_offset += count
    total_area = float(sum(c.area() for c in candidates))
    return PlacementTable(name, records, total_area, generator_offset=generator_offset)


# ------------------------------- Aggregated kinetic mechanisms ----------------------------------------------------- #


class MultiSynapse:
    """
    One aggregated synapse instance bound to a compartment. Instances are
    created through :class:'MultiSynapseMechanism', which owns the state
    arrays of all of its instances.
    """

    def __init__(
        self, mechanism: "MultiSynapseMechanism", index: int, compartment: Compartment
    ) -> None:
        self.mechanism = mechanism
        self.index = index
        self.compartment = compartment
        self.links: List[int] = []

    def __repr__(self) -> str:
        return f"MultiSynapse({self.mechanism.name}, {self.compartment.name}, nsyn={self.nsyn})"

    @property
    def nsyn(self) -> int:
        return len(self.links)

    @property
    def capacity(self) -> int:
        return self.mechanism.params.capacity

    def add_link(self, presyn_index: int) -> int:
        """
        Attaches the given presynaptic generator index and returns the link
        slot it occupies within this instance.
        """
        if self.nsyn >= self.capacity:
            raise SynapseCapacityError(
                f"{self.mechanism.name}: cannot attach link {self.nsyn + 1} to "
                f"compartment {self.compartment.name}; capacity is {self.capacity}"
            )
        self.links.append(int(presyn_index))
        self.mechanism._add_link(self.index, int(presyn_index))
        return self.nsyn - 1

    @property
    def Ron(self) -> float:
        self.mechanism._ensure_allocated()
        return float(self.mechanism.Ron[self.index])

    @property
    def Roff(self) -> float:
        self.mechanism._ensure_allocated()
        return float(self.mechanism.Roff[self.index])

    @property
    def nopen(self) -> int:
        self.mechanism._ensure_allocated()
        return int(self.mechanism.nopen[self.index])

    def conductance(self) -> float:
        """Conductance (uS)."""
        return self.mechanism.params.gmax * (self.Ron + self.Roff)

    def current(self, v: Optional[float] = None) -> float:
        """Outward current (nA) at membrane voltage v, by default the compartment voltage."""
        if v is None:
            v = self.compartment.v
        return self.conductance() * (v - self.mechanism.params.Erev)


class MultiSynapseMechanism:
    """
    Kinetic synapse mechanism type with shared rate constants, holding the
    state of all of its per-compartment instances and their links.

    Link states are updated at every step as follows: links whose release
    duration `Cdur` has elapsed move their binding state from Ron to Roff;
    then idle links whose presynaptic index releases, and whose previous
    release began at least `Deadtime` ago, move their state from Roff to Ron;
    finally the aggregates relax over the time step,

        Ron  -> nopen Rinf + (Ron - nopen Rinf) exp(-dt / Rtau)
        Roff -> Roff exp(-Beta dt)
    """

    def __init__(
        self,
        name: str,
        params: KineticSynapse,
        generator: Optional[PresynapticGenerator] = None,
    ) -> None:
        """
        :param name: mechanism name used in diagnostics
        :param params: :class:'KineticSynapse'; shared by reference, changes take effect at the next step
        :param generator: :class:'PresynapticGenerator' supplying release indicators
        """
        self.name = name
        self.params = params
        self.generator = generator
        self.instances: List[MultiSynapse] = []
        self._link_owner: List[int] = []
        self._link_index: List[int] = []
        self._allocate()

    def __len__(self) -> int:
        return len(self.instances)

    def __repr__(self) -> str:
        return f"MultiSynapseMechanism({self.name}, instances={len(self)}, links={self.nlinks})"

    @property
    def nlinks(self) -> int:
        return len(self._link_index)

    def add_instance(self, compartment: Compartment) -> MultiSynapse:
        syn = MultiSynapse(self, len(self.instances), compartment)
        self.instances.append(syn)
        self._stale = True
        return syn

    def _add_link(self, owner: int, presyn_index: int) -> None:
        self._link_owner.append(owner)
        self._link_index.append(presyn_index)
        self._stale = True

    def _ensure_allocated(self) -> None:
        if self._stale:
            self._allocate()

    def _allocate(self) -> None:
        n_inst = len(self.instances)
        n_links = len(self._link_index)
        self.compartment_indices = np.asarray(
            [syn.compartment.index for syn in self.instances], dtype=np.int64
        )
        self.owner = np.asarray(self._link_owner, dtype=np.int64)
        self.links = np.asarray(self._link_index, dtype=np.int64)
        self.Ron = np.zeros(n_inst)
        self.Roff = np.zeros(n_inst)
        self.nopen = np.zeros(n_inst, dtype=np.int64)
        self.on = np.zeros(n_links, dtype=bool)
        self.lastrelease = np.full(n_links, -1e9)
        self.r0 = np.zeros(n_links)
        self.t0 = np.zeros(n_links)
        self.n_releases = np.zeros(n_links, dtype=np.int64)
        self._stale = False

    def init(self) -> None:
        """Resets all links to idle and all aggregates to zero."""
        self._ensure_allocated()
        self.Ron[:] = 0.0
        self.Roff[:] = 0.0
        self.nopen[:] = 0
        self.on[:] = False
        self.lastrelease[:] = -1e9
        self.r0[:] = 0.0
        self.t0[:] = 0.0
        self.n_releases[:] = 0

    def _accumulate(self, mask: np.ndarray, r: np.ndarray) -> np.ndarray:
        return np.bincount(
            self.owner[mask], weights=r, minlength=len(self.instances)
        )

    def _clamp(self) -> None:
        self.Ron[self.Ron < STATE_TOLERANCE] = 0.0
        self.Roff[self.Roff < STATE_TOLERANCE] = 0.0

    def update(
        self, t: float, dt: float, released: Optional[np.ndarray] = None
    ) -> None:
        """
        Processes release transitions at time t and advances the aggregates to t + dt.

        :param t: current simulation time (ms)
        :param dt: time step (ms)
        :param released: release indicator per link; read from the generator when omitted
        """
        self._ensure_allocated()
        if self.nlinks == 0:
            return
        if released is None:
            released = self.generator.read(self.links, reader=self.name)
        params = self.params
        Beta = params.Beta
        Rinf = params.Rinf
        Rtau = params.Rtau

        ## end of transmitter pulse
        ending = self.on & (t - self.lastrelease >= params.Cdur - EPS)
        if np.any(ending):
            r = Rinf + (self.r0[ending] - Rinf) * exptable(
                -(t - self.t0[ending]) / Rtau
            )
            delta = self._accumulate(ending, r)
            self.Ron -= delta
            self.Roff += delta
            self.nopen -= np.bincount(self.owner[ending], minlength=len(self.instances))
            self.r0[ending] = r
            self.t0[ending] = t
            self.on[ending] = False

        ## onset of transmitter pulse
        starting = (
            released
            & ~self.on
            & (t - self.lastrelease >= params.Deadtime - EPS)
        )
        if np.any(starting):
            r = self.r0[starting] * exptable(-Beta * (t - self.t0[starting]))
            delta = self._accumulate(starting, r)
            self.Roff -= delta
            self.Ron += delta
            self.nopen += np.bincount(
                self.owner[starting], minlength=len(self.instances)
            )
            self.r0[starting] = r
            self.t0[starting] = t
            self.lastrelease[starting] = t
            self.on[starting] = True
            self.n_releases[starting] += 1

        self._clamp()
        R_target = self.nopen * Rinf
        self.Ron = R_target + (self.Ron - R_target) * exptable(-dt / Rtau)
        self.Roff = self.Roff * exptable(-Beta * dt)
        self._clamp()

    def link_state(self, t: float) -> np.ndarray:
        """Returns the binding state of every link at time t, reconstructed from its last transition."""
        self._ensure_allocated()
        p = self.params
        return np.where(
            self.on,
            p.Rinf + (self.r0 - p.Rinf) * exptable(-(t - self.t0) / p.Rtau),
            self.r0 * exptable(-p.Beta * (t - self.t0)),
        )

    def conductance(self) -> np.ndarray:
        """Conductance (uS) of every instance."""
        self._ensure_allocated()
        return self.params.gmax * (self.Ron + self.Roff)

    def current(self, v: np.ndarray) -> np.ndarray:
        """Outward current (nA) of every instance given the compartment voltages of the cell."""
        return self.conductance() * (v[self.compartment_indices] - self.params.Erev)


def syn_in_compartment(
    mech_name: str,
    compartment: Compartment,
    syns_dict: DefaultDict[Compartment, Dict[str, MultiSynapse]],
) -> Optional[MultiSynapse]:
    return syns_dict[compartment].get(mech_name, None)


def make_shared_synapse_mech(
    mechanism: MultiSynapseMechanism,
    compartment: Compartment,
    syns_dict: DefaultDict[Compartment, Dict[str, MultiSynapse]],
) -> MultiSynapse:
    """
    If an instance of the given mechanism already exists in the given
    compartment, it is returned. Otherwise, this method creates one and adds
    it to the provided syns_dict before it is returned.

    :param mechanism: :class:'MultiSynapseMechanism'
    :param compartment: :class:'Compartment'
    :param syns_dict: nested defaultdict
    :return: :class:'MultiSynapse'
    """
    syn = syn_in_compartment(mechanism.name, compartment, syns_dict)
    if syn is None:
        syn = mechanism.add_instance(compartment)
        syns_dict[compartment][mechanism.name] = syn
    return syn


def insert_group_syns(
    mechanism: MultiSynapseMechanism,
    placement: PlacementTable,
    syns_dict: Optional[DefaultDict[Compartment, Dict[str, MultiSynapse]]] = None,
) -> int:
    """
    Instantiates one shared mechanism instance per placed compartment and
    links every synapse of the group to its presynaptic generator index.

    :return: number of links inserted
    """
    if syns_dict is None:
        syns_dict = defaultdict(dict)
    syn_count = 0
    for record in placement:
        syn = make_shared_synapse_mech(mechanism, record.compartment, syns_dict)
        for i in range(record.count):
            syn.add_link(placement.generator_offset + record.link_offset + i)
            syn_count += 1
    return syn_count
