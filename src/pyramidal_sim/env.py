from typing import Any, Dict, Optional, Union

from collections import defaultdict

from pyramidal_sim.cable import CableSolver
from pyramidal_sim.cells import (
    PyramidalCell,
    correct_cell_for_spines_cm,
    correct_cell_for_spines_g_pas,
    init_biophysics,
    make_cell,
    report_topology,
)
from pyramidal_sim.config import (
    Config,
    ElectrodeConfig,
    GlobalParameters,
    KineticSynapse,
    SimulationConfig,
    SynapseGroupConfig,
)
from pyramidal_sim.stgen import PresynapticGenerator, derive_seeds
from pyramidal_sim.stimulus import IClamp, make_electrodes
from pyramidal_sim.synapses import (
    MultiSynapse,
    MultiSynapseMechanism,
    PlacementTable,
    insert_group_syns,
    resolve_synapse_placement,
)
from pyramidal_sim.utils import get_root_logger, update_dict

logger = get_root_logger()

GENERATOR_SEED_KEY = "Presynaptic Generators"


class Env:
    """
    Single cell bombardment model: the configured cell, its synapse
    placements, presynaptic generators, aggregated synapse mechanisms and
    electrodes.
    """

    def __init__(
        self,
        config: Optional[Union[str, Dict[str, Any], Config]] = None,
        dt: Optional[float] = None,
        tstop: Optional[float] = None,
        v_init: Optional[float] = None,
        seed: Optional[int] = None,
        verbose: bool = False,
        **kwargs,
    ) -> None:
        """
        :param config: path to a YAML model configuration, a dict merged over the default configuration, or a :class:'Config'
        :param dt: float; simulation time step (ms)
        :param tstop: float; physical time to simulate (ms)
        :param v_init: float; initialization membrane potential (mV)
        :param seed: int; seed of the presynaptic generators
        :param verbose: bool; print verbose diagnostic messages while constructing the model
        """
        self.kwargs = kwargs
        self.verbose = verbose

        if config is None:
            self.model_config = Config.default()
        elif isinstance(config, Config):
            self.model_config = config
        elif isinstance(config, dict):
            self.model_config = Config(
                update_dict(Config.default().data, config)
            )
        else:
            self.model_config = Config.from_yaml(config)

        self.global_parameters: GlobalParameters = (
            self.model_config.global_parameters
        )
        self.simulation: SimulationConfig = self.model_config.simulation
        if dt is not None:
            self.simulation.dt = dt
        if tstop is not None:
            self.simulation.tstop = tstop
        if v_init is not None:
            self.global_parameters.v_init = v_init

        random_seeds = self.model_config.random_seeds
        if seed is not None:
            self.random_seed = seed
        else:
            self.random_seed = random_seeds.get(GENERATOR_SEED_KEY, 0)

        self.synapse_mechanism_params: Dict[
            str, KineticSynapse
        ] = self.model_config.synapse_mechanisms
        self.synapse_groups: Dict[
            str, SynapseGroupConfig
        ] = self.model_config.synapse_groups
        self.electrode_configs: Dict[
            str, ElectrodeConfig
        ] = self.model_config.electrodes

        self.cell = self.make_cell()
        self.solver = CableSolver(self.cell, self.dt)

        self.placements: Dict[str, PlacementTable] = {}
        self.generators: Dict[str, PresynapticGenerator] = {}
        self.synapse_mechanisms: Dict[str, MultiSynapseMechanism] = {}
        self.syns_dict = defaultdict(dict)
        self.init_synapses()

        self.electrodes: Dict[str, IClamp] = make_electrodes(
            self.cell, self.electrode_configs
        )

        logger.info(
            f"Env: {len(self.cell)} compartments, total area {self.cell.total_area():.1f} um2, "
            f"dt = {self.dt} ms, tstop = {self.tstop} ms"
        )

    @property
    def dt(self) -> float:
        return self.simulation.dt

    @property
    def tstop(self) -> float:
        return self.simulation.tstop

    @property
    def v_init(self) -> float:
        return self.global_parameters.v_init

    @property
    def celsius(self) -> float:
        return self.global_parameters.celsius

    def make_cell(self) -> PyramidalCell:
        cell = make_cell(self.model_config.morphology)
        init_biophysics(
            cell,
            self.model_config.biophysics,
            celsius=self.celsius,
            verbose=self.verbose,
        )
        spine_correction = self.model_config.spine_correction
        if spine_correction is not None:
            correct_cell_for_spines_cm(
                cell, spine_correction.factor, swc_types=spine_correction.sections
            )
            correct_cell_for_spines_g_pas(
                cell, spine_correction.factor, swc_types=spine_correction.sections
            )
        if self.verbose:
            report_topology(cell)
        mech_counts = {name: len(mech) for name, mech in cell.mechanisms.items()}
        logger.info(f"Env: ion channel mechanisms (compartments): {mech_counts}")
        return cell

    def init_synapses(self) -> None:
        """
        Resolves the placement of every synapse group and instantiates its
        presynaptic generator and aggregated mechanism instances. Groups
        without synapses are skipped. Calling it again rebuilds every group.
        """
        for name in list(self.synapse_mechanisms.keys()):
            self.remove_synapses(name)
        self.placements.clear()
        self.generators.clear()
        for name, group in self.synapse_groups.items():
            self.place_synapses(name, group)
        self.reseed(self.random_seed)

    def remove_synapses(self, name: str) -> None:
        """Removes the generator, mechanism instances and placement of a synapse group."""
        mechanism = self.synapse_mechanisms.pop(name, None)
        if mechanism is not None:
            for syn in mechanism.instances:
                self.syns_dict[syn.compartment].pop(mechanism.name, None)
        self.generators.pop(name, None)
        self.placements.pop(name, None)

    def place_synapses(self, name: str, group: SynapseGroupConfig) -> PlacementTable:
        placement = resolve_synapse_placement(self.cell, name, group)
        self.placements[name] = placement
        if placement.total == 0:
            logger.info(f"Env: synapse group {name} has no synapses; skipping")
            return placement
        generator = PresynapticGenerator(
            name,
            placement.total,
            self.dt,
            frequency=group.generator.frequency,
            correlation=group.generator.correlation,
            latency=group.generator.latency,
            duration=group.generator.duration,
        )
        mechanism = MultiSynapseMechanism(
            f"{name}.{group.mechanism}",
            self.synapse_mechanism_params[group.mechanism],
            generator=generator,
        )
        syn_count = insert_group_syns(mechanism, placement, self.syns_dict)
        self.generators[name] = generator
        self.synapse_mechanisms[name] = mechanism
        logger.info(
            f"Env: {group.type} synapse group {name}: {syn_count} synapses in "
            f"{len(mechanism)} {group.mechanism} mechanisms over {placement.total_area:.1f} um2"
        )
        return placement

    def replace_synapses(
        self, name: str, group: Optional[SynapseGroupConfig] = None
    ) -> PlacementTable:
        """
        Re-places the synapses of one group, optionally with a new group
        configuration, and reseeds the generators with the current seed.

        :param name: synapse group name
        :param group: :class:'SynapseGroupConfig'; the current configuration of the group if omitted
        :return: :class:'PlacementTable' of the group
        """
        if group is None:
            if name not in self.synapse_groups:
                raise KeyError(f"Env.replace_synapses: unknown synapse group {name}")
            group = self.synapse_groups[name]
        if group.mechanism not in self.synapse_mechanism_params:
            raise ValueError(
                f"Env.replace_synapses: synapse group {name} uses unknown mechanism {group.mechanism}"
            )
        self.remove_synapses(name)
        self.synapse_groups[name] = group
        placement = self.place_synapses(name, group)
        self.reseed(self.random_seed)
        return placement

    def reseed(self, seed: int) -> None:
        """Seeds every presynaptic generator with its own stream derived from `seed`."""
        self.random_seed = seed
        names = list(self.synapse_groups.keys())
        for name, s in zip(names, derive_seeds(seed, len(names))):
            if name in self.generators:
                self.generators[name].seed(s)

    def synapse_count(self, group: Optional[str] = None) -> int:
        if group is not None:
            return self.placements[group].total
        return sum(p.total for p in self.placements.values())

    def get_synapse(self, compartment_name: str, group: str) -> Optional[MultiSynapse]:
        compartment = self.cell.get_compartment(compartment_name)
        if group not in self.synapse_mechanisms:
            return None
        return self.syns_dict[compartment].get(self.synapse_mechanisms[group].name)
