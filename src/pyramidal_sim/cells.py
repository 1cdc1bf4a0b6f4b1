from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import math
from collections import defaultdict

import networkx as nx
import numpy as np
from networkx.classes.digraph import DiGraph
from pyramidal_sim.config import (
    MechanismDict,
    MechanismRule,
    SectionConfig,
    SectionTypesDef,
    resolve_section_types,
)
from pyramidal_sim.mechanisms import DensityMechanism, make_mechanism
from pyramidal_sim.utils import get_module_logger

# This logger will inherit its settings from the root logger, created in env
logger = get_module_logger(__name__)

default_ordered_sec_types = list(SectionTypesDef.__members__.keys())

## NEURON defaults for unset cable properties
default_cable_params = {"Ra": 35.4, "cm": 1.0}
default_pas_params = {"g": 0.0, "e": -70.0}


class Compartment:
    """
    A cylindrical piece of a section with uniform electrical properties.
    Compartments are the nodes of the cell tree; the membrane voltage of a
    compartment is stored in the voltage array of its cell.
    """

    def __init__(
        self,
        cell: "PyramidalCell",
        index: int,
        section: str,
        section_type: str,
        seg_index: int,
        nseg: int,
        L: float,
        diam: float,
    ) -> None:
        self.cell = cell
        self.index = index
        self.section = section
        self.section_type = section_type
        self.seg_index = seg_index
        self.nseg = nseg
        self.name = f"{section}[{seg_index}]"
        self.L = L
        self.diam = diam
        self.Ra = default_cable_params["Ra"]
        self.cm = default_cable_params["cm"]
        self.g_pas = default_pas_params["g"]
        self.e_pas = default_pas_params["e"]
        self.mechanisms: Dict[str, Dict[str, float]] = {}
        self.distance = 0.0

    @property
    def loc(self) -> float:
        """Position of the compartment centre within its section, in [0, 1]."""
        return (self.seg_index + 0.5) / self.nseg

    def area(self) -> float:
        """Lateral membrane area (um2)."""
        return math.pi * self.diam * self.L

    def half_axial_resistance(self, length: Optional[float] = None) -> float:
        """
        Axial resistance (MOhm) along `length` um of this compartment,
        half of the compartment by default.
        """
        if length is None:
            length = self.L / 2.0
        ## Ohm cm * um / um2 -> MOhm
        return self.Ra * length * 4.0 / (math.pi * self.diam * self.diam) * 1e-2

    @property
    def v(self) -> float:
        return float(self.cell.v[self.index])

    def __str__(self):
        return self.name

    def __repr__(self):
        return self.name


class PyramidalCell:
    """
    A branched compartmental neuron. The compartments form a tree rooted at
    the soma compartment; edges carry the attachment offsets used for the
    axial resistance and path distance computations.
    """

    def __init__(self, name: str = "pyramidal") -> None:
        self.name = name
        self.tree = nx.DiGraph()
        self.nodes = {key: [] for key in default_ordered_sec_types}
        self.compartments: List[Compartment] = []
        self.sections: Dict[str, List[Compartment]] = {}
        self.section_types: Dict[str, str] = {}
        self.mechanisms: Dict[str, DensityMechanism] = {}
        self.root: Optional[Compartment] = None
        self.v = np.zeros(0)

    def __len__(self) -> int:
        return len(self.compartments)

    @property
    def soma(self) -> List[Compartment]:
        return self.nodes["soma"]

    @property
    def axon(self) -> List[Compartment]:
        return self.nodes["axon"]

    @property
    def basal(self):
        return self.nodes["basal"]

    @property
    def apical(self):
        return self.nodes["apical"]

    @property
    def trunk(self):
        return self.nodes["trunk"]

    @property
    def tuft(self):
        return self.nodes["tuft"]

    @property
    def ais(self) -> List[Compartment]:
        return self.nodes["ais"]

    @property
    def hillock(self):
        return self.nodes["hillock"]

    @property
    def dend(self) -> List[Compartment]:
        return filter_nodes(self, swc_types=["dend"])

    def areas(self) -> np.ndarray:
        return np.asarray([c.area() for c in self.compartments])

    def total_area(self, swc_types: Optional[List[str]] = None) -> float:
        if swc_types is None:
            nodes = self.compartments
        else:
            nodes = filter_nodes(self, swc_types=swc_types)
        return float(sum(c.area() for c in nodes))

    def get_compartment(self, section: str, loc: float = 0.5) -> Compartment:
        """
        Returns the compartment of the named section that contains relative
        location `loc`. A compartment name such as `trunk[3]` is also accepted.
        """
        if section not in self.sections and section.endswith("]"):
            for c in self.compartments:
                if c.name == section:
                    return c
        if section not in self.sections:
            raise KeyError(f"{self.name}: unknown section {section}")
        seg_list = self.sections[section]
        if loc < 0.0 or loc > 1.0:
            raise ValueError(
                f"{self.name}: location {loc} in section {section} is outside [0, 1]"
            )
        seg_index = min(int(loc * len(seg_list)), len(seg_list) - 1)
        return seg_list[seg_index]


def get_node_parent(
    cell: PyramidalCell, node: Compartment, return_edge_data: bool = False
) -> Union[
    Optional[Compartment], Tuple[Optional[Compartment], Optional[Dict[str, float]]]
]:
    predecessors = list(cell.tree.predecessors(node))
    if len(predecessors) > 1:
        raise RuntimeError(
            f"get_node_parent: node {node.name} has more than one parent"
        )
    parent = None
    edge_data = None
    if len(predecessors) == 1:
        parent = next(iter(predecessors))
        edge_data = cell.tree.get_edge_data(parent, node)
    if return_edge_data:
        return parent, edge_data
    else:
        return parent


def get_node_children(
    cell: PyramidalCell, node: Compartment, return_edge_data: bool = False
) -> Union[List[Compartment], Tuple[List[Compartment], List[Dict[str, float]]]]:
    successors = cell.tree.successors(node)
    edge_data = []
    children = []
    for d in successors:
        children.append(d)
        edge_data.append(cell.tree.get_edge_data(node, d))
    if return_edge_data:
        return children, edge_data
    else:
        return children


def get_distance_to_node(
    cell: PyramidalCell,
    node: Compartment,
    root: Optional[Compartment] = None,
) -> float:
    """
    Returns the path distance (um) along the tree from the midpoint of the
    root compartment to the midpoint of the given compartment.
    :param node: :class:'Compartment'
    :param root: :class:'Compartment'; defaults to the root of the cell
    :return: float
    """
    if root is None:
        root = cell.root

    length = 0.0
    if (node is root) or (root is None) or (node is None):
        return length
    path = nx.shortest_path(cell.tree, source=root, target=node)
    for parent, child in zip(path[:-1], path[1:]):
        e = cell.tree.get_edge_data(parent, child)
        length += e["parent_offset"] + e["child_offset"]
    return length


def insert_compartment(
    cell: PyramidalCell,
    section: SectionConfig,
    seg_index: int,
) -> Compartment:
    node = Compartment(
        cell,
        len(cell.compartments),
        section.name,
        section.type,
        seg_index,
        section.nseg,
        section.L / section.nseg,
        section.diam,
    )
    if cell.tree.has_node(node):
        raise RuntimeError(
            f"insert_compartment: compartment {node.name} already exists in cell {cell.name}"
        )
    cell.tree.add_node(node)
    cell.nodes[section.type].append(node)
    cell.compartments.append(node)
    cell.sections.setdefault(section.name, []).append(node)
    return node


def connect_nodes(
    tree: DiGraph,
    parent: Compartment,
    child: Compartment,
    parent_offset: float,
    child_offset: float,
) -> DiGraph:
    """
    Connects the given compartment to a parent compartment.
    :param parent: Compartment
    :param child: Compartment
    :param parent_offset: float : distance (um) from the parent midpoint to the attachment point
    :param child_offset: float : distance (um) from the attachment point to the child midpoint
    """
    tree.add_edge(
        parent, child, parent_offset=parent_offset, child_offset=child_offset
    )
    return tree


def make_cell(
    sections: Sequence[Union[SectionConfig, Dict[str, Any]]],
    name: str = "pyramidal",
) -> PyramidalCell:
    """
    Builds the compartment tree for the given list of sections. Sections must
    be listed after their parents; the first section without a parent is the
    root and must be the only one.
    :param sections: list of :class:'SectionConfig' or equivalent dicts
    :param name: str
    :return: :class:'PyramidalCell'
    """
    cell = PyramidalCell(name=name)
    for section in sections:
        if not isinstance(section, SectionConfig):
            section = SectionConfig(**section)
        if section.name in cell.sections:
            raise ValueError(f"make_cell: duplicate section name {section.name}")
        if section.parent is None:
            if cell.root is not None:
                raise ValueError(
                    f"make_cell: section {section.name} has no parent but root section "
                    f"{cell.root.section} is already defined"
                )
        elif section.parent not in cell.sections:
            raise ValueError(
                f"make_cell: parent {section.parent} of section {section.name} "
                f"must be defined before it"
            )
        cell.section_types[section.name] = section.type
        prev = None
        for seg_index in range(section.nseg):
            node = insert_compartment(cell, section, seg_index)
            if prev is not None:
                connect_nodes(cell.tree, prev, node, prev.L / 2.0, node.L / 2.0)
            elif section.parent is not None:
                parent_seg_list = cell.sections[section.parent]
                parent_nseg = len(parent_seg_list)
                parent_seg_index = min(
                    int(section.parent_loc * parent_nseg), parent_nseg - 1
                )
                parent = parent_seg_list[parent_seg_index]
                parent_offset = abs(section.parent_loc - parent.loc) * (
                    parent.L * parent_nseg
                )
                connect_nodes(cell.tree, parent, node, parent_offset, node.L / 2.0)
            else:
                cell.root = node
            prev = node

    if cell.root is None:
        raise ValueError("make_cell: no root section")
    if not nx.is_tree(cell.tree):
        raise ValueError(f"make_cell: compartments of {name} do not form a tree")

    for node in cell.compartments:
        parent, edge = get_node_parent(cell, node, return_edge_data=True)
        if parent is not None:
            node.distance = (
                parent.distance + edge["parent_offset"] + edge["child_offset"]
            )
    cell.v = np.zeros(len(cell.compartments))
    return cell


def filter_nodes(
    cell: PyramidalCell,
    sections: Optional[List[str]] = None,
    swc_types: Optional[List[str]] = None,
    min_distance: Optional[float] = None,
    max_distance: Optional[float] = None,
) -> List[Compartment]:
    """
    Returns a subset of the compartments of the given cell according to the given criteria.

    :param cell:
    :param sections: list of section names
    :param swc_types: list of section types; `dend` selects all dendritic types
    :param min_distance: float; inclusive lower bound on the path distance from the soma midpoint
    :param max_distance: float; exclusive upper bound on the path distance from the soma midpoint
    :return: list of nodes, in compartment index order
    """
    if swc_types is None:
        sec_types = default_ordered_sec_types
    else:
        sec_types = resolve_section_types(swc_types)

    result = [
        v
        for v in cell.compartments
        if (v.section_type in sec_types)
        and (sections is None or v.section in sections)
        and (min_distance is None or v.distance >= min_distance)
        and (max_distance is None or v.distance < max_distance)
    ]

    return result


def resolve_mech_rule(
    mech_dict: MechanismDict,
    sec_type: str,
    mech_name: str,
    param_name: str,
    depth: int = 0,
) -> float:
    """
    Returns the value of a mechanism parameter for a section type, following
    `origin` rules to the section type they inherit from.
    """
    if depth > len(default_ordered_sec_types):
        raise ValueError(
            f"resolve_mech_rule: cyclic origin rules for {mech_name}.{param_name}"
        )
    try:
        rule: MechanismRule = mech_dict[sec_type][mech_name][param_name]
    except KeyError:
        raise ValueError(
            f"resolve_mech_rule: no rule for {mech_name}.{param_name} in section type {sec_type}"
        )
    if rule.value is not None:
        return rule.value * rule.scale
    return (
        resolve_mech_rule(mech_dict, rule.origin, mech_name, param_name, depth + 1)
        * rule.scale
    )


def init_biophysics(
    cell: PyramidalCell,
    mech_dict: MechanismDict,
    celsius: float = 36.0,
    verbose: bool = False,
) -> Dict[str, DensityMechanism]:
    """
    Consults a dictionary specifying cable properties, leak parameters and
    ion channel densities for each section type, sets the compartment
    parameters and instantiates one mechanism object per ion channel type.

    :param cell: :class:'PyramidalCell'
    :param mech_dict: section type -> mechanism -> parameter -> rule
    :param celsius: float
    :return: dict of mechanism name to :class:'DensityMechanism'
    """
    insertions = defaultdict(lambda: {"indices": [], "areas": [], "params": defaultdict(list)})
    for node in cell.compartments:
        sec_type = node.section_type
        if sec_type not in mech_dict:
            continue
        for mech_name, mech_content in mech_dict[sec_type].items():
            values = {
                param_name: resolve_mech_rule(mech_dict, sec_type, mech_name, param_name)
                for param_name in mech_content
            }
            if mech_name == "cable":
                for param_name, value in values.items():
                    if param_name not in default_cable_params:
                        raise ValueError(
                            f"init_biophysics: unknown cable parameter {param_name}"
                        )
                    setattr(node, param_name, value)
            elif mech_name == "pas":
                for param_name, value in values.items():
                    if param_name not in default_pas_params:
                        raise ValueError(
                            f"init_biophysics: unknown pas parameter {param_name}"
                        )
                    setattr(node, f"{param_name}_pas", value)
            else:
                node.mechanisms[mech_name] = values
                insertion = insertions[mech_name]
                insertion["indices"].append(node.index)
                insertion["areas"].append(node.area())
                for param_name, value in values.items():
                    insertion["params"][param_name].append(value)

    mechanisms = {}
    for mech_name, insertion in insertions.items():
        params = {}
        for param_name, values in insertion["params"].items():
            if len(values) != len(insertion["indices"]):
                raise ValueError(
                    f"init_biophysics: parameter {mech_name}.{param_name} must be "
                    f"specified for every section type that inserts {mech_name}"
                )
            params[param_name] = values
        mechanisms[mech_name] = make_mechanism(
            mech_name,
            insertion["indices"],
            insertion["areas"],
            params,
            celsius=celsius,
        )
        if verbose:
            logger.info(
                f"init_biophysics: inserted {mech_name} in {len(insertion['indices'])} compartments"
            )
    cell.mechanisms = mechanisms
    return mechanisms


def correct_cell_for_spines_g_pas(
    cell: PyramidalCell,
    factor: float,
    swc_types: Optional[List[str]] = None,
    verbose: bool = False,
) -> None:
    """
    If not explicitly modeling spine compartments, this method scales g_pas
    in dendritic compartments by the given spine area factor.
    :param cell: :class:'PyramidalCell'
    :param factor: float
    :param swc_types: list of section types
    """
    if swc_types is None:
        swc_types = ["dend"]
    for node in filter_nodes(cell, swc_types=swc_types):
        node.g_pas *= factor
        if verbose:
            logger.info(
                "g_pas_correction_factor for %s: %.3f" % (node.name, factor)
            )


def correct_cell_for_spines_cm(
    cell: PyramidalCell,
    factor: float,
    swc_types: Optional[List[str]] = None,
    verbose: bool = False,
) -> None:
    """
    If not explicitly modeling spine compartments, this method scales cm in
    dendritic compartments by the given spine area factor.
    :param cell: :class:'PyramidalCell'
    :param factor: float
    :param swc_types: list of section types
    """
    if swc_types is None:
        swc_types = ["dend"]
    for node in filter_nodes(cell, swc_types=swc_types):
        node.cm *= factor
        if verbose:
            logger.info("cm_correction_factor for %s: %.3f" % (node.name, factor))


def report_topology(
    cell: PyramidalCell, node: Optional[Compartment] = None
) -> None:
    """
    Traverse a cell and report topology, distances and inserted mechanisms.
    :param cell: :class:'PyramidalCell'
    :param node: :class:'Compartment'
    """
    if node is None:
        node = cell.root
    for n in nx.dfs_preorder_nodes(cell.tree, source=node):
        parent = get_node_parent(cell, n)
        logger.info(
            f"{n.name} (L={n.L:.2f} um, diam={n.diam:.2f} um, area={n.area():.2f} um2, "
            f"distance={n.distance:.2f} um) parent: {parent}; "
            f"mechanisms: {sorted(n.mechanisms)}"
        )
