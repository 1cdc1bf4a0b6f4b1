import copy
import os
from enum import IntEnum
from typing import Dict, List, Literal, Optional

from pydantic import (
    BaseModel as _BaseModel,
    ConfigDict,
    Field,
    model_validator,
)
from typing_extensions import Annotated

from pyramidal_sim.utils import from_yaml

# Definitions


class SectionTypesDef(IntEnum):
    soma = 1
    axon = 2
    basal = 3
    apical = 4
    trunk = 5
    tuft = 6
    ais = 7
    hillock = 8


SectionTypesLiteral = Literal[
    "soma", "axon", "basal", "apical", "trunk", "tuft", "ais", "hillock"
]

"""Section types that make up the dendritic tree; selectable as a group with the name `dend`."""
DendriteTypes = ("basal", "apical", "trunk", "tuft")

SectionSelector = Literal[
    "soma",
    "axon",
    "basal",
    "apical",
    "trunk",
    "tuft",
    "ais",
    "hillock",
    "dend",
]


SynapseMechanismName = str
SynapseGroupName = str

NonNegativeFloat = Annotated[float, Field(ge=0.0)]
PositiveFloat = Annotated[float, Field(gt=0.0)]
Fraction = Annotated[float, Field(ge=0.0, le=1.0)]


def resolve_section_types(selectors: List[str]) -> List[str]:
    """Expands the `dend` alias into the dendritic section types, preserving order."""
    result = []
    for selector in selectors:
        if selector == "dend":
            names = DendriteTypes
        elif selector in SectionTypesDef.__members__:
            names = (selector,)
        else:
            raise ValueError(f"unknown section type: {selector}")
        for name in names:
            if name not in result:
                result.append(name)
    return result


def config_path(*append) -> str:
    return os.path.join(os.path.dirname(__file__), "defaults", *append)


# Pydantic data models


class BaseModel(_BaseModel):
    """Hack to ensure dict-access backwards-compatibility"""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    def __getitem__(self, item):
        return getattr(self, item)


class GlobalParameters(BaseModel):
    celsius: float = 36.0
    v_init: float = -80.0


class SimulationConfig(BaseModel):
    dt: PositiveFloat = 0.1
    tstop: PositiveFloat = 1000.0
    rec_dt: Optional[PositiveFloat] = None
    probes: List[str] = ["soma"]
    status_interval: NonNegativeFloat = 0.0

    @model_validator(mode="after")
    def rec_dt_must_be_multiple_of_dt(self):
        if self.rec_dt is not None:
            ratio = self.rec_dt / self.dt
            if ratio < 1.0 - 1e-9 or abs(ratio - round(ratio)) > 1e-6:
                raise ValueError(
                    f"recording interval rec_dt={self.rec_dt} must be an integer multiple of dt={self.dt}"
                )
        return self

    @property
    def n_steps(self) -> int:
        return int(round(self.tstop / self.dt))

    @property
    def rec_interval(self) -> int:
        """Number of integration steps per recorded sample."""
        if self.rec_dt is None:
            return 1
        return int(round(self.rec_dt / self.dt))


class SectionConfig(BaseModel):
    name: str
    type: SectionTypesLiteral
    L: PositiveFloat
    diam: PositiveFloat
    nseg: Annotated[int, Field(ge=1)] = 1
    parent: Optional[str] = None
    parent_loc: Fraction = 1.0


class MechanismRule(BaseModel):
    value: Optional[float] = None
    origin: Optional[SectionTypesLiteral] = None
    scale: float = 1.0

    @model_validator(mode="after")
    def value_or_origin(self):
        if (self.value is None) == (self.origin is None):
            raise ValueError(
                "mechanism rule requires exactly one of 'value' or 'origin'"
            )
        return self


MechanismDict = Dict[str, Dict[str, Dict[str, MechanismRule]]]
"""Maps section type to mechanism name to parameter name to rule.

Example:
```python
{
    "soma": {"cable": {"Ra": {"value": 250.0}}, "na": {"gbar": {"value": 0.012}}},
    "ais": {"na": {"gbar": {"origin": "soma", "scale": 10.0}}},
}
```
"""


class SpineCorrection(BaseModel):
    factor: Annotated[float, Field(ge=1.0)] = 1.45
    sections: List[SectionSelector] = ["dend"]


class KineticSynapse(BaseModel):
    """Rate constants shared by every link of an aggregated kinetic synapse mechanism."""

    Alpha: PositiveFloat = 1.1  # /ms /mM
    Beta: PositiveFloat = 0.67  # /ms
    Cmax: PositiveFloat = 1.0  # mM
    Cdur: PositiveFloat = 1.0  # ms
    Erev: float = 0.0  # mV
    Deadtime: NonNegativeFloat = 1.0  # ms
    gmax: NonNegativeFloat = 0.0012  # uS
    capacity: Annotated[int, Field(ge=1)] = 260

    @property
    def Rinf(self) -> float:
        return self.Cmax * self.Alpha / (self.Cmax * self.Alpha + self.Beta)

    @property
    def Rtau(self) -> float:
        return 1.0 / (self.Alpha * self.Cmax + self.Beta)


class GeneratorConfig(BaseModel):
    frequency: NonNegativeFloat = 1.0  # Hz
    correlation: Fraction = 0.0
    latency: NonNegativeFloat = 0.0  # ms
    duration: NonNegativeFloat = 1e9  # ms


class SynapseGroupConfig(BaseModel):
    type: Literal["excitatory", "inhibitory"]
    mechanism: SynapseMechanismName
    sections: List[SectionSelector]
    unit_area: PositiveFloat  # um2 of membrane per synapse
    min_distance: NonNegativeFloat = 0.0  # um
    max_distance: Optional[NonNegativeFloat] = None  # um
    generator: GeneratorConfig = GeneratorConfig()

    @model_validator(mode="after")
    def distance_range(self):
        if (
            self.max_distance is not None
            and self.max_distance < self.min_distance
        ):
            raise ValueError(
                f"max_distance {self.max_distance} is smaller than min_distance {self.min_distance}"
            )
        return self


class ElectrodeConfig(BaseModel):
    section: str
    loc: Fraction = 0.5
    delay: NonNegativeFloat = 0.0  # ms
    dur: NonNegativeFloat = 0.0  # ms
    amp: float = 0.0  # nA


sentinel = object()


class Config:
    def __init__(self, data: Dict) -> None:
        self._data = copy.deepcopy(data)

    @property
    def data(self) -> Dict:
        return self._data

    def __getitem__(self, key: str):
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    @classmethod
    def from_yaml(cls, filepath: str) -> "Config":
        return cls(from_yaml(filepath))

    @classmethod
    def default(cls) -> "Config":
        return cls.from_yaml(config_path("default.yaml"))

    def get(self, path: str, default=sentinel, splitter: str = "."):
        d = self._data
        for key in path.split(splitter):
            if not isinstance(d, dict) or key not in d:
                if default is not sentinel:
                    return default
                raise KeyError(f"configuration entry {path} not found")
            d = d[key]

        return d

    @property
    def global_parameters(self) -> GlobalParameters:
        return GlobalParameters(**self.get("Global Parameters", {}))

    @property
    def simulation(self) -> SimulationConfig:
        return SimulationConfig(**self.get("Simulation", {}))

    @property
    def random_seeds(self) -> Dict[str, int]:
        return dict(self.get("Random Seeds", {}))

    @property
    def morphology(self) -> List[SectionConfig]:
        return [SectionConfig(**s) for s in self.get("Morphology")]

    @property
    def biophysics(self) -> MechanismDict:
        result = {}
        for sec_type, mechs in self.get("Biophysics", {}).items():
            for name in resolve_section_types([sec_type]):
                sec_mechs = result.setdefault(name, {})
                for mech_name, params in mechs.items():
                    sec_mechs.setdefault(mech_name, {}).update(
                        {
                            param_name: MechanismRule(**rule)
                            for param_name, rule in params.items()
                        }
                    )
        return result

    @property
    def spine_correction(self) -> Optional[SpineCorrection]:
        content = self.get("Spine Correction", None)
        if content is None:
            return None
        return SpineCorrection(**content)

    @property
    def synapse_mechanisms(self) -> Dict[SynapseMechanismName, KineticSynapse]:
        return {
            name: KineticSynapse(**params)
            for name, params in self.get("Synapse Mechanisms", {}).items()
        }

    @property
    def synapse_groups(self) -> Dict[SynapseGroupName, SynapseGroupConfig]:
        mechanisms = self.get("Synapse Mechanisms", {})
        groups = {}
        for name, params in self.get("Synapse Groups", {}).items():
            group = SynapseGroupConfig(**params)
            if group.mechanism not in mechanisms:
                raise ValueError(
                    f"synapse group {name} refers to unknown mechanism {group.mechanism}"
                )
            groups[name] = group
        return groups

    @property
    def electrodes(self) -> Dict[str, ElectrodeConfig]:
        return {
            name: ElectrodeConfig(**params)
            for name, params in self.get("Electrodes", {}).items()
        }
