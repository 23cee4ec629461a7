"""
insight_models.py - Data model for the server insight report

Every record is an immutable pydantic model. A fact that could not be read is
stored as None (or the UNKNOWN enum member) so later stages can tell
"unavailable" apart from either real answer.
"""

from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PreemptionModel(str, Enum):
    REAL_TIME = "real-time"
    FULL = "full"
    VOLUNTARY = "voluntary"
    NONE = "none"
    UNKNOWN = "unknown"


class ThpMode(str, Enum):
    ALWAYS = "always"
    MADVISE = "madvise"
    NEVER = "never"
    UNKNOWN = "unknown"


class AffinitySource(str, Enum):
    SYSFS = "sysfs"
    PCI = "pci"
    NONE = "none"


class FleetState(str, Enum):
    CONCENTRATED = "concentrated"
    DISTRIBUTED = "distributed"
    INDETERMINATE = "indeterminate"


class TipLevel(str, Enum):
    ADVICE = "advice"
    FAVORABLE = "favorable"
    WARNING = "warning"
    INFO = "info"


class ReportSection(str, Enum):
    CPU = "cpu"
    NUMA = "numa"
    NETWORK = "network"
    KERNEL = "kernel"
    POWER = "power"
    MEMORY = "memory"
    USAGE = "usage"


# ============================================================================
# Collected Facts
# ============================================================================

class NumaNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    cpus: Tuple[int, ...] = ()
    size_mb: Optional[int] = None
    free_mb: Optional[int] = None
    # Empty when the distance matrix was missing or malformed
    distances: Tuple[int, ...] = ()


class NetworkDevice(BaseModel):
    model_config = ConfigDict(frozen=True)

    interface: Optional[str] = None
    pci_address: str
    description: str = ""
    sysfs_numa_node: Optional[int] = None
    pci_numa_node: Optional[int] = None


class ProcessAffinity(BaseModel):
    model_config = ConfigDict(frozen=True)

    pid: int
    name: str
    rss_mb: float
    cpu_affinity: Optional[Tuple[int, ...]] = None


class HostFacts(BaseModel):
    """Snapshot of everything the report needs, built once per run."""

    model_config = ConfigDict(frozen=True)

    hostname: str
    kernel_version: str
    os_name: Optional[str] = None

    architecture: Optional[str] = None
    model_name: Optional[str] = None
    cpu_op_modes: Optional[str] = None
    logical_cpus: Optional[int] = None
    threads_per_core: Optional[int] = None
    cores_per_socket: Optional[int] = None
    sockets: Optional[int] = None
    numa_node_count: Optional[int] = None
    numa_nodes: Tuple[NumaNode, ...] = ()

    kernel_cmdline: Optional[str] = None
    preemption_model: PreemptionModel = PreemptionModel.UNKNOWN
    tsc_constant: Optional[bool] = None
    tsc_nonstop: Optional[bool] = None
    nmi_watchdog_enabled: Optional[bool] = None
    irqbalance_active: Optional[bool] = None

    cpu_governors: Optional[Dict[int, str]] = None
    c_states: Optional[Tuple[str, ...]] = None

    swappiness: Optional[int] = Field(default=None, ge=0, le=100)
    swap_used_bytes: Optional[int] = None
    thp_mode: ThpMode = ThpMode.UNKNOWN
    io_schedulers: Optional[Dict[str, str]] = None

    network_devices: Tuple[NetworkDevice, ...] = ()
    optional_tools: Dict[str, bool] = Field(default_factory=dict)
    top_processes: Tuple[ProcessAffinity, ...] = ()

    @field_validator("numa_nodes")
    @classmethod
    def _distances_form_slit_matrix(cls, nodes: Tuple[NumaNode, ...]) -> Tuple[NumaNode, ...]:
        with_distances = [node for node in nodes if node.distances]
        if not with_distances:
            return nodes
        if len(with_distances) != len(nodes):
            raise ValueError("distance vectors must be given for every node or none")
        size = len(nodes)
        for node in nodes:
            if len(node.distances) != size:
                raise ValueError(f"node {node.id} distance vector has {len(node.distances)} entries, expected {size}")
        for row, node in enumerate(nodes):
            for col in range(size):
                if node.distances[col] != nodes[col].distances[row]:
                    raise ValueError(f"distance matrix is not symmetric at ({row}, {col})")
                if node.distances[col] < node.distances[row]:
                    raise ValueError(f"node {node.id} reaches node {nodes[col].id} cheaper than its own memory")
        return nodes

    def has_optional_tool(self, name: str) -> bool:
        return self.optional_tools.get(name, False)


# ============================================================================
# Derived Records
# ============================================================================

class ResolvedDeviceAffinity(BaseModel):
    model_config = ConfigDict(frozen=True)

    device: NetworkDevice
    # None means undetermined
    node: Optional[int] = None
    disagreement: bool = False
    source: AffinitySource = AffinitySource.NONE

    @property
    def label(self) -> str:
        return self.device.interface or self.device.pci_address


class FleetAffinitySummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: FleetState
    node: Optional[int] = None
    nodes: Tuple[int, ...] = ()

    @property
    def is_concentrated(self) -> bool:
        return self.state is FleetState.CONCENTRATED


class AdvisoryTip(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    section: ReportSection
    level: TipLevel
    message: str


class TipRule(BaseModel):
    """
    One entry of the tip catalogue.

    `predicate` decides whether the tip applies; `build_message` is only
    called after the predicate returned True. Both receive
    (facts, fleet, affinities).
    """

    model_config = ConfigDict(frozen=True)

    id: str
    section: ReportSection
    level: TipLevel
    predicate: Callable[..., bool]
    build_message: Callable[..., str]

    def evaluate(
        self,
        facts: HostFacts,
        fleet: FleetAffinitySummary,
        affinities: Tuple[ResolvedDeviceAffinity, ...],
    ) -> Optional[AdvisoryTip]:
        if not self.predicate(facts, fleet, affinities):
            return None
        return AdvisoryTip(
            id=self.id,
            section=self.section,
            level=self.level,
            message=self.build_message(facts, fleet, affinities),
        )

