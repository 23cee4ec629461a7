"""
numa_affinity.py - NUMA node resolution for network adapters

Each NIC can report its NUMA node through two independent channels:
  - sysfs (/sys/class/net/<iface>/device/numa_node), where -1 means "unset"
  - the "NUMA node:" line of `lspci -vv`

sysfs is authoritative whenever it carries a real node. lspci is only a
fallback. The two are never averaged or reconciled; a mismatch is flagged
and sysfs still wins.
"""

import logging
from typing import Iterable, List, Optional, Tuple

from insight_models import (
    AffinitySource,
    FleetAffinitySummary,
    FleetState,
    NetworkDevice,
    ResolvedDeviceAffinity,
)

logger = logging.getLogger(__name__)

UNSET_NODE = -1


def _is_valid_node(value: Optional[int]) -> bool:
    return value is not None and value != UNSET_NODE


def resolve_device_affinity(device: NetworkDevice) -> ResolvedDeviceAffinity:
    """
    Resolve a single NUMA node for one network device.

    Precedence: a valid sysfs value, then a valid lspci value, else
    undetermined. The disagreement flag is raised whenever both sources give
    a valid value and they differ, regardless of which one won.
    """
    sysfs_node = device.sysfs_numa_node
    pci_node = device.pci_numa_node

    if _is_valid_node(sysfs_node):
        node, source = sysfs_node, AffinitySource.SYSFS
    elif _is_valid_node(pci_node):
        node, source = pci_node, AffinitySource.PCI
    else:
        node, source = None, AffinitySource.NONE

    disagreement = _is_valid_node(sysfs_node) and _is_valid_node(pci_node) and sysfs_node != pci_node
    if disagreement:
        logger.warning(
            f"{device.interface or device.pci_address}: sysfs reports NUMA node {sysfs_node} "
            f"but lspci reports {pci_node}; trusting sysfs"
        )

    return ResolvedDeviceAffinity(
        device=device,
        node=node,
        disagreement=disagreement,
        source=source,
    )


def resolve_all(devices: Iterable[NetworkDevice]) -> Tuple[ResolvedDeviceAffinity, ...]:
    return tuple(resolve_device_affinity(device) for device in devices)


def summarize_fleet(affinities: Iterable[ResolvedDeviceAffinity]) -> FleetAffinitySummary:
    """
    Classify the NIC fleet by the set of determined nodes.

    Exactly one distinct node is "concentrated", two or more is
    "distributed", and no determined node at all is "indeterminate".
    """
    nodes: List[int] = sorted({a.node for a in affinities if a.node is not None})

    if not nodes:
        return FleetAffinitySummary(state=FleetState.INDETERMINATE)
    if len(nodes) == 1:
        return FleetAffinitySummary(state=FleetState.CONCENTRATED, node=nodes[0], nodes=tuple(nodes))
    return FleetAffinitySummary(state=FleetState.DISTRIBUTED, nodes=tuple(nodes))
