"""
test_numa_affinity.py - Tests for NIC NUMA node resolution

Tests:
- Single-source resolution (sysfs only, lspci only)
- sysfs -1 fallback to lspci
- sysfs precedence and the disagreement flag
- Fleet classification: concentrated / distributed / indeterminate

Usage:
    python test_numa_affinity.py
"""

import sys
from pathlib import Path

# Add current directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from insight_models import AffinitySource, FleetState, NetworkDevice
from numa_affinity import resolve_all, resolve_device_affinity, summarize_fleet


def _device(sysfs=None, pci=None, name="enp1s0f0", address="0000:01:00.0"):
    return NetworkDevice(interface=name, pci_address=address, sysfs_numa_node=sysfs, pci_numa_node=pci)


# ============================================================================
# Device Resolution
# ============================================================================

def test_single_source_is_used():
    """Only one valid source present -> resolved to that value"""
    print("\n=== Test: Single Source Resolution ===")

    for node in (0, 1, 3):
        only_sysfs = resolve_device_affinity(_device(sysfs=node))
        assert only_sysfs.node == node, "sysfs-only device should resolve to sysfs value"
        assert only_sysfs.source is AffinitySource.SYSFS
        assert not only_sysfs.disagreement

        only_pci = resolve_device_affinity(_device(pci=node))
        assert only_pci.node == node, "lspci-only device should resolve to lspci value"
        assert only_pci.source is AffinitySource.PCI
        assert not only_pci.disagreement

    print("✓ Single source resolution passed")


def test_unset_sysfs_falls_back_to_pci():
    """sysfs -1 is 'no preference' and lspci wins"""
    print("\n=== Test: sysfs -1 Fallback ===")

    resolved = resolve_device_affinity(_device(sysfs=-1, pci=1))
    assert resolved.node == 1
    assert resolved.source is AffinitySource.PCI
    assert not resolved.disagreement, "-1 is not a real value and cannot disagree"

    print("✓ sysfs -1 fallback passed")


def test_sysfs_wins_on_disagreement():
    """Both sources valid but different -> sysfs wins, flag raised"""
    print("\n=== Test: Disagreement ===")

    resolved = resolve_device_affinity(_device(sysfs=0, pci=1))
    assert resolved.node == 0, "sysfs must win even when lspci disagrees"
    assert resolved.source is AffinitySource.SYSFS
    assert resolved.disagreement

    agreeing = resolve_device_affinity(_device(sysfs=1, pci=1))
    assert agreeing.node == 1
    assert not agreeing.disagreement

    print("✓ Disagreement passed")


def test_no_valid_source_is_undetermined():
    """Nothing usable -> undetermined"""
    print("\n=== Test: Undetermined ===")

    for sysfs, pci in ((None, None), (-1, None), (-1, -1), (None, -1)):
        resolved = resolve_device_affinity(_device(sysfs=sysfs, pci=pci))
        assert resolved.node is None, f"sysfs={sysfs} pci={pci} should be undetermined"
        assert resolved.source is AffinitySource.NONE
        assert not resolved.disagreement

    print("✓ Undetermined passed")


def test_label_falls_back_to_pci_address():
    unbound = resolve_device_affinity(_device(sysfs=0, name=None, address="0000:81:00.0"))
    assert unbound.label == "0000:81:00.0"


# ============================================================================
# Fleet Summary
# ============================================================================

def test_fleet_concentrated():
    print("\n=== Test: Fleet Concentrated ===")

    affinities = resolve_all([
        _device(sysfs=0, name="eth0"),
        _device(pci=0, name="eth1"),
        _device(sysfs=0, pci=1, name="eth2"),
    ])
    summary = summarize_fleet(affinities)
    assert summary.state is FleetState.CONCENTRATED
    assert summary.node == 0
    assert summary.is_concentrated

    print("✓ Fleet concentrated passed")


def test_fleet_distributed():
    print("\n=== Test: Fleet Distributed ===")

    affinities = resolve_all([
        _device(sysfs=0, name="eth0"),
        _device(sysfs=1, name="eth1"),
        _device(sysfs=0, name="eth2"),
    ])
    summary = summarize_fleet(affinities)
    assert summary.state is FleetState.DISTRIBUTED
    assert summary.node is None, "distributed fleet has no single node"
    assert summary.nodes == (0, 1)

    print("✓ Fleet distributed passed")


def test_fleet_indeterminate():
    """Empty and all-undetermined fleets must not look concentrated"""
    print("\n=== Test: Fleet Indeterminate ===")

    empty = summarize_fleet([])
    assert empty.state is FleetState.INDETERMINATE
    assert not empty.is_concentrated

    undetermined = summarize_fleet(resolve_all([_device(sysfs=-1), _device()]))
    assert undetermined.state is FleetState.INDETERMINATE
    assert undetermined.node is None

    print("✓ Fleet indeterminate passed")


def test_undetermined_devices_do_not_break_concentration():
    summary = summarize_fleet(resolve_all([_device(sysfs=1), _device(sysfs=-1), _device()]))
    assert summary.state is FleetState.CONCENTRATED
    assert summary.node == 1


# ============================================================================
# Test Runner
# ============================================================================

def run_all_tests():
    tests = [
        ("Single Source", test_single_source_is_used),
        ("sysfs -1 Fallback", test_unset_sysfs_falls_back_to_pci),
        ("Disagreement", test_sysfs_wins_on_disagreement),
        ("Undetermined", test_no_valid_source_is_undetermined),
        ("Label Fallback", test_label_falls_back_to_pci_address),
        ("Fleet Concentrated", test_fleet_concentrated),
        ("Fleet Distributed", test_fleet_distributed),
        ("Fleet Indeterminate", test_fleet_indeterminate),
        ("Partial Determination", test_undetermined_devices_do_not_break_concentration),
    ]

    failed = 0
    for test_name, test_func in tests:
        try:
            test_func()
        except AssertionError as e:
            print(f"\n✗ {test_name} FAILED: {e}")
            failed += 1

    print(f"\nPassed: {len(tests) - failed}/{len(tests)}")
    return 0 if failed == 0 else 1


if __name__ == "__main__":
    sys.exit(run_all_tests())
