"""
test_report_renderer.py - Tests for the console report layout

Tests:
- Fixed section order
- Tips appear only when selected, under their own section
- Unavailable facts and indeterminate NIC placement are shown explicitly
- sysfs/lspci discrepancy warning
- Missing-prerequisite error block

Usage:
    python test_report_renderer.py
"""

import io
import sys
from pathlib import Path

from rich.console import Console

# Add current directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from fact_collector import MissingPrerequisiteError
from insight_models import (
    HostFacts,
    NetworkDevice,
    NumaNode,
    ProcessAffinity,
    ThpMode,
)
from numa_affinity import resolve_all, summarize_fleet
from report_renderer import (
    format_cpu_list,
    render_missing_prerequisites,
    render_report,
)
from tip_engine import select_tips


# ============================================================================
# Test Data
# ============================================================================

SECTION_ORDER = [
    "--- System Overview ---",
    "--- CPU Architecture ---",
    "--- NUMA Topology ---",
    "--- PCI Device NUMA Affinity (Network Adapters) ---",
    "--- Kernel & Scheduler ---",
    "--- Power Management ---",
    "--- Memory & I/O ---",
    "--- Process Affinity ---",
    "--- End of Insight Report ---",
]

MOCK_FACTS = HostFacts(
    hostname="xeon01",
    kernel_version="5.14.0-427.el9.x86_64",
    os_name="Rocky Linux 9.4 [Blue Onyx]",
    architecture="x86_64",
    cpu_op_modes="32-bit, 64-bit",
    model_name="Intel(R) Xeon(R) Silver 4110 CPU @ 2.10GHz",
    logical_cpus=16,
    threads_per_core=2,
    cores_per_socket=4,
    sockets=2,
    numa_node_count=2,
    numa_nodes=(
        NumaNode(id=0, cpus=(0, 1, 2, 3, 8, 9, 10, 11), size_mb=64221, free_mb=50112, distances=(10, 21)),
        NumaNode(id=1, cpus=(4, 5, 6, 7, 12, 13, 14, 15), size_mb=64509, free_mb=61200, distances=(21, 10)),
    ),
    kernel_cmdline="BOOT_IMAGE=/vmlinuz root=/dev/mapper/rl-root ro",
    swappiness=30,
    thp_mode=ThpMode.ALWAYS,
    cpu_governors={0: "performance", 1: "performance", 2: "powersave"},
    network_devices=(
        NetworkDevice(interface="enp1s0f0", pci_address="0000:01:00.0", sysfs_numa_node=0, pci_numa_node=1),
        NetworkDevice(interface="enp1s0f1", pci_address="0000:01:00.1", sysfs_numa_node=-1),
    ),
    optional_tools={"taskset": True, "ethtool": False},
    top_processes=(
        ProcessAffinity(pid=1234, name="postgres", rss_mb=2048.0, cpu_affinity=tuple(range(16))),
        ProcessAffinity(pid=1, name="systemd", rss_mb=12.5, cpu_affinity=None),
    ),
)


def _render(facts=MOCK_FACTS, tips_enabled=False):
    affinities = resolve_all(facts.network_devices)
    fleet = summarize_fleet(affinities)
    tips = select_tips(facts, fleet, affinities, tips_enabled=tips_enabled)
    buffer = io.StringIO()
    console = Console(file=buffer, width=200, color_system=None, highlight=False)
    render_report(facts, affinities, fleet, tips, console=console)
    return buffer.getvalue()


# ============================================================================
# Tests
# ============================================================================

def test_format_cpu_list():
    assert format_cpu_list([0, 1, 2, 3, 8, 9, 10, 11]) == "0-3,8-11"
    assert format_cpu_list([5]) == "5"
    assert format_cpu_list([3, 1, 2]) == "1-3"
    assert format_cpu_list([]) == ""


def test_sections_in_fixed_order():
    print("\n=== Test: Section Order ===")

    output = _render()
    positions = [output.index(header) for header in SECTION_ORDER]
    assert positions == sorted(positions), "sections must appear in the fixed order"
    assert "Practical Usage" not in output, "usage section is tips-only"

    print("✓ Section order passed")


def test_no_advisory_lines_without_tips():
    output = _render(tips_enabled=False)
    for prefix in ("Tip:", "OK:", "Warning:"):
        assert prefix not in output, f"'{prefix}' must not appear when tips are disabled"


def test_tips_rendered_under_sections():
    print("\n=== Test: Tips Placement ===")

    output = _render(tips_enabled=True)
    assert "Tip:" in output
    assert "--- Practical Usage ---" in output

    smt = output.index("SMT is enabled")
    assert output.index("--- CPU Architecture ---") < smt < output.index("--- NUMA Topology ---")

    swappiness = output.index("vm.swappiness is 30")
    assert output.index("--- Memory & I/O ---") < swappiness < output.index("--- Process Affinity ---")

    print("✓ Tips placement passed")


def test_cpu_section_facts():
    output = _render()
    cpu = output[output.index("--- CPU Architecture ---"):output.index("--- NUMA Topology ---")]
    assert "CPU op-mode(s): 32-bit, 64-bit" in cpu
    assert "Socket(s): 2" in cpu


def test_network_section_details():
    output = _render()
    assert "Device: enp1s0f0 (0000:01:00.0)" in output
    assert "Discrepancy between lspci and sysfs" in output, "disagreement must be surfaced"
    assert "Value -1 means no specific NUMA affinity" in output
    assert "Resolved NUMA node: 0 (via sysfs)" in output
    assert "Resolved NUMA node: undetermined" in output
    assert "concentrated on NUMA node 0" in output


def test_indeterminate_fleet_is_explicit():
    facts = MOCK_FACTS.model_copy(update={"network_devices": ()})
    output = _render(facts)
    assert "No network devices found with lshw." in output
    assert "indeterminate" in output


def test_unavailable_facts_are_marked():
    output = _render(HostFacts(hostname="bare", kernel_version="6.1.0"))
    assert "Preemption model: unavailable" in output
    assert "vm.swappiness: unavailable" in output
    assert "C-states: unavailable" in output
    assert "--- End of Insight Report ---" in output


def test_markup_in_values_is_escaped():
    output = _render()
    assert "Rocky Linux 9.4 [Blue Onyx]" in output


def test_process_table():
    output = _render()
    assert "postgres" in output
    assert "0-15" in output
    assert "access denied" in output


def test_missing_prerequisites_block():
    print("\n=== Test: Missing Prerequisites Block ===")

    buffer = io.StringIO()
    console = Console(file=buffer, width=200, color_system=None, highlight=False)
    render_missing_prerequisites(MissingPrerequisiteError(["numactl", "lshw"]), console=console)
    output = buffer.getvalue()

    assert "numactl" in output and "lshw" in output
    assert "---" not in output, "no report section may be emitted"

    print("✓ Missing prerequisites block passed")


# ============================================================================
# Test Runner
# ============================================================================

def run_all_tests():
    tests = [
        (name, func) for name, func in sorted(globals().items())
        if name.startswith("test_") and callable(func)
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
