"""
report_renderer.py - Console presentation of the insight report

Pure presentation: takes the collected facts, resolved NIC affinities and
the already-selected tips, and prints a fixed sequence of sections. Each
section prints its facts first and then the tips that belong to it.
"""

from itertools import groupby
from typing import Dict, Iterable, List, Optional, Sequence

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

import insight_config as config
from fact_collector import MissingPrerequisiteError
from insight_models import (
    AdvisoryTip,
    FleetAffinitySummary,
    FleetState,
    HostFacts,
    ReportSection,
    ResolvedDeviceAffinity,
    TipLevel,
)

UNAVAILABLE = "[dim]unavailable[/dim]"

_TIP_PREFIX = {
    TipLevel.ADVICE: "[bold yellow]Tip:[/bold yellow]",
    TipLevel.FAVORABLE: "[bold green]OK:[/bold green]",
    TipLevel.WARNING: "[bold red]Warning:[/bold red]",
    TipLevel.INFO: "[bold cyan]Note:[/bold cyan]",
}


# ============================================================================
# Formatting Helpers
# ============================================================================

def format_cpu_list(cpus: Iterable[int]) -> str:
    """Compress CPU ids into kernel list syntax: [0, 1, 2, 3, 8] -> "0-3,8"."""
    ids = sorted(set(cpus))
    ranges: List[str] = []
    for _, run in groupby(enumerate(ids), key=lambda pair: pair[1] - pair[0]):
        run_ids = [cpu for _, cpu in run]
        if len(run_ids) == 1:
            ranges.append(str(run_ids[0]))
        else:
            ranges.append(f"{run_ids[0]}-{run_ids[-1]}")
    return ",".join(ranges)


def _value(value) -> str:
    if value is None:
        return UNAVAILABLE
    if isinstance(value, bool):
        return "yes" if value else "no"
    return escape(str(value))


def _header(console: Console, title: str) -> None:
    console.print(f"[bold blue]--- {escape(title)} ---[/bold blue]")


def _fact(console: Console, label: str, value) -> None:
    console.print(f"[green]{escape(label)}:[/green] {_value(value)}")


def _print_tips(console: Console, tips: Sequence[AdvisoryTip]) -> None:
    if not tips:
        return
    console.print()
    for tip in tips:
        first, *rest = tip.message.splitlines()
        console.print(f"{_TIP_PREFIX[tip.level]} {escape(first)}")
        for line in rest:
            console.print(f"     {escape(line)}")


# ============================================================================
# Sections
# ============================================================================

def _render_overview(console: Console, facts: HostFacts) -> None:
    _header(console, "System Overview")
    _fact(console, "Hostname", facts.hostname)
    _fact(console, "Kernel Version", facts.kernel_version)
    _fact(console, "OS", facts.os_name)
    available = [tool for tool, present in facts.optional_tools.items() if present]
    missing = [tool for tool, present in facts.optional_tools.items() if not present]
    if facts.optional_tools:
        _fact(console, "Optional tools available", ", ".join(available) or "none")
        if missing:
            _fact(console, "Optional tools missing", ", ".join(missing))


def _render_cpu(console: Console, facts: HostFacts, tips) -> None:
    _header(console, "CPU Architecture")
    _fact(console, "Architecture", facts.architecture)
    _fact(console, "CPU op-mode(s)", facts.cpu_op_modes)
    _fact(console, "Model name", facts.model_name)
    _fact(console, "CPU(s)", facts.logical_cpus)
    _fact(console, "Thread(s) per core", facts.threads_per_core)
    _fact(console, "Core(s) per socket", facts.cores_per_socket)
    _fact(console, "Socket(s)", facts.sockets)
    _fact(console, "NUMA node(s)", facts.numa_node_count)
    _fact(console, "constant_tsc", facts.tsc_constant)
    _fact(console, "nonstop_tsc", facts.tsc_nonstop)
    _print_tips(console, tips)


def _render_numa(console: Console, facts: HostFacts, tips) -> None:
    _header(console, "NUMA Topology")
    if not facts.numa_nodes:
        console.print(f"numactl reported no NUMA nodes: {UNAVAILABLE}")
        _print_tips(console, tips)
        return

    nodes = Table(box=box.SIMPLE, show_header=True, header_style="bold cyan")
    nodes.add_column("Node", justify="right")
    nodes.add_column("CPUs")
    nodes.add_column("Size (MB)", justify="right")
    nodes.add_column("Free (MB)", justify="right")
    for node in facts.numa_nodes:
        nodes.add_row(
            str(node.id),
            format_cpu_list(node.cpus) or "-",
            _value(node.size_mb),
            _value(node.free_mb),
        )
    console.print(nodes)

    if facts.numa_nodes[0].distances:
        distances = Table(title="node distances", box=box.SIMPLE, header_style="bold cyan")
        distances.add_column("node", justify="right")
        for node in facts.numa_nodes:
            distances.add_column(str(node.id), justify="right")
        for node in facts.numa_nodes:
            distances.add_row(str(node.id), *(str(d) for d in node.distances))
        console.print(distances)
    else:
        _fact(console, "Node distances", None)
    _print_tips(console, tips)


def _render_network(
    console: Console,
    affinities: Sequence[ResolvedDeviceAffinity],
    fleet: FleetAffinitySummary,
    tips,
) -> None:
    _header(console, "PCI Device NUMA Affinity (Network Adapters)")
    console.print("[yellow]Note:[/yellow] This section focuses on network adapters due to their common need for NUMA optimization.")
    console.print()

    if not affinities:
        console.print("[red]No network devices found with lshw.[/red]")
    for affinity in affinities:
        device = affinity.device
        title = f"{device.interface or 'unbound'} ({device.pci_address})"
        if device.description:
            title += f" {device.description}"
        console.print(f"[green]Device: {escape(title)}[/green]")

        if device.pci_numa_node is not None:
            console.print(f"  - lspci detected NUMA Node: {device.pci_numa_node}")
        else:
            console.print("  - lspci did not explicitly report NUMA Node (may be inferred).")

        if device.sysfs_numa_node is not None:
            console.print(f"  - sysfs numa_node: {device.sysfs_numa_node}")
            if device.sysfs_numa_node == -1:
                console.print("[yellow]    (Value -1 means no specific NUMA affinity reported, kernel will try to optimize.)[/yellow]")
        else:
            console.print(f"  - sysfs numa_node: {UNAVAILABLE}")

        if affinity.disagreement:
            console.print("[red]    WARNING: Discrepancy between lspci and sysfs for NUMA node! Trusting sysfs for process affinity.[/red]")

        if affinity.node is not None:
            console.print(f"  - Resolved NUMA node: [bold]{affinity.node}[/bold] (via {affinity.source.value})")
        else:
            console.print("  - Resolved NUMA node: [dim]undetermined[/dim]")
        console.print()

    if fleet.state is FleetState.CONCENTRATED:
        _fact(console, "NIC placement", f"concentrated on NUMA node {fleet.node}")
    elif fleet.state is FleetState.DISTRIBUTED:
        _fact(console, "NIC placement", f"distributed across NUMA nodes {', '.join(str(n) for n in fleet.nodes)}")
    else:
        _fact(console, "NIC placement", "indeterminate (no device reported a NUMA node)")
    _print_tips(console, tips)


def _render_kernel(console: Console, facts: HostFacts, tips) -> None:
    _header(console, "Kernel & Scheduler")
    _fact(console, "Kernel command line", facts.kernel_cmdline)
    model = facts.preemption_model
    console.print(f"[green]Preemption model:[/green] {UNAVAILABLE if model.value == 'unknown' else escape(model.value)}")
    _fact(console, "NMI watchdog enabled", facts.nmi_watchdog_enabled)
    _fact(console, "irqbalance running", facts.irqbalance_active)
    _print_tips(console, tips)


def _render_power(console: Console, facts: HostFacts, tips) -> None:
    _header(console, "Power Management")
    if facts.cpu_governors is None:
        _fact(console, "CPU governors", None)
    else:
        by_governor: Dict[str, List[int]] = {}
        for cpu, governor in facts.cpu_governors.items():
            by_governor.setdefault(governor, []).append(cpu)
        for governor, cpus in sorted(by_governor.items()):
            _fact(console, f"Governor {governor}", f"CPUs {format_cpu_list(cpus)}")
    _fact(console, "C-states", ", ".join(facts.c_states) if facts.c_states is not None else None)
    _print_tips(console, tips)


def _render_memory(console: Console, facts: HostFacts, tips) -> None:
    _header(console, "Memory & I/O")
    _fact(console, "vm.swappiness", facts.swappiness)
    if facts.swap_used_bytes is None:
        _fact(console, "Swap in use", None)
    else:
        _fact(console, "Swap in use", f"{facts.swap_used_bytes / (1024 ** 2):.0f} MiB")
    thp = facts.thp_mode
    console.print(f"[green]Transparent Huge Pages:[/green] {UNAVAILABLE if thp.value == 'unknown' else escape(thp.value)}")
    if facts.io_schedulers is None:
        _fact(console, "I/O schedulers", None)
    else:
        for device, scheduler in facts.io_schedulers.items():
            _fact(console, f"I/O scheduler {device}", scheduler)
    _print_tips(console, tips)


def _render_processes(console: Console, facts: HostFacts) -> None:
    _header(console, "Process Affinity")
    if not facts.top_processes:
        console.print(f"Process list: {UNAVAILABLE}")
        return

    table = Table(title=f"Top {len(facts.top_processes)} processes by resident memory",
                  box=box.SIMPLE, header_style="bold cyan")
    table.add_column("PID", justify="right")
    table.add_column("Name")
    table.add_column("RSS (MB)", justify="right")
    table.add_column("CPU affinity")
    for proc in facts.top_processes:
        affinity = format_cpu_list(proc.cpu_affinity) if proc.cpu_affinity is not None else "[dim]access denied[/dim]"
        table.add_row(str(proc.pid), escape(proc.name), f"{proc.rss_mb:.1f}", affinity)
    console.print(table)


# ============================================================================
# Entry Points
# ============================================================================

def render_report(
    facts: HostFacts,
    affinities: Sequence[ResolvedDeviceAffinity],
    fleet: FleetAffinitySummary,
    tips: Sequence[AdvisoryTip],
    console: Optional[Console] = None,
) -> None:
    console = console or Console(highlight=False)
    by_section: Dict[ReportSection, List[AdvisoryTip]] = {}
    for tip in tips:
        by_section.setdefault(tip.section, []).append(tip)

    _render_overview(console, facts)
    console.print()
    _render_cpu(console, facts, by_section.get(ReportSection.CPU, []))
    console.print()
    _render_numa(console, facts, by_section.get(ReportSection.NUMA, []))
    console.print()
    _render_network(console, affinities, fleet, by_section.get(ReportSection.NETWORK, []))
    console.print()
    _render_kernel(console, facts, by_section.get(ReportSection.KERNEL, []))
    console.print()
    _render_power(console, facts, by_section.get(ReportSection.POWER, []))
    console.print()
    _render_memory(console, facts, by_section.get(ReportSection.MEMORY, []))
    console.print()
    _render_processes(console, facts)
    console.print()

    usage = by_section.get(ReportSection.USAGE, [])
    if usage:
        _header(console, "Practical Usage")
        console.print(
            f"Your system has [green]{_value(facts.sockets)} physical socket(s)[/green] and "
            f"[green]{_value(facts.numa_node_count)} NUMA node(s)[/green]; "
            f"total logical CPUs: [green]{_value(facts.logical_cpus)}[/green]."
        )
        for node in facts.numa_nodes:
            console.print(f"  - [green]NUMA Node {node.id}:[/green] CPUs {format_cpu_list(node.cpus) or '-'}")
        _print_tips(console, usage)
        console.print()

    _header(console, "End of Insight Report")


def render_missing_prerequisites(error: MissingPrerequisiteError, console: Optional[Console] = None) -> None:
    console = console or Console(stderr=True, highlight=False)
    console.print("[red]Error: The following commands are missing. Please install them:[/red]")
    for tool in error.missing:
        console.print(f"[yellow]  - {escape(tool)}[/yellow]")
    for line in config.INSTALL_HINT.splitlines():
        console.print(f"[yellow]  {escape(line)}[/yellow]")
