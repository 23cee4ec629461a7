"""
tip_engine.py - Advisory tip selection

select_tips() is a pure function from collected facts to an ordered list of
AdvisoryTip records. The renderer never decides anything; it only places the
returned tips under their sections.

Every rule that has a "needs improvement" and an "already good" branch checks
that its fact is available first, so an unreadable fact fires neither.
"""

import logging
import re
from typing import Iterable, List, Optional, Tuple

import insight_config as config
from insight_models import (
    AdvisoryTip,
    FleetAffinitySummary,
    FleetState,
    HostFacts,
    PreemptionModel,
    ReportSection,
    ResolvedDeviceAffinity,
    ThpMode,
    TipLevel,
    TipRule,
)

logger = logging.getLogger(__name__)

_DEEP_C_STATE = re.compile(config.DEEP_C_STATE_PATTERN, re.IGNORECASE)


# ============================================================================
# Fact Helpers
# ============================================================================

def _deep_c_states(facts: HostFacts) -> List[str]:
    return [name for name in facts.c_states or () if _DEEP_C_STATE.match(name)]


def _non_performance_cpus(facts: HostFacts) -> List[int]:
    return [cpu for cpu, gov in (facts.cpu_governors or {}).items() if gov != "performance"]


def _unfavorable_schedulers(facts: HostFacts) -> List[str]:
    return [
        f"{dev} ({sched})"
        for dev, sched in (facts.io_schedulers or {}).items()
        if sched not in config.FAVORABLE_IO_SCHEDULERS
    ]


def _isolcpus_value(cmdline: str) -> Optional[str]:
    match = re.search(r"(?:^|\s)isolcpus=(\S+)", cmdline)
    return match.group(1) if match else None


def _max_remote_distance(facts: HostFacts) -> Optional[int]:
    remote = [
        distance
        for row, node in enumerate(facts.numa_nodes)
        for col, distance in enumerate(node.distances)
        if row != col
    ]
    return max(remote) if remote else None


def _format_bytes(n: int) -> str:
    mb = n / (1024 ** 2)
    if mb >= 1024:
        return f"{mb / 1024:.1f} GiB"
    return f"{mb:.0f} MiB"


def _summarize_cpus(cpus: Iterable[int], limit: int = 8) -> str:
    cpus = list(cpus)
    shown = ", ".join(str(c) for c in cpus[:limit])
    return shown + (f" and {len(cpus) - limit} more" if len(cpus) > limit else "")


# ============================================================================
# Message Builders
# ============================================================================

def _msg_smt(facts, fleet, affinities) -> str:
    return (
        f"'Thread(s) per core: {facts.threads_per_core}' means SMT is enabled; each physical core "
        "is presented as several logical CPUs sharing execution resources. For latency-critical or "
        "single-threaded workloads, evaluate disabling SMT in BIOS/UEFI (or via "
        "/sys/devices/system/cpu/smt/control)."
    )


def _msg_layout(facts, fleet, affinities) -> str:
    return (
        f"Your system has {facts.cores_per_socket} physical cores per socket across "
        f"{facts.sockets} socket(s)."
    )


def _msg_tsc_unstable(facts, fleet, affinities) -> str:
    missing = [
        flag for flag, present in (("constant_tsc", facts.tsc_constant), ("nonstop_tsc", facts.tsc_nonstop))
        if not present
    ]
    return (
        f"CPU lacks {' and '.join(missing)}; the TSC may drift across frequency or idle changes. "
        "Timestamps taken with rdtsc are not reliable here; check the active clocksource."
    )


def _msg_tsc_stable(facts, fleet, affinities) -> str:
    return "TSC is constant and nonstop, so it is a reliable low-overhead clocksource."


def _msg_numa_distances(facts, fleet, affinities) -> str:
    return (
        "'node distances' is the relative cost of memory access between NUMA nodes. "
        f"{config.LOCAL_NUMA_DISTANCE} is local access; the costliest remote hop here is "
        f"{_max_remote_distance(facts)}. Keep each process and its memory on the same node."
    )


def _msg_numa_single(facts, fleet, affinities) -> str:
    return "Only one NUMA node is present; memory access is uniform and node pinning has no effect."


def _msg_isolcpus_missing(facts, fleet, affinities) -> str:
    return (
        "Kernel command line has no 'isolcpus'. For jitter-sensitive pinned workloads, isolate "
        "dedicated CPUs from the scheduler (e.g. isolcpus=, nohz_full= and rcu_nocbs= boot parameters)."
    )


def _msg_isolcpus_present(facts, fleet, affinities) -> str:
    return (
        f"CPU isolation is configured (isolcpus={_isolcpus_value(facts.kernel_cmdline)}). "
        "Pin latency-critical threads onto the isolated CPUs explicitly."
    )


def _msg_preempt_not_rt(facts, fleet, affinities) -> str:
    return (
        f"Kernel preemption model is '{facts.preemption_model.value}'. For strict timing guarantees, "
        "use a fully-preemptible PREEMPT_RT kernel."
    )


def _msg_preempt_rt(facts, fleet, affinities) -> str:
    return "Kernel is fully preemptible (PREEMPT_RT), which is favorable for strict timing guarantees."


def _msg_nmi_enabled(facts, fleet, affinities) -> str:
    return (
        "NMI watchdog is enabled; its periodic interrupts can add minor jitter. It can be disabled "
        "with 'sysctl kernel.nmi_watchdog=0', but be aware this can mask hard lockups caused by "
        "hardware or driver failures."
    )


def _msg_nmi_disabled(facts, fleet, affinities) -> str:
    return "NMI watchdog is disabled, so it adds no periodic interrupts."


def _msg_irqbalance_active(facts, fleet, affinities) -> str:
    return (
        "irqbalance is running. For latency-sensitive networking, disable it "
        "(sudo systemctl stop irqbalance && sudo systemctl disable irqbalance) and pin NIC IRQs "
        "manually to CPUs on the NIC's NUMA node via /proc/irq/<n>/smp_affinity."
    )


def _msg_irqbalance_inactive(facts, fleet, affinities) -> str:
    return (
        "irqbalance is not running, which is the desired state for manual IRQ pinning. "
        "Check IRQ placement with 'cat /proc/interrupts'."
    )


def _msg_governor_not_performance(facts, fleet, affinities) -> str:
    cpus = _non_performance_cpus(facts)
    governors = sorted({facts.cpu_governors[cpu] for cpu in cpus})
    tool_hint = (
        "'sudo cpupower frequency-set -g performance'"
        if facts.has_optional_tool("cpupower")
        else "writing 'performance' to /sys/devices/system/cpu/cpu*/cpufreq/scaling_governor"
    )
    return (
        f"{len(cpus)} CPU(s) use governor(s) {', '.join(governors)} instead of 'performance' "
        f"(CPUs {_summarize_cpus(cpus)}). Set all CPUs to performance with {tool_hint}."
    )


def _msg_governor_performance(facts, fleet, affinities) -> str:
    return "All CPUs use the 'performance' governor, which is already optimal."


def _msg_deep_c_states(facts, fleet, affinities) -> str:
    return (
        f"Deep C-states are available ({', '.join(_deep_c_states(facts))}). For extreme low latency, "
        "disable them (e.g. intel_idle.max_cstate=1 processor.max_cstate=1, or BIOS settings); "
        "wake-up from deep idle costs tens to hundreds of microseconds."
    )


def _msg_shallow_c_states(facts, fleet, affinities) -> str:
    return "No deep C-states (C3/C6/C7) are exposed, which is favorable for wake-up latency."


def _msg_swappiness_high(facts, fleet, affinities) -> str:
    return (
        f"vm.swappiness is {facts.swappiness}. Lower it to {config.SWAPPINESS_THRESHOLD} or below "
        f"(sysctl vm.swappiness={config.SWAPPINESS_THRESHOLD}) to keep latency-sensitive memory resident."
    )


def _msg_swappiness_low(facts, fleet, affinities) -> str:
    return f"vm.swappiness is {facts.swappiness}, which is already favorable."


def _msg_swappiness_zero(facts, fleet, affinities) -> str:
    return (
        "vm.swappiness is 0: the kernel avoids swap until memory is nearly exhausted. Favorable for "
        "latency, but leaves little headroom before the OOM killer acts."
    )


def _msg_swap_in_use(facts, fleet, affinities) -> str:
    return (
        f"Swap is currently in use ({_format_bytes(facts.swap_used_bytes)}). Swapped-out pages cause "
        "major faults and unpredictable stalls; find the memory pressure source or add RAM."
    )


def _msg_thp_enabled(facts, fleet, affinities) -> str:
    return (
        f"Transparent Huge Pages mode is '{facts.thp_mode.value}'. For predictable latency, disable it "
        "(echo never > /sys/kernel/mm/transparent_hugepage/enabled) to avoid compaction and "
        "khugepaged stalls."
    )


def _msg_thp_never(facts, fleet, affinities) -> str:
    return "Transparent Huge Pages is set to 'never', which is already favorable for predictable latency."


def _msg_io_scheduler_review(facts, fleet, affinities) -> str:
    return (
        f"Block devices using a reordering I/O scheduler: {', '.join(_unfavorable_schedulers(facts))}. "
        "For NVMe/SSD latency, prefer 'none' or 'mq-deadline' "
        "(echo none > /sys/block/<dev>/queue/scheduler)."
    )


def _msg_io_scheduler_ok(facts, fleet, affinities) -> str:
    return "All block devices use a low-overhead I/O scheduler."


def _msg_fleet_concentrated(facts, fleet, affinities) -> str:
    others = [node.id for node in facts.numa_nodes if node.id != fleet.node]
    reserve = (
        f" Reserve node(s) {', '.join(str(n) for n in others)} for compute-bound work."
        if others else ""
    )
    return (
        f"All network adapters sit on NUMA node {fleet.node}. Co-locate network-bound processes there: "
        f"numactl --cpunodebind={fleet.node} --membind={fleet.node} /path/to/network_app.{reserve}"
    )


def _msg_fleet_distributed(facts, fleet, affinities) -> str:
    placement = ", ".join(f"{a.label} -> node {a.node}" for a in affinities if a.node is not None)
    return (
        f"Network adapters span NUMA nodes {', '.join(str(n) for n in fleet.nodes)} ({placement}). "
        "Pin each network-bound process to the node of the device it uses."
    )


def _msg_rss_queues(facts, fleet, affinities) -> str:
    if facts.has_optional_tool("ethtool"):
        how = "Check queues with 'ethtool -l <iface>' and adjust with 'sudo ethtool -L <iface> combined <N>'."
    else:
        how = "Install ethtool to inspect and adjust NIC queue counts."
    return (
        "If your NICs support Receive Side Scaling, spread their queues across CPUs of the NIC's "
        f"local NUMA node for parallel packet processing. {how}"
    )


def _msg_numactl_usage(facts, fleet, affinities) -> str:
    lines = [
        "Launch with NUMA affinity: numactl --cpunodebind=<node> --membind=<node> <program> [args]",
        "Change NUMA policy of a running process (existing memory may not move): "
        "numactl --cpunodebind=<node> --membind=<node> --pid <PID>",
    ]
    if facts.has_optional_tool("taskset"):
        lines.append("Pin to a single CPU: numactl --cpunodebind=0 --membind=0 taskset -c 0 /path/to/app")
        lines.append("Change CPU affinity of a running process: taskset -pc <cpu_list> <PID>")
    if facts.has_optional_tool("chrt"):
        lines.append("Run with real-time priority: chrt -f 80 <program>")
    return "\n".join(lines)


# ============================================================================
# Rule Catalogue
# ============================================================================

def _rule(rule_id, section, level, predicate, build_message) -> TipRule:
    return TipRule(id=rule_id, section=section, level=level, predicate=predicate, build_message=build_message)


_CPU, _NUMA, _NET = ReportSection.CPU, ReportSection.NUMA, ReportSection.NETWORK
_KERNEL, _POWER, _MEM = ReportSection.KERNEL, ReportSection.POWER, ReportSection.MEMORY

TIP_RULES: Tuple[TipRule, ...] = (
    # CPU
    _rule("smt_enabled", _CPU, TipLevel.ADVICE,
          lambda f, fl, a: f.threads_per_core is not None and f.threads_per_core > 1,
          _msg_smt),
    _rule("physical_layout", _CPU, TipLevel.INFO,
          lambda f, fl, a: f.cores_per_socket is not None and f.sockets is not None,
          _msg_layout),
    _rule("tsc_unstable", _CPU, TipLevel.WARNING,
          lambda f, fl, a: f.tsc_constant is False or f.tsc_nonstop is False,
          _msg_tsc_unstable),
    _rule("tsc_stable", _CPU, TipLevel.FAVORABLE,
          lambda f, fl, a: f.tsc_constant is True and f.tsc_nonstop is True,
          _msg_tsc_stable),

    # NUMA
    _rule("numa_distances", _NUMA, TipLevel.INFO,
          lambda f, fl, a: len(f.numa_nodes) > 1 and _max_remote_distance(f) is not None,
          _msg_numa_distances),
    _rule("numa_single_node", _NUMA, TipLevel.INFO,
          lambda f, fl, a: f.numa_node_count == 1,
          _msg_numa_single),

    # Network
    _rule("fleet_concentrated", _NET, TipLevel.ADVICE,
          lambda f, fl, a: fl.state is FleetState.CONCENTRATED,
          _msg_fleet_concentrated),
    _rule("fleet_distributed", _NET, TipLevel.ADVICE,
          lambda f, fl, a: fl.state is FleetState.DISTRIBUTED,
          _msg_fleet_distributed),
    _rule("rss_queues", _NET, TipLevel.INFO,
          lambda f, fl, a: any(x.node is not None for x in a),
          _msg_rss_queues),

    # Kernel & scheduler
    _rule("isolcpus_missing", _KERNEL, TipLevel.ADVICE,
          lambda f, fl, a: f.kernel_cmdline is not None and _isolcpus_value(f.kernel_cmdline) is None,
          _msg_isolcpus_missing),
    _rule("isolcpus_present", _KERNEL, TipLevel.FAVORABLE,
          lambda f, fl, a: f.kernel_cmdline is not None and _isolcpus_value(f.kernel_cmdline) is not None,
          _msg_isolcpus_present),
    _rule("preempt_not_rt", _KERNEL, TipLevel.ADVICE,
          lambda f, fl, a: f.preemption_model not in (PreemptionModel.REAL_TIME, PreemptionModel.UNKNOWN),
          _msg_preempt_not_rt),
    _rule("preempt_rt", _KERNEL, TipLevel.FAVORABLE,
          lambda f, fl, a: f.preemption_model is PreemptionModel.REAL_TIME,
          _msg_preempt_rt),
    _rule("nmi_watchdog_enabled", _KERNEL, TipLevel.WARNING,
          lambda f, fl, a: f.nmi_watchdog_enabled is True,
          _msg_nmi_enabled),
    _rule("nmi_watchdog_disabled", _KERNEL, TipLevel.FAVORABLE,
          lambda f, fl, a: f.nmi_watchdog_enabled is False,
          _msg_nmi_disabled),
    _rule("irqbalance_active", _KERNEL, TipLevel.ADVICE,
          lambda f, fl, a: f.irqbalance_active is True,
          _msg_irqbalance_active),
    _rule("irqbalance_inactive", _KERNEL, TipLevel.FAVORABLE,
          lambda f, fl, a: f.irqbalance_active is False,
          _msg_irqbalance_inactive),

    # Power management
    _rule("governor_not_performance", _POWER, TipLevel.ADVICE,
          lambda f, fl, a: f.cpu_governors is not None and bool(_non_performance_cpus(f)),
          _msg_governor_not_performance),
    _rule("governor_performance", _POWER, TipLevel.FAVORABLE,
          lambda f, fl, a: f.cpu_governors is not None and not _non_performance_cpus(f),
          _msg_governor_performance),
    _rule("deep_c_states", _POWER, TipLevel.ADVICE,
          lambda f, fl, a: f.c_states is not None and bool(_deep_c_states(f)),
          _msg_deep_c_states),
    _rule("shallow_c_states", _POWER, TipLevel.FAVORABLE,
          lambda f, fl, a: f.c_states is not None and not _deep_c_states(f),
          _msg_shallow_c_states),

    # Memory & I/O
    _rule("swappiness_high", _MEM, TipLevel.ADVICE,
          lambda f, fl, a: f.swappiness is not None and f.swappiness > config.SWAPPINESS_THRESHOLD,
          _msg_swappiness_high),
    _rule("swappiness_low", _MEM, TipLevel.FAVORABLE,
          lambda f, fl, a: f.swappiness is not None and 0 < f.swappiness <= config.SWAPPINESS_THRESHOLD,
          _msg_swappiness_low),
    _rule("swappiness_zero", _MEM, TipLevel.FAVORABLE,
          lambda f, fl, a: f.swappiness == 0,
          _msg_swappiness_zero),
    _rule("swap_in_use", _MEM, TipLevel.WARNING,
          lambda f, fl, a: f.swap_used_bytes is not None and f.swap_used_bytes > 0,
          _msg_swap_in_use),
    _rule("thp_enabled", _MEM, TipLevel.ADVICE,
          lambda f, fl, a: f.thp_mode in (ThpMode.ALWAYS, ThpMode.MADVISE),
          _msg_thp_enabled),
    _rule("thp_never", _MEM, TipLevel.FAVORABLE,
          lambda f, fl, a: f.thp_mode is ThpMode.NEVER,
          _msg_thp_never),
    _rule("io_scheduler_review", _MEM, TipLevel.ADVICE,
          lambda f, fl, a: f.io_schedulers is not None and bool(_unfavorable_schedulers(f)),
          _msg_io_scheduler_review),
    _rule("io_scheduler_ok", _MEM, TipLevel.FAVORABLE,
          lambda f, fl, a: f.io_schedulers is not None and not _unfavorable_schedulers(f),
          _msg_io_scheduler_ok),

    # Practical usage
    _rule("numactl_usage", ReportSection.USAGE, TipLevel.INFO,
          lambda f, fl, a: f.numa_node_count is not None,
          _msg_numactl_usage),
)


# ============================================================================
# Selection
# ============================================================================

def select_tips(
    facts: HostFacts,
    fleet: FleetAffinitySummary,
    affinities: Iterable[ResolvedDeviceAffinity] = (),
    tips_enabled: bool = True,
    rules: Iterable[TipRule] = TIP_RULES,
) -> List[AdvisoryTip]:
    """
    Evaluate the rule catalogue in order and return the tips that apply.

    With tips_enabled False nothing is evaluated and the result is always
    empty.
    """
    if not tips_enabled:
        return []

    affinities = tuple(affinities)
    tips: List[AdvisoryTip] = []
    for rule in rules:
        tip = rule.evaluate(facts, fleet, affinities)
        if tip is not None:
            tips.append(tip)

    logger.debug(f"Selected {len(tips)} tip(s): {', '.join(t.id for t in tips)}")
    return tips
