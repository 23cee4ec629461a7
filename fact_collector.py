"""
fact_collector.py - Read-only collection of host facts

Gathers CPU topology, NUMA layout, NIC placement, kernel tuning, power
management and memory/I/O knobs from the external inspection tools and from
sysfs/procfs, and packs them into one HostFacts snapshot.

Each fact has its own read_* function backed by a pure parse_* function, so
changing where a fact comes from never touches the resolver or the tip
engine.

Failure policy:
- A missing required tool (lscpu, numactl, lspci, lshw) is fatal and is
  reported for all tools at once via MissingPrerequisiteError.
- Any other failed read is logged once and the fact is marked unavailable
  (None / UNKNOWN). Nothing is retried.
"""

import logging
import os
import platform
import re
import shutil
import socket
import subprocess
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

import psutil

import insight_config as config
from insight_models import (
    HostFacts,
    NetworkDevice,
    NumaNode,
    PreemptionModel,
    ProcessAffinity,
    ThpMode,
)

logger = logging.getLogger(__name__)


class MissingPrerequisiteError(RuntimeError):
    """One or more required inspection tools are not installed."""

    def __init__(self, missing: Iterable[str]):
        self.missing = tuple(missing)
        super().__init__(f"Missing required tools: {', '.join(self.missing)}")


# ============================================================================
# Generic Helpers
# ============================================================================

def check_prerequisites(tools: Iterable[str] = config.REQUIRED_TOOLS) -> None:
    """Raise MissingPrerequisiteError listing every required tool not on PATH."""
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        logger.info(f"Required tools not found: {', '.join(missing)}")
        raise MissingPrerequisiteError(missing)


def run_command(cmd: List[str]) -> Optional[str]:
    """
    Run an inspection command and return its stdout.

    Returns None if the binary is missing, cannot be started, or exits
    non-zero. There is no timeout: these are local, side-effect-free reads.
    """
    env = dict(os.environ)
    env.update(config.COMMAND_ENV_OVERRIDES)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, env=env)
    except FileNotFoundError:
        logger.info(f"{cmd[0]} not found")
        return None
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Could not run {' '.join(cmd)}: {e}")
        return None

    if result.returncode != 0:
        logger.warning(f"{' '.join(cmd)} exited with {result.returncode}: {result.stderr.strip()}")
        return None
    return result.stdout


def read_sysfs(path: str) -> Optional[str]:
    """Read a sysfs/procfs file, None if it is absent or unreadable."""
    try:
        with open(path, "r") as f:
            return f.read().strip()
    except OSError as e:
        logger.debug(f"Cannot read {path}: {e}")
        return None


def _to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


# ============================================================================
# Parsers
# ============================================================================

def parse_cpu_list(text: str) -> Tuple[int, ...]:
    """Expand a kernel CPU list such as "0-3,8,10-11"."""
    cpus: List[int] = []
    for part in text.strip().split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start, end = part.split("-", 1)
            cpus.extend(range(int(start), int(end) + 1))
        else:
            cpus.append(int(part))
    return tuple(cpus)


def parse_bracketed_choice(text: Optional[str]) -> Optional[str]:
    """
    Return the active entry of a sysfs choice list.

    "always [madvise] never" -> "madvise". A file holding a single bare word
    (e.g. a queue scheduler of "none") returns that word.
    """
    if not text:
        return None
    match = re.search(r"\[([^\]]+)\]", text)
    if match:
        return match.group(1).strip()
    words = text.split()
    if len(words) == 1:
        return words[0]
    return None


def parse_os_release(text: str) -> Optional[str]:
    """Pull PRETTY_NAME out of an os-release file."""
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("PRETTY_NAME="):
            return line.split("=", 1)[1].strip().strip('"')
    return None


def parse_lscpu(text: str) -> Dict[str, str]:
    info: Dict[str, str] = {}
    for line in text.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        info[key.strip()] = value.strip()
    return info


def parse_lscpu_numa_nodes(info: Dict[str, str]) -> List[NumaNode]:
    """
    NUMA nodes from the "NUMA nodeN CPU(s)" lines of parsed lscpu output.

    Only node ids and CPU lists are known this way; sizes and distances stay
    unset.
    """
    nodes: List[NumaNode] = []
    for key, value in info.items():
        match = re.match(r"^NUMA node(\d+) CPU\(s\)$", key)
        if match:
            nodes.append(NumaNode(id=int(match.group(1)), cpus=parse_cpu_list(value)))
    return sorted(nodes, key=lambda node: node.id)


def validate_distance_matrix(matrix: List[List[int]]) -> bool:
    """
    A usable SLIT matrix is square and symmetric, and no remote entry is
    cheaper than the local (diagonal) entry of its row.
    """
    size = len(matrix)
    if size == 0 or any(len(row) != size for row in matrix):
        return False
    for i, row in enumerate(matrix):
        for j, value in enumerate(row):
            if value != matrix[j][i]:
                return False
            if value < row[i]:
                return False
    return True


def parse_numactl_hardware(text: str) -> List[NumaNode]:
    """
    Parse `numactl --hardware`.

    Distances are attached only when the matrix covers exactly the listed
    nodes and passes validate_distance_matrix; otherwise they are dropped.
    """
    cpus: Dict[int, Tuple[int, ...]] = {}
    sizes: Dict[int, int] = {}
    frees: Dict[int, int] = {}
    header_ids: List[int] = []
    rows: Dict[int, List[int]] = {}
    in_distances = False

    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("node distances"):
            in_distances = True
            continue

        if in_distances:
            if stripped.startswith("node"):
                header_ids = [int(tok) for tok in stripped.split()[1:] if tok.isdigit()]
                continue
            match = re.match(r"^(\d+):\s*(.*)$", stripped)
            if match:
                rows[int(match.group(1))] = [int(tok) for tok in match.group(2).split()]
            continue

        match = re.match(r"^node (\d+) cpus:(.*)$", stripped)
        if match:
            cpus[int(match.group(1))] = tuple(int(tok) for tok in match.group(2).split())
            continue
        match = re.match(r"^node (\d+) size: (\d+) MB", stripped)
        if match:
            sizes[int(match.group(1))] = int(match.group(2))
            continue
        match = re.match(r"^node (\d+) free: (\d+) MB", stripped)
        if match:
            frees[int(match.group(1))] = int(match.group(2))

    node_ids = sorted(set(cpus) | set(sizes))
    distances: Dict[int, Tuple[int, ...]] = {}
    if rows:
        matrix = [rows.get(node_id, []) for node_id in header_ids]
        if header_ids == node_ids and validate_distance_matrix(matrix):
            distances = {node_id: tuple(row) for node_id, row in zip(header_ids, matrix)}
        else:
            logger.warning("numactl distance matrix is not square and symmetric - ignoring distances")

    return [
        NumaNode(
            id=node_id,
            cpus=cpus.get(node_id, ()),
            size_mb=sizes.get(node_id),
            free_mb=frees.get(node_id),
            distances=distances.get(node_id, ()),
        )
        for node_id in node_ids
    ]


def parse_lshw_network(text: str) -> List[NetworkDevice]:
    """
    Parse `lshw -c network -businfo` into PCI network devices.

    Columns are located from the header so that a blank Device column (no
    driver bound) does not shift the rest. Entries without a pci@ bus
    address (bridges, virtual interfaces) are skipped.
    """
    lines = text.splitlines()
    header_index = next((i for i, line in enumerate(lines) if line.startswith("Bus info")), None)
    if header_index is None:
        logger.warning("Unrecognized lshw -businfo output")
        return []

    header = lines[header_index]
    col_device = header.index("Device")
    col_class = header.index("Class")
    col_desc = header.index("Description")

    devices: List[NetworkDevice] = []
    seen: Set[str] = set()
    for line in lines[header_index + 1:]:
        if not line.strip() or line.startswith("="):
            continue
        bus = line[:col_device].strip()
        interface = line[col_device:col_class].strip()
        device_class = line[col_class:col_desc].strip()
        description = line[col_desc:].strip()

        if device_class != "network" or not bus.startswith("pci@"):
            continue
        address = bus[len("pci@"):]
        if address in seen:
            continue
        seen.add(address)
        devices.append(NetworkDevice(
            interface=interface or None,
            pci_address=address,
            description=description,
        ))
    return devices


def parse_lspci_numa_node(text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    match = re.search(r"NUMA node:\s*(-?\d+)", text)
    return int(match.group(1)) if match else None


def parse_cpu_flags(cpuinfo: Optional[str]) -> Optional[Set[str]]:
    """CPU feature flags from the first flags line of /proc/cpuinfo."""
    if not cpuinfo:
        return None
    for line in cpuinfo.splitlines():
        if line.startswith("flags") and ":" in line:
            return set(line.split(":", 1)[1].split())
    return None


_PREEMPT_NAMES = {
    "none": PreemptionModel.NONE,
    "voluntary": PreemptionModel.VOLUNTARY,
    "full": PreemptionModel.FULL,
    "lazy": PreemptionModel.FULL,
}


def parse_preemption_model(
    realtime: Optional[str] = None,
    debug_preempt: Optional[str] = None,
    cmdline: Optional[str] = None,
    kernel_config: Optional[str] = None,
    uname_version: Optional[str] = None,
) -> PreemptionModel:
    """
    Decide the preemption model from the strongest evidence available.

    Order: /sys/kernel/realtime, the debugfs preempt selector, a preempt=
    boot parameter, the kernel build config, and last the uname banner.
    """
    if realtime is not None and realtime.strip() == "1":
        return PreemptionModel.REAL_TIME

    # debugfs marks the active model as "(full)"; older kernels used "[full]"
    if debug_preempt:
        match = re.search(r"[(\[](\w+)[)\]]", debug_preempt)
        if match and match.group(1) in _PREEMPT_NAMES:
            return _PREEMPT_NAMES[match.group(1)]

    if cmdline:
        match = re.search(r"(?:^|\s)preempt=(none|voluntary|full|lazy)(?:\s|$)", cmdline)
        if match:
            return _PREEMPT_NAMES[match.group(1)]

    if kernel_config:
        if re.search(r"^CONFIG_PREEMPT_RT=y$", kernel_config, re.MULTILINE):
            return PreemptionModel.REAL_TIME
        if re.search(r"^CONFIG_PREEMPT=y$", kernel_config, re.MULTILINE):
            return PreemptionModel.FULL
        if re.search(r"^CONFIG_PREEMPT_VOLUNTARY=y$", kernel_config, re.MULTILINE):
            return PreemptionModel.VOLUNTARY
        if re.search(r"^CONFIG_PREEMPT_NONE=y$", kernel_config, re.MULTILINE):
            return PreemptionModel.NONE

    if uname_version:
        if "PREEMPT_RT" in uname_version:
            return PreemptionModel.REAL_TIME
        # PREEMPT_DYNAMIC alone does not say which model was selected
        if re.search(r"\bPREEMPT\b", uname_version):
            return PreemptionModel.FULL

    return PreemptionModel.UNKNOWN


# ============================================================================
# Per-Fact Extraction
# ============================================================================

def read_os_name() -> Optional[str]:
    fedora = read_sysfs(config.OS_RELEASE_FILES[0])
    if fedora:
        return fedora
    os_release = read_sysfs(config.OS_RELEASE_FILES[1])
    return parse_os_release(os_release) if os_release else None


def read_lscpu() -> Dict[str, str]:
    output = run_command(["lscpu"])
    info = parse_lscpu(output) if output else {}
    if not info:
        logger.warning("lscpu returned nothing - CPU topology unavailable")
    return info


def read_cpu_topology(info: Dict[str, str]) -> Dict[str, Optional[object]]:
    return {
        "architecture": info.get("Architecture"),
        "cpu_op_modes": info.get("CPU op-mode(s)"),
        "model_name": info.get("Model name"),
        "logical_cpus": _to_int(info.get("CPU(s)")),
        "threads_per_core": _to_int(info.get("Thread(s) per core")),
        "cores_per_socket": _to_int(info.get("Core(s) per socket")),
        "sockets": _to_int(info.get("Socket(s)")),
        "numa_node_count": _to_int(info.get("NUMA node(s)")),
    }


def read_numa_nodes(lscpu_info: Optional[Dict[str, str]] = None) -> List[NumaNode]:
    """numactl --hardware, falling back to lscpu's per-node CPU lists."""
    output = run_command(["numactl", "--hardware"])
    nodes = parse_numactl_hardware(output) if output else []
    if not nodes and lscpu_info:
        nodes = parse_lscpu_numa_nodes(lscpu_info)
        if nodes:
            logger.info(f"numactl reported no nodes - using lscpu CPU lists for {len(nodes)} node(s)")
    return nodes


def read_kernel_cmdline() -> Optional[str]:
    return read_sysfs(config.PROC_CMDLINE)


def read_preemption_model() -> PreemptionModel:
    release = platform.release()
    model = parse_preemption_model(
        realtime=read_sysfs(config.SYS_KERNEL_REALTIME),
        debug_preempt=read_sysfs(config.SYS_DEBUG_PREEMPT),
        cmdline=read_kernel_cmdline(),
        kernel_config=read_sysfs(config.BOOT_CONFIG_TEMPLATE.format(release=release)),
        uname_version=platform.version(),
    )
    if model is PreemptionModel.UNKNOWN:
        logger.info("Preemption model could not be determined")
    return model


def read_tsc_stability() -> Tuple[Optional[bool], Optional[bool]]:
    """Return (constant_tsc, nonstop_tsc); both None when flags are unreadable."""
    flags = parse_cpu_flags(read_sysfs(config.PROC_CPUINFO))
    if flags is None:
        return None, None
    return "constant_tsc" in flags, "nonstop_tsc" in flags


def read_nmi_watchdog() -> Optional[bool]:
    value = read_sysfs(config.PROC_NMI_WATCHDOG)
    if value in ("0", "1"):
        return value == "1"
    return None


def read_swappiness() -> Optional[int]:
    value = _to_int(read_sysfs(config.PROC_SWAPPINESS))
    if value is None:
        return None
    if not 0 <= value <= 100:
        logger.info(f"vm.swappiness={value} is outside 0-100 - reporting it as unavailable")
        return None
    return value


def read_swap_used() -> Optional[int]:
    try:
        return int(psutil.swap_memory().used)
    except (OSError, RuntimeError) as e:
        logger.info(f"Swap usage unavailable: {e}")
        return None


def read_thp_mode() -> ThpMode:
    active = parse_bracketed_choice(read_sysfs(config.SYS_THP_ENABLED))
    try:
        return ThpMode(active)
    except ValueError:
        return ThpMode.UNKNOWN


def read_cpu_governors(cpu_root: str = config.SYS_CPU_ROOT) -> Optional[Dict[int, str]]:
    governors: Dict[int, str] = {}
    for path in Path(cpu_root).glob("cpu[0-9]*/cpufreq/scaling_governor"):
        match = re.match(r"cpu(\d+)$", path.parent.parent.name)
        governor = read_sysfs(str(path))
        if match and governor:
            governors[int(match.group(1))] = governor
    if not governors:
        logger.info("No cpufreq governors exposed")
        return None
    return dict(sorted(governors.items()))


def read_c_states(cpuidle_dir: str = config.SYS_CPUIDLE_DIR) -> Optional[Tuple[str, ...]]:
    root = Path(cpuidle_dir)
    if not root.is_dir():
        logger.info(f"{cpuidle_dir} missing - C-state information unavailable")
        return None

    def _state_index(path: Path) -> int:
        suffix = path.name[len("state"):]
        return int(suffix) if suffix.isdigit() else 0

    names: List[str] = []
    for state_dir in sorted(root.glob("state*"), key=_state_index):
        name = read_sysfs(str(state_dir / "name"))
        if name:
            names.append(name)
    return tuple(names) if names else None


def read_io_schedulers(block_root: str = config.SYS_BLOCK_ROOT) -> Optional[Dict[str, str]]:
    root = Path(block_root)
    if not root.is_dir():
        return None

    schedulers: Dict[str, str] = {}
    for device in sorted(root.iterdir(), key=lambda p: p.name):
        if device.name.startswith(config.IGNORED_BLOCK_PREFIXES):
            continue
        active = parse_bracketed_choice(read_sysfs(str(device / "queue" / "scheduler")))
        if active:
            schedulers[device.name] = active
    return schedulers or None


def read_irqbalance_active() -> Optional[bool]:
    try:
        for proc in psutil.process_iter(["name"]):
            if proc.info.get("name") == config.IRQBALANCE_PROCESS_NAME:
                return True
    except psutil.Error as e:
        logger.info(f"Process table unavailable: {e}")
        return None
    return False


def read_network_devices() -> List[NetworkDevice]:
    output = run_command(["lshw", "-c", "network", "-businfo"])
    if not output:
        logger.info("lshw reported no network devices")
        return []

    devices: List[NetworkDevice] = []
    for device in parse_lshw_network(output):
        if device.interface:
            sysfs_path = config.SYS_NET_NUMA_TEMPLATE.format(iface=device.interface)
        else:
            sysfs_path = config.SYS_PCI_NUMA_TEMPLATE.format(address=device.pci_address)
        sysfs_node = _to_int(read_sysfs(sysfs_path))
        pci_node = parse_lspci_numa_node(run_command(["lspci", "-vvs", device.pci_address]))
        devices.append(device.model_copy(update={
            "sysfs_numa_node": sysfs_node,
            "pci_numa_node": pci_node,
        }))
    return devices


def read_optional_tools(tools: Iterable[str] = config.OPTIONAL_TOOLS) -> Dict[str, bool]:
    return {tool: shutil.which(tool) is not None for tool in tools}


def read_top_processes(limit: int = config.TOP_PROCESS_COUNT) -> List[ProcessAffinity]:
    """Largest processes by resident memory, with their CPU affinity."""
    candidates = []
    try:
        for proc in psutil.process_iter(["pid", "name", "memory_info"]):
            mem = proc.info.get("memory_info")
            if mem is None:
                continue
            candidates.append((mem.rss, proc))
    except psutil.Error as e:
        logger.info(f"Process table unavailable: {e}")
        return []

    candidates.sort(key=lambda item: item[0], reverse=True)
    processes: List[ProcessAffinity] = []
    for rss, proc in candidates[:limit]:
        try:
            affinity: Optional[Tuple[int, ...]] = tuple(proc.cpu_affinity())
        except psutil.Error:
            affinity = None
        processes.append(ProcessAffinity(
            pid=proc.info["pid"],
            name=proc.info.get("name") or "?",
            rss_mb=round(rss / (1024 ** 2), 1),
            cpu_affinity=affinity,
        ))
    return processes


# ============================================================================
# Main Collection Entry Point
# ============================================================================

def collect_host_facts() -> HostFacts:
    """
    Check prerequisites, then read every fact once.

    Raises:
        MissingPrerequisiteError: before any fact is read
    """
    check_prerequisites()
    logger.info("Collecting host facts...")

    lscpu_info = read_lscpu()
    topology = read_cpu_topology(lscpu_info)
    numa_nodes = read_numa_nodes(lscpu_info)
    if topology["numa_node_count"] is None and numa_nodes:
        topology["numa_node_count"] = len(numa_nodes)
    tsc_constant, tsc_nonstop = read_tsc_stability()

    facts = HostFacts(
        hostname=socket.gethostname(),
        kernel_version=platform.release(),
        os_name=read_os_name(),
        **topology,
        numa_nodes=tuple(numa_nodes),
        kernel_cmdline=read_kernel_cmdline(),
        preemption_model=read_preemption_model(),
        tsc_constant=tsc_constant,
        tsc_nonstop=tsc_nonstop,
        nmi_watchdog_enabled=read_nmi_watchdog(),
        irqbalance_active=read_irqbalance_active(),
        cpu_governors=read_cpu_governors(),
        c_states=read_c_states(),
        swappiness=read_swappiness(),
        swap_used_bytes=read_swap_used(),
        thp_mode=read_thp_mode(),
        io_schedulers=read_io_schedulers(),
        network_devices=tuple(read_network_devices()),
        optional_tools=read_optional_tools(),
        top_processes=tuple(read_top_processes()),
    )

    logger.info(
        f"Collected facts for {facts.hostname}: {facts.numa_node_count} NUMA node(s), "
        f"{len(facts.network_devices)} network device(s)"
    )
    return facts
