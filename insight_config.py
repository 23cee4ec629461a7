"""
insight_config.py - Configuration for the server insight report

Everything here is a fixed constant. The tool reads no config file and no
environment variables; the only runtime switch is the --tips flag.
"""

# ============================================================================
# External Tools
# ============================================================================

# Missing any of these aborts the run before a report is produced
REQUIRED_TOOLS = ("lscpu", "numactl", "lspci", "lshw")

# Nice to have - availability is reported, absence only mutes related hints
OPTIONAL_TOOLS = ("taskset", "chrt", "cpupower", "swapon", "ethtool")

INSTALL_HINT = (
    "On Fedora/RHEL: sudo dnf install util-linux numactl pciutils lshw\n"
    "On Debian/Ubuntu: sudo apt install util-linux numactl pciutils lshw"
)

# Force untranslated tool output so the parsers see stable labels
COMMAND_ENV_OVERRIDES = {"LC_ALL": "C", "LANG": "C"}

# ============================================================================
# sysfs / procfs Locations
# ============================================================================

OS_RELEASE_FILES = ("/etc/fedora-release", "/etc/os-release")

PROC_CMDLINE = "/proc/cmdline"
PROC_CPUINFO = "/proc/cpuinfo"
PROC_NMI_WATCHDOG = "/proc/sys/kernel/nmi_watchdog"
PROC_SWAPPINESS = "/proc/sys/vm/swappiness"

SYS_KERNEL_REALTIME = "/sys/kernel/realtime"
SYS_DEBUG_PREEMPT = "/sys/kernel/debug/sched/preempt"
BOOT_CONFIG_TEMPLATE = "/boot/config-{release}"

SYS_THP_ENABLED = "/sys/kernel/mm/transparent_hugepage/enabled"
SYS_CPU_ROOT = "/sys/devices/system/cpu"
SYS_CPUIDLE_DIR = "/sys/devices/system/cpu/cpu0/cpuidle"
SYS_BLOCK_ROOT = "/sys/block"

SYS_NET_NUMA_TEMPLATE = "/sys/class/net/{iface}/device/numa_node"
SYS_PCI_NUMA_TEMPLATE = "/sys/bus/pci/devices/{address}/numa_node"

# Block devices that never carry real I/O
IGNORED_BLOCK_PREFIXES = ("loop", "ram", "zram", "sr")

# ============================================================================
# Tuning Thresholds
# ============================================================================

# Above this the kernel swaps eagerly enough to hurt tail latency
SWAPPINESS_THRESHOLD = 10

# Idle states with wake-up latency too high for low-latency work
DEEP_C_STATE_PATTERN = r"^C(3|6|7)(?![0-9])"

# Schedulers that add no reordering latency on fast devices
FAVORABLE_IO_SCHEDULERS = ("none", "mq-deadline", "noop", "deadline")

# Local memory access cost reported by the firmware (SLIT diagonal)
LOCAL_NUMA_DISTANCE = 10

IRQBALANCE_PROCESS_NAME = "irqbalance"

# ============================================================================
# Report
# ============================================================================

TOP_PROCESS_COUNT = 5

# ============================================================================
# Logging
# ============================================================================

LOG_LEVEL = "WARNING"  # DEBUG, INFO, WARNING, ERROR
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
