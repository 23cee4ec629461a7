#!/usr/bin/env python3
"""
server_insight.py - NUMA, CPU and PCI affinity insight for Linux servers

Prints a read-only report of CPU topology, NUMA layout, NIC-to-node
placement, kernel tuning, power management and memory/I/O knobs for
multi-socket servers. With --tips, advisory tuning tips are added under each
section.

Usage:
    server-insight [--tips]

Exit codes:
    0 - report produced (some optional facts may be unavailable)
    1 - required inspection tools are missing; no report produced
"""

import argparse
import logging
import sys
from typing import List, Optional

import insight_config as config
from fact_collector import MissingPrerequisiteError, collect_host_facts
from numa_affinity import resolve_all, summarize_fleet
from report_renderer import render_missing_prerequisites, render_report
from tip_engine import select_tips

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format=config.LOG_FORMAT,
        stream=sys.stderr,
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="server-insight",
        description="Report NUMA, CPU and PCI affinity of a Linux server (read-only).",
    )
    parser.add_argument(
        "--tips",
        action="store_true",
        help="include advisory tuning tips in the report",
    )
    return parser.parse_args(argv)


def run(tips_enabled: bool) -> int:
    try:
        facts = collect_host_facts()
    except MissingPrerequisiteError as e:
        render_missing_prerequisites(e)
        return 1

    affinities = resolve_all(facts.network_devices)
    fleet = summarize_fleet(affinities)
    tips = select_tips(facts, fleet, affinities, tips_enabled=tips_enabled)
    logger.info(f"NIC fleet is {fleet.state.value}; rendering report with {len(tips)} tip(s)")

    render_report(facts, affinities, fleet, tips)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging()
    return run(tips_enabled=args.tips)


if __name__ == "__main__":
    sys.exit(main())
