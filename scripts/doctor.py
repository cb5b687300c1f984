#!/usr/bin/env python3
"""
PM Team Doctor

Runs every health check against the current environment and prints the
report. Exit code 1 when the system is unhealthy.

Usage:
    python scripts/doctor.py [--json]
"""

import argparse
import json
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from pm_controller.config import Settings, configure_logging  # noqa: E402
from pm_controller.health import HealthMonitor, format_report  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Diagnose the PM team environment")
    parser.add_argument("--json", action="store_true", help="print the report as JSON")
    args = parser.parse_args()

    settings = Settings.from_env()
    configure_logging("WARNING")
    report = HealthMonitor(settings).run_all_checks()

    if args.json:
        print(json.dumps(report, indent=2))
    else:
        print(format_report(report))
    return 1 if report["overall_status"] == "unhealthy" else 0


if __name__ == "__main__":
    sys.exit(main())
