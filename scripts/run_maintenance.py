"""
scripts/run_maintenance.py

Process entry point for ingestion and tier maintenance.

Usage:
    python scripts/run_maintenance.py                 # run all jobs until interrupted
    python scripts/run_maintenance.py --once rollover # run one job and exit
    python scripts/run_maintenance.py --settings config/settings.yaml
"""
from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from logtiers.services.errors import FatalStoreError
from logtiers.services.runner import JOB_NAMES, build_runner
from logtiers.services.settings import load_settings

logger = logging.getLogger("run_maintenance")


def main() -> int:
    parser = argparse.ArgumentParser(description="Run log ingestion and tier maintenance jobs.")
    parser.add_argument("--settings", type=Path, default=None, help="Path to settings.yaml")
    parser.add_argument("--once", choices=JOB_NAMES, help="Run a single job once and exit")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(args.settings)
    except RuntimeError as exc:
        logger.error(str(exc))
        return 2

    try:
        runner = build_runner(settings)
    except FatalStoreError as exc:
        logger.error(f"Refusing to start maintenance: {exc}")
        return 1

    if args.once:
        runner.startup()
        report = runner.run_once(args.once)
        runner.stop()
        if report is None:
            logger.warning(f"Job {args.once} did not run (not leader or failed)")
            return 1
        print(json.dumps(report, indent=2, default=str))
        return 0

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    runner.start()
    stop_event.wait()
    runner.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
