#!/usr/bin/env python3
"""
Stall Recovery Script - One-shot version of the periodic beat task

Fails every record stuck in processing for longer than the stall timeout so
it becomes retryable, and optionally re-launches records that were never
picked up.

Usage:
    python scripts/recover_stalled.py
    python scripts/recover_stalled.py --timeout 300 --dispatch-pending
"""

import sys
import argparse
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.config import settings
from src.core.database import session_maker
from src.core.logging import setup_logging, get_logger
from src.pipeline.coordinators import dispatch_pending, recover_stalled
from src.pipeline.launcher import build_launcher
from src.pipeline.runner import default_runner
from src.pipeline.tracker import StatusTracker

logger = get_logger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Fail stalled image records and re-dispatch pending ones"
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=settings.STALL_TIMEOUT_SECONDS,
        help="Seconds a record may stay in processing (default: STALL_TIMEOUT_SECONDS)"
    )
    parser.add_argument(
        "--dispatch-pending",
        action="store_true",
        help="Also launch records still pending after a minute"
    )
    args = parser.parse_args()

    setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.LOG_FORMAT_JSON)
    tracker = StatusTracker(session_maker)

    recovered = recover_stalled(tracker, args.timeout)
    print(f"Failed {len(recovered)} stalled record(s)")
    for image_id in recovered:
        print(f"  {image_id}")

    if args.dispatch_pending:
        launcher = build_launcher(settings.PIPELINE_LAUNCHER, runner_factory=default_runner, max_workers=1)
        dispatched = dispatch_pending(tracker, launcher)
        print(f"Dispatched {len(dispatched)} pending record(s)")
        if hasattr(launcher, "shutdown"):
            # Thread launcher: wait for the runs before the process exits
            launcher.shutdown(wait=True)


if __name__ == "__main__":
    main()
