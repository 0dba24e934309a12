#!/usr/bin/env python3
"""
Image Audit Script - Check stored files against image records

For every record of an owner, checks that the original, optimized and
thumbnail files its URLs point at exist on disk. Completed records whose
thumbnail is missing are reported as orphans.

Usage:
    python scripts/audit_images.py <owner_id>
    python scripts/audit_images.py <owner_id> --delete-orphans
    python scripts/audit_images.py <owner_id> --json
"""

import json
import sys
import argparse
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.config import settings
from src.core.database import session_maker
from src.core.logging import setup_logging, get_logger
from src.core.storage import get_storage
from src.pipeline.coordinators import audit_images
from src.pipeline.tracker import StatusTracker

logger = get_logger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Check that image records point at existing files"
    )
    parser.add_argument("owner_id", help="Owner whose images are audited")
    parser.add_argument(
        "--delete-orphans",
        action="store_true",
        help="Delete completed records whose thumbnail file is missing"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON"
    )
    args = parser.parse_args()

    setup_logging(log_level=settings.LOG_LEVEL, json_format=False)

    report = audit_images(
        StatusTracker(session_maker),
        get_storage(),
        args.owner_id,
        delete_orphans=args.delete_orphans,
    )

    if args.json:
        print(json.dumps(report, indent=2))
    else:
        for entry in report:
            missing = [name for name, present in entry["files"].items() if not present]
            flag = "ORPHAN" if entry["orphan"] else "ok"
            if entry["deleted"]:
                flag = "DELETED"
            print(f"{entry['image_id']}  {entry['status']:<10}  {flag:<7}  missing={','.join(missing) or '-'}")

    orphans = sum(1 for entry in report if entry["orphan"])
    print(f"\n{len(report)} records checked, {orphans} orphaned", file=sys.stderr)
    sys.exit(1 if orphans and not args.delete_orphans else 0)


if __name__ == "__main__":
    main()
