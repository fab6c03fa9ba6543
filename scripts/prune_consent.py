"""
Delete checkout sessions that never reached an order, with their events.

Usage:
    python scripts/prune_consent.py [--days 45] [--batch 500] [--dry-run]
"""

import argparse
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.tasks import prune_consent_sessions


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Prune abandoned consent sessions")
    parser.add_argument("--days", type=int, default=None, help="minimum session age in days")
    parser.add_argument("--batch", type=int, default=None, help="sessions deleted per transaction")
    parser.add_argument("--dry-run", action="store_true", help="count only, delete nothing")
    args = parser.parse_args(argv)

    result = prune_consent_sessions(days=args.days, batch=args.batch, dry_run=args.dry_run)
    print(json.dumps(result, indent=2, default=str))
    return 1 if "error" in result else 0


if __name__ == "__main__":
    sys.exit(main())
