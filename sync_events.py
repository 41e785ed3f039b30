"""Command line driver for the canonical events sync.

Dry run is the default; pass ``--apply`` to write canonical events.

    python sync_events.py                  # dry run, all calendars
    python sync_events.py --apply          # real inserts/updates
    python sync_events.py --calendar=cal-123 -v
"""
import argparse
import json
import logging
import sys
from dataclasses import asdict
from typing import List, Optional

from config.logging_config import setup_logging
from config.settings import WorkerSettings
from processor.sync_worker import create_sync_worker

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sync iCal feeds into the canonical events store"
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Perform real inserts/updates (default is a dry run)"
    )
    parser.add_argument(
        "--calendar",
        metavar="ID",
        help="Only sync calendar URLs containing this identifier"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log every per-event decision"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run a sync and print the final statistics as JSON.

    Returns:
        0 when the run completed (per-event errors included), 1 on fatal errors
    """
    args = build_parser().parse_args(argv)
    settings = WorkerSettings.from_env()
    setup_logging(settings.log_level)

    logger.info(
        "Canonical event worker CLI started",
        extra={
            'apply': args.apply,
            'calendar_id': args.calendar,
            'verbose': args.verbose
        }
    )

    try:
        worker = create_sync_worker(settings)
        stats = worker.sync(
            dry_run=not args.apply,
            calendar_id=args.calendar,
            verbose=args.verbose
        )
    except Exception as e:
        logger.error(f"Worker failed: {e}")
        return 1

    print(json.dumps(asdict(stats), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
