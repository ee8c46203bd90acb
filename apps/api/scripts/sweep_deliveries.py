import argparse
import logging

from core.config import get_settings
from core.db import SessionLocal
from core.logging_utils import configure_logging
from core.scheduler import DeliveryScheduler


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run one due-retry sweep: reclaim stale claims, then execute every due delivery inline."
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of due deliveries to execute (default: 100).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only log warnings and errors.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging()
    if args.quiet:
        logging.getLogger().setLevel(logging.WARNING)

    scheduler = DeliveryScheduler(SessionLocal, settings=get_settings())
    result = scheduler.run_due(limit=args.limit)
    print(f"reclaimed={result.reclaimed}")
    print(f"submitted={result.submitted}")


if __name__ == "__main__":
    main()
