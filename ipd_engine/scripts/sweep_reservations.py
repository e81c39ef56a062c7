# ipd_engine/scripts/sweep_reservations.py
"""
Release lapsed bed reservations.

    python -m ipd_engine.scripts.sweep_reservations          # one pass
    python -m ipd_engine.scripts.sweep_reservations --loop 60

Safe to run from cron while the API is live: each bed is released with the
same compare-and-swap the API uses.
"""
from __future__ import annotations

import argparse
import logging
import time

from ipd_engine.core.config import settings
from ipd_engine.db.session import SessionLocal, atomic
from ipd_engine.services.bed_state import sweep_expired_reservations

logger = logging.getLogger("ipd_engine.sweep")


def run_once() -> int:
    db = SessionLocal()
    try:
        with atomic(db):
            return sweep_expired_reservations(db)
    finally:
        db.close()


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Release expired bed reservations.")
    parser.add_argument(
        "--loop",
        type=int,
        default=0,
        metavar="SECONDS",
        help="Keep sweeping every SECONDS (0 = single pass).",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=settings.LOG_LEVEL,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    while True:
        released = run_once()
        logger.info("released %s reservation(s)", released)
        if args.loop <= 0:
            break
        time.sleep(args.loop)


if __name__ == "__main__":
    main()
