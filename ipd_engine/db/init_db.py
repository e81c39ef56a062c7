# ipd_engine/db/init_db.py
from __future__ import annotations

import argparse
import logging

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ipd_engine.db.base import Base
from ipd_engine.db.session import engine
from ipd_engine.models.access import Permission
from ipd_engine.services import capabilities as caps

logger = logging.getLogger(__name__)


def seed_permissions(db: Session) -> int:
    """
    Seed ONLY missing permission codes; safe to run multiple times.
    Returns how many codes were inserted.
    """
    added = 0
    for code in caps.ALL_CODES:
        module, _, action = code.rpartition(".")
        exists = db.query(Permission).filter(Permission.code == code).first()
        if not exists:
            label = f"{module.replace('.', ' ').title()} - {action.title()}"
            db.add(Permission(code=code, label=label, module=module))
            added += 1
    return added


def run(fresh: bool = False) -> None:
    if fresh:
        logger.warning("Dropping ALL tables (dev only)")
        Base.metadata.drop_all(bind=engine)

    logger.info("Creating all missing tables")
    Base.metadata.create_all(bind=engine)
    logger.info("Existing tables: %s", sorted(inspect(engine).get_table_names()))

    try:
        with Session(engine) as db:
            added = seed_permissions(db)
            db.commit()
            logger.info("Permissions seeded (%s missing codes inserted)", added)
    except SQLAlchemyError:
        logger.exception("Seeding failed")
        raise


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    parser = argparse.ArgumentParser(
        description="Initialize DB (create tables, seed permissions).")
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Drop & recreate all tables (DEV ONLY).",
    )
    args = parser.parse_args()
    run(fresh=args.fresh)
