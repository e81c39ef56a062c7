# ipd_engine/db/session.py
from contextlib import contextmanager
from typing import Any, Dict, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ipd_engine.core.config import settings


def engine_kwargs(db_uri: str) -> Dict[str, Any]:
    if db_uri.startswith("sqlite"):
        kw: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if db_uri in ("sqlite://", "sqlite:///:memory:"):
            kw["poolclass"] = StaticPool
        return kw
    return {
        "pool_pre_ping": True,
        "pool_recycle": 280,
        "pool_size": 10,
        "max_overflow": 20,
    }


engine: Engine = create_engine(
    settings.SQLALCHEMY_DATABASE_URI,
    echo=settings.SQL_ECHO,
    future=True,
    **engine_kwargs(settings.SQLALCHEMY_DATABASE_URI),
)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
)


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """
    One engine operation == one transaction.
    Commits on success, rolls back on any exception and re-raises.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
