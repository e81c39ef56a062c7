# ipd_engine/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All engine tables (inventory, admissions, transfers, rbac) inherit from this."""
    pass


# Import all models so metadata is complete for create_all()
from ipd_engine.models import (  # noqa: E402,F401
    access,
    patient,
    ipd,
    audit,
)
