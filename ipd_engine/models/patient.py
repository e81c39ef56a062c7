# FILE: ipd_engine/models/patient.py
from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    Date,
    DateTime,
    func,
)

from ipd_engine.db.base import Base


class Patient(Base):
    """
    Local projection of the patient registry.
    Owned by the identity service; the engine only reads it.
    """
    __tablename__ = "patients"
    __table_args__ = {
        "mysql_engine": "InnoDB",
        "mysql_charset": "utf8mb4",
        "mysql_collate": "utf8mb4_unicode_ci",
    }

    id = Column(Integer, primary_key=True, index=True)
    uhid = Column(String(32), index=True, nullable=False)
    phone = Column(String(20), index=True, nullable=True)

    first_name = Column(String(120), nullable=False)
    last_name = Column(String(120), nullable=True)
    gender = Column(String(16), nullable=False, default="unknown")
    dob = Column(Date, nullable=True)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, server_default=func.now())

    @property
    def full_name(self) -> str:
        return f"{(self.first_name or '').strip()} {(self.last_name or '').strip()}".strip()
