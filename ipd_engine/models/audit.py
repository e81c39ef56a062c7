
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    JSON,
)

from ipd_engine.db.base import Base
from ipd_engine.utils.timezone import now_utc_naive


class AuditLog(Base):
    """
    Inventory audit log.
    Every CREATE / UPDATE / DELETE / STATE change on wards, rooms, beds
    and bed rates writes here, inside the same transaction.
    """
    __tablename__ = "audit_logs"
    __table_args__ = {
        "mysql_engine": "InnoDB",
        "mysql_charset": "utf8mb4",
        "mysql_collate": "utf8mb4_unicode_ci",
    }

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(Integer, nullable=True)  # system jobs may be null
    action = Column(String(20), nullable=False)  # CREATE / UPDATE / DELETE / STATE

    table_name = Column(String(255), nullable=False)
    record_id = Column(String(100),
                       nullable=False)  # generic pk, stored as string

    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=now_utc_naive, nullable=False)
