from typing import Any, Dict, Optional

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from ipd_engine.models.audit import AuditLog


def snapshot(obj: Any) -> Dict[str, Any]:
    """Column values of an ORM row, JSON friendly."""
    out: Dict[str, Any] = {}
    for attr in inspect(obj).mapper.column_attrs:
        v = getattr(obj, attr.key)
        if hasattr(v, "isoformat"):
            v = v.isoformat()
        elif v is not None and not isinstance(v, (str, int, float, bool)):
            v = str(v)
        out[attr.key] = v
    return out


def log_audit(
    db: Session,
    *,
    user_id: Optional[int],
    action: str,  # "CREATE" | "UPDATE" | "DELETE" | "STATE"
    table_name: str,
    record_id: Any,
    old_values: Optional[Dict[str, Any]] = None,
    new_values: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Add one audit event to the caller's transaction.
    Committed (or rolled back) together with the change it describes.
    """
    db.add(
        AuditLog(
            user_id=user_id,
            action=action,
            table_name=table_name,
            record_id=str(record_id),
            old_values=old_values,
            new_values=new_values,
        ))
