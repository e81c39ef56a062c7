# ipd_engine/models/__init__.py
from .access import User, Role, Permission
from .patient import Patient
from .audit import AuditLog
from .ipd import (
    IpdWard,
    IpdRoom,
    IpdBed,
    IpdBedRate,
    IpdBedAssignment,
    IpdAdmission,
    IpdTransfer,
    IpdTransferEvent,
)

__all__ = [
    "User",
    "Role",
    "Permission",
    "Patient",
    "AuditLog",
    "IpdWard",
    "IpdRoom",
    "IpdBed",
    "IpdBedRate",
    "IpdBedAssignment",
    "IpdAdmission",
    "IpdTransfer",
    "IpdTransferEvent",
]
