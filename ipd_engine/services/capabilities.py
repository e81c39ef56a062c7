# FILE: ipd_engine/services/capabilities.py
"""
Capability-check port.

Every engine operation calls ``require(user, CODE)`` exactly once, before it
reads or writes anything. The default checker resolves codes through the
role/permission tables (``core/rbac.py``); deployments may install another
implementation with ``set_capability_checker``.
"""
from __future__ import annotations

from typing import Any, Iterable, Protocol

from ipd_engine.core.errors import Forbidden
from ipd_engine.core.rbac import has_perm

# permission codes (seeded by db/init_db.py)
VIEW = "ipd.view"
MANAGE_INVENTORY = "ipd.masters.manage"
ADMIT_PATIENT = "ipd.manage"
TRANSFER_VIEW = "ipd.transfers.view"
TRANSFER_CREATE = "ipd.transfers.create"
TRANSFER_APPROVE = "ipd.transfers.approve"
TRANSFER_COMPLETE = "ipd.transfers.complete"
TRANSFER_CANCEL = "ipd.transfers.cancel"

ALL_CODES = (
    VIEW,
    MANAGE_INVENTORY,
    ADMIT_PATIENT,
    TRANSFER_VIEW,
    TRANSFER_CREATE,
    TRANSFER_APPROVE,
    TRANSFER_COMPLETE,
    TRANSFER_CANCEL,
)


class CapabilityChecker(Protocol):

    def allowed(self, user: Any, code: str) -> bool:
        ...


class RbacCapabilityChecker:
    """Admins bypass; everyone else needs the code on one of their roles."""

    def allowed(self, user: Any, code: str) -> bool:
        return has_perm(user, code)


_checker: CapabilityChecker = RbacCapabilityChecker()


def set_capability_checker(checker: CapabilityChecker) -> None:
    global _checker
    _checker = checker


def get_capability_checker() -> CapabilityChecker:
    return _checker


def require(user: Any, code: str) -> None:
    if not _checker.allowed(user, code):
        raise Forbidden(code)


def require_any(user: Any, codes: Iterable[str]) -> None:
    codes = list(codes)
    if not any(_checker.allowed(user, c) for c in codes):
        raise Forbidden(" | ".join(codes))
