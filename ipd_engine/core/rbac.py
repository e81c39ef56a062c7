from __future__ import annotations

from typing import Any, Iterator, Set

from ipd_engine.core.config import settings


def is_admin_user(user: Any) -> bool:
    """Admins see everything unless ADMIN_ALL_ACCESS is switched off."""
    if not user or not settings.ADMIN_ALL_ACCESS:
        return False
    return bool(getattr(user, "is_admin", False)
                or getattr(user, "is_superuser", False))


def _codes_of(perms: Any) -> Iterator[str]:
    for p in perms or ():
        code = p if isinstance(p, str) else getattr(p, "code", None)
        if code:
            yield str(code).strip()


def user_permission_codes(user: Any) -> Set[str]:
    """Codes granted directly on the user plus those of every role it holds."""
    if not user:
        return set()
    codes = set(_codes_of(getattr(user, "permissions", None)))
    for role in getattr(user, "roles", None) or ():
        codes.update(_codes_of(getattr(role, "permissions", None)))
    codes.discard("")
    return codes


def has_perm(user: Any, code: str) -> bool:
    if is_admin_user(user):
        return True
    code = (code or "").strip()
    return bool(code) and code in user_permission_codes(user)
