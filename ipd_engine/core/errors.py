# FILE: ipd_engine/core/errors.py
"""
Engine error taxonomy.

Services raise these; ``api/exception_handlers.py`` turns them into the
standard error envelope. Nothing in the engine catches them to retry,
the bed CAS loop in ``services/bed_state.py`` being the only exception.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class EngineError(Exception):
    status_code: int = 400
    code: str = "ERROR"

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context or {}


class ValidationError(EngineError):
    """Bad input: missing field, non-positive id, malformed timestamp."""
    status_code = 422
    code = "VALIDATION_ERROR"


class NotFound(EngineError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            f"{resource} not found",
            context={"resource": resource, "id": identifier},
        )


class ConflictError(EngineError):
    """Resource contention: duplicate admission, bed taken, referenced row."""
    status_code = 409
    code = "CONFLICT"


class BedUnavailableError(ConflictError):
    code = "BED_UNAVAILABLE"

    def __init__(self, bed_id: int, state: str, message: Optional[str] = None):
        super().__init__(
            message or f"Bed is {state}",
            context={"bed_id": bed_id, "state": state},
        )
        self.bed_id = bed_id
        self.state = state


class PreconditionFailed(EngineError):
    """Workflow-order violation (wrong status for the step)."""
    status_code = 412
    code = "PRECONDITION_FAILED"


class Forbidden(EngineError):
    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, capability: str):
        super().__init__(
            f"You do not have permission: {capability}",
            context={"capability": capability},
        )
        self.capability = capability


def positive_id(value: Any, name: str) -> int:
    try:
        v = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a positive integer")
    if v <= 0:
        raise ValidationError(f"{name} must be a positive integer")
    return v
