from __future__ import annotations

from typing import Any


class CaseLifecycleError(Exception):
    """Base error for every rejected lifecycle, lock or ledger operation."""

    code = "case_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(CaseLifecycleError):
    """Raised when operation input is malformed or incomplete."""

    code = "validation_error"


class InvalidTransition(CaseLifecycleError):
    """Raised when the requested status edge is not in the transition table."""

    code = "invalid_transition"

    def __init__(self, entity_kind: str, current: str, requested: str) -> None:
        self.entity_kind = entity_kind
        self.current = current
        self.requested = requested
        super().__init__(
            f"{entity_kind} cannot move from '{current}' to '{requested}'",
            details={"entity_kind": entity_kind, "current": current, "requested": requested},
        )


class Forbidden(CaseLifecycleError):
    """Raised when the acting role may not perform the operation."""

    code = "forbidden"

    def __init__(self, message: str, *, role: str | None = None, fields: list[str] | None = None) -> None:
        self.role = role
        self.fields = sorted(set(fields or []))
        details: dict[str, Any] = {"role": role}
        if self.fields:
            details["fields"] = self.fields
        super().__init__(message, details=details)


class PreconditionFailed(CaseLifecycleError):
    """Raised when an entity is not yet in a state that allows the operation."""

    code = "precondition_failed"

    def __init__(self, message: str, *, missing: list[str] | None = None) -> None:
        self.missing = list(missing or [])
        super().__init__(message, details={"missing": self.missing} if self.missing else None)


class InvalidState(CaseLifecycleError):
    """Raised on double resolution, stale versions and writes to closed records."""

    code = "invalid_state"


class NotFound(CaseLifecycleError):
    code = "not_found"

    def __init__(self, entity_type: str, entity_id: object) -> None:
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(
            f"{entity_type} not found",
            details={"entity_type": entity_type, "entity_id": self.entity_id},
        )
