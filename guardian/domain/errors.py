"""
Error taxonomy for the dispatch engine.

Every error carries a machine-readable ``kind`` and a human-readable ``reason``;
``details`` holds whatever context the caller needs to act on it.
"""

from typing import Any

import pydantic


class DispatchError(Exception):
    """Base class for all engine errors."""

    kind: str = "dispatch_error"

    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__(reason)
        self.reason = reason
        self.details: dict[str, Any] = details

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "reason": self.reason, "details": self.details}


class ValidationError(DispatchError):
    """Missing or malformed input."""

    kind = "validation_error"

    def __init__(self, reason: str, fields: list[str] | None = None, **details: Any) -> None:
        super().__init__(reason, fields=fields or [], **details)
        self.fields = fields or []

    @classmethod
    def from_pydantic(cls, exc: pydantic.ValidationError, prefix: str = "") -> "ValidationError":
        fields = []
        for error in exc.errors():
            name = ".".join(str(part) for part in error["loc"])
            fields.append(f"{prefix}{name}" if prefix else name)
        return cls(f"Invalid fields: {', '.join(fields)}", fields=fields)


class NotFound(DispatchError):
    kind = "not_found"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}", entity=entity, entity_id=entity_id)


class InvalidTransition(DispatchError):
    kind = "invalid_transition"

    def __init__(self, from_state: str, to_state: str, allowed: list[str]) -> None:
        super().__init__(
            f"Invalid transition from {from_state} to {to_state}",
            from_state=from_state,
            to_state=to_state,
            allowed_transitions=allowed,
        )
        self.from_state = from_state
        self.to_state = to_state
        self.allowed_transitions = allowed


class InvalidState(DispatchError):
    kind = "invalid_state"


class CapacityExceeded(DispatchError):
    kind = "capacity_exceeded"


class Unavailable(DispatchError):
    kind = "unavailable"


class DependencyFailure(DispatchError):
    kind = "dependency_failure"
