"""
InspectOS Error Hierarchy — Structured exceptions for the scheduling core.

Every error carries a message plus keyword context and serializes to JSON,
so the same object can be logged, stored in a run log message, or returned
as an HTTP error body.

Hierarchy:
    InspectOSError
    ├── ValidationError          — Malformed input, rejected before any write
    │   └── InvalidRecurrenceSpec — Template selector missing / out of range
    ├── ConflictError            — Request conflicts with current state
    │   └── InvalidTransition    — Illegal state machine move
    ├── NotFoundError            — Referenced entity does not exist
    ├── PartialFailure           — Generation run where some templates failed
    └── ConfigError              — Invalid inspectos.yaml
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class InspectOSError(Exception):
    """
    Base error for all InspectOS failures.
    All context is kept serializable for logging and API responses.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.error_type: str = self.__class__.__name__
        self.entity: Optional[str] = context.get("entity")
        self.entity_id: Optional[Any] = context.get("entity_id")
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("entity", "entity_id")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.entity:
            parts.append(f"entity={self.entity}")
        if self.entity_id is not None:
            parts.append(f"entity_id={self.entity_id}")
        return " | ".join(parts)


class ValidationError(InspectOSError):
    """
    Input validation failed (template selectors, task/hazard payloads).
    Includes field-level error details.
    """

    def __init__(self, message: str, **context: Any):
        self.validation_errors: List[str] = list(context.get("validation_errors") or [])
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = self.validation_errors
        return d


class InvalidRecurrenceSpec(ValidationError):
    """A template's recurrence selector is absent or out of range for its frequency."""

    def __init__(self, message: str, **context: Any):
        self.frequency: Optional[str] = context.get("frequency")
        super().__init__(message, **context)


class ConflictError(InspectOSError):
    """The request conflicts with the current state of an entity."""
    pass


class InvalidTransition(ConflictError):
    """A state machine move that the transition table does not allow."""

    def __init__(self, message: str, **context: Any):
        self.current: Optional[str] = context.get("current")
        self.target: Optional[str] = context.get("target")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["current"] = self.current
        d["target"] = self.target
        return d


class NotFoundError(InspectOSError):
    """A referenced template, area, user, task, record or hazard does not exist."""
    pass


class PartialFailure(InspectOSError):
    """
    A generation run where at least one template failed.
    Successful templates are kept; failures are itemized.
    """

    def __init__(self, message: str, **context: Any):
        self.failures: List[Dict[str, Any]] = list(context.get("failures") or [])
        self.created_count: int = int(context.get("created_count") or 0)
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["failures"] = self.failures
        d["created_count"] = self.created_count
        return d


class ConfigError(InspectOSError):
    """Invalid or unreadable inspectos.yaml."""
    pass
