"""InspectOS Engine — config, errors, structured logging, execution context."""

from inspectos.engine.errors import (  # noqa: F401
    ConfigError,
    ConflictError,
    InspectOSError,
    InvalidRecurrenceSpec,
    InvalidTransition,
    NotFoundError,
    PartialFailure,
    ValidationError,
)

__all__ = [
    "InspectOSError",
    "ValidationError",
    "InvalidRecurrenceSpec",
    "ConflictError",
    "InvalidTransition",
    "NotFoundError",
    "PartialFailure",
    "ConfigError",
]
