"""
InspectOS Execution Context — who is acting on the current request or task.

Authentication is external; the API layer resolves the caller and stores
an ExecutionContext in a ContextVar so lifecycle managers can stamp
``created_by`` / ``triggered_by`` / ``accepted_by`` without threading the
identity through every call.

Usage:
    from inspectos.engine.context import (
        ExecutionContext,
        set_execution_context,
        get_execution_context,
        current_user_id,
    )
"""

from __future__ import annotations

import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

current_execution_context: ContextVar[Optional["ExecutionContext"]] = ContextVar(
    "execution_context", default=None
)


@dataclass
class ExecutionContext:
    """Identity of whoever is driving the current unit of work."""

    user_id: Optional[int]
    username: str = ""
    user_type: str = "basic"  # "basic" | "admin" | "system"
    execution_id: str = field(default_factory=lambda: f"exec_{uuid.uuid4().hex[:12]}")

    @property
    def is_admin(self) -> bool:
        return self.user_type in ("admin", "system")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "user_type": self.user_type,
            "execution_id": self.execution_id,
        }


SYSTEM_CONTEXT = ExecutionContext(user_id=None, username="system", user_type="system")


def set_execution_context(ctx: ExecutionContext) -> None:
    """Bind ``ctx`` to the current request, beat tick or worker task."""
    current_execution_context.set(ctx)


def get_execution_context() -> Optional[ExecutionContext]:
    return current_execution_context.get()


def clear_execution_context() -> None:
    current_execution_context.set(None)


def current_user_id(explicit: Optional[int] = None) -> Optional[int]:
    """Return ``explicit`` if given, else the user id of the current context."""
    if explicit is not None:
        return explicit
    ctx = get_execution_context()
    return ctx.user_id if ctx else None
