"""
InspectOS Database Base — SQLAlchemy declarative base, mixins, and engine registry.

Provides:
- Base: SQLAlchemy declarative base for all models
- TimestampMixin: created_at, updated_at
- EngineRegistry: named engines shared by the session layer and health checks
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, DateTime, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all InspectOS models."""
    pass


class TimestampMixin:
    """Adds created_at and updated_at columns."""
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class EngineRegistry:
    """
    Named SQLAlchemy engines, one per database the process talks to.

    Registering a name again disposes the old engine first, so tests and
    the CLI can re-point ``inspectos_core`` at a different URL.
    """

    def __init__(self):
        self._engines: Dict[str, Engine] = {}

    def register(self, name: str, url: str, **engine_kwargs: Any) -> Engine:
        previous = self._engines.pop(name, None)
        if previous is not None:
            previous.dispose()
        engine = create_engine(url, **engine_kwargs)
        self._engines[name] = engine
        return engine

    def get(self, name: str) -> Engine:
        try:
            return self._engines[name]
        except KeyError:
            raise KeyError(f"No engine registered as '{name}' (have: {sorted(self._engines)})") from None

    def dispose(self, name: Optional[str] = None) -> None:
        """Close the pool of one engine, or of all engines when ``name`` is None."""
        names = [name] if name else list(self._engines)
        for key in names:
            engine = self._engines.pop(key, None)
            if engine is not None:
                engine.dispose()

    @property
    def registered_names(self) -> List[str]:
        return sorted(self._engines)

    def health_check(self, name: str) -> bool:
        """True when a ``SELECT 1`` round trip succeeds."""
        try:
            with self.get(name).connect() as conn:
                conn.execute(text("SELECT 1"))
        except (KeyError, SQLAlchemyError):
            return False
        return True


engine_registry = EngineRegistry()
