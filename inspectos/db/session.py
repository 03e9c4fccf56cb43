"""
InspectOS Database Session Management.

Single entry point for DB initialisation plus a context manager for
transactional access. Uses the global EngineRegistry.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

from inspectos.db.base import Base, engine_registry
from inspectos.engine.config import DatabaseConfig

CORE_ENGINE = "inspectos_core"

_session_factory: Optional[sessionmaker] = None


def _engine_kwargs(db_url: str, pool_size: int, max_overflow: int, pool_timeout: int,
                   pool_recycle: int, pool_pre_ping: bool) -> Dict[str, Any]:
    if db_url.startswith("sqlite"):
        # Worker threads share the pool; writers wait on the file lock.
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_timeout": pool_timeout,
        "pool_recycle": pool_recycle,
        "pool_pre_ping": pool_pre_ping,
    }


def init_db(
    db_url: str,
    create_tables: bool = False,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
) -> sessionmaker:
    """
    Initialise the core database.

    What it does
    ────────────
    1. Registers the "inspectos_core" engine in EngineRegistry.
    2. For SQLite, takes over transaction control from pysqlite so that
       SAVEPOINTs work and every transaction starts with BEGIN IMMEDIATE.
       Writers are then serialised on the database lock, which gives the
       same check-then-create guarantees as row locks on PostgreSQL.
    3. Optionally runs Base.metadata.create_all() (dev / ``inspectos init``).
    4. Stores the session factory used by session_scope().

    Returns:
        The sessionmaker bound to the engine.
    """
    global _session_factory

    engine = engine_registry.register(
        CORE_ENGINE,
        db_url,
        **_engine_kwargs(db_url, pool_size, max_overflow, pool_timeout, pool_recycle, pool_pre_ping),
    )

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_conn, connection_record):
            dbapi_conn.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    if create_tables:
        # Import for side effect: registers every table on Base.metadata
        import inspectos.db.models  # noqa: F401
        Base.metadata.create_all(engine)

    _session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    return _session_factory


def init_db_from_config(db: DatabaseConfig, create_tables: bool = False) -> sessionmaker:
    """init_db() with the ``database`` section of inspectos.yaml."""
    return init_db(
        db.url,
        create_tables=create_tables,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        pool_recycle=db.pool_recycle,
        pool_pre_ping=db.pool_pre_ping,
    )


def get_session_factory() -> sessionmaker:
    """Get the core session factory."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Context manager for DB sessions with auto-commit/rollback.

    Usage:
        with session_scope() as session:
            task = session.get(Task, task_id)
    """
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def close_all_sessions() -> None:
    """Dispose all engines. Used during shutdown and between tests."""
    global _session_factory
    _session_factory = None
    engine_registry.dispose()
