"""
InspectOS Run Log Recorder — append-only audit trail of generation invocations.

Only insert and read exist here; rows are never updated or deleted.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from inspectos.db.models import RunSource, RunStatus, TemplateScheduleRunLog, values
from inspectos.db.session import session_scope
from inspectos.engine.errors import ValidationError

logger = logging.getLogger("inspectos.scheduling.run_log")


class RunLogRecorder:
    """
    Usage:
        recorder = RunLogRecorder(session_factory)
        run_id = recorder.record("manual", user_id, started, finished, 12, "success")
        recent = recorder.list(limit=20)
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    def record(
        self,
        run_source: str,
        triggered_by: Optional[int],
        started_at: datetime,
        finished_at: datetime,
        created_count: int,
        status: str,
        message: Optional[str] = None,
        window_start: Optional[date] = None,
        window_end: Optional[date] = None,
    ) -> int:
        """Insert one run log row and return its id."""
        errors = []
        if run_source not in values(RunSource):
            errors.append(f"run_source: must be one of {list(values(RunSource))}")
        if status not in values(RunStatus):
            errors.append(f"status: must be one of {list(values(RunStatus))}")
        if created_count is None or created_count < 0:
            errors.append("created_count: must be >= 0")
        if errors:
            raise ValidationError(
                "Invalid run log entry",
                entity="run_log",
                validation_errors=errors,
            )

        with session_scope(self._session_factory) as session:
            row = TemplateScheduleRunLog(
                run_source=run_source,
                triggered_by_id=triggered_by,
                started_at=started_at,
                finished_at=finished_at,
                created_count=created_count,
                status=status,
                message=message,
                window_start=window_start,
                window_end=window_end,
            )
            session.add(row)
            session.flush()
            run_id = row.id

        logger.debug(f"Run log {run_id} recorded: {run_source} {status} created={created_count}")
        return run_id

    def get(self, run_id: int) -> Optional[Dict[str, Any]]:
        with session_scope(self._session_factory) as session:
            row = session.get(TemplateScheduleRunLog, run_id)
            return row.to_dict() if row else None

    def list(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Entries newest first (started_at desc, id desc as tie-break)."""
        if limit is not None and limit < 0:
            raise ValidationError("limit must be >= 0", entity="run_log",
                                  validation_errors=["limit: must be >= 0"])
        stmt = select(TemplateScheduleRunLog).order_by(
            TemplateScheduleRunLog.started_at.desc(),
            TemplateScheduleRunLog.id.desc(),
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with session_scope(self._session_factory) as session:
            return [row.to_dict() for row in session.scalars(stmt)]

    def last_started(self, run_source: Optional[str] = None) -> Optional[datetime]:
        """Start time of the most recent run, optionally for one source."""
        stmt = select(TemplateScheduleRunLog.started_at).order_by(
            TemplateScheduleRunLog.started_at.desc()
        ).limit(1)
        if run_source is not None:
            stmt = stmt.where(TemplateScheduleRunLog.run_source == run_source)
        with session_scope(self._session_factory) as session:
            return session.scalar(stmt)
