"""
InspectOS Beat Trigger — Celery app + periodic schedule tick.

Celery Beat fires ``schedule_tick`` every ``celery.beat_tick_seconds``.
The tick reads the schedule config store and, once per day after the
configured run time, generates tasks for every active scheduled template
over ``[today, today + schedule.window_days - 1]``.
A nightly entry applies the event log retention settings.

Run with:
    celery -A inspectos.scheduling.beat worker -B -Q scheduled
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from celery import Celery
from celery.schedules import crontab
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from inspectos.db.models import CheckTemplate, RunSource, TaskType, TemplateStatus
from inspectos.db.session import get_session_factory, init_db_from_config, session_scope
from inspectos.engine.config import PlatformConfig, get_platform_config
from inspectos.engine.context import SYSTEM_CONTEXT, clear_execution_context, set_execution_context
from inspectos.engine.logging import LogRetentionManager, get_log_queue, init_logging_from_config
from inspectos.scheduling.config_store import ScheduleConfigStore, ScheduleSettings
from inspectos.scheduling.generator import GenerationEngine, GenerationResult
from inspectos.scheduling.run_log import RunLogRecorder

logger = logging.getLogger("inspectos.scheduling.beat")

TICK_TASK_NAME = "inspectos.scheduling.beat.schedule_tick"
LOG_CLEANUP_TASK_NAME = "inspectos.scheduling.beat.event_log_cleanup"


# ---------------------------------------------------------------------------
# Celery app (configured from platform config)
# ---------------------------------------------------------------------------

_celery_app: Optional[Celery] = None


def get_celery_app() -> Celery:
    """Get or create the Celery app singleton."""
    global _celery_app
    if _celery_app is None:
        _celery_app = _create_celery_app(get_platform_config())
    return _celery_app


def _create_celery_app(config: PlatformConfig) -> Celery:
    app = Celery("inspectos", broker=config.celery.broker, backend=config.celery.result_backend)
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_default_queue=config.celery.queue,
        task_routes={
            TICK_TASK_NAME: {"queue": config.celery.queue},
            LOG_CLEANUP_TASK_NAME: {"queue": config.celery.queue},
        },
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        beat_schedule=build_beat_schedule(config),
    )
    return app


def build_beat_schedule(config: PlatformConfig) -> Dict[str, Any]:
    """Celery Beat schedule: the interval tick plus a nightly event log cleanup."""
    return {
        "inspectos-schedule-tick": {
            "task": TICK_TASK_NAME,
            "schedule": float(config.celery.beat_tick_seconds),
            "options": {"queue": config.celery.queue},
        },
        "inspectos-event-log-cleanup": {
            "task": LOG_CLEANUP_TASK_NAME,
            "schedule": crontab(minute=30, hour=2),
            "options": {"queue": config.celery.queue},
        },
    }


# ---------------------------------------------------------------------------
# Tick logic
# ---------------------------------------------------------------------------

def should_run(settings: ScheduleSettings, now: datetime, last_beat_started: Optional[datetime]) -> bool:
    """
    True when automatic generation is enabled, ``now`` is at or past today's
    run time, and no beat run has started since today's run time.

    ``now`` and ``last_beat_started`` must be in the same timezone.
    """
    if not settings.enabled:
        return False
    if now.time() < settings.run_time:
        return False
    if last_beat_started is None:
        return True
    due_at = datetime.combine(now.date(), settings.run_time, tzinfo=now.tzinfo)
    return last_beat_started < due_at


def beat_window(today: date, window_days: int) -> Tuple[date, date]:
    return today, today + timedelta(days=window_days - 1)


def _to_local(value: Optional[datetime], tz: ZoneInfo) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite hands back naive UTC
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz)


def _schedulable_template_ids(session_factory: Optional[sessionmaker]) -> List[int]:
    stmt = select(CheckTemplate.id).where(
        CheckTemplate.status == TemplateStatus.ACTIVE.value,
        CheckTemplate.task_type == TaskType.SCHEDULED.value,
    ).order_by(CheckTemplate.id)
    with session_scope(session_factory) as session:
        return list(session.scalars(stmt))


def run_tick(
    session_factory: Optional[sessionmaker] = None,
    now: Optional[datetime] = None,
    config: Optional[PlatformConfig] = None,
) -> Optional[GenerationResult]:
    """
    One beat tick. Returns the generation result, or None when nothing was due.
    """
    config = config or get_platform_config()
    tz = ZoneInfo(config.schedule.timezone)
    now = _to_local(now, tz) if now is not None else datetime.now(tz)

    settings = ScheduleConfigStore(session_factory, defaults=config.schedule).load()
    recorder = RunLogRecorder(session_factory)
    last = _to_local(recorder.last_started(run_source=RunSource.BEAT.value), tz)

    if not should_run(settings, now, last):
        logger.debug(f"Beat tick at {now.isoformat()}: not due")
        return None

    template_ids = _schedulable_template_ids(session_factory)
    if not template_ids:
        logger.info("Beat tick due but no active scheduled templates")
        return None

    start, end = beat_window(now.date(), config.schedule.window_days)
    engine = GenerationEngine(session_factory, run_log=recorder,
                              max_workers=config.schedule.max_workers)
    set_execution_context(SYSTEM_CONTEXT)
    try:
        result = engine.generate(template_ids, None, start, end,
                                 triggered_by=None, run_source=RunSource.BEAT.value)
    finally:
        clear_execution_context()

    logger.info(f"Beat generation {start}..{end}: {result.status}, created={result.created_count}")
    return result


def _ensure_runtime() -> sessionmaker:
    """Open the database and start the event log on first use in a worker."""
    config = get_platform_config()
    if get_log_queue() is None:
        init_logging_from_config(config.logging)
    try:
        return get_session_factory()
    except RuntimeError:
        return init_db_from_config(config.database)


# ---------------------------------------------------------------------------
# Celery task
# ---------------------------------------------------------------------------

celery_app = get_celery_app()


@celery_app.task(name=TICK_TASK_NAME)
def schedule_tick() -> Dict[str, Any]:
    """Celery Beat task: run generation if the schedule says it is due."""
    result = run_tick(_ensure_runtime())
    if result is None:
        return {"status": "idle"}
    return result.to_dict()


@celery_app.task(name=LOG_CLEANUP_TASK_NAME)
def event_log_cleanup() -> Dict[str, int]:
    """Celery Beat task: compress and expire event log day files."""
    return LogRetentionManager.from_config(get_platform_config().logging).cleanup()
