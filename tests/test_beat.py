"""Tests for inspectos.scheduling.beat — should_run, window, Celery wiring, tick."""

from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import func, select

from inspectos.db.models import Task, TemplateScheduleRunLog
from inspectos.db.session import session_scope
from inspectos.engine.config import CeleryConfig, PlatformConfig, ScheduleConfig, get_platform_config
from inspectos.engine.logging import FileLogger, get_log_queue, shutdown_logging
from inspectos.scheduling.beat import (
    LOG_CLEANUP_TASK_NAME,
    TICK_TASK_NAME,
    beat_window,
    build_beat_schedule,
    celery_app,
    event_log_cleanup,
    run_tick,
    schedule_tick,
    should_run,
)
from inspectos.scheduling.config_store import ScheduleConfigStore, ScheduleSettings

UTC = timezone.utc
ON = ScheduleSettings(enabled=True, run_time=time(6, 0))
OFF = ScheduleSettings(enabled=False, run_time=time(6, 0))


class TestShouldRun:
    def test_disabled_never_runs(self):
        assert not should_run(OFF, datetime(2025, 1, 1, 12, 0, tzinfo=UTC), None)

    def test_before_run_time(self):
        assert not should_run(ON, datetime(2025, 1, 1, 5, 59, tzinfo=UTC), None)

    def test_at_run_time_first_time(self):
        assert should_run(ON, datetime(2025, 1, 1, 6, 0, tzinfo=UTC), None)

    def test_last_run_yesterday(self):
        last = datetime(2024, 12, 31, 6, 0, tzinfo=UTC)
        assert should_run(ON, datetime(2025, 1, 1, 6, 1, tzinfo=UTC), last)

    def test_already_ran_today(self):
        last = datetime(2025, 1, 1, 6, 0, 30, tzinfo=UTC)
        assert not should_run(ON, datetime(2025, 1, 1, 9, 0, tzinfo=UTC), last)

    def test_ran_today_before_run_time_moved_earlier(self):
        settings = ScheduleSettings(enabled=True, run_time=time(8, 0))
        last = datetime(2025, 1, 1, 7, 0, tzinfo=UTC)
        assert should_run(settings, datetime(2025, 1, 1, 8, 0, tzinfo=UTC), last)


class TestWindowAndSchedule:
    def test_window(self):
        assert beat_window(date(2025, 1, 31), 1) == (date(2025, 1, 31), date(2025, 1, 31))
        assert beat_window(date(2025, 1, 31), 3) == (date(2025, 1, 31), date(2025, 2, 2))

    def test_beat_schedule(self):
        config = PlatformConfig(celery=CeleryConfig(beat_tick_seconds=15, queue="beat"))
        entry = build_beat_schedule(config)["inspectos-schedule-tick"]
        assert entry["task"] == TICK_TASK_NAME
        assert entry["schedule"] == 15.0
        assert entry["options"] == {"queue": "beat"}

    def test_task_registered(self):
        assert TICK_TASK_NAME in celery_app.tasks
        assert celery_app.conf.task_serializer == "json"


def _run_logs(factory):
    with session_scope(factory) as session:
        return list(session.scalars(select(TemplateScheduleRunLog)))


class TestRunTick:
    NOW = datetime(2025, 1, 1, 7, 0, tzinfo=UTC)

    def test_disabled_is_idle(self, session_factory, seed):
        assert run_tick(session_factory, now=self.NOW) is None
        assert _run_logs(session_factory) == []

    def test_enabled_generates_once_per_day(self, session_factory, seed):
        ScheduleConfigStore(session_factory).replace(enabled=True, run_time="06:00")

        result = run_tick(session_factory, now=self.NOW)
        assert result is not None
        assert result.status == "success"
        # daily + major are daily; weekly is Monday-only and monthly the 31st
        assert result.created_count == 2

        logs = _run_logs(session_factory)
        assert len(logs) == 1
        assert logs[0].run_source == "beat"
        assert logs[0].triggered_by_id is None
        assert (logs[0].window_start, logs[0].window_end) == (date(2025, 1, 1), date(2025, 1, 1))

        assert run_tick(session_factory, now=self.NOW + timedelta(minutes=1)) is None
        assert len(_run_logs(session_factory)) == 1

    def test_before_run_time_is_idle(self, session_factory, seed):
        ScheduleConfigStore(session_factory).replace(enabled=True, run_time="09:30")
        assert run_tick(session_factory, now=self.NOW) is None

    def test_window_days_from_config(self, session_factory, seed):
        ScheduleConfigStore(session_factory).replace(enabled=True)
        config = PlatformConfig(schedule=ScheduleConfig(window_days=7))
        result = run_tick(session_factory, now=self.NOW, config=config)
        assert result.created_count == 7 + 7 + 1
        with session_scope(session_factory) as session:
            assert session.scalar(select(func.max(Task.due_date))) == date(2025, 1, 9)

    @pytest.mark.parametrize("run_time,expected", [("06:00", True), ("08:00", False)])
    def test_naive_now_treated_as_utc(self, session_factory, seed, run_time, expected):
        ScheduleConfigStore(session_factory).replace(enabled=True, run_time=run_time)
        result = run_tick(session_factory, now=datetime(2025, 1, 1, 7, 0))
        assert (result is not None) is expected


class TestWorkerTasks:
    def test_cleanup_entry_scheduled(self):
        entry = build_beat_schedule(PlatformConfig())["inspectos-event-log-cleanup"]
        assert entry["task"] == LOG_CLEANUP_TASK_NAME
        assert LOG_CLEANUP_TASK_NAME in celery_app.tasks

    def test_tick_starts_event_log(self, session_factory, seed):
        ScheduleConfigStore(session_factory).replace(enabled=True, run_time="00:00")
        assert get_log_queue() is None

        result = schedule_tick.run()

        assert result["status"] == "success"
        assert get_log_queue() is not None
        shutdown_logging()
        log_dir = get_platform_config().logging.directory
        runs = FileLogger(log_dir=log_dir).query("generation", "execution")
        assert runs[0]["run_source"] == "beat"

    def test_cleanup_task_uses_logging_config(self):
        config = get_platform_config().logging
        stale = Path(config.directory) / "tasks" / "execution" / "2000-01-01.jsonl"
        stale.parent.mkdir(parents=True)
        stale.write_text("{}\n")

        assert event_log_cleanup.run() == {"deleted": 1, "compressed": 0}
        assert not stale.exists()
