"""Tests for inspectos.scheduling.generator — GenerationEngine against SQLite."""

import threading
from datetime import date, timedelta

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.exc import IntegrityError

from inspectos.db.base import engine_registry
from inspectos.db.models import Area, CheckTemplate, Task, TaskItemRecord, TemplateScheduleRunLog
from inspectos.db.session import CORE_ENGINE, session_scope
from inspectos.engine.context import ExecutionContext, set_execution_context
from inspectos.engine.errors import PartialFailure, ValidationError
from inspectos.scheduling.generator import GenerationEngine, default_assignee_resolver


def _count(factory, model, *criteria):
    with session_scope(factory) as session:
        return session.scalar(select(func.count()).select_from(model).where(*criteria))


def _tasks(factory, *criteria):
    with session_scope(factory) as session:
        return list(session.scalars(select(Task).where(*criteria).order_by(Task.due_date, Task.id)))


JAN_1 = date(2025, 1, 1)
JAN_7 = date(2025, 1, 7)


def _foreign_keys_on(dbapi_conn, connection_record):
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


@pytest.fixture
def enforce_foreign_keys(session_factory):
    """Make SQLite check foreign keys the way PostgreSQL does."""
    engine = engine_registry.get(CORE_ENGINE)
    event.listen(engine, "connect", _foreign_keys_on)
    engine.dispose()
    yield
    event.remove(engine, "connect", _foreign_keys_on)


class TestGenerate:
    def test_daily_creates_one_task_per_day(self, session_factory, seed):
        engine = GenerationEngine(session_factory)
        result = engine.generate([seed.daily], None, JAN_1, JAN_7)

        assert result.status == "success"
        assert result.created_count == 7
        tasks = _tasks(session_factory, Task.template_id == seed.daily)
        assert [t.due_date for t in tasks] == [JAN_1 + timedelta(days=i) for i in range(7)]
        assert all(t.assignee_id == seed.inspector for t in tasks)
        assert all(t.status == "pending" and t.task_type == "scheduled" for t in tasks)
        assert all(t.title == "Fire extinguisher check" for t in tasks)

    def test_item_records_copied_in_order(self, session_factory, seed):
        GenerationEngine(session_factory).generate([seed.daily], None, JAN_1, JAN_1)
        with session_scope(session_factory) as session:
            task = session.scalars(select(Task).where(Task.template_id == seed.daily)).one()
            names = [r.display_name for r in task.item_records]
            results = [r.result for r in task.item_records]
        assert names == ["Pressure gauge", "Safety pin"]
        assert results == [None, None]

    def test_second_run_is_idempotent(self, session_factory, seed):
        engine = GenerationEngine(session_factory)
        first = engine.generate([seed.daily, seed.weekly], None, JAN_1, date(2025, 1, 31))
        second = engine.generate([seed.daily, seed.weekly], None, JAN_1, date(2025, 1, 31))

        assert first.created_count == 31 + 4
        assert second.created_count == 0
        assert second.status == "success"
        assert _count(session_factory, Task) == 35
        assert _count(session_factory, TemplateScheduleRunLog) == 2

    def test_overlapping_windows_only_fill_gaps(self, session_factory, seed):
        engine = GenerationEngine(session_factory)
        engine.generate([seed.daily], None, JAN_1, date(2025, 1, 5))
        result = engine.generate([seed.daily], None, date(2025, 1, 3), JAN_7)
        assert result.created_count == 2
        assert _count(session_factory, Task) == 7

    def test_explicit_assignees(self, session_factory, seed):
        result = GenerationEngine(session_factory).generate(
            [seed.daily], [seed.inspector, seed.supervisor], JAN_1, date(2025, 1, 2),
        )
        assert result.created_count == 4
        assert _count(session_factory, Task, Task.assignee_id == seed.supervisor) == 2

    def test_inactive_assignee_fails_template(self, session_factory, seed):
        result = GenerationEngine(session_factory).generate(
            [seed.daily], [seed.inactive_user], JAN_1, JAN_1,
        )
        assert result.status == "failed"
        assert result.outcomes[0].error_type == "NotFoundError"
        assert _count(session_factory, Task) == 0

    def test_template_defaults_applied(self, session_factory, seed):
        GenerationEngine(session_factory).generate([seed.major], None, JAN_1, JAN_1)
        task = _tasks(session_factory, Task.template_id == seed.major)[0]
        assert task.planned_date == JAN_1
        assert task.due_date == date(2025, 1, 3)
        assert task.is_emergency is True

    def test_inactive_and_adhoc_templates_skipped(self, session_factory, seed):
        result = GenerationEngine(session_factory).generate(
            [seed.inactive, seed.adhoc], None, JAN_1, JAN_7,
        )
        assert result.status == "success"
        assert result.created_count == 0
        assert {o.status for o in result.outcomes} == {"skipped"}
        assert "skipped" in result.message

    def test_monthly_clamped_to_month_end(self, session_factory, seed):
        GenerationEngine(session_factory).generate([seed.monthly], None, date(2025, 4, 1), date(2025, 4, 30))
        assert [t.due_date for t in _tasks(session_factory)] == [date(2025, 4, 30)]

    def test_triggered_by_from_execution_context(self, session_factory, seed):
        set_execution_context(ExecutionContext(user_id=seed.supervisor))
        result = GenerationEngine(session_factory).generate([seed.daily], None, JAN_1, JAN_1)
        with session_scope(session_factory) as session:
            run = session.get(TemplateScheduleRunLog, result.run_log_id)
            assert run.triggered_by_id == seed.supervisor
            assert run.run_source == "manual"
        assert _tasks(session_factory)[0].created_by == seed.supervisor


class TestPartialFailure:
    def test_failure_isolated_per_template(self, session_factory, seed, make_template):
        with session_scope(session_factory) as session:
            area = session.get(Area, seed.area)
            broken = make_template(session, area, name="Broken weekly", frequency="weekly")
            broken_id = broken.id

        result = GenerationEngine(session_factory).generate(
            [seed.daily, broken_id, 9999], None, JAN_1, JAN_7,
        )

        assert result.status == "failed"
        assert result.created_count == 7
        assert _count(session_factory, Task, Task.template_id == seed.daily) == 7
        failed = {o.template_id: o for o in result.failures}
        assert set(failed) == {broken_id, 9999}
        assert failed[broken_id].error_type == "InvalidRecurrenceSpec"
        assert failed[9999].error_type == "NotFoundError"
        assert f"template {broken_id}:" in result.message
        assert "template 9999:" in result.message

        with session_scope(session_factory) as session:
            run = session.get(TemplateScheduleRunLog, result.run_log_id)
            assert run.status == "failed"
            assert run.created_count == 7
            assert run.message == result.message

    def test_raise_for_failures(self, session_factory, seed):
        result = GenerationEngine(session_factory).generate([9999], None, JAN_1, JAN_1)
        with pytest.raises(PartialFailure) as exc_info:
            result.raise_for_failures()
        assert exc_info.value.created_count == 0
        assert exc_info.value.failures[0]["template_id"] == 9999

    def test_no_assignee_resolvable(self, session_factory, seed, make_template):
        with session_scope(session_factory) as session:
            area = Area(name="Roof")
            session.add(area)
            session.flush()
            orphan_id = make_template(session, area, name="Roof check").id

        result = GenerationEngine(session_factory).generate([orphan_id], None, JAN_1, JAN_1)
        assert result.status == "failed"
        assert result.failures[0].error_type == "NotFoundError"


class TestValidation:
    @pytest.mark.parametrize("template_ids,start,end,source", [
        ([], JAN_1, JAN_7, "manual"),
        ([1], JAN_7, JAN_1, "manual"),
        ([1], JAN_1, JAN_7, "cron"),
    ])
    def test_rejected_before_any_write(self, session_factory, seed, template_ids, start, end, source):
        with pytest.raises(ValidationError):
            GenerationEngine(session_factory).generate(template_ids, None, start, end, run_source=source)
        assert _count(session_factory, TemplateScheduleRunLog) == 0
        assert _count(session_factory, Task) == 0


class TestAssigneeResolver:
    def test_custom_resolver(self, session_factory, seed):
        engine = GenerationEngine(session_factory, assignee_resolver=lambda s, t: [seed.supervisor])
        engine.generate([seed.daily], None, JAN_1, JAN_1)
        assert _tasks(session_factory)[0].assignee_id == seed.supervisor

    def test_default_prefers_template_assignee(self, session_factory, seed):
        from inspectos.db.models import CheckTemplate

        with session_scope(session_factory) as session:
            template = session.get(CheckTemplate, seed.daily)
            assert default_assignee_resolver(session, template) == [seed.inspector]
            template.default_assignee_id = seed.supervisor
            assert default_assignee_resolver(session, template) == [seed.supervisor]


class TestConcurrency:
    def test_concurrent_triggers_create_no_duplicates(self, session_factory, seed):
        engine = GenerationEngine(session_factory, max_workers=2)
        results = []
        barrier = threading.Barrier(4)

        def trigger():
            barrier.wait()
            results.append(engine.generate([seed.daily, seed.weekly], None, JAN_1, date(2025, 1, 14)))

        threads = [threading.Thread(target=trigger) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r.status == "success" for r in results)
        assert sum(r.created_count for r in results) == 14 + 2
        assert _count(session_factory, Task) == 16
        assert _count(session_factory, TemplateScheduleRunLog) == 4

    def test_unique_index_rejects_duplicate_scheduled_key(self, session_factory, seed):
        GenerationEngine(session_factory).generate([seed.daily], None, JAN_1, JAN_1)
        with pytest.raises(IntegrityError):
            with session_scope(session_factory) as session:
                session.add(Task(
                    task_type="scheduled", title="dup", area_id=seed.area, template_id=seed.daily,
                    assignee_id=seed.inspector, due_date=JAN_1,
                ))

    def test_adhoc_tasks_not_bound_by_key(self, session_factory, seed):
        with session_scope(session_factory) as session:
            for _ in range(2):
                session.add(Task(
                    task_type="adhoc", title="adhoc", area_id=seed.area, template_id=seed.daily,
                    assignee_id=seed.inspector, due_date=JAN_1,
                ))
        assert _count(session_factory, Task) == 2
        assert _count(session_factory, TaskItemRecord) == 0


class TestIntegrityFailures:
    def test_unknown_triggering_user_still_records_run(self, session_factory, seed, enforce_foreign_keys):
        result = GenerationEngine(session_factory).generate(
            [seed.daily], None, JAN_1, date(2025, 1, 3), triggered_by=9999,
        )

        assert result.status == "success"
        assert result.created_count == 3
        with session_scope(session_factory) as session:
            assert session.get(TemplateScheduleRunLog, result.run_log_id).triggered_by_id is None
        assert all(t.created_by is None for t in _tasks(session_factory))

    def test_foreign_key_violation_is_not_an_existing_key(self, session_factory, seed, enforce_foreign_keys):
        with pytest.raises(IntegrityError):
            with session_scope(session_factory) as session:
                template = session.get(CheckTemplate, seed.daily)
                GenerationEngine._create_if_absent(session, template, JAN_1, 424242, None)
        assert _count(session_factory, Task) == 0

    def test_foreign_key_violation_fails_template(self, session_factory, seed, enforce_foreign_keys):
        engine = GenerationEngine(session_factory, assignee_resolver=lambda s, t: [424242])
        result = engine.generate([seed.daily], None, JAN_1, JAN_1)

        assert result.status == "failed"
        assert result.failures[0].error_type == "IntegrityError"
        assert result.failures[0].existing == 0
        assert _count(session_factory, TemplateScheduleRunLog) == 1
        assert _count(session_factory, Task) == 0


def test_template_without_items_fails(session_factory, seed, make_template):
    with session_scope(session_factory) as session:
        area = session.get(Area, seed.area)
        empty_id = make_template(session, area, name="Empty round", items=()).id

    result = GenerationEngine(session_factory).generate([empty_id, seed.daily], None, JAN_1, JAN_1)

    assert result.status == "failed"
    assert result.created_count == 1
    assert [(o.template_id, o.error_type) for o in result.failures] == [(empty_id, "ValidationError")]
    assert _count(session_factory, Task, Task.template_id == empty_id) == 0
