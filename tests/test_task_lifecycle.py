"""Tests for inspectos.lifecycle.tasks — transition table, submission, adhoc tasks."""

from datetime import date, timedelta

import pytest
from sqlalchemy import select

from inspectos.db.models import Hazard, Task, TaskStatus
from inspectos.db.session import session_scope
from inspectos.engine.errors import ConflictError, InvalidTransition, NotFoundError, ValidationError
from inspectos.lifecycle.tasks import (
    TASK_TRANSITIONS,
    TaskLifecycleManager,
    can_transition,
    check_task_transition,
)
from inspectos.scheduling.generator import GenerationEngine


@pytest.fixture
def task_ids(session_factory, seed):
    """One generated daily task: (task_id, [record ids in order])."""
    GenerationEngine(session_factory).generate([seed.daily], None, date(2025, 1, 1), date(2025, 1, 1))
    with session_scope(session_factory) as session:
        task = session.scalars(select(Task)).one()
        return task.id, [r.id for r in task.item_records]


@pytest.fixture
def manager(session_factory):
    return TaskLifecycleManager(session_factory)


def _hazards(factory, task_id):
    with session_scope(factory) as session:
        return list(session.scalars(select(Hazard).where(Hazard.task_id == task_id)))


class TestTransitionTable:
    @pytest.mark.parametrize("current,target", [
        ("pending", "in_progress"),
        ("in_progress", "completed"),
        ("completed", "under_review"),
        ("completed", "closed"),
        ("under_review", "closed"),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)
        check_task_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        ("pending", "completed"),
        ("pending", "closed"),
        ("in_progress", "closed"),
        ("under_review", "completed"),
        ("closed", "pending"),
        ("closed", "in_progress"),
    ])
    def test_denied(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransition) as exc_info:
            check_task_transition(current, target, task_id=3)
        assert isinstance(exc_info.value, ConflictError)
        assert exc_info.value.current == current
        assert exc_info.value.target == target

    def test_every_status_has_entry(self):
        assert set(TASK_TRANSITIONS) == {s.value for s in TaskStatus}
        assert TASK_TRANSITIONS["closed"] == frozenset()


class TestSubmitResults:
    def test_partial_submission_moves_to_in_progress(self, manager, task_ids):
        task_id, records = task_ids
        detail = manager.submit_results(task_id, [{"item_record_id": records[0], "result": "normal"}])
        assert detail["status"] == "in_progress"
        assert detail["item_records"][0]["result"] == "normal"
        assert detail["item_records"][1]["result"] is None

    def test_all_normal_closes_task(self, manager, session_factory, task_ids):
        task_id, records = task_ids
        detail = manager.submit_results(task_id, [
            {"item_record_id": records[0], "result": "normal"},
            {"item_record_id": records[1], "result": "not_applicable", "comment": "pin replaced"},
        ])
        assert detail["status"] == "closed"
        assert detail["closed_at"] is not None
        assert detail["submitted_at"] is not None
        assert _hazards(session_factory, task_id) == []

    def test_abnormal_escalates_and_goes_under_review(self, manager, session_factory, task_ids):
        task_id, records = task_ids
        detail = manager.submit_results(task_id, [
            {"task_item_record_id": records[0], "result": "abnormal", "comment": "needle in red",
             "images": ["att-1"]},
            {"task_item_record_id": records[1], "result": "normal"},
        ])
        assert detail["status"] == "under_review"
        assert detail["open_hazards"] == 1

        hazards = _hazards(session_factory, task_id)
        assert len(hazards) == 1
        hazard = hazards[0]
        assert hazard.task_item_record_id == records[0]
        assert hazard.title == "Fire extinguisher check - Pressure gauge"
        assert hazard.description == "needle in red"
        assert hazard.status == "to_fix"
        assert hazard.level == "minor"
        assert hazard.department == "Maintenance"
        assert hazard.images == ["att-1"]

    def test_each_abnormal_record_gets_one_hazard(self, manager, session_factory, task_ids):
        task_id, records = task_ids
        manager.submit_results(task_id, [{"item_record_id": records[0], "result": "abnormal"}])
        manager.submit_results(task_id, [{"item_record_id": records[1], "result": "abnormal"}])
        hazards = _hazards(session_factory, task_id)
        assert sorted(h.task_item_record_id for h in hazards) == sorted(records)

    def test_already_answered_record_conflicts(self, manager, task_ids):
        task_id, records = task_ids
        manager.submit_results(task_id, [{"item_record_id": records[0], "result": "normal"}])
        with pytest.raises(ConflictError):
            manager.submit_results(task_id, [{"item_record_id": records[0], "result": "abnormal"}])

    def test_closed_task_rejects_submission(self, manager, task_ids):
        task_id, records = task_ids
        manager.submit_results(task_id, [
            {"item_record_id": r, "result": "normal"} for r in records
        ])
        with pytest.raises(InvalidTransition):
            manager.submit_results(task_id, [{"item_record_id": records[0], "result": "normal"}])

    def test_batch_is_atomic(self, manager, task_ids):
        task_id, records = task_ids
        with pytest.raises(NotFoundError):
            manager.submit_results(task_id, [
                {"item_record_id": records[0], "result": "normal"},
                {"item_record_id": 99999, "result": "normal"},
            ])
        detail = manager.get_task(task_id)
        assert detail["status"] == "pending"
        assert all(r["result"] is None for r in detail["item_records"])

    @pytest.mark.parametrize("records", [
        [],
        [{"item_record_id": 1, "result": "broken"}],
        [{"result": "normal"}],
        [{"item_record_id": 1, "result": "normal"}, {"item_record_id": 1, "result": "normal"}],
        [{"item_record_id": 1, "result": "normal", "images": "att-1"}],
    ])
    def test_invalid_payloads(self, manager, task_ids, records):
        task_id, _ = task_ids
        with pytest.raises(ValidationError):
            manager.submit_results(task_id, records)

    def test_unknown_task(self, manager, seed):
        with pytest.raises(NotFoundError):
            manager.submit_results(424242, [{"item_record_id": 1, "result": "normal"}])

    def test_emergency_does_not_change_flow(self, manager, session_factory, seed):
        GenerationEngine(session_factory).generate([seed.major], None, date(2025, 1, 1), date(2025, 1, 1))
        with session_scope(session_factory) as session:
            task = session.scalars(select(Task).where(Task.template_id == seed.major)).one()
            task_id, records = task.id, [r.id for r in task.item_records]
        detail = manager.submit_results(task_id, [{"item_record_id": r, "result": "normal"} for r in records])
        assert detail["is_emergency"] is True
        assert detail["status"] == "closed"


class TestAdhocTasks:
    def test_custom_items(self, manager, seed):
        detail = manager.create_adhoc_task(
            title="Spill inspection",
            area_id=seed.area,
            assignee_id=seed.inspector,
            due_date=date(2025, 2, 1),
            is_emergency=True,
            custom_check_items=["Floor dry", "Signage up"],
            created_by=seed.supervisor,
        )
        assert detail["task_type"] == "adhoc"
        assert detail["status"] == "pending"
        assert detail["is_emergency"] is True
        assert detail["created_by"] == seed.supervisor
        assert [r["name"] for r in detail["item_records"]] == ["Floor dry", "Signage up"]
        assert all(r["check_item"] is None for r in detail["item_records"])

    def test_template_items_then_custom(self, manager, seed):
        detail = manager.create_adhoc_task(
            title="Extra check", area_id=seed.area, assignee_id=seed.inspector,
            due_date=date(2025, 2, 1), template_id=seed.adhoc, custom_check_items=["Extra"],
        )
        assert [r["name"] for r in detail["item_records"]] == ["Pressure gauge", "Safety pin", "Extra"]
        assert detail["template"] == seed.adhoc

    def test_adhoc_can_repeat_same_key(self, manager, seed):
        for _ in range(2):
            manager.create_adhoc_task(
                title="Repeat", area_id=seed.area, assignee_id=seed.inspector,
                due_date=date(2025, 2, 1), template_id=seed.daily,
            )
        assert manager.list_tasks(task_type="adhoc").count == 2

    def test_needs_items(self, manager, seed):
        with pytest.raises(ValidationError):
            manager.create_adhoc_task(title="Empty", area_id=seed.area, assignee_id=seed.inspector,
                                      due_date=date(2025, 2, 1))

    @pytest.mark.parametrize("field,value", [
        ("area_id", 999),
        ("assignee_id", 999),
        ("template_id", 999),
    ])
    def test_missing_references(self, manager, seed, field, value):
        kwargs = dict(title="x", area_id=seed.area, assignee_id=seed.inspector,
                      due_date=date(2025, 2, 1), custom_check_items=["a"])
        kwargs[field] = value
        with pytest.raises(NotFoundError):
            manager.create_adhoc_task(**kwargs)

    def test_inactive_assignee(self, manager, seed):
        with pytest.raises(NotFoundError):
            manager.create_adhoc_task(title="x", area_id=seed.area, assignee_id=seed.inactive_user,
                                      due_date=date(2025, 2, 1), custom_check_items=["a"])

    def test_blank_title(self, manager, seed):
        with pytest.raises(ValidationError):
            manager.create_adhoc_task(title="  ", area_id=seed.area, assignee_id=seed.inspector,
                                      due_date=date(2025, 2, 1), custom_check_items=["a"])


class TestQueries:
    def test_overdue_derivation(self, manager, task_ids):
        task_id, _ = task_ids
        assert manager.get_task(task_id, today=date(2025, 1, 2))["is_overdue"] is True
        assert manager.get_task(task_id, today=date(2025, 1, 1))["is_overdue"] is False

    def test_closed_task_never_overdue(self, manager, task_ids):
        task_id, records = task_ids
        manager.submit_results(task_id, [{"item_record_id": r, "result": "normal"} for r in records])
        assert manager.get_task(task_id, today=date(2030, 1, 1))["is_overdue"] is False

    def test_get_unknown(self, manager, seed):
        with pytest.raises(NotFoundError):
            manager.get_task(12345)

    def test_list_filters(self, manager, session_factory, seed):
        GenerationEngine(session_factory).generate([seed.daily], None, date(2025, 1, 1), date(2025, 1, 10))
        assert manager.list_tasks().count == 10
        assert manager.list_tasks(due_from=date(2025, 1, 3), due_to=date(2025, 1, 4)).count == 2
        assert manager.list_tasks(assignee_id=seed.supervisor).count == 0
        assert manager.list_tasks(status="pending", task_type="scheduled").count == 10
        assert manager.list_tasks(overdue=True, today=date(2025, 1, 5)).count == 4
        assert manager.list_tasks(overdue=False, today=date(2025, 1, 5)).count == 6
        assert manager.list_tasks(is_emergency=True).count == 0

    def test_list_pagination(self, manager, session_factory, seed):
        GenerationEngine(session_factory).generate([seed.daily], None, date(2025, 1, 1), date(2025, 1, 10))
        page = manager.list_tasks(page=2, page_size=4)
        assert page.count == 10
        assert [t["due_date"] for t in page.items] == [date(2025, 1, d) for d in (5, 6, 7, 8)]
        assert page.has_next and page.has_previous
        assert not manager.list_tasks(page=3, page_size=4).has_next

    def test_list_invalid_status(self, manager, seed):
        with pytest.raises(ValidationError):
            manager.list_tasks(status="archived")

    def test_list_unpaginated_returns_all(self, manager, session_factory, seed):
        GenerationEngine(session_factory).generate([seed.daily], None, date(2025, 1, 1), date(2025, 1, 30))
        result = manager.list_tasks()
        assert result.page is None
        assert len(result.items) == 30
        assert result.items[0]["due_date"] < result.items[-1]["due_date"]
        assert result.items[-1]["due_date"] == date(2025, 1, 1) + timedelta(days=29)
