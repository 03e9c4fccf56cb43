"""
InspectOS Task Lifecycle — task state machine, result submission, adhoc tasks.

States:
    pending → in_progress → completed → closed
                                  └──→ under_review → closed

``completed`` is passed through on the last submission: the task settles
in ``closed`` when no hazard of the task is open, else in ``under_review``
until the hazard manager closes the last one and calls reevaluate_task().
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from inspectos.db.base import utcnow
from inspectos.db.models import (
    Area,
    CheckTemplate,
    Hazard,
    HazardStatus,
    RecordResult,
    Task,
    TaskItemRecord,
    TaskStatus,
    TaskType,
    User,
    values,
)
from inspectos.db.query import Page, paginate
from inspectos.db.session import session_scope
from inspectos.engine.config import get_platform_config
from inspectos.engine.context import current_user_id
from inspectos.engine.errors import ConflictError, InvalidTransition, NotFoundError, ValidationError
from inspectos.engine.logging import log, log_task_transition
from inspectos.lifecycle import hazards as hazard_lifecycle

logger = logging.getLogger("inspectos.lifecycle.tasks")


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

TASK_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    TaskStatus.PENDING.value: frozenset({TaskStatus.IN_PROGRESS.value}),
    TaskStatus.IN_PROGRESS.value: frozenset({TaskStatus.COMPLETED.value}),
    TaskStatus.COMPLETED.value: frozenset({TaskStatus.UNDER_REVIEW.value, TaskStatus.CLOSED.value}),
    TaskStatus.UNDER_REVIEW.value: frozenset({TaskStatus.CLOSED.value}),
    TaskStatus.CLOSED.value: frozenset(),
}

SUBMITTABLE_STATUSES = (TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value)


def can_transition(current: str, target: str) -> bool:
    return target in TASK_TRANSITIONS.get(current, frozenset())


def check_task_transition(current: str, target: str, task_id: Optional[int] = None) -> None:
    """Raise InvalidTransition unless the table allows current → target."""
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Task cannot move from '{current}' to '{target}'",
            entity="task",
            entity_id=task_id,
            current=current,
            target=target,
        )


def _apply_transition(task: Task, target: str, actor_id: Optional[int], **details: Any) -> None:
    check_task_transition(task.status, target, task.id)
    previous = task.status
    task.status = target
    now = utcnow()
    if target == TaskStatus.COMPLETED.value:
        task.submitted_at = now
    elif target == TaskStatus.CLOSED.value:
        task.closed_at = now
    logger.info(f"Task {task.id}: {previous} → {target}")
    log(log_task_transition(task.id, previous, target, user_id=actor_id, **details))


def open_hazard_count(session: Session, task_id: int) -> int:
    return session.scalar(
        select(func.count(Hazard.id)).where(
            Hazard.task_id == task_id,
            Hazard.status != HazardStatus.CLOSED.value,
        )
    ) or 0


def reevaluate_task(session: Session, task: Task, actor_id: Optional[int] = None) -> str:
    """
    Advance ``task`` as far as its records and hazards allow; returns the new status.

    Called after a submission and whenever one of the task's hazards closes.
    """
    if task.status == TaskStatus.IN_PROGRESS.value and all(
        r.result is not None for r in task.item_records
    ):
        _apply_transition(task, TaskStatus.COMPLETED.value, actor_id)

    if task.status == TaskStatus.COMPLETED.value:
        if open_hazard_count(session, task.id):
            _apply_transition(task, TaskStatus.UNDER_REVIEW.value, actor_id)
        else:
            _apply_transition(task, TaskStatus.CLOSED.value, actor_id)
    elif task.status == TaskStatus.UNDER_REVIEW.value and not open_hazard_count(session, task.id):
        _apply_transition(task, TaskStatus.CLOSED.value, actor_id, reason="hazards_closed")
    return task.status


def lock_task(session: Session, task_id: int) -> Task:
    """Load a task with a row lock held for the rest of the transaction."""
    task = session.scalar(select(Task).where(Task.id == task_id).with_for_update(of=Task))
    if task is None:
        raise NotFoundError(f"Task {task_id} not found", entity="task", entity_id=task_id)
    return task


def _normalize_submission(records: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not records:
        raise ValidationError("At least one record is required", entity="task",
                              validation_errors=["records: must not be empty"])
    normalized = []
    errors = []
    seen = set()
    allowed = values(RecordResult)
    for index, raw in enumerate(records):
        record_id = raw.get("item_record_id", raw.get("task_item_record_id"))
        if record_id is None:
            errors.append(f"records[{index}].item_record_id: required")
            continue
        if record_id in seen:
            errors.append(f"records[{index}].item_record_id: duplicate id {record_id}")
        seen.add(record_id)
        result = raw.get("result")
        if result not in allowed:
            errors.append(f"records[{index}].result: must be one of {list(allowed)}")
        images = raw.get("images")
        if images is not None and not isinstance(images, list):
            errors.append(f"records[{index}].images: must be a list")
        normalized.append({
            "id": record_id,
            "result": result,
            "comment": raw.get("comment"),
            "images": images,
        })
    if errors:
        raise ValidationError("Invalid result submission", entity="task", validation_errors=errors)
    return normalized


class TaskLifecycleManager:
    """
    Usage:
        manager = TaskLifecycleManager(session_factory)
        detail = manager.submit_results(task_id, [{"item_record_id": 7, "result": "normal"}])
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    # -----------------------------------------------------------------------
    # Submission
    # -----------------------------------------------------------------------

    def submit_results(
        self,
        task_id: int,
        records: Sequence[Dict[str, Any]],
        actor_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Apply a batch of item results atomically and advance the task.

        Every record set to ``abnormal`` is escalated into exactly one Hazard
        in the same transaction.

        Raises:
            ValidationError: empty batch, unknown result value, duplicate ids.
            NotFoundError: task missing, or a record id not on this task.
            ConflictError: a record already has a result.
            InvalidTransition: the task no longer accepts results.
        """
        submission = _normalize_submission(records)
        actor = current_user_id(actor_id)

        with session_scope(self._session_factory) as session:
            task = lock_task(session, task_id)
            if task.status not in SUBMITTABLE_STATUSES:
                raise InvalidTransition(
                    f"Task {task_id} is '{task.status}' and no longer accepts results",
                    entity="task",
                    entity_id=task_id,
                    current=task.status,
                    target=TaskStatus.IN_PROGRESS.value,
                )

            by_id = {r.id: r for r in task.item_records}
            unknown = [s["id"] for s in submission if s["id"] not in by_id]
            if unknown:
                raise NotFoundError(
                    f"Item record(s) {unknown} do not belong to task {task_id}",
                    entity="task_item_record",
                    entity_id=unknown[0],
                )
            answered = [s["id"] for s in submission if by_id[s["id"]].result is not None]
            if answered:
                raise ConflictError(
                    f"Item record(s) {answered} already have a result",
                    entity="task_item_record",
                    entity_id=answered[0],
                )

            if task.status == TaskStatus.PENDING.value:
                _apply_transition(task, TaskStatus.IN_PROGRESS.value, actor)

            now = utcnow()
            escalate = []
            for item in submission:
                record = by_id[item["id"]]
                record.result = item["result"]
                record.comment = item["comment"]
                if item["images"] is not None:
                    record.images = list(item["images"])
                record.submitted_at = now
                if record.result == RecordResult.ABNORMAL.value:
                    escalate.append(record)
            session.flush()

            for record in escalate:
                hazard_lifecycle.escalate(session, task, record, actor_id=actor)

            reevaluate_task(session, task, actor)
            session.flush()
            return self._detail(task)

    # -----------------------------------------------------------------------
    # Adhoc creation
    # -----------------------------------------------------------------------

    def create_adhoc_task(
        self,
        title: str,
        area_id: int,
        assignee_id: int,
        due_date: date,
        template_id: Optional[int] = None,
        is_emergency: bool = False,
        custom_check_items: Iterable[Union[str, Dict[str, Any]]] = (),
        planned_date: Optional[date] = None,
        created_by: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Create a one-off task from a template's items and/or custom item names."""
        custom = [
            {"name": c} if isinstance(c, str) else dict(c)
            for c in (custom_check_items or ())
        ]
        errors = []
        if not title or not str(title).strip():
            errors.append("title: required")
        if not isinstance(due_date, date):
            errors.append("due_date: required")
        if any(not str(c.get("name") or "").strip() for c in custom):
            errors.append("custom_check_items: names must not be blank")
        if errors:
            raise ValidationError("Invalid adhoc task", entity="task", validation_errors=errors)

        actor = current_user_id(created_by)

        with session_scope(self._session_factory) as session:
            if session.get(Area, area_id) is None:
                raise NotFoundError(f"Area {area_id} not found", entity="area", entity_id=area_id)
            assignee = session.get(User, assignee_id)
            if assignee is None or not assignee.is_active:
                raise NotFoundError(f"Assignee {assignee_id} not found or inactive",
                                    entity="assignee", entity_id=assignee_id)
            template = None
            if template_id is not None:
                template = session.get(CheckTemplate, template_id)
                if template is None:
                    raise NotFoundError(f"Template {template_id} not found",
                                        entity="template", entity_id=template_id)

            template_items = list(template.items) if template is not None else []
            if not template_items and not custom:
                raise ValidationError(
                    "An adhoc task needs a template with items or custom check items",
                    entity="task",
                    validation_errors=["custom_check_items: required when no template items"],
                )

            task = Task(
                task_type=TaskType.ADHOC.value,
                title=title.strip(),
                area_id=area_id,
                template_id=template_id,
                assignee_id=assignee_id,
                due_date=due_date,
                planned_date=planned_date,
                status=TaskStatus.PENDING.value,
                is_emergency=bool(is_emergency),
                created_by=actor,
            )
            session.add(task)
            session.flush()

            order = 0
            for item in template_items:
                task.item_records.append(TaskItemRecord(
                    check_item_id=item.id, group_name=item.group_name,
                    sort_order=item.sort_order, images=[],
                ))
                order = max(order, item.sort_order)
            for offset, item in enumerate(custom, start=1):
                task.item_records.append(TaskItemRecord(
                    custom_name=item["name"].strip(),
                    group_name=item.get("group_name"), sort_order=order + offset, images=[],
                ))
            session.flush()

            logger.info(f"Adhoc task {task.id} created for assignee {assignee_id} due {due_date}")
            log(log_task_transition(task.id, "new", task.status, user_id=actor, task_type=task.task_type))
            return self._detail(task)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get_task(self, task_id: int, today: Optional[date] = None) -> Dict[str, Any]:
        with session_scope(self._session_factory) as session:
            task = session.get(Task, task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found", entity="task", entity_id=task_id)
            return self._detail(task, today)

    def list_tasks(
        self,
        task_type: Optional[str] = None,
        status: Optional[str] = None,
        assignee_id: Optional[int] = None,
        area_id: Optional[int] = None,
        is_emergency: Optional[bool] = None,
        due_from: Optional[date] = None,
        due_to: Optional[date] = None,
        overdue: Optional[bool] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        today: Optional[date] = None,
    ) -> Page:
        """Filtered task list, ordered by due date then id. Items are dicts."""
        today = today or date.today()
        if task_type is not None and task_type not in values(TaskType):
            raise ValidationError(f"Unknown task_type '{task_type}'", entity="task",
                                  validation_errors=["task_type: invalid"])
        if status is not None and status not in values(TaskStatus):
            raise ValidationError(f"Unknown status '{status}'", entity="task",
                                  validation_errors=["status: invalid"])

        stmt = select(Task)
        if task_type is not None:
            stmt = stmt.where(Task.task_type == task_type)
        if status is not None:
            stmt = stmt.where(Task.status == status)
        if assignee_id is not None:
            stmt = stmt.where(Task.assignee_id == assignee_id)
        if area_id is not None:
            stmt = stmt.where(Task.area_id == area_id)
        if is_emergency is not None:
            stmt = stmt.where(Task.is_emergency.is_(is_emergency))
        if due_from is not None:
            stmt = stmt.where(Task.due_date >= due_from)
        if due_to is not None:
            stmt = stmt.where(Task.due_date <= due_to)
        if overdue is not None:
            finished = (TaskStatus.COMPLETED.value, TaskStatus.CLOSED.value)
            if overdue:
                stmt = stmt.where(Task.due_date < today, Task.status.not_in(finished))
            else:
                stmt = stmt.where((Task.due_date >= today) | Task.status.in_(finished))
        stmt = stmt.order_by(Task.due_date, Task.id)

        api = get_platform_config().api
        with session_scope(self._session_factory) as session:
            result = paginate(session, stmt, page, page_size or api.default_page_size,
                              max_page_size=api.max_page_size)
            result.items = [t.to_dict(today=today) for t in result.items]
            return result

    @staticmethod
    def _detail(task: Task, today: Optional[date] = None) -> Dict[str, Any]:
        data = task.to_dict(today=today or date.today(), include_records=True)
        data["open_hazards"] = sum(1 for h in task.hazards if h.status != HazardStatus.CLOSED.value)
        return data
