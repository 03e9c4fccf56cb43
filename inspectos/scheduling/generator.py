"""
InspectOS Generation Engine — materialises scheduled Tasks from CheckTemplates.

Flow per invocation:
1. Validate the request (window, template ids, run source). Nothing is
   written if this fails.
2. Fan the templates out over a bounded thread pool. Each template runs in
   its own session/transaction, so one template's failure never rolls back
   another's tasks.
3. For every occurrence × assignee, check-and-create a Task under the
   (template, due_date, assignee) key. The insert runs in a SAVEPOINT;
   a unique-index violation from a concurrent trigger counts as "exists",
   any other integrity error fails the template.
4. Write exactly one run log row summarising the invocation.

Usage:
    engine = GenerationEngine(session_factory)
    result = engine.generate([1, 2], None, date(2025, 1, 1), date(2025, 1, 31))
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from inspectos.db.base import utcnow
from inspectos.db.models import (
    Area,
    CheckTemplate,
    RunSource,
    RunStatus,
    Task,
    TaskItemRecord,
    TaskStatus,
    TaskType,
    TemplateStatus,
    User,
    values,
)
from inspectos.db.session import session_scope
from inspectos.engine.config import get_platform_config
from inspectos.engine.context import current_user_id
from inspectos.engine.errors import InspectOSError, NotFoundError, PartialFailure, ValidationError
from inspectos.engine.logging import log, log_generation_performance, log_generation_run
from inspectos.scheduling.recurrence import occurrences
from inspectos.scheduling.run_log import RunLogRecorder

logger = logging.getLogger("inspectos.scheduling.generator")

AssigneeResolver = Callable[[Session, CheckTemplate], List[int]]

OUTCOME_CREATED = "created"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"


@dataclass
class TemplateOutcome:
    template_id: int
    status: str
    created: int = 0
    existing: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template_id": self.template_id,
            "status": self.status,
            "created": self.created,
            "existing": self.existing,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass
class GenerationResult:
    status: str
    created_count: int
    run_log_id: int
    message: str
    outcomes: List[TemplateOutcome] = field(default_factory=list)

    @property
    def failures(self) -> List[TemplateOutcome]:
        return [o for o in self.outcomes if o.status == OUTCOME_FAILED]

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCESS.value

    def raise_for_failures(self) -> None:
        """Raise PartialFailure if any template failed."""
        if self.failures:
            raise PartialFailure(
                self.message,
                entity="run_log",
                entity_id=self.run_log_id,
                failures=[o.to_dict() for o in self.failures],
                created_count=self.created_count,
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "created_count": self.created_count,
            "run_log_id": self.run_log_id,
            "message": self.message,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def default_assignee_resolver(session: Session, template: CheckTemplate) -> List[int]:
    """Template default assignee, else the area's default assignee."""
    candidate = template.default_assignee_id
    if candidate is None and template.area is not None:
        candidate = template.area.default_assignee_id
    if candidate is None:
        raise NotFoundError(
            f"No assignee for template {template.id}: neither template nor area has a default",
            entity="assignee",
            entity_id=None,
        )
    return [candidate]


class GenerationEngine:
    """Creates scheduled tasks for a set of templates over a date window."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        run_log: Optional[RunLogRecorder] = None,
        assignee_resolver: Optional[AssigneeResolver] = None,
        max_workers: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._run_log = run_log or RunLogRecorder(session_factory)
        self._resolve_assignees = assignee_resolver or default_assignee_resolver
        self._max_workers = max_workers

    @property
    def max_workers(self) -> int:
        return self._max_workers or get_platform_config().schedule.max_workers

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def generate(
        self,
        template_ids: Sequence[int],
        assignee_ids: Optional[Sequence[int]],
        window_start: date,
        window_end: date,
        triggered_by: Optional[int] = None,
        run_source: str = RunSource.MANUAL.value,
    ) -> GenerationResult:
        """
        Generate tasks and record one run log entry.

        Raises:
            ValidationError: malformed request; no run log is written.
        """
        self._validate_request(template_ids, window_start, window_end, run_source)

        ids = list(dict.fromkeys(template_ids))
        explicit = list(dict.fromkeys(assignee_ids)) if assignee_ids else None
        actor = self._known_user(current_user_id(triggered_by))
        started_at = utcnow()
        t0 = time.perf_counter()

        workers = max(1, min(self.max_workers, len(ids)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="inspectos-gen") as pool:
            outcomes = list(pool.map(
                lambda tid: self._process_template(tid, explicit, window_start, window_end, actor),
                ids,
            ))

        created_count = sum(o.created for o in outcomes)
        failures = [o for o in outcomes if o.status == OUTCOME_FAILED]
        status = RunStatus.FAILED.value if failures else RunStatus.SUCCESS.value
        message = self._build_message(outcomes, created_count)

        run_log_id = self._run_log.record(
            run_source=run_source,
            triggered_by=actor,
            started_at=started_at,
            finished_at=utcnow(),
            created_count=created_count,
            status=status,
            message=message,
            window_start=window_start,
            window_end=window_end,
        )

        duration_ms = (time.perf_counter() - t0) * 1000
        log(log_generation_run(
            run_log_id=run_log_id,
            run_source=run_source,
            status=status,
            created_count=created_count,
            duration_ms=round(duration_ms, 2),
            triggered_by=actor,
            template_ids=ids,
            failures=[o.to_dict() for o in failures],
        ))
        if failures:
            logger.warning(f"Generation run {run_log_id} failed for {len(failures)} template(s): {message}")
        else:
            logger.info(f"Generation run {run_log_id}: {message}")

        return GenerationResult(
            status=status,
            created_count=created_count,
            run_log_id=run_log_id,
            message=message,
            outcomes=outcomes,
        )

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    @staticmethod
    def _validate_request(template_ids: Sequence[int], window_start: date,
                          window_end: date, run_source: str) -> None:
        errors = []
        if not template_ids:
            errors.append("template_ids: at least one template is required")
        if window_start is None or window_end is None:
            errors.append("window: start and end dates are required")
        elif window_start > window_end:
            errors.append("window: start_date must not be after end_date")
        if run_source not in values(RunSource):
            errors.append(f"run_source: must be one of {list(values(RunSource))}")
        if errors:
            raise ValidationError("Invalid generation request", entity="generation",
                                  validation_errors=errors)

    def _process_template(
        self,
        template_id: int,
        assignee_ids: Optional[List[int]],
        window_start: date,
        window_end: date,
        actor: Optional[int],
    ) -> TemplateOutcome:
        t0 = time.perf_counter()
        outcome = TemplateOutcome(template_id=template_id, status=OUTCOME_CREATED)
        try:
            with session_scope(self._session_factory) as session:
                template = session.get(CheckTemplate, template_id)
                if template is None:
                    raise NotFoundError(f"Template {template_id} not found",
                                        entity="template", entity_id=template_id)
                if template.status != TemplateStatus.ACTIVE.value or template.task_type != TaskType.SCHEDULED.value:
                    outcome.status = OUTCOME_SKIPPED
                    return outcome
                if template.area_id is None or session.get(Area, template.area_id) is None:
                    raise NotFoundError(f"Area {template.area_id} of template {template_id} not found",
                                        entity="area", entity_id=template.area_id)
                if not template.items:
                    raise ValidationError(f"Template {template_id} has no check items",
                                          entity="template", entity_id=template_id)

                dates = occurrences(template, window_start, window_end)
                assignees = (
                    self._check_assignees(session, assignee_ids)
                    if assignee_ids else self._resolve_assignees(session, template)
                )

                for occurrence in dates:
                    for assignee_id in assignees:
                        if self._create_if_absent(session, template, occurrence, assignee_id, actor):
                            outcome.created += 1
                        else:
                            outcome.existing += 1
        except InspectOSError as e:
            outcome.status = OUTCOME_FAILED
            outcome.created = 0
            outcome.error = e.message
            outcome.error_type = e.error_type
            logger.warning(f"Template {template_id} generation failed: {e.message}")
        except Exception as e:
            outcome.status = OUTCOME_FAILED
            outcome.created = 0
            outcome.error = str(e)
            outcome.error_type = type(e).__name__
            logger.exception(f"Template {template_id} generation failed unexpectedly")
        finally:
            outcome.duration_ms = (time.perf_counter() - t0) * 1000

        if outcome.status != OUTCOME_FAILED:
            log(log_generation_performance(
                template_id, round(outcome.duration_ms, 2), outcome.created, outcome.existing,
            ))
        return outcome

    @staticmethod
    def _check_assignees(session: Session, assignee_ids: List[int]) -> List[int]:
        active = set(session.scalars(
            select(User.id).where(User.id.in_(assignee_ids), User.is_active.is_(True))
        ))
        missing = [uid for uid in assignee_ids if uid not in active]
        if missing:
            raise NotFoundError(f"Assignee(s) not found or inactive: {missing}",
                                entity="assignee", entity_id=missing[0])
        return assignee_ids

    @staticmethod
    def _create_if_absent(
        session: Session,
        template: CheckTemplate,
        occurrence: date,
        assignee_id: int,
        actor: Optional[int],
    ) -> bool:
        due_date = occurrence + timedelta(days=template.default_due_days or 0)
        if GenerationEngine._key_exists(session, template.id, due_date, assignee_id):
            return False

        try:
            with session.begin_nested():
                task = Task(
                    task_type=TaskType.SCHEDULED.value,
                    title=template.name,
                    area_id=template.area_id,
                    template_id=template.id,
                    assignee_id=assignee_id,
                    due_date=due_date,
                    planned_date=occurrence,
                    status=TaskStatus.PENDING.value,
                    is_emergency=bool(template.is_emergency_default),
                    created_by=actor,
                )
                session.add(task)
                session.flush()
                for item in template.items:
                    session.add(TaskItemRecord(
                        task_id=task.id,
                        check_item_id=item.id,
                        group_name=item.group_name,
                        sort_order=item.sort_order,
                        result=None,
                        images=[],
                    ))
                session.flush()
        except IntegrityError:
            # Only a row under the same key means a concurrent trigger won the race
            if not GenerationEngine._key_exists(session, template.id, due_date, assignee_id):
                raise
            logger.debug(f"Task key exists: template={template.id} due={due_date} assignee={assignee_id}")
            return False
        return True

    @staticmethod
    def _key_exists(session: Session, template_id: int, due_date: date, assignee_id: int) -> bool:
        return session.scalar(
            select(Task.id).where(
                Task.task_type == TaskType.SCHEDULED.value,
                Task.template_id == template_id,
                Task.due_date == due_date,
                Task.assignee_id == assignee_id,
            )
        ) is not None

    def _known_user(self, user_id: Optional[int]) -> Optional[int]:
        """Drop a triggering user id that has no users row so the run log still records."""
        if user_id is None:
            return None
        with session_scope(self._session_factory) as session:
            if session.get(User, user_id) is not None:
                return user_id
        logger.warning(f"Triggering user {user_id} not found; recording the run without one")
        return None

    @staticmethod
    def _build_message(outcomes: List[TemplateOutcome], created_count: int) -> str:
        failures = [o for o in outcomes if o.status == OUTCOME_FAILED]
        if failures:
            return "; ".join(f"template {o.template_id}: {o.error}" for o in failures)
        skipped = sum(1 for o in outcomes if o.status == OUTCOME_SKIPPED)
        processed = len(outcomes) - skipped
        message = f"Created {created_count} task(s) from {processed} template(s)"
        if skipped:
            message += f"; {skipped} template(s) skipped (inactive or adhoc)"
        return message
