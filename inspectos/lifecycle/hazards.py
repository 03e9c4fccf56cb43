"""
InspectOS Hazard Lifecycle — escalation, remediation and closure of hazards.

States:
    to_fix ──→ fixing ──→ to_review ──→ closed
       └─────────────────────↗   └──→ fixing   (reject)

A hazard is born in ``to_fix`` when an item record is submitted as
abnormal. Editing remediation fields moves it to ``fixing``; the
responsible party submits it for review; a reviewer closes it or rejects
it back to ``fixing``. Closing the last open hazard of a task closes the
task. Closed hazards are read-only.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from inspectos.db.base import utcnow
from inspectos.db.models import (
    Hazard,
    HazardLevel,
    HazardStatus,
    Task,
    TaskItemRecord,
    User,
    values,
)
from inspectos.db.query import Page, paginate
from inspectos.db.session import session_scope
from inspectos.engine.config import HazardConfig, get_platform_config
from inspectos.engine.context import current_user_id
from inspectos.engine.errors import ConflictError, InvalidTransition, NotFoundError, ValidationError
from inspectos.engine.logging import log, log_hazard_event
from inspectos.lifecycle.policy import hazard_due_date

logger = logging.getLogger("inspectos.lifecycle.hazards")


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

HAZARD_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    HazardStatus.TO_FIX.value: frozenset({HazardStatus.FIXING.value, HazardStatus.TO_REVIEW.value}),
    HazardStatus.FIXING.value: frozenset({HazardStatus.TO_REVIEW.value}),
    HazardStatus.TO_REVIEW.value: frozenset({HazardStatus.CLOSED.value, HazardStatus.FIXING.value}),
    HazardStatus.CLOSED.value: frozenset(),
}

HAZARD_TITLE_LENGTH = Hazard.__table__.c.title.type.length

# Targets a caller may request through transition_status()
REQUESTABLE_TARGETS = (HazardStatus.TO_REVIEW.value, HazardStatus.CLOSED.value)

REMEDIATION_FIELDS = (
    "responsible_id",
    "responsible_ids",
    "department",
    "maintenance_type",
    "cost",
    "approver_id",
    "equipment_codes",
    "images",
    "description",
)


def can_transition(current: str, target: str) -> bool:
    return target in HAZARD_TRANSITIONS.get(current, frozenset())


def check_hazard_transition(current: str, target: str, hazard_id: Optional[int] = None) -> None:
    """Raise InvalidTransition unless the table allows current → target."""
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Hazard cannot move from '{current}' to '{target}'",
            entity="hazard",
            entity_id=hazard_id,
            current=current,
            target=target,
        )


def _apply_transition(hazard: Hazard, target: str, actor_id: Optional[int], event: str) -> str:
    check_hazard_transition(hazard.status, target, hazard.id)
    previous = hazard.status
    hazard.status = target
    logger.info(f"Hazard {hazard.id}: {previous} → {target}")
    log(log_hazard_event(event, hazard.id, user_id=actor_id, from_status=previous, to_status=target))
    return previous


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------

def escalate(
    session: Session,
    task: Task,
    record: TaskItemRecord,
    actor_id: Optional[int] = None,
    config: Optional[HazardConfig] = None,
    created_on: Optional[date] = None,
) -> Hazard:
    """
    Create the hazard for an abnormal item record inside the caller's transaction.

    Returns the existing hazard if the record was already escalated.
    """
    existing = session.scalar(select(Hazard).where(Hazard.task_item_record_id == record.id))
    if existing is not None:
        return existing

    config = config or get_platform_config().hazards
    template = task.template
    level = (template.default_hazard_level if template is not None else None) or config.default_level
    area = task.area
    created_on = created_on or date.today()

    hazard = Hazard(
        task=task,
        task_item_record_id=record.id,
        title=f"{task.title} - {record.display_name}"[:HAZARD_TITLE_LENGTH],
        description=record.comment or "",
        level=level,
        area_id=task.area_id,
        department=area.department if area is not None else None,
        responsible_id=area.responsible_id if area is not None else None,
        responsible_ids=[],
        due_date=hazard_due_date(level, created_on, area, config),
        status=HazardStatus.TO_FIX.value,
        equipment_codes=[],
        images=list(record.images or []),
    )
    session.add(hazard)
    session.flush()

    logger.info(f"Record {record.id} of task {task.id} escalated to hazard {hazard.id} ({level})")
    log(log_hazard_event("hazard_escalated", hazard.id, user_id=actor_id, to_status=hazard.status))
    return hazard


def lock_hazard(session: Session, hazard_id: int) -> Hazard:
    hazard = session.scalar(select(Hazard).where(Hazard.id == hazard_id).with_for_update())
    if hazard is None:
        raise NotFoundError(f"Hazard {hazard_id} not found", entity="hazard", entity_id=hazard_id)
    return hazard


def _ensure_mutable(hazard: Hazard) -> None:
    if hazard.is_closed:
        raise ConflictError(
            f"Hazard {hazard.id} is closed and read-only",
            entity="hazard",
            entity_id=hazard.id,
        )


def _validate_user_ids(session: Session, user_ids: List[int]) -> None:
    found = set(session.scalars(select(User.id).where(User.id.in_(user_ids))))
    missing = [uid for uid in user_ids if uid not in found]
    if missing:
        raise NotFoundError(f"User(s) not found: {missing}", entity="user", entity_id=missing[0])


def _normalize_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    if not changes:
        raise ValidationError("No remediation changes given", entity="hazard",
                              validation_errors=["changes: must not be empty"])
    errors = []
    if "due_date" in changes:
        errors.append("due_date: derived from level and area policy; cannot be changed")
    unknown = sorted(set(changes) - set(REMEDIATION_FIELDS) - {"due_date"})
    if unknown:
        errors.append(f"unknown field(s): {unknown}")

    clean: Dict[str, Any] = {}
    for name, value in changes.items():
        if name not in REMEDIATION_FIELDS:
            continue
        if name in ("responsible_id", "approver_id"):
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                errors.append(f"{name}: must be a user id")
                continue
        elif name in ("responsible_ids", "equipment_codes", "images"):
            if value is None:
                value = []
            if not isinstance(value, list):
                errors.append(f"{name}: must be a list")
                continue
            if name == "responsible_ids" and any(isinstance(v, bool) or not isinstance(v, int) for v in value):
                errors.append("responsible_ids: must be user ids")
                continue
        elif name == "cost":
            if value is not None:
                try:
                    value = Decimal(str(value))
                except InvalidOperation:
                    errors.append("cost: must be a number")
                    continue
                if value < 0:
                    errors.append("cost: must be >= 0")
                    continue
        elif name == "description":
            value = "" if value is None else str(value)
        elif value is not None and not isinstance(value, str):
            errors.append(f"{name}: must be a string")
            continue
        clean[name] = value

    if errors:
        raise ValidationError("Invalid remediation update", entity="hazard", validation_errors=errors)
    return clean


class HazardLifecycleManager:
    """
    Usage:
        manager = HazardLifecycleManager(session_factory)
        manager.update_remediation(hazard_id, {"maintenance_type": "repair"})
        manager.transition_status(hazard_id, "to_review")
        manager.transition_status(hazard_id, "closed", actor_id=reviewer_id)
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    def transition_status(self, hazard_id: int, status: str, actor_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Move a hazard to ``to_review`` or ``closed``.

        Closing stamps the acceptance fields and re-evaluates the parent task.
        """
        if status not in REQUESTABLE_TARGETS:
            raise ValidationError(
                f"Unsupported hazard status '{status}'",
                entity="hazard",
                entity_id=hazard_id,
                validation_errors=[f"status: must be one of {list(REQUESTABLE_TARGETS)}"],
            )
        actor = current_user_id(actor_id)

        with session_scope(self._session_factory) as session:
            hazard = lock_hazard(session, hazard_id)
            _apply_transition(hazard, status, actor, "hazard_transition")

            if status == HazardStatus.CLOSED.value:
                now = utcnow()
                hazard.accepted_by_id = actor
                hazard.accepted_at = now
                hazard.closed_at = now
                session.flush()

                from inspectos.lifecycle.tasks import lock_task, reevaluate_task
                task = lock_task(session, hazard.task_id)
                reevaluate_task(session, task, actor)

            session.flush()
            return hazard.to_dict()

    def update_remediation(self, hazard_id: int, changes: Dict[str, Any],
                           actor_id: Optional[int] = None) -> Dict[str, Any]:
        """Partial update of remediation fields; a ``to_fix`` hazard moves to ``fixing``."""
        clean = _normalize_changes(changes)
        actor = current_user_id(actor_id)

        with session_scope(self._session_factory) as session:
            hazard = lock_hazard(session, hazard_id)
            _ensure_mutable(hazard)

            user_ids = [clean[k] for k in ("responsible_id", "approver_id") if clean.get(k) is not None]
            user_ids.extend(clean.get("responsible_ids") or [])
            if user_ids:
                _validate_user_ids(session, user_ids)

            for name, value in clean.items():
                setattr(hazard, name, value)

            if hazard.status == HazardStatus.TO_FIX.value:
                _apply_transition(hazard, HazardStatus.FIXING.value, actor, "hazard_transition")

            session.flush()
            log(log_hazard_event("hazard_updated", hazard.id, user_id=actor,
                                 fields_changed=sorted(clean)))
            return hazard.to_dict()

    def reject(self, hazard_id: int, comment: str, actor_id: Optional[int] = None) -> Dict[str, Any]:
        """Send a hazard under review back to ``fixing`` with the reviewer's comment."""
        if not comment or not str(comment).strip():
            raise ValidationError("A rejection comment is required", entity="hazard",
                                  entity_id=hazard_id, validation_errors=["comment: required"])
        actor = current_user_id(actor_id)

        with session_scope(self._session_factory) as session:
            hazard = lock_hazard(session, hazard_id)
            _ensure_mutable(hazard)
            if hazard.status != HazardStatus.TO_REVIEW.value:
                raise InvalidTransition(
                    f"Only hazards under review can be rejected (hazard {hazard_id} is '{hazard.status}')",
                    entity="hazard",
                    entity_id=hazard_id,
                    current=hazard.status,
                    target=HazardStatus.FIXING.value,
                )
            _apply_transition(hazard, HazardStatus.FIXING.value, actor, "hazard_rejected")
            hazard.rejection_comment = str(comment).strip()
            session.flush()
            return hazard.to_dict()

    def get_hazard(self, hazard_id: int) -> Dict[str, Any]:
        with session_scope(self._session_factory) as session:
            hazard = session.get(Hazard, hazard_id)
            if hazard is None:
                raise NotFoundError(f"Hazard {hazard_id} not found", entity="hazard", entity_id=hazard_id)
            return hazard.to_dict()

    def list_hazards(
        self,
        status: Optional[str] = None,
        level: Optional[str] = None,
        area_id: Optional[int] = None,
        responsible_id: Optional[int] = None,
        department: Optional[str] = None,
        task_id: Optional[int] = None,
        keyword: Optional[str] = None,
        due_from: Optional[date] = None,
        due_to: Optional[date] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Page:
        """Filtered hazard list, newest first. Items are dicts."""
        if status is not None and status not in values(HazardStatus):
            raise ValidationError(f"Unknown status '{status}'", entity="hazard",
                                  validation_errors=["status: invalid"])
        if level is not None and level not in values(HazardLevel):
            raise ValidationError(f"Unknown level '{level}'", entity="hazard",
                                  validation_errors=["level: invalid"])

        stmt = select(Hazard)
        if status is not None:
            stmt = stmt.where(Hazard.status == status)
        if level is not None:
            stmt = stmt.where(Hazard.level == level)
        if area_id is not None:
            stmt = stmt.where(Hazard.area_id == area_id)
        if responsible_id is not None:
            stmt = stmt.where(Hazard.responsible_id == responsible_id)
        if department:
            stmt = stmt.where(Hazard.department == department)
        if task_id is not None:
            stmt = stmt.where(Hazard.task_id == task_id)
        if keyword:
            pattern = f"%{keyword.strip()}%"
            stmt = stmt.where(or_(Hazard.title.ilike(pattern), Hazard.description.ilike(pattern)))
        if due_from is not None:
            stmt = stmt.where(Hazard.due_date >= due_from)
        if due_to is not None:
            stmt = stmt.where(Hazard.due_date <= due_to)
        stmt = stmt.order_by(Hazard.created_at.desc(), Hazard.id.desc())

        api = get_platform_config().api
        with session_scope(self._session_factory) as session:
            result = paginate(session, stmt, page, page_size or api.default_page_size,
                              max_page_size=api.max_page_size)
            result.items = [h.to_dict() for h in result.items]
            return result
