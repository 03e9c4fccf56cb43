"""
InspectOS Models — SQLAlchemy models for the inspection scheduling core.

Tables defined here:
1.  users                       — Directory stub: assignees, actors
2.  areas                       — Inspection areas and their hazard policy overrides
3.  check_templates             — Recurring inspection blueprints
4.  check_items                 — Ordered checklist lines of a template
5.  template_schedule_config    — Singleton: automatic generation switch + run time
6.  template_schedule_run_logs  — Append-only generation audit trail
7.  tasks                       — Inspection task instances
8.  task_item_records           — Per-task checklist results
9.  hazards                     — Remediation items escalated from abnormal results

Status-like columns are plain strings guarded by CheckConstraints; the
str Enums below are the canonical value sets used by the lifecycle code.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    Time,
    text,
)
from sqlalchemy.orm import relationship

from inspectos.db.base import Base, TimestampMixin, utcnow


# ---------------------------------------------------------------------------
# Enumerated value sets
# ---------------------------------------------------------------------------

class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class TaskType(str, Enum):
    SCHEDULED = "scheduled"
    ADHOC = "adhoc"


class TemplateStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    UNDER_REVIEW = "under_review"
    CLOSED = "closed"


class RecordResult(str, Enum):
    NORMAL = "normal"
    ABNORMAL = "abnormal"
    NOT_APPLICABLE = "not_applicable"


class HazardLevel(str, Enum):
    MINOR = "minor"
    MAJOR = "major"


class HazardStatus(str, Enum):
    TO_FIX = "to_fix"
    FIXING = "fixing"
    TO_REVIEW = "to_review"
    CLOSED = "closed"


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class RunSource(str, Enum):
    MANUAL = "manual"
    BEAT = "beat"


def values(enum_cls: Iterable[Enum]) -> tuple:
    return tuple(member.value for member in enum_cls)


def _in_check(column: str, enum_cls: Iterable[Enum], name: str, nullable: bool = False) -> CheckConstraint:
    allowed = ", ".join(f"'{v}'" for v in values(enum_cls))
    clause = f"{column} IN ({allowed})"
    if nullable:
        clause = f"{column} IS NULL OR {clause}"
    return CheckConstraint(clause, name=name)


def _iso(value: Optional[Any]) -> Optional[Any]:
    return value.isoformat() if isinstance(value, (date, datetime)) else value


# ---------------------------------------------------------------------------
# 1. Users
# ---------------------------------------------------------------------------

class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    full_name = Column(String(200), nullable=False, default="")
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    user_type = Column(String(20), default="basic", nullable=False)

    __table_args__ = (
        CheckConstraint("user_type IN ('basic', 'admin')", name="ck_users_user_type"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username='{self.username}')>"


# ---------------------------------------------------------------------------
# 2. Areas
# ---------------------------------------------------------------------------

class Area(Base, TimestampMixin):
    __tablename__ = "areas"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    department = Column(String(100), nullable=True)
    default_assignee_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    responsible_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    minor_hazard_due_days = Column(Integer, nullable=True)
    major_hazard_due_days = Column(Integer, nullable=True)

    def hazard_due_days(self, level: str) -> Optional[int]:
        """Per-area override of the hazard due-date policy, if any."""
        if level == HazardLevel.MAJOR.value:
            return self.major_hazard_due_days
        return self.minor_hazard_due_days

    def __repr__(self) -> str:
        return f"<Area(id={self.id}, name='{self.name}')>"


# ---------------------------------------------------------------------------
# 3. Check Templates
# ---------------------------------------------------------------------------

class CheckTemplate(Base, TimestampMixin):
    __tablename__ = "check_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    frequency = Column(String(20), nullable=False)
    area_id = Column(Integer, ForeignKey("areas.id"), nullable=True, index=True)
    task_type = Column(String(20), default=TaskType.SCHEDULED.value, nullable=False)
    weekly_day = Column(Integer, nullable=True)
    monthly_day = Column(Integer, nullable=True)
    yearly_month = Column(Integer, nullable=True)
    yearly_day = Column(Integer, nullable=True)
    status = Column(String(20), default=TemplateStatus.ACTIVE.value, nullable=False, index=True)
    default_due_days = Column(Integer, nullable=True)
    is_emergency_default = Column(Boolean, default=False, nullable=False)
    default_hazard_level = Column(String(20), nullable=True)
    attachment_required = Column(Boolean, default=False, nullable=False)
    attachment_count = Column(Integer, nullable=True)
    default_assignee_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    area = relationship("Area", lazy="joined")
    items = relationship(
        "CheckItem",
        back_populates="template",
        order_by="CheckItem.sort_order, CheckItem.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        _in_check("frequency", Frequency, "ck_templates_frequency"),
        _in_check("task_type", TaskType, "ck_templates_task_type"),
        _in_check("status", TemplateStatus, "ck_templates_status"),
        _in_check("default_hazard_level", HazardLevel, "ck_templates_hazard_level", nullable=True),
    )

    @property
    def is_schedulable(self) -> bool:
        return self.status == TemplateStatus.ACTIVE.value and self.task_type == TaskType.SCHEDULED.value

    def __repr__(self) -> str:
        return f"<CheckTemplate(id={self.id}, name='{self.name}', frequency='{self.frequency}')>"


# ---------------------------------------------------------------------------
# 4. Check Items
# ---------------------------------------------------------------------------

class CheckItem(Base):
    __tablename__ = "check_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(Integer, ForeignKey("check_templates.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    group_name = Column(String(100), nullable=True)
    sort_order = Column(Integer, default=0, nullable=False)
    default_result = Column(String(20), nullable=True)
    remark_hint = Column(String(255), nullable=True)

    template = relationship("CheckTemplate", back_populates="items")

    __table_args__ = (
        _in_check("default_result", RecordResult, "ck_items_default_result", nullable=True),
    )


# ---------------------------------------------------------------------------
# 5. Template Schedule Config (singleton)
# ---------------------------------------------------------------------------

class TemplateScheduleConfig(Base):
    __tablename__ = "template_schedule_config"

    id = Column(Integer, primary_key=True)
    enabled = Column(Boolean, default=False, nullable=False)
    run_time = Column(Time, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_by = Column(Integer, ForeignKey("users.id"), nullable=True)


# ---------------------------------------------------------------------------
# 6. Template Schedule Run Log (append-only)
# ---------------------------------------------------------------------------

class TemplateScheduleRunLog(Base):
    __tablename__ = "template_schedule_run_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    status = Column(String(20), nullable=False, index=True)
    run_source = Column(String(20), nullable=False, index=True)
    started_at = Column(DateTime(timezone=True), nullable=False, index=True)
    finished_at = Column(DateTime(timezone=True), nullable=False)
    created_count = Column(Integer, default=0, nullable=False)
    message = Column(Text, nullable=True)
    triggered_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    window_start = Column(Date, nullable=True)
    window_end = Column(Date, nullable=True)

    __table_args__ = (
        _in_check("status", RunStatus, "ck_runlog_status"),
        _in_check("run_source", RunSource, "ck_runlog_source"),
        CheckConstraint("created_count >= 0", name="ck_runlog_created_count"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "run_source": self.run_source,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "created_count": self.created_count,
            "message": self.message,
            "triggered_by": self.triggered_by_id,
            "window_start": self.window_start,
            "window_end": self.window_end,
        }


# ---------------------------------------------------------------------------
# 7. Tasks
# ---------------------------------------------------------------------------

class Task(Base, TimestampMixin):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_type = Column(String(20), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    area_id = Column(Integer, ForeignKey("areas.id"), nullable=False, index=True)
    template_id = Column(Integer, ForeignKey("check_templates.id"), nullable=True, index=True)
    assignee_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    due_date = Column(Date, nullable=False, index=True)
    planned_date = Column(Date, nullable=True)
    status = Column(String(20), default=TaskStatus.PENDING.value, nullable=False, index=True)
    is_emergency = Column(Boolean, default=False, nullable=False, index=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    area = relationship("Area", lazy="joined")
    template = relationship("CheckTemplate")
    item_records = relationship(
        "TaskItemRecord",
        back_populates="task",
        order_by="TaskItemRecord.sort_order, TaskItemRecord.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    hazards = relationship("Hazard", back_populates="task", lazy="selectin")

    __table_args__ = (
        _in_check("task_type", TaskType, "ck_tasks_task_type"),
        _in_check("status", TaskStatus, "ck_tasks_status"),
        # Generation idempotency key: one scheduled task per (template, date, assignee)
        Index(
            "uq_tasks_scheduled_key",
            "template_id", "due_date", "assignee_id",
            unique=True,
            postgresql_where=text("task_type = 'scheduled'"),
            sqlite_where=text("task_type = 'scheduled'"),
        ),
        Index("idx_tasks_assignee_status", "assignee_id", "status"),
    )

    def is_overdue(self, today: date) -> bool:
        return self.due_date < today and self.status not in (
            TaskStatus.COMPLETED.value,
            TaskStatus.CLOSED.value,
        )

    def to_dict(self, today: Optional[date] = None, include_records: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "task_type": self.task_type,
            "title": self.title,
            "area": self.area_id,
            "template": self.template_id,
            "assignee": self.assignee_id,
            "due_date": self.due_date,
            "planned_date": self.planned_date,
            "status": self.status,
            "is_emergency": self.is_emergency,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "submitted_at": self.submitted_at,
            "closed_at": self.closed_at,
        }
        if today is not None:
            data["is_overdue"] = self.is_overdue(today)
        if include_records:
            data["item_records"] = [r.to_dict() for r in self.item_records]
        return data

    def __repr__(self) -> str:
        return f"<Task(id={self.id}, status='{self.status}', due={_iso(self.due_date)})>"


# ---------------------------------------------------------------------------
# 8. Task Item Records
# ---------------------------------------------------------------------------

class TaskItemRecord(Base):
    __tablename__ = "task_item_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    check_item_id = Column(Integer, ForeignKey("check_items.id", ondelete="SET NULL"), nullable=True)
    custom_name = Column(String(200), nullable=True)
    group_name = Column(String(100), nullable=True)
    sort_order = Column(Integer, default=0, nullable=False)
    result = Column(String(20), nullable=True)
    comment = Column(Text, nullable=True)
    images = Column(JSON, default=list, nullable=False)
    submitted_at = Column(DateTime(timezone=True), nullable=True)

    task = relationship("Task", back_populates="item_records")
    check_item = relationship("CheckItem", lazy="joined")

    __table_args__ = (
        _in_check("result", RecordResult, "ck_records_result", nullable=True),
    )

    @property
    def display_name(self) -> str:
        if self.custom_name:
            return self.custom_name
        if self.check_item is not None:
            return self.check_item.name
        return f"item {self.id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task": self.task_id,
            "check_item": self.check_item_id,
            "custom_name": self.custom_name,
            "name": self.display_name,
            "group_name": self.group_name,
            "sort_order": self.sort_order,
            "result": self.result,
            "comment": self.comment,
            "images": list(self.images or []),
            "submitted_at": self.submitted_at,
        }


# ---------------------------------------------------------------------------
# 9. Hazards
# ---------------------------------------------------------------------------

class Hazard(Base, TimestampMixin):
    __tablename__ = "hazards"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=False, index=True)
    task_item_record_id = Column(Integer, ForeignKey("task_item_records.id"), nullable=True, unique=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    level = Column(String(20), nullable=False, index=True)
    area_id = Column(Integer, ForeignKey("areas.id"), nullable=False, index=True)
    department = Column(String(100), nullable=True, index=True)
    responsible_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    responsible_ids = Column(JSON, default=list, nullable=False)
    due_date = Column(Date, nullable=True, index=True)
    status = Column(String(20), default=HazardStatus.TO_FIX.value, nullable=False, index=True)

    # Remediation metadata
    cost = Column(Numeric(12, 2), nullable=True)
    maintenance_type = Column(String(100), nullable=True)
    approver_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    accepted_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    equipment_codes = Column(JSON, default=list, nullable=False)
    images = Column(JSON, default=list, nullable=False)
    rejection_comment = Column(Text, nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    task = relationship("Task", back_populates="hazards")
    task_item_record = relationship("TaskItemRecord")

    __table_args__ = (
        _in_check("level", HazardLevel, "ck_hazards_level"),
        _in_check("status", HazardStatus, "ck_hazards_status"),
        Index("idx_hazards_status_level", "status", "level"),
    )

    @property
    def is_closed(self) -> bool:
        return self.status == HazardStatus.CLOSED.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task": self.task_id,
            "task_item_record": self.task_item_record_id,
            "title": self.title,
            "description": self.description,
            "level": self.level,
            "area": self.area_id,
            "department": self.department,
            "responsible": self.responsible_id,
            "responsible_ids": list(self.responsible_ids or []),
            "due_date": self.due_date,
            "status": self.status,
            "cost": float(self.cost) if self.cost is not None else None,
            "maintenance_type": self.maintenance_type,
            "approver": self.approver_id,
            "accepted_by": self.accepted_by_id,
            "accepted_at": self.accepted_at,
            "equipment_codes": list(self.equipment_codes or []),
            "images": list(self.images or []),
            "rejection_comment": self.rejection_comment,
            "closed_at": self.closed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def __repr__(self) -> str:
        return f"<Hazard(id={self.id}, level='{self.level}', status='{self.status}')>"
