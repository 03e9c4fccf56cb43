"""
InspectOS Schedule Config Store — the singleton automatic-generation setting.

The row in ``template_schedule_config`` is loaded into an immutable
ScheduleSettings value which callers pass on explicitly (beat tick, API).
Updates replace the whole record; concurrent writers are last-writer-wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time
from typing import Any, Dict, Optional, Union

from sqlalchemy.orm import Session, sessionmaker

from inspectos.db.base import utcnow
from inspectos.db.models import TemplateScheduleConfig
from inspectos.db.session import session_scope
from inspectos.engine.config import ScheduleConfig, get_platform_config
from inspectos.engine.context import current_user_id
from inspectos.engine.errors import ValidationError
from inspectos.engine.logging import log, log_schedule_update

logger = logging.getLogger("inspectos.scheduling.config_store")

SINGLETON_ID = 1


@dataclass(frozen=True)
class ScheduleSettings:
    enabled: bool
    run_time: time
    updated_at: Optional[datetime] = None
    updated_by: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "run_time": self.run_time.strftime("%H:%M"),
            "updated_at": self.updated_at,
            "updated_by": self.updated_by,
        }


def parse_run_time(value: Union[str, time]) -> time:
    """Accept a ``time`` or an ``HH:MM`` / ``HH:MM:SS`` string."""
    if isinstance(value, time):
        return value.replace(microsecond=0)
    if isinstance(value, str):
        for fmt in ("%H:%M", "%H:%M:%S"):
            try:
                return datetime.strptime(value.strip(), fmt).time()
            except ValueError:
                continue
    raise ValidationError(
        f"Invalid run_time {value!r}; expected HH:MM",
        entity="schedule_config",
        validation_errors=["run_time: expected HH:MM"],
    )


class ScheduleConfigStore:
    """
    Load / replace the schedule config singleton.

    Usage:
        store = ScheduleConfigStore(session_factory)
        settings = store.load()
        settings = store.replace(enabled=True, run_time="05:30")
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 defaults: Optional[ScheduleConfig] = None):
        self._session_factory = session_factory
        self._defaults = defaults

    @property
    def defaults(self) -> ScheduleConfig:
        return self._defaults or get_platform_config().schedule

    def _get_or_create(self, session: Session) -> TemplateScheduleConfig:
        row = session.get(TemplateScheduleConfig, SINGLETON_ID)
        if row is None:
            row = TemplateScheduleConfig(
                id=SINGLETON_ID,
                enabled=self.defaults.default_enabled,
                run_time=self.defaults.default_run_time,
                updated_at=utcnow(),
            )
            session.add(row)
            session.flush()
            logger.info("Schedule config initialised from defaults")
        return row

    @staticmethod
    def _to_settings(row: TemplateScheduleConfig) -> ScheduleSettings:
        return ScheduleSettings(
            enabled=bool(row.enabled),
            run_time=row.run_time,
            updated_at=row.updated_at,
            updated_by=row.updated_by,
        )

    def load(self) -> ScheduleSettings:
        """Return the current settings, seeding the row from defaults if absent."""
        with session_scope(self._session_factory) as session:
            return self._to_settings(self._get_or_create(session))

    def replace(
        self,
        enabled: Optional[bool] = None,
        run_time: Optional[Union[str, time]] = None,
        updated_by: Optional[int] = None,
    ) -> ScheduleSettings:
        """
        Write a new settings record. Omitted fields keep their current value;
        the stored record is replaced as a whole.
        """
        if enabled is not None and not isinstance(enabled, bool):
            raise ValidationError(
                "enabled must be a boolean",
                entity="schedule_config",
                validation_errors=["enabled: expected boolean"],
            )
        new_time = parse_run_time(run_time) if run_time is not None else None
        actor = current_user_id(updated_by)

        with session_scope(self._session_factory) as session:
            row = self._get_or_create(session)
            row.enabled = row.enabled if enabled is None else enabled
            row.run_time = row.run_time if new_time is None else new_time
            row.updated_at = utcnow()
            row.updated_by = actor
            session.flush()
            settings = self._to_settings(row)

        logger.info(
            f"Schedule config replaced: enabled={settings.enabled} "
            f"run_time={settings.run_time.strftime('%H:%M')} by={actor}"
        )
        log(log_schedule_update(settings.enabled, settings.run_time.strftime("%H:%M"), user_id=actor))
        return settings
