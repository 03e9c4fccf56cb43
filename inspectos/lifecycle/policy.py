"""
Hazard due-date policy: created_on + days for the hazard level.

The area's own override wins; otherwise ``hazards.due_days`` from config.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Optional

from inspectos.engine.config import HazardConfig, get_platform_config
from inspectos.engine.errors import ValidationError

FALLBACK_DUE_DAYS = {"minor": 7, "major": 3}


def due_days_for(level: str, area: Optional[Any] = None, config: Optional[HazardConfig] = None) -> int:
    if level not in FALLBACK_DUE_DAYS:
        raise ValidationError(
            f"Unknown hazard level '{level}'",
            entity="hazard",
            validation_errors=["level: must be minor or major"],
        )
    if area is not None:
        override = area.hazard_due_days(level)
        if override is not None:
            return override
    config = config or get_platform_config().hazards
    return config.due_days.get(level, FALLBACK_DUE_DAYS[level])


def hazard_due_date(level: str, created_on: date, area: Optional[Any] = None,
                    config: Optional[HazardConfig] = None) -> date:
    return created_on + timedelta(days=due_days_for(level, area, config))
