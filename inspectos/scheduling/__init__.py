"""InspectOS Scheduling — recurrence, generation, run log, schedule config.

The Celery beat app lives in ``inspectos.scheduling.beat`` and is not
imported here so that importing the engine never builds a Celery app.
"""

from inspectos.scheduling.config_store import ScheduleConfigStore, ScheduleSettings  # noqa: F401
from inspectos.scheduling.generator import GenerationEngine, GenerationResult, TemplateOutcome  # noqa: F401
from inspectos.scheduling.recurrence import build_rule, occurrences, rule_from_template  # noqa: F401
from inspectos.scheduling.run_log import RunLogRecorder  # noqa: F401

__all__ = [
    "ScheduleConfigStore",
    "ScheduleSettings",
    "GenerationEngine",
    "GenerationResult",
    "TemplateOutcome",
    "build_rule",
    "occurrences",
    "rule_from_template",
    "RunLogRecorder",
]
