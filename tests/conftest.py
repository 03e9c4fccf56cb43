"""
InspectOS Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v
"""

from __future__ import annotations

from datetime import time
from types import SimpleNamespace

import pytest


# ---------------------------------------------------------------------------
# Environment setup — no real Postgres / Redis in tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_config(tmp_path):
    """Reset global singletons between tests; event logs go under tmp_path."""
    import inspectos.engine.config as cfg_mod
    import inspectos.engine.logging as log_mod
    from inspectos.engine.context import clear_execution_context

    cfg_mod._platform_config = cfg_mod.PlatformConfig(
        logging=cfg_mod.LoggingConfig(directory=str(tmp_path / "event-logs")),
    )
    clear_execution_context()
    yield
    cfg_mod._platform_config = None
    if log_mod._global_queue is not None:
        log_mod.shutdown_logging()


@pytest.fixture
def db_url(tmp_path):
    """File-backed SQLite so worker threads share one database."""
    return f"sqlite:///{tmp_path / 'inspectos.db'}"


@pytest.fixture
def session_factory(db_url):
    """Initialised core database with all tables created."""
    from inspectos.db.session import close_all_sessions, init_db

    factory = init_db(db_url, create_tables=True)
    yield factory
    close_all_sessions()


def add_template(session, area, name="Fire extinguisher check", frequency="daily",
                 items=("Pressure gauge", "Safety pin"), **fields):
    """Create a CheckTemplate with ordered items; returns the template."""
    from inspectos.db.models import CheckItem, CheckTemplate

    template = CheckTemplate(name=name, frequency=frequency, area_id=area.id, **fields)
    template.items = [
        CheckItem(name=item, group_name="General", sort_order=index)
        for index, item in enumerate(items, start=1)
    ]
    session.add(template)
    session.flush()
    return template


@pytest.fixture
def make_template():
    return add_template


@pytest.fixture
def seed(session_factory):
    """
    Seed users, one area and a handful of templates.

    Returns a namespace of ids:
        inspector, supervisor, inactive_user, area,
        daily, weekly, monthly, inactive, adhoc, major
    """
    from inspectos.db.models import Area, TemplateScheduleConfig, User
    from inspectos.db.session import session_scope

    with session_scope(session_factory) as session:
        inspector = User(username="inspector", full_name="Ivy Inspector")
        supervisor = User(username="supervisor", full_name="Sam Supervisor", user_type="admin")
        inactive_user = User(username="former", full_name="Former Staff", is_active=False)
        session.add_all([inspector, supervisor, inactive_user])
        session.flush()

        area = Area(
            name="Boiler room",
            department="Maintenance",
            default_assignee_id=inspector.id,
            responsible_id=supervisor.id,
        )
        session.add(area)
        session.flush()

        daily = add_template(session, area)
        weekly = add_template(session, area, name="Weekly walkdown", frequency="weekly", weekly_day=0)
        monthly = add_template(session, area, name="Monthly pump check", frequency="monthly", monthly_day=31)
        inactive = add_template(session, area, name="Retired check", status="inactive")
        adhoc = add_template(session, area, name="Adhoc audit", task_type="adhoc")
        major = add_template(session, area, name="Gas line check", default_hazard_level="major",
                             default_due_days=2, is_emergency_default=True)

        session.add(TemplateScheduleConfig(id=1, enabled=False, run_time=time(6, 0)))

        return SimpleNamespace(
            inspector=inspector.id,
            supervisor=supervisor.id,
            inactive_user=inactive_user.id,
            area=area.id,
            daily=daily.id,
            weekly=weekly.id,
            monthly=monthly.id,
            inactive=inactive.id,
            adhoc=adhoc.id,
            major=major.id,
        )
