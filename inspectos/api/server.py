"""
InspectOS HTTP API — FastAPI application over the scheduling and lifecycle core.

Authentication is handled upstream; the caller's user id arrives in the
``X-User-Id`` header and is stamped on run logs, tasks and hazards.

Run:
    inspectos serve
or:
    uvicorn --factory inspectos.api.server:create_app --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Body, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from inspectos.api.schemas import (
    AdhocTaskRequest,
    GenerationRequest,
    HazardRejectRequest,
    HazardTransitionRequest,
    ScheduleConfigUpdate,
    SubmitResultsRequest,
)
from inspectos.db.base import engine_registry
from inspectos.db.query import Page
from inspectos.db.session import CORE_ENGINE, get_session_factory, init_db_from_config
from inspectos.engine.config import PlatformConfig, get_platform_config
from inspectos.engine.context import ExecutionContext
from inspectos.engine.errors import ConflictError, InspectOSError, NotFoundError, ValidationError
from inspectos.engine.logging import get_log_queue, init_logging_from_config, shutdown_logging
from inspectos.lifecycle.hazards import HazardLifecycleManager
from inspectos.lifecycle.tasks import TaskLifecycleManager
from inspectos.scheduling.config_store import ScheduleConfigStore
from inspectos.scheduling.generator import GenerationEngine
from inspectos.scheduling.run_log import RunLogRecorder

logger = logging.getLogger("inspectos.api.server")


@dataclass
class Services:
    config_store: ScheduleConfigStore
    run_log: RunLogRecorder
    generator: GenerationEngine
    tasks: TaskLifecycleManager
    hazards: HazardLifecycleManager


def build_services(session_factory: sessionmaker, config: PlatformConfig) -> Services:
    run_log = RunLogRecorder(session_factory)
    return Services(
        config_store=ScheduleConfigStore(session_factory, defaults=config.schedule),
        run_log=run_log,
        generator=GenerationEngine(session_factory, run_log=run_log,
                                   max_workers=config.schedule.max_workers),
        tasks=TaskLifecycleManager(session_factory),
        hazards=HazardLifecycleManager(session_factory),
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_services(request: Request) -> Services:
    return request.app.state.services


def get_caller(x_user_id: Optional[int] = Header(None)) -> ExecutionContext:
    """Caller identity from the X-User-Id header (anonymous when absent)."""
    return ExecutionContext(user_id=x_user_id)


def status_for(error: InspectOSError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ConflictError):
        return 409
    return 500


def page_response(request: Request, page: Page) -> Union[Dict[str, Any], List[Any]]:
    """Plain list without ``page``; otherwise {count, next, previous, results}."""
    if page.page is None:
        return page.items
    next_url = (
        str(request.url.include_query_params(page=page.page + 1)) if page.has_next else None
    )
    previous_url = (
        str(request.url.include_query_params(page=page.page - 1)) if page.has_previous else None
    )
    return {"count": page.count, "next": next_url, "previous": previous_url, "results": page.items}


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

router = APIRouter(prefix="/api")


@router.get("/schedule-config/")
def get_schedule_config(services: Services = Depends(get_services)):
    return services.config_store.load().to_dict()


@router.patch("/schedule-config/")
def update_schedule_config(
    payload: ScheduleConfigUpdate,
    services: Services = Depends(get_services),
    caller: ExecutionContext = Depends(get_caller),
):
    settings = services.config_store.replace(
        enabled=payload.enabled,
        run_time=payload.run_time,
        updated_by=caller.user_id,
    )
    return settings.to_dict()


@router.get("/schedule-run-logs/")
def list_run_logs(
    limit: Optional[int] = Query(None, ge=0),
    services: Services = Depends(get_services),
):
    return services.run_log.list(limit=limit)


@router.post("/schedule-runs/", status_code=201)
def run_generation(
    payload: GenerationRequest,
    services: Services = Depends(get_services),
    caller: ExecutionContext = Depends(get_caller),
):
    result = services.generator.generate(
        payload.template_ids,
        payload.assignee_ids,
        payload.start_date,
        payload.end_date,
        triggered_by=caller.user_id,
    )
    run_log = services.run_log.get(result.run_log_id)
    run_log["outcomes"] = [o.to_dict() for o in result.outcomes]
    return run_log


@router.get("/tasks/")
def list_tasks(
    request: Request,
    task_type: Optional[str] = None,
    status: Optional[str] = None,
    assignee: Optional[int] = None,
    area: Optional[int] = None,
    is_emergency: Optional[bool] = None,
    due_from: Optional[date] = None,
    due_to: Optional[date] = None,
    overdue: Optional[bool] = None,
    page: Optional[int] = Query(None, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    services: Services = Depends(get_services),
):
    result = services.tasks.list_tasks(
        task_type=task_type, status=status, assignee_id=assignee, area_id=area,
        is_emergency=is_emergency, due_from=due_from, due_to=due_to, overdue=overdue,
        page=page, page_size=page_size,
    )
    return page_response(request, result)


@router.post("/tasks/create-adhoc/", status_code=201)
def create_adhoc_task(
    payload: AdhocTaskRequest,
    services: Services = Depends(get_services),
    caller: ExecutionContext = Depends(get_caller),
):
    return services.tasks.create_adhoc_task(
        title=payload.title,
        area_id=payload.area_id,
        assignee_id=payload.assignee_id,
        due_date=payload.due_date,
        template_id=payload.template_id,
        is_emergency=payload.is_emergency,
        custom_check_items=payload.custom_check_items,
        planned_date=payload.planned_date,
        created_by=caller.user_id,
    )


@router.get("/tasks/{task_id}/")
def get_task(task_id: int, services: Services = Depends(get_services)):
    return services.tasks.get_task(task_id)


@router.post("/tasks/{task_id}/submit-results/")
def submit_results(
    task_id: int,
    payload: SubmitResultsRequest,
    services: Services = Depends(get_services),
    caller: ExecutionContext = Depends(get_caller),
):
    records = [r.model_dump() for r in payload.records]
    return services.tasks.submit_results(task_id, records, actor_id=caller.user_id)


@router.get("/hazards/")
def list_hazards(
    request: Request,
    status: Optional[str] = None,
    level: Optional[str] = None,
    area: Optional[int] = None,
    responsible: Optional[int] = None,
    department: Optional[str] = None,
    task: Optional[int] = None,
    keyword: Optional[str] = None,
    due_from: Optional[date] = None,
    due_to: Optional[date] = None,
    page: Optional[int] = Query(None, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    services: Services = Depends(get_services),
):
    result = services.hazards.list_hazards(
        status=status, level=level, area_id=area, responsible_id=responsible,
        department=department, task_id=task, keyword=keyword,
        due_from=due_from, due_to=due_to, page=page, page_size=page_size,
    )
    return page_response(request, result)


@router.get("/hazards/{hazard_id}/")
def get_hazard(hazard_id: int, services: Services = Depends(get_services)):
    return services.hazards.get_hazard(hazard_id)


@router.patch("/hazards/{hazard_id}/")
def update_hazard(
    hazard_id: int,
    changes: Dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
    caller: ExecutionContext = Depends(get_caller),
):
    return services.hazards.update_remediation(hazard_id, changes, actor_id=caller.user_id)


@router.post("/hazards/{hazard_id}/transition-status/")
def transition_hazard(
    hazard_id: int,
    payload: HazardTransitionRequest,
    services: Services = Depends(get_services),
    caller: ExecutionContext = Depends(get_caller),
):
    return services.hazards.transition_status(hazard_id, payload.status, actor_id=caller.user_id)


@router.post("/hazards/{hazard_id}/reject/")
def reject_hazard(
    hazard_id: int,
    payload: HazardRejectRequest,
    services: Services = Depends(get_services),
    caller: ExecutionContext = Depends(get_caller),
):
    return services.hazards.reject(hazard_id, payload.comment, actor_id=caller.user_id)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(session_factory: Optional[sessionmaker] = None,
               config: Optional[PlatformConfig] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Uses the initialised core database, opening it from ``config.database``
    when nothing has yet. The event log is started for the app's lifetime
    unless the process already runs one (``inspectos serve``).
    """
    config = config or get_platform_config()
    if session_factory is None:
        try:
            session_factory = get_session_factory()
        except RuntimeError:
            session_factory = init_db_from_config(config.database)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_event_log = get_log_queue() is None
        if owns_event_log:
            init_logging_from_config(config.logging)
        try:
            yield
        finally:
            if owns_event_log:
                shutdown_logging()

    app = FastAPI(
        title=f"{config.name} API",
        description="Recurring inspection scheduling, task and hazard lifecycle",
        version=config.version,
        lifespan=lifespan,
    )
    app.state.services = build_services(session_factory, config)

    @app.exception_handler(InspectOSError)
    async def handle_inspectos_error(request: Request, exc: InspectOSError):
        status_code = status_for(exc)
        if status_code == 500:
            logger.error(f"{request.method} {request.url.path}: {exc!r}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg', '')}"
            for e in exc.errors()
        ]
        error = ValidationError("Invalid request", validation_errors=errors)
        return JSONResponse(status_code=400, content=error.to_dict())

    @app.get("/health")
    def health_check():
        database = engine_registry.health_check(CORE_ENGINE)
        return {
            "status": "healthy" if database else "degraded",
            "version": config.version,
            "database": database,
        }

    app.include_router(router)
    return app
