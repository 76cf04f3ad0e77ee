"""FastAPI app entrypoint for change-orchestrator."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from change_orchestrator.config import Settings, configure_logging, get_settings
from change_orchestrator.errors import OrchestratorError
from change_orchestrator.service import OrchestratorService, build_service
from change_orchestrator.storage.base import OrchestratorStorage
from change_orchestrator.storage.models import (
    AuditEvent,
    ExecutionRecord,
    PlanRecord,
    TaskRecord,
    ToolInvocationRecord,
)
from change_orchestrator.storage.postgres import PostgresOrchestratorStorage


class CreateTaskRequest(BaseModel):
    intent: str = Field(min_length=1)
    submitter_id: str = Field(min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)
    client_request_id: str | None = None


class ApprovalRequest(BaseModel):
    approver_id: str = Field(min_length=1)
    decision: Literal["approve", "reject", "modify"] = "approve"
    notes: str = ""
    overrides: dict[str, Any] = Field(default_factory=dict)


class ControlRequest(BaseModel):
    actor: str = Field(min_length=1)


class PromoteRequest(BaseModel):
    approver_id: str = Field(min_length=1)
    notes: str = ""


class TraceResponse(BaseModel):
    task_id: str
    events: list[AuditEvent]


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: OrchestratorStorage | None,
    service_override: OrchestratorService | None,
) -> None:
    if not hasattr(app.state, "service"):
        if service_override is not None:
            app.state.service = service_override
        else:
            database_url = settings.resolved_database_url()
            if storage_override is None and not database_url:
                raise RuntimeError(
                    "Missing database URL. Set CHANGE_ORCHESTRATOR_DATABASE_URL "
                    "or ORCHESTRATOR_DATABASE_URL before starting the app."
                )
            storage = storage_override or PostgresOrchestratorStorage(database_url)
            storage.migrate()
            app.state.service = build_service(settings, storage=storage)

    if not hasattr(app.state, "settings"):
        app.state.settings = settings


def create_app(
    *,
    storage: OrchestratorStorage | None = None,
    settings_override: Settings | None = None,
    service: OrchestratorService | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    configure_logging(settings.log_level)
    injected = storage is not None or service is not None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            service_override=service,
        )
        yield

    app = FastAPI(title=settings.app_name, lifespan=None if injected else lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if injected:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            service_override=service,
        )

    def _get_service(request: Request) -> OrchestratorService:
        if not hasattr(request.app.state, "service"):
            _ensure_runtime_state(
                request.app,
                settings=settings,
                storage_override=storage,
                service_override=service,
            )
        return request.app.state.service

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error(request: Request, exc: OrchestratorError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/tools")
    def tools(request: Request) -> dict[str, list[dict[str, Any]]]:
        registry = _get_service(request).planning.capabilities
        return {"tools": [registry[name].describe() for name in sorted(registry)]}

    @app.get("/agents")
    def agents(request: Request) -> dict[str, list[dict[str, Any]]]:
        return {"agents": _get_service(request).planning.agents.describe()}

    @app.post("/tasks", response_model=TaskRecord)
    def create_task(payload: CreateTaskRequest, request: Request) -> TaskRecord:
        return _get_service(request).submit(
            payload.intent,
            submitter_id=payload.submitter_id,
            context=payload.context,
            client_request_id=payload.client_request_id,
        )

    @app.get("/tasks", response_model=list[TaskRecord])
    def list_tasks(request: Request, status: str | None = None) -> list[TaskRecord]:
        return _get_service(request).list_tasks(status=status)

    @app.get("/tasks/{task_id}", response_model=TaskRecord)
    def get_task(task_id: str, request: Request) -> TaskRecord:
        return _get_service(request).get_task(task_id)

    @app.get("/tasks/{task_id}/plan", response_model=PlanRecord)
    def get_plan(task_id: str, request: Request) -> PlanRecord:
        return _get_service(request).get_plan(task_id)

    @app.get("/tasks/{task_id}/plans", response_model=list[PlanRecord])
    def list_plans(task_id: str, request: Request) -> list[PlanRecord]:
        return _get_service(request).list_plans(task_id)

    @app.get("/tasks/{task_id}/invocations", response_model=list[ToolInvocationRecord])
    def list_invocations(task_id: str, request: Request) -> list[ToolInvocationRecord]:
        return _get_service(request).list_tool_invocations(task_id)

    @app.get("/tasks/{task_id}/trace", response_model=TraceResponse)
    def get_trace(task_id: str, request: Request) -> TraceResponse:
        return TraceResponse(task_id=task_id, events=_get_service(request).trace(task_id))

    @app.post("/tasks/{task_id}/approvals", response_model=TaskRecord)
    def approve_task(task_id: str, payload: ApprovalRequest, request: Request) -> TaskRecord:
        return _get_service(request).approve(
            task_id,
            approver_id=payload.approver_id,
            decision=payload.decision,
            notes=payload.notes,
            overrides=payload.overrides,
        )

    @app.get("/executions/{execution_id}", response_model=ExecutionRecord)
    def get_execution(execution_id: str, request: Request) -> ExecutionRecord:
        return _get_service(request).get_execution(execution_id)

    @app.post("/executions/{execution_id}/pause", response_model=ExecutionRecord)
    def pause_execution(execution_id: str, payload: ControlRequest, request: Request) -> ExecutionRecord:
        return _get_service(request).pause(execution_id, actor=payload.actor)

    @app.post("/executions/{execution_id}/resume", response_model=ExecutionRecord)
    def resume_execution(execution_id: str, payload: ControlRequest, request: Request) -> ExecutionRecord:
        return _get_service(request).resume(execution_id, actor=payload.actor)

    @app.post("/executions/{execution_id}/cancel", response_model=ExecutionRecord)
    def cancel_execution(execution_id: str, payload: ControlRequest, request: Request) -> ExecutionRecord:
        return _get_service(request).cancel(execution_id, actor=payload.actor)

    @app.post("/executions/{execution_id}/promote", response_model=ExecutionRecord)
    def promote_execution(execution_id: str, payload: PromoteRequest, request: Request) -> ExecutionRecord:
        return _get_service(request).promote(
            execution_id,
            approver_id=payload.approver_id,
            notes=payload.notes,
        )

    @app.post("/timers/tick")
    def tick(request: Request) -> dict[str, list[str]]:
        return _get_service(request).tick()

    return app


app = create_app()
