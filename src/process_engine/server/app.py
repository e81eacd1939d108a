"""FastAPI app factory.

Endpoints are read-only wrappers over the process engine, meant for dashboards.
Triggers are delivered through the engine API or the CLI, not over HTTP.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from process_engine import __version__
from process_engine.engine.config import EngineSettings
from process_engine.engine.workflow.engine import ProcessEngine
from process_engine.engine.workflow.errors import NotFoundError
from process_engine.engine.workflow.models import WorkflowInstance
from process_engine.engine.workflow.state_machine import TaskStatus
from process_engine.server.models import (
    ApiBranch,
    ApiInstance,
    ApiInstanceSummary,
    ApiLogEntry,
)

logger = logging.getLogger(__name__)


def _to_api_instance(instance: WorkflowInstance) -> ApiInstance:
    data = instance.model_dump(mode="json", exclude={"branches"})
    data["branches"] = [
        ApiBranch.model_validate(b.model_dump(mode="json")) for b in instance.branches.values()
    ]
    return ApiInstance.model_validate(data)


def create_app(engine: ProcessEngine | None = None) -> FastAPI:
    settings = engine.settings if engine is not None else EngineSettings()
    engine = engine or ProcessEngine.from_settings(settings)

    app = FastAPI(
        title="Process Engine",
        version=__version__,
        description="Read-only REST API over workflow instances and their audit trail.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    def _load(instance_id: str) -> WorkflowInstance:
        try:
            return engine.get_instance(instance_id)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=e.detail) from e

    @app.get("/api/health")
    def health() -> dict[str, object]:
        return {"status": "ok", "version": __version__}

    @app.get("/api/instances", response_model=list[ApiInstanceSummary])
    def list_instances(status: TaskStatus | None = None) -> list[ApiInstanceSummary]:
        instances = engine.list_instances()
        if status is not None:
            instances = [i for i in instances if i.status == status]
        return [ApiInstanceSummary.model_validate(i.model_dump(mode="json")) for i in instances]

    @app.get("/api/instances/{instance_id}", response_model=ApiInstance)
    def get_instance(instance_id: str) -> ApiInstance:
        return _to_api_instance(_load(instance_id))

    @app.get("/api/instances/{instance_id}/logs", response_model=list[ApiLogEntry])
    def list_logs(instance_id: str) -> list[ApiLogEntry]:
        _load(instance_id)
        return [
            ApiLogEntry.model_validate(e.model_dump(mode="json"))
            for e in engine.list_logs(instance_id)
        ]

    return app
