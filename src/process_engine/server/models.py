"""Pydantic models for the observer API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ApiInstanceSummary(BaseModel):
    id: str
    definition_id: str
    name: str
    status: str
    current_activity_id: str | None = None
    created_at: datetime
    updated_at: datetime


class ApiBranch(BaseModel):
    branch_id: str
    activity_id: str
    state: str
    group_id: str | None = None


class ApiInstanceError(BaseModel):
    kind: str
    detail: str
    activity_id: str | None = None
    branch_id: str | None = None
    occurred_at: datetime


class ApiInstance(ApiInstanceSummary):
    starter_id: str | None = None
    entity_id: str | None = None
    assignee_id: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    branches: list[ApiBranch] = Field(default_factory=list)
    error: ApiInstanceError | None = None
    parent_instance_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ApiLogEntry(BaseModel):
    id: str
    sequence: int
    activity_id: str | None = None
    function_id: str | None = None
    operation: str
    details: dict[str, Any] = Field(default_factory=dict)
    result: str | None = None
    created_at: datetime
