"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from process_engine.engine.config import EngineSettings
from process_engine.engine.storage import InMemoryDefinitionStore, InMemoryInstanceStore
from process_engine.engine.workflow.engine import ProcessEngine
from process_engine.engine.workflow.models import (
    Activity,
    ActivityType,
    FunctionKind,
    Transition,
    TransitionCondition,
    TransitionType,
    WorkflowDefinition,
    WorkflowFunction,
)


class Build:
    """Terse constructors for definitions used across tests."""

    @staticmethod
    def activity(activity_id: str, kind: str = "system", **kwargs: Any) -> Activity:
        return Activity(id=activity_id, name=activity_id, activity_type=ActivityType(kind), **kwargs)

    @staticmethod
    def transition(
        source: str,
        target: str,
        kind: str = "standard",
        *,
        when: tuple[str, str] | tuple[str, str, Any] | None = None,
        expression: str | None = None,
        transition_id: str | None = None,
    ) -> Transition:
        condition = None
        if when is not None:
            prop, op, *rest = when
            value = rest[0] if rest else None
            condition = TransitionCondition(prop_name=prop, operator=op, value=value)
        return Transition(
            id=transition_id or f"{source}->{target}",
            source_id=source,
            target_id=target,
            transition_type=TransitionType(kind),
            condition=condition,
            expression=expression,
        )

    @staticmethod
    def system(name: str, function_id: str | None = None, /, **parameters: Any) -> WorkflowFunction:
        return WorkflowFunction(id=function_id or name, name=name, parameters=parameters)

    @staticmethod
    def user(code: str, function_id: str = "script", **parameters: Any) -> WorkflowFunction:
        return WorkflowFunction(
            id=function_id,
            name=function_id,
            kind=FunctionKind.USER,
            code=code,
            parameters=parameters,
        )

    @staticmethod
    def definition(
        definition_id: str,
        activities: list[Activity],
        transitions: list[Transition],
        **kwargs: Any,
    ) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=definition_id,
            name=definition_id,
            activities=activities,
            transitions=transitions,
            **kwargs,
        )

    @classmethod
    def linear(cls, definition_id: str = "linear", *functions: WorkflowFunction) -> WorkflowDefinition:
        """start -> a -> end, with ``functions`` on ``a``."""

        return cls.definition(
            definition_id,
            [
                cls.activity("start", "start"),
                cls.activity("a", "system", functions=list(functions)),
                cls.activity("end", "end"),
            ],
            [cls.transition("start", "a"), cls.transition("a", "end")],
        )

    @classmethod
    def parallel(cls, definition_id: str = "parallel") -> WorkflowDefinition:
        """start -> fork =(parallel)=> b, c -> join -> end; b and c wait for users."""

        return cls.definition(
            definition_id,
            [
                cls.activity("start", "start"),
                cls.activity("fork", "system"),
                cls.activity("b", "user"),
                cls.activity("c", "user"),
                cls.activity("join", "await_parallel"),
                cls.activity("end", "end"),
            ],
            [
                cls.transition("start", "fork"),
                cls.transition("fork", "b", "parallel"),
                cls.transition("fork", "c", "parallel"),
                cls.transition("b", "join"),
                cls.transition("c", "join"),
                cls.transition("join", "end"),
            ],
        )


@pytest.fixture
def build() -> type[Build]:
    return Build


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    return EngineSettings(
        _env_file=None,
        PROCESS_ENGINE_STATE_PATH=str(tmp_path / "state"),
        PROCESS_ENGINE_DEFINITIONS_PATH=str(tmp_path / "definitions"),
        PROCESS_ENGINE_RETRY_BUDGET=2,
        PROCESS_ENGINE_JOIN_TIMEOUT_SECONDS=60,
        PROCESS_ENGINE_LEASE_TTL_SECONDS=5,
        PROCESS_ENGINE_LEASE_MAX_SECONDS=30,
        PROCESS_ENGINE_MAX_STEPS=50,
        PROCESS_ENGINE_WORKER_THREADS=2,
    )


@pytest.fixture
def definitions() -> InMemoryDefinitionStore:
    return InMemoryDefinitionStore()


@pytest.fixture
def instances() -> InMemoryInstanceStore:
    return InMemoryInstanceStore()


@pytest.fixture
def engine(
    settings: EngineSettings,
    definitions: InMemoryDefinitionStore,
    instances: InMemoryInstanceStore,
) -> Iterator[ProcessEngine]:
    eng = ProcessEngine(definitions=definitions, instances=instances, settings=settings)
    yield eng
    eng.stop()
