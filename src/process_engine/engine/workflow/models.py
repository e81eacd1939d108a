"""Definition, instance and audit records.

Definitions are produced by an external designer and are read-only here.
Instances and log entries are the engine's persisted state.
"""

from __future__ import annotations

from collections import deque
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .state_machine import TaskStatus


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class ActivityType(str, Enum):
    SYSTEM = "system"
    USER = "user"
    TIMER = "timer"
    START = "start"
    END = "end"
    MULTI_INNER_WORKFLOW = "multi_inner_workflow"
    AWAIT_PARALLEL = "await_parallel"


class TransitionType(str, Enum):
    STANDARD = "standard"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"


class FunctionKind(str, Enum):
    SYSTEM = "system"
    USER = "user"


class OperationType(str, Enum):
    SET_PROPERTIES = "set_properties"
    RUN_SCRIPT = "run_script"
    CALL_SYSTEM = "call_system"


class ConditionOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GE = "ge"
    LT = "lt"
    LE = "le"
    CONTAINS = "contains"
    IN = "in"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class TransitionCondition(BaseModel):
    """Compare one context property against a literal value."""

    prop_name: str
    operator: ConditionOperator = ConditionOperator.EQ
    value: Any = None


class Operation(BaseModel):
    id: str | None = None
    title: str = ""
    operation_type: OperationType
    properties: dict[str, Any] = Field(default_factory=dict)
    script: str | None = None
    handler: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class WorkflowFunction(BaseModel):
    id: str
    name: str
    kind: FunctionKind = FunctionKind.SYSTEM
    parameters: dict[str, Any] = Field(default_factory=dict)
    code: str | None = None
    operations: list[Operation] = Field(default_factory=list)


class Activity(BaseModel):
    id: str
    name: str = ""
    activity_type: ActivityType
    pre_functions: list[WorkflowFunction] = Field(default_factory=list)
    functions: list[WorkflowFunction] = Field(default_factory=list)
    after_functions: list[WorkflowFunction] = Field(default_factory=list)
    pause_duration: float | None = Field(default=None, description="Timer delay in seconds")
    inner_workflow_id: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)


class Transition(BaseModel):
    id: str
    source_id: str
    target_id: str
    transition_type: TransitionType = TransitionType.STANDARD
    condition: TransitionCondition | None = None
    expression: str | None = None
    route: str | None = None
    order: int | None = Field(
        default=None,
        description="Explicit declaration order; list position is used when absent.",
    )

    @property
    def has_condition(self) -> bool:
        return self.condition is not None or bool(self.expression and self.expression.strip())


class WorkflowDefinition(BaseModel):
    id: str
    name: str = ""
    activities: list[Activity] = Field(default_factory=list)
    transitions: list[Transition] = Field(default_factory=list)
    enable_log: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)

    def activity(self, activity_id: str) -> Activity | None:
        for activity in self.activities:
            if activity.id == activity_id:
                return activity
        return None

    def start_activity(self) -> Activity:
        for activity in self.activities:
            if activity.activity_type == ActivityType.START:
                return activity
        raise LookupError(f"Definition {self.id!r} has no start activity")


def validate_definition(definition: WorkflowDefinition) -> list[str]:
    """Return every structural problem found in the definition (empty when valid)."""

    problems: list[str] = []
    ids = [a.id for a in definition.activities]
    known = set(ids)

    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        problems.append(f"duplicate activity ids: {duplicates}")

    transition_ids = [t.id for t in definition.transitions]
    duplicate_transitions = sorted({i for i in transition_ids if transition_ids.count(i) > 1})
    if duplicate_transitions:
        problems.append(f"duplicate transition ids: {duplicate_transitions}")

    starts = [a for a in definition.activities if a.activity_type == ActivityType.START]
    ends = [a for a in definition.activities if a.activity_type == ActivityType.END]
    if len(starts) != 1:
        problems.append(f"expected exactly one start activity, found {len(starts)}")
    if not ends:
        problems.append("expected at least one end activity")

    for activity in definition.activities:
        if activity.activity_type == ActivityType.TIMER and (
            activity.pause_duration is None or activity.pause_duration < 0
        ):
            problems.append(f"timer activity {activity.id!r} needs a non-negative pause_duration")
        if (
            activity.activity_type == ActivityType.MULTI_INNER_WORKFLOW
            and not activity.inner_workflow_id
        ):
            problems.append(f"activity {activity.id!r} needs inner_workflow_id")

    adjacency: dict[str, list[str]] = {i: [] for i in known}
    for t in definition.transitions:
        if t.source_id not in known:
            problems.append(f"transition {t.id!r} has unknown source {t.source_id!r}")
        if t.target_id not in known:
            problems.append(f"transition {t.id!r} has unknown target {t.target_id!r}")
        if t.source_id in known and t.target_id in known:
            adjacency[t.source_id].append(t.target_id)

    if len(starts) == 1:
        seen = {starts[0].id}
        queue = deque([starts[0].id])
        while queue:
            for nxt in adjacency.get(queue.popleft(), []):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        unreachable = [i for i in ids if i not in seen]
        if unreachable:
            problems.append(f"activities unreachable from start: {unreachable}")

    return problems


class BranchState(str, Enum):
    READY = "ready"
    WAITING = "waiting"
    FORKED = "forked"
    JOINED = "joined"
    DONE = "done"


MAIN_BRANCH = "main"


class Branch(BaseModel):
    branch_id: str
    activity_id: str
    state: BranchState = BranchState.READY
    group_id: str | None = None
    parent_branch_id: str | None = None
    wake_at: datetime | None = None


class FanOut(BaseModel):
    group_id: str
    source_activity_id: str
    parent_branch_id: str
    branch_ids: list[str]
    created_at: datetime = Field(default_factory=utc_now)


class JoinState(BaseModel):
    activity_id: str
    group_id: str | None = None
    expected: list[str]
    arrived: list[str] = Field(default_factory=list)
    opened_at: datetime = Field(default_factory=utc_now)


class InstanceError(BaseModel):
    kind: str
    detail: str
    activity_id: str | None = None
    branch_id: str | None = None
    trigger: dict[str, Any] | None = None
    occurred_at: datetime = Field(default_factory=utc_now)


class WorkflowInstance(BaseModel):
    id: str
    definition_id: str
    name: str = ""
    status: TaskStatus = TaskStatus.ON_HOLD
    current_activity_id: str | None = None
    starter_id: str | None = None
    entity_id: str | None = None
    assignee_id: str | None = None

    variables: dict[str, Any] = Field(default_factory=dict)
    last_result: Any = None

    branches: dict[str, Branch] = Field(default_factory=dict)
    fanouts: dict[str, FanOut] = Field(default_factory=dict)
    joins: dict[str, JoinState] = Field(default_factory=dict)
    fanout_counter: int = 0

    error: InstanceError | None = None

    parent_instance_id: str | None = None
    parent_branch_id: str | None = None
    parent_activity_id: str | None = None

    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None


class WorkflowLog(BaseModel):
    """One audit entry. Frozen: entries are never edited once written."""

    model_config = ConfigDict(frozen=True)

    id: str
    sequence: int = 0
    instance_id: str
    activity_id: str | None = None
    function_id: str | None = None
    operation: str
    details: dict[str, Any] = Field(default_factory=dict)
    result: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
