"""Instance lifecycle: the process scheduler.

``advance`` is the single entry point for work. It takes the instance lease,
works on a deep copy of the stored instance and saves only when the whole
step sequence succeeds. A failure that puts the instance into Error is saved
on top of the previously stored state, so a half-finished activity switch is
never visible.

Side effects that reach outside the instance (timers, child instances,
terminal events, join watches) are collected while the lease is held and
applied after it is released.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from .audit import InstanceLogger, build_entry
from .directives import Directive, Effect, Scope, rule_for
from .errors import (
    CancellationRequested,
    DefinitionError,
    EngineError,
    ErrorKind,
    FatalRetryExceededError,
    FunctionExecutionError,
    InvalidTransitionError,
    LeaseExpiredError,
    NoMatchingTransitionError,
    NotFoundError,
    PartialJoinTimeoutError,
    PersistenceError,
    StepLimitExceededError,
)
from .events import EventBus, TerminalEvent, Trigger, TriggerKind
from .invoker import FunctionInvoker
from .joins import JoinDecision, JoinTracker
from .leases import Lease, LeaseManager
from .models import (
    MAIN_BRANCH,
    Activity,
    ActivityType,
    Branch,
    BranchState,
    FanOut,
    InstanceError,
    WorkflowDefinition,
    WorkflowFunction,
    WorkflowInstance,
    WorkflowLog,
    utc_now,
    validate_definition,
)
from .router import TransitionRouter
from .state_machine import ADVANCEABLE_STATUSES, TaskStatus, transition
from .system_functions import FunctionContext
from .timers import TimerEntry, TimerScheduler

if TYPE_CHECKING:
    from ..storage import DefinitionStore, InstanceStore

logger = logging.getLogger(__name__)

# Failures that put the instance into Error.
_FAILURES: tuple[type[EngineError], ...] = (
    NoMatchingTransitionError,
    FatalRetryExceededError,
    FunctionExecutionError,
    PartialJoinTimeoutError,
    StepLimitExceededError,
    DefinitionError,
)

# Trigger kinds whose payload is merged into the instance variables.
_DATA_TRIGGERS = frozenset({TriggerKind.START, TriggerKind.USER_ACTION, TriggerKind.EVENT})

# Trigger kinds that only make sense for the activity they were issued for.
_SYSTEM_TRIGGERS = frozenset({TriggerKind.TIMER, TriggerKind.NESTED_COMPLETION})

_ACCEPTED_TRIGGERS: dict[ActivityType, frozenset[TriggerKind]] = {
    ActivityType.TIMER: frozenset({TriggerKind.TIMER, TriggerKind.RETRY}),
    ActivityType.MULTI_INNER_WORKFLOW: frozenset({TriggerKind.NESTED_COMPLETION, TriggerKind.RETRY}),
}


class ResolveAction(str, Enum):
    RETRY = "retry"
    ABORT = "abort"


@dataclass(frozen=True, slots=True)
class AdvanceOutcome:
    """What ``advance`` reports back. Engine errors never escape as exceptions."""

    instance_id: str
    status: TaskStatus | None = None
    current_activity_id: str | None = None
    steps: int = 0
    error_kind: ErrorKind | None = None
    detail: str = ""
    retryable: bool = False
    dropped: bool = False

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def of(cls, instance: WorkflowInstance, **kwargs: Any) -> AdvanceOutcome:
        return cls(
            instance_id=instance.id,
            status=instance.status,
            current_activity_id=instance.current_activity_id,
            **kwargs,
        )

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "instance_id": self.instance_id,
            "status": self.status.value if self.status else None,
            "current_activity_id": self.current_activity_id,
            "steps": self.steps,
        }
        if self.error_kind is not None:
            out["error_kind"] = self.error_kind.value
            out["detail"] = self.detail
            out["retryable"] = self.retryable
        if self.dropped:
            out["dropped"] = True
        return out


@dataclass(frozen=True, slots=True)
class _ChildRequest:
    parent_instance_id: str
    parent_branch_id: str
    parent_activity_id: str
    definition_id: str
    variables: dict[str, Any]


@dataclass
class _Effects:
    instance: WorkflowInstance | None = None
    revoke_timers: bool = False
    forget_joins: bool = False
    timers: list[tuple[str, str, float]] = field(default_factory=list)
    children: list[_ChildRequest] = field(default_factory=list)
    events: list[TerminalEvent] = field(default_factory=list)


class _Cancelled(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class _Restart(Exception):
    pass


class _Control(str, Enum):
    PROCEED = "proceed"
    PARK = "park"
    RERUN_ACTIVITY = "rerun_activity"


@dataclass
class _Run:
    """Mutable state of one advance over the working copy."""

    work: WorkflowInstance
    definition: WorkflowDefinition
    trigger: Trigger
    lease: Lease
    heartbeat: Callable[[], None]
    effects: _Effects = field(default_factory=_Effects)
    logs: list[WorkflowLog] = field(default_factory=list)
    queue: deque[tuple[str, str]] = field(default_factory=deque)
    steps: int = 0
    activity_id: str | None = None
    branch_id: str | None = None
    function_retries: dict[tuple[str, str, str], int] = field(default_factory=dict)
    activity_retries: dict[tuple[str, str], int] = field(default_factory=dict)

    def log(self, operation: str, *, always: bool = False, **kwargs: Any) -> None:
        if always or self.definition.enable_log:
            self.logs.append(build_entry(self.work.id, operation, **kwargs))


class ProcessScheduler:
    def __init__(
        self,
        *,
        definitions: DefinitionStore,
        instances: InstanceStore,
        invoker: FunctionInvoker,
        router: TransitionRouter,
        joins: JoinTracker,
        timers: TimerScheduler,
        leases: LeaseManager,
        audit: InstanceLogger,
        events: EventBus,
        retry_budget: int = 3,
        max_steps: int = 1000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._definitions = definitions
        self._instances = instances
        self._invoker = invoker
        self._router = router
        self._joins = joins
        self._timers = timers
        self._leases = leases
        self._audit = audit
        self._events = events
        self._retry_budget = retry_budget
        self._max_steps = max_steps
        self._clock = clock

        self._lock = threading.Lock()
        self._cancel_requests: set[str] = set()
        self._lease_failures: dict[str, int] = {}

        self._timers.set_delivery(self.handle_timer)
        self._timers.add_tick_hook(self.sweep_join_timeouts)
        self._events.subscribe(self.handle_terminal)

    # Reads

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        instance = self._instances.load_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Instance {instance_id} not found")
        return instance

    def list_logs(self, instance_id: str) -> list[WorkflowLog]:
        self.get_instance(instance_id)
        return self._audit.list(instance_id)

    def _definition(self, definition_id: str) -> WorkflowDefinition:
        definition = self._definitions.get_definition(definition_id)
        if definition is None:
            raise NotFoundError(f"Definition {definition_id} not found")
        problems = validate_definition(definition)
        if problems:
            raise DefinitionError(definition_id, problems)
        return definition

    def _save(self, instance: WorkflowInstance) -> None:
        instance.updated_at = self._clock()
        try:
            self._instances.save_instance(instance)
        except PersistenceError:
            raise
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to save instance {instance.id}: {e}") from e

    # Lifecycle

    def create_instance(
        self,
        definition_id: str,
        *,
        name: str = "",
        starter_id: str | None = None,
        entity_id: str | None = None,
        variables: dict[str, Any] | None = None,
        instance_id: str | None = None,
        parent_instance_id: str | None = None,
        parent_branch_id: str | None = None,
        parent_activity_id: str | None = None,
    ) -> WorkflowInstance:
        definition = self._definition(definition_id)
        start = definition.start_activity()
        instance = WorkflowInstance(
            id=instance_id or uuid.uuid4().hex,
            definition_id=definition.id,
            name=name or definition.name,
            status=TaskStatus.ON_HOLD,
            current_activity_id=start.id,
            starter_id=starter_id,
            entity_id=entity_id,
            variables=dict(variables or {}),
            branches={MAIN_BRANCH: Branch(branch_id=MAIN_BRANCH, activity_id=start.id)},
            parent_instance_id=parent_instance_id,
            parent_branch_id=parent_branch_id,
            parent_activity_id=parent_activity_id,
        )
        self._save(instance)
        if definition.enable_log:
            self._audit.append(
                build_entry(
                    instance.id,
                    "instance_created",
                    activity_id=start.id,
                    details={"definition_id": definition.id, "parent_instance_id": parent_instance_id},
                )
            )
        logger.info(
            "Instance created",
            extra={"instance_id": instance.id, "definition_id": definition.id},
        )
        return instance

    def _mutate(
        self,
        instance_id: str,
        change: Callable[[WorkflowInstance, _Effects], str | None],
    ) -> WorkflowInstance:
        """Apply ``change`` to a copy under the lease and save it.

        ``change`` returns the audit operation name, or None for no change.
        """

        effects = _Effects()
        with self._leases.acquire(instance_id) as lease:
            stored = self.get_instance(instance_id)
            work = stored.model_copy(deep=True)
            operation = change(work, effects)
            if operation is None:
                return stored
            lease.check()
            self._save(work)
            self._audit.append(
                build_entry(
                    work.id,
                    operation,
                    activity_id=work.current_activity_id,
                    details={"status": work.status.value},
                )
            )
        effects.instance = work
        self._apply(effects)
        return work

    def activate(self, instance_id: str) -> WorkflowInstance:
        def change(work: WorkflowInstance, _effects: _Effects) -> str | None:
            if work.status == TaskStatus.ERROR:
                raise InvalidTransitionError(
                    f"Instance {work.id} is in error; use resolve_error to retry it"
                )
            work.status = transition(current=work.status, to=TaskStatus.STARTED, instance_id=work.id)
            if work.started_at is None:
                work.started_at = self._clock()
            return "instance_activated"

        return self._mutate(instance_id, change)

    def start(self, definition_id: str, **kwargs: Any) -> WorkflowInstance:
        instance = self.create_instance(definition_id, **kwargs)
        return self.activate(instance.id)

    def trigger_start(
        self,
        definition_id: str,
        *,
        payload: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> AdvanceOutcome:
        instance = self.start(definition_id, **kwargs)
        return self.advance(instance.id, Trigger(kind=TriggerKind.START, payload=dict(payload or {})))

    def reassign(self, instance_id: str, assignee_id: str) -> WorkflowInstance:
        def change(work: WorkflowInstance, _effects: _Effects) -> str | None:
            work.status = transition(
                current=work.status, to=TaskStatus.RE_ASSIGNED, instance_id=work.id
            )
            work.assignee_id = assignee_id
            return "instance_reassigned"

        return self._mutate(instance_id, change)

    def cancel(self, instance_id: str, reason: str = "") -> WorkflowInstance:
        """Cancel the instance.

        The request is visible to an in-flight advance immediately; it stops
        at its next suspension point. Cancelling a cancelled instance is a
        no-op.
        """

        with self._lock:
            self._cancel_requests.add(instance_id)
        try:

            def change(work: WorkflowInstance, effects: _Effects) -> str | None:
                if work.status == TaskStatus.CANCELLED:
                    return None
                self._mark_cancelled(work, effects, reason or "cancelled by request")
                return "instance_cancelled"

            return self._mutate(instance_id, change)
        finally:
            with self._lock:
                self._cancel_requests.discard(instance_id)

    def resolve_error(self, instance_id: str, action: ResolveAction | str) -> AdvanceOutcome:
        """Leave Error: ``retry`` re-delivers the failed trigger, ``abort`` cancels."""

        action = ResolveAction(action)
        failed: dict[str, Any] = {}

        def change(work: WorkflowInstance, effects: _Effects) -> str | None:
            if work.status != TaskStatus.ERROR:
                raise InvalidTransitionError(
                    f"Instance {work.id} is {work.status.value}, not in error"
                )
            if action == ResolveAction.ABORT:
                self._mark_cancelled(work, effects, "aborted after error")
                return "error_aborted"
            error = work.error
            failed["kind"] = error.kind if error else None
            failed["trigger"] = error.trigger if error else None
            failed["branch_id"] = error.branch_id if error else None
            work.status = transition(current=work.status, to=TaskStatus.STARTED, instance_id=work.id)
            work.error = None
            self._joins.rearm(work)
            # Wake-ups that fired while in error were dropped.
            effects.timers.extend(self._unscheduled_wakeups(work, self._clock()))
            return "error_retried"

        try:
            instance = self._mutate(instance_id, change)
        except EngineError as e:
            return AdvanceOutcome(instance_id=instance_id, error_kind=e.kind, detail=e.detail)

        with self._lock:
            self._lease_failures.pop(instance_id, None)

        if action == ResolveAction.ABORT or failed.get("kind") == ErrorKind.PARTIAL_JOIN_TIMEOUT.value:
            return AdvanceOutcome.of(instance)

        raw = failed.get("trigger")
        if raw:
            trigger = Trigger.from_json(raw)
        else:
            trigger = Trigger(kind=TriggerKind.RETRY, branch_id=failed.get("branch_id") or MAIN_BRANCH)
        return self.advance(instance_id, trigger)

    # Advance

    def advance(self, instance_id: str, trigger: Trigger | None = None) -> AdvanceOutcome:
        return self.advance_reserved(instance_id, self._leases.reserve(instance_id), trigger)

    def advance_reserved(
        self,
        instance_id: str,
        ticket: int,
        trigger: Trigger | None = None,
    ) -> AdvanceOutcome:
        """Run ``advance`` with a lease ticket reserved earlier by the caller."""

        trigger = trigger or Trigger()
        logs: list[WorkflowLog] = []
        try:
            with self._leases.hold(instance_id, ticket) as lease:
                try:
                    outcome, effects = self._advance_locked(instance_id, trigger, lease, logs)
                finally:
                    # Numbered under the lease so audit order follows commit order.
                    self._audit.extend(logs)
        except LeaseExpiredError as e:
            return self._lease_failed(instance_id, trigger, e)
        except PersistenceError as e:
            logger.error(
                "Advance not saved",
                extra={"instance_id": instance_id, "error": e.detail},
            )
            return AdvanceOutcome(
                instance_id=instance_id, error_kind=e.kind, detail=e.detail, retryable=True
            )

        if outcome.ok and not outcome.dropped:
            with self._lock:
                self._lease_failures.pop(instance_id, None)
        self._apply(effects)
        return outcome

    def _advance_locked(
        self,
        instance_id: str,
        trigger: Trigger,
        lease: Lease,
        logs: list[WorkflowLog],
    ) -> tuple[AdvanceOutcome, _Effects]:
        effects = _Effects()
        try:
            stored = self.get_instance(instance_id)
        except NotFoundError as e:
            return AdvanceOutcome(instance_id=instance_id, error_kind=e.kind, detail=e.detail), effects

        if stored.status not in ADVANCEABLE_STATUSES:
            if trigger.kind in _SYSTEM_TRIGGERS:
                logger.info(
                    "Trigger dropped for inactive instance",
                    extra={"instance_id": instance_id, "trigger": trigger.kind.value},
                )
                return AdvanceOutcome.of(stored, dropped=True), effects
            return (
                AdvanceOutcome.of(
                    stored,
                    error_kind=ErrorKind.INVALID_TRANSITION,
                    detail=f"Instance {instance_id} is {stored.status.value}; it cannot advance",
                ),
                effects,
            )

        def heartbeat() -> None:
            self._check_cancel(instance_id)
            lease.renew()

        work = stored.model_copy(deep=True)
        run: _Run | None = None
        try:
            definition = self._definition(stored.definition_id)
            run = _Run(work=work, definition=definition, trigger=trigger, lease=lease, heartbeat=heartbeat)
            dropped = self._begin(run)
            if dropped:
                return AdvanceOutcome.of(stored, dropped=True), effects
            self._drive(run)
        except (NotFoundError, InvalidTransitionError) as e:
            if run is not None:
                logs.extend(run.logs)
            return AdvanceOutcome.of(stored, error_kind=e.kind, detail=e.detail), effects
        except _FAILURES as e:
            if run is not None:
                logs.extend(run.logs)
            return self._fail(stored, e, trigger, lease, logs, run)
        except CancellationRequested:
            if run is not None:
                logs.extend(run.logs)
            cancelled = stored.model_copy(deep=True)
            self._mark_cancelled(cancelled, effects, "cancelled by request")
            lease.check()
            self._save(cancelled)
            effects.instance = cancelled
            logs.append(
                build_entry(cancelled.id, "instance_cancelled", activity_id=stored.current_activity_id)
            )
            return AdvanceOutcome.of(cancelled), effects
        except _Cancelled as c:
            self._mark_cancelled(work, run.effects, c.reason)
            run.effects.timers.clear()
            run.effects.children.clear()
        except _Restart:
            self._reset(run)

        logs.extend(run.logs)
        lease.check()
        self._save(work)
        run.effects.instance = work
        logger.info(
            "Instance advanced",
            extra={
                "instance_id": work.id,
                "status": work.status.value,
                "activity_id": work.current_activity_id,
                "steps": run.steps,
            },
        )
        return AdvanceOutcome.of(work, steps=run.steps), run.effects

    def _check_cancel(self, instance_id: str) -> None:
        with self._lock:
            requested = instance_id in self._cancel_requests
        if requested:
            raise CancellationRequested(instance_id)

    def _begin(self, run: _Run) -> bool:
        """Queue the first step for the addressed branch. Returns True to drop the trigger."""

        trigger, work = run.trigger, run.work
        if work.status == TaskStatus.RE_ASSIGNED:
            work.status = transition(current=work.status, to=TaskStatus.STARTED, instance_id=work.id)

        branch = work.branches.get(trigger.branch_id)
        if branch is None:
            if trigger.kind in _SYSTEM_TRIGGERS:
                return True
            raise NotFoundError(f"Branch {trigger.branch_id} not found on instance {work.id}")
        if trigger.activity_id is not None and trigger.activity_id != branch.activity_id:
            if trigger.kind in _SYSTEM_TRIGGERS:
                logger.info(
                    "Stale trigger dropped",
                    extra={"instance_id": work.id, "branch_id": branch.branch_id, "trigger": trigger.kind.value},
                )
                return True
            raise InvalidTransitionError(
                f"Branch {branch.branch_id} is at {branch.activity_id}, not {trigger.activity_id}"
            )

        activity = self._activity(run, branch.activity_id)
        if branch.state == BranchState.READY:
            if trigger.kind in _SYSTEM_TRIGGERS:
                return True
            mode = "enter"
        elif branch.state == BranchState.WAITING:
            accepted = _ACCEPTED_TRIGGERS.get(activity.activity_type)
            if accepted is None:
                if trigger.kind in _SYSTEM_TRIGGERS:
                    return True
            elif trigger.kind not in accepted:
                if trigger.kind in _SYSTEM_TRIGGERS:
                    return True
                raise InvalidTransitionError(
                    f"Activity {activity.id} ({activity.activity_type.value}) does not accept "
                    f"{trigger.kind.value} triggers"
                )
            mode = "execute"
            if activity.activity_type == ActivityType.AWAIT_PARALLEL:
                # An ignored arrival tries again; a released branch parked by
                # its pre-functions resumes like any other parked activity.
                join = work.joins.get(activity.id)
                if join is not None and branch.branch_id not in join.arrived:
                    mode = "enter"
        else:
            if trigger.kind in _SYSTEM_TRIGGERS:
                return True
            raise InvalidTransitionError(
                f"Branch {branch.branch_id} is {branch.state.value}; it cannot take a trigger"
            )

        if trigger.kind in _DATA_TRIGGERS and trigger.payload:
            work.variables.update(trigger.payload)
        if trigger.kind == TriggerKind.NESTED_COMPLETION:
            self._take_child_result(run, activity)

        run.log(
            "trigger_received",
            activity_id=activity.id,
            details={"trigger": trigger.to_json()},
        )
        run.queue.append((mode, branch.branch_id))
        return False

    def _take_child_result(self, run: _Run, activity: Activity) -> None:
        payload = run.trigger.payload
        status = payload.get("status")
        if status != TaskStatus.COMPLETED.value:
            raise FunctionExecutionError(
                f"Inner workflow {payload.get('child_instance_id')} ended {status}"
            )
        run.work.last_result = payload.get("result")
        target = activity.settings.get("result_variable")
        if target:
            run.work.variables[str(target)] = payload.get("variables")

    def _activity(self, run: _Run, activity_id: str) -> Activity:
        activity = run.definition.activity(activity_id)
        if activity is None:
            raise NotFoundError(f"Activity {activity_id} not found in {run.definition.id}")
        return activity

    def _drive(self, run: _Run) -> None:
        work = run.work
        while run.queue and work.status == TaskStatus.STARTED:
            mode, branch_id = run.queue.popleft()
            branch = work.branches.get(branch_id)
            if branch is None:
                continue
            run.steps += 1
            if run.steps > self._max_steps:
                raise StepLimitExceededError(
                    f"Advance of {work.id} exceeded {self._max_steps} steps"
                )
            run.lease.renew()
            activity = self._activity(run, branch.activity_id)
            run.activity_id, run.branch_id = activity.id, branch_id
            if mode == "enter":
                self._enter(run, branch, activity)
            elif mode == "release":
                self._release(run, branch, activity)
            else:
                self._execute(run, branch, activity)
            main = work.branches.get(MAIN_BRANCH)
            if main is not None:
                work.current_activity_id = main.activity_id

    def _enter(self, run: _Run, branch: Branch, activity: Activity) -> None:
        branch.activity_id = activity.id
        branch.state = BranchState.READY
        branch.wake_at = None
        run.log("activity_entered", activity_id=activity.id, details={"branch_id": branch.branch_id})
        if activity.activity_type == ActivityType.AWAIT_PARALLEL:
            # Pre-functions of a join run once, on the released parent.
            self._arrive(run, branch, activity)
            return

        control = self._run_functions(run, branch, activity, activity.pre_functions)
        if control == _Control.PARK:
            branch.state = BranchState.WAITING
            return
        if control == _Control.RERUN_ACTIVITY:
            self._count_activity_retry(run, branch, activity)
            run.queue.appendleft(("enter", branch.branch_id))
            return

        kind = activity.activity_type
        if kind in (ActivityType.START, ActivityType.SYSTEM, ActivityType.END):
            run.queue.appendleft(("execute", branch.branch_id))
        elif kind == ActivityType.USER:
            branch.state = BranchState.WAITING
        elif kind == ActivityType.TIMER:
            delay = float(activity.pause_duration or 0)
            branch.state = BranchState.WAITING
            branch.wake_at = self._clock() + timedelta(seconds=delay)
            run.effects.timers.append((branch.branch_id, activity.id, delay))
        elif kind == ActivityType.MULTI_INNER_WORKFLOW:
            inner_id = activity.inner_workflow_id or ""
            if self._definitions.get_definition(inner_id) is None:
                raise FunctionExecutionError(
                    f"Inner workflow definition {inner_id!r} of activity {activity.id} not found"
                )
            branch.state = BranchState.WAITING
            run.effects.children.append(
                _ChildRequest(
                    parent_instance_id=run.work.id,
                    parent_branch_id=branch.branch_id,
                    parent_activity_id=activity.id,
                    definition_id=inner_id,
                    variables=dict(run.work.variables)
                    if activity.settings.get("pass_variables", True)
                    else {},
                )
            )

    def _arrive(self, run: _Run, branch: Branch, activity: Activity) -> None:
        work = run.work
        arrival = self._joins.arrive(work, activity.id, branch.branch_id)
        run.log("join_arrival", activity_id=activity.id, details=arrival.to_json())

        if arrival.decision == JoinDecision.RELEASED:
            if arrival.group_id is None or arrival.group_id not in work.fanouts:
                run.queue.appendleft(("release", branch.branch_id))
                return
            group = work.fanouts.pop(arrival.group_id)
            for child_id in group.branch_ids:
                work.branches.pop(child_id, None)
            parent = work.branches[group.parent_branch_id]
            parent.activity_id = activity.id
            parent.state = BranchState.READY
            run.log(
                "join_released",
                activity_id=activity.id,
                details={"group_id": group.group_id, "branch_id": parent.branch_id},
            )
            run.queue.appendleft(("release", parent.branch_id))
        elif arrival.decision == JoinDecision.WAITING:
            branch.state = BranchState.JOINED
        elif arrival.decision == JoinDecision.UNEXPECTED:
            branch.state = BranchState.WAITING

    def _release(self, run: _Run, branch: Branch, activity: Activity) -> None:
        control = self._run_functions(run, branch, activity, activity.pre_functions)
        if control == _Control.PARK:
            branch.state = BranchState.WAITING
            return
        if control == _Control.RERUN_ACTIVITY:
            self._count_activity_retry(run, branch, activity)
            run.queue.appendleft(("release", branch.branch_id))
            return
        run.queue.appendleft(("execute", branch.branch_id))

    def _execute(self, run: _Run, branch: Branch, activity: Activity) -> None:
        control = self._run_functions(run, branch, activity, activity.functions)
        if control == _Control.PROCEED:
            control = self._run_functions(run, branch, activity, activity.after_functions)
        if control == _Control.PARK:
            branch.state = BranchState.WAITING
            return
        if control == _Control.RERUN_ACTIVITY:
            self._count_activity_retry(run, branch, activity)
            run.queue.appendleft(("execute", branch.branch_id))
            return

        if activity.activity_type == ActivityType.END:
            branch.state = BranchState.DONE
            self._finish(run, branch)
            return

        context = {
            **run.work.variables,
            "variables": run.work.variables,
            "last_result": run.work.last_result,
            "trigger": dict(run.trigger.payload),
        }
        decision = self._router.route(activity, run.definition.transitions, context)
        run.log(
            "transition",
            activity_id=activity.id,
            details={"branch_id": branch.branch_id, **decision.to_json()},
        )

        if not decision.fan_out:
            branch.activity_id = decision.targets[0].target_id
            branch.state = BranchState.READY
            run.queue.appendleft(("enter", branch.branch_id))
            return
        self._fork(run, branch, activity, decision.target_ids)

    def _fork(self, run: _Run, branch: Branch, activity: Activity, targets: list[str]) -> None:
        work = run.work
        work.fanout_counter += 1
        group_id = f"g{work.fanout_counter}"
        child_ids: list[str] = []
        n = 0
        for target in targets:
            n += 1
            while f"{branch.branch_id}/{n}" in work.branches:
                n += 1
            child_id = f"{branch.branch_id}/{n}"
            work.branches[child_id] = Branch(
                branch_id=child_id,
                activity_id=target,
                group_id=group_id,
                parent_branch_id=branch.branch_id,
            )
            child_ids.append(child_id)
        work.fanouts[group_id] = FanOut(
            group_id=group_id,
            source_activity_id=activity.id,
            parent_branch_id=branch.branch_id,
            branch_ids=child_ids,
        )
        branch.state = BranchState.FORKED
        run.log(
            "fan_out",
            activity_id=activity.id,
            details={"group_id": group_id, "branches": dict(zip(child_ids, targets, strict=True))},
        )
        for child_id in child_ids:
            run.queue.append(("enter", child_id))

    def _finish(self, run: _Run, branch: Branch) -> None:
        work = run.work
        if branch.group_id is None or branch.group_id not in work.fanouts:
            if branch.branch_id == MAIN_BRANCH:
                self._complete(run, branch)
            return
        group = work.fanouts[branch.group_id]
        if not all(
            work.branches.get(c) is not None and work.branches[c].state == BranchState.DONE
            for c in group.branch_ids
        ):
            return
        del work.fanouts[group.group_id]
        for child_id in group.branch_ids:
            work.branches.pop(child_id, None)
        parent = work.branches[group.parent_branch_id]
        parent.activity_id = branch.activity_id
        parent.state = BranchState.DONE
        self._finish(run, parent)

    def _complete(self, run: _Run, branch: Branch) -> None:
        work = run.work
        work.status = transition(current=work.status, to=TaskStatus.COMPLETED, instance_id=work.id)
        work.current_activity_id = branch.activity_id
        work.completed_at = self._clock()
        work.joins.clear()
        run.effects.revoke_timers = True
        run.effects.forget_joins = True
        run.effects.events.append(
            TerminalEvent(
                instance_id=work.id,
                definition_id=work.definition_id,
                status=TaskStatus.COMPLETED,
                parent_instance_id=work.parent_instance_id,
            )
        )
        run.log("instance_completed", activity_id=branch.activity_id)

    def _run_functions(
        self,
        run: _Run,
        branch: Branch,
        activity: Activity,
        functions: list[WorkflowFunction],
    ) -> _Control:
        work = run.work
        for function in functions:
            self._check_cancel(work.id)
            run.lease.renew()
            while True:
                context = FunctionContext(
                    instance_id=work.id,
                    definition_id=work.definition_id,
                    activity_id=activity.id,
                    branch_id=branch.branch_id,
                    variables=work.variables,
                    trigger=run.trigger,
                    last_result=work.last_result,
                    heartbeat_hook=run.heartbeat,
                )
                invocation = self._invoker.invoke(function, context)
                work.last_result = invocation.result
                run.log(
                    "function_invoked",
                    activity_id=activity.id,
                    function_id=function.id,
                    details={"branch_id": branch.branch_id, **invocation.to_json()},
                    result=invocation.result,
                )
                if invocation.directive != Directive.RERUN_FUNCTION:
                    break
                key = (branch.branch_id, activity.id, function.id)
                run.function_retries[key] = run.function_retries.get(key, 0) + 1
                if run.function_retries[key] > self._retry_budget:
                    raise FatalRetryExceededError(f"function {function.id}", run.function_retries[key])

            rule = rule_for(invocation.directive)
            if rule.effect in (Effect.PROCEED, Effect.SKIP_UNIT):
                continue
            if rule.effect == Effect.PARK:
                run.log(
                    "activity_parked",
                    activity_id=activity.id,
                    function_id=function.id,
                    details={"directive": invocation.directive.value},
                )
                return _Control.PARK
            if rule.effect == Effect.CANCEL:
                raise _Cancelled(
                    invocation.error
                    or f"{invocation.directive.value} from function {function.id}"
                )
            if rule.effect == Effect.RESTART:
                raise _Restart()
            if rule.effect == Effect.RETRY and rule.scope == Scope.ACTIVITY:
                return _Control.RERUN_ACTIVITY
        return _Control.PROCEED

    def _count_activity_retry(self, run: _Run, branch: Branch, activity: Activity) -> None:
        key = (branch.branch_id, activity.id)
        run.activity_retries[key] = run.activity_retries.get(key, 0) + 1
        if run.activity_retries[key] > self._retry_budget:
            raise FatalRetryExceededError(f"activity {activity.id}", run.activity_retries[key])

    def _reset(self, run: _Run) -> None:
        """RestartWorkflow: back to Start, on hold, variables kept."""

        work = run.work
        start = run.definition.start_activity()
        work.status = transition(current=work.status, to=TaskStatus.ON_HOLD, instance_id=work.id)
        work.branches = {MAIN_BRANCH: Branch(branch_id=MAIN_BRANCH, activity_id=start.id)}
        work.fanouts.clear()
        work.joins.clear()
        work.error = None
        work.current_activity_id = start.id
        run.queue.clear()
        run.effects = _Effects(revoke_timers=True, forget_joins=True)
        run.log("instance_restarted", activity_id=start.id)

    def _mark_cancelled(self, work: WorkflowInstance, effects: _Effects, reason: str) -> None:
        if work.status == TaskStatus.RE_ASSIGNED:
            work.status = transition(current=work.status, to=TaskStatus.STARTED, instance_id=work.id)
        work.status = transition(current=work.status, to=TaskStatus.CANCELLED, instance_id=work.id)
        work.current_activity_id = None
        work.completed_at = self._clock()
        work.joins.clear()
        effects.revoke_timers = True
        effects.forget_joins = True
        effects.events.append(
            TerminalEvent(
                instance_id=work.id,
                definition_id=work.definition_id,
                status=TaskStatus.CANCELLED,
                reason="cancelled",
                detail=reason,
                parent_instance_id=work.parent_instance_id,
            )
        )

    # Failure handling

    def _fail(
        self,
        stored: WorkflowInstance,
        error: EngineError,
        trigger: Trigger | None,
        lease: Lease,
        logs: list[WorkflowLog],
        run: _Run | None = None,
    ) -> tuple[AdvanceOutcome, _Effects]:
        failed = stored.model_copy(deep=True)
        effects = _Effects()
        activity_id = run.activity_id if run else stored.current_activity_id
        branch_id = run.branch_id if run else None
        self._mark_error(failed, error, trigger, activity_id, branch_id, effects)
        lease.check()
        self._save(failed)
        effects.instance = failed
        logs.append(
            build_entry(
                failed.id,
                "error",
                activity_id=activity_id,
                details={"kind": error.kind.value, "detail": error.detail, "branch_id": branch_id},
            )
        )
        logger.warning(
            "Instance failed",
            extra={"instance_id": failed.id, "kind": error.kind.value, "detail": error.detail},
        )
        return (
            AdvanceOutcome.of(
                failed,
                steps=run.steps if run else 0,
                error_kind=error.kind,
                detail=error.detail,
                retryable=True,
            ),
            effects,
        )

    def _mark_error(
        self,
        work: WorkflowInstance,
        error: EngineError,
        trigger: Trigger | None,
        activity_id: str | None,
        branch_id: str | None,
        effects: _Effects,
    ) -> None:
        if work.status == TaskStatus.RE_ASSIGNED:
            work.status = transition(current=work.status, to=TaskStatus.STARTED, instance_id=work.id)
        work.status = transition(current=work.status, to=TaskStatus.ERROR, instance_id=work.id)
        work.error = InstanceError(
            kind=error.kind.value,
            detail=error.detail,
            activity_id=activity_id,
            branch_id=branch_id,
            trigger=trigger.to_json() if trigger else None,
            occurred_at=self._clock(),
        )
        effects.events.append(
            TerminalEvent(
                instance_id=work.id,
                definition_id=work.definition_id,
                status=TaskStatus.ERROR,
                reason=error.kind.value,
                detail=error.detail,
                parent_instance_id=work.parent_instance_id,
            )
        )

    def _fail_detached(self, instance_id: str, error: EngineError, trigger: Trigger | None) -> AdvanceOutcome:
        """Put an instance into Error outside of an advance (takes its own lease)."""

        logs: list[WorkflowLog] = []
        try:
            with self._leases.acquire(instance_id) as lease:
                stored = self.get_instance(instance_id)
                if stored.status not in ADVANCEABLE_STATUSES:
                    return AdvanceOutcome.of(stored, error_kind=error.kind, detail=error.detail)
                try:
                    outcome, effects = self._fail(stored, error, trigger, lease, logs)
                finally:
                    self._audit.extend(logs)
        except EngineError as e:
            logger.error(
                "Could not record instance failure",
                extra={"instance_id": instance_id, "error": e.detail},
            )
            return AdvanceOutcome(instance_id=instance_id, error_kind=e.kind, detail=e.detail)
        self._apply(effects)
        return outcome

    def _lease_failed(self, instance_id: str, trigger: Trigger, error: LeaseExpiredError) -> AdvanceOutcome:
        with self._lock:
            count = self._lease_failures.get(instance_id, 0) + 1
            self._lease_failures[instance_id] = count
        logger.warning(
            "Advance lost its lease",
            extra={"instance_id": instance_id, "failures": count, "error": error.detail},
        )
        if count > self._retry_budget:
            with self._lock:
                self._lease_failures.pop(instance_id, None)
            return self._fail_detached(
                instance_id, FatalRetryExceededError(f"lease on {instance_id}", count), trigger
            )
        return AdvanceOutcome(
            instance_id=instance_id, error_kind=error.kind, detail=error.detail, retryable=True
        )

    def sweep_join_timeouts(self, now: datetime | None = None) -> list[AdvanceOutcome]:
        """Fail every instance whose open join outlived the join timeout."""

        outcomes: list[AdvanceOutcome] = []
        for instance_id, activity_id in self._joins.due(now):
            try:
                instance = self.get_instance(instance_id)
            except NotFoundError:
                self._joins.forget(instance_id)
                continue
            state = instance.joins.get(activity_id)
            if instance.status not in ADVANCEABLE_STATUSES or state is None:
                self._joins.sync(instance)
                continue
            if self._joins.deadline(state) > (now or self._clock()):
                self._joins.sync(instance)
                continue
            error = PartialJoinTimeoutError(
                f"Join at {activity_id} received {len(state.arrived)} of "
                f"{len(state.expected)} branches before timing out"
            )
            outcomes.append(self._fail_detached(instance_id, error, None))
        return outcomes

    def recover(self) -> int:
        """Rebuild in-memory timers and join watches from stored instances.

        Timers are kept in memory only; a fresh process calls this once so
        parked Timer branches wake at their stored ``wake_at``. Returns the
        number of timers scheduled.
        """

        now = self._clock()
        scheduled = 0
        for instance in self._instances.list_instances():
            if instance.status not in ADVANCEABLE_STATUSES:
                continue
            self._joins.sync(instance)
            for branch_id, activity_id, delay in self._unscheduled_wakeups(instance, now):
                self._timers.schedule(
                    instance_id=instance.id,
                    branch_id=branch_id,
                    activity_id=activity_id,
                    delay_seconds=delay,
                )
                scheduled += 1
        if scheduled:
            logger.info("Timers recovered", extra={"count": scheduled})
        return scheduled

    def _unscheduled_wakeups(
        self, instance: WorkflowInstance, now: datetime
    ) -> list[tuple[str, str, float]]:
        """Parked Timer branches with no pending timer entry, as (branch, activity, delay)."""

        pending = {(e.branch_id, e.activity_id) for e in self._timers.pending(instance.id)}
        return [
            (b.branch_id, b.activity_id, max(0.0, (b.wake_at - now).total_seconds()))
            for b in instance.branches.values()
            if b.state == BranchState.WAITING
            and b.wake_at is not None
            and (b.branch_id, b.activity_id) not in pending
        ]

    # Post-commit effects and callbacks

    def _apply(self, effects: _Effects) -> None:
        instance = effects.instance
        if instance is not None:
            if effects.revoke_timers:
                self._timers.revoke_instance(instance.id)
            if effects.forget_joins or instance.status not in ADVANCEABLE_STATUSES:
                self._joins.forget(instance.id)
            else:
                self._joins.sync(instance)
            for branch_id, activity_id, delay in effects.timers:
                self._timers.schedule(
                    instance_id=instance.id,
                    branch_id=branch_id,
                    activity_id=activity_id,
                    delay_seconds=delay,
                )
        for request in effects.children:
            self._start_child(request)
        for event in effects.events:
            self._events.emit(event)

    def _start_child(self, request: _ChildRequest) -> None:
        try:
            child = self.start(
                request.definition_id,
                variables=request.variables,
                parent_instance_id=request.parent_instance_id,
                parent_branch_id=request.parent_branch_id,
                parent_activity_id=request.parent_activity_id,
            )
        except EngineError as e:
            logger.error(
                "Inner workflow failed to start",
                extra={"instance_id": request.parent_instance_id, "error": e.detail},
            )
            self._fail_detached(
                request.parent_instance_id,
                FunctionExecutionError(f"Inner workflow {request.definition_id} failed to start: {e.detail}"),
                Trigger(
                    kind=TriggerKind.RETRY,
                    branch_id=request.parent_branch_id,
                    activity_id=request.parent_activity_id,
                ),
            )
            return
        self.advance(child.id, Trigger(kind=TriggerKind.START))

    def handle_timer(self, entry: TimerEntry) -> None:
        self.advance(
            entry.instance_id,
            Trigger(
                kind=TriggerKind.TIMER,
                payload={"timer_id": entry.timer_id},
                branch_id=entry.branch_id,
                activity_id=entry.activity_id,
            ),
        )

    def handle_terminal(self, event: TerminalEvent) -> None:
        """Resume the parent of a finished inner workflow."""

        if event.parent_instance_id is None or event.status == TaskStatus.ERROR:
            return
        try:
            child = self.get_instance(event.instance_id)
        except NotFoundError:
            return
        self.advance(
            event.parent_instance_id,
            Trigger(
                kind=TriggerKind.NESTED_COMPLETION,
                payload={
                    "child_instance_id": child.id,
                    "status": child.status.value,
                    "result": child.last_result,
                    "variables": dict(child.variables),
                },
                branch_id=child.parent_branch_id or MAIN_BRANCH,
                activity_id=child.parent_activity_id,
            ),
        )
