"""Unit tests for the process scheduler lifecycle."""

from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest

from process_engine.engine.storage import JsonInstanceStore
from process_engine.engine.workflow.directives import Directive
from process_engine.engine.workflow.errors import ErrorKind, InvalidTransitionError, PersistenceError
from process_engine.engine.workflow.engine import ProcessEngine
from process_engine.engine.workflow.events import TerminalEvent, Trigger, TriggerKind
from process_engine.engine.workflow.leases import LeaseManager
from process_engine.engine.workflow.models import MAIN_BRANCH, BranchState, WorkflowFunction, utc_now
from process_engine.engine.workflow.state_machine import TaskStatus
from process_engine.engine.workflow.system_functions import FunctionOutcome


def _operations(engine, instance_id: str) -> list[str]:
    return [e.operation for e in engine.list_logs(instance_id)]


def test_start_activates_instance_at_start(engine, definitions, build) -> None:
    definitions.add(build.linear())

    instance = engine.start("linear", starter_id="u1")

    assert instance.status == TaskStatus.STARTED
    assert instance.current_activity_id == "start"
    assert instance.starter_id == "u1"
    assert instance.started_at is not None
    assert instance.branches[MAIN_BRANCH].state == BranchState.READY


def test_start_a_end_completes_in_one_advance(engine, definitions, build) -> None:
    definitions.add(build.linear("linear", build.system("increment", name="count")))
    instance = engine.start("linear")

    outcome = engine.advance(instance.id, Trigger(kind=TriggerKind.START))

    assert outcome.ok
    assert outcome.status == TaskStatus.COMPLETED
    assert outcome.current_activity_id == "end"
    stored = engine.get_instance(instance.id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.current_activity_id == "end"
    assert stored.variables["count"] == 1
    assert stored.completed_at is not None

    ops = _operations(engine, instance.id)
    assert ops.count("function_invoked") == 1
    assert ops.count("transition") == 2
    assert ops[-1] == "instance_completed"
    sequences = [e.sequence for e in engine.list_logs(instance.id)]
    assert sequences == sorted(sequences)
    assert len(set(sequences)) == len(sequences)


def test_trigger_start_merges_payload_into_variables(engine, definitions, build) -> None:
    definitions.add(build.linear())

    outcome = engine.trigger_start("linear", payload={"order_id": 7})

    assert outcome.status == TaskStatus.COMPLETED
    assert engine.get_instance(outcome.instance_id).variables == {"order_id": 7}


def test_disabled_log_skips_function_and_transition_entries(engine, definitions, build) -> None:
    definition = build.linear("quiet", build.system("noop")).model_copy(update={"enable_log": False})
    definitions.add(definition)

    outcome = engine.trigger_start("quiet")

    ops = _operations(engine, outcome.instance_id)
    assert outcome.status == TaskStatus.COMPLETED
    assert "function_invoked" not in ops
    assert "transition" not in ops


def test_user_activity_waits_for_trigger(engine, definitions, build) -> None:
    definitions.add(
        build.definition(
            "approval",
            [
                build.activity("start", "start"),
                build.activity("review", "user"),
                build.activity("approved", "system"),
                build.activity("rejected", "system"),
                build.activity("end", "end"),
            ],
            [
                build.transition("start", "review"),
                build.transition("review", "approved", when=("approved", "eq", True)),
                build.transition("review", "rejected"),
                build.transition("approved", "end"),
                build.transition("rejected", "end"),
            ],
        )
    )

    outcome = engine.trigger_start("approval")
    assert outcome.status == TaskStatus.STARTED
    assert outcome.current_activity_id == "review"

    done = engine.advance(outcome.instance_id, Trigger(payload={"approved": "true"}))

    assert done.status == TaskStatus.COMPLETED
    transitions = [
        e.details for e in engine.list_logs(outcome.instance_id) if e.operation == "transition"
    ]
    assert any(t["targets"][0]["target_id"] == "approved" for t in transitions)


@pytest.mark.parametrize("order", [("main/1", "main/2"), ("main/2", "main/1")])
def test_parallel_branches_join_once_after_last_arrival(engine, definitions, build, order) -> None:
    definitions.add(build.parallel())
    started = engine.trigger_start("parallel")
    instance = engine.get_instance(started.instance_id)

    assert instance.branches[MAIN_BRANCH].state == BranchState.FORKED
    assert {b: instance.branches[b].activity_id for b in ("main/1", "main/2")} == {
        "main/1": "b",
        "main/2": "c",
    }

    first = engine.advance(instance.id, Trigger(branch_id=order[0]))
    assert first.status == TaskStatus.STARTED
    waiting = engine.get_instance(instance.id)
    assert waiting.joins["join"].arrived == [order[0]]
    assert waiting.branches[order[0]].state == BranchState.JOINED

    second = engine.advance(instance.id, Trigger(branch_id=order[1]))

    assert second.status == TaskStatus.COMPLETED
    done = engine.get_instance(instance.id)
    assert list(done.branches) == [MAIN_BRANCH]
    assert done.fanouts == {}
    assert done.joins == {}
    assert _operations(engine, instance.id).count("join_released") == 1


def test_joined_branch_rejects_repeated_trigger(engine, definitions, build) -> None:
    definitions.add(build.parallel())
    started = engine.trigger_start("parallel")
    engine.advance(started.instance_id, Trigger(branch_id="main/1"))

    again = engine.advance(started.instance_id, Trigger(branch_id="main/1"))

    assert again.error_kind == ErrorKind.INVALID_TRANSITION
    stored = engine.get_instance(started.instance_id)
    assert stored.status == TaskStatus.STARTED
    assert stored.joins["join"].arrived == ["main/1"]


def test_rerun_operation_exhausts_budget_and_sets_error(engine, definitions, build) -> None:
    calls: list[int] = []

    def flaky(_ctx):
        calls.append(1)
        return FunctionOutcome(directive=Directive.RERUN_OPERATION)

    engine.registry.add("flaky", flaky)
    definitions.add(build.linear("retry", build.system("flaky")))
    instance = engine.start("retry")

    outcome = engine.advance(instance.id, Trigger(kind=TriggerKind.START))

    # Budget is 2: one attempt plus two re-runs, then failure.
    assert len(calls) == 3
    assert outcome.error_kind == ErrorKind.FATAL_RETRY_EXCEEDED
    assert outcome.retryable
    stored = engine.get_instance(instance.id)
    assert stored.status == TaskStatus.ERROR
    assert stored.error is not None
    assert stored.error.kind == ErrorKind.FATAL_RETRY_EXCEEDED.value
    assert stored.error.activity_id == "a"
    # The failed advance never became visible: the cursor is still at start.
    assert stored.current_activity_id == "start"
    assert "error" in _operations(engine, instance.id)


def test_rerun_function_is_bounded_by_budget(engine, definitions, build) -> None:
    calls: list[int] = []

    def again(_ctx):
        calls.append(1)
        return Directive.RERUN_FUNCTION

    engine.registry.add("again", again)
    definitions.add(build.linear("rerun-fn", build.system("again")))

    outcome = engine.trigger_start("rerun-fn")

    assert len(calls) == 3
    assert outcome.error_kind == ErrorKind.FATAL_RETRY_EXCEEDED


def test_error_log_is_written_even_when_logging_disabled(engine, definitions, build) -> None:
    definition = build.linear("quiet-fail", build.system("missing_function"))
    definitions.add(definition.model_copy(update={"enable_log": False}))

    outcome = engine.trigger_start("quiet-fail")

    assert outcome.error_kind == ErrorKind.FUNCTION_EXECUTION_ERROR
    assert "error" in _operations(engine, outcome.instance_id)


def test_restart_workflow_resets_to_start_on_hold(engine, definitions, build) -> None:
    definitions.add(
        build.linear(
            "restart",
            build.system("increment", name="count"),
            build.system("emit_directive", directive="restart_workflow"),
        )
    )

    outcome = engine.trigger_start("restart")

    assert outcome.status == TaskStatus.ON_HOLD
    assert outcome.current_activity_id == "start"
    stored = engine.get_instance(outcome.instance_id)
    assert list(stored.branches) == [MAIN_BRANCH]
    assert stored.branches[MAIN_BRANCH].state == BranchState.READY
    assert stored.variables["count"] == 1

    # On hold instances need activation before they run again.
    blocked = engine.advance(stored.id, Trigger(kind=TriggerKind.START))
    assert blocked.error_kind == ErrorKind.INVALID_TRANSITION
    assert engine.activate(stored.id).status == TaskStatus.STARTED


def test_break_activity_parks_branch(engine, definitions, build) -> None:
    definitions.add(build.linear("gate", build.system("require_variables", names=["ticket"])))

    parked = engine.trigger_start("gate")

    assert parked.status == TaskStatus.STARTED
    assert parked.current_activity_id == "a"
    stored = engine.get_instance(parked.instance_id)
    assert stored.branches[MAIN_BRANCH].state == BranchState.WAITING

    done = engine.advance(stored.id, Trigger(payload={"ticket": "T-1"}))
    assert done.status == TaskStatus.COMPLETED


def test_break_workflow_cancels_instance(engine, definitions, build) -> None:
    events: list[TerminalEvent] = []
    engine.on_terminal(events.append)
    definitions.add(build.linear("stop", build.system("emit_directive", directive=16)))

    outcome = engine.trigger_start("stop")

    assert outcome.status == TaskStatus.CANCELLED
    assert outcome.current_activity_id is None
    assert [e.status for e in events] == [TaskStatus.CANCELLED]


def test_user_code_exception_cancels_unless_directive_bound(engine, definitions, build) -> None:
    definitions.add(build.linear("boom", build.user("raise ValueError('boom')")))
    definitions.add(
        build.linear(
            "soft-boom",
            build.user("directive = 'BreakActivity'\nraise ValueError('soft')"),
        )
    )

    assert engine.trigger_start("boom").status == TaskStatus.CANCELLED

    soft = engine.trigger_start("soft-boom")
    assert soft.status == TaskStatus.STARTED
    assert engine.get_instance(soft.instance_id).branches[MAIN_BRANCH].state == BranchState.WAITING


def test_no_matching_transition_sets_error(engine, definitions, build) -> None:
    definitions.add(
        build.definition(
            "strict",
            [
                build.activity("start", "start"),
                build.activity("a", "system"),
                build.activity("end", "end"),
            ],
            [
                build.transition("start", "a"),
                build.transition("a", "end", when=("ready", "eq", True)),
            ],
        )
    )

    outcome = engine.trigger_start("strict")

    assert outcome.error_kind == ErrorKind.NO_MATCHING_TRANSITION
    assert engine.get_instance(outcome.instance_id).status == TaskStatus.ERROR


def test_resolve_error_retry_redelivers_failed_trigger(engine, definitions, build) -> None:
    definitions.add(build.linear("late", build.system("late_bound")))
    failed = engine.trigger_start("late", payload={"x": 1})
    assert failed.error_kind == ErrorKind.FUNCTION_EXECUTION_ERROR

    engine.registry.add("late_bound", lambda ctx: FunctionOutcome(result=ctx.variables["x"]))
    outcome = engine.resolve_error(failed.instance_id, "retry")

    assert outcome.status == TaskStatus.COMPLETED
    stored = engine.get_instance(failed.instance_id)
    assert stored.error is None
    assert stored.last_result == 1


def test_resolve_error_abort_cancels(engine, definitions, build) -> None:
    definitions.add(build.linear("late", build.system("late_bound")))
    failed = engine.trigger_start("late")

    outcome = engine.resolve_error(failed.instance_id, "abort")

    assert outcome.status == TaskStatus.CANCELLED


def test_resolve_error_requires_error_status(engine, definitions, build) -> None:
    definitions.add(build.parallel())
    started = engine.trigger_start("parallel")

    outcome = engine.resolve_error(started.instance_id, "retry")

    assert outcome.error_kind == ErrorKind.INVALID_TRANSITION


def test_terminal_instance_is_immutable(engine, definitions, build) -> None:
    definitions.add(build.linear())
    done = engine.trigger_start("linear")

    again = engine.advance(done.instance_id, Trigger())

    assert again.error_kind == ErrorKind.INVALID_TRANSITION
    assert engine.get_instance(done.instance_id).status == TaskStatus.COMPLETED
    with pytest.raises(InvalidTransitionError):
        engine.cancel(done.instance_id)


def test_cancel_waiting_instance_revokes_timers(engine, definitions, build) -> None:
    events: list[TerminalEvent] = []
    engine.on_terminal(events.append)
    definitions.add(
        build.definition(
            "sleepy",
            [
                build.activity("start", "start"),
                build.activity("wait", "timer", pause_duration=600),
                build.activity("end", "end"),
            ],
            [build.transition("start", "wait"), build.transition("wait", "end")],
        )
    )
    started = engine.trigger_start("sleepy")
    assert len(engine.timers.pending(started.instance_id)) == 1

    cancelled = engine.cancel(started.instance_id, "no longer needed")

    assert cancelled.status == TaskStatus.CANCELLED
    assert cancelled.current_activity_id is None
    assert engine.timers.pending(started.instance_id) == []
    assert events[-1].detail == "no longer needed"
    # Cancelling twice is a no-op.
    assert engine.cancel(started.instance_id).status == TaskStatus.CANCELLED


def test_zero_delay_timer_fires_on_next_tick(engine, definitions, build) -> None:
    definitions.add(
        build.definition(
            "nap",
            [
                build.activity("start", "start"),
                build.activity("wait", "timer", pause_duration=0),
                build.activity("end", "end"),
            ],
            [build.transition("start", "wait"), build.transition("wait", "end")],
        )
    )
    started = engine.trigger_start("nap")
    assert started.status == TaskStatus.STARTED
    assert started.current_activity_id == "wait"

    rejected = engine.advance(started.instance_id, Trigger())
    assert rejected.error_kind == ErrorKind.INVALID_TRANSITION

    fired = engine.tick()

    assert [e.instance_id for e in fired] == [started.instance_id]
    assert engine.get_instance(started.instance_id).status == TaskStatus.COMPLETED


def test_stale_timer_is_dropped(engine, definitions, build) -> None:
    definitions.add(build.parallel())
    started = engine.trigger_start("parallel")

    outcome = engine.advance(
        started.instance_id,
        Trigger(kind=TriggerKind.TIMER, branch_id="main/1", activity_id="elsewhere"),
    )

    assert outcome.dropped
    assert outcome.ok


def test_reassign_then_advance_resumes(engine, definitions, build) -> None:
    definitions.add(
        build.definition(
            "handoff",
            [
                build.activity("start", "start"),
                build.activity("review", "user"),
                build.activity("end", "end"),
            ],
            [build.transition("start", "review"), build.transition("review", "end")],
        )
    )
    started = engine.trigger_start("handoff")

    reassigned = engine.reassign(started.instance_id, "bob")
    assert reassigned.status == TaskStatus.RE_ASSIGNED
    assert reassigned.assignee_id == "bob"

    outcome = engine.advance(started.instance_id, Trigger())
    assert outcome.status == TaskStatus.COMPLETED


def test_step_guard_stops_system_cycles(engine, definitions, build) -> None:
    definitions.add(
        build.definition(
            "spin",
            [
                build.activity("start", "start"),
                build.activity("a", "system"),
                build.activity("end", "end"),
            ],
            [
                build.transition("start", "a"),
                build.transition("a", "end", when=("done", "eq", True)),
                build.transition("a", "a", transition_id="loop"),
            ],
        )
    )

    outcome = engine.trigger_start("spin")

    assert outcome.error_kind == ErrorKind.STEP_LIMIT_EXCEEDED
    assert engine.get_instance(outcome.instance_id).status == TaskStatus.ERROR


def test_inner_workflow_completion_resumes_parent(engine, definitions, build) -> None:
    definitions.add(build.linear("child", build.system("increment", name="child_steps")))
    definitions.add(
        build.definition(
            "parent",
            [
                build.activity("start", "start"),
                build.activity(
                    "sub",
                    "multi_inner_workflow",
                    inner_workflow_id="child",
                    settings={"result_variable": "child_vars"},
                ),
                build.activity("end", "end"),
            ],
            [build.transition("start", "sub"), build.transition("sub", "end")],
        )
    )

    outcome = engine.trigger_start("parent", payload={"seed": 1})

    parent = engine.get_instance(outcome.instance_id)
    assert parent.status == TaskStatus.COMPLETED
    assert parent.variables["child_vars"] == {"seed": 1, "child_steps": 1}
    children = [i for i in engine.list_instances() if i.parent_instance_id == parent.id]
    assert len(children) == 1
    assert children[0].status == TaskStatus.COMPLETED
    assert children[0].parent_activity_id == "sub"


def test_cancelled_inner_workflow_fails_parent(engine, definitions, build) -> None:
    definitions.add(
        build.definition(
            "child",
            [
                build.activity("start", "start"),
                build.activity("hold", "user"),
                build.activity("end", "end"),
            ],
            [build.transition("start", "hold"), build.transition("hold", "end")],
        )
    )
    definitions.add(
        build.definition(
            "parent",
            [
                build.activity("start", "start"),
                build.activity("sub", "multi_inner_workflow", inner_workflow_id="child"),
                build.activity("end", "end"),
            ],
            [build.transition("start", "sub"), build.transition("sub", "end")],
        )
    )
    outcome = engine.trigger_start("parent")
    child = next(i for i in engine.list_instances() if i.parent_instance_id == outcome.instance_id)

    engine.cancel(child.id)

    parent = engine.get_instance(outcome.instance_id)
    assert parent.status == TaskStatus.ERROR
    assert parent.error is not None
    assert parent.error.kind == ErrorKind.FUNCTION_EXECUTION_ERROR.value


def test_join_timeout_sets_error_and_retry_rearms(engine, definitions, build) -> None:
    definitions.add(build.parallel())
    started = engine.trigger_start("parallel")
    engine.advance(started.instance_id, Trigger(branch_id="main/1"))

    outcomes = engine.scheduler.sweep_join_timeouts(utc_now() + timedelta(seconds=120))

    assert [o.error_kind for o in outcomes] == [ErrorKind.PARTIAL_JOIN_TIMEOUT]
    assert engine.get_instance(started.instance_id).status == TaskStatus.ERROR

    resumed = engine.resolve_error(started.instance_id, "retry")
    assert resumed.status == TaskStatus.STARTED

    done = engine.advance(started.instance_id, Trigger(branch_id="main/2"))
    assert done.status == TaskStatus.COMPLETED


def test_persistence_failure_leaves_last_durable_state(
    engine, definitions, instances, build, monkeypatch: pytest.MonkeyPatch
) -> None:
    definitions.add(build.linear())
    instance = engine.start("linear")

    def broken_save(_instance) -> None:
        raise PersistenceError("disk full")

    monkeypatch.setattr(instances, "save_instance", broken_save)
    outcome = engine.advance(instance.id, Trigger(kind=TriggerKind.START))

    assert outcome.error_kind == ErrorKind.PERSISTENCE_ERROR
    assert outcome.retryable
    stored = engine.get_instance(instance.id)
    assert stored.status == TaskStatus.STARTED
    assert stored.current_activity_id == "start"


def test_unknown_instance_reports_not_found(engine) -> None:
    outcome = engine.advance("missing", Trigger())

    assert outcome.error_kind == ErrorKind.NOT_FOUND
    assert not outcome.retryable


def test_submitted_triggers_apply_in_order(engine, definitions, build) -> None:
    definitions.add(
        build.definition(
            "once",
            [
                build.activity("start", "start"),
                build.activity("review", "user"),
                build.activity("end", "end"),
            ],
            [build.transition("start", "review"), build.transition("review", "end")],
        )
    )
    started = engine.trigger_start("once")

    first = engine.submit(started.instance_id, Trigger())
    second = engine.submit(started.instance_id, Trigger())

    assert first.result(timeout=5).status == TaskStatus.COMPLETED
    assert second.result(timeout=5).error_kind == ErrorKind.INVALID_TRANSITION


def test_cancel_is_observed_at_heartbeat(engine, definitions, build) -> None:
    entered = threading.Event()

    def long_running(ctx):
        entered.set()
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            ctx.heartbeat()
            time.sleep(0.01)
        return FunctionOutcome()

    engine.registry.add("long_running", long_running)
    definitions.add(build.linear("slow", build.system("long_running")))
    instance = engine.start("slow")

    results = []
    worker = threading.Thread(
        target=lambda: results.append(engine.advance(instance.id, Trigger(kind=TriggerKind.START)))
    )
    worker.start()
    assert entered.wait(5)

    cancelled = engine.cancel(instance.id)
    worker.join(5)

    assert cancelled.status == TaskStatus.CANCELLED
    assert results[0].status == TaskStatus.CANCELLED


def test_lost_lease_discards_work_then_fails_after_budget(settings, definitions, instances, build) -> None:
    now = [0.0]
    leases = LeaseManager(ttl_seconds=5, max_seconds=30, clock=lambda: now[0])
    engine = ProcessEngine(definitions=definitions, instances=instances, settings=settings, leases=leases)

    def stall(_ctx):
        now[0] += 10
        return FunctionOutcome()

    engine.registry.add("stall", stall)
    definitions.add(build.linear("stall", build.system("stall")))
    instance = engine.start("stall")

    outcomes = [engine.advance(instance.id, Trigger(kind=TriggerKind.START)) for _ in range(3)]

    assert [o.error_kind for o in outcomes[:2]] == [ErrorKind.LEASE_EXPIRED] * 2
    assert all(o.retryable for o in outcomes[:2])
    assert outcomes[2].error_kind == ErrorKind.FATAL_RETRY_EXCEEDED
    stored = engine.get_instance(instance.id)
    assert stored.status == TaskStatus.ERROR
    assert stored.current_activity_id == "start"
    engine.stop()


def test_background_timer_thread_completes_instance(engine, definitions, build) -> None:
    definitions.add(
        build.definition(
            "nap",
            [
                build.activity("start", "start"),
                build.activity("wait", "timer", pause_duration=0.05),
                build.activity("end", "end"),
            ],
            [build.transition("start", "wait"), build.transition("wait", "end")],
        )
    )
    completed = threading.Event()
    engine.on_terminal(lambda e: completed.set() if e.status == TaskStatus.COMPLETED else None)

    with engine:
        engine.start_background()
        engine.trigger_start("nap")
        assert completed.wait(5)


def test_recover_reschedules_parked_timers(settings, definitions, instances, build) -> None:
    definitions.add(
        build.definition(
            "nap",
            [
                build.activity("start", "start"),
                build.activity("wait", "timer", pause_duration=0),
                build.activity("end", "end"),
            ],
            [build.transition("start", "wait"), build.transition("wait", "end")],
        )
    )
    first = ProcessEngine(definitions=definitions, instances=instances, settings=settings)
    started = first.trigger_start("nap")
    first.stop()

    # A fresh engine over the same store knows nothing about the timer yet.
    second = ProcessEngine(definitions=definitions, instances=instances, settings=settings)
    assert second.tick() == []
    assert second.recover() == 1
    assert second.recover() == 0

    second.tick()

    assert second.get_instance(started.instance_id).status == TaskStatus.COMPLETED
    second.stop()


def test_join_pre_functions_run_once_after_last_arrival(engine, definitions, build) -> None:
    definition = build.parallel()
    join = definition.activity("join")
    join.pre_functions = [WorkflowFunction(id="count_pre", name="increment", parameters={"name": "pre_count"})]
    join.functions = [WorkflowFunction(id="count_fn", name="increment", parameters={"name": "fn_count"})]
    definitions.add(definition)
    started = engine.trigger_start("parallel")

    engine.advance(started.instance_id, Trigger(branch_id="main/1"))
    assert "pre_count" not in engine.get_instance(started.instance_id).variables

    done = engine.advance(started.instance_id, Trigger(branch_id="main/2"))

    assert done.status == TaskStatus.COMPLETED
    variables = engine.get_instance(started.instance_id).variables
    assert variables["pre_count"] == 1
    assert variables["fn_count"] == 1


def test_join_pre_function_break_parks_released_branch(engine, definitions, build) -> None:
    definition = build.parallel()
    definition.activity("join").pre_functions = [
        build.system("require_variables", "gate", names=["signed_off"])
    ]
    definitions.add(definition)
    started = engine.trigger_start("parallel")
    engine.advance(started.instance_id, Trigger(branch_id="main/1"))
    engine.advance(started.instance_id, Trigger(branch_id="main/2"))

    parked = engine.get_instance(started.instance_id)
    assert parked.status == TaskStatus.STARTED
    assert list(parked.branches) == [MAIN_BRANCH]
    assert parked.branches[MAIN_BRANCH].state == BranchState.WAITING
    assert parked.current_activity_id == "join"

    done = engine.advance(started.instance_id, Trigger(payload={"signed_off": True}))
    assert done.status == TaskStatus.COMPLETED


def test_timer_dropped_while_in_error_is_rescheduled_on_retry(engine, definitions, build) -> None:
    definitions.add(
        build.definition(
            "race",
            [
                build.activity("start", "start"),
                build.activity("fork", "system"),
                build.activity("wait", "timer", pause_duration=0),
                build.activity("review", "user", functions=[build.system("late_bound")]),
                build.activity("end", "end"),
            ],
            [
                build.transition("start", "fork"),
                build.transition("fork", "wait", "parallel"),
                build.transition("fork", "review", "parallel"),
                build.transition("wait", "end"),
                build.transition("review", "end"),
            ],
        )
    )
    started = engine.trigger_start("race")
    failed = engine.advance(started.instance_id, Trigger(branch_id="main/2"))
    assert failed.error_kind == ErrorKind.FUNCTION_EXECUTION_ERROR

    # The wake-up fires while the instance is in error and is dropped.
    assert [e.instance_id for e in engine.tick()] == [started.instance_id]
    assert engine.timers.pending(started.instance_id) == []

    engine.registry.add("late_bound", lambda ctx: FunctionOutcome())
    resumed = engine.resolve_error(started.instance_id, "retry")

    assert resumed.status == TaskStatus.STARTED
    assert len(engine.timers.pending(started.instance_id)) == 1
    engine.tick()
    assert engine.get_instance(started.instance_id).status == TaskStatus.COMPLETED


@pytest.mark.parametrize("code", ["result = lambda: 1", "variables['callback'] = lambda: 1"])
def test_unsaveable_function_output_sets_error(settings, definitions, build, tmp_path, code) -> None:
    definitions.add(build.linear("leaky", build.user(code)))
    engine = ProcessEngine(
        definitions=definitions,
        instances=JsonInstanceStore(tmp_path / "json-state"),
        settings=settings,
    )

    outcome = engine.trigger_start("leaky")

    assert outcome.error_kind == ErrorKind.FUNCTION_EXECUTION_ERROR
    stored = engine.get_instance(outcome.instance_id)
    assert stored.status == TaskStatus.ERROR
    assert stored.variables == {}
    engine.stop()


def test_audit_entries_are_written_under_the_lease(engine, definitions, instances, build, monkeypatch) -> None:
    definitions.add(build.linear())
    first = engine.start("linear")
    written: list[tuple[str, bool]] = []
    append_log = instances.append_log

    def recording(entry) -> None:
        written.append((entry.operation, engine.leases.holder(entry.instance_id) is not None))
        append_log(entry)

    monkeypatch.setattr(instances, "append_log", recording)
    engine.advance(first.id, Trigger(kind=TriggerKind.START))
    second = engine.start("linear")
    engine.cancel(second.id)

    operations = [op for op, _ in written]
    assert "instance_completed" in operations
    assert operations[-1] == "instance_cancelled"
    # Creation happens before anyone can hold a lease on the instance.
    assert all(held for op, held in written if op != "instance_created")
