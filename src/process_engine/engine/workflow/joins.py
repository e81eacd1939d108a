"""Fan-in bookkeeping for AwaitParallel activities.

Arrival sets live on the instance (``WorkflowInstance.joins``) so they are
saved, and rolled back, together with the rest of the instance state. The
caller must hold the instance lease while calling :meth:`JoinTracker.arrive`.

The tracker also keeps a small in-memory watch index keyed by
``(instance_id, activity_id)`` with each open join's deadline; the scheduler
sweeps it to fail joins that never complete.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from .models import JoinState, WorkflowInstance, utc_now

logger = logging.getLogger(__name__)


class JoinDecision(str, Enum):
    WAITING = "waiting"
    RELEASED = "released"
    DUPLICATE = "duplicate"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True, slots=True)
class JoinArrival:
    decision: JoinDecision
    activity_id: str
    branch_id: str
    group_id: str | None
    arrived: int
    expected: int

    def to_json(self) -> dict[str, object]:
        return {
            "decision": self.decision.value,
            "branch_id": self.branch_id,
            "group_id": self.group_id,
            "arrived": self.arrived,
            "expected": self.expected,
        }


class JoinTracker:
    def __init__(
        self,
        *,
        timeout_seconds: float,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._timeout = timedelta(seconds=timeout_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._deadlines: dict[tuple[str, str], datetime] = {}

    def _expected_for(self, instance: WorkflowInstance, branch_id: str) -> tuple[list[str], str | None]:
        branch = instance.branches.get(branch_id)
        if branch is None or branch.group_id is None:
            return [branch_id], None
        group = instance.fanouts.get(branch.group_id)
        if group is None:
            return [branch_id], None
        return list(group.branch_ids), group.group_id

    def arrive(self, instance: WorkflowInstance, activity_id: str, branch_id: str) -> JoinArrival:
        state = instance.joins.get(activity_id)
        if state is None:
            expected, group_id = self._expected_for(instance, branch_id)
            state = JoinState(
                activity_id=activity_id,
                group_id=group_id,
                expected=expected,
                opened_at=self._clock(),
            )
            instance.joins[activity_id] = state

        def _arrival(decision: JoinDecision) -> JoinArrival:
            return JoinArrival(
                decision=decision,
                activity_id=activity_id,
                branch_id=branch_id,
                group_id=state.group_id,
                arrived=len(state.arrived),
                expected=len(state.expected),
            )

        if branch_id not in state.expected:
            logger.warning(
                "Join arrival from unexpected branch ignored",
                extra={"instance_id": instance.id, "activity_id": activity_id, "branch_id": branch_id},
            )
            return _arrival(JoinDecision.UNEXPECTED)

        if branch_id in state.arrived:
            logger.warning(
                "Duplicate join arrival ignored",
                extra={"instance_id": instance.id, "activity_id": activity_id, "branch_id": branch_id},
            )
            return _arrival(JoinDecision.DUPLICATE)

        state.arrived.append(branch_id)
        if set(state.arrived) >= set(state.expected):
            del instance.joins[activity_id]
            return _arrival(JoinDecision.RELEASED)
        return _arrival(JoinDecision.WAITING)

    def deadline(self, state: JoinState) -> datetime:
        return state.opened_at + self._timeout

    def overdue(self, instance: WorkflowInstance, now: datetime | None = None) -> list[JoinState]:
        now = now or self._clock()
        return [s for s in instance.joins.values() if self.deadline(s) <= now]

    def rearm(self, instance: WorkflowInstance, now: datetime | None = None) -> None:
        """Restart the timeout window of every open join on the instance."""

        now = now or self._clock()
        for state in instance.joins.values():
            state.opened_at = now

    # Watch index. Updated by the scheduler after a successful save.

    def sync(self, instance: WorkflowInstance) -> None:
        with self._lock:
            for key in [k for k in self._deadlines if k[0] == instance.id]:
                if key[1] not in instance.joins:
                    del self._deadlines[key]
            for activity_id, state in instance.joins.items():
                self._deadlines[(instance.id, activity_id)] = self.deadline(state)

    def forget(self, instance_id: str) -> None:
        with self._lock:
            for key in [k for k in self._deadlines if k[0] == instance_id]:
                del self._deadlines[key]

    def due(self, now: datetime | None = None) -> list[tuple[str, str]]:
        now = now or self._clock()
        with self._lock:
            return sorted(k for k, deadline in self._deadlines.items() if deadline <= now)

    def watched(self) -> list[tuple[str, str]]:
        with self._lock:
            return sorted(self._deadlines)
