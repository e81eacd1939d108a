"""Transition routing.

``route`` is a pure function of (activity, transitions, context): it reads
nothing else and changes nothing, so the same inputs always give the same
ordered target list. That property is what makes log replay reproducible.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from .conditions import transition_matches
from .errors import NoMatchingTransitionError
from .models import Activity, Transition, TransitionType


@dataclass(frozen=True, slots=True)
class RouteTarget:
    transition_id: str
    target_id: str
    transition_type: TransitionType


@dataclass(frozen=True, slots=True)
class RouteDecision:
    targets: tuple[RouteTarget, ...]
    fan_out: bool

    @property
    def target_ids(self) -> list[str]:
        return [t.target_id for t in self.targets]

    def to_json(self) -> dict[str, object]:
        return {
            "fan_out": self.fan_out,
            "targets": [
                {
                    "transition_id": t.transition_id,
                    "target_id": t.target_id,
                    "type": t.transition_type.value,
                }
                for t in self.targets
            ],
        }


def outgoing(activity_id: str, transitions: Sequence[Transition]) -> list[Transition]:
    """Transitions leaving the activity, in declaration order."""

    indexed = [(i, t) for i, t in enumerate(transitions) if t.source_id == activity_id]
    indexed.sort(key=lambda it: (it[1].order if it[1].order is not None else it[0], it[0]))
    return [t for _, t in indexed]


def route(
    activity: Activity,
    transitions: Sequence[Transition],
    context: Mapping[str, Any],
) -> RouteDecision:
    candidates = outgoing(activity.id, transitions)

    chosen: set[str] = set()

    standard = [t for t in candidates if t.transition_type == TransitionType.STANDARD]
    winner = next((t for t in standard if t.has_condition and transition_matches(t, context)), None)
    if winner is None:
        winner = next((t for t in standard if not t.has_condition), None)
    if winner is not None:
        chosen.add(winner.id)

    parallel_fired = False
    for t in candidates:
        if t.transition_type == TransitionType.PARALLEL:
            chosen.add(t.id)
            parallel_fired = True
        elif t.transition_type == TransitionType.CONDITIONAL and transition_matches(t, context):
            chosen.add(t.id)

    targets = tuple(
        RouteTarget(transition_id=t.id, target_id=t.target_id, transition_type=t.transition_type)
        for t in candidates
        if t.id in chosen
    )
    if not targets:
        raise NoMatchingTransitionError(
            f"No transition from activity {activity.id!r} matches the current context"
        )
    return RouteDecision(targets=targets, fan_out=parallel_fired or len(targets) > 1)


class TransitionRouter:
    """Object wrapper so the scheduler can take the router as a collaborator."""

    def route(
        self,
        activity: Activity,
        transitions: Sequence[Transition],
        context: Mapping[str, Any],
    ) -> RouteDecision:
        return route(activity, transitions, context)
