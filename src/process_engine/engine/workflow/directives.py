"""Control directives returned by workflow functions.

Directives are plain tagged values. What the scheduler does with each one is
spelled out in :data:`DECISION_TABLE` rather than derived from flag bits.
Stored definitions written by older tooling may still carry the numeric flag
form (including OR-ed combinations); :func:`from_flags` maps those explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Directive(str, Enum):
    CONTINUE = "continue"
    BREAK_OPERATION = "break_operation"
    BREAK_FUNCTION = "break_function"
    BREAK_ACTIVITY = "break_activity"
    BREAK_WORKFLOW = "break_workflow"
    RERUN_OPERATION = "rerun_operation"
    RERUN_FUNCTION = "rerun_function"
    RERUN_ACTIVITY = "rerun_activity"
    RESTART_WORKFLOW = "restart_workflow"
    CANCEL_WORKFLOW = "cancel_workflow"


class Effect(str, Enum):
    PROCEED = "proceed"
    SKIP_UNIT = "skip_unit"
    PARK = "park"
    CANCEL = "cancel"
    RETRY = "retry"
    RESTART = "restart"


class Scope(str, Enum):
    OPERATION = "operation"
    FUNCTION = "function"
    ACTIVITY = "activity"
    WORKFLOW = "workflow"


@dataclass(frozen=True, slots=True)
class DirectiveRule:
    effect: Effect
    scope: Scope | None = None


DECISION_TABLE: dict[Directive, DirectiveRule] = {
    Directive.CONTINUE: DirectiveRule(Effect.PROCEED),
    Directive.BREAK_OPERATION: DirectiveRule(Effect.SKIP_UNIT, Scope.OPERATION),
    Directive.BREAK_FUNCTION: DirectiveRule(Effect.PARK, Scope.FUNCTION),
    Directive.BREAK_ACTIVITY: DirectiveRule(Effect.PARK, Scope.ACTIVITY),
    Directive.BREAK_WORKFLOW: DirectiveRule(Effect.CANCEL, Scope.WORKFLOW),
    Directive.CANCEL_WORKFLOW: DirectiveRule(Effect.CANCEL, Scope.WORKFLOW),
    Directive.RERUN_OPERATION: DirectiveRule(Effect.RETRY, Scope.OPERATION),
    Directive.RERUN_FUNCTION: DirectiveRule(Effect.RETRY, Scope.FUNCTION),
    Directive.RERUN_ACTIVITY: DirectiveRule(Effect.RETRY, Scope.ACTIVITY),
    Directive.RESTART_WORKFLOW: DirectiveRule(Effect.RESTART, Scope.WORKFLOW),
}


def rule_for(directive: Directive) -> DirectiveRule:
    return DECISION_TABLE[directive]


# Legacy numeric flag values.
LEGACY_FLAGS: dict[int, Directive] = {
    1: Directive.CONTINUE,
    2: Directive.BREAK_OPERATION,
    4: Directive.BREAK_FUNCTION,
    8: Directive.BREAK_ACTIVITY,
    16: Directive.BREAK_WORKFLOW,
    32: Directive.RERUN_OPERATION,
    64: Directive.RERUN_FUNCTION,
    128: Directive.RERUN_ACTIVITY,
    256: Directive.RESTART_WORKFLOW,
    512: Directive.CANCEL_WORKFLOW,
}

# When several flags are OR-ed together the first entry present wins.
FLAG_PRECEDENCE: tuple[Directive, ...] = (
    Directive.CANCEL_WORKFLOW,
    Directive.BREAK_WORKFLOW,
    Directive.RESTART_WORKFLOW,
    Directive.RERUN_ACTIVITY,
    Directive.BREAK_ACTIVITY,
    Directive.RERUN_FUNCTION,
    Directive.BREAK_FUNCTION,
    Directive.RERUN_OPERATION,
    Directive.BREAK_OPERATION,
    Directive.CONTINUE,
)

_FLAG_BY_DIRECTIVE: dict[Directive, int] = {d: f for f, d in LEGACY_FLAGS.items()}
_ALL_FLAGS = sum(LEGACY_FLAGS)


def from_flags(value: int) -> Directive:
    """Decode a legacy numeric directive, resolving combinations by precedence."""

    if value <= 0 or value & ~_ALL_FLAGS:
        raise ValueError(f"Unknown directive flags: {value}")
    for directive in FLAG_PRECEDENCE:
        if value & _FLAG_BY_DIRECTIVE[directive]:
            return directive
    raise ValueError(f"Unknown directive flags: {value}")


def coerce_directive(value: object) -> Directive:
    """Accept a Directive, its name or value string, or a legacy flag integer."""

    if isinstance(value, Directive):
        return value
    if value is None:
        return Directive.CONTINUE
    if isinstance(value, bool):
        raise ValueError(f"Not a directive: {value!r}")
    if isinstance(value, int):
        return from_flags(value)
    if isinstance(value, str):
        # "rerun_operation", "RERUN_OPERATION" and "ReRunOperation" all match.
        key = value.strip().lower().replace("_", "").replace("-", "")
        directive = _BY_COMPACT_NAME.get(key)
        if directive is None:
            raise ValueError(f"Not a directive: {value!r}")
        return directive
    raise ValueError(f"Not a directive: {value!r}")


_BY_COMPACT_NAME: dict[str, Directive] = {d.value.replace("_", ""): d for d in Directive}
