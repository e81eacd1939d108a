"""Built-in system functions and their registry.

System functions are referenced from definitions by name. Hosts add their
own with :meth:`SystemFunctionRegistry.register`::

    registry = default_registry()

    @registry.register("approve_order")
    def approve_order(ctx: FunctionContext) -> FunctionOutcome:
        ...
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .directives import Directive, coerce_directive
from .events import Trigger

logger = logging.getLogger(__name__)


@dataclass
class FunctionContext:
    """Everything a function may read or change.

    ``variables`` is the instance's working copy: changes become durable only
    if the surrounding advance commits.
    """

    instance_id: str
    definition_id: str
    activity_id: str
    branch_id: str
    variables: dict[str, Any]
    trigger: Trigger
    last_result: Any = None
    parameters: dict[str, Any] = field(default_factory=dict)
    heartbeat_hook: Callable[[], None] | None = field(default=None, repr=False)

    def heartbeat(self) -> None:
        """Renew the instance lease; raises if the instance is being cancelled."""

        if self.heartbeat_hook is not None:
            self.heartbeat_hook()


@dataclass(frozen=True, slots=True)
class FunctionOutcome:
    directive: Directive = Directive.CONTINUE
    result: Any = None


SystemHandler = Callable[[FunctionContext], Any]


def normalize_outcome(value: Any) -> FunctionOutcome:
    if isinstance(value, FunctionOutcome):
        return value
    if isinstance(value, Directive):
        return FunctionOutcome(directive=value)
    if value is None:
        return FunctionOutcome()
    return FunctionOutcome(result=value)


class SystemFunctionRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[str, SystemHandler] = {}

    def register(self, name: str) -> Callable[[SystemHandler], SystemHandler]:
        def decorator(handler: SystemHandler) -> SystemHandler:
            self.add(name, handler)
            return handler

        return decorator

    def add(self, name: str, handler: SystemHandler) -> None:
        with self._lock:
            self._handlers[name] = handler

    def get(self, name: str) -> SystemHandler | None:
        with self._lock:
            return self._handlers.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)


def _noop(_ctx: FunctionContext) -> FunctionOutcome:
    return FunctionOutcome()


def _set_variables(ctx: FunctionContext) -> FunctionOutcome:
    ctx.variables.update(ctx.parameters)
    return FunctionOutcome(result=dict(ctx.parameters))


def _increment(ctx: FunctionContext) -> FunctionOutcome:
    name = str(ctx.parameters.get("name", "counter"))
    by = ctx.parameters.get("by", 1)
    current = ctx.variables.get(name, 0)
    ctx.variables[name] = current + by
    return FunctionOutcome(result=ctx.variables[name])


def _require_variables(ctx: FunctionContext) -> FunctionOutcome:
    """Park the activity until every named variable is present."""

    names = ctx.parameters.get("names") or []
    missing = [n for n in names if ctx.variables.get(n) is None]
    if missing:
        return FunctionOutcome(directive=Directive.BREAK_ACTIVITY, result={"missing": missing})
    return FunctionOutcome()


def _log_message(ctx: FunctionContext) -> FunctionOutcome:
    message = str(ctx.parameters.get("message", ""))
    logger.info(
        message,
        extra={"instance_id": ctx.instance_id, "activity_id": ctx.activity_id},
    )
    return FunctionOutcome(result=message)


def _emit_directive(ctx: FunctionContext) -> FunctionOutcome:
    return FunctionOutcome(
        directive=coerce_directive(ctx.parameters.get("directive")),
        result=ctx.parameters.get("result"),
    )


def default_registry() -> SystemFunctionRegistry:
    registry = SystemFunctionRegistry()
    registry.add("noop", _noop)
    registry.add("set_variables", _set_variables)
    registry.add("increment", _increment)
    registry.add("require_variables", _require_variables)
    registry.add("log_message", _log_message)
    registry.add("emit_directive", _emit_directive)
    return registry
