"""Function execution.

A function is either a named system function from the registry or a block of
user code. Functions may be split into ordered operations; a function with no
operations runs its body as one implicit operation.

User code runs with ``exec`` in a namespace holding ``variables``,
``trigger``, ``params``, ``last_result``, ``heartbeat``, ``Directive`` and each
declared parameter as a top-level name. It reports back by binding
``result`` and, optionally, ``directive``. Restricted builtins keep
definitions from importing modules; it is not a security sandbox.
"""

from __future__ import annotations

import builtins
import hashlib
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, replace
from types import CodeType
from typing import Any

from pydantic import TypeAdapter

from .conditions import MISSING, resolve_path
from .directives import Directive, coerce_directive
from .errors import (
    CancellationRequested,
    FatalRetryExceededError,
    FunctionExecutionError,
    LeaseExpiredError,
)
from .models import FunctionKind, Operation, OperationType, WorkflowFunction
from .system_functions import (
    FunctionContext,
    FunctionOutcome,
    SystemFunctionRegistry,
    normalize_outcome,
)

logger = logging.getLogger(__name__)

_JSON: TypeAdapter[Any] = TypeAdapter(Any)

_SAFE_BUILTINS: dict[str, Any] = {
    name: getattr(builtins, name)
    for name in (
        "abs",
        "all",
        "any",
        "bool",
        "dict",
        "enumerate",
        "float",
        "int",
        "isinstance",
        "len",
        "list",
        "max",
        "min",
        "range",
        "reversed",
        "round",
        "set",
        "sorted",
        "str",
        "sum",
        "tuple",
        "zip",
        "Exception",
        "KeyError",
        "ValueError",
        "TypeError",
    )
}


@dataclass(frozen=True, slots=True)
class Invocation:
    function_id: str
    directive: Directive
    result: Any = None
    attempts: int = 1
    error: str | None = None

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "directive": self.directive.value,
            "attempts": self.attempts,
        }
        if self.error is not None:
            out["error"] = self.error
        return out


class _ScriptFailure(Exception):
    def __init__(self, directive: Directive, error: str) -> None:
        super().__init__(error)
        self.directive = directive
        self.error = error


def resolve_parameters(parameters: Mapping[str, Any], variables: Mapping[str, Any]) -> dict[str, Any]:
    """Bind ``"$path"`` values to instance variables; ``"$$x"`` is the literal ``"$x"``."""

    def _bind(value: Any) -> Any:
        if isinstance(value, str) and value.startswith("$"):
            if value.startswith("$$"):
                return value[1:]
            found = resolve_path(value[1:], variables)
            return None if found is MISSING else found
        if isinstance(value, dict):
            return {k: _bind(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_bind(v) for v in value]
        return value

    return {key: _bind(value) for key, value in parameters.items()}


class FunctionInvoker:
    def __init__(self, registry: SystemFunctionRegistry, *, retry_budget: int) -> None:
        self._registry = registry
        self._retry_budget = retry_budget
        self._lock = threading.Lock()
        self._compiled: dict[str, CodeType] = {}

    def invoke(self, function: WorkflowFunction, context: FunctionContext) -> Invocation:
        units: list[Operation | None] = list(function.operations) or [None]
        total_attempts = 0
        result: Any = None

        for operation in units:
            attempts = 0
            while True:
                attempts += 1
                total_attempts += 1
                directive, result, error = self._run_unit(function, operation, context)
                if directive != Directive.RERUN_OPERATION:
                    break
                if attempts > self._retry_budget:
                    raise FatalRetryExceededError(
                        f"operation {self._unit_name(function, operation)}", attempts
                    )
                logger.info(
                    "Re-running operation",
                    extra={
                        "instance_id": context.instance_id,
                        "function_id": function.id,
                        "attempt": attempts + 1,
                    },
                )
                context.heartbeat()

            if directive == Directive.CONTINUE:
                continue
            if directive == Directive.BREAK_OPERATION:
                break
            return Invocation(
                function_id=function.id,
                directive=directive,
                result=result,
                attempts=total_attempts,
                error=error,
            )

        return Invocation(
            function_id=function.id,
            directive=Directive.CONTINUE,
            result=result,
            attempts=total_attempts,
        )

    @staticmethod
    def _unit_name(function: WorkflowFunction, operation: Operation | None) -> str:
        if operation is None:
            return function.id
        return f"{function.id}/{operation.id or operation.title or operation.operation_type.value}"

    def _run_unit(
        self,
        function: WorkflowFunction,
        operation: Operation | None,
        context: FunctionContext,
    ) -> tuple[Directive, Any, str | None]:
        try:
            if operation is None:
                outcome = self._run_body(function, context)
            else:
                outcome = self._run_operation(function, operation, context)
        except (FunctionExecutionError, CancellationRequested, LeaseExpiredError):
            raise
        except _ScriptFailure as failure:
            logger.warning(
                "User code raised",
                extra={
                    "instance_id": context.instance_id,
                    "function_id": function.id,
                    "error": failure.error,
                    "directive": failure.directive.value,
                },
            )
            return failure.directive, None, failure.error
        except Exception as e:
            logger.exception(
                "System function raised",
                extra={"instance_id": context.instance_id, "function_id": function.id},
            )
            return Directive.BREAK_WORKFLOW, None, f"{type(e).__name__}: {e}"
        self._check_serializable(function, "result", outcome.result)
        self._check_serializable(function, "variables", context.variables)
        return outcome.directive, outcome.result, None

    @staticmethod
    def _check_serializable(function: WorkflowFunction, what: str, value: Any) -> None:
        """Everything a function leaves behind is saved with the instance."""

        try:
            _JSON.dump_python(value, mode="json")
        except (TypeError, ValueError) as e:
            raise FunctionExecutionError(
                f"Function {function.id!r} left a {what} value that cannot be saved: {e}"
            ) from e

    def _run_body(self, function: WorkflowFunction, context: FunctionContext) -> FunctionOutcome:
        params = resolve_parameters(function.parameters, context.variables)
        if function.kind == FunctionKind.SYSTEM:
            return self._call_system(function.name, function.id, params, context)
        if not function.code or not function.code.strip():
            raise FunctionExecutionError(f"User function {function.id!r} has no code")
        return self._run_script(function.id, function.code, params, context)

    def _run_operation(
        self,
        function: WorkflowFunction,
        operation: Operation,
        context: FunctionContext,
    ) -> FunctionOutcome:
        params = resolve_parameters(
            {**function.parameters, **operation.parameters}, context.variables
        )
        if operation.operation_type == OperationType.SET_PROPERTIES:
            values = resolve_parameters(operation.properties, context.variables)
            context.variables.update(values)
            return FunctionOutcome(result=values)
        if operation.operation_type == OperationType.RUN_SCRIPT:
            if not operation.script or not operation.script.strip():
                raise FunctionExecutionError(
                    f"Operation {self._unit_name(function, operation)!r} has no script"
                )
            return self._run_script(self._unit_name(function, operation), operation.script, params, context)
        if not operation.handler:
            raise FunctionExecutionError(
                f"Operation {self._unit_name(function, operation)!r} names no system handler"
            )
        return self._call_system(operation.handler, function.id, params, context)

    def _call_system(
        self,
        name: str,
        function_id: str,
        params: dict[str, Any],
        context: FunctionContext,
    ) -> FunctionOutcome:
        handler = self._registry.get(name)
        if handler is None:
            raise FunctionExecutionError(
                f"Unknown system function {name!r} (function {function_id!r})"
            )
        return normalize_outcome(handler(replace(context, parameters=params)))

    def _compile(self, unit: str, code: str) -> CodeType:
        key = hashlib.sha256(f"{unit}\0{code}".encode()).hexdigest()
        with self._lock:
            cached = self._compiled.get(key)
        if cached is not None:
            return cached
        try:
            compiled = compile(code, f"<function {unit}>", "exec")
        except SyntaxError as e:
            raise FunctionExecutionError(f"Function {unit!r} does not compile: {e}") from e
        with self._lock:
            self._compiled[key] = compiled
        return compiled

    def _run_script(
        self,
        unit: str,
        code: str,
        params: dict[str, Any],
        context: FunctionContext,
    ) -> FunctionOutcome:
        compiled = self._compile(unit, code)
        scope: dict[str, Any] = {
            **params,
            "__builtins__": _SAFE_BUILTINS,
            "Directive": Directive,
            "variables": context.variables,
            "trigger": dict(context.trigger.payload),
            "params": params,
            "last_result": context.last_result,
            "instance_id": context.instance_id,
            "heartbeat": context.heartbeat,
        }
        try:
            exec(compiled, scope)  # noqa: S102
        except (CancellationRequested, LeaseExpiredError):
            raise
        except Exception as e:
            explicit = scope.get("directive")
            try:
                directive = (
                    coerce_directive(explicit) if explicit is not None else Directive.BREAK_WORKFLOW
                )
            except ValueError:
                directive = Directive.BREAK_WORKFLOW
            raise _ScriptFailure(directive, f"{type(e).__name__}: {e}") from e

        try:
            directive = coerce_directive(scope.get("directive"))
        except ValueError as e:
            raise FunctionExecutionError(f"Function {unit!r} returned an invalid directive: {e}") from e
        return FunctionOutcome(directive=directive, result=scope.get("result"))
