"""Engine error kinds.

Every failure the engine reports carries an :class:`ErrorKind`. Callers of
``advance`` see the kind inside an ``AdvanceOutcome``; direct callers of the
lower-level components get the matching exception.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    NO_MATCHING_TRANSITION = "no_matching_transition"
    PARTIAL_JOIN_TIMEOUT = "partial_join_timeout"
    FATAL_RETRY_EXCEEDED = "fatal_retry_exceeded"
    FUNCTION_EXECUTION_ERROR = "function_execution_error"
    PERSISTENCE_ERROR = "persistence_error"
    INVALID_DEFINITION = "invalid_definition"
    LEASE_EXPIRED = "lease_expired"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"


class EngineError(Exception):
    kind: ErrorKind = ErrorKind.FUNCTION_EXECUTION_ERROR

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFoundError(EngineError):
    kind = ErrorKind.NOT_FOUND


class InvalidTransitionError(EngineError):
    kind = ErrorKind.INVALID_TRANSITION


class NoMatchingTransitionError(EngineError):
    kind = ErrorKind.NO_MATCHING_TRANSITION


class PartialJoinTimeoutError(EngineError):
    kind = ErrorKind.PARTIAL_JOIN_TIMEOUT


class FatalRetryExceededError(EngineError):
    """Raised when a ReRun* directive repeats a unit past the retry budget."""

    kind = ErrorKind.FATAL_RETRY_EXCEEDED

    def __init__(self, unit: str, attempts: int) -> None:
        super().__init__(f"Retry budget exhausted for {unit} after {attempts} attempts")
        self.unit = unit
        self.attempts = attempts


class FunctionExecutionError(EngineError):
    kind = ErrorKind.FUNCTION_EXECUTION_ERROR


class PersistenceError(EngineError):
    kind = ErrorKind.PERSISTENCE_ERROR


class DefinitionError(EngineError):
    kind = ErrorKind.INVALID_DEFINITION

    def __init__(self, definition_id: str, problems: list[str]) -> None:
        super().__init__(f"Invalid definition {definition_id!r}: " + "; ".join(problems))
        self.definition_id = definition_id
        self.problems = problems


class LeaseExpiredError(EngineError):
    kind = ErrorKind.LEASE_EXPIRED


class StepLimitExceededError(EngineError):
    kind = ErrorKind.STEP_LIMIT_EXCEEDED


class CancellationRequested(Exception):
    """Raised at a suspension point when the instance was asked to cancel."""
