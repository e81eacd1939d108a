from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from .state_machine import TaskStatus

logger = logging.getLogger(__name__)


class TriggerKind(str, Enum):
    START = "start"
    USER_ACTION = "user_action"
    EVENT = "event"
    TIMER = "timer"
    NESTED_COMPLETION = "nested_completion"
    RETRY = "retry"


@dataclass(frozen=True, slots=True)
class Trigger:
    """A signal delivered to ``advance``.

    Triggers come from UI actions, timer expiries and nested-workflow
    completions. They carry data; they never perform work themselves.
    """

    kind: TriggerKind = TriggerKind.USER_ACTION
    payload: dict[str, object] = field(default_factory=dict)
    branch_id: str = "main"
    activity_id: str | None = None

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "kind": self.kind.value,
            "payload": dict(self.payload),
            "branch_id": self.branch_id,
        }
        if self.activity_id is not None:
            out["activity_id"] = self.activity_id
        return out

    @staticmethod
    def from_json(obj: dict[str, object]) -> Trigger:
        kind_raw = obj.get("kind")
        try:
            kind = TriggerKind(kind_raw) if isinstance(kind_raw, str) else TriggerKind.USER_ACTION
        except ValueError:
            kind = TriggerKind.USER_ACTION
        payload_raw = obj.get("payload")
        payload = dict(payload_raw) if isinstance(payload_raw, dict) else {}
        branch_raw = obj.get("branch_id")
        branch_id = branch_raw if isinstance(branch_raw, str) and branch_raw else "main"
        activity_raw = obj.get("activity_id")
        activity_id = activity_raw if isinstance(activity_raw, str) else None
        return Trigger(kind=kind, payload=payload, branch_id=branch_id, activity_id=activity_id)


@dataclass(frozen=True, slots=True)
class TerminalEvent:
    """Emitted when an instance reaches Completed, Cancelled or Error."""

    instance_id: str
    definition_id: str
    status: TaskStatus
    reason: str | None = None
    detail: str = ""
    parent_instance_id: str | None = None


TerminalHandler = Callable[[TerminalEvent], None]


class EventBus:
    """Synchronous fan-out of terminal events to subscribers.

    A failing subscriber is logged and skipped; it never affects the engine.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: list[TerminalHandler] = []

    def subscribe(self, handler: TerminalHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def unsubscribe(self, handler: TerminalHandler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def emit(self, event: TerminalEvent) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Terminal event handler failed",
                    extra={"instance_id": event.instance_id, "status": event.status.value},
                )
