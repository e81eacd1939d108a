"""Append-only audit trail for workflow instances."""

from __future__ import annotations

import itertools
import logging
import threading
import uuid
from typing import TYPE_CHECKING, Any

from .models import WorkflowLog

if TYPE_CHECKING:
    from ..storage import InstanceStore

logger = logging.getLogger(__name__)


def build_entry(
    instance_id: str,
    operation: str,
    *,
    activity_id: str | None = None,
    function_id: str | None = None,
    details: dict[str, Any] | None = None,
    result: Any = None,
) -> WorkflowLog:
    """Create an unsequenced entry; :meth:`InstanceLogger.append` numbers it."""

    return WorkflowLog(
        id=uuid.uuid4().hex,
        instance_id=instance_id,
        activity_id=activity_id,
        function_id=function_id,
        operation=operation,
        details=details or {},
        result=None if result is None else str(result),
    )


class InstanceLogger:
    """Writes audit entries through the instance store.

    ``append`` never raises: an audit failure must not turn a committed
    advance into a failed one. Failures are logged and counted instead.
    """

    def __init__(self, store: InstanceStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._sequence = itertools.count(store.last_log_sequence() + 1)
        self.failures = 0

    def append(self, entry: WorkflowLog) -> WorkflowLog | None:
        with self._lock:
            numbered = entry.model_copy(update={"sequence": next(self._sequence)})
            try:
                self._store.append_log(numbered)
            except Exception:
                self.failures += 1
                logger.exception(
                    "Failed to write audit entry",
                    extra={
                        "instance_id": entry.instance_id,
                        "operation": entry.operation,
                        "failures": self.failures,
                    },
                )
                return None
        return numbered

    def extend(self, entries: list[WorkflowLog]) -> None:
        for entry in entries:
            self.append(entry)

    def list(self, instance_id: str) -> list[WorkflowLog]:
        return sorted(self._store.list_logs(instance_id), key=lambda e: e.sequence)
