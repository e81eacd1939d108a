"""Delayed re-entry for Timer activities.

Scheduling never blocks the caller: an entry goes into a heap and is fired by
:meth:`TimerScheduler.tick`, either from the background thread started with
:meth:`TimerScheduler.start` or explicitly (tests, single-threaded hosts).
A fire calls the ``deliver`` callback, which re-injects a timer trigger into
the scheduler exactly as an external trigger would arrive.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(order=True)
class TimerEntry:
    due: float
    seq: int
    timer_id: str = field(compare=False)
    instance_id: str = field(compare=False)
    branch_id: str = field(compare=False)
    activity_id: str = field(compare=False)
    revoked: bool = field(default=False, compare=False)


TimerDelivery = Callable[[TimerEntry], None]
TickHook = Callable[[], None]


class TimerScheduler:
    def __init__(
        self,
        *,
        tick_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        deliver: TimerDelivery | None = None,
    ) -> None:
        self._tick_seconds = tick_seconds
        self._clock = clock
        self._deliver = deliver
        self._heap: list[TimerEntry] = []
        self._by_id: dict[str, TimerEntry] = {}
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._hooks: list[TickHook] = []
        self._thread: threading.Thread | None = None
        self._stopping = False

    def set_delivery(self, deliver: TimerDelivery) -> None:
        self._deliver = deliver

    def add_tick_hook(self, hook: TickHook) -> None:
        self._hooks.append(hook)

    def schedule(
        self,
        *,
        instance_id: str,
        branch_id: str,
        activity_id: str,
        delay_seconds: float,
    ) -> str:
        entry = TimerEntry(
            due=self._clock() + max(0.0, delay_seconds),
            seq=next(self._seq),
            timer_id=uuid.uuid4().hex,
            instance_id=instance_id,
            branch_id=branch_id,
            activity_id=activity_id,
        )
        with self._cond:
            heapq.heappush(self._heap, entry)
            self._by_id[entry.timer_id] = entry
            self._cond.notify_all()
        logger.debug(
            "Timer scheduled",
            extra={
                "timer_id": entry.timer_id,
                "instance_id": instance_id,
                "activity_id": activity_id,
                "delay_seconds": delay_seconds,
            },
        )
        return entry.timer_id

    def revoke(self, timer_id: str) -> bool:
        with self._cond:
            entry = self._by_id.pop(timer_id, None)
            if entry is None:
                return False
            entry.revoked = True
            return True

    def revoke_instance(self, instance_id: str) -> int:
        with self._cond:
            ids = [tid for tid, e in self._by_id.items() if e.instance_id == instance_id]
            for tid in ids:
                self._by_id.pop(tid).revoked = True
        if ids:
            logger.info(
                "Timers revoked", extra={"instance_id": instance_id, "count": len(ids)}
            )
        return len(ids)

    def pending(self, instance_id: str | None = None) -> list[TimerEntry]:
        with self._cond:
            entries = [
                e for e in self._by_id.values() if instance_id is None or e.instance_id == instance_id
            ]
        return sorted(entries)

    def _pop_due(self, now: float) -> list[TimerEntry]:
        due: list[TimerEntry] = []
        with self._cond:
            while self._heap and self._heap[0].due <= now:
                entry = heapq.heappop(self._heap)
                if entry.revoked:
                    continue
                self._by_id.pop(entry.timer_id, None)
                due.append(entry)
        return due

    def tick(self, now: float | None = None) -> list[TimerEntry]:
        """Fire every entry due at ``now`` and run tick hooks. Returns fired entries."""

        fired = self._pop_due(self._clock() if now is None else now)
        for entry in fired:
            if self._deliver is None:
                logger.warning("Timer fired without a delivery target", extra={"timer_id": entry.timer_id})
                continue
            try:
                self._deliver(entry)
            except Exception:
                logger.exception(
                    "Timer delivery failed",
                    extra={"timer_id": entry.timer_id, "instance_id": entry.instance_id},
                )
        for hook in list(self._hooks):
            try:
                hook()
            except Exception:
                logger.exception("Timer tick hook failed")
        return fired

    def _next_wait(self) -> float:
        with self._cond:
            dues = [e.due for e in self._heap if not e.revoked]
        if not dues:
            return self._tick_seconds
        return max(0.0, min(self._tick_seconds, min(dues) - self._clock()))

    def _run(self) -> None:
        while True:
            with self._cond:
                if self._stopping:
                    return
            wait = self._next_wait()
            with self._cond:
                if self._stopping:
                    return
                if wait > 0:
                    self._cond.wait(timeout=wait)
                if self._stopping:
                    return
            self.tick()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping = False
        self._thread = threading.Thread(target=self._run, name="timer-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
