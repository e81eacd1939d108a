"""Per-instance ownership leases.

At most one advance runs per instance. Callers take a ticket with
:meth:`LeaseManager.reserve` (cheap, never blocks) and then wait for their
turn with :meth:`LeaseManager.hold`; tickets are served strictly in
reservation order, so triggers for one instance apply in arrival order.
Different instances have independent queues.

A held lease expires when it is not renewed within ``ttl_seconds`` and can
never outlive ``max_seconds`` from acquisition. The next waiter may take over
an expired lease; the previous holder then fails :meth:`Lease.check` and must
abandon its work without saving.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from .errors import LeaseExpiredError

logger = logging.getLogger(__name__)


@dataclass
class Lease:
    instance_id: str
    ticket: int
    owner: str
    acquired_at: float
    expires_at: float
    hard_deadline: float
    _ttl: float = field(repr=False, default=0.0)
    _clock: Callable[[], float] = field(repr=False, default=time.monotonic)
    revoked: bool = False

    def expired(self, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        return self.revoked or now >= self.expires_at or now >= self.hard_deadline

    def check(self) -> None:
        if self.revoked:
            raise LeaseExpiredError(f"Lease on instance {self.instance_id} was taken over")
        now = self._clock()
        if now >= self.hard_deadline:
            raise LeaseExpiredError(
                f"Lease on instance {self.instance_id} exceeded its hard ceiling"
            )
        if now >= self.expires_at:
            raise LeaseExpiredError(f"Lease on instance {self.instance_id} expired")

    def renew(self) -> None:
        """Heartbeat: push expiry out by one TTL, capped at the hard ceiling."""

        self.check()
        self.expires_at = min(self._clock() + self._ttl, self.hard_deadline)


@dataclass
class _Slot:
    queue: deque[int] = field(default_factory=deque)
    holder: Lease | None = None


class LeaseManager:
    def __init__(
        self,
        *,
        ttl_seconds: float,
        max_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max = max_seconds
        self._clock = clock
        self._cond = threading.Condition()
        self._slots: dict[str, _Slot] = {}
        self._tickets = itertools.count(1)

    def reserve(self, instance_id: str) -> int:
        with self._cond:
            ticket = next(self._tickets)
            self._slots.setdefault(instance_id, _Slot()).queue.append(ticket)
            return ticket

    def holder(self, instance_id: str) -> Lease | None:
        with self._cond:
            slot = self._slots.get(instance_id)
            return slot.holder if slot else None

    def _try_take(self, instance_id: str, slot: _Slot, ticket: int, owner: str) -> Lease | None:
        now = self._clock()
        if slot.holder is not None and slot.holder.expired(now):
            # Take over only for the next ticket in line.
            if len(slot.queue) > 1 and slot.queue[1] == ticket:
                stale = slot.holder
                stale.revoked = True
                slot.queue.popleft()
                slot.holder = None
                logger.warning(
                    "Expired lease taken over",
                    extra={"instance_id": instance_id, "previous_owner": stale.owner, "owner": owner},
                )
        if slot.holder is None and slot.queue and slot.queue[0] == ticket:
            lease = Lease(
                instance_id=instance_id,
                ticket=ticket,
                owner=owner,
                acquired_at=now,
                expires_at=now + self._ttl,
                hard_deadline=now + self._max,
                _ttl=self._ttl,
                _clock=self._clock,
            )
            slot.holder = lease
            return lease
        return None

    def _release(self, lease: Lease) -> None:
        with self._cond:
            slot = self._slots.get(lease.instance_id)
            if slot is not None and slot.holder is lease:
                slot.holder = None
                if slot.queue and slot.queue[0] == lease.ticket:
                    slot.queue.popleft()
                if not slot.queue:
                    del self._slots[lease.instance_id]
            self._cond.notify_all()

    @contextmanager
    def hold(self, instance_id: str, ticket: int, owner: str = "") -> Iterator[Lease]:
        owner = owner or threading.current_thread().name
        with self._cond:
            slot = self._slots.get(instance_id)
            if slot is None or ticket not in slot.queue:
                raise LeaseExpiredError(f"Ticket {ticket} is not queued for instance {instance_id}")
            while True:
                lease = self._try_take(instance_id, slot, ticket, owner)
                if lease is not None:
                    break
                self._cond.wait(timeout=max(0.05, min(self._ttl, 1.0)))
        try:
            yield lease
        finally:
            self._release(lease)

    @contextmanager
    def acquire(self, instance_id: str, owner: str = "") -> Iterator[Lease]:
        ticket = self.reserve(instance_id)
        with self.hold(instance_id, ticket, owner) as lease:
            yield lease
