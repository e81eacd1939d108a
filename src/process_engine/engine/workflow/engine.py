"""The engine facade: wires the scheduler and its collaborators together."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from ..config import EngineSettings
from ..storage import DefinitionStore, FileDefinitionStore, InstanceStore, JsonInstanceStore
from .audit import InstanceLogger
from .events import EventBus, TerminalHandler, Trigger
from .invoker import FunctionInvoker
from .joins import JoinTracker
from .leases import LeaseManager
from .models import WorkflowInstance, WorkflowLog
from .router import TransitionRouter
from .scheduler import AdvanceOutcome, ProcessScheduler, ResolveAction
from .system_functions import SystemFunctionRegistry, default_registry
from .timers import TimerEntry, TimerScheduler

logger = logging.getLogger(__name__)


class ProcessEngine:
    """Public entry point for hosts.

    Every collaborator can be injected; anything left out is built from
    ``settings`` (or ``EngineSettings()`` defaults).
    """

    def __init__(
        self,
        *,
        definitions: DefinitionStore,
        instances: InstanceStore,
        settings: EngineSettings | None = None,
        registry: SystemFunctionRegistry | None = None,
        timers: TimerScheduler | None = None,
        leases: LeaseManager | None = None,
        joins: JoinTracker | None = None,
        events: EventBus | None = None,
    ) -> None:
        settings = settings or EngineSettings()
        self.settings = settings
        self.definitions = definitions
        self.instances = instances
        self.registry = registry or default_registry()
        self.events = events or EventBus()
        self.timers = timers or TimerScheduler(tick_seconds=settings.timer_tick_seconds)
        self.leases = leases or LeaseManager(
            ttl_seconds=settings.lease_ttl_seconds,
            max_seconds=settings.lease_max_seconds,
        )
        self.joins = joins or JoinTracker(timeout_seconds=settings.join_timeout_seconds)
        self.audit = InstanceLogger(instances)
        self.scheduler = ProcessScheduler(
            definitions=definitions,
            instances=instances,
            invoker=FunctionInvoker(self.registry, retry_budget=settings.retry_budget),
            router=TransitionRouter(),
            joins=self.joins,
            timers=self.timers,
            leases=self.leases,
            audit=self.audit,
            events=self.events,
            retry_budget=settings.retry_budget,
            max_steps=settings.max_steps,
        )
        self._executor: ThreadPoolExecutor | None = None

    @classmethod
    def from_settings(cls, settings: EngineSettings, **kwargs: Any) -> ProcessEngine:
        """Engine over the JSON file stores named by ``settings``."""

        return cls(
            definitions=FileDefinitionStore(settings.definitions_path),
            instances=JsonInstanceStore(settings.instances_dir),
            settings=settings,
            **kwargs,
        )

    # Lifecycle

    def create_instance(self, definition_id: str, **kwargs: Any) -> WorkflowInstance:
        return self.scheduler.create_instance(definition_id, **kwargs)

    def activate(self, instance_id: str) -> WorkflowInstance:
        return self.scheduler.activate(instance_id)

    def start(self, definition_id: str, **kwargs: Any) -> WorkflowInstance:
        return self.scheduler.start(definition_id, **kwargs)

    def trigger_start(
        self,
        definition_id: str,
        *,
        payload: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> AdvanceOutcome:
        return self.scheduler.trigger_start(definition_id, payload=payload, **kwargs)

    def advance(self, instance_id: str, trigger: Trigger | None = None) -> AdvanceOutcome:
        return self.scheduler.advance(instance_id, trigger)

    def submit(self, instance_id: str, trigger: Trigger | None = None) -> Future[AdvanceOutcome]:
        """Queue an advance on the worker pool.

        The lease ticket is taken here, in the caller's thread, so submissions
        for one instance run in submission order.
        """

        ticket = self.leases.reserve(instance_id)
        return self._pool().submit(self.scheduler.advance_reserved, instance_id, ticket, trigger)

    def reassign(self, instance_id: str, assignee_id: str) -> WorkflowInstance:
        return self.scheduler.reassign(instance_id, assignee_id)

    def cancel(self, instance_id: str, reason: str = "") -> WorkflowInstance:
        return self.scheduler.cancel(instance_id, reason)

    def resolve_error(self, instance_id: str, action: ResolveAction | str) -> AdvanceOutcome:
        return self.scheduler.resolve_error(instance_id, action)

    # Reads

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self.scheduler.get_instance(instance_id)

    def list_instances(self) -> list[WorkflowInstance]:
        return sorted(self.instances.list_instances(), key=lambda i: i.created_at)

    def list_logs(self, instance_id: str) -> list[WorkflowLog]:
        return self.scheduler.list_logs(instance_id)

    def on_terminal(self, handler: TerminalHandler) -> None:
        self.events.subscribe(handler)

    # Background work

    def recover(self) -> int:
        return self.scheduler.recover()

    def tick(self) -> list[TimerEntry]:
        """Fire due timers and sweep join timeouts once, on the calling thread."""

        return self.timers.tick()

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.settings.worker_threads,
                thread_name_prefix="engine-worker",
            )
        return self._executor

    def start_background(self) -> None:
        self.timers.start()
        logger.info(
            "Engine background workers started",
            extra={"worker_threads": self.settings.worker_threads},
        )

    def stop(self, wait: bool = True) -> None:
        self.timers.stop()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info("Engine stopped")

    def __enter__(self) -> ProcessEngine:
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()
