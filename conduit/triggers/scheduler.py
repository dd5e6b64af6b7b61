"""
Conduit Trigger Scheduler

Registers workflow triggers and raises start requests when they fire.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

import structlog

from conduit.types import (
    TriggerDefinition,
    TriggerFiring,
    TriggerType,
    WorkflowDefinition,
    utcnow,
)

if TYPE_CHECKING:
    from conduit.events import Subscription
    from conduit.registry import WorkflowRegistry

logger = structlog.get_logger(__name__)


# start_fn(workflow_id, input=..., trigger=...) -> execution
StartFn = Callable[..., Awaitable[Any]]


@dataclass
class RegisteredTrigger:
    """Runtime state of one trigger of one workflow."""
    workflow_id: str
    definition: TriggerDefinition
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    # Unique handler key; declared ids may repeat across workflows
    key: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Scheduled
    next_fire_at: Optional[datetime] = None

    # Threshold: last comparison result, None until the first sample
    last_result: Optional[bool] = None

    # Statistics
    fire_count: int = 0
    last_fired_at: Optional[datetime] = None

    @property
    def type(self) -> TriggerType:
        return self.definition.type

    @property
    def enabled(self) -> bool:
        return self.definition.enabled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "definition": self.definition.to_dict(),
            "nextFireAt": self.next_fire_at.isoformat() if self.next_fire_at else None,
            "fireCount": self.fire_count,
            "lastFiredAt": self.last_fired_at.isoformat() if self.last_fired_at else None,
        }


class BaseTriggerHandler:
    """Base class for trigger handlers."""

    def __init__(self, scheduler: "TriggerScheduler"):
        self.scheduler = scheduler

    def register(self, trigger: RegisteredTrigger) -> None:
        """Register a trigger."""

    def unregister(self, trigger: RegisteredTrigger) -> None:
        """Unregister a trigger."""


class TriggerScheduler:
    """
    Owns every registered trigger.

    Features:
    - Scheduled (cron) triggers with a polling loop
    - Named event triggers, optionally fed from an EventBus subscription
    - Edge-triggered metric threshold triggers
    - Manual starts
    - No coalescing: each firing is one start request
    """

    def __init__(
        self,
        start_fn: StartFn,
        poll_interval_seconds: float = 30.0,
    ):
        from conduit.triggers.event import EventTriggerHandler
        from conduit.triggers.manual import ManualTriggerHandler
        from conduit.triggers.schedule import ScheduleTriggerHandler
        from conduit.triggers.threshold import ThresholdTriggerHandler

        self.start_fn = start_fn
        self.poll_interval_seconds = poll_interval_seconds

        # Registered triggers by workflow
        self._triggers: Dict[str, List[RegisteredTrigger]] = {}

        # Trigger handlers
        self.schedule = ScheduleTriggerHandler(self)
        self.events = EventTriggerHandler(self)
        self.thresholds = ThresholdTriggerHandler(self)
        self.manual = ManualTriggerHandler(self)
        self._handlers: Dict[TriggerType, BaseTriggerHandler] = {
            TriggerType.SCHEDULED: self.schedule,
            TriggerType.EVENT: self.events,
            TriggerType.THRESHOLD: self.thresholds,
            TriggerType.MANUAL: self.manual,
        }

        self._stats = {
            "fired": 0,
            "start_errors": 0,
        }

        self._schedule_task: Optional[asyncio.Task] = None
        self._consumer_tasks: List[asyncio.Task] = []
        self._subscriptions: List["Subscription"] = []
        self._shutdown_event = asyncio.Event()
        self._initialized = False

    async def initialize(self) -> None:
        """Start the schedule loop."""
        if self._initialized:
            return

        self._shutdown_event.clear()
        self._schedule_task = asyncio.create_task(self._schedule_loop())

        self._initialized = True
        logger.info("trigger_scheduler_initialized", triggers=len(self.list_triggers()))

    async def shutdown(self) -> None:
        """Stop the schedule loop and event consumers."""
        self._shutdown_event.set()

        for subscription in self._subscriptions:
            subscription.close()

        for task in [self._schedule_task, *self._consumer_tasks]:
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._schedule_task = None
        self._consumer_tasks = []
        self._subscriptions = []
        self._initialized = False
        logger.info("trigger_scheduler_shutdown")

    # === Registration ===

    def register_workflow(self, definition: WorkflowDefinition) -> List[RegisteredTrigger]:
        """Register all triggers of a workflow, replacing earlier ones."""
        self.unregister_workflow(definition.id)

        registered = []
        for trigger_def in definition.triggers:
            trigger = RegisteredTrigger(
                workflow_id=definition.id,
                definition=trigger_def,
                id=trigger_def.id or str(uuid.uuid4()),
            )
            self._handlers[trigger.type].register(trigger)
            registered.append(trigger)

        self._triggers[definition.id] = registered
        return registered

    def unregister_workflow(self, workflow_id: str) -> int:
        """Remove every trigger of a workflow."""
        triggers = self._triggers.pop(workflow_id, [])
        for trigger in triggers:
            self._handlers[trigger.type].unregister(trigger)
        return len(triggers)

    def attach(self, registry: "WorkflowRegistry") -> None:
        """Follow a registry: register current and future workflows."""
        for definition in registry.list():
            self.register_workflow(definition)
        registry.on_workflow_registered(self.register_workflow)
        registry.on_workflow_removed(lambda d: self.unregister_workflow(d.id))

    def list_triggers(
        self,
        workflow_id: Optional[str] = None,
        trigger_type: Optional[TriggerType] = None,
    ) -> List[RegisteredTrigger]:
        """List registered triggers."""
        if workflow_id is not None:
            triggers = list(self._triggers.get(workflow_id, []))
        else:
            triggers = [t for group in self._triggers.values() for t in group]

        if trigger_type is not None:
            triggers = [t for t in triggers if t.type == trigger_type]

        return triggers

    # === Firing Surfaces ===

    async def tick(self, now: Optional[datetime] = None) -> int:
        """Fire every due scheduled trigger once."""
        now = now or utcnow()
        fired = 0
        for trigger in self.list_triggers(trigger_type=TriggerType.SCHEDULED):
            if not trigger.enabled or not self.schedule.is_due(trigger, now):
                continue
            scheduled_for = trigger.next_fire_at
            self.schedule.advance(trigger, now)
            await self.fire(trigger, {
                "scheduledTime": scheduled_for.isoformat() if scheduled_for else None,
                "cron": trigger.definition.schedule,
            })
            fired += 1
        return fired

    async def handle_event(self, name: str, payload: Optional[Dict[str, Any]] = None) -> List[Any]:
        """Fire every enabled trigger listening for an event name."""
        started = []
        for trigger in self.events.triggers_for(name):
            execution = await self.fire(trigger, {"event": name, "data": payload or {}})
            if execution is not None:
                started.append(execution)
        return started

    async def consume(self, subscription: "Subscription") -> None:
        """Feed events from a bus subscription until it is closed."""
        async for event in subscription:
            await self.handle_event(event.event_type, event.data)

    def start_consumer(self, subscription: "Subscription") -> asyncio.Task:
        """Run consume() in the background until shutdown."""
        task = asyncio.create_task(self.consume(subscription))
        self._subscriptions.append(subscription)
        self._consumer_tasks.append(task)
        return task

    async def handle_metric_sample(self, metric: str, value: float) -> List[Any]:
        """Evaluate threshold triggers for one metric sample."""
        started = []
        for trigger in self.thresholds.triggers_for(metric):
            if self.thresholds.crossed(trigger, value):
                execution = await self.fire(trigger, {"metric": metric, "value": value})
                if execution is not None:
                    started.append(execution)
        return started

    async def trigger_manual(
        self,
        workflow_id: str,
        input: Optional[Dict[str, Any]] = None,
        initiated_by: Optional[str] = None,
    ) -> Any:
        """Start a workflow on behalf of a user."""
        return await self.manual.execute(workflow_id, input, initiated_by)

    async def fire(self, trigger: RegisteredTrigger, payload: Dict[str, Any]) -> Any:
        """Raise one start request for a trigger."""
        trigger.fire_count += 1
        trigger.last_fired_at = utcnow()
        self._stats["fired"] += 1

        logger.info(
            "trigger_fired",
            trigger_id=trigger.id,
            workflow_id=trigger.workflow_id,
            trigger_type=trigger.type.value,
        )

        firing = TriggerFiring(type=trigger.type, trigger_id=trigger.id, payload=payload)
        return await self.request_start(trigger.workflow_id, payload, firing)

    async def request_start(
        self,
        workflow_id: str,
        input: Dict[str, Any],
        firing: TriggerFiring,
    ) -> Any:
        try:
            return await self.start_fn(workflow_id, input=input, trigger=firing)
        except Exception as e:
            self._stats["start_errors"] += 1
            logger.error(
                "trigger_start_error",
                workflow_id=workflow_id,
                trigger_type=firing.type.value,
                error=str(e),
            )
            return None

    # === Background Loop ===

    async def _schedule_loop(self) -> None:
        """Background loop for schedule triggers."""
        while not self._shutdown_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error("schedule_loop_error", error=str(e))

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.poll_interval_seconds,
                )
            except asyncio.TimeoutError:
                pass

    def get_stats(self) -> Dict[str, Any]:
        by_type = {t.value: 0 for t in TriggerType}
        for trigger in self.list_triggers():
            by_type[trigger.type.value] += 1
        return {
            **self._stats,
            "workflows": len(self._triggers),
            "triggers": by_type,
        }
