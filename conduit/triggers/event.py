"""
Conduit Event Trigger Handler

Named event triggers.
"""

from __future__ import annotations

from typing import Dict, List

import structlog

from conduit.events import pattern_matches
from conduit.triggers.scheduler import BaseTriggerHandler, RegisteredTrigger

logger = structlog.get_logger(__name__)


class EventTriggerHandler(BaseTriggerHandler):
    """
    Handler for event triggers.

    Features:
    - Exact event names ("grid.anomaly.detected")
    - Segment patterns ("grid.*.detected", "grid.#")
    """

    def __init__(self, scheduler):
        super().__init__(scheduler)
        self._triggers: Dict[str, RegisteredTrigger] = {}

    def register(self, trigger: RegisteredTrigger) -> None:
        """Register an event trigger."""
        self._triggers[trigger.key] = trigger
        logger.info(
            "event_trigger_registered",
            trigger_id=trigger.id,
            workflow_id=trigger.workflow_id,
            event=trigger.definition.event,
        )

    def unregister(self, trigger: RegisteredTrigger) -> None:
        """Unregister an event trigger."""
        self._triggers.pop(trigger.key, None)
        logger.info("event_trigger_unregistered", trigger_id=trigger.id)

    def triggers_for(self, name: str) -> List[RegisteredTrigger]:
        """Enabled triggers listening for an event name."""
        return [
            t for t in self._triggers.values()
            if t.enabled and t.definition.event and pattern_matches(t.definition.event, name)
        ]
