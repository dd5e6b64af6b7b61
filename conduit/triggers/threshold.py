"""
Conduit Threshold Trigger Handler

Metric threshold triggers.
"""

from __future__ import annotations

from typing import Dict, List

import structlog

from conduit.conditions.operators import compare
from conduit.triggers.scheduler import BaseTriggerHandler, RegisteredTrigger

logger = structlog.get_logger(__name__)


class ThresholdTriggerHandler(BaseTriggerHandler):
    """
    Handler for metric threshold triggers.

    A trigger fires when its comparison turns true and re-arms once a
    sample makes it false again. The first sample counts as a crossing
    when it already satisfies the comparison.
    """

    def __init__(self, scheduler):
        super().__init__(scheduler)
        self._triggers: Dict[str, RegisteredTrigger] = {}

    def register(self, trigger: RegisteredTrigger) -> None:
        """Register a threshold trigger."""
        trigger.last_result = None
        self._triggers[trigger.key] = trigger

        config = trigger.definition
        logger.info(
            "threshold_trigger_registered",
            trigger_id=trigger.id,
            workflow_id=trigger.workflow_id,
            metric=config.metric,
            operator=config.operator.value if config.operator else None,
            value=config.value,
        )

    def unregister(self, trigger: RegisteredTrigger) -> None:
        """Unregister a threshold trigger."""
        self._triggers.pop(trigger.key, None)
        logger.info("threshold_trigger_unregistered", trigger_id=trigger.id)

    def triggers_for(self, metric: str) -> List[RegisteredTrigger]:
        """Enabled triggers watching a metric."""
        return [
            t for t in self._triggers.values()
            if t.enabled and t.definition.metric == metric
        ]

    def crossed(self, trigger: RegisteredTrigger, value: float) -> bool:
        """Record a sample; True on a false-to-true transition."""
        config = trigger.definition
        result = compare(value, config.operator, config.value)
        previous = trigger.last_result
        trigger.last_result = result

        if result and not previous:
            logger.debug(
                "threshold_crossed",
                trigger_id=trigger.id,
                metric=config.metric,
                value=value,
            )
            return True
        return False
