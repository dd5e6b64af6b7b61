"""
Conduit Schedule Trigger Handler

Cron-based schedule triggers.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

import pytz
import structlog
from croniter import croniter

from conduit.triggers.scheduler import BaseTriggerHandler, RegisteredTrigger
from conduit.types import utcnow

logger = structlog.get_logger(__name__)


class ScheduleTriggerHandler(BaseTriggerHandler):
    """
    Handler for schedule (cron) triggers.

    Features:
    - 5-field cron expressions
    - Timezone support (fire times are computed in the trigger timezone)
    - Missed fire times collapse into one firing
    """

    def register(self, trigger: RegisteredTrigger) -> None:
        """Register a schedule trigger."""
        config = trigger.definition
        trigger.next_fire_at = self.next_fire_at(config.schedule, config.timezone, utcnow())

        logger.info(
            "schedule_registered",
            trigger_id=trigger.id,
            workflow_id=trigger.workflow_id,
            cron=config.schedule,
            timezone=config.timezone,
            next_fire_at=trigger.next_fire_at.isoformat() if trigger.next_fire_at else None,
        )

    def unregister(self, trigger: RegisteredTrigger) -> None:
        """Unregister a schedule trigger."""
        trigger.next_fire_at = None
        logger.info("schedule_unregistered", trigger_id=trigger.id)

    def is_due(self, trigger: RegisteredTrigger, now: datetime) -> bool:
        return trigger.next_fire_at is not None and trigger.next_fire_at <= now

    def advance(self, trigger: RegisteredTrigger, now: datetime) -> None:
        """Move to the first fire time strictly after now."""
        config = trigger.definition
        trigger.next_fire_at = self.next_fire_at(config.schedule, config.timezone, now)

    @staticmethod
    def next_fire_at(
        expression: Optional[str],
        timezone: str = "UTC",
        after: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Next fire time after a moment, in UTC."""
        if not expression:
            return None
        try:
            tz = pytz.timezone(timezone)
            start = (after or utcnow()).astimezone(tz)
            next_time = croniter(expression, start).get_next(datetime)
            return next_time.astimezone(pytz.utc)
        except Exception as e:
            logger.error("cron_calculation_error", cron=expression, error=str(e))
            return None

    @staticmethod
    def next_fire_times(
        expression: str,
        timezone: str = "UTC",
        start: Optional[datetime] = None,
        count: int = 5,
    ) -> List[datetime]:
        """The next `count` fire times, in the trigger timezone."""
        tz = pytz.timezone(timezone)
        cron = croniter(expression, (start or utcnow()).astimezone(tz))
        return [cron.get_next(datetime) for _ in range(count)]

    @staticmethod
    def validate_cron(expression: str) -> bool:
        """Validate a 5-field cron expression."""
        return (
            bool(expression)
            and len(expression.split()) == 5
            and croniter.is_valid(expression)
        )
