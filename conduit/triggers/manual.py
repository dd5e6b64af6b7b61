"""
Conduit Manual Trigger Handler

User-initiated manual triggers.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog

from conduit.triggers.scheduler import BaseTriggerHandler, RegisteredTrigger
from conduit.types import TriggerFiring, TriggerType

logger = structlog.get_logger(__name__)


class ManualTriggerHandler(BaseTriggerHandler):
    """
    Handler for manual triggers.

    Any registered workflow may be started manually, whether or not
    it declares a manual trigger.
    """

    def register(self, trigger: RegisteredTrigger) -> None:
        """Register a manual trigger."""
        logger.info(
            "manual_trigger_registered",
            trigger_id=trigger.id,
            workflow_id=trigger.workflow_id,
        )

    def unregister(self, trigger: RegisteredTrigger) -> None:
        """Unregister a manual trigger."""
        logger.info("manual_trigger_unregistered", trigger_id=trigger.id)

    async def execute(
        self,
        workflow_id: str,
        input: Optional[Dict[str, Any]] = None,
        initiated_by: Optional[str] = None,
    ) -> Any:
        """
        Manually start a workflow.

        Args:
            workflow_id: Workflow to start
            input: Execution input
            initiated_by: User who started it

        Returns:
            The started execution, or None when the start failed
        """
        declared = self.scheduler.list_triggers(workflow_id, TriggerType.MANUAL)
        firing = TriggerFiring(
            type=TriggerType.MANUAL,
            trigger_id=declared[0].id if declared else None,
            payload={"initiatedBy": initiated_by} if initiated_by else {},
        )
        if declared:
            declared[0].fire_count += 1

        logger.info(
            "manual_trigger_executed",
            workflow_id=workflow_id,
            initiated_by=initiated_by,
        )

        return await self.scheduler.request_start(workflow_id, input or {}, firing)
