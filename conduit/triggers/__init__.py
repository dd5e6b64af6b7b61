"""
Conduit Workflow Triggers

Trigger types for workflow activation:
- Scheduled (cron-based)
- Event (named events)
- Threshold (metric samples)
- Manual (user-initiated)
"""

from conduit.triggers.scheduler import BaseTriggerHandler, RegisteredTrigger, TriggerScheduler
from conduit.triggers.schedule import ScheduleTriggerHandler
from conduit.triggers.event import EventTriggerHandler
from conduit.triggers.threshold import ThresholdTriggerHandler
from conduit.triggers.manual import ManualTriggerHandler

__all__ = [
    "TriggerScheduler",
    "RegisteredTrigger",
    "BaseTriggerHandler",
    "ScheduleTriggerHandler",
    "EventTriggerHandler",
    "ThresholdTriggerHandler",
    "ManualTriggerHandler",
]
