"""
Conduit Workflow Orchestration

Declarative multi-step workflows started by schedules, events, metric
thresholds or manual requests, executed step by step against external
capability providers.

Core Features:
- Condition-gated steps with human approval checkpoints
- Retry with exponential backoff, fallback, escalation and notifications
- Cooperative cancellation and operator pause/resume
- Persistence of every execution transition
- Cron, event, threshold and manual triggers
"""

__version__ = "1.0.0"

from conduit.types import (
    # Enums
    TriggerType,
    StepType,
    ConditionOperator,
    CombineWith,
    ExecutionStatus,
    StepStatus,
    SkipReason,
    FlagSeverity,
    ApprovalStatus,
    # Definitions
    TriggerDefinition,
    StepCondition,
    RetryConfig,
    NotificationConfig,
    ErrorHandling,
    StepDefinition,
    WorkflowMetadata,
    WorkflowDefinition,
    # Execution
    WorkflowContext,
    StepExecution,
    ExecutionMetrics,
    ExecutionFlag,
    WorkflowError,
    WorkflowExecution,
    TriggerFiring,
    # Approvals and events
    ApprovalRequest,
    WorkflowEvent,
    MISSING,
)
from conduit.errors import (
    ConduitError,
    ConfigurationError,
    ConditionEvaluationError,
    CapabilityFailure,
    CapabilityUnreachable,
    CapabilityTimeout,
    CapabilityRejected,
    CapabilityInternalError,
    RetryExhausted,
    ApprovalRejected,
    ExecutionCancelled,
    TerminalStateError,
    WorkflowNotFoundError,
)
from conduit.config import ConduitConfig, get_config, set_config, reset_config
from conduit.engine import WorkflowEngine
from conduit.registry import WorkflowRegistry
from conduit.events import EventBus, Subscription
from conduit.capabilities.invoker import CapabilityInvoker, CapabilityProvider, FunctionProvider
from conduit.conditions.evaluator import ConditionEvaluator
from conduit.approval.manager import ApprovalManager
from conduit.notifications import NotificationDispatcher
from conduit.execution.store import ExecutionStore, InMemoryExecutionStore, JsonFileExecutionStore
from conduit.triggers.scheduler import TriggerScheduler
from conduit.observability import setup_logging

__all__ = [
    "__version__",
    # Enums
    "TriggerType",
    "StepType",
    "ConditionOperator",
    "CombineWith",
    "ExecutionStatus",
    "StepStatus",
    "SkipReason",
    "FlagSeverity",
    "ApprovalStatus",
    # Definitions
    "TriggerDefinition",
    "StepCondition",
    "RetryConfig",
    "NotificationConfig",
    "ErrorHandling",
    "StepDefinition",
    "WorkflowMetadata",
    "WorkflowDefinition",
    # Execution
    "WorkflowContext",
    "StepExecution",
    "ExecutionMetrics",
    "ExecutionFlag",
    "WorkflowError",
    "WorkflowExecution",
    "TriggerFiring",
    "ApprovalRequest",
    "WorkflowEvent",
    "MISSING",
    # Errors
    "ConduitError",
    "ConfigurationError",
    "ConditionEvaluationError",
    "CapabilityFailure",
    "CapabilityUnreachable",
    "CapabilityTimeout",
    "CapabilityRejected",
    "CapabilityInternalError",
    "RetryExhausted",
    "ApprovalRejected",
    "ExecutionCancelled",
    "TerminalStateError",
    "WorkflowNotFoundError",
    # Components
    "ConduitConfig",
    "get_config",
    "set_config",
    "reset_config",
    "WorkflowEngine",
    "WorkflowRegistry",
    "EventBus",
    "Subscription",
    "CapabilityInvoker",
    "CapabilityProvider",
    "FunctionProvider",
    "ConditionEvaluator",
    "ApprovalManager",
    "NotificationDispatcher",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "JsonFileExecutionStore",
    "TriggerScheduler",
    "setup_logging",
]
