"""
Conduit Workflow Types

Core dataclasses for workflow definitions and execution.
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
import uuid

from conduit.errors import TerminalStateError


# Parameter maps and capability results are restricted to JSON-like values.
Value = Union[None, bool, int, float, str, List["Value"], Dict[str, "Value"]]


class _Missing:
    """Sentinel for a context path that does not resolve."""

    _instance: Optional["_Missing"] = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def normalize_value(value: Any, path: str = "$") -> Value:
    """
    Validate and normalize a value to the Value union.

    Tuples become lists; mapping keys must be strings; non-finite floats
    and any other type raise TypeError naming the offending path.
    """
    if value is None or isinstance(value, (bool, str, int)):
        return value

    if isinstance(value, float):
        if not math.isfinite(value):
            raise TypeError(f"Non-finite number at {path}")
        return value

    if isinstance(value, (list, tuple)):
        return [normalize_value(item, f"{path}[{i}]") for i, item in enumerate(value)]

    if isinstance(value, Mapping):
        result = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Non-string key {key!r} at {path}")
            result[key] = normalize_value(item, f"{path}.{key}")
        return result

    raise TypeError(f"Unsupported value type {type(value).__name__} at {path}")


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# === Enums ===


class TriggerType(str, Enum):
    """Types of workflow triggers."""
    SCHEDULED = "scheduled"      # Cron-based
    EVENT = "event"              # Named external event
    THRESHOLD = "threshold"      # Metric sample crosses a bound
    MANUAL = "manual"            # User-initiated


class StepType(str, Enum):
    """Informational step categories. Never affects control flow."""
    DETECT = "detect"
    ANALYZE = "analyze"
    DECIDE = "decide"
    EXECUTE = "execute"
    VERIFY = "verify"
    REPORT = "report"


class ConditionOperator(str, Enum):
    """Step condition operators."""
    EQUALS = "="
    NOT_EQUALS = "!="
    GREATER_THAN = ">"
    LESS_THAN = "<"
    GREATER_EQUAL = ">="
    LESS_EQUAL = "<="
    CONTAINS = "contains"
    EXISTS = "exists"
    IN = "in"
    NOT_IN = "not_in"


# Operators accepted by threshold triggers
THRESHOLD_OPERATORS = (
    ConditionOperator.GREATER_THAN,
    ConditionOperator.LESS_THAN,
    ConditionOperator.EQUALS,
    ConditionOperator.GREATER_EQUAL,
    ConditionOperator.LESS_EQUAL,
)


class CombineWith(str, Enum):
    """Logical join between consecutive step conditions."""
    AND = "AND"
    OR = "OR"


class ExecutionStatus(str, Enum):
    """Status of a workflow execution."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"        # Waiting for approval
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})


class StepStatus(str, Enum):
    """Status of a single step execution."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    """Why a step was skipped."""
    CONDITION_NOT_MET = "condition_not_met"
    FALLBACK_REDIRECT = "fallback_redirect"


class NotificationChannelType(str, Enum):
    """Notification delivery channels."""
    EMAIL = "email"
    TEAMS = "teams"
    SLACK = "slack"
    WEBHOOK = "webhook"


class Criticality(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ApprovalStatus(str, Enum):
    """Status of an approval request."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class FlagSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# === Trigger Definition ===


@dataclass(frozen=True)
class TriggerDefinition:
    """A trigger that starts new executions of a workflow."""
    type: TriggerType = TriggerType.MANUAL

    # Scheduled trigger
    schedule: Optional[str] = None      # 5-field cron expression
    timezone: str = "UTC"

    # Event trigger
    event: Optional[str] = None         # e.g. "grid.anomaly.detected"

    # Threshold trigger
    metric: Optional[str] = None
    operator: Optional[ConditionOperator] = None
    value: Optional[float] = None

    # Common
    id: Optional[str] = None
    enabled: bool = True
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result: Dict[str, Any] = {"type": self.type.value}
        if self.id:
            result["id"] = self.id
        if self.type == TriggerType.SCHEDULED:
            result["schedule"] = self.schedule
            result["timezone"] = self.timezone
        elif self.type == TriggerType.EVENT:
            result["event"] = self.event
        elif self.type == TriggerType.THRESHOLD:
            result["metric"] = self.metric
            result["operator"] = self.operator.value if self.operator else None
            result["value"] = self.value
        if not self.enabled:
            result["enabled"] = False
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriggerDefinition":
        """Create from dictionary."""
        # Threshold triggers may nest their comparison under "threshold"
        threshold = data.get("threshold") if isinstance(data.get("threshold"), dict) else {}
        data = {**threshold, **data}
        operator = data.get("operator")
        return cls(
            type=TriggerType(data.get("type", "manual")),
            schedule=data.get("schedule") or data.get("cronExpression"),
            timezone=data.get("timezone", "UTC"),
            event=data.get("event") or data.get("eventName"),
            metric=data.get("metric"),
            operator=ConditionOperator(operator) if operator else None,
            value=data.get("value"),
            id=data.get("id"),
            enabled=data.get("enabled", True),
            description=data.get("description", ""),
        )


# === Conditions ===


@dataclass(frozen=True)
class StepCondition:
    """A gate condition evaluated against the execution context."""
    field: str = ""                     # Dot path, e.g. "context.stepResults.s1.count"
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None
    combine_with: CombineWith = CombineWith.AND

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "field": self.field,
            "operator": self.operator.value,
            "value": self.value,
            "combineWith": self.combine_with.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepCondition":
        """Create from dictionary."""
        return cls(
            field=data.get("field", ""),
            operator=ConditionOperator(data.get("operator", "=")),
            value=normalize_value(data.get("value")),
            combine_with=CombineWith(str(data.get("combineWith", "AND")).upper()),
        )


# === Error Handling ===


@dataclass(frozen=True)
class RetryConfig:
    """Bounded retry with exponential backoff. Delays are milliseconds."""
    attempts: int = 1
    delay: float = 0.0
    backoff_multiplier: Optional[float] = None
    max_delay: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"attempts": self.attempts, "delay": self.delay}
        if self.backoff_multiplier is not None:
            result["backoffMultiplier"] = self.backoff_multiplier
        if self.max_delay is not None:
            result["maxDelay"] = self.max_delay
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryConfig":
        return cls(
            attempts=int(data.get("attempts", 1)),
            delay=float(data.get("delay", 0)),
            backoff_multiplier=data.get("backoffMultiplier"),
            max_delay=data.get("maxDelay"),
        )


# Applied when a step declares no retry policy
NO_RETRY = RetryConfig()


@dataclass(frozen=True)
class NotificationConfig:
    """Who to notify when a step fails."""
    channels: Tuple[NotificationChannelType, ...] = ()
    recipients: Tuple[str, ...] = ()
    template: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "channels": [c.value for c in self.channels],
            "recipients": list(self.recipients),
        }
        if self.template:
            result["template"] = self.template
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationConfig":
        return cls(
            channels=tuple(NotificationChannelType(c) for c in data.get("channels", [])),
            recipients=tuple(data.get("recipients", [])),
            template=data.get("template"),
        )


@dataclass(frozen=True)
class ErrorHandling:
    """Per-step failure policy. All parts are optional and independent."""
    retry: Optional[RetryConfig] = None
    fallback: Optional[str] = None      # Step ID to continue from
    escalate: bool = False
    notification: Optional[NotificationConfig] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.retry:
            result["retry"] = self.retry.to_dict()
        if self.fallback:
            result["fallback"] = self.fallback
        if self.escalate:
            result["escalate"] = True
        if self.notification:
            result["notification"] = self.notification.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorHandling":
        return cls(
            retry=RetryConfig.from_dict(data["retry"]) if data.get("retry") else None,
            fallback=data.get("fallback"),
            escalate=bool(data.get("escalate", False)),
            notification=(
                NotificationConfig.from_dict(data["notification"])
                if data.get("notification") else None
            ),
        )


# === Step Definition ===


@dataclass(frozen=True)
class StepDefinition:
    """A step in a workflow, bound to an external capability."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    description: str = ""
    type: StepType = StepType.EXECUTE

    # Capability
    agent: str = ""
    service: Optional[str] = None
    action: str = ""
    parameters: Dict[str, Value] = field(default_factory=dict)

    # Flow control
    conditions: Tuple[StepCondition, ...] = ()
    human_approval_required: bool = False

    # Outputs
    outputs: Tuple[str, ...] = ()
    output_bindings: Dict[str, str] = field(default_factory=dict)  # output -> variable

    timeout: Optional[float] = None     # Milliseconds per attempt
    error_handling: ErrorHandling = field(default_factory=ErrorHandling)

    @property
    def retry_policy(self) -> RetryConfig:
        return self.error_handling.retry or NO_RETRY

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "agent": self.agent,
            "service": self.service,
            "action": self.action,
            "parameters": copy.deepcopy(self.parameters),
            "outputs": list(self.outputs),
            "errorHandling": self.error_handling.to_dict(),
        }
        if self.description:
            result["description"] = self.description
        if self.conditions:
            result["conditions"] = [c.to_dict() for c in self.conditions]
        if self.human_approval_required:
            result["humanApprovalRequired"] = True
        if self.output_bindings:
            result["outputBindings"] = dict(self.output_bindings)
        if self.timeout is not None:
            result["timeout"] = self.timeout
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepDefinition":
        """Create from dictionary."""
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            name=data.get("name", ""),
            description=data.get("description", ""),
            type=StepType(data.get("type", "execute")),
            agent=data.get("agent", ""),
            service=data.get("service"),
            action=data.get("action", ""),
            parameters=normalize_value(data.get("parameters") or {}, "parameters"),
            conditions=tuple(StepCondition.from_dict(c) for c in data.get("conditions") or []),
            human_approval_required=bool(data.get("humanApprovalRequired", False)),
            outputs=tuple(data.get("outputs") or []),
            output_bindings=dict(data.get("outputBindings") or {}),
            timeout=data.get("timeout"),
            error_handling=ErrorHandling.from_dict(data.get("errorHandling") or {}),
        )


# === Workflow Definition ===


@dataclass(frozen=True)
class WorkflowMetadata:
    """Descriptive information about a workflow."""
    required_services: Tuple[str, ...] = ()
    required_agents: Tuple[str, ...] = ()
    estimated_duration: Optional[float] = None   # Milliseconds
    criticality: Criticality = Criticality.MEDIUM
    compliance: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requiredServices": list(self.required_services),
            "requiredAgents": list(self.required_agents),
            "estimatedDuration": self.estimated_duration,
            "criticality": self.criticality.value,
            "compliance": list(self.compliance),
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowMetadata":
        return cls(
            required_services=tuple(data.get("requiredServices", [])),
            required_agents=tuple(data.get("requiredAgents", [])),
            estimated_duration=data.get("estimatedDuration"),
            criticality=Criticality(data.get("criticality", "medium")),
            compliance=tuple(data.get("compliance", [])),
            tags=tuple(data.get("tags", [])),
        )


@dataclass(frozen=True)
class WorkflowDefinition:
    """
    An immutable workflow template.

    Shared read-only by every execution that references it.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    use_case_id: str = ""
    name: str = ""
    description: str = ""
    version: str = "1.0.0"
    industry: str = ""

    steps: Tuple[StepDefinition, ...] = ()
    triggers: Tuple[TriggerDefinition, ...] = ()
    metadata: WorkflowMetadata = field(default_factory=WorkflowMetadata)

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        """Get a step by ID."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_index(self, step_id: str) -> int:
        """Position of a step in definition order, -1 if absent."""
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return -1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "useCaseId": self.use_case_id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "industry": self.industry,
            "triggers": [t.to_dict() for t in self.triggers],
            "steps": [s.to_dict() for s in self.steps],
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        """Create from dictionary."""
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            use_case_id=data.get("useCaseId", ""),
            name=data.get("name", ""),
            description=data.get("description", ""),
            version=str(data.get("version", "1.0.0")),
            industry=data.get("industry", ""),
            steps=tuple(StepDefinition.from_dict(s) for s in data.get("steps", [])),
            triggers=tuple(TriggerDefinition.from_dict(t) for t in data.get("triggers", [])),
            metadata=WorkflowMetadata.from_dict(data.get("metadata") or {}),
        )


# === Execution Types ===


@dataclass
class WorkflowError:
    """Terminal error of a failed execution."""
    code: str = ""
    message: str = ""
    step_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "stepId": self.step_id,
            "details": copy.deepcopy(self.details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowError":
        return cls(
            code=data.get("code", ""),
            message=data.get("message", ""),
            step_id=data.get("stepId"),
            details=data.get("details") or {},
        )


@dataclass
class ExecutionFlag:
    """An advisory, non-fatal marker raised during execution."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    type: str = ""
    severity: FlagSeverity = FlagSeverity.WARNING
    message: str = ""
    step_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    raised_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity.value,
            "message": self.message,
            "stepId": self.step_id,
            "details": copy.deepcopy(self.details),
            "raisedAt": self.raised_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionFlag":
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            type=data.get("type", ""),
            severity=FlagSeverity(data.get("severity", "warning")),
            message=data.get("message", ""),
            step_id=data.get("stepId"),
            details=data.get("details") or {},
            raised_at=_parse_datetime(data.get("raisedAt")) or utcnow(),
        )


@dataclass
class NotificationRecord:
    """A notification the engine handed to the delivery system."""
    step_id: str = ""
    channels: List[str] = field(default_factory=list)
    recipients: List[str] = field(default_factory=list)
    template: Optional[str] = None
    reason: str = ""
    dispatched_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stepId": self.step_id,
            "channels": list(self.channels),
            "recipients": list(self.recipients),
            "template": self.template,
            "reason": self.reason,
            "dispatchedAt": self.dispatched_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationRecord":
        return cls(
            step_id=data.get("stepId", ""),
            channels=list(data.get("channels", [])),
            recipients=list(data.get("recipients", [])),
            template=data.get("template"),
            reason=data.get("reason", ""),
            dispatched_at=_parse_datetime(data.get("dispatchedAt")) or utcnow(),
        )


@dataclass
class ExecutionMetrics:
    """Aggregated counters for one execution."""
    step_durations: Dict[str, float] = field(default_factory=dict)  # ms
    retry_count: int = 0
    error_count: int = 0
    flag_count: int = 0
    total_duration: Optional[float] = None  # ms, set on terminal state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stepDurations": dict(self.step_durations),
            "retryCount": self.retry_count,
            "errorCount": self.error_count,
            "flagCount": self.flag_count,
            "totalDuration": self.total_duration,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionMetrics":
        return cls(
            step_durations=dict(data.get("stepDurations", {})),
            retry_count=data.get("retryCount", 0),
            error_count=data.get("errorCount", 0),
            flag_count=data.get("flagCount", 0),
            total_duration=data.get("totalDuration"),
        )


@dataclass
class StepExecution:
    """Runtime record of one step."""
    step_id: str = ""
    status: StepStatus = StepStatus.PENDING

    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    skip_reason: Optional[SkipReason] = None

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None  # ms

    attempts: int = 0
    retry_count: int = 0
    notification_sent: bool = False

    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stepId": self.step_id,
            "status": self.status.value,
            "result": copy.deepcopy(self.result),
            "error": self.error,
            "errorCode": self.error_code,
            "skipReason": self.skip_reason.value if self.skip_reason else None,
            "startedAt": _format_datetime(self.started_at),
            "completedAt": _format_datetime(self.completed_at),
            "duration": self.duration,
            "attempts": self.attempts,
            "retryCount": self.retry_count,
            "notificationSent": self.notification_sent,
            "approvedBy": self.approved_by,
            "approvedAt": _format_datetime(self.approved_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepExecution":
        skip_reason = data.get("skipReason")
        return cls(
            step_id=data.get("stepId", ""),
            status=StepStatus(data.get("status", "pending")),
            result=data.get("result"),
            error=data.get("error"),
            error_code=data.get("errorCode"),
            skip_reason=SkipReason(skip_reason) if skip_reason else None,
            started_at=_parse_datetime(data.get("startedAt")),
            completed_at=_parse_datetime(data.get("completedAt")),
            duration=data.get("duration"),
            attempts=data.get("attempts", 0),
            retry_count=data.get("retryCount", 0),
            notification_sent=data.get("notificationSent", False),
            approved_by=data.get("approvedBy"),
            approved_at=_parse_datetime(data.get("approvedAt")),
        )


@dataclass
class TriggerFiring:
    """What started an execution."""
    type: TriggerType = TriggerType.MANUAL
    trigger_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    fired_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "triggerId": self.trigger_id,
            "payload": copy.deepcopy(self.payload),
            "firedAt": self.fired_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriggerFiring":
        return cls(
            type=TriggerType(data.get("type", "manual")),
            trigger_id=data.get("triggerId"),
            payload=data.get("payload") or {},
            fired_at=_parse_datetime(data.get("firedAt")) or utcnow(),
        )


@dataclass
class WorkflowContext:
    """
    Execution-scoped scratch space shared by the steps of one execution.

    Steps communicate only through this object: `step_results` is keyed by
    step id and only written for completed steps.
    """
    input: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    step_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input": copy.deepcopy(self.input),
            "variables": copy.deepcopy(self.variables),
            "stepResults": copy.deepcopy(self.step_results),
            "metadata": copy.deepcopy(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowContext":
        return cls(
            input=data.get("input") or {},
            variables=data.get("variables") or {},
            step_results=data.get("stepResults") or {},
            metadata=data.get("metadata") or {},
        )


@dataclass
class WorkflowExecution:
    """
    A single run of a workflow.

    Owned by the engine. Once the status is terminal every mutating
    method raises TerminalStateError.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str = ""
    use_case_id: str = ""
    workflow_version: str = "1.0.0"

    # State
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step: Optional[str] = None
    steps: List[StepExecution] = field(default_factory=list)
    context: WorkflowContext = field(default_factory=WorkflowContext)

    # Outcome
    flags: List[ExecutionFlag] = field(default_factory=list)
    error: Optional[WorkflowError] = None
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    notifications: List[NotificationRecord] = field(default_factory=list)

    # Trigger info
    trigger: TriggerFiring = field(default_factory=TriggerFiring)
    cancel_requested: bool = False

    # Timing
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def is_terminal(self) -> bool:
        """Check if execution is in a terminal state."""
        return self.status in TERMINAL_STATUSES

    def ensure_mutable(self) -> None:
        """Raise if the execution may no longer change."""
        if self.is_terminal():
            raise TerminalStateError(self.id, self.status.value)

    def get_step(self, step_id: str) -> Optional[StepExecution]:
        """Get the runtime record for a step."""
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    # === Transitions ===

    def start(self) -> None:
        """Mark execution as running (first start or resume)."""
        self.ensure_mutable()
        self.status = ExecutionStatus.RUNNING
        if self.started_at is None:
            self.started_at = utcnow()

    def pause(self, step_id: str) -> None:
        """Suspend at a step until approval arrives."""
        self.ensure_mutable()
        self.status = ExecutionStatus.PAUSED
        self.current_step = step_id

    def complete(self) -> None:
        """Mark execution as completed."""
        self._finish(ExecutionStatus.COMPLETED)
        self.current_step = None

    def fail(self, error: WorkflowError) -> None:
        """Mark execution as failed."""
        self.error = error
        self._finish(ExecutionStatus.FAILED)

    def cancel(self) -> None:
        """Mark execution as cancelled."""
        self._finish(ExecutionStatus.CANCELLED)
        self.cancel_requested = True

    def _finish(self, status: ExecutionStatus) -> None:
        self.ensure_mutable()
        self.status = status
        self.completed_at = utcnow()
        if self.started_at:
            self.metrics.total_duration = (
                self.completed_at - self.started_at
            ).total_seconds() * 1000

    # === Side records ===

    def add_flag(self, flag: ExecutionFlag) -> None:
        self.ensure_mutable()
        self.flags.append(flag)
        self.metrics.flag_count += 1

    def add_notification(self, record: NotificationRecord) -> None:
        self.ensure_mutable()
        self.notifications.append(record)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "useCaseId": self.use_case_id,
            "workflowVersion": self.workflow_version,
            "status": self.status.value,
            "currentStep": self.current_step,
            "steps": [s.to_dict() for s in self.steps],
            "context": self.context.to_dict(),
            "flags": [f.to_dict() for f in self.flags],
            "error": self.error.to_dict() if self.error else None,
            "metrics": self.metrics.to_dict(),
            "notifications": [n.to_dict() for n in self.notifications],
            "trigger": self.trigger.to_dict(),
            "cancelRequested": self.cancel_requested,
            "createdAt": self.created_at.isoformat(),
            "startedAt": _format_datetime(self.started_at),
            "completedAt": _format_datetime(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowExecution":
        """Create from dictionary."""
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            workflow_id=data.get("workflowId", ""),
            use_case_id=data.get("useCaseId", ""),
            workflow_version=data.get("workflowVersion", "1.0.0"),
            status=ExecutionStatus(data.get("status", "pending")),
            current_step=data.get("currentStep"),
            steps=[StepExecution.from_dict(s) for s in data.get("steps", [])],
            context=WorkflowContext.from_dict(data.get("context") or {}),
            flags=[ExecutionFlag.from_dict(f) for f in data.get("flags", [])],
            error=WorkflowError.from_dict(data["error"]) if data.get("error") else None,
            metrics=ExecutionMetrics.from_dict(data.get("metrics") or {}),
            notifications=[
                NotificationRecord.from_dict(n) for n in data.get("notifications", [])
            ],
            trigger=TriggerFiring.from_dict(data.get("trigger") or {}),
            cancel_requested=data.get("cancelRequested", False),
            created_at=_parse_datetime(data.get("createdAt")) or utcnow(),
            started_at=_parse_datetime(data.get("startedAt")),
            completed_at=_parse_datetime(data.get("completedAt")),
        )

    def summary(self) -> Dict[str, Any]:
        """Read-only status snapshot for dashboards."""
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "useCaseId": self.use_case_id,
            "status": self.status.value,
            "currentStep": self.current_step,
            "startedAt": _format_datetime(self.started_at),
            "completedAt": _format_datetime(self.completed_at),
            "error": self.error.to_dict() if self.error else None,
            "flagCount": self.metrics.flag_count,
            "metrics": self.metrics.to_dict(),
            "steps": [
                {"stepId": s.step_id, "status": s.status.value, "retryCount": s.retry_count}
                for s in self.steps
            ],
        }


# === Approval Types ===


@dataclass
class ApprovalRequest:
    """A human approval checkpoint for one step of one execution."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str = ""
    step_id: str = ""
    workflow_id: str = ""
    reason: str = "human_approval_required"   # or "operator_pause"

    status: ApprovalStatus = ApprovalStatus.PENDING
    responded_by: Optional[str] = None
    response_message: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    responded_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "executionId": self.execution_id,
            "stepId": self.step_id,
            "workflowId": self.workflow_id,
            "reason": self.reason,
            "status": self.status.value,
            "respondedBy": self.responded_by,
            "responseMessage": self.response_message,
            "createdAt": self.created_at.isoformat(),
            "respondedAt": _format_datetime(self.responded_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalRequest":
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            execution_id=data.get("executionId", ""),
            step_id=data.get("stepId", ""),
            workflow_id=data.get("workflowId", ""),
            reason=data.get("reason", "human_approval_required"),
            status=ApprovalStatus(data.get("status", "pending")),
            responded_by=data.get("respondedBy"),
            response_message=data.get("responseMessage"),
            created_at=_parse_datetime(data.get("createdAt")) or utcnow(),
            responded_at=_parse_datetime(data.get("respondedAt")),
        )


# === Event Types ===


@dataclass
class WorkflowEvent:
    """An event published on the event bus."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = ""
    source: str = "engine"
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    # Optional context
    workflow_id: Optional[str] = None
    execution_id: Optional[str] = None
    step_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "event_type": self.event_type,
            "source": self.source,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "step_id": self.step_id,
        }
