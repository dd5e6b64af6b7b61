"""
Conduit Errors

Exception taxonomy for workflow definition, invocation and execution.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ConduitError(Exception):
    """Base exception for all Conduit errors."""

    code = "ConduitError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(ConduitError):
    """Raised when a workflow definition fails validation."""

    code = "ConfigurationError"

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        self.problems = list(problems or [])
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message, {"problems": self.problems})


class ConditionEvaluationError(ConduitError):
    """Raised for a malformed condition field path."""

    code = "ConditionEvaluationError"

    def __init__(self, field: str, reason: str):
        self.field = field
        super().__init__(f"Cannot evaluate field {field!r}: {reason}", {"field": field})


# === Capability Failures ===


class CapabilityFailure(ConduitError):
    """
    A failed capability invocation.

    Subclasses declare whether the failure is worth retrying.
    """

    code = "CapabilityFailure"
    retryable = False

    def __init__(
        self,
        message: str,
        agent: Optional[str] = None,
        service: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.agent = agent
        self.service = service
        self.action = action
        super().__init__(message, details)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "agent": self.agent,
            "service": self.service,
            "action": self.action,
            "retryable": self.retryable,
        }


class CapabilityUnreachable(CapabilityFailure):
    """Transport-level failure reaching the capability."""

    code = "Unreachable"
    retryable = True


class CapabilityTimeout(CapabilityFailure):
    """The invocation did not answer within the step timeout."""

    code = "Timeout"
    retryable = True


class CapabilityRejected(CapabilityFailure):
    """The capability refused the request. Never retried."""

    code = "Rejected"
    retryable = False


class CapabilityInternalError(CapabilityFailure):
    """Agent-side fault. Retried under a tighter cap."""

    code = "InternalError"
    retryable = True


class RetryExhausted(ConduitError):
    """Raised when every allowed attempt failed with a retryable failure."""

    code = "RetryExhausted"

    def __init__(self, last_failure: CapabilityFailure, attempts: int):
        self.last_failure = last_failure
        self.attempts = attempts
        super().__init__(
            f"Retries exhausted after {attempts} attempt(s): {last_failure.message}",
            {"attempts": attempts, "lastFailure": last_failure.to_dict()},
        )


class ApprovalRejected(ConduitError):
    """An approver explicitly denied a paused step."""

    code = "ApprovalRejected"

    def __init__(self, step_id: str, reason: str = ""):
        self.step_id = step_id
        self.reason = reason
        super().__init__(
            f"Approval rejected for step {step_id}" + (f": {reason}" if reason else ""),
            {"reason": reason},
        )


class ExecutionCancelled(ConduitError):
    """Raised at a suspension point once cancellation was requested."""

    code = "Cancelled"

    def __init__(self, execution_id: Optional[str] = None):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} cancelled" if execution_id else "Execution cancelled")


class TerminalStateError(ConduitError):
    """Raised when mutating an execution that already reached a terminal status."""

    code = "TerminalState"

    def __init__(self, execution_id: str, status: str):
        self.execution_id = execution_id
        self.status = status
        super().__init__(f"Execution {execution_id} is {status} and cannot be modified")


class WorkflowNotFoundError(ConduitError):
    """Raised when a workflow id is not registered."""

    code = "WorkflowNotFound"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")
