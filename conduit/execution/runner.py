"""
Conduit Step Runner

Runs one step: condition gate, approval gate, capability invocation
under the retry policy, output capture and error-handling dispatch.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from conduit.capabilities.invoker import CapabilityInvoker
from conduit.conditions.evaluator import ConditionEvaluator
from conduit.errors import CapabilityFailure, ConduitError, ExecutionCancelled, RetryExhausted
from conduit.execution.context import ExecutionContext
from conduit.execution.retry import CancellationToken, RetryPolicyExecutor
from conduit.notifications import Notification, NotificationDispatcher
from conduit.types import (
    ExecutionFlag,
    FlagSeverity,
    NotificationRecord,
    SkipReason,
    StepDefinition,
    StepExecution,
    StepStatus,
    WorkflowError,
    WorkflowExecution,
    utcnow,
)

logger = structlog.get_logger(__name__)


class StepOutcome(str, Enum):
    """Result of running one step."""
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    AWAITING_APPROVAL = "awaiting_approval"


@dataclass
class StepRunResult:
    """What the engine needs to decide the next transition."""
    outcome: StepOutcome
    step_id: str
    error: Optional[WorkflowError] = None
    fallback: Optional[str] = None
    escalate: bool = False
    permanent: bool = False


Checkpoint = Callable[[WorkflowExecution], Awaitable[None]]
Publish = Callable[..., Any]


def extract_flags(step: StepDefinition, result: Dict[str, Any]) -> List[ExecutionFlag]:
    """
    Advisory flags reported by a capability result.

    Accepts a `flags` list, a single `flag`, or a critical `severity` /
    `alertLevel` which becomes a critical_issue flag.
    """
    raw: List[Any] = []
    if isinstance(result.get("flags"), list):
        raw = result["flags"]
    elif result.get("flag"):
        raw = [result["flag"]]
    elif result.get("severity") == "critical" or result.get("alertLevel") == "critical":
        raw = [{
            "type": "critical_issue",
            "severity": "critical",
            "message": result.get("message") or "Critical issue detected",
            "details": result,
        }]

    flags = []
    for item in raw:
        if isinstance(item, dict):
            try:
                severity = FlagSeverity(item.get("severity", "warning"))
            except ValueError:
                severity = FlagSeverity.WARNING
            flags.append(ExecutionFlag(
                type=str(item.get("type", "flag")),
                severity=severity,
                message=str(item.get("message", "")),
                step_id=step.id,
                details=item.get("details") if isinstance(item.get("details"), dict) else {},
            ))
        else:
            flags.append(ExecutionFlag(type="flag", message=str(item), step_id=step.id))
    return flags


class StepRunner:
    """
    Runs workflow steps for the engine.

    Features:
    - Condition gating (skipped steps never reach the invoker)
    - Human approval suspension before any invocation
    - Parameter template resolution
    - Retry with backoff, per-attempt timeout
    - Output capture, variable binding and flag extraction
    - Fallback / escalate decision and failure notifications
    """

    def __init__(
        self,
        invoker: CapabilityInvoker,
        retry_executor: RetryPolicyExecutor,
        evaluator: Optional[ConditionEvaluator] = None,
        notifier: Optional[NotificationDispatcher] = None,
        checkpoint: Optional[Checkpoint] = None,
        publish: Optional[Publish] = None,
        default_timeout_ms: Optional[float] = None,
    ):
        self.invoker = invoker
        self.retry_executor = retry_executor
        self.evaluator = evaluator or ConditionEvaluator()
        self.notifier = notifier
        self.default_timeout_ms = default_timeout_ms
        self._checkpoint = checkpoint
        self._publish = publish

    async def run_step(
        self,
        step: StepDefinition,
        execution: WorkflowExecution,
        context: ExecutionContext,
        token: Optional[CancellationToken] = None,
        approved: bool = False,
    ) -> StepRunResult:
        """
        Run one step of an execution.

        Args:
            step: Step definition
            execution: Owning execution
            context: Context view of the execution
            token: Cancellation token
            approved: The step already passed its approval checkpoint;
                conditions are not re-evaluated

        Raises:
            ExecutionCancelled: cancellation observed at a suspension point
        """
        record = execution.get_step(step.id)
        execution.current_step = step.id

        if not approved:
            if not self.evaluator.evaluate(step.conditions, context):
                self.mark_skipped(execution, record, SkipReason.CONDITION_NOT_MET)
                return StepRunResult(StepOutcome.SKIPPED, step.id)

            if step.human_approval_required:
                logger.info("step_awaiting_approval", execution_id=execution.id, step_id=step.id)
                return StepRunResult(StepOutcome.AWAITING_APPROVAL, step.id)

        if token is not None:
            token.raise_if_cancelled()

        record.status = StepStatus.RUNNING
        record.started_at = utcnow()
        self._emit("step.started", execution, step.id)
        await self._save(execution)

        parameters = context.resolve(step.parameters)
        snapshot = execution.context.to_dict()
        timeout_ms = step.timeout or self.default_timeout_ms

        async def attempt():
            record.attempts += 1
            return await self.invoker.invoke(
                step.agent,
                step.service,
                step.action,
                parameters,
                snapshot,
                timeout_ms=timeout_ms,
                token=token,
            )

        async def on_retry(retry_number: int, failure: CapabilityFailure, delay_ms: float):
            record.retry_count += 1
            execution.metrics.retry_count += 1
            self._emit(
                "step.retry",
                execution,
                step.id,
                {"retry": retry_number, "code": failure.code, "delayMs": delay_ms},
            )
            await self._save(execution)

        try:
            result = await self.retry_executor.run(
                attempt,
                step.retry_policy,
                on_retry=on_retry,
                token=token,
            )

        except ExecutionCancelled:
            self._finish_record(execution, record, StepStatus.FAILED)
            record.error = "Cancelled while running"
            record.error_code = "Cancelled"
            raise

        except RetryExhausted as e:
            return await self._handle_failure(step, execution, record, e, permanent=False)

        except CapabilityFailure as e:
            return await self._handle_failure(step, execution, record, e, permanent=True)

        self._complete(step, execution, context, record, result)
        return StepRunResult(StepOutcome.COMPLETED, step.id)

    # === Outcomes ===

    def mark_skipped(
        self,
        execution: WorkflowExecution,
        record: StepExecution,
        reason: SkipReason,
    ) -> None:
        """Record a skipped step. Skips add no duration."""
        execution.ensure_mutable()
        record.status = StepStatus.SKIPPED
        record.skip_reason = reason
        record.completed_at = utcnow()
        logger.info(
            "step_skipped",
            execution_id=execution.id,
            step_id=record.step_id,
            reason=reason.value,
        )
        self._emit("step.skipped", execution, record.step_id, {"reason": reason.value})

    def _complete(
        self,
        step: StepDefinition,
        execution: WorkflowExecution,
        context: ExecutionContext,
        record: StepExecution,
        result: Dict[str, Any],
    ) -> None:
        record.result = result
        self._finish_record(execution, record, StepStatus.COMPLETED)

        context.set_step_result(step.id, result)
        context.bind_outputs(result, step.output_bindings)

        for flag in extract_flags(step, result):
            execution.add_flag(flag)
            self._emit("flag.raised", execution, step.id, flag.to_dict())

        missing = [name for name in step.outputs if name not in result]
        if missing:
            flag = ExecutionFlag(
                type="missing_outputs",
                severity=FlagSeverity.WARNING,
                message=f"Step {step.id} did not produce declared outputs: {', '.join(missing)}",
                step_id=step.id,
                details={"missing": missing},
            )
            execution.add_flag(flag)
            logger.warning(
                "step_missing_outputs",
                execution_id=execution.id,
                step_id=step.id,
                missing=missing,
            )
            self._emit("flag.raised", execution, step.id, flag.to_dict())

        logger.info(
            "step_completed",
            execution_id=execution.id,
            step_id=step.id,
            duration_ms=record.duration,
            retries=record.retry_count,
        )
        self._emit("step.completed", execution, step.id, {"duration": record.duration})

    async def _handle_failure(
        self,
        step: StepDefinition,
        execution: WorkflowExecution,
        record: StepExecution,
        failure: ConduitError,
        permanent: bool,
    ) -> StepRunResult:
        record.error = failure.message
        record.error_code = failure.code
        self._finish_record(execution, record, StepStatus.FAILED)
        execution.metrics.error_count += 1

        self._notify(step, execution, record, failure)

        details: Dict[str, Any] = {
            "attempts": record.attempts,
            "retryCount": record.retry_count,
            "notificationSent": record.notification_sent,
        }
        if isinstance(failure, RetryExhausted):
            details["lastFailure"] = failure.last_failure.to_dict()
        elif isinstance(failure, CapabilityFailure):
            details["failure"] = failure.to_dict()
        details.update({k: v for k, v in failure.details.items() if k not in details})

        error = WorkflowError(
            code=failure.code,
            message=failure.message,
            step_id=step.id,
            details=details,
        )

        handling = step.error_handling
        result = StepRunResult(StepOutcome.FAILED, step.id, error=error, permanent=permanent)
        if not permanent:
            result.fallback = handling.fallback
            result.escalate = handling.escalate

        logger.warning(
            "step_failed",
            execution_id=execution.id,
            step_id=step.id,
            code=failure.code,
            attempts=record.attempts,
            fallback=result.fallback,
            escalate=result.escalate,
        )
        self._emit("step.failed", execution, step.id, error.to_dict())
        return result

    def _finish_record(
        self,
        execution: WorkflowExecution,
        record: StepExecution,
        status: StepStatus,
    ) -> None:
        execution.ensure_mutable()
        record.status = status
        record.completed_at = utcnow()
        if record.started_at:
            record.duration = (record.completed_at - record.started_at).total_seconds() * 1000
            execution.metrics.step_durations[record.step_id] = record.duration

    def _notify(
        self,
        step: StepDefinition,
        execution: WorkflowExecution,
        record: StepExecution,
        failure: ConduitError,
    ) -> None:
        config = step.error_handling.notification
        if config is None or not config.channels:
            return

        notification = Notification(
            channels=[c.value for c in config.channels],
            recipients=list(config.recipients),
            template=config.template,
            template_data={
                "executionId": execution.id,
                "workflowId": execution.workflow_id,
                "useCaseId": execution.use_case_id,
                "stepId": step.id,
                "stepName": step.name,
                "errorCode": failure.code,
                "error": failure.message,
                "attempts": record.attempts,
            },
        )
        if self.notifier is not None:
            self.notifier.dispatch(notification)

        execution.add_notification(NotificationRecord(
            step_id=step.id,
            channels=notification.channels,
            recipients=notification.recipients,
            template=notification.template,
            reason=failure.code,
        ))
        record.notification_sent = True
        self._emit("notification.dispatched", execution, step.id, notification.to_dict())

    # === Hooks ===

    async def _save(self, execution: WorkflowExecution) -> None:
        if self._checkpoint is not None:
            await self._checkpoint(execution)

    def _emit(
        self,
        event_type: str,
        execution: WorkflowExecution,
        step_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._publish is not None:
            self._publish(event_type, execution, step_id, data or {})
