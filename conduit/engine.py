"""
Conduit Workflow Engine

Main execution engine for workflows.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Callable, Dict, List, Optional

import structlog

from conduit.approval.manager import ApprovalManager
from conduit.capabilities.invoker import CapabilityInvoker
from conduit.conditions.evaluator import ConditionEvaluator
from conduit.config import ConduitConfig, get_config
from conduit.errors import (
    ApprovalRejected,
    ConfigurationError,
    ExecutionCancelled,
    WorkflowNotFoundError,
)
from conduit.events import EventBus
from conduit.execution.context import ExecutionContext
from conduit.execution.history import ExecutionHistoryManager
from conduit.execution.retry import CancellationToken, RetryPolicyExecutor, SleepFn
from conduit.execution.runner import StepOutcome, StepRunner
from conduit.execution.store import ExecutionStore, create_store
from conduit.notifications import NotificationDispatcher
from conduit.registry import WorkflowRegistry
from conduit.triggers.scheduler import TriggerScheduler
from conduit.types import (
    ExecutionStatus,
    SkipReason,
    StepExecution,
    StepStatus,
    TriggerFiring,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowError,
    WorkflowEvent,
    WorkflowExecution,
    normalize_value,
    utcnow,
)

logger = structlog.get_logger(__name__)


OPERATOR_PAUSE = "operator_pause"
HUMAN_APPROVAL = "human_approval_required"


class WorkflowEngine:
    """
    Main workflow execution engine.

    Features:
    - Sequential step orchestration with one worker task per execution
    - Condition gating, retries, fallback and escalation
    - Human approval and operator pause checkpoints that release the worker
    - Cooperative cancellation
    - Persistence and a published event on every transition
    - Trigger management
    - Recovery of non-terminal executions after a restart
    """

    def __init__(
        self,
        registry: Optional[WorkflowRegistry] = None,
        invoker: Optional[CapabilityInvoker] = None,
        store: Optional[ExecutionStore] = None,
        event_bus: Optional[EventBus] = None,
        notifier: Optional[NotificationDispatcher] = None,
        config: Optional[ConduitConfig] = None,
        approvals: Optional[ApprovalManager] = None,
        sleep: Optional[SleepFn] = None,
    ):
        self.config = config or get_config()
        self.registry = registry or WorkflowRegistry()
        self.invoker = invoker or CapabilityInvoker()
        self.store = store or create_store(self.config.store_path)
        self.event_bus = event_bus or EventBus(max_history=self.config.event_history_size)
        self.notifier = notifier or NotificationDispatcher(
            webhook_url=self.config.notification_webhook_url,
        )
        self.approvals = approvals or ApprovalManager(max_resolved=self.config.approval_history_size)
        self.evaluator = ConditionEvaluator()
        self.history = ExecutionHistoryManager(self.store)
        self.max_concurrent = self.config.max_concurrent_executions

        # Components
        self.runner = StepRunner(
            invoker=self.invoker,
            retry_executor=RetryPolicyExecutor(
                internal_error_max_attempts=self.config.internal_error_max_attempts,
                sleep=sleep,
            ),
            evaluator=self.evaluator,
            notifier=self.notifier,
            checkpoint=self._save,
            publish=self._publish,
            default_timeout_ms=self.config.default_step_timeout_ms,
        )
        self.triggers = TriggerScheduler(
            self.start,
            poll_interval_seconds=self.config.schedule_poll_interval_seconds,
        )
        self.triggers.attach(self.registry)

        # Live executions
        self._executions: Dict[str, WorkflowExecution] = {}
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._execution_tasks: Dict[str, asyncio.Task] = {}
        self._pause_requests: set = set()

        # Semaphore for concurrency control
        self._semaphore = asyncio.Semaphore(self.max_concurrent)

        # Event callbacks
        self._on_execution_started: List[Callable] = []
        self._on_execution_completed: List[Callable] = []

        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the workflow engine."""
        if self._initialized:
            return

        logger.info("engine_initializing")

        await self.triggers.initialize()
        self.triggers.start_consumer(self.event_bus.subscribe("#"))

        self._initialized = True
        logger.info("engine_initialized", workflows=len(self.registry))

    async def shutdown(self) -> None:
        """
        Shutdown the workflow engine.

        Workers are stopped, but their executions are stored as they were
        (pending or running) so that recover() picks them up on the next
        start.
        """
        logger.info("engine_shutting_down")

        await self.triggers.shutdown()

        # Stop active workers
        tasks = list(self._execution_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.notifier.drain()

        self._initialized = False
        logger.info("engine_shutdown_complete")

    # === Execution ===

    async def start(
        self,
        workflow_id: str,
        input: Optional[Dict[str, Any]] = None,
        trigger: Optional[TriggerFiring] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecution:
        """
        Create an execution and schedule its worker.

        Args:
            workflow_id: Workflow to execute
            input: Caller-supplied input (context.input)
            trigger: What started the execution (manual when omitted)
            metadata: Free-form context metadata

        Returns:
            The execution, status pending

        Raises:
            WorkflowNotFoundError: no such workflow is registered
            ConfigurationError: input or metadata is not plain data
        """
        definition = self.registry.get(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id)

        try:
            context = WorkflowContext(
                input=normalize_value(input or {}, "$.input"),
                metadata=normalize_value(metadata or {}, "$.metadata"),
            )
        except TypeError as e:
            raise ConfigurationError("Invalid execution input", [str(e)]) from e

        execution = WorkflowExecution(
            workflow_id=definition.id,
            use_case_id=definition.use_case_id,
            workflow_version=definition.version,
            steps=[StepExecution(step_id=step.id) for step in definition.steps],
            context=context,
            trigger=trigger or TriggerFiring(),
        )

        self._track(execution, definition)
        await self._save(execution)
        self._publish("execution.created", execution, data={"trigger": execution.trigger.to_dict()})

        logger.info(
            "execution_created",
            execution_id=execution.id,
            workflow_id=workflow_id,
            trigger_type=execution.trigger.type.value,
        )

        await self._fire_callbacks(self._on_execution_started, execution)
        self._schedule(execution)
        return execution

    async def wait(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Wait until the execution is terminal or paused."""
        execution = self._executions.get(execution_id)
        while True:
            task = self._execution_tasks.get(execution_id)
            if task is None or task is asyncio.current_task():
                break
            await asyncio.wait({task})
        return self._executions.get(execution_id) or execution or await self.store.get(execution_id)

    def _track(self, execution: WorkflowExecution, definition: WorkflowDefinition) -> None:
        self._executions[execution.id] = execution
        self._definitions[execution.id] = definition
        self._tokens[execution.id] = CancellationToken(execution.id)

    def _schedule(self, execution: WorkflowExecution, approved_step: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(self._run(execution, approved_step))
        self._execution_tasks[execution.id] = task

        def _cleanup(done: asyncio.Task) -> None:
            if self._execution_tasks.get(execution.id) is done:
                del self._execution_tasks[execution.id]

        task.add_done_callback(_cleanup)
        return task

    async def _run(self, execution: WorkflowExecution, approved_step: Optional[str] = None) -> None:
        """Drive an execution until it is terminal or paused."""
        async with self._semaphore:
            definition = self._definitions.get(execution.id)
            token = self._tokens.get(execution.id)
            if definition is None or token is None or execution.is_terminal():
                # Cancelled or recovered elsewhere while queued
                return
            context = ExecutionContext(execution)

            try:
                token.raise_if_cancelled()

                resumed = execution.started_at is not None
                execution.start()
                await self._save(execution)
                self._publish("execution.resumed" if resumed else "execution.started", execution)

                index = self._next_index(execution, definition)
                approved = (
                    approved_step is not None
                    and index < len(definition.steps)
                    and definition.steps[index].id == approved_step
                )

                while index < len(definition.steps):
                    step = definition.steps[index]
                    token.raise_if_cancelled()

                    if not approved and execution.id in self._pause_requests:
                        self._pause_requests.discard(execution.id)
                        await self._suspend(execution, step.id, OPERATOR_PAUSE)
                        return

                    result = await self.runner.run_step(
                        step, execution, context, token=token, approved=approved,
                    )
                    approved = False

                    if result.outcome == StepOutcome.AWAITING_APPROVAL:
                        await self._suspend(execution, step.id, HUMAN_APPROVAL)
                        return

                    if result.outcome == StepOutcome.FAILED:
                        if result.fallback:
                            index = self._redirect(execution, definition, index, result.fallback)
                            await self._save(execution)
                            continue

                        error = result.error
                        if result.escalate:
                            error.details["escalated"] = True
                            logger.warning(
                                "execution_escalated",
                                execution_id=execution.id,
                                step_id=step.id,
                            )
                            self._publish("execution.escalated", execution, step.id, error.to_dict())

                        await self._fail(execution, error)
                        return

                    await self._save(execution)
                    index += 1

                token.raise_if_cancelled()
                execution.complete()
                await self._save(execution)
                self._publish("execution.completed", execution, data=execution.metrics.to_dict())

            except ExecutionCancelled:
                if not execution.is_terminal():
                    await self._mark_cancelled(execution)

            except asyncio.CancelledError:
                # Engine shutdown: the execution stays non-terminal for recover()
                if not execution.is_terminal():
                    await self._save_quietly(execution)
                raise

            except Exception as e:
                logger.error(
                    "workflow_execution_failed",
                    execution_id=execution.id,
                    step_id=execution.current_step,
                    error=str(e),
                )
                if not execution.is_terminal():
                    execution.fail(WorkflowError(
                        code="InternalError",
                        message=str(e),
                        step_id=execution.current_step,
                        details={"exception": type(e).__name__},
                    ))
                    await self._save_quietly(execution)
                    self._publish("execution.failed", execution, execution.current_step, execution.error.to_dict())

            finally:
                if execution.is_terminal():
                    await self._finalize(execution)

    @staticmethod
    def _next_index(execution: WorkflowExecution, definition: WorkflowDefinition) -> int:
        """Index of the first step that has not run yet."""
        for index, step in enumerate(definition.steps):
            record = execution.get_step(step.id)
            if record is None or record.status in (StepStatus.PENDING, StepStatus.RUNNING):
                return index
        return len(definition.steps)

    def _redirect(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        index: int,
        target_id: str,
    ) -> int:
        """Jump forward to a fallback step, skipping the steps in between."""
        target = definition.step_index(target_id)
        for step in definition.steps[index + 1:target]:
            self.runner.mark_skipped(execution, execution.get_step(step.id), SkipReason.FALLBACK_REDIRECT)

        execution.current_step = target_id
        logger.info(
            "step_fallback",
            execution_id=execution.id,
            from_step=definition.steps[index].id,
            to_step=target_id,
        )
        self._publish("step.fallback", execution, definition.steps[index].id, {"target": target_id})
        return target

    async def _suspend(self, execution: WorkflowExecution, step_id: str, reason: str) -> None:
        execution.pause(step_id)
        await self.approvals.create_request(
            execution.id, step_id, workflow_id=execution.workflow_id, reason=reason,
        )
        await self._save(execution)

        logger.info(
            "execution_paused",
            execution_id=execution.id,
            step_id=step_id,
            reason=reason,
        )
        self._publish("execution.paused", execution, step_id, {"reason": reason})

    async def _fail(self, execution: WorkflowExecution, error: WorkflowError) -> None:
        execution.fail(error)
        await self._save(execution)
        logger.warning(
            "execution_failed",
            execution_id=execution.id,
            step_id=error.step_id,
            code=error.code,
        )
        self._publish("execution.failed", execution, error.step_id, error.to_dict())

    async def _mark_cancelled(self, execution: WorkflowExecution) -> None:
        execution.cancel()
        self.approvals.cancel_for_execution(execution.id)
        await self._save(execution)
        logger.info("execution_cancelled", execution_id=execution.id)
        self._publish("execution.cancelled", execution)

    async def _finalize(self, execution: WorkflowExecution) -> None:
        """Forget a terminal execution and fire completion callbacks once."""
        if self._executions.pop(execution.id, None) is None:
            return
        self._definitions.pop(execution.id, None)
        self._tokens.pop(execution.id, None)
        self._pause_requests.discard(execution.id)

        await self._fire_callbacks(self._on_execution_completed, execution)
        logger.info(
            "execution_finished",
            execution_id=execution.id,
            status=execution.status.value,
            duration_ms=execution.metrics.total_duration,
        )

    # === Control Surface ===

    async def approve(
        self,
        execution_id: str,
        step_id: str,
        approver_id: str,
        message: str = "",
    ) -> bool:
        """Approve a paused step; the execution resumes at that step."""
        execution = self._paused(execution_id, step_id)
        if execution is None:
            return False

        request = await self.approvals.approve(execution_id, step_id, approver_id, message)
        if request is None:
            return False

        record = execution.get_step(step_id)
        record.approved_by = approver_id
        record.approved_at = request.responded_at or utcnow()

        logger.info(
            "step_approved",
            execution_id=execution_id,
            step_id=step_id,
            approver=approver_id,
            reason=request.reason,
        )
        self._publish("approval.granted", execution, step_id, {"approver": approver_id, "reason": request.reason})

        # Operator pauses happen before the step was gated, so it runs normally
        approved_step = step_id if request.reason == HUMAN_APPROVAL else None
        self._schedule(execution, approved_step)
        return True

    async def reject(
        self,
        execution_id: str,
        step_id: str,
        reason: str = "",
        approver_id: Optional[str] = None,
    ) -> bool:
        """Reject a paused step; the execution fails with ApprovalRejected."""
        execution = self._paused(execution_id, step_id)
        if execution is None:
            return False

        request = await self.approvals.reject(execution_id, step_id, approver_id, reason)
        if request is None:
            return False

        rejection = ApprovalRejected(step_id, reason)
        record = execution.get_step(step_id)
        record.status = StepStatus.FAILED
        record.error = rejection.message
        record.error_code = rejection.code
        record.completed_at = utcnow()
        execution.metrics.error_count += 1

        details = dict(rejection.details)
        if approver_id:
            details["rejectedBy"] = approver_id

        self._publish("approval.rejected", execution, step_id, details)
        await self._fail(execution, WorkflowError(
            code=rejection.code,
            message=rejection.message,
            step_id=step_id,
            details=details,
        ))
        await self._finalize(execution)
        return True

    async def cancel(self, execution_id: str) -> bool:
        """
        Cancel an execution.

        A paused or pending execution is cancelled at once, together with
        any worker queued for it. A running one is signalled and this call
        waits for the worker to stop at its next suspension point.
        """
        execution = self._executions.get(execution_id)
        if execution is None or execution.is_terminal():
            logger.warning(
                "cancel_ignored",
                execution_id=execution_id,
                status=execution.status.value if execution else None,
            )
            return False

        token = self._tokens[execution_id]
        token.cancel()
        execution.cancel_requested = True
        task = self._execution_tasks.get(execution_id)

        # Not started yet, or paused with at most an approved worker queued
        if execution.status in (ExecutionStatus.PENDING, ExecutionStatus.PAUSED) or task is None:
            if task is not None and task is not asyncio.current_task():
                task.cancel()
            await self._mark_cancelled(execution)
            await self._finalize(execution)
            return True

        if task is not asyncio.current_task():
            await asyncio.wait({task})
        return True

    async def pause(self, execution_id: str) -> bool:
        """Pause an execution at its next step boundary."""
        execution = self._executions.get(execution_id)
        if execution is None or execution.status not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING):
            logger.warning(
                "pause_ignored",
                execution_id=execution_id,
                status=execution.status.value if execution else None,
            )
            return False

        self._pause_requests.add(execution_id)
        logger.info("execution_pause_requested", execution_id=execution_id)
        self._publish("execution.pause_requested", execution)
        return True

    async def resume(self, execution_id: str, approver_id: str = "operator") -> bool:
        """Resume a paused execution by approving its open checkpoint."""
        execution = self._executions.get(execution_id)
        if execution is None or execution.status != ExecutionStatus.PAUSED:
            logger.warning("resume_ignored", execution_id=execution_id)
            return False
        return await self.approve(execution_id, execution.current_step, approver_id)

    def _paused(self, execution_id: str, step_id: str) -> Optional[WorkflowExecution]:
        execution = self._executions.get(execution_id)
        if execution is None or execution.status != ExecutionStatus.PAUSED:
            logger.warning(
                "execution_not_paused",
                execution_id=execution_id,
                status=execution.status.value if execution else None,
            )
            return None
        if execution.current_step != step_id:
            logger.warning(
                "approval_step_mismatch",
                execution_id=execution_id,
                step_id=step_id,
                current_step=execution.current_step,
            )
            return None
        return execution

    # === Queries ===

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        """A deep copy of an execution, live or stored."""
        execution = self._executions.get(execution_id)
        if execution is not None:
            return copy.deepcopy(execution)
        return await self.store.get(execution_id)

    async def get_status(self, execution_id: str) -> Optional[Dict[str, Any]]:
        """Read-only status snapshot for dashboards."""
        execution = self._executions.get(execution_id) or await self.store.get(execution_id)
        return execution.summary() if execution else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        use_case_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
    ) -> List[WorkflowExecution]:
        """List stored executions, newest first."""
        return await self.history.list(
            workflow_id=workflow_id,
            use_case_id=use_case_id,
            status=status,
            limit=limit,
        )

    async def get_metrics(
        self,
        use_case_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Aggregate metrics over stored executions."""
        return await self.history.get_metrics(use_case_id=use_case_id, workflow_id=workflow_id)

    async def get_error_analysis(
        self,
        use_case_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.history.get_error_analysis(use_case_id=use_case_id, workflow_id=workflow_id)

    def preview(self, workflow_id: str, input: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Dry-run the condition gates of a workflow against an input.

        Nothing is invoked or stored. Gates that depend on step results
        see them as missing.
        """
        definition = self.registry.get(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id)

        scratch = WorkflowExecution(
            workflow_id=definition.id,
            use_case_id=definition.use_case_id,
            context=WorkflowContext(input=copy.deepcopy(input or {})),
        )
        context = ExecutionContext(scratch)

        return [
            {
                "stepId": step.id,
                "wouldRun": self.evaluator.evaluate(step.conditions, context),
                "humanApprovalRequired": step.human_approval_required,
                "conditions": self.evaluator.explain(step.conditions, context),
            }
            for step in definition.steps
        ]

    # === Recovery ===

    async def recover(self) -> List[WorkflowExecution]:
        """
        Reload non-terminal executions from the store after a restart.

        Pending executions are scheduled, paused ones get their checkpoint
        back. Executions found running were interrupted mid-step: they
        fail with code Interrupted unless resume_interrupted is set, in
        which case the interrupted step runs again.
        Each execution resumes on the definition version it started with.
        """
        recovered = []
        for execution in await self.store.list():
            if execution.is_terminal() or execution.id in self._executions:
                continue

            definition = self._definition_for(execution)
            if definition is None:
                execution.fail(WorkflowError(
                    code=WorkflowNotFoundError.code,
                    message=f"Workflow not found: {execution.workflow_id}@{execution.workflow_version}",
                    step_id=execution.current_step,
                ))
                await self._save(execution)
                continue

            self._track(execution, definition)
            recovered.append(execution)

            if execution.status == ExecutionStatus.PAUSED:
                step = definition.get_step(execution.current_step)
                record = execution.get_step(execution.current_step)
                reason = (
                    HUMAN_APPROVAL
                    if step and step.human_approval_required and record.approved_by is None
                    else OPERATOR_PAUSE
                )
                await self.approvals.create_request(
                    execution.id, execution.current_step, workflow_id=execution.workflow_id, reason=reason,
                )

            elif execution.status == ExecutionStatus.RUNNING and not self.config.resume_interrupted:
                for record in execution.steps:
                    if record.status == StepStatus.RUNNING:
                        record.status = StepStatus.FAILED
                        record.error = "Interrupted by engine restart"
                        record.error_code = "Interrupted"
                        record.completed_at = utcnow()
                await self._fail(execution, WorkflowError(
                    code="Interrupted",
                    message="Execution was running when the engine stopped",
                    step_id=execution.current_step,
                ))
                await self._finalize(execution)

            else:
                for record in execution.steps:
                    if record.status == StepStatus.RUNNING:
                        record.status = StepStatus.PENDING
                        record.started_at = None
                self._schedule(execution)

            logger.info(
                "execution_recovered",
                execution_id=execution.id,
                status=execution.status.value,
            )

        return recovered

    def _definition_for(self, execution: WorkflowExecution) -> Optional[WorkflowDefinition]:
        """
        The definition version an execution started on.

        When that version is no longer registered, the current one is used
        only if it has exactly the same steps.
        """
        definition = self.registry.get(execution.workflow_id, execution.workflow_version)
        if definition is not None:
            return definition

        current = self.registry.get(execution.workflow_id)
        if current is not None and [s.id for s in current.steps] == [r.step_id for r in execution.steps]:
            return current
        return None

    # === Persistence and Events ===

    async def _save(self, execution: WorkflowExecution) -> None:
        await self.store.save(execution)

    async def _save_quietly(self, execution: WorkflowExecution) -> None:
        try:
            await self.store.save(execution)
        except Exception as e:
            logger.error("execution_save_failed", execution_id=execution.id, error=str(e))

    def _publish(
        self,
        event_type: str,
        execution: WorkflowExecution,
        step_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.event_bus.publish(WorkflowEvent(
            event_type=event_type,
            data={"status": execution.status.value, **(data or {})},
            workflow_id=execution.workflow_id,
            execution_id=execution.id,
            step_id=step_id,
        ))

    # === Event Callbacks ===

    def on_execution_started(self, callback: Callable) -> None:
        """Register callback for execution start."""
        self._on_execution_started.append(callback)

    def on_execution_completed(self, callback: Callable) -> None:
        """Register callback for terminal executions."""
        self._on_execution_completed.append(callback)

    async def _fire_callbacks(
        self,
        callbacks: List[Callable],
        *args,
    ) -> None:
        """Fire callbacks."""
        for callback in callbacks:
            try:
                result = callback(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("callback_error", error=str(e))

    # === Statistics ===

    def get_stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        status_counts = {status.value: 0 for status in ExecutionStatus}
        for execution in self._executions.values():
            status_counts[execution.status.value] += 1

        return {
            "active_executions": len(self._execution_tasks),
            "total_executions": len(self._executions),
            "by_status": status_counts,
            "max_concurrent": self.max_concurrent,
            "workflows": self.registry.get_stats(),
            "triggers": self.triggers.get_stats(),
            "approvals": self.approvals.get_stats(),
            "capabilities": self.invoker.get_stats(),
            "events": self.event_bus.get_stats(),
            "notifications": self.notifier.get_stats(),
        }
