"""
Conduit Execution History

Aggregate metrics and error analysis over stored executions.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

import structlog

from conduit.execution.store import ExecutionStore
from conduit.types import ExecutionStatus, WorkflowExecution

logger = structlog.get_logger(__name__)


def aggregate_metrics(executions: Iterable[WorkflowExecution]) -> Dict[str, Any]:
    """
    Summarize a set of executions.

    Average duration only counts executions that reached a terminal
    status; success rate is completed over all terminal executions.
    """
    executions = list(executions)

    by_status: Dict[str, int] = {status.value: 0 for status in ExecutionStatus}
    durations: List[float] = []
    step_durations: Dict[str, List[float]] = defaultdict(list)
    total_errors = 0
    total_retries = 0
    total_flags = 0

    for execution in executions:
        by_status[execution.status.value] += 1
        total_errors += execution.metrics.error_count
        total_retries += execution.metrics.retry_count
        total_flags += execution.metrics.flag_count
        if execution.metrics.total_duration is not None:
            durations.append(execution.metrics.total_duration)
        for step_id, duration in execution.metrics.step_durations.items():
            step_durations[step_id].append(duration)

    terminal = (
        by_status[ExecutionStatus.COMPLETED.value]
        + by_status[ExecutionStatus.FAILED.value]
        + by_status[ExecutionStatus.CANCELLED.value]
    )

    return {
        "totalExecutions": len(executions),
        "byStatus": by_status,
        "avgDuration": sum(durations) / len(durations) if durations else 0.0,
        "totalErrors": total_errors,
        "totalRetries": total_retries,
        "totalFlags": total_flags,
        "successRate": (
            by_status[ExecutionStatus.COMPLETED.value] / terminal if terminal else 0.0
        ),
        "stepAvgDuration": {
            step_id: sum(values) / len(values)
            for step_id, values in step_durations.items()
        },
    }


def error_analysis(executions: Iterable[WorkflowExecution], top: int = 10) -> Dict[str, Any]:
    """Most frequent failure codes and failing steps."""
    failed = [e for e in executions if e.status == ExecutionStatus.FAILED and e.error]

    by_code: Dict[str, int] = defaultdict(int)
    by_step: Dict[str, int] = defaultdict(int)
    for execution in failed:
        by_code[execution.error.code] += 1
        if execution.error.step_id:
            by_step[execution.error.step_id] += 1

    sorted_codes = sorted(by_code.items(), key=lambda x: x[1], reverse=True)
    sorted_steps = sorted(by_step.items(), key=lambda x: x[1], reverse=True)

    return {
        "totalFailures": len(failed),
        "topErrors": [{"code": c, "count": n} for c, n in sorted_codes[:top]],
        "topSteps": [{"stepId": s, "count": n} for s, n in sorted_steps[:top]],
    }


class ExecutionHistoryManager:
    """
    Analytics over the execution store.

    Features:
    - Aggregate metrics per workflow or use case
    - Error analysis
    - Query and filtering
    """

    def __init__(self, store: ExecutionStore):
        self.store = store

    async def list(
        self,
        workflow_id: Optional[str] = None,
        use_case_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkflowExecution]:
        """List executions, newest first."""
        executions = await self.store.list(
            workflow_id=workflow_id,
            use_case_id=use_case_id,
            status=status,
        )
        executions.reverse()
        return executions[offset:offset + limit]

    async def get_metrics(
        self,
        use_case_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Aggregate metrics for matching executions."""
        executions = await self.store.list(workflow_id=workflow_id, use_case_id=use_case_id)
        return aggregate_metrics(executions)

    async def get_error_analysis(
        self,
        use_case_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Analyze errors in executions."""
        executions = await self.store.list(workflow_id=workflow_id, use_case_id=use_case_id)
        return error_analysis(executions)
