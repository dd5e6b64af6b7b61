"""
Conduit Approval Manager

Human approval checkpoints for paused executions.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

from conduit.types import ApprovalRequest, ApprovalStatus, utcnow

logger = structlog.get_logger(__name__)


class ApprovalManager:
    """
    Tracks approval checkpoints.

    No task waits on a checkpoint: the engine releases the worker when an
    execution pauses and starts a fresh one when the checkpoint is approved.

    Features:
    - Request creation and tracking per (execution, step)
    - Approval/rejection handling with audit fields
    - Cancellation when the owning execution is cancelled
    - Bounded history: only the newest resolved requests are kept
    - Event callbacks
    """

    def __init__(self, max_resolved: int = 1000):
        self.max_resolved = max_resolved

        self._requests: Dict[str, ApprovalRequest] = {}
        self._pending: Dict[str, Dict[str, str]] = {}  # execution -> step -> request id
        self._resolved: Deque[str] = deque()
        self._pruned = 0

        # Event callbacks
        self._on_request_created: List[Callable] = []
        self._on_request_responded: List[Callable] = []

    # === Request Management ===

    async def create_request(
        self,
        execution_id: str,
        step_id: str,
        workflow_id: str = "",
        reason: str = "human_approval_required",
    ) -> ApprovalRequest:
        """Create (or return the existing) pending checkpoint for a step."""
        existing = self.get_pending(execution_id, step_id)
        if existing:
            return existing

        request = ApprovalRequest(
            execution_id=execution_id,
            step_id=step_id,
            workflow_id=workflow_id,
            reason=reason,
        )
        self._requests[request.id] = request
        self._pending.setdefault(execution_id, {})[step_id] = request.id

        await self._fire_callbacks(self._on_request_created, request)

        logger.info(
            "approval_request_created",
            request_id=request.id,
            execution_id=execution_id,
            step_id=step_id,
            reason=reason,
        )

        return request

    def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        """Get an approval request by ID."""
        return self._requests.get(request_id)

    def get_pending(
        self,
        execution_id: str,
        step_id: Optional[str] = None,
    ) -> Optional[ApprovalRequest]:
        """The pending checkpoint of an execution, optionally for one step."""
        steps = self._pending.get(execution_id)
        if not steps:
            return None
        if step_id is None:
            request_id = next(iter(steps.values()))
        else:
            request_id = steps.get(step_id)
        return self._requests.get(request_id) if request_id else None

    def list_requests(
        self,
        status: Optional[ApprovalStatus] = None,
        execution_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[ApprovalRequest]:
        """List approval requests with filters."""
        requests = list(self._requests.values())

        if status:
            requests = [r for r in requests if r.status == status]

        if execution_id:
            requests = [r for r in requests if r.execution_id == execution_id]

        if workflow_id:
            requests = [r for r in requests if r.workflow_id == workflow_id]

        requests.sort(key=lambda r: r.created_at, reverse=True)

        return requests[:limit]

    # === Approval/Rejection ===

    async def approve(
        self,
        execution_id: str,
        step_id: str,
        approver: str,
        message: str = "",
    ) -> Optional[ApprovalRequest]:
        """Approve the pending checkpoint of a step."""
        return await self._respond(
            execution_id, step_id, ApprovalStatus.APPROVED, approver, message,
        )

    async def reject(
        self,
        execution_id: str,
        step_id: str,
        approver: Optional[str] = None,
        message: str = "",
    ) -> Optional[ApprovalRequest]:
        """Reject the pending checkpoint of a step."""
        return await self._respond(
            execution_id, step_id, ApprovalStatus.REJECTED, approver, message,
        )

    async def _respond(
        self,
        execution_id: str,
        step_id: str,
        status: ApprovalStatus,
        responder: Optional[str],
        message: str,
    ) -> Optional[ApprovalRequest]:
        request = self.get_pending(execution_id, step_id)
        if not request:
            logger.warning(
                "approval_request_not_pending",
                execution_id=execution_id,
                step_id=step_id,
            )
            return None

        request.status = status
        request.responded_by = responder
        request.response_message = message or None
        request.responded_at = utcnow()
        self._resolve(request)

        logger.info(
            "approval_request_responded",
            request_id=request.id,
            execution_id=execution_id,
            step_id=step_id,
            status=status.value,
            responder=responder,
        )

        await self._fire_callbacks(self._on_request_responded, request)
        return request

    def cancel_for_execution(self, execution_id: str) -> int:
        """Cancel every pending checkpoint of an execution."""
        steps = self._pending.get(execution_id, {})
        requests = [self._requests[request_id] for request_id in steps.values()]
        for request in requests:
            request.status = ApprovalStatus.CANCELLED
            request.responded_at = utcnow()
            self._resolve(request)
        return len(requests)

    def _resolve(self, request: ApprovalRequest) -> None:
        """Move a request out of the pending index and prune old history."""
        steps = self._pending.get(request.execution_id)
        if steps is not None:
            steps.pop(request.step_id, None)
            if not steps:
                del self._pending[request.execution_id]

        self._resolved.append(request.id)
        while len(self._resolved) > self.max_resolved:
            self._requests.pop(self._resolved.popleft(), None)
            self._pruned += 1

    # === Event Callbacks ===

    def on_request_created(self, callback: Callable) -> None:
        """Register callback for request creation."""
        self._on_request_created.append(callback)

    def on_request_responded(self, callback: Callable) -> None:
        """Register callback for request response."""
        self._on_request_responded.append(callback)

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
        """Get approval manager statistics."""
        status_counts = {status.value: 0 for status in ApprovalStatus}
        for request in self._requests.values():
            status_counts[request.status.value] += 1

        return {
            "total_requests": len(self._requests),
            **status_counts,
            "pruned": self._pruned,
        }
