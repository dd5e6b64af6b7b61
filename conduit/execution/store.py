"""
Conduit Execution Store

Persistence of WorkflowExecution documents, one per execution id.
"""

from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from conduit.types import ExecutionStatus, WorkflowExecution

logger = structlog.get_logger(__name__)


def _matches(
    execution: WorkflowExecution,
    workflow_id: Optional[str],
    use_case_id: Optional[str],
    status: Optional[ExecutionStatus],
) -> bool:
    if workflow_id and execution.workflow_id != workflow_id:
        return False
    if use_case_id and execution.use_case_id != use_case_id:
        return False
    if status and execution.status != ExecutionStatus(status):
        return False
    return True


class ExecutionStore(ABC):
    """
    Document store for executions.

    save() is called on every state transition and must be durable once
    it returns. Stored documents never alias live execution objects.
    """

    @abstractmethod
    async def save(self, execution: WorkflowExecution) -> None:
        """Insert or replace the document for an execution."""

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Load an execution by id."""

    @abstractmethod
    async def list(
        self,
        workflow_id: Optional[str] = None,
        use_case_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> List[WorkflowExecution]:
        """List executions, oldest first."""

    @abstractmethod
    async def delete(self, execution_id: str) -> bool:
        """Remove an execution document."""


class InMemoryExecutionStore(ExecutionStore):
    """Keeps serialized snapshots in a dict."""

    def __init__(self):
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def save(self, execution: WorkflowExecution) -> None:
        document = execution.to_dict()
        async with self._lock:
            self._documents[execution.id] = document

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        document = self._documents.get(execution_id)
        return WorkflowExecution.from_dict(document) if document else None

    async def list(
        self,
        workflow_id: Optional[str] = None,
        use_case_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> List[WorkflowExecution]:
        executions = [WorkflowExecution.from_dict(d) for d in self._documents.values()]
        executions = [e for e in executions if _matches(e, workflow_id, use_case_id, status)]
        return sorted(executions, key=lambda e: e.created_at)

    async def delete(self, execution_id: str) -> bool:
        async with self._lock:
            return self._documents.pop(execution_id, None) is not None

    def __len__(self) -> int:
        return len(self._documents)


class JsonFileExecutionStore(ExecutionStore):
    """
    One `<id>.json` file per execution in a directory.

    Writes go to a temporary file that is atomically renamed over the
    previous document. File I/O runs in a worker thread so the event
    loop is never blocked on disk.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, execution_id: str) -> Path:
        if not execution_id or "/" in execution_id or "\\" in execution_id or execution_id.startswith("."):
            raise ValueError(f"Invalid execution id: {execution_id!r}")
        return self.directory / f"{execution_id}.json"

    async def save(self, execution: WorkflowExecution) -> None:
        path = self._path(execution.id)
        tmp_path = path.with_suffix(".json.tmp")
        document = execution.to_dict()

        def _write() -> None:
            try:
                with open(tmp_path, "w") as f:
                    json.dump(document, f, indent=2, default=str)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except Exception:
                if tmp_path.exists():
                    tmp_path.unlink()
                raise

        async with self._lock:
            await asyncio.to_thread(_write)

        logger.debug("execution_saved", execution_id=execution.id, status=execution.status.value)

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        path = self._path(execution_id)

        def _read() -> Optional[WorkflowExecution]:
            if not path.exists():
                return None
            return self._load(path)

        return await asyncio.to_thread(_read)

    def _load(self, path: Path) -> WorkflowExecution:
        with open(path) as f:
            return WorkflowExecution.from_dict(json.load(f))

    def _load_all(self) -> List[WorkflowExecution]:
        executions = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                executions.append(self._load(path))
            except (OSError, ValueError) as e:
                logger.error("execution_load_error", path=str(path), error=str(e))
        return executions

    async def list(
        self,
        workflow_id: Optional[str] = None,
        use_case_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> List[WorkflowExecution]:
        executions = await asyncio.to_thread(self._load_all)
        executions = [e for e in executions if _matches(e, workflow_id, use_case_id, status)]
        return sorted(executions, key=lambda e: e.created_at)

    async def delete(self, execution_id: str) -> bool:
        path = self._path(execution_id)

        def _unlink() -> bool:
            if not path.exists():
                return False
            path.unlink()
            return True

        async with self._lock:
            return await asyncio.to_thread(_unlink)


def create_store(store_path: Optional[Path] = None) -> ExecutionStore:
    """Store for a configured path, in memory when none is set."""
    if store_path:
        return JsonFileExecutionStore(store_path)
    return InMemoryExecutionStore()
