"""
Tests for execution persistence and history.
"""

import os
import threading
from datetime import timedelta

import pytest

from conduit.execution.history import ExecutionHistoryManager, aggregate_metrics, error_analysis
from conduit.execution.store import (
    InMemoryExecutionStore,
    JsonFileExecutionStore,
    create_store,
)
from conduit.types import (
    ExecutionFlag,
    ExecutionMetrics,
    ExecutionStatus,
    StepExecution,
    StepStatus,
    WorkflowError,
    WorkflowExecution,
    utcnow,
)


def make_execution(workflow_id="wf", use_case_id="uc", status=ExecutionStatus.COMPLETED, offset=0, **kwargs):
    return WorkflowExecution(
        workflow_id=workflow_id,
        use_case_id=use_case_id,
        status=status,
        created_at=utcnow() + timedelta(seconds=offset),
        steps=[StepExecution(step_id="s1", status=StepStatus.COMPLETED, result={"n": 1})],
        **kwargs,
    )


class TestInMemoryStore:
    """Tests for the in-memory store."""

    @pytest.mark.asyncio
    async def test_save_and_get(self):
        """Test documents never alias the saved object."""
        store = InMemoryExecutionStore()
        execution = make_execution()

        await store.save(execution)
        execution.steps[0].result["n"] = 99
        loaded = await store.get(execution.id)

        assert loaded is not execution
        assert loaded.steps[0].result == {"n": 1}
        assert await store.get("unknown") is None

    @pytest.mark.asyncio
    async def test_list_filters_and_order(self):
        """Test filtering and oldest-first ordering."""
        store = InMemoryExecutionStore()
        newest = make_execution(offset=20)
        oldest = make_execution(offset=0)
        other = make_execution(workflow_id="other", use_case_id="other-uc", status=ExecutionStatus.FAILED, offset=10)
        for execution in (newest, oldest, other):
            await store.save(execution)

        assert [e.id for e in await store.list()] == [oldest.id, other.id, newest.id]
        assert [e.id for e in await store.list(workflow_id="wf")] == [oldest.id, newest.id]
        assert [e.id for e in await store.list(use_case_id="other-uc")] == [other.id]
        assert [e.id for e in await store.list(status=ExecutionStatus.FAILED)] == [other.id]

    @pytest.mark.asyncio
    async def test_delete(self):
        """Test deleting a document."""
        store = InMemoryExecutionStore()
        execution = make_execution()
        await store.save(execution)

        assert await store.delete(execution.id) is True
        assert await store.delete(execution.id) is False
        assert len(store) == 0


class TestJsonFileStore:
    """Tests for the JSON file store."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        """Test an execution survives a save and load."""
        store = JsonFileExecutionStore(tmp_path / "executions")
        execution = make_execution(
            error=WorkflowError(code="Rejected", message="no", step_id="s1"),
            flags=[ExecutionFlag(type="critical_issue", message="hot", step_id="s1")],
            metrics=ExecutionMetrics(step_durations={"s1": 12.5}, retry_count=2),
            started_at=utcnow(),
            completed_at=utcnow(),
        )

        await store.save(execution)
        loaded = await store.get(execution.id)

        assert (tmp_path / "executions" / f"{execution.id}.json").exists()
        assert loaded.to_dict() == execution.to_dict()

    @pytest.mark.asyncio
    async def test_replace_keeps_one_document(self, tmp_path):
        """Test saving twice replaces the document."""
        store = JsonFileExecutionStore(tmp_path)
        execution = make_execution(status=ExecutionStatus.RUNNING)

        await store.save(execution)
        execution.status = ExecutionStatus.COMPLETED
        await store.save(execution)

        assert len(list(tmp_path.glob("*.json"))) == 1
        assert list(tmp_path.glob("*.tmp")) == []
        assert (await store.get(execution.id)).status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_list_skips_unreadable_documents(self, tmp_path):
        """Test a corrupt file does not break listing."""
        store = JsonFileExecutionStore(tmp_path)
        execution = make_execution()
        await store.save(execution)
        (tmp_path / "corrupt.json").write_text("not json")

        assert [e.id for e in await store.list()] == [execution.id]

    @pytest.mark.asyncio
    async def test_invalid_ids(self, tmp_path):
        """Test ids that would escape the directory."""
        store = JsonFileExecutionStore(tmp_path)

        with pytest.raises(ValueError):
            await store.get("../outside")
        with pytest.raises(ValueError):
            await store.get(".hidden")

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        """Test deleting a document file."""
        store = JsonFileExecutionStore(tmp_path)
        execution = make_execution()
        await store.save(execution)

        assert await store.delete(execution.id) is True
        assert await store.get(execution.id) is None
        assert await store.delete(execution.id) is False

    @pytest.mark.asyncio
    async def test_file_io_runs_off_the_event_loop(self, tmp_path, monkeypatch):
        """Test document writes and reads happen in a worker thread."""
        store = JsonFileExecutionStore(tmp_path)
        loop_thread = threading.get_ident()
        threads = []
        replace = os.replace
        load = store._load

        def recording_replace(src, dst):
            threads.append(("replace", threading.get_ident()))
            replace(src, dst)

        def recording_load(path):
            threads.append(("load", threading.get_ident()))
            return load(path)

        monkeypatch.setattr(os, "replace", recording_replace)
        monkeypatch.setattr(store, "_load", recording_load)

        execution = make_execution()
        await store.save(execution)
        await store.get(execution.id)
        await store.list()

        assert [kind for kind, _ in threads] == ["replace", "load", "load"]
        assert all(thread != loop_thread for _, thread in threads)

    def test_create_store(self, tmp_path):
        """Test the configured store kind."""
        assert isinstance(create_store(None), InMemoryExecutionStore)
        assert isinstance(create_store(tmp_path), JsonFileExecutionStore)


class TestHistory:
    """Tests for aggregate metrics and error analysis."""

    def test_aggregate_metrics(self):
        """Test totals, averages and success rate."""
        executions = [
            make_execution(metrics=ExecutionMetrics(
                step_durations={"s1": 10.0}, total_duration=100.0, retry_count=1,
            )),
            make_execution(status=ExecutionStatus.FAILED, metrics=ExecutionMetrics(
                step_durations={"s1": 30.0}, total_duration=300.0, error_count=2,
            )),
            make_execution(status=ExecutionStatus.RUNNING),
        ]

        metrics = aggregate_metrics(executions)

        assert metrics["totalExecutions"] == 3
        assert metrics["byStatus"]["completed"] == 1
        assert metrics["byStatus"]["failed"] == 1
        assert metrics["byStatus"]["running"] == 1
        assert metrics["avgDuration"] == 200.0
        assert metrics["totalErrors"] == 2
        assert metrics["totalRetries"] == 1
        assert metrics["successRate"] == 0.5
        assert metrics["stepAvgDuration"] == {"s1": 20.0}

    def test_empty_metrics(self):
        """Test metrics over no executions."""
        metrics = aggregate_metrics([])

        assert metrics["totalExecutions"] == 0
        assert metrics["avgDuration"] == 0.0
        assert metrics["successRate"] == 0.0

    def test_error_analysis(self):
        """Test failure codes and steps are ranked."""
        executions = [
            make_execution(status=ExecutionStatus.FAILED, error=WorkflowError(code="Rejected", step_id="s1")),
            make_execution(status=ExecutionStatus.FAILED, error=WorkflowError(code="Rejected", step_id="s2")),
            make_execution(status=ExecutionStatus.FAILED, error=WorkflowError(code="RetryExhausted", step_id="s1")),
            make_execution(),
        ]

        analysis = error_analysis(executions)

        assert analysis["totalFailures"] == 3
        assert analysis["topErrors"][0] == {"code": "Rejected", "count": 2}
        assert analysis["topSteps"][0] == {"stepId": "s1", "count": 2}

    @pytest.mark.asyncio
    async def test_history_listing(self):
        """Test newest-first listing with limit and offset."""
        store = InMemoryExecutionStore()
        executions = [make_execution(offset=i) for i in range(5)]
        for execution in executions:
            await store.save(execution)
        history = ExecutionHistoryManager(store)

        listed = await history.list(limit=2, offset=1)

        assert [e.id for e in listed] == [executions[3].id, executions[2].id]
