"""
Tests for the command line interface.
"""

import asyncio
import json

import pytest

from conduit.cli import main
from conduit.execution.store import JsonFileExecutionStore
from conduit.types import (
    ExecutionMetrics,
    ExecutionStatus,
    WorkflowError,
    WorkflowExecution,
)


@pytest.fixture
def store_dir(tmp_path):
    """Execution store directory holding one completed and one failed run."""
    directory = tmp_path / "executions"
    store = JsonFileExecutionStore(directory)

    completed = WorkflowExecution(
        workflow_id="grid-resilience",
        use_case_id="grid-resilience",
        status=ExecutionStatus.COMPLETED,
        metrics=ExecutionMetrics(total_duration=1200.0),
    )
    failed = WorkflowExecution(
        workflow_id="grid-resilience",
        use_case_id="grid-resilience",
        status=ExecutionStatus.FAILED,
        error=WorkflowError(code="RetryExhausted", message="crews unreachable", step_id="dispatch-crews"),
    )
    asyncio.run(store.save(completed))
    asyncio.run(store.save(failed))

    return directory, completed, failed


class TestValidateCommand:
    """Tests for `conduit validate`."""

    def test_valid_samples(self, samples_dir, capsys):
        """Test the sample directory validates."""
        assert main(["validate", str(samples_dir)]) == 0

        out = capsys.readouterr().out
        assert "grid-resilience (7 steps, 3 triggers)" in out
        assert "renewable-optimization (5 steps, 2 triggers)" in out

    def test_invalid_file(self, tmp_path, capsys):
        """Test problems are listed and the exit status is 1."""
        path = tmp_path / "broken.json"
        path.write_text(json.dumps({
            "id": "broken",
            "name": "Broken",
            "steps": [
                {"id": "a", "agent": "x", "action": "run"},
                {"id": "a", "agent": "x", "action": "run"},
            ],
        }))

        assert main(["validate", str(path)]) == 1

        out = capsys.readouterr().out
        assert out.startswith(f"INVALID {path}")
        assert "  - Duplicate step id: a" in out


class TestScheduleCommand:
    """Tests for `conduit schedule`."""

    def test_upcoming_fire_times(self, samples_dir, capsys):
        """Test upcoming times for each scheduled trigger."""
        assert main(["schedule", str(samples_dir / "renewable-optimization.json"), "--count", "3"]) == 0

        result = json.loads(capsys.readouterr().out)
        assert len(result) == 1
        assert result[0]["workflowId"] == "renewable-optimization"
        assert result[0]["timezone"] == "America/Chicago"
        assert len(result[0]["next"]) == 3

    def test_no_scheduled_triggers(self, samples_dir, capsys):
        """Test a file without scheduled triggers prints an empty list."""
        assert main(["schedule", str(samples_dir / "grid-resilience.json")]) == 0

        assert json.loads(capsys.readouterr().out) == []


class TestStoreCommands:
    """Tests for the read-only execution store commands."""

    def test_executions(self, store_dir, capsys):
        """Test listing newest first with a status filter."""
        directory, completed, failed = store_dir

        assert main(["executions", "--store", str(directory)]) == 0
        listed = json.loads(capsys.readouterr().out)
        assert [e["id"] for e in listed] == [failed.id, completed.id]

        assert main(["executions", "--store", str(directory), "--status", "failed"]) == 0
        listed = json.loads(capsys.readouterr().out)
        assert [e["id"] for e in listed] == [failed.id]

    def test_status(self, store_dir, capsys):
        """Test printing one execution document."""
        directory, completed, _ = store_dir

        assert main(["status", completed.id, "--store", str(directory)]) == 0

        document = json.loads(capsys.readouterr().out)
        assert document["id"] == completed.id
        assert document["status"] == "completed"

    def test_status_not_found(self, store_dir, capsys):
        """Test an unknown id exits with status 1."""
        directory, _, _ = store_dir

        assert main(["status", "missing", "--store", str(directory)]) == 1
        assert "Error:" in capsys.readouterr().err

    def test_metrics(self, store_dir, capsys):
        """Test aggregate metrics with error analysis."""
        directory, _, _ = store_dir

        assert main(["metrics", "--store", str(directory), "--errors"]) == 0

        result = json.loads(capsys.readouterr().out)
        assert result["totalExecutions"] == 2
        assert result["successRate"] == 0.5
        assert result["errors"]["topSteps"] == [{"stepId": "dispatch-crews", "count": 1}]

    def test_missing_store(self, tmp_path, capsys):
        """Test a store directory that does not exist."""
        assert main(["executions", "--store", str(tmp_path / "nowhere")]) == 1
        assert "Execution store not found" in capsys.readouterr().err


class TestMain:
    """Tests for the entry point."""

    def test_no_command_prints_help(self, capsys):
        """Test running without a command."""
        assert main([]) == 0
        assert "usage: conduit" in capsys.readouterr().out
