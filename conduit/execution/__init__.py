"""
Conduit Workflow Execution

Execution context, retry policy, persistence and history. The step runner
lives in conduit.execution.runner.
"""

from conduit.execution.context import ExecutionContext
from conduit.execution.retry import CancellationToken, RetryPolicyExecutor, cancellable_sleep
from conduit.execution.store import (
    ExecutionStore,
    InMemoryExecutionStore,
    JsonFileExecutionStore,
    create_store,
)
from conduit.execution.history import ExecutionHistoryManager, aggregate_metrics, error_analysis

__all__ = [
    "ExecutionContext",
    "CancellationToken",
    "RetryPolicyExecutor",
    "cancellable_sleep",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "JsonFileExecutionStore",
    "create_store",
    "ExecutionHistoryManager",
    "aggregate_metrics",
    "error_analysis",
]
