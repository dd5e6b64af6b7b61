"""
Conduit Execution Context

Path lookup and template resolution over an execution's WorkflowContext.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import structlog

from conduit.errors import ConditionEvaluationError
from conduit.types import MISSING

if TYPE_CHECKING:
    from conduit.types import WorkflowExecution

logger = structlog.get_logger(__name__)


class ExecutionContext:
    """
    Execution context for one workflow execution.

    Features:
    - Dot-path resolution into input, variables, stepResults and metadata
    - Expression resolution with {{ }} syntax
    - Step result capture and variable binding
    - Write guard once the execution is terminal
    """

    # Expression pattern for {{ variable }}
    EXPRESSION_PATTERN = re.compile(r'\{\{\s*([^}]+)\s*\}\}')

    # First path segments that address a fixed part of the context
    SCOPES = ("input", "variables", "stepResults", "metadata")
    IDENTIFIERS = ("executionId", "workflowId", "useCaseId")

    def __init__(self, execution: "WorkflowExecution"):
        self.execution = execution

    @property
    def data(self):
        return self.execution.context

    # === Path Resolution ===

    def lookup(self, path: str) -> Any:
        """
        Resolve a dot path, returning MISSING when it does not exist.

        Raises ConditionEvaluationError for a malformed path.
        """
        parts = self._split(path)

        if parts[0] == "context":
            parts = parts[1:]
            if not parts:
                raise ConditionEvaluationError(path, "path names no field")

        head = parts[0]
        if head in self.SCOPES:
            return self._get_nested(self._scope(head), parts[1:])

        if head in self.IDENTIFIERS:
            if len(parts) > 1:
                return MISSING
            return {
                "executionId": self.execution.id,
                "workflowId": self.execution.workflow_id,
                "useCaseId": self.execution.use_case_id,
            }[head]

        # Bare names: variables, then input, then a step id in stepResults
        value = self._get_nested(self.data.variables, parts)
        if value is MISSING:
            value = self._get_nested(self.data.input, parts)
        if value is MISSING:
            value = self._get_nested(self.data.step_results, parts)
        return value

    def get(self, path: str, default: Any = None) -> Any:
        """Resolve a dot path, returning a default when it does not exist."""
        try:
            value = self.lookup(path)
        except ConditionEvaluationError:
            return default
        return default if value is MISSING else value

    def has(self, path: str) -> bool:
        """Check if a path resolves."""
        return self.get(path, MISSING) is not MISSING

    def _scope(self, name: str) -> Dict[str, Any]:
        return {
            "input": self.data.input,
            "variables": self.data.variables,
            "stepResults": self.data.step_results,
            "metadata": self.data.metadata,
        }[name]

    @staticmethod
    def _split(path: str) -> List[str]:
        if not isinstance(path, str) or not path.strip():
            raise ConditionEvaluationError(str(path), "empty path")
        parts = path.strip().split(".")
        if any(not part for part in parts):
            raise ConditionEvaluationError(path, "empty path segment")
        return parts

    def _get_nested(self, data: Any, parts: List[str]) -> Any:
        """Get a nested value."""
        if not parts:
            return data

        if isinstance(data, dict):
            if parts[0] not in data:
                return MISSING
            return self._get_nested(data[parts[0]], parts[1:])

        if isinstance(data, list):
            try:
                index = int(parts[0])
            except ValueError:
                return MISSING
            if 0 <= index < len(data):
                return self._get_nested(data[index], parts[1:])
            return MISSING

        return MISSING

    # === Expression Resolution ===

    def resolve(self, value: Any) -> Any:
        """
        Resolve expressions in a value.

        Supports:
        - {{ variable }} - Variable, falling back to input
        - {{ input.name }} - Nested access
        - {{ stepResults.step_id.key }} - Step result
        - {{ now }} - Current datetime
        - {{ value | default(x) }} - Simple filters
        """
        if value is None:
            return None

        if isinstance(value, str):
            return self._resolve_string(value)

        if isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}

        if isinstance(value, list):
            return [self.resolve(item) for item in value]

        return value

    def _resolve_string(self, value: str) -> Any:
        """Resolve expressions in a string."""
        # A string that is one expression keeps the resolved type
        match = self.EXPRESSION_PATTERN.fullmatch(value.strip())
        if match:
            return self._evaluate_expression(match.group(1).strip())

        def replace(match):
            resolved = self._evaluate_expression(match.group(1).strip())
            return str(resolved) if resolved is not None else ""

        return self.EXPRESSION_PATTERN.sub(replace, value)

    def _evaluate_expression(self, expr: str) -> Any:
        """Evaluate a single expression."""
        if expr == "now":
            return datetime.now(timezone.utc).isoformat()

        if "|" in expr:
            parts = expr.split("|")
            value = self.get(parts[0].strip())
            for filter_expr in parts[1:]:
                value = self._apply_filter(value, filter_expr.strip())
            return value

        value = self.get(expr)
        if value is None and not self.has(expr):
            logger.debug("template_unresolved", expression=expr, execution_id=self.execution.id)
        return value

    def _apply_filter(self, value: Any, filter_expr: str) -> Any:
        """Apply a filter to a value."""
        if filter_expr == "upper":
            return str(value).upper() if value else ""

        if filter_expr == "lower":
            return str(value).lower() if value else ""

        if filter_expr == "length":
            return len(value) if value else 0

        if filter_expr == "json":
            return json.dumps(value)

        if filter_expr.startswith("default("):
            match = re.match(r'default\(([^)]+)\)', filter_expr)
            if match and value is None:
                return match.group(1).strip("'\"")
            return value

        return value

    # === Writes ===

    def set_step_result(self, step_id: str, result: Dict[str, Any]) -> None:
        """Record the result map of a completed step."""
        self.execution.ensure_mutable()
        self.data.step_results[step_id] = result

    def set_variable(self, name: str, value: Any) -> None:
        """Set a context variable."""
        self.execution.ensure_mutable()
        self.data.variables[name] = value
        logger.debug("context_set", key=name, execution_id=self.execution.id)

    def bind_outputs(self, result: Dict[str, Any], bindings: Dict[str, str]) -> None:
        """Mirror result keys into variables per output -> variable bindings."""
        for output_name, variable in bindings.items():
            if output_name in result:
                self.set_variable(variable, result[output_name])

    def __repr__(self) -> str:
        """String representation."""
        return f"ExecutionContext(execution={self.execution.id})"
