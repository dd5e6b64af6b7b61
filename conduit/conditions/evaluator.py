"""
Conduit Condition Evaluator

Evaluates step gate conditions.
"""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

import structlog

from conduit.conditions.operators import OperatorRegistry
from conduit.errors import ConditionEvaluationError
from conduit.execution.context import ExecutionContext
from conduit.types import MISSING, CombineWith, StepCondition

logger = structlog.get_logger(__name__)


class ConditionEvaluator:
    """
    Evaluates step conditions against an execution context.

    Features:
    - Dot-path field resolution
    - Operator evaluation
    - Left-to-right AND/OR fold with short-circuit
    - Never raises and never mutates the context
    """

    def __init__(self, operator_registry: OperatorRegistry = None):
        self._operator_registry = operator_registry or OperatorRegistry()

    def evaluate(
        self,
        conditions: Sequence[StepCondition],
        context: ExecutionContext,
    ) -> bool:
        """
        Evaluate a condition list against a context.

        The join between condition i and i+1 is condition i's combine_with.
        An empty list is True.
        """
        if not conditions:
            return True

        result = self.evaluate_single(conditions[0], context)

        for previous, condition in zip(conditions, conditions[1:]):
            if previous.combine_with == CombineWith.OR:
                if result:
                    continue
            elif not result:
                continue
            result = self.evaluate_single(condition, context)

        logger.debug(
            "conditions_evaluated",
            execution_id=context.execution.id,
            count=len(conditions),
            result=result,
        )

        return result

    def evaluate_single(
        self,
        condition: StepCondition,
        context: ExecutionContext,
    ) -> bool:
        """Evaluate one condition. A malformed path evaluates False."""
        try:
            left = context.lookup(condition.field)
            return self._operator_registry.evaluate(condition.operator, left, condition.value)

        except ConditionEvaluationError as e:
            logger.warning(
                "condition_error",
                execution_id=context.execution.id,
                field=condition.field,
                error=str(e),
            )
            return False

    def explain(
        self,
        conditions: Sequence[StepCondition],
        context: ExecutionContext,
    ) -> List[Dict[str, Any]]:
        """Per-condition detail for dry runs."""
        details = []
        for condition in conditions:
            try:
                left = context.lookup(condition.field)
            except ConditionEvaluationError as e:
                details.append({"field": condition.field, "error": str(e), "result": False})
                continue
            details.append({
                "field": condition.field,
                "operator": condition.operator.value,
                "value": condition.value,
                "resolved": None if left is MISSING else left,
                "exists": left is not MISSING,
                "result": self._operator_registry.evaluate(condition.operator, left, condition.value),
            })
        return details
