"""
Conduit Condition Operators

Comparison operators for condition evaluation.
"""

from __future__ import annotations

import math
from typing import Any, Callable, Dict, Optional

from conduit.types import MISSING, ConditionOperator


def _as_number(value: Any) -> Optional[float]:
    """Coerce to a finite number, or None when not numeric."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def deep_equals(left: Any, right: Any) -> bool:
    """Structural equality that keeps booleans distinct from numbers."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right

    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right

    if isinstance(left, dict) and isinstance(right, dict):
        if left.keys() != right.keys():
            return False
        return all(deep_equals(left[k], right[k]) for k in left)

    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        if len(left) != len(right):
            return False
        return all(deep_equals(a, b) for a, b in zip(left, right))

    if type(left) is not type(right):
        return False

    return left == right


class OperatorRegistry:
    """
    Registry of comparison operators.

    Operators never raise: incompatible operands compare False.
    """

    def __init__(self):
        self._operators: Dict[ConditionOperator, Callable[[Any, Any], bool]] = {}
        self._register_builtin_operators()

    def _register_builtin_operators(self) -> None:
        """Register built-in operators."""
        self._operators[ConditionOperator.EQUALS] = self._equals
        self._operators[ConditionOperator.NOT_EQUALS] = self._not_equals
        self._operators[ConditionOperator.GREATER_THAN] = self._greater_than
        self._operators[ConditionOperator.LESS_THAN] = self._less_than
        self._operators[ConditionOperator.GREATER_EQUAL] = self._greater_equal
        self._operators[ConditionOperator.LESS_EQUAL] = self._less_equal
        self._operators[ConditionOperator.CONTAINS] = self._contains
        self._operators[ConditionOperator.EXISTS] = self._exists
        self._operators[ConditionOperator.IN] = self._in
        self._operators[ConditionOperator.NOT_IN] = self._not_in

    def register(
        self,
        operator: ConditionOperator,
        func: Callable[[Any, Any], bool],
    ) -> None:
        """Register a custom operator."""
        self._operators[operator] = func

    def evaluate(
        self,
        operator: ConditionOperator,
        left: Any,
        right: Any,
    ) -> bool:
        """Evaluate an operator."""
        func = self._operators.get(operator)
        if not func:
            raise ValueError(f"Unknown operator: {operator}")

        return func(left, right)

    # === Operator Implementations ===

    @staticmethod
    def _equals(left: Any, right: Any) -> bool:
        """Deep value equality."""
        if left is MISSING:
            return False
        return deep_equals(left, right)

    @staticmethod
    def _not_equals(left: Any, right: Any) -> bool:
        """Inequality comparison."""
        return not OperatorRegistry._equals(left, right)

    @staticmethod
    def _ordered(left: Any, right: Any, predicate: Callable[[float, float], bool]) -> bool:
        a, b = _as_number(left), _as_number(right)
        if a is None or b is None:
            return False
        return predicate(a, b)

    @staticmethod
    def _greater_than(left: Any, right: Any) -> bool:
        return OperatorRegistry._ordered(left, right, lambda a, b: a > b)

    @staticmethod
    def _less_than(left: Any, right: Any) -> bool:
        return OperatorRegistry._ordered(left, right, lambda a, b: a < b)

    @staticmethod
    def _greater_equal(left: Any, right: Any) -> bool:
        return OperatorRegistry._ordered(left, right, lambda a, b: a >= b)

    @staticmethod
    def _less_equal(left: Any, right: Any) -> bool:
        return OperatorRegistry._ordered(left, right, lambda a, b: a <= b)

    @staticmethod
    def _contains(left: Any, right: Any) -> bool:
        """Substring for strings, membership for sequences and mapping keys."""
        if left is MISSING or left is None:
            return False

        if isinstance(left, str):
            return isinstance(right, str) and right in left

        if isinstance(left, (list, tuple)):
            return any(deep_equals(item, right) for item in left)

        if isinstance(left, dict):
            return isinstance(right, str) and right in left

        return False

    @staticmethod
    def _exists(left: Any, right: Any) -> bool:
        """Path resolution check. The right operand is ignored."""
        return left is not MISSING

    @staticmethod
    def _in(left: Any, right: Any) -> bool:
        """Membership of the left operand in the right-hand set."""
        if left is MISSING or right is None:
            return False

        if isinstance(right, (list, tuple, set)):
            return any(deep_equals(left, item) for item in right)

        if isinstance(right, str):
            # Treat as comma-separated list
            items = [item.strip() for item in right.split(",")]
            return isinstance(left, str) and left in items

        return False

    @staticmethod
    def _not_in(left: Any, right: Any) -> bool:
        """Not in collection check."""
        return not OperatorRegistry._in(left, right)


# Global operator registry
_operator_registry = OperatorRegistry()


def compare(
    left: Any,
    operator: ConditionOperator,
    right: Any,
) -> bool:
    """
    Compare two values using an operator.

    Args:
        left: Left operand (MISSING when the field path did not resolve)
        operator: Comparison operator
        right: Right operand

    Returns:
        Comparison result
    """
    return _operator_registry.evaluate(operator, left, right)


def register_operator(
    operator: ConditionOperator,
    func: Callable[[Any, Any], bool],
) -> None:
    """Register a custom operator."""
    _operator_registry.register(operator, func)
