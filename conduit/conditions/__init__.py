"""
Conduit Workflow Conditions

Condition evaluation for step gating.
"""

from conduit.conditions.operators import OperatorRegistry, compare, register_operator
from conduit.conditions.evaluator import ConditionEvaluator

__all__ = [
    "OperatorRegistry",
    "compare",
    "register_operator",
    "ConditionEvaluator",
]
