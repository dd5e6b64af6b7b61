"""
Conduit Approval System

Human-in-the-loop approval checkpoints.
"""

from conduit.approval.manager import ApprovalManager

__all__ = [
    "ApprovalManager",
]
