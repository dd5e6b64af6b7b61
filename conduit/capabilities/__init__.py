"""
Conduit Capabilities

The boundary to external agents and services.
"""

from conduit.capabilities.invoker import CapabilityInvoker, CapabilityProvider, FunctionProvider

__all__ = [
    "CapabilityInvoker",
    "CapabilityProvider",
    "FunctionProvider",
]
