"""
Conduit Capability Invoker

Adapts a step's (agent, service, action, parameters) into a call on a
registered capability provider and classifies its failures.
"""

from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

import structlog

from conduit.errors import (
    CapabilityFailure,
    CapabilityInternalError,
    CapabilityRejected,
    CapabilityTimeout,
    CapabilityUnreachable,
    ExecutionCancelled,
)
from conduit.execution.retry import CancellationToken
from conduit.types import normalize_value

logger = structlog.get_logger(__name__)


class CapabilityProvider(ABC):
    """
    An external agent or service reachable by action name.

    Providers raise CapabilityRejected for requests they will never accept
    and CapabilityUnreachable for transport problems; any other exception
    is treated as an agent-side internal error.
    """

    # Whether an in-flight invoke() may be aborted by task cancellation
    supports_cancellation: bool = False

    @abstractmethod
    async def invoke(
        self,
        action: str,
        parameters: Dict[str, Any],
        context: Dict[str, Any],
    ) -> Any:
        """Perform an action and return its result map."""
        raise NotImplementedError


class FunctionProvider(CapabilityProvider):
    """Provider backed by a mapping of action name to (async or sync) callable."""

    def __init__(
        self,
        actions: Dict[str, Callable[..., Any]],
        supports_cancellation: bool = True,
    ):
        self._actions = dict(actions)
        self.supports_cancellation = supports_cancellation

    def register(self, action: str, func: Callable[..., Any]) -> None:
        self._actions[action] = func

    async def invoke(
        self,
        action: str,
        parameters: Dict[str, Any],
        context: Dict[str, Any],
    ) -> Any:
        func = self._actions.get(action)
        if func is None:
            raise CapabilityRejected(
                f"Unknown action: {action}",
                action=action,
                details={"reason": "ActionNotFound"},
            )

        result = func(parameters, context)
        if inspect.isawaitable(result):
            result = await result
        return result


class CapabilityInvoker:
    """
    Routes invocations to providers and normalizes their outcome.

    Features:
    - Provider lookup by (agent, service), then agent, then service
    - Per-attempt timeout
    - Failure classification (Unreachable, Timeout, Rejected, InternalError)
    - Best-effort abort of in-flight calls on cancellation
    - Result normalization to a Value map
    """

    def __init__(self):
        self._providers: Dict[Tuple[Optional[str], Optional[str]], CapabilityProvider] = {}
        self._stats = {
            "invocations": 0,
            "failures": 0,
            "timeouts": 0,
        }

    def register(
        self,
        provider: CapabilityProvider,
        agent: Optional[str] = None,
        service: Optional[str] = None,
    ) -> None:
        """Register a provider for an agent, a service, or both."""
        if agent is None and service is None:
            raise ValueError("A provider needs an agent or a service")
        self._providers[(agent, service)] = provider
        logger.info("provider_registered", agent=agent, service=service)

    def unregister(self, agent: Optional[str] = None, service: Optional[str] = None) -> bool:
        return self._providers.pop((agent, service), None) is not None

    def resolve(self, agent: Optional[str], service: Optional[str]) -> Optional[CapabilityProvider]:
        """Find the provider for a step target."""
        for key in ((agent, service), (agent, None), (None, service)):
            if key[0] is None and key[1] is None:
                continue
            provider = self._providers.get(key)
            if provider is not None:
                return provider
        return None

    async def invoke(
        self,
        agent: Optional[str],
        service: Optional[str],
        action: str,
        parameters: Dict[str, Any],
        context: Dict[str, Any],
        timeout_ms: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """
        Invoke a capability once.

        Args:
            agent: Target agent
            service: Target service
            action: Action name
            parameters: Resolved parameters
            context: Read-only snapshot of the workflow context
            timeout_ms: Per-attempt timeout
            token: Cancellation token of the owning execution

        Returns:
            Normalized result map

        Raises:
            CapabilityFailure: classified failure
            ExecutionCancelled: the call was aborted by cancellation
        """
        provider = self.resolve(agent, service)
        if provider is None:
            raise CapabilityRejected(
                f"No provider for agent={agent} service={service}",
                agent=agent,
                service=service,
                action=action,
                details={"reason": "CapabilityNotFound"},
            )

        self._stats["invocations"] += 1
        timeout = timeout_ms / 1000.0 if timeout_ms else None

        try:
            call = asyncio.wait_for(provider.invoke(action, parameters, context), timeout=timeout)
            if token is not None and provider.supports_cancellation:
                result = await self._run_cancellable(call, token)
            else:
                result = await call

        except (ExecutionCancelled, asyncio.CancelledError):
            raise

        except CapabilityFailure as failure:
            self._stats["failures"] += 1
            failure.agent = failure.agent or agent
            failure.service = failure.service or service
            failure.action = failure.action or action
            raise

        except (asyncio.TimeoutError, TimeoutError):
            self._stats["failures"] += 1
            self._stats["timeouts"] += 1
            logger.warning(
                "capability_timeout",
                agent=agent,
                service=service,
                action=action,
                timeout_ms=timeout_ms,
            )
            raise CapabilityTimeout(
                f"{action} timed out after {timeout_ms}ms",
                agent=agent,
                service=service,
                action=action,
            )

        except (ConnectionError, OSError) as e:
            self._stats["failures"] += 1
            raise CapabilityUnreachable(
                f"{action} unreachable: {e}",
                agent=agent,
                service=service,
                action=action,
            ) from e

        except Exception as e:
            self._stats["failures"] += 1
            logger.error(
                "capability_error",
                agent=agent,
                service=service,
                action=action,
                error=str(e),
            )
            raise CapabilityInternalError(
                f"{action} failed: {e}",
                agent=agent,
                service=service,
                action=action,
            ) from e

        return self._normalize_result(result, agent, service, action)

    async def _run_cancellable(self, call, token: CancellationToken) -> Any:
        """Race a call against the token, aborting the call if the token fires."""
        call_task = asyncio.ensure_future(call)
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {call_task, cancel_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            call_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if call_task in done:
            return call_task.result()

        call_task.cancel()
        try:
            await call_task
        except asyncio.CancelledError:
            pass
        logger.info("capability_call_aborted", execution_id=token.execution_id)
        raise ExecutionCancelled(token.execution_id)

    def _normalize_result(
        self,
        result: Any,
        agent: Optional[str],
        service: Optional[str],
        action: str,
    ) -> Dict[str, Any]:
        if result is None:
            return {}
        if not isinstance(result, dict):
            result = {"value": result}
        try:
            return normalize_value(result, "result")
        except TypeError as e:
            raise CapabilityInternalError(
                f"{action} returned a non-serializable result: {e}",
                agent=agent,
                service=service,
                action=action,
            ) from e

    def get_stats(self) -> Dict[str, Any]:
        """Get invoker statistics."""
        return {
            **self._stats,
            "providers": len(self._providers),
        }
