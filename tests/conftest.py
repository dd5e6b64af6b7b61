"""
Shared fixtures for the Conduit test suite.
"""

import inspect
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from conduit.capabilities.invoker import CapabilityInvoker, CapabilityProvider
from conduit.config import ConduitConfig
from conduit.engine import WorkflowEngine
from conduit.execution.store import InMemoryExecutionStore
from conduit.registry import WorkflowRegistry

AGENT = "test-agent"
SAMPLES_DIR = Path(__file__).resolve().parent.parent / "examples" / "workflows"


class RecordingProvider(CapabilityProvider):
    """
    Scripted capability provider.

    Each action maps to an outcome: a result dict, an exception instance
    (raised), a callable (called with parameters and context), or a list
    of outcomes consumed one per call with the last one repeating.
    """

    supports_cancellation = True

    def __init__(self, actions: Optional[Dict[str, Any]] = None):
        self.actions: Dict[str, Any] = dict(actions or {})
        self.calls: List[tuple] = []

    @property
    def called_actions(self) -> List[str]:
        return [action for action, _ in self.calls]

    async def invoke(self, action, parameters, context):
        self.calls.append((action, parameters))

        outcome = self.actions.get(action, {})
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]

        if isinstance(outcome, BaseException):
            raise outcome

        if callable(outcome):
            outcome = outcome(parameters, context)
            if inspect.isawaitable(outcome):
                outcome = await outcome

        return outcome


class SleepRecorder:
    """Backoff sleep that records the requested delays and returns at once."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds, token=None):
        self.calls.append(seconds)
        if token is not None:
            token.raise_if_cancelled()


def make_step(step_id: str, action: Optional[str] = None, **extra) -> Dict[str, Any]:
    """Step definition dict bound to the test agent."""
    step = {"id": step_id, "name": step_id, "agent": AGENT, "action": action or step_id}
    step.update(extra)
    return step


def make_workflow(steps, workflow_id: str = "wf", **extra) -> Dict[str, Any]:
    """Workflow definition dict."""
    workflow = {
        "id": workflow_id,
        "useCaseId": f"{workflow_id}-use-case",
        "name": f"Workflow {workflow_id}",
        "steps": list(steps),
    }
    workflow.update(extra)
    return workflow


@pytest.fixture
def config():
    return ConduitConfig(store_path=None, log_format="console")


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def store():
    return InMemoryExecutionStore()


@pytest.fixture
def registry():
    return WorkflowRegistry()


@pytest.fixture
def invoker(provider):
    invoker = CapabilityInvoker()
    invoker.register(provider, agent=AGENT)
    return invoker


@pytest.fixture
def engine(config, registry, invoker, store, sleep_recorder):
    return WorkflowEngine(
        registry=registry,
        invoker=invoker,
        store=store,
        config=config,
        sleep=sleep_recorder,
    )


@pytest.fixture
def step():
    return make_step


@pytest.fixture
def workflow():
    return make_workflow


@pytest.fixture
def samples_dir():
    return SAMPLES_DIR
