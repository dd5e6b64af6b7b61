"""
Conduit Workflow Registry

Loading, validation and lookup of workflow definitions.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pytz
import structlog
from croniter import croniter

from conduit.errors import ConfigurationError, WorkflowNotFoundError
from conduit.types import (
    THRESHOLD_OPERATORS,
    TriggerType,
    WorkflowDefinition,
)

logger = structlog.get_logger(__name__)


def validate_definition(definition: WorkflowDefinition) -> List[str]:
    """Every problem found in a definition; empty when valid."""
    errors = []

    if not definition.id:
        errors.append("Workflow id is required")

    if not definition.name:
        errors.append("Workflow name is required")

    if not definition.steps:
        errors.append("Workflow must have at least one step")

    # Steps
    seen = set()
    for index, step in enumerate(definition.steps):
        label = f"step {step.id or index}"

        if not step.id:
            errors.append(f"Step at position {index} has no id")
        elif step.id in seen:
            errors.append(f"Duplicate step id: {step.id}")
        seen.add(step.id)

        if not step.action:
            errors.append(f"{label}: action is required")

        if not step.agent and not step.service:
            errors.append(f"{label}: agent or service is required")

        if step.timeout is not None and step.timeout <= 0:
            errors.append(f"{label}: timeout must be positive")

        handling = step.error_handling
        if handling.fallback:
            target = definition.step_index(handling.fallback)
            if target < 0:
                errors.append(f"{label}: fallback references unknown step {handling.fallback}")
            elif target <= index:
                errors.append(f"{label}: fallback {handling.fallback} must come after the step")
            if handling.escalate:
                errors.append(f"{label}: fallback and escalate are mutually exclusive")

        retry = handling.retry
        if retry is not None:
            if retry.attempts < 1:
                errors.append(f"{label}: retry attempts must be >= 1")
            if retry.delay < 0:
                errors.append(f"{label}: retry delay must be >= 0")
            if retry.backoff_multiplier is not None and retry.backoff_multiplier < 1:
                errors.append(f"{label}: backoffMultiplier must be >= 1")
            if retry.max_delay is not None and retry.max_delay < retry.delay:
                errors.append(f"{label}: maxDelay must be >= delay")

        for name in step.output_bindings:
            if step.outputs and name not in step.outputs:
                errors.append(f"{label}: output binding {name} is not a declared output")

    # Triggers
    seen_triggers = set()
    for index, trigger in enumerate(definition.triggers):
        label = f"trigger {trigger.id or index}"

        if trigger.id:
            if trigger.id in seen_triggers:
                errors.append(f"Duplicate trigger id: {trigger.id}")
            seen_triggers.add(trigger.id)

        if trigger.type == TriggerType.SCHEDULED:
            if not trigger.schedule or not croniter.is_valid(trigger.schedule):
                errors.append(f"{label}: invalid cron expression {trigger.schedule!r}")
            elif len(trigger.schedule.split()) != 5:
                errors.append(f"{label}: cron expression must have 5 fields")
            if trigger.timezone not in pytz.all_timezones_set:
                errors.append(f"{label}: unknown timezone {trigger.timezone}")

        elif trigger.type == TriggerType.EVENT:
            if not trigger.event:
                errors.append(f"{label}: event trigger needs an event name")

        elif trigger.type == TriggerType.THRESHOLD:
            if not trigger.metric:
                errors.append(f"{label}: threshold trigger needs a metric")
            if trigger.operator not in THRESHOLD_OPERATORS:
                errors.append(f"{label}: invalid threshold operator {trigger.operator}")
            if isinstance(trigger.value, bool) or not isinstance(trigger.value, (int, float)):
                errors.append(f"{label}: threshold value must be a number")

    return errors


def parse_definition(data: Dict[str, Any]) -> WorkflowDefinition:
    """Build a definition from its JSON form."""
    if not isinstance(data, dict):
        raise ConfigurationError("Workflow definition must be an object")
    try:
        return WorkflowDefinition.from_dict(data)
    except (ValueError, TypeError, KeyError) as e:
        raise ConfigurationError(
            f"Invalid workflow {data.get('id', '<unknown>')}", [str(e)],
        ) from e


class WorkflowRegistry:
    """
    Registry for workflow definitions.

    Every registered (id, version) pair is kept, so executions can be
    resolved against the version they started on. The most recently
    registered (or rolled back to) version is current.

    Features:
    - Validation on registration
    - JSON file and directory loading
    - Lookup by id, version and use case
    - Version history, rollback and comparison
    - Filtering by industry and tag
    - Event callbacks
    """

    def __init__(self):
        self._workflows: Dict[str, WorkflowDefinition] = {}  # id -> current
        self._versions: Dict[str, Dict[str, WorkflowDefinition]] = {}  # id -> version -> definition
        self._by_use_case: Dict[str, str] = {}  # useCaseId -> id

        self._on_workflow_registered: List[Callable] = []
        self._on_workflow_removed: List[Callable] = []

    # === Workflow Operations ===

    def register(self, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> WorkflowDefinition:
        """
        Validate and store a definition as the current version of its id.

        Registering an existing version again replaces that version.
        """
        if isinstance(definition, dict):
            definition = parse_definition(definition)

        errors = validate_definition(definition)
        if errors:
            raise ConfigurationError(f"Invalid workflow {definition.id or '<unnamed>'}", errors)

        versions = self._versions.setdefault(definition.id, {})
        versions.pop(definition.version, None)
        versions[definition.version] = definition
        self._make_current(definition)

        logger.info(
            "workflow_registered",
            workflow_id=definition.id,
            version=definition.version,
            use_case_id=definition.use_case_id,
            steps=len(definition.steps),
            triggers=len(definition.triggers),
        )

        self._fire_callbacks(self._on_workflow_registered, definition)
        return definition

    def _make_current(self, definition: WorkflowDefinition) -> None:
        previous = self._workflows.get(definition.id)
        if previous and previous.use_case_id:
            self._by_use_case.pop(previous.use_case_id, None)

        self._workflows[definition.id] = definition
        if definition.use_case_id:
            self._by_use_case[definition.use_case_id] = definition.id

    def unregister(self, workflow_id: str) -> bool:
        """Remove a definition and all of its versions."""
        definition = self._workflows.pop(workflow_id, None)
        if not definition:
            return False

        self._versions.pop(workflow_id, None)
        if definition.use_case_id:
            self._by_use_case.pop(definition.use_case_id, None)

        logger.info("workflow_removed", workflow_id=workflow_id)
        self._fire_callbacks(self._on_workflow_removed, definition)
        return True

    def get(self, workflow_id: str, version: Optional[str] = None) -> Optional[WorkflowDefinition]:
        """Get a workflow by ID, the current version unless one is named."""
        if version is None:
            return self._workflows.get(workflow_id)
        return self._versions.get(workflow_id, {}).get(version)

    def get_by_use_case(self, use_case_id: str) -> Optional[WorkflowDefinition]:
        """Get the workflow implementing a use case."""
        workflow_id = self._by_use_case.get(use_case_id)
        return self._workflows.get(workflow_id) if workflow_id else None

    def list(
        self,
        industry: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> List[WorkflowDefinition]:
        """List current workflows with filters."""
        workflows = list(self._workflows.values())

        if industry:
            workflows = [w for w in workflows if w.industry == industry]

        if tag:
            workflows = [w for w in workflows if tag in w.metadata.tags]

        return sorted(workflows, key=lambda w: w.id)

    def __len__(self) -> int:
        return len(self._workflows)

    def __contains__(self, workflow_id: str) -> bool:
        return workflow_id in self._workflows

    # === Versioning ===

    def get_version_history(self, workflow_id: str) -> List[WorkflowDefinition]:
        """Every registered version of a workflow, oldest registration first."""
        return list(self._versions.get(workflow_id, {}).values())

    def rollback(self, workflow_id: str, version: str) -> WorkflowDefinition:
        """
        Make an earlier version current again.

        Registration callbacks fire, so triggers follow the rolled back
        definition.

        Raises:
            WorkflowNotFoundError: no such workflow version
        """
        definition = self.get(workflow_id, version)
        if definition is None:
            raise WorkflowNotFoundError(f"{workflow_id}@{version}")

        self._make_current(definition)
        logger.info("workflow_rolled_back", workflow_id=workflow_id, version=version)

        self._fire_callbacks(self._on_workflow_registered, definition)
        return definition

    def compare_versions(self, workflow_id: str, from_version: str, to_version: str) -> Dict[str, Any]:
        """
        Differences between two versions of a workflow.

        Removing a step or changing a step type is breaking: executions
        of the older version cannot be resumed on the newer one.
        """
        old = self.get(workflow_id, from_version)
        new = self.get(workflow_id, to_version)
        if old is None or new is None:
            missing = from_version if old is None else to_version
            raise WorkflowNotFoundError(f"{workflow_id}@{missing}")

        old_steps = {step.id: step for step in old.steps}
        new_steps = {step.id: step for step in new.steps}

        added = [step_id for step_id in new_steps if step_id not in old_steps]
        removed = [step_id for step_id in old_steps if step_id not in new_steps]
        modified = [
            step_id for step_id, step in old_steps.items()
            if step_id in new_steps and step.to_dict() != new_steps[step_id].to_dict()
        ]
        retyped = [
            step_id for step_id in modified
            if old_steps[step_id].type != new_steps[step_id].type
        ]
        triggers_changed = (
            [t.to_dict() for t in old.triggers] != [t.to_dict() for t in new.triggers]
        )

        breaking = bool(removed or retyped)
        if breaking:
            compatibility = "incompatible"
        elif modified or triggers_changed:
            compatibility = "warning"
        else:
            compatibility = "compatible"

        return {
            "workflowId": workflow_id,
            "fromVersion": from_version,
            "toVersion": to_version,
            "addedSteps": added,
            "removedSteps": removed,
            "modifiedSteps": modified,
            "triggersChanged": triggers_changed,
            "breaking": breaking,
            "compatibility": compatibility,
        }

    # === Loading ===

    def load_file(self, path: Union[str, Path]) -> List[WorkflowDefinition]:
        """Load a JSON file holding one definition or a list of them."""
        path = Path(path)
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read {path}", [str(e)]) from e

        items = data if isinstance(data, list) else [data]
        loaded = [self.register(item) for item in items]

        logger.info("workflows_loaded", path=str(path), count=len(loaded))
        return loaded

    def load_directory(self, directory: Union[str, Path]) -> List[WorkflowDefinition]:
        """Load every *.json file in a directory."""
        loaded = []
        for path in sorted(Path(directory).glob("*.json")):
            loaded.extend(self.load_file(path))
        return loaded

    # === Event Callbacks ===

    def on_workflow_registered(self, callback: Callable) -> None:
        """Register callback for new or replaced workflows."""
        self._on_workflow_registered.append(callback)

    def on_workflow_removed(self, callback: Callable) -> None:
        """Register callback for removed workflows."""
        self._on_workflow_removed.append(callback)

    def _fire_callbacks(self, callbacks: List[Callable], *args) -> None:
        for callback in callbacks:
            try:
                callback(*args)
            except Exception as e:
                logger.error("callback_error", error=str(e))

    def get_stats(self) -> Dict[str, Any]:
        industries: Dict[str, int] = {}
        for workflow in self._workflows.values():
            industries[workflow.industry] = industries.get(workflow.industry, 0) + 1
        return {
            "total_workflows": len(self._workflows),
            "total_versions": sum(len(v) for v in self._versions.values()),
            "by_industry": industries,
        }
