from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger

from shipgate.models import (
    INITIAL_STATE,
    TASK_STATES,
    TERMINAL_STATE,
    TaskState,
    TaskStatus,
    TransitionResult,
    utcnow,
)

ValidationFn = Callable[[dict[str, Any]], bool | Awaitable[bool]]
EventHook = Callable[[dict[str, Any]], None]


@dataclass(frozen=True, slots=True)
class StateTransition:
    source: TaskStatus
    target: TaskStatus
    phase: str | None = None
    validation: ValidationFn | None = None
    error_message: str | None = None


@dataclass(slots=True)
class WorkflowValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    invalid_indices: list[int] = field(default_factory=list)


def _has_subtasks(context: dict[str, Any]) -> bool:
    subtasks = context.get("subtasks")
    return isinstance(subtasks, list | tuple) and len(subtasks) > 0


def _no_open_issues(context: dict[str, Any]) -> bool:
    issues = context.get("issues")
    return not issues


def _pr_opened(context: dict[str, Any]) -> bool:
    return bool(context.get("prNumber"))


def _fixes_applied(context: dict[str, Any]) -> bool:
    return bool(context.get("fixesApplied"))


def _ci_not_failed(context: dict[str, Any]) -> bool:
    checks = context.get("ciChecks")
    if not isinstance(checks, dict):
        return True
    return checks.get("passed") is not False


# Every in-flight state can be abandoned back to the initial state.
ABORTABLE_STATES: tuple[TaskStatus, ...] = tuple(
    state for state in TASK_STATES if state not in (INITIAL_STATE, TERMINAL_STATE)
)

DEFAULT_TRANSITIONS: tuple[StateTransition, ...] = (
    StateTransition("todo", "researching", phase="research"),
    StateTransition(
        "researching",
        "in_progress",
        phase="implement",
        validation=_has_subtasks,
        error_message="Research must produce at least one subtask",
    ),
    StateTransition("in_progress", "in_review", phase="review"),
    StateTransition(
        "in_review",
        "queue_for_pr",
        phase="create_pr",
        validation=_no_open_issues,
        error_message="Cannot create PR with unresolved issues",
    ),
    StateTransition("in_review", "in_progress", phase="fix"),
    StateTransition(
        "queue_for_pr",
        "pr_created",
        phase="monitor_pr",
        validation=_pr_opened,
        error_message="PR creation must succeed",
    ),
    StateTransition("pr_created", "pr_fixes_needed", phase="fix"),
    StateTransition(
        "pr_fixes_needed",
        "in_review",
        phase="review",
        validation=_fixes_applied,
        error_message="Fixes must be applied before returning to review",
    ),
    StateTransition(
        "pr_created",
        "ready_for_merge",
        phase="finalize",
        validation=_ci_not_failed,
        error_message="All CI checks must pass before ready for merge",
    ),
    StateTransition("ready_for_merge", "completed", phase="complete"),
    *(StateTransition(state, "todo") for state in ABORTABLE_STATES),
)


class TaskStateMachine:
    """Authoritative lifecycle state for every tracked task.

    Transitions for the same task are serialized, so the current state read before an
    async validation predicate is still current when the new state is written.
    """

    def __init__(
        self,
        event_hook: EventHook | None = None,
        *,
        strict_mode: bool = True,
        custom_transitions: Iterable[StateTransition] | None = None,
    ) -> None:
        self.event_hook = event_hook
        self.strict_mode = strict_mode
        self._transitions: dict[TaskStatus, list[StateTransition]] = {}
        self._task_states: dict[str, TaskState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        for transition in DEFAULT_TRANSITIONS:
            self.add_transition(transition)
        for transition in custom_transitions or ():
            self.add_transition(transition)

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def add_transition(self, transition: StateTransition) -> None:
        self._transitions.setdefault(transition.source, []).append(transition)

    def get_valid_transitions(self, source: TaskStatus) -> list[TaskStatus]:
        return [transition.target for transition in self._transitions.get(source, [])]

    def is_valid_transition(self, source: TaskStatus, target: TaskStatus) -> bool:
        return any(transition.target == target for transition in self._transitions.get(source, []))

    def get_transition(self, source: TaskStatus, target: TaskStatus) -> StateTransition | None:
        for transition in self._transitions.get(source, []):
            if transition.target == target:
                return transition
        return None

    async def transition(
        self,
        task_id: str,
        target: TaskStatus,
        context: dict[str, Any] | None = None,
    ) -> TransitionResult:
        lock = self._locks.setdefault(task_id, asyncio.Lock())
        async with lock:
            return await self._apply_transition(task_id, target, context or {})

    async def _apply_transition(
        self,
        task_id: str,
        target: TaskStatus,
        context: dict[str, Any],
    ) -> TransitionResult:
        current = self._task_states.get(task_id)
        source: TaskStatus = current.state if current is not None else INITIAL_STATE

        definition = self.get_transition(source, target)
        if definition is None:
            logger.debug("Rejected transition for {}: {} -> {}", task_id, source, target)
            self._emit(
                {
                    "event": "invalid_transition",
                    "task_id": task_id,
                    "from": source,
                    "to": target,
                    "timestamp": utcnow().isoformat(),
                }
            )
            return TransitionResult(
                valid=False, error=f"Invalid transition from {source} to {target}"
            )

        warnings: list[str] = []
        if definition.validation is not None and self.strict_mode:
            try:
                outcome = definition.validation(context)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
            except Exception as exc:
                logger.warning("Validation for {} -> {} raised: {}", source, target, exc)
                return TransitionResult(
                    valid=False, error=f"Validation error: {exc}", warnings=warnings
                )
            if not outcome:
                message = (
                    definition.error_message or f"Validation failed for transition to {target}"
                )
                self._emit(
                    {
                        "event": "validation_failed",
                        "task_id": task_id,
                        "state": target,
                        "issues": [definition.error_message or "Validation failed"],
                        "timestamp": utcnow().isoformat(),
                    }
                )
                return TransitionResult(valid=False, error=message, warnings=warnings)

        self._task_states[task_id] = TaskState(
            task_id=task_id,
            state=target,
            previous_state=source,
            entered_at=utcnow(),
            metadata=dict(context),
        )
        logger.debug("Task {} moved {} -> {} ({})", task_id, source, target, definition.phase)
        self._emit(
            {
                "event": "state_changed",
                "task_id": task_id,
                "from": source,
                "to": target,
                "phase": definition.phase,
                "timestamp": utcnow().isoformat(),
            }
        )
        return TransitionResult(valid=True, warnings=warnings)

    def get_task_state(self, task_id: str) -> TaskState | None:
        return self._task_states.get(task_id)

    def set_task_state(self, task_id: str, state: TaskState) -> None:
        self._task_states[task_id] = state

    def remove_task_state(self, task_id: str) -> None:
        self._task_states.pop(task_id, None)
        lock = self._locks.get(task_id)
        if lock is not None and not lock.locked():
            del self._locks[task_id]

    def get_all_task_states(self) -> dict[str, TaskState]:
        return dict(self._task_states)

    def get_tasks_in_state(self, state: TaskStatus) -> list[str]:
        return [task_id for task_id, task in self._task_states.items() if task.state == state]

    def clear_all_states(self) -> None:
        self._task_states.clear()
        self._locks = {task_id: lock for task_id, lock in self._locks.items() if lock.locked()}

    def get_stats(self, now: datetime | None = None) -> dict[str, Any]:
        current_time = now or utcnow()
        tasks_by_state = {state: 0 for state in TASK_STATES}
        durations: dict[str, list[float]] = {state: [] for state in TASK_STATES}
        for task in self._task_states.values():
            tasks_by_state[task.state] += 1
            durations[task.state].append((current_time - task.entered_at).total_seconds())
        average_seconds = {
            state: (sum(values) / len(values) if values else 0.0)
            for state, values in durations.items()
        }
        return {
            "total_tasks": len(self._task_states),
            "tasks_by_state": tasks_by_state,
            "average_seconds_in_state": average_seconds,
        }

    def export_mermaid_diagram(self) -> str:
        lines = ["```mermaid", "stateDiagram-v2", "    [*] --> todo"]
        seen: set[tuple[str, str]] = set()
        for source, transitions in self._transitions.items():
            for transition in transitions:
                edge = (source, transition.target)
                if edge in seen:
                    continue
                seen.add(edge)
                lines.append(f"    {source} --> {transition.target}")
        lines.append("```")
        return "\n".join(lines)

    def validate_workflow_path(self, path: list[TaskStatus]) -> WorkflowValidation:
        errors: list[str] = []
        indices: list[int] = []
        for index, (source, target) in enumerate(zip(path, path[1:])):
            if not self.is_valid_transition(source, target):
                errors.append(f"Invalid transition at position {index}: {source} -> {target}")
                indices.append(index)
        return WorkflowValidation(valid=not errors, errors=errors, invalid_indices=indices)
