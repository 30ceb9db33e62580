import asyncio
from datetime import timedelta
from typing import Any

from shipgate.models import TASK_STATES, TaskState, utcnow
from shipgate.state_machine import (
    ABORTABLE_STATES,
    DEFAULT_TRANSITIONS,
    StateTransition,
    TaskStateMachine,
)


def _place(machine: TaskStateMachine, task_id: str, state: str) -> None:
    machine.set_task_state(
        task_id,
        TaskState(task_id=task_id, state=state, previous_state=None),  # type: ignore[arg-type]
    )


def test_edge_table_is_exhaustive() -> None:
    machine = TaskStateMachine()
    declared = {(transition.source, transition.target) for transition in DEFAULT_TRANSITIONS}

    for source in TASK_STATES:
        for target in TASK_STATES:
            assert machine.is_valid_transition(source, target) is ((source, target) in declared)


def test_completed_is_terminal_and_every_inflight_state_can_abort() -> None:
    machine = TaskStateMachine()

    assert machine.get_valid_transitions("completed") == []
    for state in ABORTABLE_STATES:
        assert "todo" in machine.get_valid_transitions(state)
    assert "todo" not in machine.get_valid_transitions("todo")


def test_invalid_transition_leaves_state_unchanged() -> None:
    events: list[dict[str, Any]] = []
    machine = TaskStateMachine(events.append)
    _place(machine, "task-1", "in_progress")
    before = machine.get_task_state("task-1")

    result = asyncio.run(machine.transition("task-1", "completed"))

    assert result.valid is False
    assert result.error == "Invalid transition from in_progress to completed"
    assert machine.get_task_state("task-1") is before
    assert events[-1]["event"] == "invalid_transition"
    assert events[-1]["from"] == "in_progress"


def test_untracked_task_starts_from_todo() -> None:
    machine = TaskStateMachine()

    result = asyncio.run(machine.transition("task-1", "researching"))

    assert result.valid is True
    state = machine.get_task_state("task-1")
    assert state is not None
    assert state.state == "researching"
    assert state.previous_state == "todo"


def test_review_to_queue_requires_no_open_issues() -> None:
    events: list[dict[str, Any]] = []
    machine = TaskStateMachine(events.append)
    _place(machine, "task-1", "in_review")

    blocked = asyncio.run(machine.transition("task-1", "queue_for_pr", {"issues": ["x"]}))

    assert blocked.valid is False
    assert "unresolved issues" in (blocked.error or "")
    assert machine.get_task_state("task-1").state == "in_review"  # type: ignore[union-attr]
    assert events[-1]["event"] == "validation_failed"

    allowed = asyncio.run(machine.transition("task-1", "queue_for_pr", {"issues": []}))

    assert allowed.valid is True
    state = machine.get_task_state("task-1")
    assert state is not None
    assert state.state == "queue_for_pr"
    assert state.previous_state == "in_review"
    assert events[-1]["event"] == "state_changed"
    assert events[-1]["phase"] == "create_pr"


def test_lenient_mode_skips_validation() -> None:
    machine = TaskStateMachine(strict_mode=False)
    _place(machine, "task-1", "researching")

    result = asyncio.run(machine.transition("task-1", "in_progress", {"subtasks": []}))

    assert result.valid is True
    assert machine.get_task_state("task-1").state == "in_progress"  # type: ignore[union-attr]


def test_validation_predicates_follow_context() -> None:
    machine = TaskStateMachine()
    _place(machine, "research", "researching")
    _place(machine, "pr", "queue_for_pr")
    _place(machine, "ci", "pr_created")
    _place(machine, "fixes", "pr_fixes_needed")

    async def _run() -> list[bool]:
        results = [
            await machine.transition("research", "in_progress", {"subtasks": []}),
            await machine.transition("research", "in_progress", {"subtasks": ["a"]}),
            await machine.transition("pr", "pr_created", {}),
            await machine.transition("pr", "pr_created", {"prNumber": 42}),
            await machine.transition("ci", "ready_for_merge", {"ciChecks": {"passed": False}}),
            await machine.transition("ci", "ready_for_merge", {}),
            await machine.transition("fixes", "in_review", {"fixesApplied": False}),
            await machine.transition("fixes", "in_review", {"fixesApplied": True}),
        ]
        return [result.valid for result in results]

    assert asyncio.run(_run()) == [False, True, False, True, False, True, False, True]


def test_raising_predicate_is_reported_as_validation_error() -> None:
    def _explode(context: dict[str, Any]) -> bool:
        _ = context
        raise RuntimeError("lookup failed")

    machine = TaskStateMachine(
        custom_transitions=[StateTransition("todo", "in_progress", validation=_explode)]
    )

    result = asyncio.run(machine.transition("task-1", "in_progress"))

    assert result.valid is False
    assert result.error == "Validation error: lookup failed"
    assert machine.get_task_state("task-1") is None


def test_async_predicate_is_awaited() -> None:
    async def _approved(context: dict[str, Any]) -> bool:
        await asyncio.sleep(0)
        return bool(context.get("approved"))

    machine = TaskStateMachine(
        custom_transitions=[StateTransition("todo", "completed", validation=_approved)]
    )

    async def _run() -> tuple[bool, bool]:
        denied = await machine.transition("task-1", "completed", {"approved": False})
        granted = await machine.transition("task-1", "completed", {"approved": True})
        return denied.valid, granted.valid

    assert asyncio.run(_run()) == (False, True)


def test_concurrent_transitions_for_one_task_are_serialized() -> None:
    async def _slow_gate(context: dict[str, Any]) -> bool:
        _ = context
        await asyncio.sleep(0.01)
        return True

    machine = TaskStateMachine(
        custom_transitions=[StateTransition("in_progress", "completed", validation=_slow_gate)]
    )
    _place(machine, "task-1", "in_progress")

    async def _run() -> list[bool]:
        results = await asyncio.gather(
            machine.transition("task-1", "completed"),
            machine.transition("task-1", "in_review"),
        )
        return [result.valid for result in results]

    # The second request sees the state written by the first.
    assert asyncio.run(_run()) == [True, False]
    assert machine.get_task_state("task-1").state == "completed"  # type: ignore[union-attr]


def test_task_registry_helpers() -> None:
    machine = TaskStateMachine()
    _place(machine, "a", "in_progress")
    _place(machine, "b", "in_progress")
    _place(machine, "c", "in_review")

    assert sorted(machine.get_tasks_in_state("in_progress")) == ["a", "b"]

    snapshot = machine.get_all_task_states()
    snapshot.pop("a")
    assert machine.get_task_state("a") is not None

    machine.remove_task_state("a")
    assert machine.get_task_state("a") is None

    machine.clear_all_states()
    assert machine.get_all_task_states() == {}


def test_stats_report_counts_and_time_in_state() -> None:
    machine = TaskStateMachine()
    now = utcnow()
    machine.set_task_state(
        "a",
        TaskState(
            task_id="a",
            state="in_review",
            previous_state="in_progress",
            entered_at=now - timedelta(seconds=30),
        ),
    )

    stats = machine.get_stats(now=now)

    assert stats["total_tasks"] == 1
    assert stats["tasks_by_state"]["in_review"] == 1
    assert stats["tasks_by_state"]["todo"] == 0
    assert stats["average_seconds_in_state"]["in_review"] == 30.0


def test_mermaid_diagram_lists_every_edge() -> None:
    diagram = TaskStateMachine().export_mermaid_diagram()

    assert diagram.startswith("```mermaid\nstateDiagram-v2\n    [*] --> todo")
    assert "    in_review --> queue_for_pr" in diagram
    assert "    ready_for_merge --> completed" in diagram
    assert diagram.endswith("```")


def test_validate_workflow_path_reports_bad_hops() -> None:
    machine = TaskStateMachine()

    happy = machine.validate_workflow_path(
        ["todo", "researching", "in_progress", "in_review", "queue_for_pr", "pr_created"]
    )
    broken = machine.validate_workflow_path(["todo", "in_review", "queue_for_pr", "completed"])

    assert happy.valid is True
    assert broken.valid is False
    assert broken.invalid_indices == [0, 2]
    assert broken.errors[0] == "Invalid transition at position 0: todo -> in_review"
