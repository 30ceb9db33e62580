import asyncio
from typing import Any

import pytest

from shipgate.errors import ProcessTimeoutError
from shipgate.executor import PipelineStepExecutor, build_step_handlers
from shipgate.executors.base import ExecutorRequest, ExecutorResponse, ModelExecutor
from shipgate.memory import PipelineMemory, StepFeedback
from shipgate.models import Feature, PipelineStepConfig, PipelineStepResult
from shipgate.steps import ReviewStep


class ReplyExecutor(ModelExecutor):
    def __init__(self, output: str = "", error: Exception | None = None) -> None:
        self.output = output
        self.error = error

    async def execute(self, request: ExecutorRequest) -> ExecutorResponse:
        _ = request
        if self.error is not None:
            raise self.error
        return ExecutorResponse(status="passed", output=self.output)


class OddStatusStep(ReviewStep):
    async def execute(
        self,
        feature: Feature,
        step_config: PipelineStepConfig,
        signal: asyncio.Event | None = None,
        project_path: Any = None,
    ) -> PipelineStepResult:
        _ = feature, step_config, signal, project_path
        return PipelineStepResult(status="needs_human", output="waiting")


FEATURE = Feature(id="feat-3", title="Export CSV", description="", status="in_review")
REVIEW = PipelineStepConfig.from_dict(
    {
        "id": "review",
        "type": "review",
        "name": "Code review",
        "model": "same",
        "required": True,
        "autoTrigger": True,
        "config": {},
    }
)


def _run(executor: PipelineStepExecutor) -> tuple[PipelineStepResult, list[str], list[str]]:
    progress: list[str] = []
    statuses: list[str] = []
    result = asyncio.run(
        executor.execute_step(
            FEATURE, REVIEW, on_progress=progress.append, on_status_change=statuses.append
        )
    )
    return result, progress, statuses


def test_passing_step_reports_progress_and_status() -> None:
    events: list[dict[str, Any]] = []
    executor = PipelineStepExecutor.create(
        ReplyExecutor("[REVIEW_PASSED]\nNo issues found."), event_hook=events.append
    )

    result, progress, statuses = _run(executor)

    assert result.status == "passed"
    assert progress == ["Starting Code review...", "Code review completed successfully"]
    assert statuses == ["in_progress", "passed"]
    assert [event["event"] for event in events] == ["step_started", "step_finished"]
    assert events[-1]["status"] == "passed"


def test_failed_step_reports_failure() -> None:
    executor = PipelineStepExecutor.create(ReplyExecutor("[REVIEW_FAILED]\n1. Bad (a.py:1)"))

    result, progress, statuses = _run(executor)

    assert result.status == "failed"
    assert progress[-1] == "Code review failed"
    assert statuses[-1] == "failed"


def test_errors_never_escape_the_executor() -> None:
    error = ProcessTimeoutError(
        "Process timed out after 30000ms without any output", timeout_ms=30000, had_output=False
    )
    executor = PipelineStepExecutor.create(ReplyExecutor(error=error))

    result, progress, statuses = _run(executor)

    assert result.status == "failed"
    assert result.output == "Process timed out after 30000ms without any output"
    assert result.metadata == {"error": "Process timed out after 30000ms without any output"}
    assert progress[-1] == "Code review failed: Process timed out after 30000ms without any output"
    assert statuses == ["in_progress", "failed"]


def test_other_statuses_pass_through() -> None:
    handlers = build_step_handlers(ReplyExecutor())
    handlers["review"] = OddStatusStep(ReplyExecutor())
    executor = PipelineStepExecutor(handlers)

    result, progress, statuses = _run(executor)

    assert result.status == "needs_human"
    assert progress[-1] == "Code review needs_human"
    assert statuses[-1] == "needs_human"


def test_dispatch_table_must_cover_every_step_type() -> None:
    handlers = build_step_handlers(ReplyExecutor())
    del handlers["performance"]

    with pytest.raises(ValueError, match="missing"):
        PipelineStepExecutor(handlers)


def test_dispatch_table_rejects_wrong_handler_for_a_type() -> None:
    handlers = build_step_handlers(ReplyExecutor())
    handlers["security"] = handlers["review"]

    with pytest.raises(ValueError, match="expects ReviewConfig"):
        PipelineStepExecutor(handlers)


def test_model_selection_is_exposed() -> None:
    executor = PipelineStepExecutor.create(ReplyExecutor())
    feature = Feature(id="f", model="opus")
    step = PipelineStepConfig.from_dict(
        {
            "id": "s",
            "type": "review",
            "name": "s",
            "model": "different",
            "required": True,
            "autoTrigger": True,
            "config": {},
        }
    )

    assert executor.get_model_for_step(feature, step) == "sonnet"


def test_skip_and_clear_drop_memory_and_notify() -> None:
    events: list[dict[str, Any]] = []
    memory = PipelineMemory()
    memory.store_feedback("review", "feat-3", StepFeedback([], "x"))
    memory.store_feedback("audit", "feat-3", StepFeedback([], "x"))
    executor = PipelineStepExecutor.create(ReplyExecutor(), memory=memory, event_hook=events.append)

    executor.skip_step("review", "feat-3")
    executor.clear_step_results("audit", "feat-3")

    assert memory.get_memory_for_next_iteration("review", "feat-3") is None
    assert memory.get_memory_for_next_iteration("audit", "feat-3") is None
    assert [event["event"] for event in events] == ["step_skipped", "step_results_cleared"]
