import asyncio
from pathlib import Path
from typing import Any

from shipgate.errors import ExecutorError, IntegrationError
from shipgate.executors.base import ExecutorRequest, ExecutorResponse, ModelExecutor
from shipgate.integrations import CodeReviewIntegration
from shipgate.memory import PipelineMemory
from shipgate.models import Feature, Issue, PipelineStepConfig, PipelineStepResult
from shipgate.steps import CustomStep
from shipgate.steps.custom import check_success_criteria


class SequenceExecutor(ModelExecutor):
    def __init__(
        self, *outputs: str, fail_with: Exception | None = None, status: str = "passed"
    ) -> None:
        self.outputs = list(outputs)
        self.status = status
        self.fail_with = fail_with
        self.prompts: list[str] = []
        self.on_call: Any = None

    async def execute(self, request: ExecutorRequest) -> ExecutorResponse:
        self.prompts.append(request.prompt)
        if self.on_call is not None:
            self.on_call()
        if self.fail_with is not None:
            raise self.fail_with
        output = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        return ExecutorResponse(status=self.status, output=output)


class FakeReview(CodeReviewIntegration):
    name = "fake-review"

    def __init__(
        self, result: PipelineStepResult | None = None, error: Exception | None = None
    ) -> None:
        self.result = result
        self.error = error
        self.calls = 0

    async def submit_review(
        self,
        feature: Feature,
        step_config: PipelineStepConfig,
        signal: asyncio.Event | None = None,
    ) -> PipelineStepResult:
        _ = feature, step_config, signal
        self.calls += 1
        if self.error is not None:
            raise self.error
        assert self.result is not None
        return self.result


FEATURE = Feature(id="feat-7", title="Audit log", description="Record admin actions", status="wip")


def _custom(config: dict[str, Any]) -> PipelineStepConfig:
    payload = {"prompt": "Check {{title}}", "successCriteria": "Audit entries are written"}
    payload.update(config)
    return PipelineStepConfig.from_dict(
        {
            "id": "audit-check",
            "type": "custom",
            "name": "Audit check",
            "model": "same",
            "required": True,
            "autoTrigger": True,
            "config": payload,
        }
    )


def test_check_success_criteria_phrases() -> None:
    assert check_success_criteria("All good. Success criteria met.") is True
    assert check_success_criteria("The criteria fulfilled nicely") is True
    assert check_success_criteria("Success criteria not met: no entries") is False
    assert check_success_criteria("Requirements not satisfied") is False
    assert check_success_criteria("I changed two files.") is None


def test_loop_runs_exactly_max_loops_when_every_attempt_fails() -> None:
    executor = SequenceExecutor("Criteria not met yet.")
    step = CustomStep(executor)
    config = _custom({"loopConfig": {"maxLoops": 3, "loopUntilSuccess": True}})

    result = asyncio.run(step.execute(FEATURE, config))

    assert result.status == "failed"
    assert result.iterations == 3
    assert len(executor.prompts) == 3
    assert "This is attempt 2 of 3." in executor.prompts[1]
    assert "This is attempt 3 of 3." in executor.prompts[2]
    assert "attempt" not in executor.prompts[0].split("Success Criteria:")[1]


def test_loop_stops_at_first_success() -> None:
    executor = SequenceExecutor("Criteria not met.", "Done. Success criteria met.")
    step = CustomStep(executor)
    config = _custom({"loopConfig": {"maxLoops": 5, "loopUntilSuccess": True}})

    result = asyncio.run(step.execute(FEATURE, config))

    assert result.status == "passed"
    assert result.iterations == 2
    assert len(executor.prompts) == 2


def test_single_attempt_without_loop_until_success() -> None:
    executor = SequenceExecutor("Criteria not met.")
    step = CustomStep(executor)
    config = _custom({"loopConfig": {"maxLoops": 4, "loopUntilSuccess": False}})

    result = asyncio.run(step.execute(FEATURE, config))

    assert result.status == "failed"
    assert result.iterations == 1


def test_ambiguous_reply_counts_as_success_unless_disabled() -> None:
    config = _custom({})

    lenient = asyncio.run(CustomStep(SequenceExecutor("Made changes.")).execute(FEATURE, config))
    strict = asyncio.run(
        CustomStep(SequenceExecutor("Made changes."), ambiguous_success=False).execute(
            FEATURE, config
        )
    )

    assert lenient.status == "passed"
    assert lenient.metadata == {"criteriaVerdict": None, "ambiguous": True}
    assert strict.status == "failed"


def test_ambiguous_reply_ignores_executor_marker_status() -> None:
    executor = SequenceExecutor("[REVIEW_FAILED]\nI looked at the code.", status="failed")

    result = asyncio.run(CustomStep(executor).execute(FEATURE, _custom({})))

    assert result.status == "passed"
    assert result.metadata == {"criteriaVerdict": None, "ambiguous": True}


def test_prompt_substitutes_variables_and_feature_fields() -> None:
    executor = SequenceExecutor("Success criteria met.")
    config = _custom(
        {
            "prompt": "Team {{team}} reviews {{featureId}}: {{title}} / {{description}} "
            "[{{status}}] {{unknown}}",
            "variables": {"team": "platform"},
        }
    )

    asyncio.run(CustomStep(executor).execute(FEATURE, config))

    prompt = executor.prompts[0]
    assert prompt.startswith(
        "Team platform reviews feat-7: Audit log / Record admin actions [wip] {{unknown}}"
    )
    assert "\n\nSuccess Criteria:\nAudit entries are written\n\n" in prompt


def test_memory_records_every_attempt_and_feeds_placeholders(tmp_path: Path) -> None:
    memory = PipelineMemory(tmp_path / "memory.json")
    executor = SequenceExecutor("Criteria not met.", "Criteria not met.", "Success criteria met.")
    step = CustomStep(executor, memory)
    config = _custom(
        {
            "prompt": "Loop {{loopCount}} after {{previousAttempts}}",
            "loopConfig": {"maxLoops": 3, "loopUntilSuccess": True},
            "memoryConfig": {"enabled": True},
        }
    )

    result = asyncio.run(step.execute(FEATURE, config))

    assert result.iterations == 3
    assert executor.prompts[0].startswith("Loop {{loopCount}} after {{previousAttempts}}")
    assert executor.prompts[1].startswith("Loop 2 after 1")
    assert executor.prompts[2].startswith("Loop 3 after 2")
    stored = memory.get_memory_for_next_iteration("audit-check", "feat-7")
    assert stored is not None
    assert stored.iteration_count == 3
    assert (tmp_path / "memory.json").exists()


def test_cancellation_stops_the_loop() -> None:
    signal = asyncio.Event()
    executor = SequenceExecutor("Criteria not met.")
    executor.on_call = signal.set
    config = _custom({"loopConfig": {"maxLoops": 5, "loopUntilSuccess": True}})

    result = asyncio.run(CustomStep(executor).execute(FEATURE, config, signal))

    assert result.status == "failed"
    assert result.iterations == 1


def test_executor_error_becomes_failed_result_and_is_remembered() -> None:
    memory = PipelineMemory()
    executor = SequenceExecutor(fail_with=ExecutorError("claude returned no output"))
    config = _custom({"memoryConfig": {"enabled": True}})

    result = asyncio.run(CustomStep(executor, memory).execute(FEATURE, config))

    assert result.status == "failed"
    assert result.output == "claude returned no output"
    assert result.metadata == {"error": "claude returned no output"}
    assert result.iterations == 1
    stored = memory.get_memory_for_next_iteration("audit-check", "feat-7")
    assert stored is not None
    assert stored.iteration_count == 1


def test_passing_integration_review_skips_the_model() -> None:
    review = PipelineStepResult(status="passed", output="LGTM", issues=[])
    integration = FakeReview(review)
    executor = SequenceExecutor("unused")
    config = _custom({"codeReviewConfig": {"enabled": True}})

    result = asyncio.run(CustomStep(executor, integration=integration).execute(FEATURE, config))

    assert result.status == "passed"
    assert result.output == "LGTM"
    assert result.iterations == 1
    assert integration.calls == 1
    assert executor.prompts == []


def test_failing_integration_review_falls_back_to_model() -> None:
    issue = Issue(hash="abc", summary="Missing audit for deletes")
    integration = FakeReview(PipelineStepResult(status="failed", output="1 issue", issues=[issue]))
    executor = SequenceExecutor("Success criteria met.")
    config = _custom({"codeReviewConfig": {"enabled": True, "fallbackToAI": True}})

    result = asyncio.run(CustomStep(executor, integration=integration).execute(FEATURE, config))

    assert result.status == "passed"
    assert len(executor.prompts) == 1


def test_failing_integration_review_is_final_without_fallback() -> None:
    integration = FakeReview(PipelineStepResult(status="failed", output="1 issue", issues=[]))
    executor = SequenceExecutor("Success criteria met.")
    config = _custom({"codeReviewConfig": {"enabled": True, "fallbackToAI": False}})

    result = asyncio.run(CustomStep(executor, integration=integration).execute(FEATURE, config))

    assert result.status == "failed"
    assert result.output == "1 issue"
    assert executor.prompts == []


def test_integration_error_falls_back_when_allowed() -> None:
    integration = FakeReview(error=IntegrationError("service unavailable"))
    executor = SequenceExecutor("Success criteria met.")
    config = _custom({"codeReviewConfig": {"enabled": True}})

    result = asyncio.run(CustomStep(executor, integration=integration).execute(FEATURE, config))

    assert result.status == "passed"
    assert integration.calls == 1


def test_missing_integration_without_fallback_fails() -> None:
    executor = SequenceExecutor("Success criteria met.")
    config = _custom({"codeReviewConfig": {"enabled": True, "fallbackToAI": False}})

    result = asyncio.run(CustomStep(executor).execute(FEATURE, config))

    assert result.status == "failed"
    assert "No code review integration" in result.output
    assert executor.prompts == []
