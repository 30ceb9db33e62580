from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from pathlib import Path
from typing import Any

from loguru import logger

from shipgate.errors import IntegrationError
from shipgate.executors.base import ExecutorResponse, ModelExecutor
from shipgate.integrations import CodeReviewIntegration
from shipgate.memory import IterationMemory, PipelineMemory, StepFeedback
from shipgate.models import Feature, Issue, PipelineStepConfig, PipelineStepResult
from shipgate.step_configs import CustomConfig
from shipgate.steps.base import PipelineStep

SUCCESS_PHRASES = ("success criteria met", "all requirements satisfied", "criteria fulfilled")
FAILURE_PHRASES = ("criteria not met", "requirements not satisfied", "criteria failed")


def check_success_criteria(output: str) -> bool | None:
    """Keyword verdict on a reply: True, False, or None when it states neither."""
    lowered = output.lower()
    if any(phrase in lowered for phrase in SUCCESS_PHRASES):
        return True
    if any(phrase in lowered for phrase in FAILURE_PHRASES):
        return False
    return None


def render_template(
    template: str,
    feature: Feature,
    config: CustomConfig,
    memory_context: IterationMemory | None,
    loop_count: int,
) -> str:
    prompt = template
    for key, value in config.variables.items():
        prompt = prompt.replace(f"{{{{{key}}}}}", value)

    replacements = {
        "feature": json.dumps(feature.to_dict(), indent=2, ensure_ascii=False),
        "featureId": feature.id,
        "featureTitle": feature.title,
        "featureDescription": feature.description,
        "featureStatus": feature.status,
        "title": feature.title,
        "description": feature.description,
        "status": feature.status,
    }
    if memory_context is not None:
        replacements["previousFeedback"] = "\n".join(
            f"{issue.summary} ({issue.location})" if issue.location else issue.summary
            for issue in memory_context.previous_issues
        )
        replacements["loopCount"] = str(loop_count)
        replacements["previousAttempts"] = str(memory_context.iteration_count)
    for key, value in replacements.items():
        prompt = prompt.replace(f"{{{{{key}}}}}", value)
    return prompt


class CustomStep(PipelineStep[CustomConfig]):
    """User-defined prompt run in a bounded loop until its success criteria are met."""

    step_type = "custom"
    label = "Custom"
    config_type = CustomConfig

    def __init__(
        self,
        executor: ModelExecutor,
        memory: PipelineMemory | None = None,
        integration: CodeReviewIntegration | None = None,
        *,
        retry_delay: float = 0.0,
        ambiguous_success: bool = True,
    ) -> None:
        super().__init__(executor)
        self.memory = memory
        self.integration = integration
        self.retry_delay = retry_delay
        self.ambiguous_success = ambiguous_success

    def build_prompt(
        self,
        feature: Feature,
        config: CustomConfig,
        memory_context: IterationMemory | None = None,
        loop_count: int = 1,
    ) -> str:
        prompt = render_template(config.prompt, feature, config, memory_context, loop_count)
        prompt += (
            "\n\nSuccess Criteria:\n"
            f"{config.success_criteria}\n\n"
            "Please provide your response and indicate if the success criteria have been met.\n"
        )
        if config.loop.loop_until_success and loop_count > 1:
            prompt += (
                f"\nThis is attempt {loop_count} of {config.loop.max_loops}.\n"
                "Previous attempts did not fully meet the success criteria.\n"
                "Please address any remaining issues.\n"
            )
            if memory_context is not None and memory_context.previous_issues:
                prompt += "\nPreviously reported issues:\n" + "".join(
                    f"- {issue.summary}\n" for issue in memory_context.previous_issues
                )
        return prompt

    def parse_result(self, output: str) -> dict[str, Any]:
        verdict = check_success_criteria(output)
        return {"verdict": verdict, "ambiguous": verdict is None}

    def build_result(
        self, response: ExecutorResponse, parsed: dict[str, Any], config: CustomConfig
    ) -> PipelineStepResult:
        verdict = parsed["verdict"]
        if verdict is None:
            verdict = self.ambiguous_success
        return PipelineStepResult(
            status="passed" if verdict else "failed",
            output=response.output,
            metadata={"criteriaVerdict": parsed["verdict"], "ambiguous": parsed["ambiguous"]},
        )

    def _remember(
        self,
        config: CustomConfig,
        step_config: PipelineStepConfig,
        feature: Feature,
        issues: list[Issue],
        summary: str,
    ) -> IterationMemory | None:
        if self.memory is None or not config.memory.enabled:
            return None
        self.memory.store_feedback(step_config.id, feature.id, StepFeedback(issues, summary))
        return self.memory.get_memory_for_next_iteration(step_config.id, feature.id)

    async def _run_integration(
        self,
        feature: Feature,
        step_config: PipelineStepConfig,
        config: CustomConfig,
        signal: asyncio.Event | None,
    ) -> PipelineStepResult | None:
        """Integration result to use as-is, or None to fall through to the model."""
        fallback = config.code_review.fallback_to_ai
        if self.integration is None:
            if not fallback:
                raise IntegrationError("No code review integration is configured")
            logger.warning(
                "No code review integration configured for {}, using model", step_config.id
            )
            return None
        try:
            review = await self.integration.submit_review(feature, step_config, signal)
        except (IntegrationError, OSError) as exc:
            if not fallback:
                raise
            logger.warning("{} failed, falling back to model: {}", self.integration.name, exc)
            return None
        if review.passed or not fallback:
            return review
        logger.warning(
            "{} reported {} for {}, falling back to model",
            self.integration.name,
            review.status,
            step_config.id,
        )
        return None

    async def execute(
        self,
        feature: Feature,
        step_config: PipelineStepConfig,
        signal: asyncio.Event | None = None,
        project_path: Path | None = None,
    ) -> PipelineStepResult:
        config = self.config_for(step_config)
        memory_context = None
        if self.memory is not None and config.memory.enabled:
            memory_context = self.memory.get_memory_for_next_iteration(step_config.id, feature.id)

        max_loops = config.loop.max_loops
        loop_count = 0
        result: PipelineStepResult | None = None
        try:
            while loop_count < max_loops:
                loop_count += 1
                logger.info("Custom step {} attempt {}/{}", step_config.id, loop_count, max_loops)
                prompt = self.build_prompt(feature, config, memory_context, loop_count)

                if config.code_review.enabled:
                    review = await self._run_integration(feature, step_config, config, signal)
                    if review is not None:
                        self._remember(
                            config, step_config, feature, review.issues or [], review.output
                        )
                        result = replace(review, iterations=loop_count)
                        break

                response = await self.invoke(feature, step_config, prompt, signal, project_path)
                result = self.build_result(response, self.parse_result(response.output), config)
                result.iterations = loop_count
                memory_context = (
                    self._remember(config, step_config, feature, [], response.output)
                    or memory_context
                )
                if result.passed or not config.loop.loop_until_success:
                    break
                if signal is not None and signal.is_set():
                    logger.info(
                        "Custom step {} cancelled after attempt {}", step_config.id, loop_count
                    )
                    break
                if loop_count < max_loops:
                    logger.info("Success criteria not met for {}, retrying", step_config.id)
                    if self.retry_delay > 0:
                        await asyncio.sleep(self.retry_delay)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning(
                "Custom step {} failed on attempt {}: {}", step_config.id, loop_count, message
            )
            self._remember(config, step_config, feature, [], message)
            return PipelineStepResult(
                status="failed",
                output=message,
                metadata={"error": message},
                iterations=loop_count,
            )

        if result is None:
            return PipelineStepResult(
                status="failed",
                output="No result generated",
                metadata={"error": "No result generated"},
                iterations=loop_count,
            )
        return result
