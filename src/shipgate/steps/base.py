from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, ClassVar, Generic, TypeVar

from loguru import logger

from shipgate.executors.base import ExecutorRequest, ExecutorResponse, ModelExecutor
from shipgate.models import Feature, PipelineStepConfig, PipelineStepResult, get_model_for_step
from shipgate.step_configs import StepTypeConfig

ConfigT = TypeVar("ConfigT", bound=StepTypeConfig)


def feature_details(feature: Feature) -> str:
    return (
        "Feature Details:\n"
        f"- Title: {feature.title}\n"
        f"- Description: {feature.description}\n"
        f"- Status: {feature.status}\n"
    )


def as_dict_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


class PipelineStep(ABC, Generic[ConfigT]):
    step_type: ClassVar[str]
    label: ClassVar[str]
    config_type: ClassVar[type]

    def __init__(self, executor: ModelExecutor) -> None:
        self.executor = executor

    def config_for(self, step_config: PipelineStepConfig) -> ConfigT:
        config = step_config.config
        if not isinstance(config, self.config_type):
            raise TypeError(
                f"{self.label} step {step_config.id} expects {self.config_type.__name__}, "
                f"got {type(config).__name__}"
            )
        return config  # type: ignore[return-value]

    @abstractmethod
    def build_prompt(self, feature: Feature, config: ConfigT) -> str:
        """Render the request sent to the model executor."""

    @abstractmethod
    def parse_result(self, output: str) -> dict[str, Any]:
        """Decode the structured fields of a model reply."""

    @abstractmethod
    def build_result(
        self, response: ExecutorResponse, parsed: dict[str, Any], config: ConfigT
    ) -> PipelineStepResult:
        """Turn a parsed reply into the step result."""

    async def invoke(
        self,
        feature: Feature,
        step_config: PipelineStepConfig,
        prompt: str,
        signal: asyncio.Event | None,
        project_path: Path | None,
    ) -> ExecutorResponse:
        label = self.label

        def on_progress(message: str) -> None:
            logger.debug("[{} step] {}", label, message)

        return await self.executor.execute(
            ExecutorRequest(
                feature=feature,
                step_config=step_config,
                prompt=prompt,
                model=get_model_for_step(feature, step_config),
                signal=signal,
                project_path=project_path,
                on_progress=on_progress,
            )
        )

    async def execute(
        self,
        feature: Feature,
        step_config: PipelineStepConfig,
        signal: asyncio.Event | None = None,
        project_path: Path | None = None,
    ) -> PipelineStepResult:
        config = self.config_for(step_config)
        prompt = self.build_prompt(feature, config)
        response = await self.invoke(feature, step_config, prompt, signal, project_path)
        return self.build_result(response, self.parse_result(response.output), config)
