from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from loguru import logger

from shipgate.executors.base import ModelExecutor
from shipgate.integrations import CodeReviewIntegration
from shipgate.memory import PipelineMemory
from shipgate.models import Feature, PipelineStepConfig, PipelineStepResult, get_model_for_step
from shipgate.step_configs import STEP_CONFIG_TYPES, STEP_TYPES
from shipgate.steps import (
    CustomStep,
    PerformanceStep,
    PipelineStep,
    ReviewStep,
    SecurityStep,
    TestStep,
)

ProgressCallback = Callable[[str], None]
StatusCallback = Callable[[str], None]
EventHook = Callable[[dict[str, Any]], None]


def build_step_handlers(
    model_executor: ModelExecutor,
    *,
    memory: PipelineMemory | None = None,
    integration: CodeReviewIntegration | None = None,
    retry_delay: float = 0.0,
    ambiguous_success: bool = True,
) -> dict[str, PipelineStep[Any]]:
    handlers: list[PipelineStep[Any]] = [
        ReviewStep(model_executor),
        SecurityStep(model_executor),
        PerformanceStep(model_executor),
        TestStep(model_executor),
        CustomStep(
            model_executor,
            memory,
            integration,
            retry_delay=retry_delay,
            ambiguous_success=ambiguous_success,
        ),
    ]
    return {handler.step_type: handler for handler in handlers}


def _check_dispatch_table(handlers: Mapping[str, PipelineStep[Any]]) -> None:
    missing = [step_type for step_type in STEP_TYPES if step_type not in handlers]
    unknown = [step_type for step_type in handlers if step_type not in STEP_TYPES]
    if missing or unknown:
        raise ValueError(
            f"Step handlers must cover exactly {', '.join(STEP_TYPES)} "
            f"(missing: {missing or 'none'}, unknown: {unknown or 'none'})"
        )
    for step_type, handler in handlers.items():
        if handler.config_type is not STEP_CONFIG_TYPES[step_type]:
            raise ValueError(
                f"Handler for {step_type} expects {handler.config_type.__name__}, "
                f"not {STEP_CONFIG_TYPES[step_type].__name__}"
            )


class PipelineStepExecutor:
    """Runs one configured step and always hands back a result.

    Every exception raised while a step runs is converted into a failed result.
    """

    def __init__(
        self,
        handlers: Mapping[str, PipelineStep[Any]],
        *,
        memory: PipelineMemory | None = None,
        project_path: Path | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        _check_dispatch_table(handlers)
        self.handlers = dict(handlers)
        self.memory = memory
        self.project_path = project_path
        self.event_hook = event_hook

    @classmethod
    def create(
        cls,
        model_executor: ModelExecutor,
        *,
        memory: PipelineMemory | None = None,
        integration: CodeReviewIntegration | None = None,
        project_path: Path | None = None,
        retry_delay: float = 0.0,
        ambiguous_success: bool = True,
        event_hook: EventHook | None = None,
    ) -> PipelineStepExecutor:
        handlers = build_step_handlers(
            model_executor,
            memory=memory,
            integration=integration,
            retry_delay=retry_delay,
            ambiguous_success=ambiguous_success,
        )
        return cls(handlers, memory=memory, project_path=project_path, event_hook=event_hook)

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    async def execute_step(
        self,
        feature: Feature,
        step_config: PipelineStepConfig,
        *,
        signal: asyncio.Event | None = None,
        on_progress: ProgressCallback | None = None,
        on_status_change: StatusCallback | None = None,
        project_path: Path | None = None,
    ) -> PipelineStepResult:
        def progress(message: str) -> None:
            logger.info(message)
            if on_progress is not None:
                on_progress(message)

        def status_changed(status: str) -> None:
            if on_status_change is not None:
                on_status_change(status)

        status_changed("in_progress")
        progress(f"Starting {step_config.name}...")
        self._emit(
            {
                "event": "step_started",
                "step_id": step_config.id,
                "feature_id": feature.id,
                "type": step_config.type,
            }
        )

        try:
            handler = self.handlers.get(step_config.type)
            if handler is None:
                raise ValueError(f"Unknown step type: {step_config.type}")
            result = await handler.execute(
                feature, step_config, signal, project_path or self.project_path
            )
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.opt(exception=exc).debug("Step {} raised", step_config.id)
            status_changed("failed")
            progress(f"{step_config.name} failed: {message}")
            result = PipelineStepResult(
                status="failed", output=message, metadata={"error": message}
            )
        else:
            status_changed(result.status)
            if result.status == "passed":
                progress(f"{step_config.name} completed successfully")
            elif result.status == "failed":
                progress(f"{step_config.name} failed")
            else:
                progress(f"{step_config.name} {result.status}")

        self._emit(
            {
                "event": "step_finished",
                "step_id": step_config.id,
                "feature_id": feature.id,
                "status": result.status,
                "issues": len(result.issues or []),
            }
        )
        return result

    def get_model_for_step(self, feature: Feature, step_config: PipelineStepConfig) -> str:
        return get_model_for_step(feature, step_config)

    def skip_step(self, step_id: str, feature_id: str) -> None:
        if self.memory is not None:
            self.memory.clear(step_id, feature_id)
        self._emit({"event": "step_skipped", "step_id": step_id, "feature_id": feature_id})

    def clear_step_results(self, step_id: str, feature_id: str) -> None:
        if self.memory is not None:
            self.memory.clear(step_id, feature_id)
        self._emit(
            {"event": "step_results_cleared", "step_id": step_id, "feature_id": feature_id}
        )
