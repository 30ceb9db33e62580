from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from shipgate.executor import PipelineStepExecutor
from shipgate.issues import dedupe_issues
from shipgate.models import Feature, Issue, PipelineStepConfig, PipelineStepResult, TaskStatus
from shipgate.pipeline_config import PipelineConfig
from shipgate.state_machine import TaskStateMachine

ProgressCallback = Callable[[str, str], None]


@dataclass(slots=True)
class StepRun:
    step_id: str
    name: str
    required: bool
    status: str
    result: PipelineStepResult | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.step_id,
            "name": self.name,
            "required": self.required,
            "status": self.status,
        }
        if self.reason:
            payload["reason"] = self.reason
        if self.result is not None:
            payload["issues"] = [issue.to_dict() for issue in self.result.issues or []]
            if self.result.iterations is not None:
                payload["iterations"] = self.result.iterations
        return payload


@dataclass(slots=True)
class PipelineRun:
    task_id: str
    outcome: str
    final_state: TaskStatus | None
    steps: list[StepRun] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    error: str | None = None

    @property
    def passed(self) -> bool:
        return self.outcome == "passed"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "task_id": self.task_id,
            "outcome": self.outcome,
            "final_state": self.final_state,
            "steps": [step.to_dict() for step in self.steps],
            "issues": [issue.to_dict() for issue in self.issues],
        }
        if self.error:
            payload["error"] = self.error
        return payload


class PipelineRunner:
    """Drives one feature through the review phase.

    The task enters ``in_review``, every auto-triggered step runs in dependency order,
    and the collected verdict moves it on to ``queue_for_pr`` or back to ``in_progress``.
    """

    def __init__(
        self,
        state_machine: TaskStateMachine,
        step_executor: PipelineStepExecutor,
        pipeline: PipelineConfig,
        *,
        project_path: Path | None = None,
    ) -> None:
        self.state_machine = state_machine
        self.step_executor = step_executor
        self.pipeline = pipeline
        self.project_path = project_path

    def _current_state(self, task_id: str) -> TaskStatus | None:
        state = self.state_machine.get_task_state(task_id)
        return state.state if state is not None else None

    async def _enter_review(self, task_id: str) -> str | None:
        context: dict[str, Any] = {}
        if self._current_state(task_id) == "pr_fixes_needed":
            context["fixesApplied"] = True
        result = await self.state_machine.transition(task_id, "in_review", context)
        return None if result.valid else result.error

    def _blocked_by(self, step: PipelineStepConfig, finished: dict[str, str]) -> str | None:
        for dependency in step.dependencies:
            if finished.get(dependency) != "passed":
                return dependency
        return None

    async def run_phase(
        self,
        feature: Feature,
        *,
        task_id: str | None = None,
        signal: asyncio.Event | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> PipelineRun:
        task_id = task_id or feature.id
        if not self.pipeline.enabled:
            logger.info("Pipeline disabled, nothing to run for {}", task_id)
            return PipelineRun(
                task_id=task_id, outcome="disabled", final_state=self._current_state(task_id)
            )

        error = await self._enter_review(task_id)
        if error is not None:
            logger.warning("Task {} cannot enter review: {}", task_id, error)
            return PipelineRun(
                task_id=task_id,
                outcome="blocked",
                final_state=self._current_state(task_id),
                error=error,
            )

        mode = self.pipeline.on_failure
        runs: list[StepRun] = []
        finished: dict[str, str] = {}
        stopped = False
        for step in self.pipeline.ordered_steps():
            reason: str | None = None
            if stopped:
                reason = "stopped after a required step failed"
            elif signal is not None and signal.is_set():
                reason = "cancelled"
            elif not step.auto_trigger:
                reason = "not auto-triggered"
            elif mode == "skip-optional" and not step.required:
                reason = "optional step skipped"
            else:
                blocker = self._blocked_by(step, finished)
                if blocker is not None:
                    reason = f"dependency {blocker} did not pass"
            if reason is not None:
                self.step_executor.skip_step(step.id, feature.id)
                finished[step.id] = "skipped"
                runs.append(StepRun(step.id, step.name, step.required, "skipped", reason=reason))
                continue

            def progress(message: str, step_id: str = step.id) -> None:
                if on_progress is not None:
                    on_progress(step_id, message)

            result = await self.step_executor.execute_step(
                feature,
                step,
                signal=signal,
                on_progress=progress,
                project_path=self.project_path,
            )
            finished[step.id] = result.status
            runs.append(StepRun(step.id, step.name, step.required, result.status, result=result))
            if not result.passed and step.required and mode == "stop":
                stopped = True

        required_failed = [
            run for run in runs if run.required and run.status not in ("passed", "skipped")
        ]
        # A skipped required step only counts against the run when it never got a chance.
        required_missing = [
            run
            for run in runs
            if run.required and run.status == "skipped" and run.reason != "not auto-triggered"
        ]
        all_issues = dedupe_issues(
            [issue for run in runs if run.result is not None for issue in run.result.issues or []]
        )
        # Findings from required steps gate the PR even when the step itself passed.
        blocking = dedupe_issues(
            [
                issue
                for run in runs
                if run.required and run.result is not None
                for issue in run.result.issues or []
            ]
        )

        if not required_failed and not required_missing:
            context = {"issues": [issue.to_dict() for issue in blocking]}
            result = await self.state_machine.transition(task_id, "queue_for_pr", context)
            if result.valid:
                return PipelineRun(task_id, "passed", "queue_for_pr", runs, all_issues)
            logger.warning("Task {} passed review but cannot advance: {}", task_id, result.error)
            error = result.error

        await self.state_machine.transition(task_id, "in_progress")
        logger.info(
            "Task {} returned to in_progress ({} required step(s) failed)",
            task_id,
            len(required_failed) + len(required_missing),
        )
        return PipelineRun(
            task_id=task_id,
            outcome="failed",
            final_state=self._current_state(task_id),
            steps=runs,
            issues=all_issues,
            error=error,
        )
