from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from shipgate.errors import ExecutorError
from shipgate.issues import marker_status
from shipgate.models import Feature, PipelineStepConfig
from shipgate.streaming import DEFAULT_IDLE_TIMEOUT, SubprocessOptions, stream_jsonl


@dataclass(slots=True)
class ExecutorRequest:
    feature: Feature
    step_config: PipelineStepConfig
    prompt: str
    model: str
    signal: asyncio.Event | None = None
    project_path: Path | None = None
    on_progress: Callable[[str], None] | None = None


@dataclass(slots=True)
class ExecutorResponse:
    status: str
    output: str


class ModelExecutor(ABC):
    name = "executor"

    @abstractmethod
    async def execute(self, request: ExecutorRequest) -> ExecutorResponse:
        """Turn a step prompt into a model reply."""


class CliExecutor(ModelExecutor):
    """Executor backed by an agent CLI that writes one JSON event per line."""

    def __init__(
        self,
        binary: str,
        *,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        startup_timeout: float | None = None,
        extra_args: list[str] | None = None,
        env: dict[str, str] | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.idle_timeout = idle_timeout
        self.startup_timeout = startup_timeout
        self.extra_args = list(extra_args or [])
        self.env = env
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @abstractmethod
    def build_args(self, request: ExecutorRequest) -> list[str]:
        """Arguments passed after the binary."""

    @abstractmethod
    def extract_text(self, event: dict[str, Any]) -> str:
        """Incremental assistant text carried by one stream event."""

    def extract_final(self, event: dict[str, Any]) -> str | None:
        """Complete reply carried by a terminal event, if this event is one."""
        _ = event
        return None

    def build_options(self, request: ExecutorRequest) -> SubprocessOptions:
        return SubprocessOptions(
            command=self.binary,
            args=self.build_args(request),
            cwd=request.project_path,
            env=self.env,
            signal=request.signal,
            timeout=self.idle_timeout,
            startup_timeout=self.startup_timeout,
        )

    async def execute(self, request: ExecutorRequest) -> ExecutorResponse:
        options = self.build_options(request)
        self._emit(
            {
                "event": "executor_start",
                "executor": self.name,
                "command": [options.command, *options.args[:2]],
                "model": request.model,
                "step_id": request.step_config.id,
            }
        )
        chunks: list[str] = []
        final: str | None = None
        async with contextlib.aclosing(stream_jsonl(options)) as events:
            async for event in events:
                if not isinstance(event, dict):
                    continue
                text = self.extract_text(event)
                if text:
                    chunks.append(text)
                    if request.on_progress is not None:
                        request.on_progress(text)
                completed = self.extract_final(event)
                if completed is not None:
                    final = completed

        output = (final if final is not None else "\n".join(chunks)).strip()
        if not output:
            raise ExecutorError(f"{self.name} returned no output", executor=self.name)
        status = "failed" if marker_status(output) == "failed" else "passed"
        logger.debug(
            "{} finished step {} with status {}", self.name, request.step_config.id, status
        )
        self._emit({"event": "executor_exit", "executor": self.name, "status": status})
        return ExecutorResponse(status=status, output=output)
