from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from shipgate.executors import ClaudeExecutor, CliExecutor, CodexExecutor
from shipgate.memory import DEFAULT_MEMORY_PATH
from shipgate.pipeline_config import DEFAULT_PIPELINE_PATH
from shipgate.streaming import DEFAULT_IDLE_TIMEOUT

ExecutorKind = Literal["claude", "codex"]
DEFAULT_CONFIG_NAME = "shipgate.toml"


@dataclass(slots=True)
class ExecutorConfig:
    kind: ExecutorKind = "claude"
    binary: str = ""
    model: str = ""
    idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT
    startup_timeout_seconds: float | None = None
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class StateMachineConfig:
    strict_mode: bool = True


@dataclass(slots=True)
class PipelineSettings:
    config_path: str = str(DEFAULT_PIPELINE_PATH)
    memory_path: str = str(DEFAULT_MEMORY_PATH)
    retry_delay_seconds: float = 0.0
    ambiguous_success: bool = True


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class ShipgateConfig:
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    state_machine: StateMachineConfig = field(default_factory=StateMachineConfig)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ShipgateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ShipgateConfig:
        return cls(
            executor=ExecutorConfig(**data.get("executor", {})),
            state_machine=StateMachineConfig(**data.get("state_machine", {})),
            pipeline=PipelineSettings(**data.get("pipeline", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        executor: dict[str, object] = {
            "kind": self.executor.kind,
            "binary": self.executor.binary,
            "model": self.executor.model,
            "idle_timeout_seconds": self.executor.idle_timeout_seconds,
            "extra_args": list(self.executor.extra_args),
        }
        # TOML has no null; an unset startup timeout falls back to the idle timeout.
        if self.executor.startup_timeout_seconds is not None:
            executor["startup_timeout_seconds"] = self.executor.startup_timeout_seconds
        return {
            "executor": executor,
            "state_machine": {
                "strict_mode": self.state_machine.strict_mode,
            },
            "pipeline": {
                "config_path": self.pipeline.config_path,
                "memory_path": self.pipeline.memory_path,
                "retry_delay_seconds": self.pipeline.retry_delay_seconds,
                "ambiguous_success": self.pipeline.ambiguous_success,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else rendered + ".0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ShipgateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("executor", "state_machine", "pipeline", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ShipgateConfig:
    if not path.exists():
        return ShipgateConfig.default()
    return ShipgateConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ShipgateConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")


def resolve_path(project_path: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = project_path / path
    return path


def build_executor(config: ShipgateConfig) -> CliExecutor:
    settings = config.executor
    options = {
        "idle_timeout": max(0.0, float(settings.idle_timeout_seconds)),
        "startup_timeout": settings.startup_timeout_seconds,
        "extra_args": list(settings.extra_args),
    }
    if settings.kind == "codex":
        return CodexExecutor(
            settings.binary or "codex", model=settings.model or None, **options
        )
    return ClaudeExecutor(settings.binary or "claude", **options)
