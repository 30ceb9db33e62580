from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from loguru import logger

from shipgate.errors import PipelineConfigError
from shipgate.models import PipelineStepConfig
from shipgate.step_configs import STEP_TYPES, parse_step_config

OnFailure = Literal["stop", "continue", "skip-optional"]
ON_FAILURE_MODES: tuple[OnFailure, ...] = ("stop", "continue", "skip-optional")

CONFIG_VERSION = "1.0"
DEFAULT_PIPELINE_PATH = Path(".shipgate") / "pipeline.json"

_REQUIRED_KEYS = ("version", "enabled", "steps")
_REQUIRED_STEP_KEYS = ("id", "type", "name", "model", "required", "autoTrigger", "config")


@dataclass(slots=True)
class PipelineConfig:
    version: str = CONFIG_VERSION
    enabled: bool = False
    on_failure: OnFailure = "stop"
    steps: list[PipelineStepConfig] = field(default_factory=list)

    @classmethod
    def default(cls) -> PipelineConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: Any) -> PipelineConfig:
        errors = validate_pipeline_data(data)
        if errors:
            raise PipelineConfigError(errors)
        return cls(
            version=str(data["version"]),
            enabled=bool(data["enabled"]),
            on_failure=data.get("onFailure", "stop"),
            steps=[PipelineStepConfig.from_dict(item) for item in data["steps"]],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "enabled": self.enabled,
            "onFailure": self.on_failure,
            "steps": [step.to_dict() for step in self.steps],
        }

    def ordered_steps(self) -> list[PipelineStepConfig]:
        """Steps with every dependency placed before its dependents.

        Steps without ordering constraints keep their declaration order.
        """
        return order_by_dependencies(self.steps)


def order_by_dependencies(steps: list[PipelineStepConfig]) -> list[PipelineStepConfig]:
    by_id = {step.id: step for step in steps}
    ordered: list[PipelineStepConfig] = []
    visited: set[str] = set()
    visiting: set[str] = set()

    def visit(step_id: str) -> None:
        if step_id in visiting:
            raise ValueError(f"Circular dependency detected: {step_id}")
        if step_id in visited:
            return
        step = by_id.get(step_id)
        if step is None:
            raise ValueError(f"Step not found: {step_id}")
        visiting.add(step_id)
        for dependency in step.dependencies:
            visit(dependency)
        visiting.discard(step_id)
        visited.add(step_id)
        ordered.append(step)

    for step in steps:
        visit(step.id)
    return ordered


def _find_cycle(graph: dict[str, list[str]]) -> list[str] | None:
    visited: set[str] = set()
    stack: list[str] = []

    def walk(node: str) -> list[str] | None:
        if node in stack:
            return stack[stack.index(node) :] + [node]
        if node in visited:
            return None
        visited.add(node)
        stack.append(node)
        for dependency in graph.get(node, []):
            cycle = walk(dependency)
            if cycle is not None:
                return cycle
        stack.pop()
        return None

    for node in graph:
        cycle = walk(node)
        if cycle is not None:
            return cycle
    return None


def validate_pipeline_data(data: Any) -> list[str]:
    """Every problem found in a raw pipeline document; empty when it is valid."""
    if not isinstance(data, dict):
        return ["Pipeline configuration must be a JSON object"]

    errors = [f"Missing required key: {key}" for key in _REQUIRED_KEYS if key not in data]
    if "version" in data and not isinstance(data["version"], str):
        errors.append("version must be a string")
    if "enabled" in data and not isinstance(data["enabled"], bool):
        errors.append("enabled must be a boolean")
    on_failure = data.get("onFailure", "stop")
    if on_failure not in ON_FAILURE_MODES:
        errors.append(
            f"Invalid onFailure: {on_failure!r} (expected one of {', '.join(ON_FAILURE_MODES)})"
        )

    steps = data.get("steps", [])
    if not isinstance(steps, list):
        errors.append("steps must be a list")
        return errors

    seen: set[str] = set()
    graph: dict[str, list[str]] = {}
    for index, step in enumerate(steps):
        label = f"steps[{index}]"
        if not isinstance(step, dict):
            errors.append(f"{label} must be an object")
            continue
        errors.extend(
            f"{label} is missing required key: {key}"
            for key in _REQUIRED_STEP_KEYS
            if key not in step
        )
        step_id = step.get("id")
        if "id" in step:
            if not isinstance(step_id, str) or not step_id:
                errors.append(f"{label}.id must be a non-empty string")
            elif step_id in seen:
                errors.append(f"Duplicate step id: {step_id}")
            else:
                seen.add(step_id)
                label = step_id
        if "type" in step and step["type"] not in STEP_TYPES:
            errors.append(f"{label} has unknown step type: {step['type']}")
        for key in ("required", "autoTrigger"):
            if key in step and not isinstance(step[key], bool):
                errors.append(f"{label}.{key} must be a boolean")
        config = step.get("config")
        if "config" in step and not isinstance(config, dict):
            errors.append(f"{label}.config must be an object")
        elif isinstance(config, dict) and step.get("type") in STEP_TYPES:
            try:
                parse_step_config(step["type"], config)
            except ValueError as exc:
                errors.append(f"{label}.config.{exc}")
        dependencies = step.get("dependencies", [])
        if not isinstance(dependencies, list) or not all(
            isinstance(item, str) for item in dependencies
        ):
            errors.append(f"{label}.dependencies must be a list of step ids")
            dependencies = []
        if isinstance(step_id, str) and step_id:
            graph.setdefault(step_id, list(dependencies))

    for step_id, dependencies in graph.items():
        for dependency in dependencies:
            if dependency not in graph:
                errors.append(f"{step_id} depends on unknown step: {dependency}")

    cycle = _find_cycle({key: [d for d in deps if d in graph] for key, deps in graph.items()})
    if cycle is not None:
        errors.append(f"Circular dependency: {' -> '.join(cycle)}")
    return errors


def load_pipeline_config(path: Path) -> PipelineConfig:
    if not path.exists():
        logger.debug("No pipeline configuration at {}, using defaults", path)
        return PipelineConfig.default()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise PipelineConfigError([f"{path}: {exc}"]) from exc
    return PipelineConfig.from_dict(data)


def save_pipeline_config(path: Path, config: PipelineConfig) -> None:
    payload = config.to_dict()
    errors = validate_pipeline_data(payload)
    if errors:
        raise PipelineConfigError(errors)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + ".tmp")
    temp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    os.replace(temp_path, path)
