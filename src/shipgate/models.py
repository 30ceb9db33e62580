from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from shipgate.step_configs import STEP_TYPES, StepTypeConfig, parse_step_config

TaskStatus = Literal[
    "todo",
    "researching",
    "in_progress",
    "in_review",
    "queue_for_pr",
    "pr_created",
    "pr_fixes_needed",
    "ready_for_merge",
    "completed",
]
TASK_STATES: tuple[TaskStatus, ...] = (
    "todo",
    "researching",
    "in_progress",
    "in_review",
    "queue_for_pr",
    "pr_created",
    "pr_fixes_needed",
    "ready_for_merge",
    "completed",
)
INITIAL_STATE: TaskStatus = "todo"
TERMINAL_STATE: TaskStatus = "completed"

IssueSeverity = Literal["low", "medium", "high"]

DEFAULT_FEATURE_MODEL = "opus"
DIFFERENT_MODEL = {
    "opus": "sonnet",
    "sonnet": "opus",
    "haiku": "sonnet",
}


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class Feature:
    id: str
    title: str = ""
    description: str = ""
    status: str = ""
    model: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Feature:
        known = {"id", "title", "description", "status", "model"}
        model = data.get("model")
        return cls(
            id=str(data.get("id", "")),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            status=str(data.get("status") or ""),
            model=str(model) if model else None,
            extra={key: value for key, value in data.items() if key not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "title": self.title,
                "description": self.description,
                "status": self.status,
            }
        )
        if self.model:
            payload["model"] = self.model
        return payload


@dataclass(slots=True)
class Issue:
    hash: str
    summary: str
    severity: IssueSeverity = "medium"
    location: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Issue:
        severity = str(data.get("severity") or "medium")
        if severity not in {"low", "medium", "high"}:
            severity = "medium"
        location = data.get("location")
        return cls(
            hash=str(data.get("hash", "")),
            summary=str(data.get("summary", "")),
            severity=severity,  # type: ignore[arg-type]
            location=str(location) if location else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "hash": self.hash,
            "summary": self.summary,
            "severity": self.severity,
        }
        if self.location:
            payload["location"] = self.location
        return payload


@dataclass(slots=True)
class PipelineStepResult:
    status: str
    output: str
    issues: list[Issue] | None = None
    metadata: dict[str, Any] | None = None
    iterations: int | None = None

    @property
    def passed(self) -> bool:
        return self.status == "passed"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status, "output": self.output}
        if self.issues is not None:
            payload["issues"] = [issue.to_dict() for issue in self.issues]
        if self.metadata is not None:
            payload["metadata"] = self.metadata
        if self.iterations is not None:
            payload["iterations"] = self.iterations
        return payload


@dataclass(slots=True)
class PipelineStepConfig:
    id: str
    type: str
    name: str
    config: StepTypeConfig
    model: str = "same"
    required: bool = True
    auto_trigger: bool = True
    description: str = ""
    dependencies: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineStepConfig:
        step_type = str(data.get("type", ""))
        if step_type not in STEP_TYPES:
            raise ValueError(f"Unknown step type: {step_type}")
        raw_config = data.get("config")
        dependencies = data.get("dependencies")
        if not isinstance(dependencies, list):
            dependencies = []
        return cls(
            id=str(data["id"]),
            type=step_type,
            name=str(data.get("name") or data["id"]),
            config=parse_step_config(step_type, raw_config if isinstance(raw_config, dict) else {}),
            model=str(data.get("model") or "same"),
            required=bool(data.get("required", True)),
            auto_trigger=bool(data.get("autoTrigger", True)),
            description=str(data.get("description") or ""),
            dependencies=[str(item) for item in dependencies],
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "model": self.model,
            "required": self.required,
            "autoTrigger": self.auto_trigger,
            "config": self.config.to_dict(),
        }
        if self.description:
            payload["description"] = self.description
        if self.dependencies:
            payload["dependencies"] = list(self.dependencies)
        return payload


@dataclass(slots=True)
class TaskState:
    task_id: str
    state: TaskStatus
    previous_state: TaskStatus | None
    entered_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "state": self.state,
            "previous_state": self.previous_state,
            "entered_at": self.entered_at.replace(microsecond=0).isoformat(),
            "metadata": self.metadata,
        }


@dataclass(slots=True)
class TransitionResult:
    valid: bool
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


def get_model_for_step(feature: Feature, step_config: PipelineStepConfig) -> str:
    """Resolve the model a step runs on.

    ``same`` reuses the feature's model and ``different`` swaps to the paired model
    family. Anything else is an explicit model name.
    """
    feature_model = feature.model or DEFAULT_FEATURE_MODEL
    if step_config.model == "same":
        return feature_model
    if step_config.model == "different":
        return DIFFERENT_MODEL.get(feature_model, DEFAULT_FEATURE_MODEL)
    return step_config.model
