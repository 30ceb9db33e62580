from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from loguru import logger

from shipgate.models import Issue, utcnow

DEFAULT_MEMORY_PATH = Path(".shipgate") / "pipeline-memory.json"


@dataclass(slots=True)
class StepFeedback:
    issues: list[Issue]
    summary: str


@dataclass(slots=True)
class IterationRecord:
    timestamp: datetime
    issues: list[Issue]
    summary: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "issues": [issue.to_dict() for issue in self.issues],
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IterationRecord:
        return cls(
            timestamp=datetime.fromisoformat(str(data["timestamp"])),
            issues=[Issue.from_dict(item) for item in data.get("issues", [])],
            summary=str(data.get("summary", "")),
        )


@dataclass(slots=True)
class StoredMemory:
    iterations: list[IterationRecord] = field(default_factory=list)
    resolved_issues: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "iterations": [iteration.to_dict() for iteration in self.iterations],
            "resolvedIssues": sorted(self.resolved_issues),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoredMemory:
        return cls(
            iterations=[IterationRecord.from_dict(item) for item in data["iterations"]],
            resolved_issues={str(item) for item in data["resolvedIssues"]},
        )


@dataclass(slots=True)
class IterationMemory:
    previous_issues: list[Issue]
    resolved_hashes: list[str]
    iteration_count: int
    avoid_repeating: bool = True


def memory_key(step_id: str, feature_id: str) -> str:
    return f"{step_id}:{feature_id}"


class PipelineMemory:
    """Per step and feature feedback history, optionally mirrored to a JSON file.

    Persistence failures are logged and never raised.
    """

    def __init__(self, path: Path | None = None, *, max_entries: int | None = None) -> None:
        self.path = path
        self.max_entries = max_entries
        self._store: dict[str, StoredMemory] = {}

    @classmethod
    def for_project(
        cls, project_path: Path, relative: Path = DEFAULT_MEMORY_PATH
    ) -> PipelineMemory:
        memory = cls(project_path / relative)
        memory.load()
        return memory

    def store_feedback(self, step_id: str, feature_id: str, feedback: StepFeedback) -> None:
        stored = self._store.setdefault(memory_key(step_id, feature_id), StoredMemory())
        stored.iterations.append(
            IterationRecord(
                timestamp=utcnow(), issues=list(feedback.issues), summary=feedback.summary
            )
        )
        if self.max_entries is not None and len(stored.iterations) > self.max_entries:
            del stored.iterations[: len(stored.iterations) - self.max_entries]
        stored.resolved_issues.update(issue.hash for issue in feedback.issues)
        self.persist()

    def get_memory_for_next_iteration(
        self, step_id: str, feature_id: str
    ) -> IterationMemory | None:
        stored = self._store.get(memory_key(step_id, feature_id))
        if stored is None or not stored.iterations:
            return None
        return IterationMemory(
            previous_issues=list(stored.iterations[-1].issues),
            resolved_hashes=sorted(stored.resolved_issues),
            iteration_count=len(stored.iterations),
        )

    def clear(self, step_id: str, feature_id: str) -> None:
        self._store.pop(memory_key(step_id, feature_id), None)
        self.persist()

    def clear_feature(self, feature_id: str) -> None:
        suffix = f":{feature_id}"
        for key in [key for key in self._store if key.endswith(suffix)]:
            del self._store[key]
        self.persist()

    def clear_old(self, days: int = 30, *, now: datetime | None = None) -> None:
        cutoff = (now or utcnow()) - timedelta(days=days)
        stale = [
            key
            for key, stored in self._store.items()
            if stored.iterations and stored.iterations[-1].timestamp < cutoff
        ]
        for key in stale:
            del self._store[key]
        self.persist()

    def export(self, step_id: str | None = None, feature_id: str | None = None) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key, stored in self._store.items():
            stored_step, _, stored_feature = key.partition(":")
            if step_id and stored_step != step_id:
                continue
            if feature_id and stored_feature != feature_id:
                continue
            result[key] = stored.to_dict()
        return result

    def import_data(self, data: dict[str, Any]) -> None:
        for key, value in data.items():
            self._store[key] = StoredMemory.from_dict(value)
        self.persist()

    def get_stats(self) -> dict[str, Any]:
        timestamps = [
            iteration.timestamp
            for stored in self._store.values()
            for iteration in stored.iterations
        ]
        return {
            "total_memories": len(self._store),
            "total_iterations": len(timestamps),
            "total_issues": sum(
                len(iteration.issues)
                for stored in self._store.values()
                for iteration in stored.iterations
            ),
            "oldest_memory": min(timestamps).isoformat() if timestamps else None,
            "newest_memory": max(timestamps).isoformat() if timestamps else None,
        }

    def load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to load pipeline memory from {}: {}", self.path, exc)
            return
        if not isinstance(data, dict):
            logger.error("Ignoring pipeline memory at {}: expected a JSON object", self.path)
            return
        for key, value in data.items():
            try:
                self._store[key] = StoredMemory.from_dict(value)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed pipeline memory entry {}: {}", key, exc)

    def persist(self) -> None:
        if self.path is None:
            return
        payload = {key: stored.to_dict() for key, stored in self._store.items()}
        temp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(temp_path, self.path)
        except OSError as exc:
            logger.error("Failed to persist pipeline memory to {}: {}", self.path, exc)
