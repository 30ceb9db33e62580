from shipgate.executors.base import (
    CliExecutor,
    ExecutorRequest,
    ExecutorResponse,
    ModelExecutor,
)
from shipgate.executors.claude import ClaudeExecutor
from shipgate.executors.codex import CodexExecutor

__all__ = [
    "ClaudeExecutor",
    "CliExecutor",
    "CodexExecutor",
    "ExecutorRequest",
    "ExecutorResponse",
    "ModelExecutor",
]
