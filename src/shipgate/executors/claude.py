from __future__ import annotations

from typing import Any

from shipgate.errors import ExecutorError
from shipgate.executors.base import CliExecutor, ExecutorRequest


class ClaudeExecutor(CliExecutor):
    name = "claude"

    def __init__(self, binary: str = "claude", **kwargs: Any) -> None:
        super().__init__(binary, **kwargs)

    def build_args(self, request: ExecutorRequest) -> list[str]:
        return [
            "-p",
            request.prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--model",
            request.model,
            *self.extra_args,
        ]

    def extract_text(self, event: dict[str, Any]) -> str:
        if event.get("type") != "assistant":
            return ""
        message = event.get("message")
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        if isinstance(content, str):
            return content
        parts: list[str] = []
        if isinstance(content, list):
            for item in content:
                if isinstance(item, dict) and item.get("type", "text") == "text":
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
        return "".join(parts)

    def extract_final(self, event: dict[str, Any]) -> str | None:
        if event.get("type") != "result":
            return None
        result = event.get("result")
        if event.get("is_error") or event.get("subtype", "success") != "success":
            raise ExecutorError(
                f"claude reported an error: {result or event.get('subtype')}", executor=self.name
            )
        return result if isinstance(result, str) else None
