from __future__ import annotations

from typing import Any

from shipgate.executors.base import CliExecutor, ExecutorRequest


class CodexExecutor(CliExecutor):
    name = "codex"

    def __init__(self, binary: str = "codex", *, model: str | None = None, **kwargs: Any) -> None:
        super().__init__(binary, **kwargs)
        self.model = model

    def build_args(self, request: ExecutorRequest) -> list[str]:
        # Step models name Claude families, so codex only gets -m when configured explicitly.
        args = ["exec", "--json"]
        if self.model:
            args.extend(["-m", self.model])
        args.extend(self.extra_args)
        args.append(request.prompt)
        return args

    def extract_text(self, event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict):
            if event.get("type") == "item.completed" and item.get("type") == "agent_message":
                text = item.get("text")
                return text if isinstance(text, str) else ""
            return ""

        msg = event.get("msg")
        if isinstance(msg, dict) and msg.get("type") == "agent_message":
            message = msg.get("message")
            return message if isinstance(message, str) else ""

        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for entry in content:
                if isinstance(entry, dict):
                    text = entry.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        return ""
