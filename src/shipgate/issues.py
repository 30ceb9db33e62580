from __future__ import annotations

import json
import re
from typing import Any

from loguru import logger

from shipgate.models import Issue, IssueSeverity

SEVERITY_ORDER = {
    "critical": 4,
    "high": 3,
    "medium": 2,
    "low": 1,
    "info": 0,
}

_MARKER_FAILED = re.compile(r"^\[(REVIEW|SECURITY|PERFORMANCE|TEST)_FAILED\]", re.MULTILINE)
_MARKER_PASSED = re.compile(r"^\[(REVIEW|SECURITY|PERFORMANCE|TEST)_PASSED\]", re.MULTILINE)
_NUMBERED_ISSUE = re.compile(r"^\d+\.\s+(.+?)(?:\s*\(([^)]+)\))?\s*$", re.MULTILINE)
_SEVERITY_HINT = re.compile(r"Severity:\s*(low|medium|high)", re.IGNORECASE)
NO_ISSUES_PHRASE = "no issues found"


def issue_hash(summary: str, location: str | None = None, category: str | None = None) -> str:
    """Return a stable hex digest for an issue.

    Fields are stripped and lower-cased before hashing, so the same finding reported
    with different casing or padding always collapses onto one hash. The digest is a
    32-bit rolling hash over UTF-16 code units and makes no collision-resistance claim.
    """
    normalized = "|".join(
        (
            (summary or "").strip().lower(),
            (location or "").strip().lower(),
            (category or "").strip().lower(),
        )
    )
    data = normalized.encode("utf-16-le")
    value = 0
    for index in range(0, len(data), 2):
        code_unit = int.from_bytes(data[index : index + 2], "little")
        value = ((value << 5) - value + code_unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return format(abs(value), "x")


def map_severity(severity: str | None) -> IssueSeverity:
    lowered = (severity or "").strip().lower()
    if lowered in {"critical", "high"}:
        return "high"
    if lowered == "medium":
        return "medium"
    return "low"


def severity_rank(severity: str | None) -> int:
    return SEVERITY_ORDER.get((severity or "").strip().lower(), 0)


def format_location(file: Any, line: Any = None) -> str | None:
    if not file:
        return None
    return f"{file}:{line or 0}"


def extract_json_block(output: str, *, source: str = "step") -> dict[str, Any] | None:
    """Decode the span from the first ``{`` to the last ``}`` of a model reply."""
    start = output.find("{")
    end = output.rfind("}")
    if start < 0 or end <= start:
        logger.debug("No JSON block found in {} output", source)
        return None
    try:
        parsed = json.loads(output[start : end + 1])
    except json.JSONDecodeError as exc:
        logger.warning("Failed to parse {} result JSON: {}", source, exc)
        return None
    if not isinstance(parsed, dict):
        logger.warning("Ignoring {} result JSON that is not an object", source)
        return None
    return parsed


def marker_status(output: str) -> str | None:
    if _MARKER_FAILED.search(output):
        return "failed"
    if _MARKER_PASSED.search(output):
        return "passed"
    return None


def infer_status(output: str) -> str:
    """Marker status, or the ``no issues found`` heuristic when the reply has no marker."""
    status = marker_status(output)
    if status is not None:
        return status
    return "passed" if NO_ISSUES_PHRASE in output.lower() else "failed"


def extract_numbered_issues(output: str, *, category: str = "issue") -> list[Issue]:
    issues: list[Issue] = []
    matches = list(_NUMBERED_ISSUE.finditer(output))
    for position, match in enumerate(matches):
        summary = match.group(1).strip()
        location = match.group(2).strip() if match.group(2) else None
        block_end = matches[position + 1].start() if position + 1 < len(matches) else len(output)
        severity_match = _SEVERITY_HINT.search(summary) or _SEVERITY_HINT.search(
            output[match.end() : block_end]
        )
        severity = severity_match.group(1).lower() if severity_match else "medium"
        issues.append(
            Issue(
                hash=issue_hash(summary, location, category),
                summary=summary,
                severity=severity,  # type: ignore[arg-type]
                location=location,
            )
        )
    return issues


def issue_from_payload(
    payload: dict[str, Any],
    *,
    summary_keys: tuple[str, ...] = ("description", "title"),
    severity_keys: tuple[str, ...] = ("severity",),
    category: str | None = None,
) -> Issue:
    """Normalize one issue object from a structured JSON reply."""
    summary = ""
    for key in summary_keys:
        value = payload.get(key)
        if value:
            summary = str(value)
            break
    severity = "medium"
    for key in severity_keys:
        value = payload.get(key)
        if value:
            severity = str(value)
            break
    location = format_location(payload.get("file"), payload.get("line"))
    resolved_category = category if category is not None else str(payload.get("category") or "")
    return Issue(
        hash=issue_hash(summary, location, resolved_category),
        summary=summary,
        severity=map_severity(severity),
        location=location,
    )


def dedupe_issues(issues: list[Issue]) -> list[Issue]:
    seen: set[str] = set()
    unique: list[Issue] = []
    for issue in issues:
        if issue.hash in seen:
            continue
        seen.add(issue.hash)
        unique.append(issue)
    return unique
