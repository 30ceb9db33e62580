from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

StepType = Literal["review", "security", "performance", "test", "custom"]
STEP_TYPES: tuple[StepType, ...] = ("review", "security", "performance", "test", "custom")

REVIEW_FOCUS_AREAS = ("quality", "standards", "bugs", "best-practices")
SECURITY_SEVERITIES = ("info", "low", "medium", "high", "critical")
PERFORMANCE_METRICS = ("complexity", "memory", "database", "network", "bundle", "rendering")


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if str(item).strip()]


def _optional_int(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"{key} must be an integer (got {value!r})")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be an integer (got {value!r})") from None


def _int(data: dict[str, Any], key: str, default: int) -> int:
    value = _optional_int(data, key)
    return default if value is None else value


def _number(data: dict[str, Any], key: str, default: float) -> float:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"{key} must be a number (got {value!r})")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be a number (got {value!r})") from None


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"{key} must be an object")
    return value


@dataclass(slots=True)
class ReviewConfig:
    focus: list[str] = field(default_factory=lambda: list(REVIEW_FOCUS_AREAS))
    max_issues: int = 10
    exclude_patterns: list[str] = field(default_factory=list)
    include_tests: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewConfig:
        focus = _str_list(data.get("focus")) or list(REVIEW_FOCUS_AREAS)
        return cls(
            focus=focus,
            max_issues=_int(data, "maxIssues", 10),
            exclude_patterns=_str_list(data.get("excludePatterns")),
            include_tests=bool(data.get("includeTests", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "focus": list(self.focus),
            "maxIssues": self.max_issues,
            "excludePatterns": list(self.exclude_patterns),
            "includeTests": self.include_tests,
        }


@dataclass(slots=True)
class SecurityConfig:
    checklist: list[str] = field(default_factory=list)
    min_severity: str = "low"
    exclude_tests: bool = False
    check_dependencies: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SecurityConfig:
        # "severity" is the older spelling of the same threshold.
        min_severity = str(data.get("minSeverity") or data.get("severity") or "low").lower()
        return cls(
            checklist=_str_list(data.get("checklist")),
            min_severity=min_severity,
            exclude_tests=bool(data.get("excludeTests", False)),
            check_dependencies=bool(data.get("checkDependencies", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "checklist": list(self.checklist),
            "minSeverity": self.min_severity,
            "excludeTests": self.exclude_tests,
            "checkDependencies": self.check_dependencies,
        }


@dataclass(slots=True)
class PerformanceConfig:
    metrics: list[str] = field(default_factory=lambda: ["complexity", "memory"])
    thresholds: dict[str, Any] = field(default_factory=dict)
    enable_profiling: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PerformanceConfig:
        thresholds = data.get("thresholds")
        return cls(
            metrics=_str_list(data.get("metrics")) or ["complexity", "memory"],
            thresholds=dict(thresholds) if isinstance(thresholds, dict) else {},
            enable_profiling=bool(data.get("enableProfiling", data.get("profile", False))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "metrics": list(self.metrics),
            "thresholds": dict(self.thresholds),
            "enableProfiling": self.enable_profiling,
        }


@dataclass(slots=True)
class TestConfig:
    __test__ = False

    coverage_threshold: float = 80.0
    check_quality: bool = True
    check_assertions: bool = True
    include_integration: bool = False
    exclude_patterns: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TestConfig:
        return cls(
            coverage_threshold=_number(data, "coverageThreshold", 80.0),
            check_quality=bool(data.get("checkQuality", True)),
            check_assertions=bool(data.get("checkAssertions", True)),
            include_integration=bool(data.get("includeIntegration", False)),
            exclude_patterns=_str_list(data.get("excludePatterns")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "coverageThreshold": self.coverage_threshold,
            "checkQuality": self.check_quality,
            "checkAssertions": self.check_assertions,
            "includeIntegration": self.include_integration,
            "excludePatterns": list(self.exclude_patterns),
        }


@dataclass(slots=True)
class LoopConfig:
    max_loops: int = 1
    loop_until_success: bool = False


@dataclass(slots=True)
class MemoryConfig:
    enabled: bool = False
    max_entries: int | None = None


@dataclass(slots=True)
class CodeReviewConfig:
    enabled: bool = False
    fallback_to_ai: bool = True
    use_standard_rules: bool = True
    custom_rules: list[str] = field(default_factory=list)
    max_issues: int | None = None


@dataclass(slots=True)
class CustomConfig:
    prompt: str
    success_criteria: str = ""
    loop: LoopConfig = field(default_factory=LoopConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    code_review: CodeReviewConfig = field(default_factory=CodeReviewConfig)
    variables: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CustomConfig:
        loop = _section(data, "loopConfig")
        memory = _section(data, "memoryConfig")
        review = _section(data, "codeRabbitConfig") or _section(data, "codeReviewConfig")
        if not review and data.get("coderabbitEnabled"):
            review = {
                "enabled": True,
                "fallbackToAI": data.get("fallbackToAI", True),
                "customRules": data.get("coderabbitCustomRules") or [],
            }
        variables = data.get("variables")
        return cls(
            prompt=str(data.get("prompt", "")),
            success_criteria=str(data.get("successCriteria", "")),
            loop=LoopConfig(
                max_loops=max(1, _int(loop, "maxLoops", 1)),
                loop_until_success=bool(loop.get("loopUntilSuccess", False)),
            ),
            memory=MemoryConfig(
                enabled=bool(memory.get("enabled", False)),
                max_entries=_optional_int(memory, "maxEntries"),
            ),
            code_review=CodeReviewConfig(
                enabled=bool(review.get("enabled", False)),
                fallback_to_ai=bool(review.get("fallbackToAI", True)),
                use_standard_rules=bool(review.get("useStandardRules", True)),
                custom_rules=_str_list(review.get("customRules")),
                max_issues=_optional_int(review, "maxIssues"),
            ),
            variables=(
                {str(key): str(value) for key, value in variables.items()}
                if isinstance(variables, dict)
                else {}
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "successCriteria": self.success_criteria,
            "loopConfig": {
                "maxLoops": self.loop.max_loops,
                "loopUntilSuccess": self.loop.loop_until_success,
            },
            "memoryConfig": {
                "enabled": self.memory.enabled,
                "maxEntries": self.memory.max_entries,
            },
            "codeReviewConfig": {
                "enabled": self.code_review.enabled,
                "fallbackToAI": self.code_review.fallback_to_ai,
                "useStandardRules": self.code_review.use_standard_rules,
                "customRules": list(self.code_review.custom_rules),
                "maxIssues": self.code_review.max_issues,
            },
            "variables": dict(self.variables),
        }


StepTypeConfig = ReviewConfig | SecurityConfig | PerformanceConfig | TestConfig | CustomConfig

STEP_CONFIG_TYPES: dict[str, type[StepTypeConfig]] = {
    "review": ReviewConfig,
    "security": SecurityConfig,
    "performance": PerformanceConfig,
    "test": TestConfig,
    "custom": CustomConfig,
}


def parse_step_config(step_type: str, data: dict[str, Any] | None) -> StepTypeConfig:
    config_cls = STEP_CONFIG_TYPES.get(step_type)
    if config_cls is None:
        raise ValueError(f"Unknown step type: {step_type}")
    return config_cls.from_dict(data or {})
