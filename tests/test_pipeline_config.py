import json
from pathlib import Path
from typing import Any

import pytest

from shipgate.errors import PipelineConfigError
from shipgate.pipeline_config import (
    PipelineConfig,
    load_pipeline_config,
    save_pipeline_config,
    validate_pipeline_data,
)
from shipgate.step_configs import CustomConfig, SecurityConfig


def _step(step_id: str, step_type: str = "review", **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": step_id,
        "type": step_type,
        "name": step_id.title(),
        "model": "same",
        "required": True,
        "autoTrigger": True,
        "config": {},
    }
    payload.update(extra)
    return payload


def _document(*steps: dict[str, Any], **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"version": "1.0", "enabled": True, "steps": list(steps)}
    payload.update(extra)
    return payload


def test_missing_file_yields_default(tmp_path: Path) -> None:
    config = load_pipeline_config(tmp_path / "pipeline.json")

    assert config == PipelineConfig(version="1.0", enabled=False, on_failure="stop", steps=[])


def test_parses_typed_step_configs() -> None:
    config = PipelineConfig.from_dict(
        _document(
            _step("sec", "security", config={"minSeverity": "high", "checkDependencies": True}),
            _step("audit", "custom", config={"prompt": "Check", "loopConfig": {"maxLoops": 3}}),
            onFailure="continue",
        )
    )

    assert config.on_failure == "continue"
    security = config.steps[0].config
    assert isinstance(security, SecurityConfig)
    assert security.min_severity == "high"
    assert security.check_dependencies is True
    custom = config.steps[1].config
    assert isinstance(custom, CustomConfig)
    assert custom.loop.max_loops == 3


def test_validation_collects_every_problem() -> None:
    broken = _step("b", "lint")
    del broken["autoTrigger"]
    data = _document(_step("a"), _step("a"), broken, onFailure="retry")

    with pytest.raises(PipelineConfigError) as exc_info:
        PipelineConfig.from_dict(data)

    errors = exc_info.value.errors
    assert "Duplicate step id: a" in errors
    assert "b has unknown step type: lint" in errors
    assert "steps[2] is missing required key: autoTrigger" in errors
    assert any(error.startswith("Invalid onFailure") for error in errors)
    assert "Duplicate step id: a" in str(exc_info.value)


def test_validation_rejects_non_objects_and_missing_keys() -> None:
    assert validate_pipeline_data([]) == ["Pipeline configuration must be a JSON object"]
    assert validate_pipeline_data({"version": "1.0"}) == [
        "Missing required key: enabled",
        "Missing required key: steps",
    ]


def test_validation_rejects_unknown_dependencies_and_cycles() -> None:
    unknown = validate_pipeline_data(_document(_step("a", dependencies=["ghost"])))
    cyclic = validate_pipeline_data(
        _document(_step("a", dependencies=["b"]), _step("b", dependencies=["a"]))
    )

    assert unknown == ["a depends on unknown step: ghost"]
    assert cyclic == ["Circular dependency: a -> b -> a"]


def test_ordered_steps_respects_dependencies_and_declaration_order() -> None:
    config = PipelineConfig.from_dict(
        _document(
            _step("deploy-check", "custom", dependencies=["tests", "security"]),
            _step("review"),
            _step("tests", "test", dependencies=["review"]),
            _step("security", "security"),
        )
    )

    assert [step.id for step in config.ordered_steps()] == [
        "review",
        "tests",
        "security",
        "deploy-check",
    ]


def test_ordered_steps_detects_cycles_added_after_loading() -> None:
    config = PipelineConfig.from_dict(_document(_step("a"), _step("b", dependencies=["a"])))
    config.steps[0].dependencies.append("b")

    with pytest.raises(ValueError, match="Circular dependency detected: a"):
        config.ordered_steps()


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    path = tmp_path / ".shipgate" / "pipeline.json"
    config = PipelineConfig.from_dict(
        _document(
            _step("review", config={"maxIssues": 5}),
            _step("audit", "custom", required=False, config={"prompt": "x"}),
            onFailure="skip-optional",
        )
    )

    save_pipeline_config(path, config)
    loaded = load_pipeline_config(path)

    assert loaded == config
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["onFailure"] == "skip-optional"
    assert raw["steps"][0]["autoTrigger"] is True
    assert not path.with_name("pipeline.json.tmp").exists()


def test_invalid_json_file_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "pipeline.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(PipelineConfigError):
        load_pipeline_config(path)


def test_bad_step_config_values_are_collected() -> None:
    data = _document(
        _step("review", config={"maxIssues": "ten"}),
        _step("audit", "custom", config={"prompt": "p", "loopConfig": 5}),
        _step("tests", "test", config={"coverageThreshold": True}),
    )

    with pytest.raises(PipelineConfigError) as exc_info:
        PipelineConfig.from_dict(data)

    assert exc_info.value.errors == [
        "review.config.maxIssues must be an integer (got 'ten')",
        "audit.config.loopConfig must be an object",
        "tests.config.coverageThreshold must be a number (got True)",
    ]


def test_numeric_strings_in_step_config_are_accepted() -> None:
    config = PipelineConfig.from_dict(
        _document(_step("audit", "custom", config={"prompt": "p", "loopConfig": {"maxLoops": "3"}}))
    )

    custom = config.steps[0].config
    assert isinstance(custom, CustomConfig)
    assert custom.loop.max_loops == 3
