import tomllib
from pathlib import Path

from shipgate import __version__
from shipgate.config import ShipgateConfig, build_executor, dumps_toml, load_config, save_config
from shipgate.executors import ClaudeExecutor, CodexExecutor


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "shipgate.toml"
    config = ShipgateConfig.default()
    config.executor.kind = "codex"
    config.executor.binary = "/opt/bin/codex"
    config.executor.model = "gpt-5-codex"
    config.executor.idle_timeout_seconds = 45.5
    config.executor.startup_timeout_seconds = 120.0
    config.executor.extra_args = ["--sandbox", "read-only"]
    config.state_machine.strict_mode = False
    config.pipeline.retry_delay_seconds = 2.0
    config.pipeline.ambiguous_success = False
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded == config


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "shipgate.toml")

    assert loaded == ShipgateConfig.default()
    assert loaded.executor.startup_timeout_seconds is None
    assert loaded.pipeline.config_path == ".shipgate/pipeline.json"


def test_toml_dump_omits_unset_startup_timeout() -> None:
    rendered = dumps_toml(ShipgateConfig.default())
    parsed = tomllib.loads(rendered)

    assert "startup_timeout_seconds" not in rendered
    assert "[state_machine]" in rendered
    assert parsed["executor"]["idle_timeout_seconds"] == 30.0
    assert isinstance(parsed["pipeline"]["retry_delay_seconds"], float)
    assert parsed["logging"]["level"] == "INFO"


def test_build_executor_honours_kind_and_timeouts() -> None:
    config = ShipgateConfig.default()
    config.executor.idle_timeout_seconds = 12.0
    config.executor.extra_args = ["--permission-mode", "plan"]

    claude = build_executor(config)

    assert isinstance(claude, ClaudeExecutor)
    assert claude.binary == "claude"
    assert claude.idle_timeout == 12.0
    assert claude.startup_timeout is None
    assert claude.extra_args == ["--permission-mode", "plan"]

    config.executor.kind = "codex"
    config.executor.model = "gpt-5-codex"
    codex = build_executor(config)

    assert isinstance(codex, CodexExecutor)
    assert codex.binary == "codex"
    assert codex.model == "gpt-5-codex"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
