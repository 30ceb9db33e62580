from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
from loguru import logger

from shipgate.config import (
    DEFAULT_CONFIG_NAME,
    ShipgateConfig,
    build_executor,
    load_config,
    resolve_path,
    save_config,
)
from shipgate.errors import PipelineConfigError
from shipgate.executor import PipelineStepExecutor
from shipgate.logs import configure_logging
from shipgate.memory import PipelineMemory
from shipgate.models import TASK_STATES, Feature, TaskState
from shipgate.pipeline_config import (
    PipelineConfig,
    load_pipeline_config,
    save_pipeline_config,
)
from shipgate.runner import PipelineRunner
from shipgate.state_machine import TaskStateMachine


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: ShipgateConfig


def _load_runtime(ctx: click.Context, config_value: str) -> Runtime:
    project_root = Path.cwd().resolve()
    config_path = resolve_path(project_root, config_value).resolve()
    config = load_config(config_path)
    configure_logging(ctx.obj.get("log_level") or config.logging.level)
    return Runtime(project_root=project_root, config_path=config_path, config=config)


def _load_pipeline(runtime: Runtime) -> PipelineConfig:
    path = resolve_path(runtime.project_root, runtime.config.pipeline.config_path)
    try:
        return load_pipeline_config(path)
    except PipelineConfigError as exc:
        raise click.ClickException(
            "Invalid pipeline configuration:\n" + "\n".join(f"- {e}" for e in exc.errors)
        ) from exc


def _read_feature(path: Path) -> Feature:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Cannot read feature {path}: {exc}") from exc
    if not isinstance(data, dict) or not data.get("id"):
        raise click.ClickException(f"Feature {path} must be a JSON object with an id")
    return Feature.from_dict(data)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Overrides [logging].level from the config file.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Shipgate CLI."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


@cli.command("init")
@click.option("--executor", "executor_kind", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
@click.pass_context
def init_command(ctx: click.Context, executor_kind: str | None, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    config = runtime.config
    if executor_kind:
        config.executor.kind = executor_kind  # type: ignore[assignment]
    save_config(runtime.config_path, config)

    pipeline_path = resolve_path(runtime.project_root, config.pipeline.config_path)
    if not pipeline_path.exists():
        save_pipeline_config(pipeline_path, PipelineConfig.default())

    click.echo(f"Initialized shipgate in {runtime.project_root}")
    click.echo(f"Config: {runtime.config_path}")
    click.echo(f"Executor: {config.executor.kind}")
    click.echo(f"Pipeline: {pipeline_path}")


@cli.command("validate-config")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
@click.pass_context
def validate_config_command(ctx: click.Context, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    pipeline = _load_pipeline(runtime)
    ordered = pipeline.ordered_steps()
    state = "enabled" if pipeline.enabled else "disabled"
    click.echo(f"Pipeline configuration OK ({state}, onFailure={pipeline.on_failure})")
    for index, step in enumerate(ordered, start=1):
        flag = "required" if step.required else "optional"
        click.echo(f"{index}. {step.id} [{step.type}, {flag}]")


@cli.command("check-path")
@click.argument("states", nargs=-1, required=True, type=click.Choice(TASK_STATES))
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
@click.pass_context
def check_path_command(ctx: click.Context, states: tuple[str, ...], config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    machine = TaskStateMachine(strict_mode=runtime.config.state_machine.strict_mode)
    validation = machine.validate_workflow_path(list(states))  # type: ignore[arg-type]
    if not validation.valid:
        raise click.ClickException("\n".join(validation.errors))
    click.echo("Valid path: " + " -> ".join(states))


@cli.command("diagram")
@click.pass_context
def diagram_command(ctx: click.Context) -> None:
    configure_logging(ctx.obj.get("log_level") or "INFO")
    click.echo(TaskStateMachine().export_mermaid_diagram())


@cli.command("run")
@click.argument("feature_json", type=click.Path(path_type=Path, dir_okay=False))
@click.option(
    "--state",
    "start_state",
    type=click.Choice(["in_progress", "pr_fixes_needed"]),
    default="in_progress",
    show_default=True,
    help="Lifecycle state the task is in before review.",
)
@click.option("--task-id", default=None, help="Defaults to the feature id.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context,
    feature_json: Path,
    start_state: str,
    task_id: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(ctx, config_value)
    feature = _read_feature(feature_json)
    pipeline = _load_pipeline(runtime)
    config = runtime.config

    memory = PipelineMemory(resolve_path(runtime.project_root, config.pipeline.memory_path))
    memory.load()
    events: list[dict[str, Any]] = []
    machine = TaskStateMachine(events.append, strict_mode=config.state_machine.strict_mode)
    task_id = task_id or feature.id
    initial = TaskState(
        task_id=task_id, state=start_state, previous_state=None  # type: ignore[arg-type]
    )
    machine.set_task_state(task_id, initial)
    step_executor = PipelineStepExecutor.create(
        build_executor(config),
        memory=memory,
        project_path=runtime.project_root,
        retry_delay=config.pipeline.retry_delay_seconds,
        ambiguous_success=config.pipeline.ambiguous_success,
        event_hook=events.append,
    )
    runner = PipelineRunner(machine, step_executor, pipeline, project_path=runtime.project_root)

    def on_progress(step_id: str, message: str) -> None:
        logger.debug("[{}] {}", step_id, message)

    run = asyncio.run(runner.run_phase(feature, task_id=task_id, on_progress=on_progress))
    payload = run.to_dict()
    payload["transitions"] = [event for event in events if event.get("event") == "state_changed"]
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
    if run.outcome in ("failed", "blocked"):
        ctx.exit(1)
