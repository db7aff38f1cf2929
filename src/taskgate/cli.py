from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskgate import __version__
from taskgate.config import TaskGateConfig, apply_env_overrides, load_config
from taskgate.errors import ConfigError, EventParseError, StateError
from taskgate.events import EVENT_NAMES
from taskgate.hooks import LifecycleHandlers
from taskgate.models import Task, TaskGraph
from taskgate.state import SessionResolver, TaskGraphStore
from taskgate.waves import WaveGateEvaluator, gate_summary

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    project_dir: Path
    config_path: Path
    config: TaskGateConfig
    store: TaskGraphStore


def _resolve_config_path(project_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_dir / config_path
    return config_path.resolve()


def _configure_logging(config: TaskGateConfig) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.logging.file:
        handlers.append(logging.FileHandler(config.logging.file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.WARNING),
        format=LOG_FORMAT,
        handlers=handlers,
    )


def _load_runtime(project_value: str | None, config_value: str) -> Runtime:
    project_dir = Path(project_value or Path.cwd()).resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    try:
        config = apply_env_overrides(load_config(config_path))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    _configure_logging(config)
    store = TaskGraphStore.at(config.state.document_path(project_dir), config)
    return Runtime(project_dir=project_dir, config_path=config_path, config=config, store=store)


def _require_graph(runtime: Runtime) -> TaskGraph:
    graph = runtime.store.load()
    if graph is None:
        raise click.ClickException(
            f"No readable task graph at {runtime.store.document_path}. Run `taskgate init` first."
        )
    return graph


def _read_tasks(path: Path) -> list[Task]:
    try:
        payload: Any = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Cannot read task list {path}: {exc}") from exc
    if isinstance(payload, dict):
        payload = payload.get("tasks")
    if not isinstance(payload, list):
        raise click.ClickException("Task list must be a JSON list or an object with a 'tasks' list.")
    try:
        return [Task.from_dict(item) for item in payload]
    except ValueError as exc:
        raise click.ClickException(f"Invalid task entry: {exc}") from exc


def _common_options(func: Any) -> Any:
    func = click.option(
        "--project-dir",
        "project_value",
        default=None,
        type=click.Path(file_okay=False),
        help="Project root holding the state directory (default: current directory).",
    )(func)
    return click.option("--config", "config_value", default="taskgate.toml", show_default=True)(
        func
    )


@click.group()
@click.version_option(__version__, prog_name="taskgate")
def cli() -> None:
    """Phase and wave gating for delegated multi-agent workflows."""


@cli.command("init")
@click.option("--title", required=True)
@click.option("--issue", "github_issue", type=int, default=None)
@click.option("--force", is_flag=True, default=False, help="Replace an existing document.")
@_common_options
def init_command(
    title: str, github_issue: int | None, force: bool, project_value: str | None, config_value: str
) -> None:
    runtime = _load_runtime(project_value, config_value)
    graph = TaskGraph(title=title, github_issue=github_issue)
    try:
        runtime.store.create(graph, overwrite=force)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Initialized task graph in {runtime.store.document_path}")
    click.echo(f"Phase: {graph.current_phase}")


@cli.command("plan")
@click.argument("tasks_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_common_options
def plan_command(tasks_file: Path, project_value: str | None, config_value: str) -> None:
    runtime = _load_runtime(project_value, config_value)
    tasks = _read_tasks(tasks_file)
    _require_graph(runtime)

    def _mutate(graph: TaskGraph) -> None:
        graph.tasks = tasks
        graph.current_wave = 1
        graph.executing_tasks = []
        graph.wave_gates = {}
        graph.validate()
        graph.gate(1)

    try:
        runtime.store.with_lock(_mutate)
    except ValueError as exc:
        raise click.ClickException(f"Invalid plan: {exc}") from exc
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    waves = sorted({task.wave for task in tasks})
    click.echo(f"Loaded {len(tasks)} tasks across {len(waves)} waves")


@cli.command("status")
@_common_options
def status_command(project_value: str | None, config_value: str) -> None:
    runtime = _load_runtime(project_value, config_value)
    graph = _require_graph(runtime)
    payload = {"document": graph.to_dict(), "summary": gate_summary(graph)}
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("register")
@click.argument("session_id")
@_common_options
def register_command(session_id: str, project_value: str | None, config_value: str) -> None:
    runtime = _load_runtime(project_value, config_value)
    resolver = SessionResolver(
        Path(runtime.config.state.session_dir),
        state_dir=runtime.config.state.state_dir,
        document_name=runtime.config.state.document_name,
    )
    resolver.register(session_id, runtime.store.document_path)
    click.echo(f"Registered {session_id} -> {runtime.store.document_path}")


@cli.command("unregister")
@click.argument("session_id")
@_common_options
def unregister_command(session_id: str, project_value: str | None, config_value: str) -> None:
    runtime = _load_runtime(project_value, config_value)
    resolver = SessionResolver(
        Path(runtime.config.state.session_dir),
        state_dir=runtime.config.state.state_dir,
        document_name=runtime.config.state.document_name,
    )
    resolver.unregister(session_id)
    click.echo(f"Unregistered {session_id}")


@cli.command("gate")
@click.option("--wave", type=int, default=None, help="Wave to evaluate (default: current wave).")
@_common_options
@click.pass_context
def gate_command(
    ctx: click.Context, wave: int | None, project_value: str | None, config_value: str
) -> None:
    runtime = _load_runtime(project_value, config_value)
    _require_graph(runtime)
    try:
        result = WaveGateEvaluator(runtime.store).complete_wave(wave)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    if result is None:
        raise click.ClickException("Task graph disappeared while evaluating the gate.")
    click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    if result.blocked:
        click.echo(result.message(), err=True)
        ctx.exit(2)


@cli.command("archive")
@_common_options
def archive_command(project_value: str | None, config_value: str) -> None:
    runtime = _load_runtime(project_value, config_value)
    archive_dir = Path(runtime.config.state.archive_dir)
    if not archive_dir.is_absolute():
        archive_dir = runtime.project_dir / archive_dir
    try:
        target = runtime.store.archive(archive_dir)
    except (OSError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc
    if target is None:
        click.echo("No task graph to archive.")
        return
    click.echo(f"Archived to {target}")


@cli.command("hook")
@click.argument("event", type=click.Choice(EVENT_NAMES))
@_common_options
@click.pass_context
def hook_command(
    ctx: click.Context, event: str, project_value: str | None, config_value: str
) -> None:
    """Apply one host lifecycle event read as JSON from stdin."""
    runtime = _load_runtime(project_value, config_value)
    raw = click.get_text_stream("stdin").read()
    handlers = LifecycleHandlers(runtime.config)
    try:
        decision = handlers.handle(event, raw, default_cwd=runtime.project_dir)
    except EventParseError as exc:
        logging.getLogger(__name__).debug("Ignoring unparseable %s payload: %s", event, exc)
        return
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    if not decision.allowed:
        click.echo(decision.reason, err=True)
        ctx.exit(2)
