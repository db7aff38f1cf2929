from __future__ import annotations

import json
import os
import tempfile
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from taskgate.errors import ConfigError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _default_session_dir() -> str:
    return str(Path(tempfile.gettempdir()) / "taskgate-sessions")


@dataclass(slots=True)
class StateConfig:
    state_dir: str = ".taskgate/state"
    document_name: str = "active_task_graph.json"
    lock_name: str = ".task_graph.lock"
    session_dir: str = field(default_factory=_default_session_dir)
    archive_dir: str = ".taskgate/archive"

    def document_path(self, project_dir: Path) -> Path:
        return project_dir / self.state_dir / self.document_name


@dataclass(slots=True)
class LockConfig:
    stale_seconds: float = 5.0
    retry_interval_seconds: float = 0.1
    max_attempts: int = 50


@dataclass(slots=True)
class PhaseConfig:
    clarify_marker: str = "[NEEDS CLARIFICATION]"
    clarify_marker_threshold: int = 3


@dataclass(slots=True)
class TrackingConfig:
    stale_minutes: int = 60
    replay_window_seconds: float = 0.5


@dataclass(slots=True)
class LoggingConfig:
    level: str = "WARNING"
    file: str = ""


@dataclass(slots=True)
class TaskGateConfig:
    state: StateConfig = field(default_factory=StateConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    phases: PhaseConfig = field(default_factory=PhaseConfig)
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> TaskGateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskGateConfig:
        try:
            return cls(
                state=StateConfig(**data.get("state", {})),
                lock=LockConfig(**data.get("lock", {})),
                phases=PhaseConfig(**data.get("phases", {})),
                tracking=TrackingConfig(**data.get("tracking", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "state": {
                "state_dir": self.state.state_dir,
                "document_name": self.state.document_name,
                "lock_name": self.state.lock_name,
                "session_dir": self.state.session_dir,
                "archive_dir": self.state.archive_dir,
            },
            "lock": {
                "stale_seconds": self.lock.stale_seconds,
                "retry_interval_seconds": self.lock.retry_interval_seconds,
                "max_attempts": self.lock.max_attempts,
            },
            "phases": {
                "clarify_marker": self.phases.clarify_marker,
                "clarify_marker_threshold": self.phases.clarify_marker_threshold,
            },
            "tracking": {
                "stale_minutes": self.tracking.stale_minutes,
                "replay_window_seconds": self.tracking.replay_window_seconds,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }


def _env_int(
    environ: Mapping[str, str], name: str, default: int, minimum: int, maximum: int = 1_000_000
) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = int(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _env_float(
    environ: Mapping[str, str], name: str, default: float, minimum: float, maximum: float = 3600.0
) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = float(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed < minimum or parsed > maximum:
        raise ConfigError(f"{name} must be between {minimum} and {maximum}, got: {parsed}")
    return parsed


def apply_env_overrides(
    config: TaskGateConfig, environ: Mapping[str, str] | None = None
) -> TaskGateConfig:
    env = os.environ if environ is None else environ
    config.lock.stale_seconds = _env_float(
        env, "TASKGATE_LOCK_STALE_SECONDS", config.lock.stale_seconds, minimum=0.1
    )
    config.lock.max_attempts = _env_int(
        env, "TASKGATE_LOCK_MAX_ATTEMPTS", config.lock.max_attempts, minimum=1, maximum=10_000
    )
    config.phases.clarify_marker_threshold = _env_int(
        env, "TASKGATE_CLARIFY_THRESHOLD", config.phases.clarify_marker_threshold, minimum=0
    )
    config.tracking.stale_minutes = _env_int(
        env, "TASKGATE_STALE_MINUTES", config.tracking.stale_minutes, minimum=1
    )
    level = env.get("TASKGATE_LOG_LEVEL", "").strip().upper()
    if level:
        if level not in LOG_LEVELS:
            raise ConfigError(f"TASKGATE_LOG_LEVEL must be one of: {', '.join(LOG_LEVELS)}")
        config.logging.level = level
    session_dir = env.get("TASKGATE_SESSION_DIR", "").strip()
    if session_dir:
        config.state.session_dir = session_dir
    return config


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskGateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("state", "lock", "phases", "tracking", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskGateConfig:
    if not path.exists():
        return TaskGateConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return TaskGateConfig.from_dict(data)


def save_config(path: Path, config: TaskGateConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
