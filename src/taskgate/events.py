from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskgate.errors import EventParseError

logger = logging.getLogger(__name__)

EVENT_NAMES = ("session-start", "pre-tool-use", "subagent-start", "subagent-stop")


@dataclass(slots=True, frozen=True)
class SessionStart:
    session_id: str
    cwd: Path


@dataclass(slots=True, frozen=True)
class ToolUse:
    session_id: str
    cwd: Path
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)
    agent_id: str | None = None

    @property
    def from_worker(self) -> bool:
        return self.agent_id is not None


@dataclass(slots=True, frozen=True)
class WorkerStart:
    session_id: str
    cwd: Path
    agent_id: str
    agent_type: str


@dataclass(slots=True, frozen=True)
class WorkerStop:
    session_id: str
    cwd: Path
    agent_id: str
    agent_type: str
    transcript_path: Path | None = None
    task_id: str | None = None


HookEvent = SessionStart | ToolUse | WorkerStart | WorkerStop


def _text(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_event(name: str, raw: str, *, default_cwd: Path | None = None) -> HookEvent | None:
    """Parse one hook payload; returns ``None`` for shapes this package does not handle."""
    try:
        payload = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError as exc:
        raise EventParseError(f"Hook payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise EventParseError("Hook payload must be a JSON object")

    session_id = _text(payload, "session_id", "sessionId")
    if session_id is None:
        logger.debug("Ignoring %s payload without session id", name)
        return None
    cwd_value = _text(payload, "cwd")
    cwd = Path(cwd_value) if cwd_value else (default_cwd or Path.cwd())

    if name == "session-start":
        return SessionStart(session_id, cwd)
    if name == "pre-tool-use":
        tool_name = _text(payload, "tool_name", "toolName")
        if tool_name is None:
            return None
        tool_input = payload.get("tool_input")
        return ToolUse(
            session_id,
            cwd,
            tool_name,
            dict(tool_input) if isinstance(tool_input, dict) else {},
            _text(payload, "agent_id"),
        )
    if name in {"subagent-start", "subagent-stop"}:
        agent_id = _text(payload, "agent_id")
        if agent_id is None:
            return None
        agent_type = _text(payload, "agent_type", "subagent_type") or "general"
        if name == "subagent-start":
            return WorkerStart(session_id, cwd, agent_id, agent_type)
        transcript = _text(payload, "agent_transcript_path", "transcript_path")
        return WorkerStop(
            session_id,
            cwd,
            agent_id,
            agent_type,
            Path(transcript) if transcript else None,
            _text(payload, "task_id"),
        )
    logger.debug("Unknown hook event %s", name)
    return None
