import json
from pathlib import Path

import pytest

from taskgate.errors import EventParseError
from taskgate.events import SessionStart, ToolUse, WorkerStart, WorkerStop, parse_event


def test_parse_tool_use_from_worker(tmp_path: Path) -> None:
    raw = json.dumps(
        {
            "session_id": "s1",
            "cwd": str(tmp_path),
            "tool_name": "Task",
            "tool_input": {"subagent_type": "specify-agent", "prompt": "Write the spec"},
            "agent_id": "a-1",
        }
    )

    event = parse_event("pre-tool-use", raw)

    assert isinstance(event, ToolUse)
    assert event.cwd == tmp_path
    assert event.tool_input["subagent_type"] == "specify-agent"
    assert event.from_worker is True


def test_parse_lifecycle_events(tmp_path: Path) -> None:
    start = parse_event("session-start", json.dumps({"session_id": "s1"}), default_cwd=tmp_path)
    worker = parse_event(
        "subagent-start",
        json.dumps({"session_id": "s1", "agent_id": "a-1", "agent_type": "reviewer-agent"}),
    )
    stop = parse_event(
        "subagent-stop",
        json.dumps(
            {
                "session_id": "s1",
                "agent_id": "a-1",
                "agent_transcript_path": str(tmp_path / "a.jsonl"),
                "task_id": "T2",
            }
        ),
    )

    assert start == SessionStart("s1", tmp_path)
    assert isinstance(worker, WorkerStart)
    assert worker.agent_type == "reviewer-agent"
    assert isinstance(stop, WorkerStop)
    assert stop.agent_type == "general"
    assert stop.transcript_path == tmp_path / "a.jsonl"
    assert stop.task_id == "T2"


def test_unrecognised_shapes_are_ignored() -> None:
    assert parse_event("pre-tool-use", json.dumps({"tool_name": "Bash"})) is None
    assert parse_event("pre-tool-use", json.dumps({"session_id": "s1"})) is None
    assert parse_event("subagent-stop", json.dumps({"session_id": "s1"})) is None
    assert parse_event("notification", json.dumps({"session_id": "s1"})) is None
    assert parse_event("session-start", "") is None


def test_invalid_payloads_raise() -> None:
    with pytest.raises(EventParseError):
        parse_event("pre-tool-use", "{nope")
    with pytest.raises(EventParseError):
        parse_event("pre-tool-use", "[1, 2]")
