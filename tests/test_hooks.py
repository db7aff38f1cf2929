import json
from pathlib import Path
from typing import Any

import pytest

from taskgate.config import TaskGateConfig
from taskgate.errors import LockAcquisitionError
from taskgate.hooks import LifecycleHandlers
from taskgate.models import Task, TaskGraph
from taskgate.state.store import TaskGraphStore


def _setup(tmp_path: Path, graph: TaskGraph) -> tuple[LifecycleHandlers, TaskGraphStore, Path]:
    project = tmp_path / "project"
    project.mkdir()
    config = TaskGateConfig.default()
    config.state.session_dir = str(tmp_path / "sessions")
    config.tracking.replay_window_seconds = 30.0
    store = TaskGraphStore.at(config.state.document_path(project), config)
    store.create(graph)
    handlers = LifecycleHandlers(
        config,
        head_provider=lambda _root: None,
        diff_provider=lambda _root, _sha: "",
    )
    return handlers, store, project


def _tool(project: Path, tool_name: str, tool_input: dict[str, Any], **extra: Any) -> str:
    payload = {
        "session_id": "sess-1",
        "cwd": str(project),
        "tool_name": tool_name,
        "tool_input": tool_input,
    }
    payload.update(extra)
    return json.dumps(payload)


def _transcript(path: Path, *records: dict[str, Any]) -> Path:
    path.write_text("\n".join(json.dumps(record) for record in records) + "\n", encoding="utf-8")
    return path


def _said(text: str, role: str = "assistant") -> dict[str, Any]:
    return {"type": role, "message": {"role": role, "content": [{"type": "text", "text": text}]}}


def _stop(cwd: Path, agent_type: str, transcript: Path, **extra: Any) -> str:
    payload = {
        "session_id": "sess-1",
        "cwd": str(cwd),
        "agent_id": "agent-1",
        "agent_type": agent_type,
        "agent_transcript_path": str(transcript),
    }
    payload.update(extra)
    return json.dumps(payload)


def test_specify_flow_skips_clarify_across_directories(tmp_path: Path) -> None:
    handlers, store, project = _setup(tmp_path, TaskGraph(title="Login"))
    worker_dir = tmp_path / "worker"
    worker_dir.mkdir()

    started = handlers.handle(
        "pre-tool-use",
        _tool(project, "Task", {"subagent_type": "specify-agent", "prompt": "Write the spec"}),
    )
    assert started.allowed is True

    (project / "docs").mkdir()
    (project / "docs" / "spec.md").write_text(
        "# Login\n- [NEEDS CLARIFICATION] lockout policy\n", encoding="utf-8"
    )
    transcript = _transcript(
        tmp_path / "agent.jsonl",
        _said("Write the spec for login", role="user"),
        _said("Specification saved to docs/spec.md"),
    )
    handlers.handle("subagent-stop", _stop(worker_dir, "specify-agent", transcript))

    graph = store.load()
    assert graph is not None
    assert graph.current_phase == "architecture"
    assert graph.skipped_phases == ["brainstorm", "clarify"]
    assert graph.spec_file == "docs/spec.md"

    blocked = handlers.handle(
        "pre-tool-use", _tool(project, "Task", {"subagent_type": "clarify-agent"})
    )
    assert blocked.allowed is False
    assert "skipped" in blocked.reason


def test_orchestrator_edits_are_blocked_but_worker_edits_pass(tmp_path: Path) -> None:
    handlers, _, project = _setup(tmp_path, TaskGraph(title="x", current_phase="execute"))

    orchestrator = handlers.handle("pre-tool-use", _tool(project, "Edit", {"file_path": "app.py"}))
    worker = handlers.handle(
        "pre-tool-use", _tool(project, "Edit", {"file_path": "app.py"}, agent_id="agent-1")
    )
    state = handlers.handle(
        "pre-tool-use",
        _tool(
            project,
            "Bash",
            {"command": "echo {} > .taskgate/state/active_task_graph.json"},
            agent_id="agent-1",
        ),
    )

    assert orchestrator.allowed is False
    assert "app.py" in orchestrator.reason
    assert worker.allowed is True
    assert state.allowed is False


def test_no_workflow_means_no_gating(tmp_path: Path) -> None:
    config = TaskGateConfig.default()
    config.state.session_dir = str(tmp_path / "sessions")
    handlers = LifecycleHandlers(config)

    decision = handlers.handle(
        "pre-tool-use", _tool(tmp_path, "Task", {"subagent_type": "mystery-agent"})
    )

    assert decision.allowed is True
    assert handlers.handle("pre-tool-use", "").allowed is True


def test_implementation_start_checks_dependencies(tmp_path: Path) -> None:
    graph = TaskGraph(
        title="x",
        current_phase="execute",
        phase_artifacts={"specify": "completed", "architecture": "completed"},
        tasks=[Task(id="T1", wave=1), Task(id="T2", wave=1, depends_on=["T1"])],
    )
    handlers, store, project = _setup(tmp_path, graph)

    blocked = handlers.handle(
        "pre-tool-use",
        _tool(project, "Task", {"subagent_type": "code-implementer-agent", "prompt": "Task ID: T2"}),
    )
    allowed = handlers.handle(
        "pre-tool-use",
        _tool(project, "Task", {"subagent_type": "code-implementer-agent", "prompt": "Task ID: T1"}),
    )

    assert blocked.allowed is False
    assert "Unmet: T1 (status: pending)" in blocked.reason
    assert allowed.allowed is True
    saved = store.load()
    assert saved is not None
    assert saved.executing_tasks == ["T1"]


def test_worker_without_task_id_is_a_crash(tmp_path: Path) -> None:
    graph = TaskGraph(
        title="x",
        current_phase="execute",
        tasks=[Task(id="T1", wave=1, status="in_progress")],
        executing_tasks=["T1"],
    )
    handlers, store, project = _setup(tmp_path, graph)
    transcript = _transcript(tmp_path / "crash.jsonl", _said("I could not finish."))

    handlers.handle("subagent-stop", _stop(project, "code-implementer-agent", transcript))

    saved = store.load()
    assert saved is not None
    assert saved.task("T1").status == "failed"  # type: ignore[union-attr]
    assert saved.executing_tasks == []


def test_review_stop_records_findings_once(tmp_path: Path) -> None:
    graph = TaskGraph(
        title="x",
        current_phase="execute",
        tasks=[Task(id="T1", wave=1, status="implemented", tests_passed=True)],
    )
    handlers, store, project = _setup(tmp_path, graph)
    transcript = _transcript(
        tmp_path / "review.jsonl",
        _said("Review task T1", role="user"),
        _said("REVIEW_TASK: T1\nREVIEW_VERDICT: BLOCKED\nCRITICAL: no input validation"),
    )
    raw = _stop(project, "reviewer-agent", transcript, task_id="T1")

    handlers.handle("subagent-stop", raw)
    first = store.document_path.read_text(encoding="utf-8")
    duplicate = handlers.handle("subagent-stop", raw)

    assert duplicate.reason == "duplicate event ignored"
    assert store.document_path.read_text(encoding="utf-8") == first
    saved = store.load()
    assert saved is not None
    assert saved.task("T1").review_status == "blocked"  # type: ignore[union-attr]
    assert saved.wave_gates[1].blocked is True


def test_completion_that_hits_a_held_lock_can_be_retried(tmp_path: Path) -> None:
    graph = TaskGraph(
        title="x",
        current_phase="execute",
        tasks=[Task(id="T1", wave=1, status="implemented", tests_passed=True)],
    )
    handlers, store, project = _setup(tmp_path, graph)
    handlers.config.lock.max_attempts = 1
    transcript = _transcript(
        tmp_path / "review.jsonl",
        _said("Review task T1", role="user"),
        _said("REVIEW_TASK: T1\nREVIEW_VERDICT: PASSED\nREVIEW_CRITICAL_COUNT: 0"),
    )
    raw = _stop(project, "reviewer-agent", transcript, task_id="T1")
    store.lock.lock_path.write_text("4242:holder", encoding="utf-8")

    with pytest.raises(LockAcquisitionError):
        handlers.handle("subagent-stop", raw)

    store.lock.lock_path.unlink()
    retried = handlers.handle("subagent-stop", raw)

    assert retried.reason != "duplicate event ignored"
    saved = store.load()
    assert saved is not None
    assert saved.task("T1").review_status == "passed"  # type: ignore[union-attr]


def test_wave_gate_skill_blocks_until_evidence_is_complete(tmp_path: Path) -> None:
    graph = TaskGraph(
        title="x",
        current_phase="execute",
        phase_artifacts={"specify": "completed", "architecture": "completed"},
        tasks=[
            Task(
                id="T1",
                wave=1,
                status="implemented",
                tests_passed=True,
                new_tests_written=False,
                new_test_evidence="no new test methods found in diff",
                review_status="passed",
            )
        ],
    )
    handlers, store, project = _setup(tmp_path, graph)

    blocked = handlers.handle("pre-tool-use", _tool(project, "Skill", {"skill": "wave-gate"}))
    assert blocked.allowed is False
    assert "T1: new_tests_written - no new test methods found in diff" in blocked.reason

    store.update_task("T1", new_tests_written=True)
    passed = handlers.handle("pre-tool-use", _tool(project, "Skill", {"skill": "wave-gate"}))
    assert passed.allowed is True
    assert passed.reason == "Wave 1 gate passed. All waves complete."
