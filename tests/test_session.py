from pathlib import Path

import pytest

from taskgate.state.session import SessionResolver, safe_name
from taskgate.state.tracking import TransientTracker, payload_hash


def _resolver(tmp_path: Path) -> SessionResolver:
    return SessionResolver(
        tmp_path / "sessions",
        state_dir=".taskgate/state",
        document_name="active_task_graph.json",
    )


def _document(project: Path) -> Path:
    document = project / ".taskgate" / "state" / "active_task_graph.json"
    document.parent.mkdir(parents=True, exist_ok=True)
    document.write_text("{}", encoding="utf-8")
    return document


def test_registration_resolves_from_another_directory(tmp_path: Path) -> None:
    resolver = _resolver(tmp_path)
    project = tmp_path / "project"
    elsewhere = tmp_path / "worktree"
    elsewhere.mkdir()
    document = _document(project)

    assert resolver.resolve("sess-1", elsewhere) is None
    resolver.register("sess-1", document)

    assert resolver.resolve("sess-1", elsewhere) == document.resolve()


def test_local_document_is_used_without_registration(tmp_path: Path) -> None:
    resolver = _resolver(tmp_path)
    project = tmp_path / "project"
    document = _document(project)

    assert resolver.resolve(None, project) == document
    assert resolver.resolve("unknown", project) == document


def test_registration_is_idempotent_and_removable(tmp_path: Path) -> None:
    resolver = _resolver(tmp_path)
    document = _document(tmp_path / "project")

    first = resolver.register("sess/../1", document)
    mtime = first.stat().st_mtime_ns
    second = resolver.register("sess/../1", document)

    assert first == second
    assert second.stat().st_mtime_ns == mtime
    assert first.parent == tmp_path / "sessions"
    assert resolver.registered_path("sess/../1") == document.resolve()

    resolver.unregister("sess/../1")
    assert resolver.registered_path("sess/../1") is None
    with pytest.raises(ValueError):
        resolver.register("  ", document)


def test_stale_registration_falls_back_to_local(tmp_path: Path) -> None:
    resolver = _resolver(tmp_path)
    gone = tmp_path / "gone" / "active_task_graph.json"
    resolver.register("sess-2", gone)
    project = tmp_path / "project"
    document = _document(project)

    assert resolver.resolve("sess-2", project) == document
    assert resolver.resolve("sess-2", tmp_path) is None


def test_safe_name_replaces_path_characters() -> None:
    assert safe_name("a/b c:d") == "a_b_c_d"


def test_replay_window_and_cleanup(tmp_path: Path) -> None:
    now = [1000.0]
    tracker = TransientTracker(tmp_path / "tracking", clock=lambda: now[0])
    key = payload_hash("pre-tool-use\n{}")

    assert tracker.seen_recently(key, 0.5) is False
    now[0] += 0.2
    assert tracker.seen_recently(key, 0.5) is True
    now[0] += 5.0
    assert tracker.seen_recently(key, 0.5) is False

    tracker.mark_worker("sess-1", "agent-a")
    tracker.mark_worker("sess-1", "agent-b")
    tracker.clear_worker("sess-1", "agent-b")
    assert tracker.active_workers("sess-1") == ["agent-a"]

    now[0] += 3600.0
    removed = tracker.cleanup(60.0)
    assert len(removed) == 2
    assert tracker.active_workers("sess-1") == []
