from __future__ import annotations

import json
import logging
import os
import shutil
import stat
import tempfile
from collections.abc import Callable
from dataclasses import fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from taskgate.config import TaskGateConfig
from taskgate.errors import StateError
from taskgate.models import (
    DONE_STATUSES,
    PHASE_ORDER,
    SpecCheck,
    Task,
    TaskGraph,
    WaveGate,
    utcnow_iso,
)
from taskgate.state.lock import LockManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

READ_ONLY_MODE = stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH
WRITABLE_MODE = READ_ONLY_MODE | stat.S_IWUSR
_TASK_FIELDS = frozenset(item.name for item in fields(Task)) - {"id"}
_GATE_FIELDS = frozenset(item.name for item in fields(WaveGate)) - {"checked_at"}


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class TaskGraphStore:
    """Lock-protected access to one task-graph document.

    Every mutator is a read-modify-write under the store's ``LockManager``.
    A mutation that leaves the document unchanged is not written back, so
    repeated signals never touch ``updated_at``.
    """

    def __init__(self, document_path: Path, *, lock: LockManager | None = None) -> None:
        self.document_path = document_path
        self.lock = lock or LockManager(document_path.parent / ".task_graph.lock")

    @classmethod
    def at(cls, document_path: Path, config: TaskGateConfig) -> TaskGraphStore:
        lock = LockManager(
            document_path.parent / config.state.lock_name,
            stale_seconds=config.lock.stale_seconds,
            retry_interval=config.lock.retry_interval_seconds,
            max_attempts=config.lock.max_attempts,
        )
        return cls(document_path, lock=lock)

    def exists(self) -> bool:
        return self.document_path.exists()

    def load(self) -> TaskGraph | None:
        try:
            raw = self.document_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.debug("Unreadable task graph %s: %s", self.document_path, exc)
            return None
        try:
            return TaskGraph.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.debug("Malformed task graph %s treated as absent: %s", self.document_path, exc)
            return None

    def _write(self, graph: TaskGraph) -> None:
        graph.updated_at = utcnow_iso()
        serialized = json.dumps(graph.to_dict(), ensure_ascii=False, indent=2) + "\n"
        try:
            if self.document_path.exists():
                os.chmod(self.document_path, WRITABLE_MODE)
            try:
                _atomic_write_text(self.document_path, serialized)
            finally:
                if self.document_path.exists():
                    os.chmod(self.document_path, READ_ONLY_MODE)
        except OSError as exc:
            raise StateError(f"Failed to write task graph {self.document_path}: {exc}") from exc

    def save(self, graph: TaskGraph) -> None:
        with self.lock.hold():
            self._write(graph)

    def create(self, graph: TaskGraph, *, overwrite: bool = False) -> TaskGraph:
        graph.validate()
        with self.lock.hold():
            if self.document_path.exists() and not overwrite:
                raise StateError(f"A task graph already exists at {self.document_path}")
            graph.created_at = graph.created_at or utcnow_iso()
            self._write(graph)
        logger.info("Created task graph %s", self.document_path)
        return graph

    def with_lock(self, mutator: Callable[[TaskGraph], T]) -> T | None:
        """Run ``mutator`` on the current document under the lock and persist it.

        Returns ``None`` without calling ``mutator`` when no document exists.
        """
        with self.lock.hold():
            graph = self.load()
            if graph is None:
                return None
            before = graph.to_dict()
            result = mutator(graph)
            if graph.to_dict() != before:
                self._write(graph)
            return result

    def update_task(self, task_id: str, **updates: Any) -> bool:
        unknown = set(updates) - _TASK_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")

        def _mutate(graph: TaskGraph) -> bool:
            task = graph.task(task_id)
            if task is None:
                logger.debug("update_task: %s not in graph", task_id)
                return False
            for name, value in updates.items():
                setattr(task, name, value)
            return True

        return bool(self.with_lock(_mutate))

    def update_tasks(self, updates: dict[str, dict[str, Any]]) -> list[str]:
        for task_updates in updates.values():
            unknown = set(task_updates) - _TASK_FIELDS
            if unknown:
                raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")

        def _mutate(graph: TaskGraph) -> list[str]:
            updated: list[str] = []
            for task_id, task_updates in updates.items():
                task = graph.task(task_id)
                if task is None:
                    continue
                for name, value in task_updates.items():
                    setattr(task, name, value)
                updated.append(task_id)
            return updated

        return self.with_lock(_mutate) or []

    def check_dependencies(self, task_id: str) -> tuple[bool, list[str]]:
        graph = self.load()
        if graph is None:
            return False, []
        return graph.check_dependencies(task_id)

    def set_current_phase(self, phase: str) -> None:
        if phase not in PHASE_ORDER:
            raise ValueError(f"Unknown phase: {phase}")

        def _mutate(graph: TaskGraph) -> None:
            graph.current_phase = phase

        self.with_lock(_mutate)

    def set_phase_artifact(self, phase: str, artifact: str) -> None:
        def _mutate(graph: TaskGraph) -> None:
            graph.phase_artifacts[phase] = artifact

        self.with_lock(_mutate)

    def add_skipped_phase(self, phase: str) -> None:
        def _mutate(graph: TaskGraph) -> None:
            if phase not in graph.skipped_phases:
                graph.skipped_phases.append(phase)

        self.with_lock(_mutate)

    def advance_phase(
        self,
        completed: str,
        next_phase: str,
        artifact: str,
        *,
        skip: tuple[str, ...] = (),
    ) -> bool:
        """Record the completed phase's artifact and the new phase in one write."""

        def _mutate(graph: TaskGraph) -> bool:
            return graph.record_phase_advance(completed, next_phase, artifact, skip=skip)

        advanced = bool(self.with_lock(_mutate))
        if advanced:
            logger.info("Phase advanced %s -> %s (artifact: %s)", completed, next_phase, artifact)
        return advanced

    def check_artifact_exists(self, phase: str, base_dir: Path) -> tuple[bool, str]:
        graph = self.load()
        if graph is None:
            return False, "no active task graph"
        problem = graph.artifact_problem(phase, base_dir)
        if problem is not None:
            return False, problem
        return True, graph.phase_artifacts[phase]

    def advance_wave(self, from_wave: int | None = None) -> int | None:
        def _mutate(graph: TaskGraph) -> int | None:
            wave = graph.current_wave if from_wave is None else from_wave
            if graph.advance_wave(wave):
                return graph.current_wave
            return None

        return self.with_lock(_mutate)

    def update_wave_gate(self, wave: int, **updates: bool) -> WaveGate | None:
        unknown = set(updates) - _GATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown wave gate fields: {', '.join(sorted(unknown))}")

        def _mutate(graph: TaskGraph) -> WaveGate:
            gate = graph.gate(wave)
            for name, value in updates.items():
                setattr(gate, name, value)
            gate.checked_at = utcnow_iso()
            return gate

        return self.with_lock(_mutate)

    def is_wave_complete(self, wave: int) -> bool:
        graph = self.load()
        if graph is None:
            return False
        tasks = graph.tasks_in_wave(wave)
        return bool(tasks) and all(task.status in DONE_STATUSES for task in tasks)

    def mark_task_executing(self, task_id: str, *, start_sha: str | None = None) -> bool:
        def _mutate(graph: TaskGraph) -> bool:
            task = graph.task(task_id)
            if task is None:
                return False
            task.status = "in_progress"
            if start_sha and not task.start_sha:
                task.start_sha = start_sha
            graph.mark_executing(task_id)
            return True

        return bool(self.with_lock(_mutate))

    def unmark_task_executing(self, task_id: str) -> None:
        def _mutate(graph: TaskGraph) -> None:
            graph.unmark_executing(task_id)

        self.with_lock(_mutate)

    def set_spec_check(self, check: SpecCheck) -> None:
        def _mutate(graph: TaskGraph) -> None:
            graph.spec_checks[check.wave] = check

        self.with_lock(_mutate)

    def clear(self) -> None:
        with self.lock.hold():
            self.document_path.unlink(missing_ok=True)

    def archive(self, archive_dir: Path) -> Path | None:
        with self.lock.hold():
            if not self.document_path.exists():
                return None
            archive_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
            target = archive_dir / f"{self.document_path.stem}-{stamp}.json"
            shutil.move(str(self.document_path), str(target))
        logger.info("Archived task graph to %s", target)
        return target
