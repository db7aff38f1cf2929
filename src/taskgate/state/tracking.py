from __future__ import annotations

import hashlib
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

from taskgate.state.session import safe_name

logger = logging.getLogger(__name__)


def payload_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


class TransientTracker:
    """Short-lived per-session flags: active workers and recently seen events.

    None of this is part of the task graph; entries past their age are
    dropped by ``cleanup`` at session start.
    """

    def __init__(self, root: Path, *, clock: Callable[[], float] = time.time) -> None:
        self.root = root
        self._clock = clock

    def _touch(self, path: Path) -> None:
        path.touch()
        now = self._clock()
        os.utime(path, (now, now))

    def _workers_dir(self, session_id: str) -> Path:
        return self.root / f"{safe_name(session_id)}.workers"

    def _replay_dir(self) -> Path:
        return self.root / "replay"

    def mark_worker(self, session_id: str, agent_id: str) -> None:
        directory = self._workers_dir(session_id)
        directory.mkdir(parents=True, exist_ok=True)
        self._touch(directory / safe_name(agent_id))

    def clear_worker(self, session_id: str, agent_id: str) -> None:
        (self._workers_dir(session_id) / safe_name(agent_id)).unlink(missing_ok=True)

    def active_workers(self, session_id: str) -> list[str]:
        directory = self._workers_dir(session_id)
        if not directory.is_dir():
            return []
        return sorted(item.name for item in directory.iterdir() if item.is_file())

    def seen_recently(self, key: str, window_seconds: float) -> bool:
        """Record ``key`` and report whether it was already recorded within the window."""
        directory = self._replay_dir()
        directory.mkdir(parents=True, exist_ok=True)
        marker = directory / key
        now = self._clock()
        try:
            age = now - marker.stat().st_mtime
        except FileNotFoundError:
            age = None
        self._touch(marker)
        return age is not None and age <= window_seconds

    def forget(self, key: str) -> None:
        (self._replay_dir() / key).unlink(missing_ok=True)

    def cleanup(self, max_age_seconds: float) -> list[Path]:
        if not self.root.is_dir():
            return []
        cutoff = self._clock() - max_age_seconds
        removed: list[Path] = []
        candidates = [
            *self.root.glob("*.workers/*"),
            *self._replay_dir().glob("*"),
        ]
        for entry in candidates:
            try:
                if entry.is_file() and entry.stat().st_mtime < cutoff:
                    entry.unlink()
                    removed.append(entry)
            except FileNotFoundError:
                continue
        if removed:
            logger.info("Removed %d stale tracking entries from %s", len(removed), self.root)
        return removed
