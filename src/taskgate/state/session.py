from __future__ import annotations

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def safe_name(session_id: str) -> str:
    return _UNSAFE_CHARS.sub("_", session_id.strip())


class SessionResolver:
    """Maps session ids to task-graph documents.

    Registrations are small files under ``session_dir`` holding an absolute
    document path, so a worker started in another directory still finds the
    orchestrator's document.
    """

    def __init__(self, session_dir: Path, *, state_dir: str, document_name: str) -> None:
        self.session_dir = session_dir
        self.state_dir = state_dir
        self.document_name = document_name

    def _registration_file(self, session_id: str) -> Path:
        return self.session_dir / f"{safe_name(session_id)}.task_graph"

    def local_document(self, cwd: Path) -> Path:
        return cwd / self.state_dir / self.document_name

    def register(self, session_id: str, document_path: Path) -> Path:
        if not session_id.strip():
            raise ValueError("session id must be non-empty")
        target = str(document_path.resolve())
        registration = self._registration_file(session_id)
        try:
            if registration.read_text(encoding="utf-8").strip() == target:
                return registration
        except FileNotFoundError:
            pass
        self.session_dir.mkdir(parents=True, exist_ok=True)
        registration.write_text(target + "\n", encoding="utf-8")
        logger.info("Registered session %s -> %s", session_id, target)
        return registration

    def unregister(self, session_id: str) -> None:
        if session_id.strip():
            self._registration_file(session_id).unlink(missing_ok=True)

    def registered_path(self, session_id: str) -> Path | None:
        if not session_id or not session_id.strip():
            return None
        try:
            raw = self._registration_file(session_id).read_text(encoding="utf-8").strip()
        except (FileNotFoundError, OSError):
            return None
        return Path(raw) if raw else None

    def resolve(self, session_id: str | None, cwd: Path) -> Path | None:
        registered = self.registered_path(session_id or "")
        if registered is not None and registered.exists():
            return registered
        local = self.local_document(cwd)
        if local.exists():
            return local
        return None
