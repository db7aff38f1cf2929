from __future__ import annotations

import fnmatch
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from taskgate.models import Decision

EDIT_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit", "write", "edit", "patch"})
SHELL_TOOLS = frozenset({"Bash", "bash", "shell"})
PATH_KEYS = ("file_path", "path", "notebook_path", "filePath")

SHELL_WRITE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r">>?\s*['\"]?(?P<target>[^\s'\";&|]+)"),
    re.compile(r"\btee\s+(?:-a\s+)?['\"]?(?P<target>[^\s'\";&|]+)"),
    re.compile(r"\b(?:cp|mv)\s+(?:-\w+\s+)*\S+\s+['\"]?(?P<target>[^\s'\";&|]+)"),
    re.compile(r"\brm\s+(?:-\w+\s+)*['\"]?(?P<target>[^\s'\";&|]+)"),
    re.compile(r"\bsed\s+(?:-\w+\s+)*-i\S*\s+(?:'[^']*'|\"[^\"]*\"|\S+)\s+['\"]?(?P<target>[^\s'\";&|]+)"),
)


def tool_path(tool_input: Mapping[str, Any]) -> str | None:
    for key in PATH_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


class StateFileGuard:
    """Protects the state directory's JSON documents from direct writes."""

    def __init__(self, project_dir: Path, state_dir: str) -> None:
        self.project_dir = project_dir
        self.state_dir = state_dir.strip("/")

    def is_protected(self, path: str) -> bool:
        normalized = path.replace("\\", "/")
        candidate = Path(normalized)
        if candidate.is_absolute():
            try:
                normalized = candidate.resolve().relative_to(self.project_dir.resolve()).as_posix()
            except ValueError:
                normalized = candidate.as_posix()
        normalized = normalized.removeprefix("./")
        return fnmatch.fnmatch(normalized, f"{self.state_dir}/*.json") or fnmatch.fnmatch(
            normalized, f"*/{self.state_dir}/*.json"
        )

    def _shell_targets(self, command: str) -> list[str]:
        targets: list[str] = []
        for pattern in SHELL_WRITE_PATTERNS:
            targets.extend(match.group("target") for match in pattern.finditer(command))
        return targets

    def check(self, tool_name: str, tool_input: Mapping[str, Any]) -> Decision:
        if tool_name in EDIT_TOOLS:
            path = tool_path(tool_input)
            if path and self.is_protected(path):
                return Decision.block(
                    f"BLOCKED: {path} is workflow state and is only changed by the "
                    "orchestration hooks. Direct writes are not allowed."
                )
        if tool_name in SHELL_TOOLS:
            command = tool_input.get("command")
            if isinstance(command, str):
                for target in self._shell_targets(command):
                    if self.is_protected(target):
                        return Decision.block(
                            f"BLOCKED: shell command writes to workflow state file {target}. "
                            "State is only changed by the orchestration hooks."
                        )
        return Decision.allow()


def check_direct_edit(
    tool_name: str, tool_input: Mapping[str, Any], *, from_worker: bool, phase: str
) -> Decision:
    """The orchestrating session delegates edits to workers while a workflow is active."""
    if from_worker or tool_name not in EDIT_TOOLS:
        return Decision.allow()
    path = tool_path(tool_input) or "a file"
    return Decision.block(
        f"BLOCKED: Direct edit of {path} during the {phase} phase. An active workflow routes "
        "file changes through a worker for the current task."
    )
