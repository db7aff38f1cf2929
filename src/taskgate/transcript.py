from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SHELL_TOOLS = frozenset({"Bash", "bash", "shell"})
WRITE_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit", "write", "edit", "patch"})
PATH_KEYS = ("file_path", "path", "notebook_path", "filePath")

TEST_COMMAND_PATTERN = re.compile(
    r"(?:^|[\s;&|(])(?:"
    r"mvnw?|\./mvnw|gradlew?|\./gradlew"
    r"|pytest|py\.test|python3?\s+-m\s+(?:pytest|unittest)"
    r"|vitest|jest|mocha"
    r"|(?:npm|pnpm|yarn|bun)\s+(?:run\s+)?test(?::\S+)?"
    r"|npx\s+(?:vitest|jest|mocha)"
    r"|go\s+test|cargo\s+test|tox|nox"
    r")(?=$|[\s;&|)])"
)
FABRICATED_OUTPUT_PATTERN = re.compile(
    r"\b(?:echo|printf)\b[^;&|]*(?:passed|passing|BUILD SUCCESS|Tests run)", re.IGNORECASE
)


@dataclass(slots=True)
class ToolInvocation:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    result: str | None = None


def iter_records(lines: Iterable[str]) -> Iterator[dict[str, Any]]:
    for line_number, line in enumerate(lines, start=1):
        stripped = line.strip()
        if not stripped:
            continue
        try:
            record = json.loads(stripped)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed transcript line %d", line_number)
            continue
        if isinstance(record, dict):
            yield record


def read_transcript(path: Path | None) -> list[dict[str, Any]]:
    if path is None:
        return []
    try:
        with path.open(encoding="utf-8", errors="replace") as handle:
            return list(iter_records(handle))
    except (FileNotFoundError, IsADirectoryError, PermissionError) as exc:
        logger.debug("Transcript %s unavailable: %s", path, exc)
        return []


def _content_of(record: dict[str, Any]) -> Any:
    message = record.get("message")
    if isinstance(message, dict) and "content" in message:
        return message.get("content")
    return record.get("content")


def _blocks(record: dict[str, Any]) -> list[dict[str, Any]]:
    content = _content_of(record)
    if isinstance(content, list):
        return [block for block in content if isinstance(block, dict)]
    return []


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [_text_of(item) for item in content]
        return "\n".join(part for part in parts if part)
    if isinstance(content, dict):
        if content.get("type") in {"tool_use", "tool_result"}:
            return ""
        text = content.get("text")
        if isinstance(text, str):
            return text
        return _text_of(content.get("content"))
    return ""


def _speaker(record: dict[str, Any]) -> str | None:
    message = record.get("message")
    if isinstance(message, dict) and isinstance(message.get("role"), str):
        return message["role"]
    speaker = record.get("type") or record.get("role")
    return speaker if isinstance(speaker, str) else None


def extract_content(records: Iterable[dict[str, Any]], *, speaker: str | None = None) -> str:
    """Concatenate every free-text fragment in order.

    Tool invocations and tool results are not free text and are left out.
    ``speaker`` limits the output to records from one side, e.g. ``"assistant"``.
    """
    parts: list[str] = []
    for record in records:
        if speaker is not None and _speaker(record) != speaker:
            continue
        text = _text_of(_content_of(record))
        if text:
            parts.append(text)
    return "\n".join(parts)


def _result_text(block: dict[str, Any]) -> str:
    content = block.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            item.get("text", "")
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        ]
        return "\n".join(texts)
    return ""


def tool_invocations(records: Iterable[dict[str, Any]]) -> list[ToolInvocation]:
    """Pair each tool_use block with the tool_result carrying its id."""
    invocations: dict[str, ToolInvocation] = {}
    for record in records:
        for block in _blocks(record):
            block_type = block.get("type")
            if block_type == "tool_use":
                tool_id = block.get("id")
                name = block.get("name")
                if not isinstance(tool_id, str) or not isinstance(name, str):
                    continue
                tool_input = block.get("input")
                invocations[tool_id] = ToolInvocation(
                    id=tool_id,
                    name=name,
                    input=tool_input if isinstance(tool_input, dict) else {},
                )
            elif block_type == "tool_result":
                invocation = invocations.get(str(block.get("tool_use_id")))
                if invocation is not None and invocation.result is None:
                    invocation.result = _result_text(block)
    return list(invocations.values())


def extract_files_modified(records: Iterable[dict[str, Any]]) -> list[str]:
    files: list[str] = []
    for invocation in tool_invocations(records):
        if invocation.name not in WRITE_TOOLS:
            continue
        for key in PATH_KEYS:
            value = invocation.input.get(key)
            if isinstance(value, str) and value.strip():
                if value not in files:
                    files.append(value)
                break
    return files


def is_test_command(command: str) -> bool:
    if not command or FABRICATED_OUTPUT_PATTERN.search(command):
        return False
    return bool(TEST_COMMAND_PATTERN.search(command))


def extract_bash_test_outputs(records: Iterable[dict[str, Any]]) -> list[str]:
    """Return results of shell invocations that ran a recognised test runner.

    Only a tool_result correlated by id with such an invocation is returned;
    free text claiming success, however exact, is never part of the output.
    """
    outputs: list[str] = []
    for invocation in tool_invocations(records):
        if invocation.name not in SHELL_TOOLS or invocation.result is None:
            continue
        command = invocation.input.get("command")
        if isinstance(command, str) and is_test_command(command):
            outputs.append(invocation.result)
    return outputs
