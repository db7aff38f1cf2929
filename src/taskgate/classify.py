"""Free-text classification of worker roles, task ids, markers and artifacts.

Every result here is derived from text a worker or prompt author controls.
Callers treat the output as a hint: only an explicit role mapping may drive a
phase transition, and a missing match always degrades to "unknown".
"""

from __future__ import annotations

import re

SKILL_TO_PHASE: dict[str, str] = {
    "brainstorming": "brainstorm",
    "brainstorm": "brainstorm",
    "specify": "specify",
    "clarify": "clarify",
    "architecture-tech-lead": "architecture",
    "architecture": "architecture",
    "task-planner": "decompose",
    "decompose": "decompose",
    "code-implementer": "execute",
    "java-test-engineer": "execute",
    "spec-check": "execute",
    "review-skill": "execute",
    "wave-gate": "execute",
}

AGENT_TO_PHASE: dict[str, str] = {
    "brainstorm-agent": "brainstorm",
    "specify-agent": "specify",
    "clarify-agent": "clarify",
    "architecture-agent": "architecture",
    "decompose-agent": "decompose",
    "task-planner-agent": "decompose",
    "code-implementer-agent": "execute",
    "java-test-agent": "execute",
    "ts-test-agent": "execute",
    "frontend-agent": "execute",
    "security-agent": "execute",
    "review-invoker": "execute",
    "task-reviewer": "execute",
    "reviewer-agent": "execute",
    "spec-check-agent": "execute",
}

EXEMPT_ROLES = frozenset(
    {
        "find-skills",
        "writing-clearly-and-concisely",
        "explore",
        "research-agent",
        "docs-lookup",
        "copywriting",
        "marketing-psychology",
    }
)

GENERIC_ROLES = frozenset({"", "general", "general-purpose"})
REVIEW_ROLES = frozenset({"reviewer-agent", "spec-check-agent", "task-reviewer", "review-skill"})
SPEC_CHECK_ROLES = frozenset({"spec-check-agent", "spec-check"})
IMPLEMENTATION_ROLES = frozenset(
    {
        "code-implementer-agent",
        "java-test-agent",
        "ts-test-agent",
        "frontend-agent",
        "security-agent",
        "code-implementer",
        "java-test-engineer",
        "general",
        "general-purpose",
    }
)

PROMPT_PHASE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("brainstorm", re.compile(r"\bbrainstorm", re.IGNORECASE)),
    ("clarify", re.compile(r"\bclarif(y|ication)", re.IGNORECASE)),
    (
        "specify",
        re.compile(r"\b(write|create|draft)\s+(the\s+|a\s+)?spec(ification)?\b", re.IGNORECASE),
    ),
    ("architecture", re.compile(r"\barchitecture\b|\btechnical design\b", re.IGNORECASE)),
    ("decompose", re.compile(r"\bdecompos|\btask (graph|breakdown)\b", re.IGNORECASE)),
    ("execute", re.compile(r"\bT\d+\b|\bimplement\b", re.IGNORECASE)),
)

TASK_ID_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\*\*Task ID:?\*\*:?\s*(T\d+)\b", re.IGNORECASE),
    re.compile(r"\bTask ID:\s*(T\d+)\b", re.IGNORECASE),
    re.compile(r"\bTask:\s*(T\d+)\b", re.IGNORECASE),
    re.compile(r"^\s*(T\d+)[:\s-]", re.IGNORECASE | re.MULTILINE),
    re.compile(
        r"\b(?:implement(?:ing|ed)?|execut(?:e|ing|ed)|complet(?:e|ing|ed)|start(?:ing|ed)?|"
        r"work(?:ing)? on)\s+(?:task\s+)?(T\d+)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(T\d+)\s+[A-Z]"),
    re.compile(r"\b(T\d+)\b"),
)

ARTIFACT_PATTERN = re.compile(
    r"(?:saved|created|wrote|generated)\s+(?:to\s+)?[`'\"]?([^\s`'\"]+\.md)\b",
    re.IGNORECASE,
)


def normalize_role(role: str | None) -> str:
    """Lower-case a role and drop any ``namespace:`` prefix."""
    if not role:
        return ""
    return role.rsplit(":", maxsplit=1)[-1].strip().lower()


def phase_for_role(role: str | None) -> str | None:
    normalized = normalize_role(role)
    if normalized in AGENT_TO_PHASE:
        return AGENT_TO_PHASE[normalized]
    return SKILL_TO_PHASE.get(normalized)


def phase_from_prompt(prompt: str) -> str | None:
    for phase, pattern in PROMPT_PHASE_PATTERNS:
        if pattern.search(prompt or ""):
            return phase
    return None


def is_exempt_role(role: str | None) -> bool:
    return normalize_role(role) in EXEMPT_ROLES


def is_generic_role(role: str | None) -> bool:
    return normalize_role(role) in GENERIC_ROLES


def is_review_role(role: str | None) -> bool:
    normalized = normalize_role(role)
    return normalized in REVIEW_ROLES or "review" in normalized


def is_spec_check_role(role: str | None) -> bool:
    return normalize_role(role) in SPEC_CHECK_ROLES


def is_implementation_role(role: str | None) -> bool:
    normalized = normalize_role(role)
    if is_review_role(normalized):
        return False
    return normalized in IMPLEMENTATION_ROLES


def extract_task_id(text: str | None) -> str | None:
    if not text:
        return None
    for pattern in TASK_ID_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).upper()
    return None


def count_markers(text: str | None, marker: str) -> int:
    if not text or not marker:
        return 0
    return text.count(marker)


def find_artifact_path(text: str | None) -> str | None:
    """Return the last markdown path a worker reports having written."""
    if not text:
        return None
    matches = ARTIFACT_PATTERN.findall(text)
    return matches[-1] if matches else None


def is_test_path(path: str) -> bool:
    normalized = path.replace("\\", "/")
    lowered = normalized.lower()
    name = lowered.rsplit("/", maxsplit=1)[-1]
    original_name = normalized.rsplit("/", maxsplit=1)[-1]
    if "/__tests__/" in f"/{lowered}" or "src/test/" in lowered:
        return True
    if {"tests", "test"} & set(lowered.split("/")[:-1]):
        return True
    if name.startswith("test_") and name.endswith(".py"):
        return True
    if name.endswith("_test.py") or name.endswith("_test.go"):
        return True
    if original_name.endswith(("Test.java", "Tests.java", "IT.java", "Test.kt", "Tests.kt")):
        return True
    return any(
        name.endswith(suffix)
        for suffix in (
            ".test.js",
            ".test.jsx",
            ".test.ts",
            ".test.tsx",
            ".spec.js",
            ".spec.jsx",
            ".spec.ts",
            ".spec.tsx",
        )
    )
