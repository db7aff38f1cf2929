from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from taskgate.classify import is_test_path
from taskgate.models import SpecCheck, utcnow_iso

logger = logging.getLogger(__name__)

MAVEN_SUMMARY = re.compile(
    r"Tests run:\s*(\d+),\s*Failures:\s*(\d+),\s*Errors:\s*(\d+)(?:,\s*Skipped:\s*\d+)?"
)
VITEST_SUMMARY = re.compile(
    r"^\s*Tests:?\s+(?:(\d+)\s+failed\s*[|,]\s*)?(?:\d+\s+skipped\s*[|,]\s*)?(\d+)\s+passed",
    re.MULTILINE,
)
MOCHA_PASSING = re.compile(r"^\s*(\d+)\s+passing\b", re.MULTILINE)
MOCHA_FAILING = re.compile(r"^\s*(\d+)\s+failing\b", re.MULTILINE)
CARGO_SUMMARY = re.compile(r"test result: (ok|FAILED)\.\s+(\d+)\s+passed;\s+(\d+)\s+failed")
GO_PACKAGE_OK = re.compile(r"^ok\s+\S+", re.MULTILINE)
GO_FAILURE = re.compile(r"^(?:--- FAIL:|FAIL(?:\s|$))", re.MULTILINE)
PYTEST_PASSED = re.compile(r"\b(\d+)\s+passed\b")
PYTEST_FAILED = re.compile(r"\b(\d+)\s+(?:failed|errors?)\b")

DECLARATION_PATTERNS: dict[str, re.Pattern[str]] = {
    "java": re.compile(r"@(?:Test|Property|ParameterizedTest)\b"),
    "ts/js": re.compile(r"(?:^|[\s;(])(?:it|test)(?:\.\w+)?\s*\("),
    "python": re.compile(r"^\s*(?:async\s+)?def\s+test_\w*\s*\("),
}
ASSERTION_PATTERN = re.compile(
    r"\bassert\w*\s*\(|^\s*assert\s|\bexpect\s*\(|\bverify\s*\(|\.should\b"
    r"|\bpytest\.raises\s*\(|\bself\.fail\s*\(|\bfail\s*\("
)

CRITICAL_LINE = re.compile(r"^\s*(?:[-*]\s*)?(?:🚨\s*)?CRITICAL:\s*(.+)$", re.MULTILINE)
ADVISORY_LINE = re.compile(r"^\s*(?:[-*]\s*)?(?:⚠️?\s*)?ADVISORY:\s*(.+)$", re.MULTILINE)
REVIEW_TASK = re.compile(r"^\s*REVIEW_TASK:\s*(\S+)", re.MULTILINE)
REVIEW_VERDICT = re.compile(r"^\s*REVIEW_VERDICT:\s*(\S+)", re.MULTILINE)
REVIEW_CRITICAL_COUNT = re.compile(r"^\s*REVIEW_CRITICAL_COUNT:\s*(\S+)", re.MULTILINE)
EMPTY_FINDING = re.compile(r"^(?:none|n/?a|-+)\.?$", re.IGNORECASE)

SPEC_FINDING_LINE = re.compile(
    r"^\s*(?:[-*]\s*)?\[(CRITICAL|HIGH|MEDIUM|LOW)\]\s*(.+)$", re.MULTILINE | re.IGNORECASE
)
SPEC_CHECK_VERDICT = re.compile(r"^\s*SPEC_CHECK_VERDICT:\s*(\S+)", re.MULTILINE)


@dataclass(slots=True)
class TestResult:
    passed: bool
    evidence: str
    runner: str | None = None


@dataclass(slots=True)
class TestDeclaration:
    language: str
    file: str
    label: str
    assertions: int = 0


@dataclass(slots=True)
class NewTestResult:
    written: bool
    count: int
    evidence: str
    zero_assertion: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ReviewResult:
    status: str
    critical_findings: list[str] = field(default_factory=list)
    advisory_findings: list[str] = field(default_factory=list)
    task_id: str | None = None
    detail: str = ""


def _line_containing(text: str, index: int) -> str:
    start = text.rfind("\n", 0, index) + 1
    end = text.find("\n", index)
    line = text[start : end if end != -1 else len(text)].strip()
    return line[:200]


def evaluate_test_output(text: str) -> TestResult:
    """Judge a single test-runner output; only a clean run of a known grammar passes."""
    cleaned = (text or "").replace("**", "")

    maven = list(MAVEN_SUMMARY.finditer(cleaned))
    if maven:
        last = maven[-1]
        total, failures, errors = (int(last.group(i)) for i in (1, 2, 3))
        snippet = _line_containing(cleaned, last.start())
        passed = (
            "BUILD SUCCESS" in cleaned
            and "BUILD FAILURE" not in cleaned
            and total > 0
            and failures == 0
            and errors == 0
        )
        return TestResult(passed, f"maven: {snippet}", "maven")

    vitest = VITEST_SUMMARY.search(cleaned)
    if vitest:
        failed = int(vitest.group(1) or 0)
        count = int(vitest.group(2))
        snippet = _line_containing(cleaned, vitest.start(2))
        return TestResult(failed == 0 and count > 0, f"vitest: {snippet}", "vitest")

    passing = MOCHA_PASSING.search(cleaned)
    if passing:
        failing = sum(int(match.group(1)) for match in MOCHA_FAILING.finditer(cleaned))
        snippet = _line_containing(cleaned, passing.start(1))
        return TestResult(
            failing == 0 and int(passing.group(1)) > 0, f"node: {snippet}", "node"
        )

    cargo = list(CARGO_SUMMARY.finditer(cleaned))
    if cargo:
        failed = sum(int(match.group(3)) for match in cargo)
        ran = sum(int(match.group(2)) for match in cargo)
        clean = all(match.group(1) == "ok" for match in cargo)
        snippet = _line_containing(cleaned, cargo[-1].start())
        return TestResult(clean and failed == 0 and ran > 0, f"cargo: {snippet}", "cargo")

    go_failure = GO_FAILURE.search(cleaned)
    if go_failure:
        return TestResult(False, f"go: {_line_containing(cleaned, go_failure.start())}", "go")
    go_ok = GO_PACKAGE_OK.search(cleaned)
    if go_ok:
        return TestResult(True, f"go: {_line_containing(cleaned, go_ok.start())}", "go")

    pytest_passed = list(PYTEST_PASSED.finditer(cleaned))
    if pytest_passed:
        last = pytest_passed[-1]
        failed = sum(int(match.group(1)) for match in PYTEST_FAILED.finditer(cleaned))
        snippet = _line_containing(cleaned, last.start())
        return TestResult(failed == 0 and int(last.group(1)) > 0, f"pytest: {snippet}", "pytest")

    if PYTEST_FAILED.search(cleaned) or MOCHA_FAILING.search(cleaned):
        match = PYTEST_FAILED.search(cleaned) or MOCHA_FAILING.search(cleaned)
        return TestResult(False, f"failed: {_line_containing(cleaned, match.start())}")
    return TestResult(False, "")


def evaluate_test_runs(outputs: Sequence[str]) -> TestResult:
    """Judge the latest recognisable run among anti-spoofed shell outputs."""
    if not outputs:
        return TestResult(False, "no test-runner invocation found in transcript")
    for output in reversed(outputs):
        result = evaluate_test_output(output)
        if result.evidence:
            return result
    return TestResult(False, "test-runner output not recognised")


def _diff_path(header: str) -> str:
    path = header[4:].strip().split("\t", maxsplit=1)[0]
    if path == "/dev/null":
        return ""
    if path.startswith(("a/", "b/")):
        return path[2:]
    return path


def _in_scope(path: str, files: Sequence[str] | None) -> bool:
    if not path or not is_test_path(path):
        return False
    if not files:
        return True
    normalized = path.replace("\\", "/")
    for candidate in files:
        candidate = candidate.replace("\\", "/")
        if candidate.endswith(normalized) or normalized.endswith(candidate):
            return True
    return False


def scan_added_tests(diff: str, files: Sequence[str] | None = None) -> list[TestDeclaration]:
    """Find new test declarations in added diff lines and count their assertions."""
    declarations: list[TestDeclaration] = []
    current_file = ""
    current: TestDeclaration | None = None
    for line in (diff or "").splitlines():
        if line.startswith("diff --git"):
            current_file = ""
            current = None
            continue
        if line.startswith("+++ "):
            current_file = _diff_path(line)
            current = None
            continue
        if not line.startswith("+") or not _in_scope(current_file, files):
            continue
        body = line[1:]
        language = next(
            (name for name, pattern in DECLARATION_PATTERNS.items() if pattern.search(body)),
            None,
        )
        if language is not None:
            current = TestDeclaration(language, current_file, body.strip()[:80])
            declarations.append(current)
        if current is not None and ASSERTION_PATTERN.search(body):
            current.assertions += 1
    return declarations


def evaluate_new_tests(
    diff: str, files: Sequence[str] | None = None, *, required: bool = True
) -> NewTestResult:
    if not required:
        return NewTestResult(False, 0, "new_tests_required=false (skipped)")
    declarations = scan_added_tests(diff, files)
    asserted = [item for item in declarations if item.assertions > 0]
    empty = [f"{item.file}: {item.label}" for item in declarations if item.assertions == 0]
    if not declarations:
        return NewTestResult(False, 0, "no new test methods found in diff")
    if not asserted:
        return NewTestResult(
            False,
            0,
            f"{len(declarations)} new test declarations with 0 assertions ({'; '.join(empty)})",
            empty,
        )
    by_language: dict[str, int] = {}
    for item in asserted:
        by_language[item.language] = by_language.get(item.language, 0) + 1
    details = "; ".join(f"{name}: {count}" for name, count in by_language.items())
    evidence = f"{len(asserted)} new test methods ({details})"
    if empty:
        evidence += f"; {len(empty)} with 0 assertions ignored"
    return NewTestResult(True, len(asserted), evidence, empty)


def _findings(pattern: re.Pattern[str], content: str) -> list[str]:
    items = [match.strip() for match in pattern.findall(content)]
    return [item for item in items if item and not EMPTY_FINDING.match(item)]


def evaluate_review(content: str, expected_task_id: str | None = None) -> ReviewResult:
    """Turn a reviewer's summary block into a review status.

    A block is well-formed only with ``REVIEW_VERDICT:`` or
    ``REVIEW_CRITICAL_COUNT:``; without one the result is
    ``evidence_capture_failed`` unless critical lines are present.
    """
    cleaned = (content or "").replace("**", "")
    critical = _findings(CRITICAL_LINE, cleaned)
    advisory = _findings(ADVISORY_LINE, cleaned)
    task_match = REVIEW_TASK.search(cleaned)
    task_id = task_match.group(1).strip(".,").upper() if task_match else expected_task_id
    verdict_match = REVIEW_VERDICT.search(cleaned)
    count_match = REVIEW_CRITICAL_COUNT.search(cleaned)

    if verdict_match is None and count_match is None:
        if critical:
            return ReviewResult("blocked", critical, advisory, task_id, "unstructured findings")
        return ReviewResult(
            "evidence_capture_failed", [], advisory, task_id, "no structured review block found"
        )
    if task_match and expected_task_id and task_id != expected_task_id.upper():
        return ReviewResult(
            "evidence_capture_failed",
            [],
            advisory,
            expected_task_id,
            f"review block names {task_id}, expected {expected_task_id}",
        )

    verdict = verdict_match.group(1).strip(".,").upper() if verdict_match else None
    if verdict is not None and verdict not in {"PASSED", "BLOCKED"}:
        return ReviewResult(
            "evidence_capture_failed", [], advisory, task_id, f"unknown verdict {verdict}"
        )
    if count_match is not None:
        try:
            count = int(count_match.group(1))
        except ValueError:
            return ReviewResult(
                "evidence_capture_failed",
                [],
                advisory,
                task_id,
                f"REVIEW_CRITICAL_COUNT is not a number: {count_match.group(1)}",
            )
        for index in range(len(critical), count):
            critical.append(f"critical finding #{index + 1} reported without detail")
    if verdict == "BLOCKED" and not critical:
        critical.append("reviewer verdict BLOCKED without itemised critical findings")
    status = "blocked" if critical else "passed"
    return ReviewResult(status, critical, advisory, task_id, f"verdict {verdict or status.upper()}")


def evaluate_spec_check(content: str, wave: int, run_at: str | None = None) -> SpecCheck:
    cleaned = (content or "").replace("**", "")
    buckets: dict[str, list[str]] = {"CRITICAL": [], "HIGH": [], "MEDIUM": [], "LOW": []}
    for severity, text in SPEC_FINDING_LINE.findall(cleaned):
        buckets[severity.upper()].append(text.strip())
    verdict_match = SPEC_CHECK_VERDICT.search(cleaned)
    explicit = verdict_match.group(1).strip(".,").upper() if verdict_match else None
    if buckets["CRITICAL"] or explicit == "BLOCKED":
        verdict = "BLOCKED"
    elif explicit == "PASSED" or any(buckets.values()):
        verdict = "PASSED"
    else:
        verdict = "EVIDENCE_CAPTURE_FAILED"
    return SpecCheck(
        wave=wave,
        run_at=run_at or utcnow_iso(),
        critical_count=len(buckets["CRITICAL"]),
        high_count=len(buckets["HIGH"]),
        critical_findings=buckets["CRITICAL"],
        high_findings=buckets["HIGH"],
        medium_findings=buckets["MEDIUM"],
        verdict=verdict,
    )


def _run_git(repo_root: Path, args: list[str]) -> subprocess.CompletedProcess[str] | None:
    try:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=repo_root,
            text=True,
            capture_output=True,
        )
    except (FileNotFoundError, NotADirectoryError) as exc:
        logger.debug("git unavailable in %s: %s", repo_root, exc)
        return None
    if proc.returncode != 0:
        logger.debug("git %s failed: %s", " ".join(args), proc.stderr.strip())
        return None
    return proc


def current_head(repo_root: Path) -> str | None:
    proc = _run_git(repo_root, ["rev-parse", "HEAD"])
    if proc is None:
        return None
    return proc.stdout.strip() or None


def _untracked_as_diff(repo_root: Path, paths: Iterable[str]) -> str:
    chunks: list[str] = []
    for relative in paths:
        try:
            text = (repo_root / relative).read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        chunks.append(f"diff --git a/{relative} b/{relative}")
        chunks.append("--- /dev/null")
        chunks.append(f"+++ b/{relative}")
        chunks.extend(f"+{line}" for line in text.splitlines())
    return "\n".join(chunks)


def collect_diff(repo_root: Path, start_sha: str | None) -> str:
    """Diff of the working tree against ``start_sha`` plus new untracked test files."""
    base = start_sha or "HEAD"
    proc = _run_git(repo_root, ["diff", "--no-color", "--no-ext-diff", base])
    diff = proc.stdout if proc is not None else ""
    untracked = _run_git(repo_root, ["ls-files", "--others", "--exclude-standard"])
    if untracked is not None:
        paths = [line for line in untracked.stdout.splitlines() if line and is_test_path(line)]
        extra = _untracked_as_diff(repo_root, paths)
        if extra:
            diff = f"{diff.rstrip()}\n{extra}\n" if diff.strip() else extra + "\n"
    return diff
