from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskgate.evidence import (
    NewTestResult,
    ReviewResult,
    TestResult,
    collect_diff,
    current_head,
    evaluate_new_tests,
    evaluate_review,
    evaluate_spec_check,
    evaluate_test_runs,
)
from taskgate.models import DONE_STATUSES, Decision, SpecCheck, Task, TaskGraph, utcnow_iso
from taskgate.state.store import TaskGraphStore
from taskgate.transcript import extract_bash_test_outputs, extract_files_modified

logger = logging.getLogger(__name__)

CRASH_REASON = "agent_crash: no task ID in output"


def validate_task_start(graph: TaskGraph, task_id: str) -> Decision:
    task = graph.task(task_id)
    if task is None:
        return Decision.block(f"BLOCKED: Task {task_id} is not in the task graph.")
    if task.status in {"completed", "cancelled"}:
        return Decision.block(f"BLOCKED: Task {task_id} is already {task.status}.")
    if task.wave > graph.current_wave:
        return Decision.block(
            f"BLOCKED: Cannot execute task {task_id} - it belongs to wave {task.wave} but the "
            f"current wave is {graph.current_wave}. Pass the wave {graph.current_wave} gate first."
        )
    satisfied, unmet = graph.check_dependencies(task_id)
    if not satisfied:
        return Decision.block(
            f"BLOCKED: Cannot execute task {task_id} - dependencies not met. "
            f"Unmet: {', '.join(unmet)}"
        )
    if task.wave == graph.current_wave and task.wave > 1:
        previous = graph.wave_gates.get(task.wave - 1)
        if previous is None or not previous.reviews_complete:
            if previous is not None and previous.blocked:
                return Decision.block(
                    f"BLOCKED: Cannot execute task {task_id} - the wave {task.wave - 1} gate is "
                    "blocked by failing tests, missing new tests or critical review findings."
                )
            return Decision.block(
                f"BLOCKED: Cannot execute task {task_id} - the wave {task.wave - 1} gate has "
                "not passed yet."
            )
    return Decision.allow()


@dataclass(slots=True)
class CompletionRecord:
    task_id: str
    tests: TestResult
    new_tests: NewTestResult
    files_modified: list[str]
    wave_implemented: bool = False


class TaskExecutionTracker:
    """Records task starts and completions reported by workers."""

    def __init__(
        self,
        store: TaskGraphStore,
        project_dir: Path,
        *,
        head_provider: Callable[[Path], str | None] = current_head,
        diff_provider: Callable[[Path, str | None], str] = collect_diff,
    ) -> None:
        self.store = store
        self.project_dir = project_dir
        self._head_provider = head_provider
        self._diff_provider = diff_provider

    def start(self, task_id: str) -> Decision:
        head = self._head_provider(self.project_dir)

        def _mutate(graph: TaskGraph) -> Decision:
            decision = validate_task_start(graph, task_id)
            if not decision.allowed:
                return decision
            task = graph.task(task_id)
            if task is None:
                return Decision.block(f"BLOCKED: Task {task_id} is not in the task graph.")
            task.status = "in_progress"
            if head and not task.start_sha:
                task.start_sha = head
            graph.mark_executing(task_id)
            return decision

        decision = self.store.with_lock(_mutate)
        if decision is None:
            return Decision.allow()
        logger.info("Task %s start %s", task_id, "allowed" if decision.allowed else "blocked")
        return decision

    def detect_crash(self) -> list[str]:
        def _mutate(graph: TaskGraph) -> list[str]:
            failed: list[str] = []
            for task_id in list(graph.executing_tasks):
                task = graph.task(task_id)
                if task is None or task.status in DONE_STATUSES:
                    continue
                task.status = "failed"
                task.failure_reason = CRASH_REASON
                task.retry_count += 1
                failed.append(task_id)
            graph.executing_tasks = []
            return failed

        failed = self.store.with_lock(_mutate) or []
        if failed:
            logger.warning("Worker ended without a task id; marked %s failed", ", ".join(failed))
        return failed

    @staticmethod
    def _already_recorded(task: Task) -> bool:
        return task.status == "completed" or (
            task.status == "implemented" and task.tests_passed is True
        )

    def record_completion(
        self, task_id: str, records: Sequence[dict[str, Any]]
    ) -> CompletionRecord | None:
        graph = self.store.load()
        task = graph.task(task_id) if graph is not None else None
        if task is None or self._already_recorded(task):
            logger.debug("Completion for %s skipped", task_id)
            return None

        tests = evaluate_test_runs(extract_bash_test_outputs(records))
        files = extract_files_modified(records)
        if task.new_tests_required:
            diff = self._diff_provider(self.project_dir, task.start_sha)
            new_tests = evaluate_new_tests(diff, files)
        else:
            new_tests = evaluate_new_tests("", required=False)

        def _mutate(current: TaskGraph) -> CompletionRecord | None:
            target = current.task(task_id)
            if target is None or self._already_recorded(target):
                return None
            target.status = "implemented"
            target.tests_passed = tests.passed
            target.test_evidence = tests.evidence
            target.files_modified = files
            target.new_tests_written = new_tests.written
            target.new_test_evidence = new_tests.evidence
            target.failure_reason = None
            current.unmark_executing(task_id)
            wave_tasks = current.tasks_in_wave(target.wave)
            wave_done = all(item.status in DONE_STATUSES for item in wave_tasks)
            if wave_done:
                gate = current.gate(target.wave)
                gate.impl_complete = True
                gate.tests_passed = all(item.tests_passed is True for item in wave_tasks)
                gate.checked_at = utcnow_iso()
            return CompletionRecord(task_id, tests, new_tests, files, wave_done)

        record = self.store.with_lock(_mutate)
        if record is not None:
            logger.info(
                "Task %s implemented (tests_passed=%s, new_tests_written=%s)",
                task_id,
                tests.passed,
                new_tests.written,
            )
        return record

    def record_review(self, task_id: str | None, content: str) -> ReviewResult | None:
        result = evaluate_review(content, task_id)
        target_id = result.task_id
        if not target_id:
            logger.debug("Review output names no task; nothing recorded")
            return None

        def _mutate(graph: TaskGraph) -> ReviewResult | None:
            task = graph.task(target_id)
            if task is None:
                return None
            task.review_status = result.status
            task.critical_findings = list(result.critical_findings)
            task.advisory_findings = list(result.advisory_findings)
            if result.critical_findings:
                gate = graph.gate(task.wave)
                gate.blocked = True
                gate.checked_at = utcnow_iso()
            return result

        stored = self.store.with_lock(_mutate)
        if stored is not None:
            logger.info("Review for %s recorded as %s", target_id, stored.status)
        return stored

    def record_spec_check(self, content: str) -> SpecCheck | None:
        def _mutate(graph: TaskGraph) -> SpecCheck:
            check = evaluate_spec_check(content, graph.current_wave)
            graph.spec_checks[check.wave] = check
            if check.verdict == "BLOCKED":
                gate = graph.gate(check.wave)
                gate.blocked = True
                gate.checked_at = check.run_at
            return check

        return self.store.with_lock(_mutate)
