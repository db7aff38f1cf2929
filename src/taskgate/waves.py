from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from taskgate.models import DONE_STATUSES, Task, TaskGraph, utcnow_iso
from taskgate.state.store import TaskGraphStore

logger = logging.getLogger(__name__)

CLAUSE_TESTS = "tests_passed"
CLAUSE_NEW_TESTS = "new_tests_written"
CLAUSE_REVIEW = "review_status"
CLAUSE_CRITICAL = "critical_findings"
CLAUSE_SPEC_CHECK = "spec_check"


@dataclass(slots=True)
class GateFailure:
    task_id: str
    clause: str
    detail: str

    def describe(self) -> str:
        return f"{self.task_id}: {self.clause} - {self.detail}"


@dataclass(slots=True)
class GateResult:
    wave: int
    passed: bool
    failures: list[GateFailure] = field(default_factory=list)
    advanced_to: int | None = None
    workflow_complete: bool = False

    @property
    def blocked(self) -> bool:
        return not self.passed

    def message(self) -> str:
        if self.passed:
            if self.workflow_complete:
                return f"Wave {self.wave} gate passed. All waves complete."
            return f"Wave {self.wave} gate passed. Advanced to wave {self.advanced_to}."
        lines = [f"BLOCKED: Wave {self.wave} gate failed."]
        lines.extend(f"  - {failure.describe()}" for failure in self.failures)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "wave": self.wave,
            "passed": self.passed,
            "failures": [
                {"task_id": item.task_id, "clause": item.clause, "detail": item.detail}
                for item in self.failures
            ],
            "advanced_to": self.advanced_to,
            "workflow_complete": self.workflow_complete,
        }


def task_failures(task: Task) -> list[GateFailure]:
    failures: list[GateFailure] = []
    if task.tests_passed is not True:
        detail = task.test_evidence or "no passing test evidence recorded"
        failures.append(GateFailure(task.id, CLAUSE_TESTS, detail))
    if task.new_tests_required and task.new_tests_written is not True:
        detail = task.new_test_evidence or "no new test evidence recorded"
        failures.append(GateFailure(task.id, CLAUSE_NEW_TESTS, detail))
    if task.review_status != "passed":
        failures.append(
            GateFailure(task.id, CLAUSE_REVIEW, f"review status is {task.review_status}")
        )
    if task.critical_findings:
        failures.append(
            GateFailure(
                task.id,
                CLAUSE_CRITICAL,
                f"{len(task.critical_findings)} critical: {task.critical_findings[0]}",
            )
        )
    return failures


def evaluate_wave(graph: TaskGraph, wave: int) -> GateResult:
    tasks = graph.tasks_in_wave(wave)
    if not tasks:
        return GateResult(wave, False, [GateFailure("-", "tasks", f"wave {wave} has no tasks")])
    failures: list[GateFailure] = []
    for task in tasks:
        failures.extend(task_failures(task))
    spec_check = graph.spec_checks.get(wave)
    if spec_check is not None and spec_check.verdict == "BLOCKED":
        first = spec_check.critical_findings[0] if spec_check.critical_findings else "verdict BLOCKED"
        failures.append(
            GateFailure(f"wave {wave}", CLAUSE_SPEC_CHECK, f"spec alignment blocked: {first}")
        )
    return GateResult(wave, not failures, failures)


def max_wave(graph: TaskGraph) -> int:
    return graph.max_wave()


def all_waves_complete(graph: TaskGraph) -> bool:
    if not graph.tasks:
        return False
    if not all(task.status == "completed" for task in graph.tasks):
        return False
    waves = {task.wave for task in graph.tasks}
    return all(
        graph.wave_gates.get(wave) is not None and graph.wave_gates[wave].reviews_complete
        for wave in waves
    )


def ready_tasks(graph: TaskGraph) -> list[Task]:
    ready: list[Task] = []
    for task in graph.tasks:
        if task.status != "pending" or task.wave > graph.current_wave:
            continue
        satisfied, _ = graph.check_dependencies(task.id)
        if satisfied:
            ready.append(task)
    return ready


def remaining_tasks(graph: TaskGraph) -> list[Task]:
    return [task for task in graph.tasks if task.status not in DONE_STATUSES | {"cancelled"}]


def gate_summary(graph: TaskGraph) -> dict[str, Any]:
    return {
        "current_wave": graph.current_wave,
        "max_wave": graph.max_wave(),
        "ready": [task.id for task in ready_tasks(graph)],
        "remaining": [task.id for task in remaining_tasks(graph)],
        "all_waves_complete": all_waves_complete(graph),
    }


class WaveGateEvaluator:
    """Runs the gate for a wave and applies its outcome in one locked write."""

    def __init__(self, store: TaskGraphStore) -> None:
        self.store = store

    def complete_wave(self, wave: int | None = None) -> GateResult | None:
        def _mutate(graph: TaskGraph) -> GateResult:
            target = graph.current_wave if wave is None else wave
            result = evaluate_wave(graph, target)
            gate = graph.gate(target)
            gate.checked_at = utcnow_iso()
            if not result.passed:
                gate.blocked = True
                gate.reviews_complete = False
                return result
            for task in graph.tasks_in_wave(target):
                task.status = "completed"
                task.review_status = "passed"
                graph.unmark_executing(task.id)
            gate.impl_complete = True
            gate.tests_passed = True
            gate.reviews_complete = True
            gate.blocked = False
            if graph.advance_wave(target):
                result.advanced_to = graph.current_wave
            else:
                result.workflow_complete = target >= graph.max_wave()
            return result

        result = self.store.with_lock(_mutate)
        if result is not None:
            if result.passed:
                logger.info("Wave %d gate passed", result.wave)
            else:
                logger.info(
                    "Wave %d gate blocked: %s",
                    result.wave,
                    "; ".join(failure.describe() for failure in result.failures),
                )
        return result
