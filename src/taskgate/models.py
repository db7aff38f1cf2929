from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

Phase = Literal["init", "brainstorm", "specify", "clarify", "architecture", "decompose", "execute"]
TaskStatus = Literal["pending", "in_progress", "implemented", "completed", "failed", "cancelled"]
ReviewStatus = Literal["pending", "passed", "blocked", "evidence_capture_failed"]
SpecVerdict = Literal["PASSED", "BLOCKED", "EVIDENCE_CAPTURE_FAILED", "UNKNOWN"]

PHASE_ORDER: tuple[str, ...] = (
    "init",
    "brainstorm",
    "specify",
    "clarify",
    "architecture",
    "decompose",
    "execute",
)
TASK_STATUSES = frozenset(
    {"pending", "in_progress", "implemented", "completed", "failed", "cancelled"}
)
REVIEW_STATUSES = frozenset({"pending", "passed", "blocked", "evidence_capture_failed"})
SPEC_VERDICTS = frozenset({"PASSED", "BLOCKED", "EVIDENCE_CAPTURE_FAILED", "UNKNOWN"})
DONE_STATUSES = frozenset({"implemented", "completed"})


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _require_str(payload: dict[str, Any], key: str, default: str = "") -> str:
    value = payload.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValueError(f"'{key}' must be a string")
    return value


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"'{key}' must be a string")
    return value


def _require_int(payload: dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' must be an integer")
    if value < minimum:
        raise ValueError(f"'{key}' must be >= {minimum}")
    return value


def _require_bool(payload: dict[str, Any], key: str, default: bool) -> bool:
    value = payload.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' must be a boolean")
    return value


def _optional_bool(payload: dict[str, Any], key: str) -> bool | None:
    value = payload.get(key)
    if value is not None and not isinstance(value, bool):
        raise ValueError(f"'{key}' must be a boolean")
    return value


def _str_list(payload: dict[str, Any], key: str) -> list[str]:
    value = payload.get(key) or []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"'{key}' must be a list of strings")
    return list(value)


def _choice(payload: dict[str, Any], key: str, default: str, allowed: frozenset[str]) -> str:
    value = _require_str(payload, key, default)
    if value not in allowed:
        raise ValueError(f"'{key}' has unsupported value {value!r}")
    return value


@dataclass(slots=True)
class Task:
    id: str
    description: str = ""
    wave: int = 1
    status: str = "pending"
    agent: str = "general"
    depends_on: list[str] = field(default_factory=list)
    spec_anchors: list[str] = field(default_factory=list)
    start_sha: str | None = None
    tests_passed: bool | None = None
    test_evidence: str = ""
    new_tests_required: bool = True
    new_tests_written: bool | None = None
    new_test_evidence: str = ""
    review_status: str = "pending"
    critical_findings: list[str] = field(default_factory=list)
    advisory_findings: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    failure_reason: str | None = None
    retry_count: int = 0

    @classmethod
    def from_dict(cls, payload: Any) -> Task:
        if not isinstance(payload, dict):
            raise ValueError("task entry must be an object")
        task_id = _require_str(payload, "id").strip()
        if not task_id:
            raise ValueError("task 'id' must be non-empty")
        return cls(
            id=task_id,
            description=_require_str(payload, "description"),
            wave=_require_int(payload, "wave", 1, minimum=1),
            status=_choice(payload, "status", "pending", TASK_STATUSES),
            agent=_require_str(payload, "agent", "general"),
            depends_on=_str_list(payload, "depends_on"),
            spec_anchors=_str_list(payload, "spec_anchors"),
            start_sha=_optional_str(payload, "start_sha"),
            tests_passed=_optional_bool(payload, "tests_passed"),
            test_evidence=_require_str(payload, "test_evidence"),
            new_tests_required=_require_bool(payload, "new_tests_required", True),
            new_tests_written=_optional_bool(payload, "new_tests_written"),
            new_test_evidence=_require_str(payload, "new_test_evidence"),
            review_status=_choice(payload, "review_status", "pending", REVIEW_STATUSES),
            critical_findings=_str_list(payload, "critical_findings"),
            advisory_findings=_str_list(payload, "advisory_findings"),
            files_modified=_str_list(payload, "files_modified"),
            failure_reason=_optional_str(payload, "failure_reason"),
            retry_count=_require_int(payload, "retry_count", 0),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "description": self.description,
            "wave": self.wave,
            "status": self.status,
            "agent": self.agent,
            "depends_on": list(self.depends_on),
            "new_tests_required": self.new_tests_required,
            "review_status": self.review_status,
            "critical_findings": list(self.critical_findings),
            "advisory_findings": list(self.advisory_findings),
            "files_modified": list(self.files_modified),
            "retry_count": self.retry_count,
        }
        if self.spec_anchors:
            payload["spec_anchors"] = list(self.spec_anchors)
        optional = {
            "start_sha": self.start_sha,
            "tests_passed": self.tests_passed,
            "new_tests_written": self.new_tests_written,
            "failure_reason": self.failure_reason,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        if self.test_evidence:
            payload["test_evidence"] = self.test_evidence
        if self.new_test_evidence:
            payload["new_test_evidence"] = self.new_test_evidence
        return payload


@dataclass(slots=True)
class WaveGate:
    impl_complete: bool = False
    tests_passed: bool = False
    reviews_complete: bool = False
    blocked: bool = False
    checked_at: str | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> WaveGate:
        if not isinstance(payload, dict):
            raise ValueError("wave gate must be an object")
        return cls(
            impl_complete=_require_bool(payload, "impl_complete", False),
            tests_passed=_require_bool(payload, "tests_passed", False),
            reviews_complete=_require_bool(payload, "reviews_complete", False),
            blocked=_require_bool(payload, "blocked", False),
            checked_at=_optional_str(payload, "checked_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "impl_complete": self.impl_complete,
            "tests_passed": self.tests_passed,
            "reviews_complete": self.reviews_complete,
            "blocked": self.blocked,
        }
        if self.checked_at:
            payload["checked_at"] = self.checked_at
        return payload


@dataclass(slots=True)
class SpecCheck:
    wave: int
    run_at: str
    critical_count: int = 0
    high_count: int = 0
    critical_findings: list[str] = field(default_factory=list)
    high_findings: list[str] = field(default_factory=list)
    medium_findings: list[str] = field(default_factory=list)
    verdict: str = "UNKNOWN"

    @classmethod
    def from_dict(cls, payload: Any) -> SpecCheck:
        if not isinstance(payload, dict):
            raise ValueError("spec check must be an object")
        return cls(
            wave=_require_int(payload, "wave", 1, minimum=1),
            run_at=_require_str(payload, "run_at"),
            critical_count=_require_int(payload, "critical_count", 0),
            high_count=_require_int(payload, "high_count", 0),
            critical_findings=_str_list(payload, "critical_findings"),
            high_findings=_str_list(payload, "high_findings"),
            medium_findings=_str_list(payload, "medium_findings"),
            verdict=_choice(payload, "verdict", "UNKNOWN", SPEC_VERDICTS),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "wave": self.wave,
            "run_at": self.run_at,
            "critical_count": self.critical_count,
            "high_count": self.high_count,
            "critical_findings": list(self.critical_findings),
            "high_findings": list(self.high_findings),
            "medium_findings": list(self.medium_findings),
            "verdict": self.verdict,
        }


_GRAPH_KEYS = frozenset(
    {
        "title",
        "spec_file",
        "plan_file",
        "github_issue",
        "current_phase",
        "phase_artifacts",
        "skipped_phases",
        "current_wave",
        "tasks",
        "executing_tasks",
        "wave_gates",
        "spec_checks",
        "created_at",
        "updated_at",
    }
)


def _wave_keyed(payload: dict[str, Any], key: str) -> dict[int, Any]:
    raw = payload.get(key) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"'{key}' must be an object keyed by wave number")
    keyed: dict[int, Any] = {}
    for wave_key, value in raw.items():
        try:
            wave = int(wave_key)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"'{key}' has non-numeric wave key {wave_key!r}") from exc
        keyed[wave] = value
    return keyed


@dataclass(slots=True)
class TaskGraph:
    title: str = ""
    current_phase: str = "init"
    phase_artifacts: dict[str, str] = field(default_factory=dict)
    skipped_phases: list[str] = field(default_factory=list)
    spec_file: str = ""
    plan_file: str = ""
    current_wave: int = 1
    tasks: list[Task] = field(default_factory=list)
    executing_tasks: list[str] = field(default_factory=list)
    wave_gates: dict[int, WaveGate] = field(default_factory=dict)
    spec_checks: dict[int, SpecCheck] = field(default_factory=dict)
    github_issue: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any) -> TaskGraph:
        """Build a graph from its JSON form; raises ValueError on any schema violation."""
        if not isinstance(payload, dict):
            raise ValueError("task graph must be a JSON object")
        phase = _choice(payload, "current_phase", "init", frozenset(PHASE_ORDER))
        artifacts = payload.get("phase_artifacts") or {}
        if not isinstance(artifacts, dict):
            raise ValueError("'phase_artifacts' must be an object")
        skipped = _str_list(payload, "skipped_phases")
        unknown_phases = [
            name for name in [*artifacts.keys(), *skipped] if name not in PHASE_ORDER
        ]
        if unknown_phases:
            raise ValueError(f"unknown phase names: {', '.join(unknown_phases)}")
        raw_tasks = payload.get("tasks") or []
        if not isinstance(raw_tasks, list):
            raise ValueError("'tasks' must be a list")
        issue = payload.get("github_issue")
        if issue is not None and (isinstance(issue, bool) or not isinstance(issue, int)):
            raise ValueError("'github_issue' must be an integer")
        return cls(
            title=_require_str(payload, "title"),
            current_phase=phase,
            phase_artifacts={
                name: value for name, value in artifacts.items() if isinstance(value, str)
            },
            skipped_phases=skipped,
            spec_file=_require_str(payload, "spec_file"),
            plan_file=_require_str(payload, "plan_file"),
            current_wave=_require_int(payload, "current_wave", 1, minimum=1),
            tasks=[Task.from_dict(item) for item in raw_tasks],
            executing_tasks=_str_list(payload, "executing_tasks"),
            wave_gates={
                wave: WaveGate.from_dict(value)
                for wave, value in _wave_keyed(payload, "wave_gates").items()
            },
            spec_checks={
                wave: SpecCheck.from_dict(value)
                for wave, value in _wave_keyed(payload, "spec_checks").items()
            },
            github_issue=issue,
            created_at=_optional_str(payload, "created_at"),
            updated_at=_optional_str(payload, "updated_at"),
            extra={key: value for key, value in payload.items() if key not in _GRAPH_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "title": self.title,
                "spec_file": self.spec_file,
                "plan_file": self.plan_file,
                "current_phase": self.current_phase,
                "phase_artifacts": dict(self.phase_artifacts),
                "skipped_phases": list(self.skipped_phases),
                "current_wave": self.current_wave,
                "tasks": [task.to_dict() for task in self.tasks],
                "executing_tasks": list(self.executing_tasks),
                "wave_gates": {
                    str(wave): gate.to_dict() for wave, gate in sorted(self.wave_gates.items())
                },
            }
        )
        if self.spec_checks:
            payload["spec_checks"] = {
                str(wave): check.to_dict() for wave, check in sorted(self.spec_checks.items())
            }
        if self.github_issue is not None:
            payload["github_issue"] = self.github_issue
        if self.created_at:
            payload["created_at"] = self.created_at
        if self.updated_at:
            payload["updated_at"] = self.updated_at
        return payload

    def validate(self) -> None:
        """Check the structural invariants of a planned graph."""
        seen: dict[str, Task] = {}
        for task in self.tasks:
            if task.id in seen:
                raise ValueError(f"duplicate task id {task.id}")
            seen[task.id] = task
        for task in self.tasks:
            for dep_id in task.depends_on:
                dependency = seen.get(dep_id)
                if dependency is None:
                    raise ValueError(f"task {task.id} depends on unknown task {dep_id}")
                if dependency.wave > task.wave:
                    raise ValueError(
                        f"task {task.id} (wave {task.wave}) depends on {dep_id} "
                        f"from later wave {dependency.wave}"
                    )

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def tasks_in_wave(self, wave: int) -> list[Task]:
        return [task for task in self.tasks if task.wave == wave]

    def gate(self, wave: int) -> WaveGate:
        gate = self.wave_gates.get(wave)
        if gate is None:
            gate = WaveGate()
            self.wave_gates[wave] = gate
        return gate

    def max_wave(self) -> int:
        return max((task.wave for task in self.tasks), default=0)

    def check_dependencies(self, task_id: str) -> tuple[bool, list[str]]:
        task = self.task(task_id)
        if task is None:
            return False, [f"{task_id} (status: unknown task)"]
        unmet: list[str] = []
        for dep_id in task.depends_on:
            dependency = self.task(dep_id)
            if dependency is None:
                unmet.append(f"{dep_id} (status: missing)")
            elif dependency.status not in DONE_STATUSES:
                unmet.append(f"{dep_id} (status: {dependency.status})")
        return not unmet, unmet

    def artifact_recorded(self, phase: str) -> str | None:
        value = self.phase_artifacts.get(phase)
        return value or None

    def record_phase_advance(
        self,
        completed: str,
        next_phase: str,
        artifact: str,
        *,
        skip: tuple[str, ...] = (),
    ) -> bool:
        """Move from ``completed`` to ``next_phase``; a repeated signal is a no-op."""
        if self.current_phase != completed:
            return False
        self.phase_artifacts[completed] = artifact
        for phase in skip:
            if phase not in self.skipped_phases:
                self.skipped_phases.append(phase)
        if completed == "specify" and artifact != "completed":
            self.spec_file = artifact
        if completed == "architecture" and artifact != "completed":
            self.plan_file = artifact
        self.current_phase = next_phase
        return True

    def enter_phase(self, target: str) -> list[str]:
        """Move forward to ``target``, recording any bypassed phases as skipped."""
        current_index = PHASE_ORDER.index(self.current_phase)
        target_index = PHASE_ORDER.index(target)
        if target_index <= current_index:
            return []
        bypassed = list(PHASE_ORDER[current_index + 1 : target_index])
        for phase in bypassed:
            if phase not in self.skipped_phases:
                self.skipped_phases.append(phase)
        self.current_phase = target
        return bypassed

    def artifact_problem(self, phase: str, base_dir: Path) -> str | None:
        artifact = self.artifact_recorded(phase)
        if artifact is None:
            return f"{phase} phase artifact not recorded"
        if artifact == "completed":
            return None
        candidate = Path(artifact)
        if not candidate.is_absolute():
            candidate = base_dir / candidate
        if not candidate.exists():
            return f"{phase} artifact file not found: {artifact}"
        return None

    def advance_wave(self, from_wave: int) -> bool:
        if self.current_wave != from_wave or from_wave >= self.max_wave():
            return False
        self.current_wave = from_wave + 1
        self.wave_gates[self.current_wave] = WaveGate()
        return True

    def mark_executing(self, task_id: str) -> None:
        if task_id not in self.executing_tasks:
            self.executing_tasks.append(task_id)

    def unmark_executing(self, task_id: str) -> None:
        self.executing_tasks = [item for item in self.executing_tasks if item != task_id]


@dataclass(slots=True, frozen=True)
class Decision:
    """Outcome of a gating check; a block always carries the reason shown to the host."""

    allowed: bool
    reason: str = ""

    @classmethod
    def allow(cls, reason: str = "") -> Decision:
        return cls(True, reason)

    @classmethod
    def block(cls, reason: str) -> Decision:
        return cls(False, reason)
