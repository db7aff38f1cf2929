from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from taskgate.classify import (
    count_markers,
    find_artifact_path,
    is_exempt_role,
    is_generic_role,
    phase_for_role,
    phase_from_prompt,
)
from taskgate.models import PHASE_ORDER, Decision, TaskGraph
from taskgate.state.store import TaskGraphStore

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "init": ("brainstorm", "specify"),
    "brainstorm": ("specify",),
    "specify": ("clarify", "architecture"),
    "clarify": ("architecture",),
    "architecture": ("decompose",),
    "decompose": ("execute",),
    "execute": ("execute",),
}
ARTIFACT_PREREQUISITES: dict[str, str] = {
    "clarify": "specify",
    "architecture": "specify",
    "decompose": "architecture",
    "execute": "architecture",
}


def next_phase(current: str, skipped: Sequence[str] = ()) -> str:
    index = PHASE_ORDER.index(current)
    for candidate in PHASE_ORDER[index + 1 :]:
        if candidate not in skipped:
            return candidate
    return "execute"


def is_valid_transition(current: str, target: str) -> bool:
    return target == current or target in VALID_TRANSITIONS.get(current, ())


def is_reachable(graph: TaskGraph, target: str) -> bool:
    """A valid direct transition, or one whose intervening phases were all skipped."""
    current = graph.current_phase
    if is_valid_transition(current, target):
        return True
    current_index = PHASE_ORDER.index(current)
    target_index = PHASE_ORDER.index(target)
    if target_index <= current_index:
        return False
    between = PHASE_ORDER[current_index + 1 : target_index]
    return all(phase in graph.skipped_phases for phase in between)


@dataclass(slots=True)
class PhaseAdvance:
    completed: str
    new_phase: str
    artifact: str
    clarify_skipped: bool = False


class PhaseStateMachine:
    def __init__(
        self,
        store: TaskGraphStore,
        project_dir: Path,
        *,
        clarify_marker: str = "[NEEDS CLARIFICATION]",
        clarify_threshold: int = 3,
    ) -> None:
        self.store = store
        self.project_dir = project_dir
        self.clarify_marker = clarify_marker
        self.clarify_threshold = clarify_threshold

    def target_phase(self, role: str | None, prompt: str = "") -> str | None:
        phase = phase_for_role(role)
        if phase is None and is_generic_role(role):
            phase = phase_from_prompt(prompt)
        return phase

    def validate_start(self, graph: TaskGraph, role: str | None, prompt: str = "") -> Decision:
        if is_exempt_role(role):
            return Decision.allow(f"{role} is allowed in every phase")
        current = graph.current_phase
        target = self.target_phase(role, prompt)
        if target is None:
            if current == "execute":
                return Decision.allow()
            return Decision.block(
                f"BLOCKED: Unknown worker role '{role or 'unspecified'}' cannot start during the "
                f"{current} phase. Use a role mapped to the {current} phase."
            )
        if target in graph.skipped_phases and target != current:
            return Decision.block(
                f"BLOCKED: The {target} phase was skipped; '{role}' cannot start now "
                f"(current phase: {current})."
            )
        if not is_reachable(graph, target):
            allowed = ", ".join(VALID_TRANSITIONS.get(current, ()))
            return Decision.block(
                f"BLOCKED: Phase order violation. Current phase is '{current}' but '{role}' "
                f"belongs to '{target}'. Allowed next phases: {allowed}."
            )
        required = ARTIFACT_PREREQUISITES.get(target)
        if required is not None and required not in graph.skipped_phases:
            problem = graph.artifact_problem(required, self.project_dir)
            if problem is not None:
                return Decision.block(
                    f"BLOCKED: Cannot enter {target} phase - missing prerequisite. "
                    f"Required: {problem}"
                )
        return Decision.allow(target)

    def authorize_start(self, role: str | None, prompt: str = "") -> Decision:
        """Validate a worker start and, when allowed, move the graph into its phase."""

        def _mutate(graph: TaskGraph) -> Decision:
            decision = self.validate_start(graph, role, prompt)
            target = self.target_phase(role, prompt)
            if decision.allowed and target is not None and not is_exempt_role(role):
                bypassed = graph.enter_phase(target)
                if bypassed:
                    logger.info("Entered %s phase, skipping %s", target, ", ".join(bypassed))
            return decision

        decision = self.store.with_lock(_mutate)
        return decision if decision is not None else Decision.allow()

    def _discover_artifact(self, content: str, files_modified: Sequence[str]) -> str:
        found = find_artifact_path(content)
        if found:
            return found
        markdown = [path for path in files_modified if path.endswith(".md")]
        if markdown:
            return markdown[-1]
        return "completed"

    def _clarification_markers(self, artifact: str, content: str) -> int:
        if artifact != "completed":
            candidate = Path(artifact)
            if not candidate.is_absolute():
                candidate = self.project_dir / candidate
            try:
                return count_markers(candidate.read_text(encoding="utf-8"), self.clarify_marker)
            except OSError:
                logger.debug("Specification %s unreadable, counting markers in transcript", artifact)
        return count_markers(content, self.clarify_marker)

    def complete(
        self,
        role: str | None,
        content: str = "",
        files_modified: Sequence[str] = (),
        artifact: str | None = None,
    ) -> PhaseAdvance | None:
        """Advance the phase owned by a finishing worker's explicit role.

        Repeated completion signals for a phase that already advanced are
        ignored, so the document stays unchanged.
        """
        completed = phase_for_role(role)
        if completed is None or completed == "execute":
            return None
        graph = self.store.load()
        if graph is None or graph.current_phase != completed:
            return None

        artifact = artifact or self._discover_artifact(content, files_modified)
        skip: tuple[str, ...] = ()
        upcoming = next_phase(completed, graph.skipped_phases)
        if completed == "specify":
            markers = self._clarification_markers(artifact, content)
            if markers <= self.clarify_threshold:
                upcoming = "architecture"
                skip = ("clarify",)
            else:
                upcoming = "clarify"
            logger.info(
                "Specification has %d clarification markers (threshold %d)",
                markers,
                self.clarify_threshold,
            )

        if not self.store.advance_phase(completed, upcoming, artifact, skip=skip):
            return None
        return PhaseAdvance(completed, upcoming, artifact, clarify_skipped=bool(skip))
