from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from taskgate.classify import (
    extract_task_id,
    is_exempt_role,
    is_implementation_role,
    is_review_role,
    is_spec_check_role,
    normalize_role,
    phase_for_role,
)
from taskgate.config import TaskGateConfig
from taskgate.errors import StateError
from taskgate.events import HookEvent, SessionStart, ToolUse, WorkerStart, WorkerStop, parse_event
from taskgate.evidence import collect_diff, current_head
from taskgate.execution import TaskExecutionTracker
from taskgate.guards import StateFileGuard, check_direct_edit
from taskgate.models import Decision, TaskGraph
from taskgate.phases import PhaseStateMachine
from taskgate.state.session import SessionResolver
from taskgate.state.store import TaskGraphStore
from taskgate.state.tracking import TransientTracker, payload_hash
from taskgate.transcript import extract_content, extract_files_modified, read_transcript
from taskgate.waves import WaveGateEvaluator

logger = logging.getLogger(__name__)

SPAWN_TOOLS = frozenset({"Task", "Agent"})
SKILL_TOOLS = frozenset({"Skill"})
WAVE_GATE_SKILL = "wave-gate"


def _input_text(tool_input: dict, *keys: str) -> str:
    for key in keys:
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


class LifecycleHandlers:
    """Host callbacks; each call resolves the session's document and gates or mutates it."""

    def __init__(
        self,
        config: TaskGateConfig,
        *,
        resolver: SessionResolver | None = None,
        tracker: TransientTracker | None = None,
        head_provider: Callable[[Path], str | None] = current_head,
        diff_provider: Callable[[Path, str | None], str] = collect_diff,
    ) -> None:
        self.config = config
        session_dir = Path(config.state.session_dir)
        self.resolver = resolver or SessionResolver(
            session_dir,
            state_dir=config.state.state_dir,
            document_name=config.state.document_name,
        )
        self.tracker = tracker or TransientTracker(session_dir / "tracking")
        self._head_provider = head_provider
        self._diff_provider = diff_provider

    def _store_for(self, session_id: str, cwd: Path) -> TaskGraphStore | None:
        document = self.resolver.resolve(session_id, cwd)
        if document is None:
            return None
        return TaskGraphStore.at(document, self.config)

    def _project_dir(self, store: TaskGraphStore) -> Path:
        depth = len(Path(self.config.state.state_dir).parts)
        try:
            return store.document_path.parents[depth]
        except IndexError:
            return store.document_path.parent

    def _machine(self, store: TaskGraphStore) -> PhaseStateMachine:
        return PhaseStateMachine(
            store,
            self._project_dir(store),
            clarify_marker=self.config.phases.clarify_marker,
            clarify_threshold=self.config.phases.clarify_marker_threshold,
        )

    def _executions(self, store: TaskGraphStore) -> TaskExecutionTracker:
        return TaskExecutionTracker(
            store,
            self._project_dir(store),
            head_provider=self._head_provider,
            diff_provider=self._diff_provider,
        )

    def handle(self, name: str, raw: str, *, default_cwd: Path | None = None) -> Decision:
        event = parse_event(name, raw, default_cwd=default_cwd)
        if event is None:
            return Decision.allow()
        # Only completion signals are deduplicated; gating is recomputed on every call.
        if not isinstance(event, WorkerStop):
            return self.dispatch(event)
        key = payload_hash(f"{name}\n{raw}")
        if self.tracker.seen_recently(key, self.config.tracking.replay_window_seconds):
            logger.debug("Duplicate %s event ignored", name)
            return Decision.allow("duplicate event ignored")
        try:
            return self.dispatch(event)
        except StateError:
            # A failed completion must stay retryable.
            self.tracker.forget(key)
            raise

    def dispatch(self, event: HookEvent) -> Decision:
        if isinstance(event, SessionStart):
            return self.session_start(event)
        if isinstance(event, ToolUse):
            return self.pre_tool_use(event)
        if isinstance(event, WorkerStart):
            return self.worker_start(event)
        if isinstance(event, WorkerStop):
            return self.worker_stop(event)
        return Decision.allow()

    def session_start(self, event: SessionStart) -> Decision:
        self.tracker.cleanup(self.config.tracking.stale_minutes * 60)
        return Decision.allow()

    def pre_tool_use(self, event: ToolUse) -> Decision:
        store = self._store_for(event.session_id, event.cwd)
        project_dir = self._project_dir(store) if store is not None else event.cwd
        guard = StateFileGuard(project_dir, self.config.state.state_dir)
        decision = guard.check(event.tool_name, event.tool_input)
        if not decision.allowed or store is None:
            return decision
        graph = store.load()
        if graph is None:
            return Decision.allow()

        decision = check_direct_edit(
            event.tool_name,
            event.tool_input,
            from_worker=event.from_worker,
            phase=graph.current_phase,
        )
        if not decision.allowed:
            return decision
        if event.tool_name in SPAWN_TOOLS:
            return self._authorize_worker(event, store, graph)
        if event.tool_name in SKILL_TOOLS:
            return self._authorize_skill(event, store)
        return Decision.allow()

    def _authorize_worker(self, event: ToolUse, store: TaskGraphStore, graph: TaskGraph) -> Decision:
        role = _input_text(event.tool_input, "subagent_type", "agent_type")
        prompt = _input_text(event.tool_input, "prompt")
        description = _input_text(event.tool_input, "description")
        machine = self._machine(store)
        decision = machine.authorize_start(role, prompt)
        if not decision.allowed:
            return decision
        self.resolver.register(event.session_id, store.document_path)

        target = machine.target_phase(role, prompt) or graph.current_phase
        if target != "execute" or is_review_role(role) or is_exempt_role(role):
            return decision
        task_id = extract_task_id(f"{prompt}\n{description}")
        if task_id is None:
            return decision
        return self._executions(store).start(task_id)

    def _authorize_skill(self, event: ToolUse, store: TaskGraphStore) -> Decision:
        skill = _input_text(event.tool_input, "skill", "command", "name")
        decision = self._machine(store).authorize_start(skill)
        if not decision.allowed or normalize_role(skill) != WAVE_GATE_SKILL:
            return decision
        result = WaveGateEvaluator(store).complete_wave()
        if result is None:
            return Decision.allow()
        if result.blocked:
            return Decision.block(result.message())
        return Decision.allow(result.message())

    def worker_start(self, event: WorkerStart) -> Decision:
        store = self._store_for(event.session_id, event.cwd)
        if store is not None:
            self.resolver.register(event.session_id, store.document_path)
        self.tracker.mark_worker(event.session_id, event.agent_id)
        return Decision.allow()

    def worker_stop(self, event: WorkerStop) -> Decision:
        self.tracker.clear_worker(event.session_id, event.agent_id)
        store = self._store_for(event.session_id, event.cwd)
        if store is None:
            return Decision.allow()

        records = read_transcript(event.transcript_path)
        content = extract_content(records)
        spoken = extract_content(records, speaker="assistant")
        role = event.agent_type
        advance = self._machine(store).complete(role, spoken or content, extract_files_modified(records))
        if advance is not None:
            return Decision.allow(f"Phase advanced to {advance.new_phase}")

        graph = store.load()
        if graph is None or graph.current_phase != "execute":
            return Decision.allow()
        executions = self._executions(store)
        task_id = event.task_id or extract_task_id(content)
        if is_spec_check_role(role):
            executions.record_spec_check(spoken)
        elif is_review_role(role):
            executions.record_review(task_id, spoken)
        elif is_implementation_role(role) or phase_for_role(role) == "execute":
            if task_id is None:
                executions.detect_crash()
            else:
                executions.record_completion(task_id, records)
        return Decision.allow()
