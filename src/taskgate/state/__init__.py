from taskgate.state.lock import LockManager
from taskgate.state.session import SessionResolver
from taskgate.state.store import TaskGraphStore
from taskgate.state.tracking import TransientTracker

__all__ = ["LockManager", "SessionResolver", "TaskGraphStore", "TransientTracker"]
