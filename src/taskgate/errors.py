from __future__ import annotations


class TaskGateError(RuntimeError):
    """Base class for orchestration failures."""


class StateError(TaskGateError):
    """Raised when task-graph state operations fail."""


class LockAcquisitionError(StateError):
    """Raised when the state lock cannot be acquired within the retry budget."""


class ConfigError(TaskGateError):
    """Raised for invalid configuration files or environment overrides."""


class EventParseError(TaskGateError):
    """Raised when a hook payload is not a JSON object."""
