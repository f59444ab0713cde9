"""Exception hierarchy for the keeper engine.

Specific exceptions for each failure mode. Transport code maps
them to HTTP statuses; the correlator maps them to run events.
"""
from __future__ import annotations


class KeeperError(Exception):
    """Base exception for all keeper errors."""


class AttentionNotFoundError(KeeperError):
    """No pending attention item with this id."""
    def __init__(self, attention_id: str):
        self.attention_id = attention_id
        super().__init__(f"Attention item not found: {attention_id}")


class DuplicateAwaiterError(KeeperError):
    """A second task tried to wait on an already-claimed attention item."""
    def __init__(self, attention_id: str):
        self.attention_id = attention_id
        super().__init__(
            f"Attention item {attention_id} already has a waiting task"
        )


class RunCancelledError(KeeperError):
    """The run was cancelled by the caller (abort)."""
    def __init__(self, reason: str = "aborted by user"):
        self.reason = reason
        super().__init__(f"Run aborted: {reason}")


class EngineUnavailableError(KeeperError):
    """The agent execution engine cannot be started."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Execution engine unavailable: {reason}")


class ConfigError(KeeperError):
    """Configuration file could not be read or parsed."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid config {path}: {reason}")
