"""Run orchestration and attention rendezvous.

Usage:
    registry = AttentionRegistry(publish=broadcaster.publish)
    correlator = RunCorrelator(ClaudeEngine(), registry, RunSupervisorTable(),
                               broadcaster.publish)
    correlator.launch_run(make_temp_run_id(), "Fix the tests", "/path/to/repo")
"""
from .models import (
    AttentionItem,
    AttentionKind,
    PermissionDecision,
    PermissionMode,
    Resolution,
    RunPhase,
    SessionSummary,
    make_temp_run_id,
)
from .config import KeeperConfig
from .supervisor import CancellationHandle, RunState, RunSupervisorTable
from .errors import (
    AttentionNotFoundError,
    ConfigError,
    DuplicateAwaiterError,
    EngineUnavailableError,
    KeeperError,
    RunCancelledError,
)

__all__ = [
    # Core (lazy import to avoid circular deps with adapters.events)
    "AttentionRegistry",
    "RunCorrelator",
    # Models
    "AttentionItem",
    "AttentionKind",
    "PermissionDecision",
    "PermissionMode",
    "Resolution",
    "RunPhase",
    "SessionSummary",
    "make_temp_run_id",
    # Config
    "KeeperConfig",
    # Run table
    "CancellationHandle",
    "RunState",
    "RunSupervisorTable",
    # Engines (lazy import)
    "ClaudeEngine",
    # Errors
    "AttentionNotFoundError",
    "ConfigError",
    "DuplicateAwaiterError",
    "EngineUnavailableError",
    "KeeperError",
    "RunCancelledError",
]


def __getattr__(name: str):
    if name == "AttentionRegistry":
        from .attention import AttentionRegistry
        return AttentionRegistry
    if name == "RunCorrelator":
        from .correlator import RunCorrelator
        return RunCorrelator
    if name == "ClaudeEngine":
        from .providers.claude_provider import ClaudeEngine
        return ClaudeEngine
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
