"""Execution engines that drive agent runs."""
from __future__ import annotations

from claudekeeper.engine.providers.base import (
    EngineRequest,
    ExecutionEngine,
    PermissionCallback,
    extract_session_id,
)
from claudekeeper.engine.providers.claude_provider import ClaudeEngine

__all__ = [
    "ClaudeEngine",
    "EngineRequest",
    "ExecutionEngine",
    "PermissionCallback",
    "extract_session_id",
]
