"""Abstract base for agent execution engines.

An engine takes a prompt and a working directory, streams run events
as plain dicts, and calls the supplied permission callback before
every privileged tool use, awaiting its answer before it proceeds.
"""
from __future__ import annotations

import abc
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, AsyncIterator

from claudekeeper.engine.models import PermissionDecision, PermissionMode
from claudekeeper.engine.supervisor import CancellationHandle

logger = logging.getLogger(__name__)


# Signature: async def can_use_tool(tool_name, tool_input, context) -> PermissionDecision
# context carries at least {"tool_use_id": str}
PermissionCallback = Callable[[str, Any, dict[str, Any]], Awaitable[PermissionDecision]]


@dataclass
class EngineRequest:
    """Everything an engine needs to start one run."""
    prompt: str
    cwd: str
    can_use_tool: PermissionCallback
    cancellation: CancellationHandle
    resume: str | None = None
    permission_mode: PermissionMode | None = None


class ExecutionEngine(abc.ABC):
    """Abstract engine interface.

    Implementations must:
    - yield messages in the order they are produced
    - include ``session_id`` in messages once the real id is known
    - forward the callback's return value to the agent runtime
    - stop promptly once ``request.cancellation`` is cancelled
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short engine name (e.g. 'claude')."""

    @abc.abstractmethod
    def run(self, request: EngineRequest) -> AsyncIterator[dict[str, Any]]:
        """Start a run and stream its messages."""

    def is_available(self) -> bool:
        return True


def extract_session_id(message: Any) -> str | None:
    """Return the real session id carried by a run message, if any."""
    if not isinstance(message, dict):
        return getattr(message, "session_id", None) or None
    session_id = message.get("session_id") or message.get("sessionId")
    if session_id:
        return str(session_id)
    data = message.get("data")
    if isinstance(data, dict) and data.get("session_id"):
        return str(data["session_id"])
    return None
