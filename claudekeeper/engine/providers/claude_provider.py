"""Claude Agent SDK engine.

Wraps claude_agent_sdk.query() for interactive runs. The SDK only
honours ``can_use_tool`` in streaming-input mode, so the prompt is
sent as a one-message async iterable.
"""
from __future__ import annotations

import dataclasses
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Any, AsyncIterator

from claudekeeper.engine.errors import EngineUnavailableError, RunCancelledError
from claudekeeper.engine.models import DEFAULT_DENY_MESSAGE, PermissionDecision
from claudekeeper.engine.providers.base import (
    EngineRequest,
    ExecutionEngine,
    PermissionCallback,
    extract_session_id,
)

logger = logging.getLogger(__name__)

_MESSAGE_TYPES = {
    "UserMessage": "user",
    "AssistantMessage": "assistant",
    "SystemMessage": "system",
    "ResultMessage": "result",
    "StreamEvent": "stream_event",
}


def find_claude_executable() -> str | None:
    """Locate the Claude CLI; None lets the SDK use its bundled binary."""
    configured = os.getenv("CLAUDE_CODE_PATH", "").strip()
    if configured and Path(configured).exists():
        return configured
    native = Path.home() / ".local" / "bin" / "claude"
    if native.exists():
        return str(native)
    return shutil.which("claude")


def message_to_dict(message: Any) -> dict[str, Any]:
    """Convert an SDK message into a JSON-able dict with a ``type`` tag."""
    if isinstance(message, dict):
        data = dict(message)
    elif dataclasses.is_dataclass(message) and not isinstance(message, type):
        data = dataclasses.asdict(message)
        data["type"] = _MESSAGE_TYPES.get(
            type(message).__name__, type(message).__name__.lower(),
        )
    else:
        data = {"type": type(message).__name__.lower(), "text": str(message)}
    session_id = extract_session_id(data)
    if session_id:
        data["session_id"] = session_id
    return data


def to_sdk_result(decision: PermissionDecision) -> Any:
    """Map a PermissionDecision onto the SDK's permission result types."""
    from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

    if decision.allowed:
        return PermissionResultAllow(updated_input=decision.updated_input)
    return PermissionResultDeny(
        message=decision.message or DEFAULT_DENY_MESSAGE,
        interrupt=decision.interrupt,
    )


def _sdk_permission_callback(callback: PermissionCallback):
    """Adapt our callback to the SDK's can_use_tool signature."""

    async def can_use_tool(tool_name: str, tool_input: dict, context: Any) -> Any:
        tool_use_id = (
            getattr(context, "tool_use_id", None)
            or f"toolu_{uuid.uuid4().hex[:24]}"
        )
        decision = await callback(
            tool_name,
            tool_input,
            {
                "tool_use_id": tool_use_id,
                "suggestions": getattr(context, "suggestions", None) or [],
            },
        )
        return to_sdk_result(decision)

    return can_use_tool


async def _prompt_stream(prompt: str) -> AsyncIterator[dict[str, Any]]:
    yield {
        "type": "user",
        "message": {"role": "user", "content": prompt},
        "parent_tool_use_id": None,
    }


class ClaudeEngine(ExecutionEngine):
    """Engine backed by the Claude Agent SDK."""

    def __init__(
        self,
        cli_path: str | None = None,
        include_partial_messages: bool = True,
    ) -> None:
        self._cli_path = cli_path or find_claude_executable()
        self._include_partial_messages = include_partial_messages

    @property
    def name(self) -> str:
        return "claude"

    def is_available(self) -> bool:
        try:
            import claude_agent_sdk  # noqa: F401
        except ImportError:
            return False
        return True

    async def run(self, request: EngineRequest) -> AsyncIterator[dict[str, Any]]:
        try:
            from claude_agent_sdk import ClaudeAgentOptions, query
        except ImportError as exc:
            raise EngineUnavailableError("claude_agent_sdk not installed") from exc

        options_kwargs: dict[str, Any] = dict(
            cwd=request.cwd,
            can_use_tool=_sdk_permission_callback(request.can_use_tool),
            include_partial_messages=self._include_partial_messages,
        )
        if request.resume:
            options_kwargs["resume"] = request.resume
        if request.permission_mode is not None:
            options_kwargs["permission_mode"] = request.permission_mode.value
        if self._cli_path:
            options_kwargs["cli_path"] = self._cli_path

        logger.info(
            "Claude run starting cwd=%s resume=%s mode=%s cli=%s",
            request.cwd,
            request.resume,
            request.permission_mode.value if request.permission_mode else "<default>",
            self._cli_path or "<sdk bundled>",
        )
        options = ClaudeAgentOptions(**options_kwargs)
        async for message in query(prompt=_prompt_stream(request.prompt), options=options):
            if request.cancellation.cancelled:
                raise RunCancelledError(request.cancellation.reason or "aborted by user")
            yield message_to_dict(message)
