"""Core data models for run orchestration and attention handling.

All dataclasses, enums, and small helpers shared by the registry,
the supervisor table and the correlator. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class AttentionKind(str, Enum):
    """Why a run needs a human to look at it."""
    PERMISSION = "permission"
    ERROR = "error"
    COMPLETION = "completion"


class PermissionMode(str, Enum):
    """Maps to claude_agent_sdk permission modes."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"


class RunPhase(str, Enum):
    """Run lifecycle. Permission waits happen inside STREAMING."""
    LAUNCHING = "launching"
    STREAMING = "streaming"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    ERRORED = "errored"


class ProcessState(str, Enum):
    """Process state reported through session:updated."""
    RUNNING = "running"
    AWAITING_FEEDBACK = "awaiting_feedback"


BEHAVIOR_ALLOW = "allow"
BEHAVIOR_DENY = "deny"
BEHAVIOR_ALLOW_ALWAYS = "allow_always"

DEFAULT_DENY_MESSAGE = "Denied by user"

_BEHAVIOR_ALIASES = {
    "allowAlways": BEHAVIOR_ALLOW_ALWAYS,
    "allow-always": BEHAVIOR_ALLOW_ALWAYS,
}


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_attention_id() -> str:
    return "attn_" + secrets.token_hex(8)


def make_temp_run_id() -> str:
    """Provisional run id used until the engine reports the real one."""
    return f"pending_{int(time.time() * 1000)}_{secrets.token_hex(2)}"


def normalize_behavior(behavior: str) -> str:
    return _BEHAVIOR_ALIASES.get(behavior, behavior)


@dataclass
class AttentionItem:
    """One pending decision point or terminal status for a run.

    ``run_id`` is the effective run id at creation time and is never
    rewritten after the run's identity swap.
    """
    run_id: str
    kind: AttentionKind
    id: str = field(default_factory=make_attention_id)
    tool_name: str | None = None
    tool_input: Any = None
    tool_use_id: str | None = None
    message: str | None = None
    created_at: str = field(default_factory=utcnow_iso)

    @property
    def summary(self) -> str:
        if self.kind == AttentionKind.PERMISSION:
            return f"Permission requested for {self.tool_name}"
        if self.kind == AttentionKind.ERROR:
            return f"Error: {self.message}"
        return self.message or ""

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "session_id": self.run_id,
            "type": self.kind.value,
            "summary": self.summary,
            "created_at": self.created_at,
        }
        if self.kind == AttentionKind.PERMISSION:
            d["tool_name"] = self.tool_name
            d["tool_input"] = self.tool_input
            d["tool_use_id"] = self.tool_use_id
        else:
            d["message"] = self.message
        return d


def permission_attention(
    run_id: str, tool_name: str, tool_input: Any, tool_use_id: str,
) -> AttentionItem:
    return AttentionItem(
        run_id=run_id,
        kind=AttentionKind.PERMISSION,
        tool_name=tool_name,
        tool_input=tool_input,
        tool_use_id=tool_use_id,
    )


def completion_attention(run_id: str, message: str = "Query completed") -> AttentionItem:
    return AttentionItem(run_id=run_id, kind=AttentionKind.COMPLETION, message=message)


def error_attention(run_id: str, error: str) -> AttentionItem:
    return AttentionItem(run_id=run_id, kind=AttentionKind.ERROR, message=error)


@dataclass
class Resolution:
    """Decision supplied by the operator. Consumed once."""
    behavior: str
    message: str | None = None

    def __post_init__(self) -> None:
        self.behavior = normalize_behavior(self.behavior)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Resolution:
        # Any input the client sends back is deliberately ignored.
        behavior = data.get("behavior") or BEHAVIOR_DENY
        message = data.get("message")
        return cls(
            behavior=str(behavior),
            message=str(message) if message is not None else None,
        )


@dataclass
class PermissionDecision:
    """Engine-facing answer to a permission callback."""
    behavior: str
    tool_use_id: str | None = None
    updated_input: Any = None
    message: str | None = None
    interrupt: bool = False

    @property
    def allowed(self) -> bool:
        return self.behavior in (BEHAVIOR_ALLOW, BEHAVIOR_ALLOW_ALWAYS)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"behavior": self.behavior, "tool_use_id": self.tool_use_id}
        if self.allowed:
            d["updated_input"] = self.updated_input
        else:
            d["message"] = self.message
            if self.interrupt:
                d["interrupt"] = True
        return d


def decision_for(item: AttentionItem, resolution: Resolution) -> PermissionDecision:
    """Build the engine payload for a resolved permission item.

    Allow decisions always echo the tool input captured at enqueue time.
    """
    if resolution.behavior in (BEHAVIOR_ALLOW, BEHAVIOR_ALLOW_ALWAYS):
        return PermissionDecision(
            behavior=resolution.behavior,
            tool_use_id=item.tool_use_id,
            updated_input=item.tool_input,
        )
    if resolution.behavior == BEHAVIOR_DENY:
        return PermissionDecision(
            behavior=BEHAVIOR_DENY,
            tool_use_id=item.tool_use_id,
            message=resolution.message or DEFAULT_DENY_MESSAGE,
        )
    return PermissionDecision(
        behavior=resolution.behavior,
        tool_use_id=item.tool_use_id,
        message=resolution.message,
    )


@dataclass
class InteractionRecord:
    """Durable audit row for one resolved attention item."""
    id: str
    kind: AttentionKind
    resolution: str
    resolved_at: str = field(default_factory=utcnow_iso)
    tool_name: str | None = None
    tool_input: Any = None
    message: str | None = None

    @classmethod
    def from_attention(cls, item: AttentionItem, resolution: Resolution) -> InteractionRecord:
        return cls(
            id=item.id,
            kind=item.kind,
            resolution=resolution.behavior,
            tool_name=item.tool_name,
            tool_input=item.tool_input,
            message=resolution.message,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "type": self.kind.value,
            "resolution": self.resolution,
            "resolved_at": self.resolved_at,
        }
        if self.tool_name is not None:
            d["tool_name"] = self.tool_name
            d["tool_input"] = self.tool_input
        if self.message is not None:
            d["message"] = self.message
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InteractionRecord:
        return cls(
            id=data["id"],
            kind=AttentionKind(data.get("type", AttentionKind.PERMISSION.value)),
            resolution=data.get("resolution", ""),
            resolved_at=data.get("resolved_at", ""),
            tool_name=data.get("tool_name"),
            tool_input=data.get("tool_input"),
            message=data.get("message"),
        )


@dataclass
class SessionSummary:
    """Transcript-derived summary of one agent session."""
    id: str
    workdir: str
    first_prompt: str
    message_count: int = 0
    created: str = ""
    modified: str = ""
    git_branch: str | None = None

    @classmethod
    def placeholder(cls, session_id: str, workdir: str, prompt: str) -> SessionSummary:
        """Stand-in used while the transcript is not yet on disk."""
        now = utcnow_iso()
        return cls(
            id=session_id,
            workdir=workdir,
            first_prompt=prompt[:200],
            message_count=0,
            created=now,
            modified=now,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "workdir": self.workdir,
            "first_prompt": self.first_prompt,
            "message_count": self.message_count,
            "created": self.created,
            "modified": self.modified,
        }
        if self.git_branch:
            d["git_branch"] = self.git_branch
        return d
