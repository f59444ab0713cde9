"""Event types published to subscribers.

Closed set: one dataclass per event name. Producers build these,
the broadcaster fans them out, and the transport serializes them
with ``event_to_dict`` just before they hit the wire.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from claudekeeper.engine.models import (
    AttentionItem,
    InteractionRecord,
    SessionSummary,
)


@dataclass
class KeeperEvent:
    """Base event."""
    event_type: str = ""


@dataclass
class SessionCreated(KeeperEvent):
    """The engine assigned a real session id to a provisional run."""
    event_type: str = "session:created"
    session: SessionSummary | None = None
    temp_id: str = ""


@dataclass
class SessionMessage(KeeperEvent):
    event_type: str = "session:message"
    session_id: str = ""
    message: Any = None


@dataclass
class SessionUpdated(KeeperEvent):
    event_type: str = "session:updated"
    session_id: str = ""
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionEnded(KeeperEvent):
    event_type: str = "session:ended"
    session_id: str = ""
    reason: str = "completed"  # "completed", "interrupted", "deleted"


@dataclass
class AttentionRequested(KeeperEvent):
    event_type: str = "attention:requested"
    attention: AttentionItem | None = None


@dataclass
class AttentionResolved(KeeperEvent):
    event_type: str = "attention:resolved"
    attention_id: str = ""


@dataclass
class InteractionResolved(KeeperEvent):
    event_type: str = "interaction:resolved"
    session_id: str = ""
    interaction: InteractionRecord | None = None


EVENT_TYPES: dict[str, type[KeeperEvent]] = {
    "session:created": SessionCreated,
    "session:message": SessionMessage,
    "session:updated": SessionUpdated,
    "session:ended": SessionEnded,
    "attention:requested": AttentionRequested,
    "attention:resolved": AttentionResolved,
    "interaction:resolved": InteractionResolved,
}


def event_to_dict(event: KeeperEvent) -> dict[str, Any]:
    """Convert a typed event to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for name in event.__dataclass_fields__:
        val = getattr(event, name)
        if val is None:
            continue
        if hasattr(val, "to_dict"):
            val = val.to_dict()
        d[name] = val
    # Wire format uses "type" for the event name
    d["type"] = d.pop("event_type")
    return d
