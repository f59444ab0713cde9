"""Adapters package - Bridge between the engine and connected clients.

This package contains the event types, the broadcaster that fans them
out to SSE/WebSocket subscribers, and the allow-always permission store.
"""
from __future__ import annotations

__all__ = [
    "EventBroadcaster",
    "KeeperEvent",
    "event_to_dict",
    "PermissionStore",
]

from claudekeeper.adapters.event_bus import EventBroadcaster
from claudekeeper.adapters.events import KeeperEvent, event_to_dict
from claudekeeper.adapters.permission_store import PermissionStore
