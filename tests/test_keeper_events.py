"""Tests for event serialization and the broadcaster."""
from __future__ import annotations

import asyncio
import json

import pytest

from claudekeeper.adapters.event_bus import EventBroadcaster
from claudekeeper.adapters.events import (
    AttentionRequested,
    EVENT_TYPES,
    SessionCreated,
    SessionEnded,
    SessionMessage,
    event_to_dict,
)
from claudekeeper.engine.models import SessionSummary, permission_attention


def test_event_types_cover_wire_names() -> None:
    assert set(EVENT_TYPES) == {
        "session:created",
        "session:message",
        "session:updated",
        "session:ended",
        "attention:requested",
        "attention:resolved",
        "interaction:resolved",
    }
    for name, cls in EVENT_TYPES.items():
        assert cls().event_type == name


def test_session_created_serializes_nested_summary() -> None:
    summary = SessionSummary(id="abc", workdir="/w", first_prompt="hi", created="t0", modified="t1")
    d = event_to_dict(SessionCreated(session=summary, temp_id="pending_1"))

    assert d["type"] == "session:created"
    assert d["temp_id"] == "pending_1"
    assert d["session"]["id"] == "abc"
    assert "event_type" not in d
    json.dumps(d)


def test_attention_requested_serializes_item() -> None:
    item = permission_attention("abc", "Bash", {"command": "ls"}, "toolu_1")
    d = event_to_dict(AttentionRequested(attention=item))

    assert d["attention"]["session_id"] == "abc"
    assert d["attention"]["type"] == "permission"
    assert d["attention"]["summary"] == "Permission requested for Bash"
    assert d["attention"]["tool_input"] == {"command": "ls"}


def test_none_fields_are_omitted() -> None:
    d = event_to_dict(SessionMessage(session_id="abc"))
    assert d == {"type": "session:message", "session_id": "abc"}


@pytest.mark.asyncio
async def test_publish_reaches_every_subscriber() -> None:
    bus = EventBroadcaster()
    q1 = bus.subscribe()
    q2 = bus.subscribe()

    bus.publish(SessionEnded(session_id="abc"))

    assert (await q1.get()).session_id == "abc"
    assert (await q2.get()).session_id == "abc"
    bus.unsubscribe(q1)
    bus.unsubscribe(q1)
    assert bus.subscriber_count == 1


@pytest.mark.asyncio
async def test_full_queue_drops_instead_of_blocking() -> None:
    bus = EventBroadcaster(maxsize=1)
    slow = bus.subscribe()
    fast = bus.subscribe()

    bus.publish(SessionEnded(session_id="one"))
    fast.get_nowait()
    bus.publish(SessionEnded(session_id="two"))

    assert slow.qsize() == 1
    assert slow.get_nowait().session_id == "one"
    assert fast.get_nowait().session_id == "two"


@pytest.mark.asyncio
async def test_consume_stops_after_close() -> None:
    bus = EventBroadcaster()
    queue = bus.subscribe()
    bus.publish(SessionEnded(session_id="abc"))

    received = []

    async def reader() -> None:
        async for event in bus.consume(queue, poll_interval=0.01):
            received.append(event)

    task = asyncio.create_task(reader())
    await asyncio.sleep(0.05)
    bus.close()
    await asyncio.wait_for(task, timeout=1)

    assert [e.session_id for e in received] == ["abc"]
    bus.publish(SessionEnded(session_id="late"))
    assert bus.subscriber_count == 0
