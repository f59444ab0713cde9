"""Tests for the attention registry rendezvous."""
from __future__ import annotations

import asyncio

import pytest

from claudekeeper.adapters.events import InteractionResolved
from claudekeeper.engine.attention import TORN_DOWN_MESSAGE, AttentionRegistry
from claudekeeper.engine.errors import AttentionNotFoundError, DuplicateAwaiterError
from claudekeeper.engine.models import (
    DEFAULT_DENY_MESSAGE,
    Resolution,
    completion_attention,
    permission_attention,
)

EDIT_INPUT = {"file_path": "src/app.py", "old_string": "a = 1", "new_string": "a = 2"}


def _registry():
    events = []
    records = []
    registry = AttentionRegistry(
        publish=events.append,
        interaction_sink=lambda run_id, record: records.append((run_id, record)),
    )
    return registry, events, records


def test_resolve_unknown_id_returns_false() -> None:
    registry, events, records = _registry()
    assert registry.resolve("attn_missing", {"behavior": "allow"}) is False
    assert events == []
    assert records == []


def test_resolve_twice_only_first_wins() -> None:
    registry, _, records = _registry()
    item = completion_attention("run-1")
    registry.enqueue(item)

    assert registry.resolve(item.id, {"behavior": "allow"}) is True
    assert registry.resolve(item.id, {"behavior": "deny"}) is False
    assert registry.list_pending() == []
    assert len(records) == 1
    assert records[0][1].resolution == "allow"


@pytest.mark.asyncio
async def test_allow_echoes_captured_input_not_client_input() -> None:
    registry, _, _ = _registry()
    item = permission_attention("run-1", "Edit", EDIT_INPUT, "toolu_42")
    registry.enqueue(item)

    waiter = asyncio.create_task(registry.await_resolution(item.id))
    await asyncio.sleep(0)
    assert registry.resolve(
        item.id, {"behavior": "allow", "updated_input": {"file_path": "/etc/passwd"}},
    )
    decision = await waiter

    assert decision.behavior == "allow"
    assert decision.updated_input == EDIT_INPUT
    assert decision.tool_use_id == "toolu_42"


@pytest.mark.asyncio
async def test_deny_uses_default_or_operator_message() -> None:
    registry, _, _ = _registry()
    first = permission_attention("run-1", "Bash", {"command": "rm -rf build"}, "toolu_1")
    second = permission_attention("run-1", "Bash", {"command": "ls"}, "toolu_2")
    registry.enqueue(first)
    registry.enqueue(second)

    w1 = asyncio.create_task(registry.await_resolution(first.id))
    w2 = asyncio.create_task(registry.await_resolution(second.id))
    await asyncio.sleep(0)
    registry.resolve(first.id, {"behavior": "deny"})
    registry.resolve(second.id, Resolution(behavior="deny", message="use make clean"))

    d1, d2 = await asyncio.gather(w1, w2)
    assert d1.message == DEFAULT_DENY_MESSAGE
    assert d2.message == "use make clean"
    assert not d1.allowed and not d2.allowed


@pytest.mark.asyncio
async def test_second_awaiter_is_rejected() -> None:
    registry, _, _ = _registry()
    item = permission_attention("run-1", "Bash", {"command": "ls"}, "toolu_1")
    registry.enqueue(item)

    first = asyncio.create_task(registry.await_resolution(item.id))
    await asyncio.sleep(0)
    with pytest.raises(DuplicateAwaiterError):
        await registry.await_resolution(item.id)

    registry.resolve(item.id, {"behavior": "allow"})
    assert (await first).allowed


@pytest.mark.asyncio
async def test_await_unknown_id_raises() -> None:
    registry, _, _ = _registry()
    with pytest.raises(AttentionNotFoundError):
        await registry.await_resolution("attn_nope")


@pytest.mark.asyncio
async def test_clear_for_run_releases_waiters_without_logging() -> None:
    registry, events, records = _registry()
    mine = permission_attention("run-1", "Bash", {"command": "ls"}, "toolu_1")
    other = permission_attention("run-2", "Bash", {"command": "pwd"}, "toolu_2")
    registry.enqueue(mine)
    registry.enqueue(other)

    waiter = asyncio.create_task(registry.await_resolution(mine.id))
    await asyncio.sleep(0)
    assert registry.clear_for_run("run-1") == 1

    decision = await waiter
    assert decision.behavior == "deny"
    assert decision.interrupt is True
    assert decision.message == TORN_DOWN_MESSAGE
    assert [i.id for i in registry.list_pending()] == [other.id]
    assert records == []
    assert events == []


@pytest.mark.asyncio
async def test_sink_failure_still_wakes_awaiter() -> None:
    def broken_sink(run_id, record):
        raise OSError("disk full")

    registry = AttentionRegistry(interaction_sink=broken_sink)
    item = permission_attention("run-1", "Write", {"file_path": "x"}, "toolu_1")
    registry.enqueue(item)

    waiter = asyncio.create_task(registry.await_resolution(item.id))
    await asyncio.sleep(0)
    assert registry.resolve(item.id, {"behavior": "allow"}) is True
    assert (await asyncio.wait_for(waiter, timeout=1)).allowed


def test_resolution_publishes_interaction_record() -> None:
    registry, events, records = _registry()
    item = permission_attention("abc", "Edit", EDIT_INPUT, "toolu_1")
    registry.enqueue(item)

    registry.resolve(item.id, {"behavior": "allowAlways"})

    assert len(events) == 1
    event = events[0]
    assert isinstance(event, InteractionResolved)
    assert event.session_id == "abc"
    assert event.interaction.resolution == "allow_always"
    assert event.interaction.tool_input == EDIT_INPUT
    assert records[0][0] == "abc"


def test_pending_for_run_filters_by_run() -> None:
    registry, _, _ = _registry()
    a = completion_attention("run-a")
    b = completion_attention("run-b")
    registry.enqueue(a)
    registry.enqueue(b)
    assert registry.pending_for_run("run-b") == [b]
    assert registry.get(a.id) is a
