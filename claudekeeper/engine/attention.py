"""Pending-decision registry with future-based rendezvous.

Holds every attention item that still needs an operator, plus the
future a suspended run is waiting on. ``resolve`` is the only way an
item leaves the registry with an audit record; it runs synchronously
so the event loop can never observe a half-resolved item.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from claudekeeper.adapters.events import InteractionResolved, KeeperEvent
from claudekeeper.engine.errors import AttentionNotFoundError, DuplicateAwaiterError
from claudekeeper.engine.models import (
    BEHAVIOR_DENY,
    AttentionItem,
    InteractionRecord,
    PermissionDecision,
    Resolution,
    decision_for,
)

logger = logging.getLogger(__name__)

# Signature: def publish(event) -> None
Publish = Callable[[KeeperEvent], None]
# Signature: def sink(run_id, record) -> None
InteractionSink = Callable[[str, InteractionRecord], None]

TORN_DOWN_MESSAGE = "Run was torn down"


def _noop_publish(event: KeeperEvent) -> None:
    return None


class AttentionRegistry:
    """Single source of truth for outstanding operator decisions."""

    def __init__(
        self,
        publish: Publish | None = None,
        interaction_sink: InteractionSink | None = None,
    ) -> None:
        self._publish = publish or _noop_publish
        self._interaction_sink = interaction_sink
        # attention_id -> item, in insertion order
        self._pending: dict[str, AttentionItem] = {}
        # attention_id -> future of the one task waiting on it
        self._waiters: dict[str, asyncio.Future[PermissionDecision]] = {}

    def enqueue(self, item: AttentionItem) -> None:
        """Make ``item`` visible. Does not broadcast."""
        self._pending[item.id] = item
        logger.info(
            "Attention queued id=%s run=%s kind=%s tool=%s",
            item.id, item.run_id, item.kind.value, item.tool_name,
        )

    def list_pending(self) -> list[AttentionItem]:
        return list(self._pending.values())

    def get(self, attention_id: str) -> AttentionItem | None:
        return self._pending.get(attention_id)

    def pending_for_run(self, run_id: str) -> list[AttentionItem]:
        return [item for item in self._pending.values() if item.run_id == run_id]

    def has_waiter(self, attention_id: str) -> bool:
        return attention_id in self._waiters

    async def await_resolution(self, attention_id: str) -> PermissionDecision:
        """Suspend until ``resolve(attention_id, ...)`` is called.

        Raises:
            AttentionNotFoundError: no pending item with this id.
            DuplicateAwaiterError: another task already waits on it.
        """
        if attention_id not in self._pending:
            raise AttentionNotFoundError(attention_id)
        if attention_id in self._waiters:
            raise DuplicateAwaiterError(attention_id)

        future: asyncio.Future[PermissionDecision] = (
            asyncio.get_running_loop().create_future()
        )
        self._waiters[attention_id] = future
        try:
            return await future
        finally:
            if self._waiters.get(attention_id) is future:
                del self._waiters[attention_id]

    def resolve(self, attention_id: str, decision: Resolution | dict[str, Any]) -> bool:
        """Resolve a pending item exactly once.

        Returns False, with no side effects, when the id is unknown or
        was already resolved.
        """
        item = self._pending.get(attention_id)
        if item is None:
            logger.warning(
                "Attention resolve ignored id=%s (missing or already resolved)",
                attention_id,
            )
            return False

        resolution = (
            decision if isinstance(decision, Resolution) else Resolution.from_dict(decision)
        )
        record = InteractionRecord.from_attention(item, resolution)
        self._record_interaction(item.run_id, record)
        self._publish(InteractionResolved(session_id=item.run_id, interaction=record))

        future = self._waiters.pop(attention_id, None)
        if future is not None and not future.done():
            future.set_result(decision_for(item, resolution))

        del self._pending[attention_id]
        logger.info(
            "Attention resolved id=%s run=%s behavior=%s",
            attention_id, item.run_id, resolution.behavior,
        )
        return True

    def clear_for_run(self, run_id: str) -> int:
        """Drop every pending item of ``run_id`` without logging them.

        A task still waiting on a dropped item is released with a deny
        decision so it cannot stay suspended forever.
        """
        dropped = [aid for aid, item in self._pending.items() if item.run_id == run_id]
        for attention_id in dropped:
            item = self._pending.pop(attention_id)
            future = self._waiters.pop(attention_id, None)
            if future is not None and not future.done():
                future.set_result(PermissionDecision(
                    behavior=BEHAVIOR_DENY,
                    tool_use_id=item.tool_use_id,
                    message=TORN_DOWN_MESSAGE,
                    interrupt=True,
                ))
                logger.debug("Released waiter for dropped attention id=%s", attention_id)
        if dropped:
            logger.info("Cleared %d pending attention item(s) for run %s", len(dropped), run_id)
        return len(dropped)

    def _record_interaction(self, run_id: str, record: InteractionRecord) -> None:
        if self._interaction_sink is None:
            return
        try:
            self._interaction_sink(run_id, record)
        except Exception:
            # Audit logging is best-effort; the waiting run must still wake.
            logger.exception(
                "Failed to persist interaction id=%s run=%s", record.id, run_id,
            )
