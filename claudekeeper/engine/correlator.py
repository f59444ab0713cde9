"""Run correlator: drives one agent run from launch to its terminal event.

Owns three concerns for each run:
- identity: the run starts under a provisional ``pending_*`` id and is
  re-keyed the first time the engine reports a real session id
- permission rendezvous: every privileged tool call becomes an
  attention item and the engine waits until an operator resolves it
- cancellation: ``interrupt`` works with whichever id is current
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import aclosing
from typing import Any

from claudekeeper.adapters.events import (
    AttentionRequested,
    AttentionResolved,
    SessionCreated,
    SessionEnded,
    SessionMessage,
    SessionUpdated,
)
from claudekeeper.adapters.permission_store import PermissionStore
from claudekeeper.engine.attention import AttentionRegistry, Publish
from claudekeeper.engine.errors import RunCancelledError
from claudekeeper.engine.models import (
    BEHAVIOR_ALLOW,
    BEHAVIOR_ALLOW_ALWAYS,
    AttentionItem,
    PermissionDecision,
    PermissionMode,
    ProcessState,
    Resolution,
    RunPhase,
    SessionSummary,
    completion_attention,
    error_attention,
    permission_attention,
)
from claudekeeper.engine.providers.base import (
    EngineRequest,
    ExecutionEngine,
    extract_session_id,
)
from claudekeeper.engine.supervisor import RunState, RunSupervisorTable

logger = logging.getLogger(__name__)

# Signature: def lookup(session_id, workdir) -> SessionSummary | None  (blocking file I/O)
SessionLookup = Callable[[str, str], SessionSummary | None]
# Signature: def factory(workdir) -> PermissionStore
PermissionStoreFactory = Callable[[str], PermissionStore]

REASON_COMPLETED = "completed"
REASON_INTERRUPTED = "interrupted"


class RunCorrelator:
    """Launches runs and correlates their events, ids and decisions."""

    def __init__(
        self,
        engine: ExecutionEngine,
        registry: AttentionRegistry,
        supervisor: RunSupervisorTable,
        publish: Publish,
        *,
        session_lookup: SessionLookup | None = None,
        permission_store_factory: PermissionStoreFactory | None = None,
        session_lookup_delay: float = 0.1,
    ) -> None:
        self._engine = engine
        self._registry = registry
        self._supervisor = supervisor
        self._publish = publish
        self._session_lookup = session_lookup
        self._permission_store_factory = permission_store_factory
        self._session_lookup_delay = session_lookup_delay
        self._tasks: set[asyncio.Task] = set()

    # ── Calls exposed to the transport ──

    def launch_run(
        self,
        temp_id: str,
        prompt: str,
        workdir: str,
        resume_id: str | None = None,
        permission_mode: PermissionMode | None = None,
    ) -> asyncio.Task:
        """Start a run in the background. Failures surface as events."""
        state = self._register(temp_id, workdir)
        task = asyncio.create_task(
            self._drive(state, prompt, workdir, resume_id, permission_mode),
            name=f"run:{temp_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(
        self,
        temp_id: str,
        prompt: str,
        workdir: str,
        resume_id: str | None = None,
        permission_mode: PermissionMode | None = None,
    ) -> RunState:
        """Drive a run in the calling task and return its final state."""
        state = self._register(temp_id, workdir)
        await self._drive(state, prompt, workdir, resume_id, permission_mode)
        return state

    def interrupt(self, run_id: str) -> bool:
        return self._supervisor.interrupt(run_id)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._supervisor

    def list_pending_attention(self) -> list[AttentionItem]:
        return self._registry.list_pending()

    def resolve_attention(self, attention_id: str, decision: Resolution | dict[str, Any]) -> bool:
        return self._registry.resolve(attention_id, decision)

    async def shutdown(self) -> None:
        """Interrupt every live run and wait for the tasks to unwind."""
        for run_id in self._supervisor.ids():
            self._supervisor.interrupt(run_id)
        tasks = list(self._tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Run lifecycle ──

    def _register(self, temp_id: str, workdir: str) -> RunState:
        state = RunState(temp_id=temp_id, workdir=workdir)
        self._supervisor.register(state)
        return state

    async def _drive(
        self,
        state: RunState,
        prompt: str,
        workdir: str,
        resume_id: str | None,
        permission_mode: PermissionMode | None,
    ) -> None:
        logger.info(
            "Run starting temp_id=%s workdir=%s resume=%s mode=%s prompt=%.100s",
            state.temp_id, workdir, resume_id,
            permission_mode.value if permission_mode else "<default>", prompt,
        )
        request = EngineRequest(
            prompt=prompt,
            cwd=workdir,
            can_use_tool=self._make_permission_callback(state, workdir),
            cancellation=state.handle,
            resume=resume_id,
            permission_mode=permission_mode,
        )
        # An interrupt before this point only sets the handle; see check below.
        state.handle.bind(asyncio.current_task())
        reason = REASON_COMPLETED
        state.phase = RunPhase.STREAMING
        try:
            if state.handle.cancelled:
                raise RunCancelledError(state.handle.reason or "aborted before start")
            async with aclosing(self._engine.run(request)) as stream:
                async for message in stream:
                    session_id = extract_session_id(message)
                    if session_id and not state.confirmed:
                        await self._confirm_identity(state, session_id, workdir, prompt)
                    self._publish(SessionMessage(session_id=state.effective_id, message=message))

            state.phase = RunPhase.COMPLETED
            self._request_attention(completion_attention(state.effective_id))
        except asyncio.CancelledError:
            if not state.handle.cancelled:
                # Cancelled from outside (loop shutdown), not by interrupt().
                raise
            # run() may execute in the caller's task; drop the cancel we caused.
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                current.uncancel()
            reason = REASON_INTERRUPTED
            state.phase = RunPhase.INTERRUPTED
            logger.info("Run %s interrupted", state.effective_id)
        except Exception as exc:
            if self._is_cancellation(exc, state):
                reason = REASON_INTERRUPTED
                state.phase = RunPhase.INTERRUPTED
                logger.info("Run %s aborted: %s", state.effective_id, exc)
            else:
                state.phase = RunPhase.ERRORED
                logger.error("Run %s failed: %s", state.effective_id, exc, exc_info=True)
                self._request_attention(error_attention(state.effective_id, str(exc) or type(exc).__name__))
        finally:
            self._supervisor.remove(state)
            self._publish(SessionEnded(session_id=state.effective_id, reason=reason))
            logger.info("Run %s ended reason=%s phase=%s", state.effective_id, reason, state.phase.value)

    @staticmethod
    def _is_cancellation(exc: BaseException, state: RunState) -> bool:
        if isinstance(exc, RunCancelledError) or state.handle.cancelled:
            return True
        return "abort" in str(exc).lower()

    def _request_attention(self, item: AttentionItem) -> None:
        self._registry.enqueue(item)
        self._publish(AttentionRequested(attention=item))

    async def _confirm_identity(
        self, state: RunState, real_id: str, workdir: str, prompt: str,
    ) -> None:
        """Swap temp id for the real id, then announce the session."""
        self._supervisor.confirm(state, real_id)
        summary = await self._lookup_session(real_id, workdir, prompt)
        self._publish(SessionCreated(session=summary, temp_id=state.temp_id))

    async def _lookup_session(self, real_id: str, workdir: str, prompt: str) -> SessionSummary:
        # The engine writes its transcript asynchronously; give it a moment.
        if self._session_lookup_delay > 0:
            await asyncio.sleep(self._session_lookup_delay)
        summary = None
        if self._session_lookup is not None:
            try:
                summary = await asyncio.to_thread(self._session_lookup, real_id, workdir)
            except Exception:
                logger.exception("Session lookup failed for %s", real_id)
        if summary is None:
            logger.debug("Transcript for %s not written yet; using placeholder", real_id)
            summary = SessionSummary.placeholder(real_id, workdir, prompt)
        return summary

    # ── Permission rendezvous ──

    def _make_permission_callback(self, state: RunState, workdir: str):
        always_allowed: set[str] = set()
        store = (
            self._permission_store_factory(workdir)
            if self._permission_store_factory is not None else None
        )

        async def can_use_tool(
            tool_name: str, tool_input: Any, context: dict[str, Any],
        ) -> PermissionDecision:
            tool_use_id = str(context.get("tool_use_id") or "")
            if tool_name in always_allowed or (store is not None and store.is_allowed(tool_name)):
                logger.debug("Permission allow_always hit run=%s tool=%s", state.effective_id, tool_name)
                return PermissionDecision(
                    behavior=BEHAVIOR_ALLOW,
                    tool_use_id=tool_use_id,
                    updated_input=tool_input,
                )

            run_id = state.effective_id
            item = permission_attention(run_id, tool_name, tool_input, tool_use_id)
            self._request_attention(item)
            self._publish(SessionUpdated(
                session_id=run_id,
                changes={"process_state": ProcessState.AWAITING_FEEDBACK.value},
            ))

            decision = await self._registry.await_resolution(item.id)

            self._publish(AttentionResolved(attention_id=item.id))
            self._publish(SessionUpdated(
                session_id=state.effective_id,
                changes={"process_state": ProcessState.RUNNING.value},
            ))
            if decision.behavior == BEHAVIOR_ALLOW_ALWAYS:
                always_allowed.add(tool_name)
                if store is not None:
                    store.add_project(tool_name)
            logger.info(
                "Permission decided run=%s tool=%s behavior=%s",
                state.effective_id, tool_name, decision.behavior,
            )
            return decision

        return can_use_tool
