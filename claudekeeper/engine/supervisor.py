"""Run supervisor table: effective run id -> cancellable run state.

A run starts under a provisional id and is re-keyed once the engine
reports the real session id. Both keys always refer to the same
``RunState`` and therefore the same ``CancellationHandle``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from claudekeeper.engine.models import RunPhase

logger = logging.getLogger(__name__)


class CancellationHandle:
    """Cooperative abort signal shared between a run and its engine.

    ``cancel()`` sets the signal and cancels the task bound to the run,
    which unwinds the engine's event stream at its next suspension point.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def bind(self, task: asyncio.Task | None) -> None:
        self._task = task

    def cancel(self, reason: str = "aborted by user") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class RunState:
    """Provisional(temp_id) -> Confirmed(real_id) run identity."""
    temp_id: str
    workdir: str = ""
    handle: CancellationHandle = field(default_factory=CancellationHandle)
    real_id: str | None = None
    phase: RunPhase = RunPhase.LAUNCHING

    @property
    def effective_id(self) -> str:
        return self.real_id or self.temp_id

    @property
    def confirmed(self) -> bool:
        return self.real_id is not None


class RunSupervisorTable:
    """Process-wide map of live runs, keyed by effective id."""

    def __init__(self) -> None:
        self._runs: dict[str, RunState] = {}

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)

    def ids(self) -> list[str]:
        return list(self._runs)

    def get(self, run_id: str) -> RunState | None:
        return self._runs.get(run_id)

    def register(self, state: RunState) -> None:
        existing = self._runs.get(state.effective_id)
        if existing is not None and existing is not state:
            logger.warning("Run id %s re-registered; replacing previous entry", state.effective_id)
        self._runs[state.effective_id] = state

    def confirm(self, state: RunState, real_id: str) -> bool:
        """Swap the provisional key for the real id.

        Runs in one synchronous step. A run already deregistered (for
        example interrupted by its temp id) only learns its real id and
        is not re-inserted. Returns False if the run was already confirmed.
        """
        if state.confirmed:
            return False
        was_live = self._runs.get(state.temp_id) is state
        if was_live:
            del self._runs[state.temp_id]
        state.real_id = real_id
        if was_live:
            self._runs[real_id] = state
        logger.info("Run %s confirmed as %s (live=%s)", state.temp_id, real_id, was_live)
        return True

    def remove(self, state: RunState) -> None:
        for key in (state.temp_id, state.real_id):
            if key is not None and self._runs.get(key) is state:
                del self._runs[key]

    def interrupt(self, run_id: str) -> bool:
        """Cancel and deregister the run currently known as ``run_id``."""
        state = self._runs.get(run_id)
        if state is None:
            return False
        self.remove(state)
        state.handle.cancel()
        logger.info("Run %s interrupted", run_id)
        return True
