"""Scripted execution engine used by correlator and server tests."""
from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

from claudekeeper.engine.models import PermissionDecision
from claudekeeper.engine.providers.base import EngineRequest, ExecutionEngine

BLOCK = ("block",)


def tool(name: str, tool_input: Any, tool_use_id: str = "toolu_1") -> tuple:
    return ("tool", name, tool_input, tool_use_id)


class ScriptedEngine(ExecutionEngine):
    """Replays a list of steps per prompt.

    Steps:
    - dict: yielded as a run message
    - ``tool(...)``: calls the permission callback and records the decision
    - ``BLOCK``: suspends until the run task is cancelled
    - exception instance: raised
    """

    def __init__(self, steps: list | dict[str, list]) -> None:
        self._steps = steps
        self.requests: list[EngineRequest] = []
        self.decisions: dict[str, list[PermissionDecision]] = {}

    @property
    def name(self) -> str:
        return "scripted"

    def _script_for(self, prompt: str) -> list:
        if isinstance(self._steps, dict):
            return self._steps[prompt]
        return self._steps

    async def run(self, request: EngineRequest) -> AsyncIterator[dict[str, Any]]:
        self.requests.append(request)
        for step in self._script_for(request.prompt):
            if isinstance(step, dict):
                yield step
            elif isinstance(step, BaseException):
                raise step
            elif step == BLOCK:
                await asyncio.Event().wait()
            elif step[0] == "tool":
                _, tool_name, tool_input, tool_use_id = step
                decision = await request.can_use_tool(
                    tool_name, tool_input, {"tool_use_id": tool_use_id},
                )
                self.decisions.setdefault(request.prompt, []).append(decision)
            await asyncio.sleep(0)


async def wait_for(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")
