"""In-memory collaborators used across the test-suite."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import Awaitable, Callable, Optional, Union

from stratus.common.schemas import AgentHandle
from stratus.runners.base import ApplyResult, ExecutionContext, RunResult

Outcome = Union[RunResult, BaseException, Callable[[ExecutionContext], Awaitable[RunResult]]]


def ok(**kwargs) -> RunResult:
    return RunResult(success=True, exit_code=0, **kwargs)


def failed(exit_code: int = 1, **kwargs) -> RunResult:
    return RunResult(success=False, exit_code=exit_code, **kwargs)


class ScriptedExecutor:
    """Job executor whose outcome per job name is scripted up front.

    Each call pops the next scripted outcome for the job; once the script is
    exhausted the last outcome repeats, and unscripted jobs succeed.
    Jobs named in ``gates`` block until the matching event is set.
    """

    def __init__(self, script: Optional[dict[str, list[Outcome]]] = None) -> None:
        self._script: dict[str, deque[Outcome]] = {name: deque(items) for name, items in (script or {}).items()}
        self.calls: list[ExecutionContext] = []
        self.started: dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self.gates: dict[str, asyncio.Event] = {}
        self.running = 0
        self.peak_running = 0

    def gate(self, job: str) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[job] = event
        return event

    def attempts(self, job: str) -> int:
        return sum(1 for context in self.calls if context.job.name == job)

    def order(self) -> list[str]:
        return [context.job.name for context in self.calls]

    async def run(self, context: ExecutionContext) -> RunResult:
        name = context.job.name
        self.calls.append(context)
        self.running += 1
        self.peak_running = max(self.peak_running, self.running)
        self.started[name].set()
        try:
            gate = self.gates.get(name)
            if gate is not None:
                await gate.wait()
            else:
                await asyncio.sleep(0)
            queue = self._script.get(name)
            if not queue:
                return ok()
            outcome = queue.popleft() if len(queue) > 1 else queue[0]
            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                return await outcome(context)
            return outcome
        finally:
            self.running -= 1


class FakeFleet:
    def __init__(self, *, delay: float = 0.0, fail: bool = False) -> None:
        self.delay = delay
        self.fail = fail
        self.provisioned: list[AgentHandle] = []
        self.terminated: list[AgentHandle] = []
        self.gate: Optional[asyncio.Event] = None

    async def provision(self, labels: frozenset[str]) -> AgentHandle:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("fleet capacity exhausted")
        handle = AgentHandle(
            reference=f"vm-{len(self.provisioned) + 1}",
            metadata={"labels": ",".join(sorted(labels))},
        )
        self.provisioned.append(handle)
        return handle

    async def terminate(self, handle: AgentHandle) -> None:
        self.terminated.append(handle)


class FakeDeployExecutor:
    """Records applies; artifacts listed in ``failing`` report failure."""

    def __init__(self, failing: tuple[str, ...] = ()) -> None:
        self.failing = set(failing)
        self.applied: list[tuple[str, str]] = []
        self.gate: Optional[asyncio.Event] = None

    async def apply(self, environment: str, artifact_ref: str) -> ApplyResult:
        self.applied.append((environment, artifact_ref))
        if self.gate is not None:
            await self.gate.wait()
        if artifact_ref in self.failing:
            return ApplyResult(success=False, message=f"apply of {artifact_ref} failed")
        return ApplyResult(success=True)


class FakeSmokeTests:
    """Passes unless the environment's current artifact is listed in ``failing``."""

    def __init__(self, deploy: FakeDeployExecutor, failing: tuple[str, ...] = (), *, delay: float = 0.0) -> None:
        self._deploy = deploy
        self.failing = set(failing)
        self.delay = delay
        self.verified: list[tuple[str, str]] = []

    async def verify(self, environment: str, *, timeout_seconds: float) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        artifact = next(
            (artifact for env, artifact in reversed(self._deploy.applied) if env == environment),
            "",
        )
        self.verified.append((environment, artifact))
        return artifact not in self.failing


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)
