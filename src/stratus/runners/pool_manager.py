"""Agent pool management: label matching, ephemeral scaling and liveness."""

from __future__ import annotations

import asyncio
import itertools
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional

import structlog
from opentelemetry import trace

from ..common.errors import AcquireTimeout, AgentLost, NoAgentAvailable, ProvisioningFailed
from ..common.schemas import AgentHandle, AgentKind, AgentLease, AgentState
from ..common.settings import AgentPoolSettings
from .base import FleetBackend

LOGGER = structlog.get_logger("stratus.runners.pool_manager")
TRACER = trace.get_tracer("stratus.runners.pool_manager")

COMPONENT = "agent_pool"


@dataclass
class ScalingPolicy:
    """Ephemeral scaling bounds for one label set."""

    labels: frozenset[str]
    min_replicas: int = 0
    max_replicas: int = 1
    scale_up_threshold: int = 1

    def __post_init__(self) -> None:
        self.labels = frozenset(self.labels)
        if self.min_replicas < 0 or self.max_replicas < 1:
            raise ValueError("replica bounds must satisfy min >= 0 and max >= 1")
        if self.min_replicas > self.max_replicas:
            raise ValueError("min_replicas cannot exceed max_replicas")
        if self.scale_up_threshold < 0:
            raise ValueError("scale_up_threshold cannot be negative")

    def covers(self, labels: frozenset[str]) -> bool:
        return labels <= self.labels


@dataclass
class AgentRecord:
    """Arena entry for one agent. Only the pool's actor task mutates these."""

    agent_id: str
    kind: AgentKind
    labels: frozenset[str]
    executors: int = 1
    state: AgentState = "idle"
    handle: Optional[AgentHandle] = None
    policy: Optional[ScalingPolicy] = None
    leases: Dict[str, Optional[str]] = field(default_factory=dict)  # lease_id -> job_run_id
    jobs_run: int = 0
    last_heartbeat: float = 0.0
    last_used: float = 0.0
    idle_since: Optional[float] = None
    provisioned_for: Optional[int] = None  # waiter that triggered provisioning

    def has_capacity(self) -> bool:
        if self.state in ("provisioning", "draining", "terminated"):
            return False
        if self.kind == "ephemeral":
            return self.jobs_run == 0 and not self.leases
        return len(self.leases) < self.executors


@dataclass
class _Waiter:
    waiter_id: int
    labels: frozenset[str]
    job_run_id: Optional[str]
    future: asyncio.Future
    enqueued_at: float
    pending_agent: Optional[str] = None


@dataclass
class _PolicyState:
    target: int
    pressure_since: Optional[float] = None
    last_scale_up: Optional[float] = None


@dataclass
class _Message:
    op: str
    args: dict[str, Any]
    reply: Optional[asyncio.Future] = None


@dataclass(frozen=True)
class AgentSnapshot:
    agent_id: str
    kind: AgentKind
    state: AgentState
    labels: frozenset[str]
    active_jobs: tuple[str, ...]
    jobs_run: int


@dataclass(frozen=True)
class PoolSnapshot:
    agents: tuple[AgentSnapshot, ...]
    waiting: int
    targets: dict[frozenset[str], int]

    def agent(self, agent_id: str) -> Optional[AgentSnapshot]:
        return next((item for item in self.agents if item.agent_id == agent_id), None)


class PoolManager:
    """Serialised owner of the agent fleet.

    Every public operation is turned into a message on a single request
    queue. One actor task consumes the queue and is the only code that reads
    or mutates the agent arena, so callers never share fleet state directly.
    Provisioning and termination run in background tasks that report back
    through the same queue.
    """

    def __init__(
        self,
        settings: AgentPoolSettings,
        fleet: Optional[FleetBackend] = None,
        *,
        policies: Iterable[ScalingPolicy] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._fleet = fleet
        self._clock = clock
        self._policies: list[ScalingPolicy] = list(policies)
        self._policy_state: Dict[frozenset[str], _PolicyState] = {
            policy.labels: _PolicyState(target=policy.min_replicas) for policy in self._policies
        }
        self._agents: Dict[str, AgentRecord] = {}
        self._lease_index: Dict[str, str] = {}
        self._watchers: Dict[str, asyncio.Future] = {}
        self._waiters: list[_Waiter] = []
        self._waiter_ids = itertools.count(1)
        self._queue: asyncio.Queue[_Message] = asyncio.Queue()
        self._actor_task: Optional[asyncio.Task] = None
        self._maintenance_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._running = False

    # Lifecycle ------------------------------------------------------------

    async def start(self, *, maintenance_loop: bool = True) -> None:
        if self._running:
            return
        self._running = True
        self._actor_task = asyncio.create_task(self._serve(), name="stratus-pool-actor")
        if maintenance_loop:
            self._maintenance_task = asyncio.create_task(
                self._maintenance_loop(), name="stratus-pool-maintenance"
            )
        LOGGER.info("Pool manager started", policies=len(self._policies))
        # Bring each policy up to its warm floor.
        await self.run_maintenance()

    async def stop(self) -> None:
        if not self._running:
            return
        LOGGER.info("Stopping pool manager")
        self._running = False
        for task in (self._maintenance_task, self._actor_task):
            if task is not None:
                task.cancel()
        await asyncio.gather(
            *(task for task in (self._maintenance_task, self._actor_task) if task is not None),
            return_exceptions=True,
        )
        self._maintenance_task = None
        self._actor_task = None

        while not self._queue.empty():
            message = self._queue.get_nowait()
            if message.reply is not None and not message.reply.done():
                message.reply.set_exception(RuntimeError("PoolManager stopped"))

        for waiter in self._waiters:
            if not waiter.future.done():
                waiter.future.set_exception(
                    NoAgentAvailable("pool manager stopped", component=COMPONENT, job_run_id=waiter.job_run_id)
                )
        self._waiters.clear()

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        for record in list(self._agents.values()):
            if record.kind == "ephemeral" and record.handle is not None and self._fleet is not None:
                try:
                    await self._fleet.terminate(record.handle)
                except Exception as exc:  # noqa: BLE001
                    LOGGER.warning("Failed to terminate agent on shutdown", agent_id=record.agent_id, error=str(exc))
        self._agents.clear()
        self._lease_index.clear()
        for future in self._watchers.values():
            if not future.done():
                future.set_result(None)
        self._watchers.clear()

    async def __aenter__(self) -> "PoolManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # Public API -----------------------------------------------------------

    async def register_agent(
        self,
        agent_id: str,
        labels: Iterable[str],
        *,
        executors: int = 1,
    ) -> None:
        """Register (or refresh) a static agent."""

        if executors < 1:
            raise ValueError("executors must be at least 1")
        await self._call("register", agent_id=agent_id, labels=frozenset(labels), executors=executors)

    async def heartbeat(self, agent_id: str) -> bool:
        return await self._call("heartbeat", agent_id=agent_id)

    async def drain(self, agent_id: str) -> bool:
        return await self._call("drain", agent_id=agent_id)

    async def acquire(
        self,
        labels: Iterable[str],
        timeout: Optional[float] = None,
        *,
        job_run_id: Optional[str] = None,
    ) -> AgentLease:
        """Lease an agent whose labels are a superset of ``labels``.

        Blocks until an agent frees up or is provisioned. Raises
        :class:`AcquireTimeout` after ``timeout`` seconds and
        :class:`ProvisioningFailed` when the provisioning this request
        triggered does not complete in time.
        """

        requested = frozenset(labels)
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        with TRACER.start_as_current_span("stratus.pool.acquire") as span:
            span.set_attribute("stratus.labels", ",".join(sorted(requested)))
            await self._call("acquire", labels=requested, job_run_id=job_run_id, future=future)
            try:
                lease = await asyncio.wait_for(asyncio.shield(future), timeout)
            except asyncio.TimeoutError:
                await self._call("abandon", future=future, release=False)
                if future.done():
                    return future.result()
                future.cancel()
                raise AcquireTimeout(
                    f"no agent matching {sorted(requested)} within {timeout}s",
                    component=COMPONENT,
                    labels=sorted(requested),
                    job_run_id=job_run_id,
                ) from None
            except asyncio.CancelledError:
                self._post("abandon", future=future, release=True)
                raise
            span.set_attribute("stratus.agent_id", lease.agent_id)
            return lease

    async def release(self, lease: AgentLease) -> None:
        """Return a leased agent. Releasing an unknown or lost lease is a no-op."""

        if not self._running:
            return
        await self._call("release", lease_id=lease.lease_id)

    async def watch(self, lease: AgentLease) -> asyncio.Future:
        """Future resolved with :class:`AgentLost` if the agent dies, ``None`` on release."""

        return await self._call("watch", lease_id=lease.lease_id)

    async def run_maintenance(self) -> None:
        """Apply liveness, scale-up and scale-down rules once."""

        await self._call("maintain")

    async def snapshot(self) -> PoolSnapshot:
        return await self._call("snapshot")

    async def queue_depth(self, labels: Iterable[str]) -> int:
        return await self._call("depth", labels=frozenset(labels))

    # Actor plumbing -------------------------------------------------------

    def _post(self, op: str, **args: Any) -> None:
        self._queue.put_nowait(_Message(op=op, args=args))

    async def _call(self, op: str, **args: Any) -> Any:
        if not self._running:
            raise RuntimeError("PoolManager not started")
        reply: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Message(op=op, args=args, reply=reply))
        return await reply

    async def _serve(self) -> None:
        while True:
            message = await self._queue.get()
            handler = getattr(self, f"_handle_{message.op}")
            try:
                result = handler(**message.args)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Pool request failed", op=message.op)
                if message.reply is not None and not message.reply.done():
                    message.reply.set_exception(exc)
                continue
            if message.reply is not None and not message.reply.done():
                message.reply.set_result(result)

    async def _maintenance_loop(self) -> None:
        interval = self._settings.maintenance_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run_maintenance()
            except RuntimeError:
                return

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Handlers (actor task only) ------------------------------------------

    def _handle_register(self, agent_id: str, labels: frozenset[str], executors: int) -> None:
        now = self._clock()
        record = self._agents.get(agent_id)
        if record is None:
            record = AgentRecord(
                agent_id=agent_id,
                kind="static",
                labels=labels,
                executors=executors,
                last_heartbeat=now,
                last_used=0.0,
                idle_since=now,
            )
            self._agents[agent_id] = record
            LOGGER.info("Static agent registered", agent_id=agent_id, labels=sorted(labels), executors=executors)
        else:
            record.labels = labels
            record.executors = executors
            record.last_heartbeat = now
            if record.state == "terminated":
                record.state = "idle"
        self._dispatch()

    def _handle_heartbeat(self, agent_id: str) -> bool:
        record = self._agents.get(agent_id)
        if record is None or record.state == "terminated":
            return False
        record.last_heartbeat = self._clock()
        return True

    def _handle_drain(self, agent_id: str) -> bool:
        record = self._agents.get(agent_id)
        if record is None or record.state == "terminated":
            return False
        record.state = "draining"
        LOGGER.info("Agent draining", agent_id=agent_id, active=len(record.leases))
        if not record.leases:
            self._retire(record, reason="drained")
        return True

    def _handle_acquire(
        self,
        labels: frozenset[str],
        job_run_id: Optional[str],
        future: asyncio.Future,
    ) -> None:
        waiter = _Waiter(
            waiter_id=next(self._waiter_ids),
            labels=labels,
            job_run_id=job_run_id,
            future=future,
            enqueued_at=self._clock(),
        )
        self._waiters.append(waiter)
        self._dispatch()
        if not future.done():
            LOGGER.debug("Acquire queued", labels=sorted(labels), job_run_id=job_run_id, depth=len(self._waiters))

    def _handle_abandon(self, future: asyncio.Future, release: bool) -> None:
        self._waiters = [waiter for waiter in self._waiters if waiter.future is not future]
        if release and future.done() and not future.cancelled() and future.exception() is None:
            lease: AgentLease = future.result()
            self._handle_release(lease.lease_id)

    def _handle_release(self, lease_id: str) -> None:
        agent_id = self._lease_index.pop(lease_id, None)
        watcher = self._watchers.pop(lease_id, None)
        if watcher is not None and not watcher.done():
            watcher.set_result(None)
        if agent_id is None:
            return
        record = self._agents.get(agent_id)
        if record is None:
            return
        job_run_id = record.leases.pop(lease_id, None)
        now = self._clock()
        LOGGER.debug("Agent released", agent_id=agent_id, job_run_id=job_run_id, kind=record.kind)
        if record.kind == "ephemeral":
            self._retire(record, reason="job_complete")
        elif record.state == "draining" and not record.leases:
            self._retire(record, reason="drained")
        elif not record.leases:
            record.state = "idle"
            record.idle_since = now
        self._dispatch()

    def _handle_watch(self, lease_id: str) -> asyncio.Future:
        future = self._watchers.get(lease_id)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            if lease_id in self._lease_index:
                self._watchers[lease_id] = future
            else:
                future.set_result(None)
        return future

    def _handle_provisioned(
        self,
        agent_id: str,
        handle: Optional[AgentHandle],
        error: Optional[ProvisioningFailed],
    ) -> None:
        record = self._agents.get(agent_id)
        if record is None or record.state != "provisioning":
            if handle is not None and self._fleet is not None:
                self._spawn(self._terminate(self._fleet, agent_id, handle))
            return
        if error is not None or handle is None:
            LOGGER.warning("Provisioning failed", agent_id=agent_id, labels=sorted(record.labels), error=str(error))
            self._agents.pop(agent_id, None)
            for waiter in list(self._waiters):
                if waiter.pending_agent == agent_id and waiter.waiter_id == record.provisioned_for:
                    self._waiters.remove(waiter)
                    if not waiter.future.done():
                        waiter.future.set_exception(error)
            self._dispatch()
            return

        now = self._clock()
        record.handle = handle
        record.state = "idle"
        record.last_heartbeat = now
        record.idle_since = now
        LOGGER.info("Ephemeral agent ready", agent_id=agent_id, labels=sorted(record.labels))
        self._dispatch()

    def _handle_maintain(self) -> None:
        now = self._clock()
        self._check_liveness(now)
        self._apply_scaling(now)
        self._dispatch()

    def _handle_snapshot(self) -> PoolSnapshot:
        agents = tuple(
            AgentSnapshot(
                agent_id=record.agent_id,
                kind=record.kind,
                state=record.state,
                labels=record.labels,
                active_jobs=tuple(job for job in record.leases.values() if job is not None),
                jobs_run=record.jobs_run,
            )
            for record in sorted(self._agents.values(), key=lambda item: item.agent_id)
        )
        targets = {labels: state.target for labels, state in self._policy_state.items()}
        return PoolSnapshot(agents=agents, waiting=len(self._waiters), targets=targets)

    def _handle_depth(self, labels: frozenset[str]) -> int:
        return sum(1 for waiter in self._waiters if waiter.labels <= labels)

    # Internals ------------------------------------------------------------

    def _candidate(self, labels: frozenset[str]) -> Optional[AgentRecord]:
        candidates = [
            record for record in self._agents.values() if record.has_capacity() and labels <= record.labels
        ]
        if not candidates:
            return None
        # Static first (no provisioning latency), then least recently used.
        candidates.sort(key=lambda record: (record.kind != "static", record.last_used, record.agent_id))
        return candidates[0]

    def _assign(self, record: AgentRecord, waiter: _Waiter) -> None:
        now = self._clock()
        lease_id = uuid.uuid4().hex
        record.leases[lease_id] = waiter.job_run_id
        record.jobs_run += 1
        record.last_used = now
        record.idle_since = None
        record.state = "busy"
        self._lease_index[lease_id] = record.agent_id
        lease = AgentLease(
            lease_id=lease_id,
            agent_id=record.agent_id,
            job_run_id=waiter.job_run_id,
            kind=record.kind,
            labels=record.labels,
            handle=record.handle,
        )
        waiter.future.set_result(lease)
        LOGGER.info(
            "Agent leased",
            agent_id=record.agent_id,
            kind=record.kind,
            job_run_id=waiter.job_run_id,
            waited=round(now - waiter.enqueued_at, 3),
        )

    def _dispatch(self) -> None:
        """Serve waiters in FIFO order, then provision for the ones left over."""

        remaining: list[_Waiter] = []
        for waiter in self._waiters:
            if waiter.future.done():
                continue
            record = self._candidate(waiter.labels)
            if record is None:
                remaining.append(waiter)
                continue
            self._assign(record, waiter)
        self._waiters = remaining
        self._provision_for_waiters()

    def _policy_for(self, labels: frozenset[str]) -> Optional[ScalingPolicy]:
        matching = [policy for policy in self._policies if policy.covers(labels)]
        if not matching:
            return None
        # The narrowest label set wastes the fewest capabilities.
        return min(matching, key=lambda policy: len(policy.labels))

    def _live_count(self, policy: ScalingPolicy) -> int:
        return sum(
            1
            for record in self._agents.values()
            if record.policy is policy and record.state != "terminated"
        )

    def _provision_for_waiters(self) -> None:
        fleet = self._fleet
        if fleet is None:
            return
        for waiter in self._waiters:
            pending = self._agents.get(waiter.pending_agent) if waiter.pending_agent else None
            if pending is not None and pending.state == "provisioning":
                continue
            policy = self._policy_for(waiter.labels)
            if policy is None or self._live_count(policy) >= policy.max_replicas:
                continue
            record = self._start_provisioning(fleet, policy, waiter_id=waiter.waiter_id)
            waiter.pending_agent = record.agent_id

    def _start_provisioning(
        self, fleet: FleetBackend, policy: ScalingPolicy, *, waiter_id: Optional[int] = None
    ) -> AgentRecord:
        agent_id = f"ephemeral-{uuid.uuid4().hex[:12]}"
        record = AgentRecord(
            agent_id=agent_id,
            kind="ephemeral",
            labels=policy.labels,
            state="provisioning",
            policy=policy,
            last_heartbeat=self._clock(),
            provisioned_for=waiter_id,
        )
        self._agents[agent_id] = record
        LOGGER.info("Provisioning ephemeral agent", agent_id=agent_id, labels=sorted(policy.labels))
        self._spawn(self._provision(fleet, agent_id, policy.labels))
        return record

    async def _provision(self, fleet: FleetBackend, agent_id: str, labels: frozenset[str]) -> None:
        handle: Optional[AgentHandle] = None
        error: Optional[ProvisioningFailed] = None
        try:
            handle = await asyncio.wait_for(
                fleet.provision(labels),
                timeout=self._settings.provisioning_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = ProvisioningFailed(
                f"agent not ready within {self._settings.provisioning_timeout_seconds}s",
                component=COMPONENT,
                agent_id=agent_id,
                labels=sorted(labels),
            )
        except Exception as exc:  # noqa: BLE001
            error = ProvisioningFailed(
                f"fleet backend failed to provision agent: {exc}",
                component=COMPONENT,
                agent_id=agent_id,
                labels=sorted(labels),
            )
        if self._running:
            self._post("provisioned", agent_id=agent_id, handle=handle, error=error)
        elif handle is not None:
            await self._terminate(fleet, agent_id, handle)

    async def _terminate(self, fleet: FleetBackend, agent_id: str, handle: AgentHandle) -> None:
        try:
            await fleet.terminate(handle)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Failed to terminate agent", agent_id=agent_id, error=str(exc))

    def _retire(self, record: AgentRecord, *, reason: str) -> None:
        record.state = "terminated"
        self._agents.pop(record.agent_id, None)
        LOGGER.info("Agent terminated", agent_id=record.agent_id, kind=record.kind, reason=reason)
        if record.kind == "ephemeral" and record.handle is not None and self._fleet is not None:
            self._spawn(self._terminate(self._fleet, record.agent_id, record.handle))

    def _check_liveness(self, now: float) -> None:
        threshold = self._settings.heartbeat_liveness_seconds
        for record in list(self._agents.values()):
            if record.state in ("provisioning", "terminated"):
                continue
            if now - record.last_heartbeat <= threshold:
                continue
            LOGGER.warning(
                "Agent missed heartbeats",
                agent_id=record.agent_id,
                silent_for=round(now - record.last_heartbeat, 3),
                active_jobs=len(record.leases),
            )
            for lease_id, job_run_id in list(record.leases.items()):
                self._lease_index.pop(lease_id, None)
                watcher = self._watchers.pop(lease_id, None)
                if watcher is not None and not watcher.done():
                    watcher.set_result(
                        AgentLost(
                            f"agent {record.agent_id} stopped heartbeating",
                            component=COMPONENT,
                            agent_id=record.agent_id,
                            job_run_id=job_run_id,
                        )
                    )
            record.leases.clear()
            self._retire(record, reason="lost")

    def _apply_scaling(self, now: float) -> None:
        fleet = self._fleet
        if fleet is None:
            return
        debounce = self._settings.scale_up_debounce_seconds
        cooldown = self._settings.scale_down_cooldown_seconds
        for policy in self._policies:
            state = self._policy_state[policy.labels]
            depth = sum(1 for waiter in self._waiters if policy.covers(waiter.labels))
            live = self._live_count(policy)

            if depth > policy.scale_up_threshold:
                if state.pressure_since is None:
                    state.pressure_since = now
                elif now - state.pressure_since >= debounce:
                    new_target = min(policy.max_replicas, live + depth)
                    if new_target > state.target:
                        LOGGER.info(
                            "Scaling up",
                            labels=sorted(policy.labels),
                            depth=depth,
                            target=new_target,
                        )
                    state.target = max(state.target, new_target)
                    state.pressure_since = now
                    state.last_scale_up = now
            else:
                state.pressure_since = None
                if depth == 0 and (state.last_scale_up is None or now - state.last_scale_up >= cooldown):
                    state.target = policy.min_replicas

            desired = max(policy.min_replicas, state.target)
            while live < min(desired, policy.max_replicas):
                self._start_provisioning(fleet, policy)
                live += 1

            if live > desired:
                idle = [
                    record
                    for record in self._agents.values()
                    if record.policy is policy
                    and record.state == "idle"
                    and record.jobs_run == 0
                    and record.idle_since is not None
                    and now - record.idle_since >= cooldown
                ]
                idle.sort(key=lambda record: record.idle_since or 0.0)
                for record in idle[: live - desired]:
                    self._retire(record, reason="scale_down")
