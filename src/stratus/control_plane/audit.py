"""Append-only audit trail with severity-filtered notification sinks."""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, Optional, Protocol

import httpx
import structlog

from ..common.observability import REDACTED, is_secret_key
from ..common.schemas import AuditEvent, Severity, utc_now
from .state import StateStore

LOGGER = structlog.get_logger("stratus.control_plane.audit")

SEVERITY_ORDER: dict[str, int] = {"info": 0, "warning": 1, "critical": 2}


def scrub_details(details: dict[str, Any]) -> dict[str, Any]:
    """Replace values under secret-looking keys, recursing into nested mappings."""

    scrubbed: dict[str, Any] = {}
    for key, value in details.items():
        if is_secret_key(str(key)):
            scrubbed[key] = REDACTED
        elif isinstance(value, dict):
            scrubbed[key] = scrub_details(value)
        elif isinstance(value, (set, frozenset, tuple)):
            scrubbed[key] = sorted(value, key=str) if isinstance(value, (set, frozenset)) else list(value)
        else:
            scrubbed[key] = value
    return scrubbed


def severity_at_least(severity: str, minimum: str) -> bool:
    return SEVERITY_ORDER.get(severity, 0) >= SEVERITY_ORDER.get(minimum, 0)


class NotificationSink(Protocol):
    """Receives audit events at or above ``min_severity``."""

    min_severity: Severity

    async def notify(self, event: AuditEvent) -> None:
        ...


class WebhookNotificationSink:
    """Posts audit events as JSON to an HTTP endpoint."""

    def __init__(
        self,
        url: str,
        *,
        min_severity: Severity = "warning",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url
        self.min_severity = min_severity
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def notify(self, event: AuditEvent) -> None:
        response = await self._client.post(self._url, json=event.model_dump(mode="json"))
        response.raise_for_status()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class AuditLog:
    """Durable, ordered log of every state transition.

    Events are written through the :class:`StateStore` when one is supplied;
    otherwise they are kept in process memory, which is enough for tests and
    single-shot tooling.
    """

    def __init__(
        self,
        store: Optional[StateStore] = None,
        *,
        sinks: Iterable[NotificationSink] = (),
    ) -> None:
        self._store = store
        self._sinks = list(sinks)
        self._memory: list[AuditEvent] = []
        self._memory_lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()

    def add_sink(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    async def record(
        self,
        event_type: str,
        *,
        component: str,
        subject: Optional[str] = None,
        actor: Optional[str] = None,
        severity: Severity = "info",
        details: Optional[dict[str, Any]] = None,
    ) -> AuditEvent:
        payload = scrub_details(details or {})
        if self._store is not None:
            event = await self._store.append_audit_event(
                event_type,
                component=component,
                subject=subject,
                actor=actor,
                severity=severity,
                details=payload,
            )
        else:
            async with self._memory_lock:
                event = AuditEvent(
                    event_id=len(self._memory) + 1,
                    event_type=event_type,
                    component=component,
                    subject=subject,
                    actor=actor,
                    severity=severity,
                    details=payload,
                    recorded_at=utc_now(),
                )
                self._memory.append(event)

        log = LOGGER.warning if severity_at_least(severity, "warning") else LOGGER.debug
        log("Audit event recorded", event_type=event_type, component=component, subject=subject, severity=severity)
        self._dispatch(event)
        return event

    async def list_events(
        self,
        *,
        subject: Optional[str] = None,
        event_type: Optional[str] = None,
        since_id: Optional[int] = None,
        limit: int = 1000,
    ) -> list[AuditEvent]:
        if self._store is not None:
            return await self._store.list_audit_events(
                subject=subject, event_type=event_type, since_id=since_id, limit=limit
            )
        events = [
            event
            for event in self._memory
            if (subject is None or event.subject == subject)
            and (event_type is None or event.event_type == event_type)
            and (since_id is None or event.event_id > since_id)
        ]
        return events[:limit]

    def _dispatch(self, event: AuditEvent) -> None:
        for sink in self._sinks:
            if not severity_at_least(event.severity, sink.min_severity):
                continue
            task = asyncio.create_task(self._deliver(sink, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, sink: NotificationSink, event: AuditEvent) -> None:
        try:
            await sink.notify(event)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "Notification sink failed",
                sink=type(sink).__name__,
                event_id=event.event_id,
                event_type=event.event_type,
                error=str(exc),
            )

    async def flush(self) -> None:
        """Wait for in-flight sink deliveries."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.flush()
        for sink in self._sinks:
            closer = getattr(sink, "aclose", None)
            if closer is not None:
                await closer()
