"""Logging and tracing setup shared by every Stratus component.

Log lines and spans carry ``service=stratus`` plus the emitting component so
a single collector can split scheduler, pool and deployment traffic. Fields
whose names look like secrets are masked before any renderer sees them.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, MutableMapping, Optional
from urllib.parse import unquote

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
try:  # pragma: no cover - optional dependency
    from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
except ModuleNotFoundError:  # pragma: no cover - instrumentation extra not installed
    HTTPXClientInstrumentor = None  # type: ignore[assignment]
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from structlog.contextvars import bind_contextvars

SERVICE_NAME = "stratus"
SECRET_MARKERS = ("token", "secret", "password", "credential_value", "authorization")
REDACTED = "[redacted]"

_logging_configured = False
_tracer_configured = False
_httpx_instrumented = False


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SECRET_MARKERS)


def redact_secret_fields(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking top-level fields such as ``token=``."""

    for key in list(event_dict):
        if is_secret_key(key):
            event_dict[key] = REDACTED
    return event_dict


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def configure_logging(
    component: str,
    level: str | int | None = None,
    *,
    json_output: bool = True,
) -> None:
    """Route structlog through stdlib logging for ``component``.

    JSON lines by default; ``json_output=False`` switches to the console
    renderer for local runs.
    """

    global _logging_configured
    numeric_level = _log_level(level)
    if not _logging_configured:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True
    else:
        logging.getLogger().setLevel(numeric_level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(event_key="message")
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            redact_secret_fields,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=SERVICE_NAME, component=component)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """Parse ``OTEL_EXPORTER_OTLP_HEADERS`` style ``k=v,k2=v2`` strings.

    Values are percent-decoded; malformed items are skipped.
    """

    if not headers:
        return {}
    result: Dict[str, str] = {}
    for item in headers.split(","):
        key, _, value = item.partition("=")
        key, value = key.strip(), value.strip()
        if key and value:
            result[key] = unquote(value)
    return result


def build_tracer_provider(
    component: str,
    *,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
    resource_attributes: Optional[Mapping[str, str]] = None,
) -> tuple[TracerProvider, Optional[InMemorySpanExporter]]:
    """Build a provider exporting over OTLP/HTTP, or in memory without an endpoint.

    The in-memory exporter is returned so callers can inspect finished spans.
    """

    attributes: Dict[str, str] = {
        "service.name": SERVICE_NAME,
        "service.namespace": SERVICE_NAME,
        "stratus.component": component,
    }
    attributes.update(resource_attributes or {})
    ratio = max(0.0, min(1.0, sampler_ratio))
    provider = TracerProvider(resource=Resource.create(attributes), sampler=TraceIdRatioBased(ratio))

    memory: Optional[InMemorySpanExporter] = None
    if endpoint:
        exporter = OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers))
        provider.add_span_processor(BatchSpanProcessor(exporter))
    else:
        memory = InMemorySpanExporter()
        provider.add_span_processor(SimpleSpanProcessor(memory))
    return provider, memory


def configure_tracing(
    component: str,
    *,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
    resource_attributes: Optional[Mapping[str, str]] = None,
) -> Optional[InMemorySpanExporter]:
    """Install the global tracer provider once per process.

    An already installed SDK provider is left alone, e.g. one set by a host
    application embedding the orchestrator.
    """

    global _tracer_configured
    if _tracer_configured or isinstance(trace.get_tracer_provider(), TracerProvider):
        _tracer_configured = True
        return None

    provider, memory = build_tracer_provider(
        component,
        endpoint=endpoint,
        headers=headers,
        sampler_ratio=sampler_ratio,
        resource_attributes=resource_attributes,
    )
    trace.set_tracer_provider(provider)
    _tracer_configured = True
    _instrument_httpx()
    return memory


def _instrument_httpx() -> None:
    # Covers the webhook notification sink's outbound calls.
    global _httpx_instrumented
    if _httpx_instrumented or HTTPXClientInstrumentor is None:
        return
    HTTPXClientInstrumentor().instrument()
    _httpx_instrumented = True


def span_attributes(**values: object) -> Dict[str, str | int | float | bool]:
    """Build ``stratus.*`` span attributes, dropping unset values."""

    attributes: Dict[str, str | int | float | bool] = {}
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            attributes[f"stratus.{key}"] = value
        else:
            attributes[f"stratus.{key}"] = str(value)
    return attributes
