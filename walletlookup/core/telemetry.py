"""Tracing and log setup shared by the API process and the polling worker.

Log records carry the active trace/span ids and the lookup job being
processed, so a single job can be followed across chunk commits, provider
calls and worker restarts.
"""

from __future__ import annotations

import contextvars
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from walletlookup.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s job_id=%(job_id)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CONTEXT_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()
_CURRENT_JOB_ID: contextvars.ContextVar[str | None] = contextvars.ContextVar("walletlookup_job_id", default=None)


@dataclass(slots=True)
class TelemetryRuntime:
    component: str
    provider: TracerProvider | None = None
    instrumented_httpx: bool = False

    @property
    def enabled(self) -> bool:
        return self.provider is not None


def configure_logging(level: int = logging.INFO) -> None:
    _install_log_context()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


@contextmanager
def job_log_context(job_id: str) -> Iterator[None]:
    """Tag every log record emitted inside the block (and its child tasks) with ``job_id``."""
    token = _CURRENT_JOB_ID.set(job_id)
    try:
        yield
    finally:
        _CURRENT_JOB_ID.reset(token)


def service_name(settings: Settings, component: str) -> str:
    return f"{settings.otel_service_name}-{component}"


def setup_telemetry(settings: Settings, component: str) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(component=component)

    if settings.otel_log_correlation:
        _install_log_context()

    attributes = {
        SERVICE_NAME: service_name(settings, component),
        DEPLOYMENT_ENVIRONMENT: settings.environment,
    }
    if component == "worker":
        attributes["walletlookup.worker_id"] = settings.worker_id

    ratio = min(1.0, max(0.0, settings.otel_trace_sample_ratio))
    provider = TracerProvider(
        resource=Resource.create(attributes),
        sampler=ParentBased(TraceIdRatioBased(ratio)),
    )
    exporter = _build_exporter(settings, component)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    # Neynar, Web3.bio and ENS gateway calls all go through httpx.
    instrumented = False
    if not _HTTPX_INSTRUMENTOR.is_instrumented_by_opentelemetry:
        _HTTPX_INSTRUMENTOR.instrument()
        instrumented = True
    return TelemetryRuntime(component=component, provider=provider, instrumented_httpx=instrumented)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.instrumented_httpx:
        _HTTPX_INSTRUMENTOR.uninstrument()
        runtime.instrumented_httpx = False
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()
        runtime.provider = None


def _build_exporter(settings: Settings, component: str) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logging.getLogger(__name__).info(
            "OTel exporter endpoint not set; %s spans are not exported",
            service_name(settings, component),
        )
        return None

    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; entries without ``=`` or with an empty key are dropped."""
    if not raw:
        return {}
    parsed: dict[str, str] = {}
    for item in raw.split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            parsed[key.strip()] = value.strip()
    return parsed


def _install_log_context() -> None:
    global _LOG_CONTEXT_INSTALLED
    if _LOG_CONTEXT_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        record.job_id = _CURRENT_JOB_ID.get() or "-"
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = "0" * 32
            record.span_id = "0" * 16
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_CONTEXT_INSTALLED = True
