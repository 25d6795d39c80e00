from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from autoapply.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
EMPTY_TRACE_ID = "0" * 32
EMPTY_SPAN_ID = "0" * 16
ENDPOINT_ENV_VARS = ("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "OTEL_EXPORTER_OTLP_ENDPOINT")

logger = logging.getLogger(__name__)

_httpx_instrumentor = HTTPXClientInstrumentor()
_plain_record_factory = logging.getLogRecordFactory()
_correlation_installed = False


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    component: str = "worker"
    app_instrumented: bool = False


def configure_logging(level: int = logging.INFO) -> None:
    """Install trace-aware log records and a root handler unless one already exists."""
    _install_log_correlation()
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_telemetry(settings: Settings, app: FastAPI | None = None) -> TelemetryRuntime:
    """Build the tracer provider for the API (when ``app`` is given) or the standalone worker.

    Outbound httpx calls are instrumented in both cases, so governor-paced board
    fetches and automation-worker calls show up under the span that issued them.
    """
    component = "api" if app is not None else "worker"
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None, component=component)
    if settings.otel_log_correlation:
        _install_log_correlation()

    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            "autoapply.component": component,
        }
    )
    ratio = min(max(settings.otel_trace_sample_ratio, 0.0), 1.0)
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(ratio))
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _httpx_instrumentor.instrument()

    runtime = TelemetryRuntime(enabled=True, provider=provider, component=component)
    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
        runtime.app_instrumented = True
    logger.info("telemetry enabled component=%s sample_ratio=%.2f", component, ratio)
    return runtime


def shutdown_telemetry(runtime: TelemetryRuntime, app: FastAPI | None = None) -> None:
    if not runtime.enabled:
        return
    if runtime.app_instrumented and app is not None:
        FastAPIInstrumentor.uninstrument_app(app)
    _httpx_instrumentor.uninstrument()
    if runtime.provider is None:
        return
    runtime.provider.force_flush()
    runtime.provider.shutdown()


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = settings.otel_exporter_otlp_endpoint
    for name in ENDPOINT_ENV_VARS:
        endpoint = endpoint or os.getenv(name)
    if not endpoint:
        logger.info("no OTLP endpoint configured; spans stay in-process service=%s", settings.otel_service_name)
        return None
    headers = _parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def _parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; pairs without ``=`` or with an empty key are dropped."""
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def _correlated_record(*args: object, **kwargs: object) -> logging.LogRecord:
    record = _plain_record_factory(*args, **kwargs)
    context = trace.get_current_span().get_span_context()
    record.trace_id = format(context.trace_id, "032x") if context.is_valid else EMPTY_TRACE_ID
    record.span_id = format(context.span_id, "016x") if context.is_valid else EMPTY_SPAN_ID
    return record


def _install_log_correlation() -> None:
    global _correlation_installed
    if not _correlation_installed:
        logging.setLogRecordFactory(_correlated_record)
        _correlation_installed = True
