"""Observability - OpenTelemetry tracing for the update pipeline.

Spans:
- ``telegram_webhook`` / ``process_update``: one unit of work
- ``dispatch_effect``: one side effect, including its retries

Export goes over OTLP/HTTP and is off unless ``ENABLE_TRACING`` is set;
without a provider the API hands out no-op spans.
"""

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from src.config.settings import Settings, get_settings
from src.contracts.updates import InboundUpdate
from src.utils.logger import get_logger

logger = get_logger(__name__)

SERVICE_NAME = "telegram-subscription-bot"


def setup_tracing(
    settings: Settings | None = None,
    service_name: str = SERVICE_NAME,
) -> TracerProvider | None:
    """Install a tracer provider exporting to the OTLP endpoint.

    Args:
        settings: Application settings (cached settings if omitted).
        service_name: ``service.name`` resource attribute.

    Returns:
        The installed provider, or None when tracing is disabled or the
        exporter could not be created.
    """
    settings = settings or get_settings()

    if not settings.enable_tracing:
        logger.info("tracing_disabled")
        return None

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": "1.0.0",
            "deployment.environment": settings.app_env,
        }
    )
    provider = TracerProvider(resource=resource)

    try:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint))
        )
    except Exception as e:
        logger.warning(
            "tracing_setup_failed",
            error=str(e),
            message="Tracing will be disabled",
        )
        return None

    trace.set_tracer_provider(provider)
    logger.info(
        "tracing_configured",
        service_name=service_name,
        otlp_endpoint=settings.otlp_endpoint,
    )
    return provider


def shutdown_tracing(provider: TracerProvider | None) -> None:
    """Flush pending spans on exit."""
    if provider is not None:
        provider.shutdown()


def instrument_fastapi(app: FastAPI, settings: Settings | None = None) -> None:
    """Add request spans to the FastAPI app when tracing is on."""
    settings = settings or get_settings()
    if not settings.enable_tracing:
        return

    try:
        FastAPIInstrumentor.instrument_app(app)
        logger.info("fastapi_instrumented")
    except Exception as e:
        logger.warning("fastapi_instrumentation_failed", error=str(e))


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def annotate_update(span: trace.Span, update: InboundUpdate) -> None:
    """Attach the identifying fields of an update to a span."""
    span.set_attribute("update_id", update.update_id)
    span.set_attribute("chat_id", update.chat_id)
    span.set_attribute("input_kind", update.input_kind.value)
    span.set_attribute("internal", update.is_internal)


@contextmanager
def effect_span(
    tracer: trace.Tracer, operation_id: str, kind: str
) -> Iterator[trace.Span]:
    """Span around one side effect and all of its attempts.

    The caller marks failures with ``mark_failed``; exceptions escaping
    the block are recorded by the SDK.
    """
    with tracer.start_as_current_span("dispatch_effect") as span:
        span.set_attribute("operation_id", operation_id)
        span.set_attribute("effect_kind", kind)
        yield span


def mark_failed(span: trace.Span, reason: str) -> None:
    span.set_attribute("failure_reason", reason)
    span.set_status(Status(StatusCode.ERROR, reason))


def get_current_trace_id() -> str | None:
    """Get the current trace ID if available.

    Returns:
        Trace ID as hex string or None.
    """
    context = trace.get_current_span().get_span_context()
    if context.is_valid:
        return format(context.trace_id, "032x")
    return None
