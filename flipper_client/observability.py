import logging

from opentelemetry import trace

logger = logging.getLogger(__name__)


def setup_tracing(service_name: str = "flipper-client") -> None:
    """
    Install an SDK tracer provider exporting spans over OTLP/HTTP.

    Without this call the OpenTelemetry API stays a no-op and ``get_tracer``
    returns non-recording tracers.
    """
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    trace_provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
    trace.set_tracer_provider(trace_provider)
    logger.info("OpenTelemetry tracing initialized with OTLPSpanExporter.")


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)
