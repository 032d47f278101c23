"""
OpenTelemetry Configuration

Tracing and logging setup for the Benefit Ledger API. Log records carry the
current trace id so ledger events can be matched with their spans.
"""

import os
import logging
from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

SERVICE_NAME = 'benefit-ledger-api'

SAMPLING_RATIOS = {
    'production': 0.1,
    'staging': 0.5,
}

LOG_LEVELS = {
    'production': logging.WARNING,
    'staging': logging.INFO,
    'development': logging.INFO,
    'test': logging.WARNING,
}

_tracing_configured = False


class TraceContextFilter(logging.Filter):
    """Adds ``trace_id`` to every record (``-`` outside a recording span)."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "-"
        return True


def _span_exporter(environment: str) -> Optional[SpanExporter]:
    if environment not in ('production', 'staging'):
        return ConsoleSpanExporter()

    endpoint = os.getenv('OTEL_EXPORTER_OTLP_ENDPOINT')
    if not endpoint:
        logging.getLogger(__name__).warning("OTEL_EXPORTER_OTLP_ENDPOINT not set, spans are dropped")
        return None

    api_key = os.getenv('OTEL_API_KEY')
    headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
    return OTLPSpanExporter(endpoint=endpoint, headers=headers)


def setup_observability():
    """Configure logging and, unless ``OTEL_ENABLED=false``, the tracer provider."""
    global _tracing_configured

    environment = os.getenv('ENVIRONMENT', 'development')
    setup_structured_logging(environment)

    if os.getenv('OTEL_ENABLED', 'true').lower() != 'true' or _tracing_configured:
        return

    provider = TracerProvider(
        sampler=TraceIdRatioBased(SAMPLING_RATIOS.get(environment, 1.0)),
        resource=Resource.create({
            "service.name": SERVICE_NAME,
            "service.version": os.getenv('SERVICE_VERSION', '1.0.0'),
            "deployment.environment": environment
        })
    )
    exporter = _span_exporter(environment)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter, max_export_batch_size=512))

    trace.set_tracer_provider(provider)
    _tracing_configured = True


def setup_structured_logging(environment: str):
    """Configure log level and format per environment."""
    handler = logging.StreamHandler()
    handler.addFilter(TraceContextFilter())
    logging.basicConfig(
        level=LOG_LEVELS.get(environment, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s [trace=%(trace_id)s] %(message)s',
        handlers=[handler]
    )

    if environment == 'production':
        logging.getLogger('pymongo').setLevel(logging.WARNING)
        logging.getLogger('urllib3').setLevel(logging.WARNING)
    elif environment == 'development':
        # Eligibility decisions are logged at debug
        logging.getLogger('services').setLevel(logging.DEBUG)
