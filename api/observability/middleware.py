"""
Observability Middleware

Request instrumentation for the ledger endpoints: Flask auto-instrumentation,
a completion log line per request and the ``X-Trace-Id`` response header.
"""

import time
import logging
from flask import Flask, Response, request, g
from opentelemetry import trace
from opentelemetry.instrumentation.flask import FlaskInstrumentor

logger = logging.getLogger(__name__)


def _trace_id() -> str:
    context = trace.get_current_span().get_span_context()
    return format(context.trace_id, "032x") if context.is_valid else ""


def add_observability_middleware(app: Flask):
    """Instrument the app and log every completed request."""

    FlaskInstrumentor().instrument_app(app)

    @app.before_request
    def start_timer():
        g.request_started = time.perf_counter()

        span = trace.get_current_span()
        if span.is_recording():
            # Ledger routes carry the beneficiary in the path
            beneficiary_id = (request.view_args or {}).get("beneficiary_id")
            if beneficiary_id:
                span.set_attribute("ledger.beneficiary_id", beneficiary_id)

    @app.after_request
    def log_request(response: Response) -> Response:
        elapsed_ms = round((time.perf_counter() - g.get('request_started', time.perf_counter())) * 1000, 2)
        trace_id = _trace_id()

        trace.get_current_span().set_attribute("http.duration_ms", elapsed_ms)
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "%s %s -> %s",
            request.method,
            request.path,
            response.status_code,
            extra={
                "method": request.method,
                "path": request.path,
                "endpoint": request.endpoint,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms
            }
        )

        if trace_id:
            response.headers['X-Trace-Id'] = trace_id
        return response
