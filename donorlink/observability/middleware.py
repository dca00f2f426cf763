"""
Observability Middleware

Traces every HTTP request and logs its completion, tagged with the blood
request it concerns so API calls line up with the scheduler's own logs.
"""

import time
import logging
from typing import Optional

from flask import Flask, request, g
from opentelemetry import trace
from opentelemetry.instrumentation.flask import FlaskInstrumentor

HEALTH_PATHS = ('/api/healthz',)


def blood_request_id() -> Optional[str]:
    """Blood request addressed by the current HTTP request, from the path or the JSON body."""
    if request.view_args and request.view_args.get('request_id'):
        return request.view_args['request_id']
    if request.is_json:
        body = request.get_json(silent=True)
        if isinstance(body, dict) and isinstance(body.get('request_id'), str):
            return body['request_id']
    return None


def add_observability_middleware(app: Flask):
    """Add OpenTelemetry instrumentation and request logging to Flask app."""

    FlaskInstrumentor().instrument_app(app)

    logger = logging.getLogger(__name__)

    @app.before_request
    def before_request():
        g.start_time = time.time()
        g.trace_id = None
        g.blood_request_id = blood_request_id()

        span = trace.get_current_span()
        if span.is_recording():
            g.trace_id = format(span.get_span_context().trace_id, "032x")
            span.set_attribute("http.target", request.path)
            if g.blood_request_id:
                span.set_attribute("request.id", g.blood_request_id)

    @app.after_request
    def after_request(response):
        """Log request completion and add response attributes to span."""
        duration_ms = round((time.time() - g.get('start_time', time.time())) * 1000, 2)

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attributes({
                "http.status_code": response.status_code,
                "http.duration_ms": duration_ms
            })

        fields = {
            "method": request.method,
            "path": request.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
            "trace_id": g.get('trace_id')
        }
        if g.get('blood_request_id'):
            fields["request_id"] = g.blood_request_id

        # Health checks poll every few seconds
        level = logging.DEBUG if request.path in HEALTH_PATHS and response.status_code < 400 else logging.INFO
        logger.log(level, "HTTP request completed", extra={"extra_fields": fields})

        if g.get('trace_id'):
            response.headers['X-Trace-Id'] = g.trace_id

        return response
