"""
Prometheus metrics for FleetSync.

Usage:
    from fleetsync.metrics import instrument_app, metrics_endpoint

    instrument_app(app, service_name="fleetsync")
    app.add_route("/metrics", metrics_endpoint)
"""

import asyncio
import time

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# Telemetry metrics
telemetry_events_received_total = Counter(
    'fleetsync_telemetry_events_received_total',
    'Telemetry events accepted onto a dispatcher channel',
    ['event_type']
)

telemetry_events_handled_total = Counter(
    'fleetsync_telemetry_events_handled_total',
    'Telemetry events whose handler returned',
    ['event_type']
)

telemetry_events_failed_total = Counter(
    'fleetsync_telemetry_events_failed_total',
    'Telemetry events whose handler raised',
    ['event_type']
)

telemetry_handler_duration_seconds = Histogram(
    'fleetsync_telemetry_handler_duration_seconds',
    'Telemetry handler latency',
    ['event_type']
)

# Mission lifecycle metrics
completion_step_failures_total = Counter(
    'fleetsync_completion_step_failures_total',
    'Failed attempts of a mission completion pipeline step',
    ['step']
)

scheduling_signals_total = Counter(
    'fleetsync_scheduling_signals_total',
    'Signals received by the auto-scheduling engine',
    ['signal']
)

missions_dispatched_total = Counter(
    'fleetsync_missions_dispatched_total',
    'Auto-scheduled missions handed to the dispatch collaborator'
)

# HTTP metrics
http_requests_total = Counter(
    'fleetsync_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

app_info = Gauge(
    'fleetsync_app_info',
    'Application info',
    ['service', 'version']
)


def instrument_app(app: FastAPI, service_name: str, version: str = "1.0.0"):
    """Add Prometheus instrumentation middleware to FastAPI app."""

    app_info.labels(service=service_name, version=version).set(1)

    @app.middleware("http")
    async def prometheus_middleware(request, call_next):
        path = request.url.path
        if path == "/metrics":
            return await call_next(request)

        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            http_requests_total.labels(method=request.method, endpoint=path, status=status).inc()


class HandlerTimer:
    """Context manager recording handler latency and outcome for one event."""

    def __init__(self, event_type: str):
        self.event_type = event_type
        self._start = 0.0

    def __enter__(self):
        self._start = time.time()
        return self

    def __exit__(self, exc_type, exc, tb):
        telemetry_handler_duration_seconds.labels(event_type=self.event_type).observe(time.time() - self._start)
        if exc_type is None:
            telemetry_events_handled_total.labels(event_type=self.event_type).inc()
        elif not issubclass(exc_type, asyncio.CancelledError):
            telemetry_events_failed_total.labels(event_type=self.event_type).inc()
        return False


def metrics_endpoint(request=None):
    """Return Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
