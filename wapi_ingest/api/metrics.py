"""
Prometheus-style metrics endpoint.
"""
import threading
import time
from typing import Callable

from fastapi import APIRouter, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from wapi_ingest.core.config import get_settings
from wapi_ingest.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Metrics"])

# Simple in-memory metrics storage; webhook and media counters are updated from worker threads
_lock = threading.Lock()
_metrics = {
    "http_requests_total": {},  # {(method, path, status): count}
    "http_request_duration_seconds": {},  # {(method, path): [durations]}
    "webhook_events_total": {},  # {(event, outcome): count}
    "media_cache_total": {},  # {(stage, outcome): count}
    "startup_time": None,
}


def _increment(name: str, key: tuple) -> None:
    with _lock:
        _metrics[name][key] = _metrics[name].get(key, 0) + 1


def record_request(method: str, path: str, status_code: int, duration: float) -> None:
    """Record an HTTP request metric."""
    _increment("http_requests_total", (method, path, str(status_code)))

    with _lock:
        durations = _metrics["http_request_duration_seconds"].setdefault((method, path), [])
        durations.append(duration)
        # Keep only last 1000 durations to prevent memory issues
        if len(durations) > 1000:
            del durations[:-1000]


def record_webhook_event(event: str, outcome: str) -> None:
    """Count one processed webhook by classified kind and outcome."""
    _increment("webhook_events_total", (event, outcome))


def record_media_outcome(stage: str, outcome: str) -> None:
    """Count one media cache attempt (stage is eager or background)."""
    _increment("media_cache_total", (stage, outcome))


def set_startup_time() -> None:
    """Record application startup time."""
    _metrics["startup_time"] = time.time()


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics endpoint to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        # Media objects get one series instead of one per file
        path = request.url.path
        if path.startswith("/uploads/"):
            path = "/uploads"

        record_request(
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration=duration,
        )

        return response


def generate_prometheus_metrics() -> str:
    """Generate Prometheus-format metrics output."""
    with _lock:
        requests = dict(_metrics["http_requests_total"])
        durations = {key: list(values) for key, values in _metrics["http_request_duration_seconds"].items()}
        events = dict(_metrics["webhook_events_total"])
        media = dict(_metrics["media_cache_total"])

    lines = []

    # Application info
    lines.append("# HELP app_info Application information")
    lines.append("# TYPE app_info gauge")
    lines.append(f'app_info{{version="{get_settings().app_version}"}} 1')
    lines.append("")

    # Startup time
    if _metrics["startup_time"]:
        lines.append("# HELP app_start_time_seconds Unix timestamp when the app started")
        lines.append("# TYPE app_start_time_seconds gauge")
        lines.append(f'app_start_time_seconds {_metrics["startup_time"]:.3f}')
        lines.append("")

    # HTTP requests total
    lines.append("# HELP http_requests_total Total number of HTTP requests")
    lines.append("# TYPE http_requests_total counter")
    for (method, path, status), count in requests.items():
        lines.append(f'http_requests_total{{method="{method}",path="{path}",status="{status}"}} {count}')
    lines.append("")

    # HTTP request duration (simplified histogram summary)
    lines.append("# HELP http_request_duration_seconds HTTP request duration in seconds")
    lines.append("# TYPE http_request_duration_seconds summary")
    for (method, path), values in durations.items():
        if values:
            lines.append(f'http_request_duration_seconds_sum{{method="{method}",path="{path}"}} {sum(values):.6f}')
            lines.append(f'http_request_duration_seconds_count{{method="{method}",path="{path}"}} {len(values)}')
    lines.append("")

    lines.append("# HELP webhook_events_total Webhook events by classified kind and outcome")
    lines.append("# TYPE webhook_events_total counter")
    for (event, outcome), count in events.items():
        lines.append(f'webhook_events_total{{event="{event}",outcome="{outcome}"}} {count}')
    lines.append("")

    lines.append("# HELP media_cache_total Media cache attempts by stage and outcome")
    lines.append("# TYPE media_cache_total counter")
    for (stage, outcome), count in media.items():
        lines.append(f'media_cache_total{{stage="{stage}",outcome="{outcome}"}} {count}')

    return "\n".join(lines)


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Returns metrics in Prometheus exposition format.",
    response_class=Response,
)
async def metrics() -> Response:
    """
    Prometheus-style metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    content = generate_prometheus_metrics()
    return Response(
        content=content,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
