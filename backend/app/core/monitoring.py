import re
import time
from typing import Dict

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from sqlalchemy.exc import SQLAlchemyError

from app.core.logging import get_logger

logger = get_logger("monitoring")

REGISTRY = CollectorRegistry()

# HTTP Metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=REGISTRY
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    registry=REGISTRY
)

http_requests_in_progress = Gauge(
    'http_requests_in_progress',
    'HTTP requests currently in progress',
    registry=REGISTRY
)

# Application Metrics
total_chats = Gauge(
    'total_chats',
    'Total number of live chats in the system',
    registry=REGISTRY
)

total_messages = Gauge(
    'total_messages',
    'Total number of non-deleted messages in the system',
    registry=REGISTRY
)

# Realtime Metrics
live_sessions_active = Gauge(
    'live_sessions_active',
    'Connected WebSocket live sessions',
    registry=REGISTRY
)

realtime_events_total = Counter(
    'realtime_events_total',
    'Realtime events offered to live sessions',
    ['event_type', 'outcome'],
    registry=REGISTRY
)

live_session_disconnects_total = Counter(
    'live_session_disconnects_total',
    'Live sessions closed by the server',
    ['reason'],
    registry=REGISTRY
)

# Bot generation Metrics
bot_generations_total = Counter(
    'bot_generations_total',
    'Bot replies by terminal state',
    ['outcome'],
    registry=REGISTRY
)

bot_generation_duration_seconds = Histogram(
    'bot_generation_duration_seconds',
    'Bot reply duration from trigger to terminal state',
    registry=REGISTRY
)

# Offline sync Metrics
sync_operations_total = Counter(
    'sync_operations_total',
    'Replayed offline operations by kind and result',
    ['kind', 'outcome'],
    registry=REGISTRY
)

# Database Metrics
database_connections = Gauge(
    'database_connections_active',
    'Active database connections',
    registry=REGISTRY
)

database_queries_total = Counter(
    'database_queries_total',
    'Total database queries',
    ['operation'],
    registry=REGISTRY
)

database_query_duration_seconds = Histogram(
    'database_query_duration_seconds',
    'Database query duration in seconds',
    ['operation'],
    registry=REGISTRY
)

# Authentication Metrics
auth_attempts_total = Counter(
    'auth_attempts_total',
    'Total authentication attempts',
    ['status'],
    registry=REGISTRY
)

# Error Metrics
errors_total = Counter(
    'errors_total',
    'Total application errors',
    ['error_type', 'endpoint'],
    registry=REGISTRY
)


health_check_status = Gauge(
    'health_check_status',
    'Health check status (1 = healthy, 0 = unhealthy)',
    ['service'],
    registry=REGISTRY
)


class MetricsMiddleware:
    """Counts HTTP requests per route template; WebSocket traffic is measured by the delivery router"""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or scope["path"] == "/metrics":
            await self.app(scope, receive, send)
            return

        method = scope["method"]
        started = time.perf_counter()
        status_code = 500
        http_requests_in_progress.inc()

        async def send_and_capture(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_and_capture)
        except Exception as e:
            errors_total.labels(error_type=type(e).__name__, endpoint=route_label(scope)).inc()
            raise
        finally:
            http_requests_in_progress.dec()
            endpoint = route_label(scope)
            http_requests_total.labels(method=method, endpoint=endpoint, status_code=status_code).inc()
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - started
            )


def route_label(scope) -> str:
    """The matched route template, falling back to an id-stripped path"""
    route = scope.get("route")
    template = getattr(route, "path", None)
    if template:
        return template
    return normalize_path(scope["path"])


def normalize_path(path: str) -> str:
    """Replace chat, message and folder ids so label cardinality stays bounded"""
    return _ID_SEGMENT.sub(lambda match: f"/{match.group(1)}/{{id}}", path)


_ID_SEGMENT = re.compile(r"/(chats|messages|folders)/(?:chat|msg|fld)_[0-9a-f]+")


def record_auth_attempt(success: bool = True):
    auth_attempts_total.labels(status="success" if success else "failure").inc()


def record_database_operation(operation: str, duration: float):
    database_queries_total.labels(operation=operation).inc()
    database_query_duration_seconds.labels(operation=operation).observe(duration)


def record_event(event_type: str, outcome: str):
    """Record a realtime event offer (queued, dropped, duplicate, overflow)"""
    realtime_events_total.labels(event_type=event_type, outcome=outcome).inc()


def record_session_disconnect(reason: str):
    live_session_disconnects_total.labels(reason=reason).inc()


def record_generation(outcome: str, duration: float):
    """Record a bot reply reaching a terminal state"""
    bot_generations_total.labels(outcome=outcome).inc()
    bot_generation_duration_seconds.observe(duration)


def record_sync_operation(kind: str, outcome: str):
    sync_operations_total.labels(kind=kind, outcome=outcome).inc()


def update_health_status(service: str, is_healthy: bool):
    health_check_status.labels(service=service).set(1 if is_healthy else 0)


def collect_content_metrics(db_session) -> Dict[str, int]:
    """Refresh the live chat and message gauges from the database"""
    from app.models import Chat, Message

    try:
        counts = {
            "chats": db_session.query(Chat).filter(Chat.deleted_at.is_(None)).count(),
            "messages": db_session.query(Message).filter(Message.deleted_at.is_(None)).count(),
        }
    except SQLAlchemyError as e:
        logger.error("Failed to collect content metrics", error=str(e))
        return {}

    total_chats.set(counts["chats"])
    total_messages.set(counts["messages"])
    return counts


def metrics_response() -> Response:
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
