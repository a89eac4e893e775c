import logging
import sys
import time
from typing import Any, Dict, Optional

import structlog
from structlog.types import Processor

from app.core.ids import new_id

# Paths too chatty to log per request
QUIET_PATHS = {"/health", "/metrics"}


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Route structlog through stdlib logging; JSON lines unless console output is asked for"""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_connection(session_id: str, user_id: str, device_id: str) -> None:
    """Tag every log line emitted while serving a live connection"""
    structlog.contextvars.bind_contextvars(session_id=session_id, user_id=user_id, device_id=device_id)


def clear_connection() -> None:
    structlog.contextvars.unbind_contextvars("session_id", "user_id", "device_id")


def event_fields(event_type: str, chat_id: str, **extra: Any) -> Dict[str, Any]:
    """Common log fields for realtime events"""
    fields = {"event_type": event_type, "chat_id": chat_id}
    fields.update({k: v for k, v in extra.items() if v is not None})
    return fields


class LoggingMiddleware:
    """ASGI middleware: one completion line per HTTP request, tagged with a request id"""

    def __init__(self, app, logger_name: str = "api"):
        self.app = app
        self.logger = get_logger(logger_name)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _header(scope, b"x-request-id") or new_id("req")
        structlog.contextvars.bind_contextvars(request_id=request_id)
        quiet = scope["path"] in QUIET_PATHS
        started = time.perf_counter()
        status_code: Optional[int] = None

        async def send_with_request_id(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                message["headers"] = list(message.get("headers", [])) + [(b"x-request-id", request_id.encode())]
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        except Exception as exc:
            self.logger.error(
                "Request failed",
                method=scope["method"],
                path=scope["path"],
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        else:
            if not quiet:
                self.logger.info(
                    "Request completed",
                    method=scope["method"],
                    path=scope["path"],
                    status_code=status_code,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                )
        finally:
            structlog.contextvars.unbind_contextvars("request_id")


def _header(scope, name: bytes) -> Optional[str]:
    for key, value in scope.get("headers") or []:
        if key.lower() == name:
            return value.decode("latin-1")
    return None


# Application loggers
security_logger = get_logger("security")
chat_logger = get_logger("chat")
delivery_logger = get_logger("delivery")
streaming_logger = get_logger("streaming")
sync_logger = get_logger("sync")
db_logger = get_logger("database")
auth_logger = get_logger("auth")
