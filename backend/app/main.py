import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ChatCoreError
from app.core.logging import LoggingMiddleware, configure_logging, get_logger
from app.core.monitoring import (
    MetricsMiddleware, collect_content_metrics, errors_total, metrics_response, route_label, update_health_status
)
from app.core.rate_limiter import limiter, rate_limit_handler, rate_limit_middleware, setup_redis_rate_limiter
from app.core.security import AuthIdentity, get_current_identity
from app.database.connection import check_database_health, create_tables, get_db, get_db_stats
from app.routers import chats, folders, realtime, sync
from app.services.chat_service import get_chat_service

configure_logging(settings.log_level, settings.log_format)
logger = get_logger(__name__)


async def reap_idle_sessions(interval: float) -> None:
    """Close live sessions that stopped answering heartbeats"""
    while True:
        await asyncio.sleep(interval)
        stale = get_chat_service().router.reap_stale(settings.heartbeat_timeout_seconds)
        if stale:
            logger.info("Reaped idle live sessions", count=len(stale))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting SpeechBot Chat API", version=settings.app_version, environment=settings.environment.value)
    create_tables()
    if settings.rate_limit_enabled and settings.redis_url:
        setup_redis_rate_limiter(settings.redis_url)
    update_health_status("database", check_database_health())

    reaper = asyncio.create_task(reap_idle_sessions(settings.heartbeat_interval_seconds))
    yield

    logger.info("Shutting down, waiting for bot replies in flight")
    reaper.cancel()
    await asyncio.gather(reaper, return_exceptions=True)
    await get_chat_service().streamer.drain()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=settings.app_description,
    lifespan=lifespan,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
)


def install_middleware(application: FastAPI) -> None:
    """Outermost first: CORS, request logging, metrics, rate limiting"""
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    if settings.rate_limit_enabled:
        application.middleware("http")(rate_limit_middleware)
    if settings.metrics_enabled:
        application.add_middleware(MetricsMiddleware)
    application.add_middleware(LoggingMiddleware)
    application.add_middleware(CORSMiddleware, **settings.get_cors_config())


install_middleware(app)


@app.exception_handler(ChatCoreError)
async def chat_core_error_handler(request: Request, exc: ChatCoreError):
    """Chat core errors become JSON bodies carrying a stable ``code``"""
    errors_total.labels(error_type=exc.code, endpoint=route_label(request.scope)).inc()
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def build_health_report() -> Dict[str, Any]:
    db_healthy = check_database_health()
    generation_ready = bool(settings.openai_api_key)
    update_health_status("database", db_healthy)
    update_health_status("generation", generation_ready)

    return {
        "status": "healthy" if db_healthy else "unhealthy",
        "timestamp": time.time(),
        "version": settings.app_version,
        "environment": settings.environment.value,
        "services": {
            "database": {"status": "healthy" if db_healthy else "unhealthy", "stats": get_db_stats()},
            # Replies fail cleanly when no provider is configured
            "generation": {"status": "configured" if generation_ready else "not_configured"},
            "realtime": get_chat_service().router.stats(),
        },
    }


@app.get("/health")
async def health_check():
    report = build_health_report()
    if report["status"] != "healthy":
        return JSONResponse(content=report, status_code=503)
    return report


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint"""
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return metrics_response()


@app.get("/stats")
async def get_stats(
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db)
):
    """Operational counters for dashboards"""
    return {
        "content": collect_content_metrics(db),
        "database": get_db_stats(),
        "realtime": get_chat_service().router.stats(),
        "features": {
            "rate_limiting": settings.rate_limit_enabled,
            "metrics": settings.metrics_enabled,
            "notifications": settings.notifications_enabled,
        },
    }


@app.get("/")
async def root():
    return {
        "message": settings.app_name,
        "version": settings.app_version,
        "docs_url": "/docs" if settings.is_development else None,
        "health_url": "/health",
        "metrics_url": "/metrics" if settings.metrics_enabled else None,
        "websocket_url": "/ws",
    }


app.include_router(chats.router)
app.include_router(folders.router)
app.include_router(sync.router)
app.include_router(realtime.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        workers=settings.workers,
        log_level=settings.log_level.lower(),
    )
