import logging
from pathlib import Path
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .config import get_settings
from .db import init_db
from .errors import BizAgentError
from .logging_config import configure_logging
from .metrics import metrics
from .routers import calendar, receptionist, scheduling


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    if settings.storage_backend == "db":
        try:
            init_db()
        except Exception:
            # Keep serving; repository calls will surface the outage per request.
            logger.exception("init_db_failed_startup_continue")

    app = FastAPI(
        title="SmallBizAgent Backend",
        description="Scheduling, calendar sync and virtual receptionist for small businesses.",
        version="0.1.0",
    )

    logger.info(
        "app_config_summary_sanitized",
        extra={
            "storage_backend": settings.storage_backend,
            "google_oauth_configured": bool(settings.oauth.google_client_id),
            "microsoft_oauth_configured": bool(settings.oauth.microsoft_client_id),
            "owner_auth_enabled": bool(settings.owner_dashboard_token),
        },
    )

    @app.exception_handler(BizAgentError)
    async def bizagent_error_handler(request: Request, exc: BizAgentError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning(
                "request_failed",
                extra={"path": request.url.path, "error": exc.message},
            )
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid
        started = time.perf_counter()
        metrics.total_requests += 1
        response = await call_next(request)
        if response.status_code >= 500:
            metrics.total_errors += 1
        response.headers["X-Request-ID"] = rid
        if request.url.path != "/healthz":
            logger.info(
                "request_completed",
                extra={
                    "request_id": rid,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "latency_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
        return response

    app.include_router(
        scheduling.router, prefix="/v1/scheduling", tags=["scheduling"]
    )
    app.include_router(calendar.router, prefix="/v1/calendar", tags=["calendar"])
    app.include_router(
        receptionist.router, prefix="/v1/receptionist", tags=["receptionist"]
    )

    # Published iCalendar feeds for Apple Calendar subscriptions.
    feed_dir = Path(settings.calendar.feed_dir)
    feed_dir.mkdir(parents=True, exist_ok=True)
    app.mount(
        settings.calendar.public_base_path,
        StaticFiles(directory=str(feed_dir), check_dir=False),
        name="calendar-feeds",
    )

    @app.get("/healthz", tags=["health"])
    async def health_check() -> dict:
        return {"status": "ok"}

    @app.get("/metrics", tags=["metrics"])
    async def get_metrics() -> dict:
        return metrics.as_dict()

    return app


app = create_app()
