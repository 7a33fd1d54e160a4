import logging
import time
import uuid

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exception_handlers import http_exception_handler

from .config import get_settings
from .context import request_id_ctx
from .logging_config import configure_logging
from .metrics import metrics
from .routers import bookings, personnel


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()

    app = FastAPI(
        title="Onboarding Scheduler",
        description="Availability, assignment and booking for merchant onboarding.",
        version="0.1.0",
    )
    # Backend names only; credentials stay out of the logs.
    logger.info(
        "app_config_summary_sanitized",
        extra={
            "calendar_backend": settings.calendar.backend,
            "crm_backend": settings.crm.backend,
            "timezone": settings.scheduling.timezone,
            "environment": settings.environment,
        },
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid
        token = request_id_ctx.set(rid)
        started = time.perf_counter()
        failed = False
        try:
            try:
                response = await call_next(request)
            except HTTPException as exc:
                failed = True
                response = await http_exception_handler(request, exc)
            except Exception:
                failed = True
                logger.exception(
                    "unhandled_request_exception",
                    extra={"path": request.url.path, "request_id": rid},
                )
                response = Response(status_code=500, content="Internal Server Error")
            failed = failed or response.status_code >= 500
            metrics.observe_request(
                request.url.path, (time.perf_counter() - started) * 1000.0, failed
            )
            response.headers["X-Request-ID"] = rid
            return response
        finally:
            request_id_ctx.reset(token)

    app.include_router(bookings.router, prefix="/v1/bookings", tags=["bookings"])
    app.include_router(personnel.router, prefix="/v1/personnel", tags=["personnel"])

    @app.get("/healthz", tags=["health"])
    async def healthz() -> dict:
        return {"status": "ok"}

    @app.get("/metrics", tags=["metrics"])
    async def metrics_snapshot() -> dict:
        return metrics.as_dict()

    return app


app = create_app()
