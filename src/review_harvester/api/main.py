"""FastAPI application factory and entry point.

Usage::

    # Development server (from project root)
    uvicorn review_harvester.api.main:app --reload
"""

from __future__ import annotations

import time
import uuid
from typing import Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from review_harvester.config.settings import get_settings
from review_harvester.core.logging_config import configure_logging, request_id_var

logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    """Build and configure the FastAPI application.

    Separated from the module-level ``app`` singleton so that tests can
    call ``create_app()`` with a patched settings environment.
    """
    settings = get_settings()
    configure_logging(settings.log_level)

    application = FastAPI(
        title=settings.app_name,
        description="Incremental harvesting of customer reviews from business listings.",
        version="0.1.0",
        debug=settings.debug,
        redirect_slashes=False,
    )

    # ---- Request logging middleware ----------------------------------------

    @application.middleware("http")
    async def request_logging_middleware(
        request: Request, call_next: Callable
    ) -> Response:
        """Log every request with its status and duration under a request id."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_var.set(request_id)
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error("unhandled_exception", exc_info=exc)
            raise
        finally:
            elapsed = time.perf_counter() - start
            status_code = getattr(response, "status_code", 500)
            log_fn = logger.warning if status_code >= 400 else logger.info
            log_fn("request_complete", status_code=status_code, elapsed_ms=round(elapsed * 1000, 2))
            if settings.metrics_enabled:
                _record_request_metrics(request, status_code, elapsed)

        response.headers["X-Request-ID"] = request_id
        return response

    # ---- Routers -----------------------------------------------------------

    from review_harvester.api.routes.reviews import router as reviews_router  # noqa: PLC0415

    application.include_router(reviews_router, tags=["reviews"])

    # ---- System endpoints --------------------------------------------------

    @application.get("/health", tags=["system"])
    async def health() -> JSONResponse:
        """Return a minimal process-level liveness status."""
        return JSONResponse({"status": "ok"})

    if settings.metrics_enabled:

        @application.get("/metrics", tags=["system"], include_in_schema=False)
        async def metrics() -> Response:
            from review_harvester.api.metrics import get_metrics_response  # noqa: PLC0415

            body, content_type = get_metrics_response()
            return Response(content=body, media_type=content_type)

    return application


def _record_request_metrics(request: Request, status_code: int, elapsed: float) -> None:
    from review_harvester.api.metrics import (  # noqa: PLC0415
        http_request_duration_seconds,
        http_requests_total,
    )

    # Route template keeps label cardinality bounded.
    route = request.scope.get("route")
    path = getattr(route, "path", "unmatched")
    http_requests_total.labels(method=request.method, path=path, status=str(status_code)).inc()
    http_request_duration_seconds.labels(method=request.method, path=path).observe(elapsed)


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

app = create_app()
"""The FastAPI application instance passed to Uvicorn."""
