"""
Main Application - FastAPI application setup.

Request handlers of the product call this service for every billable action;
Stripe calls it for billing events. Both surfaces are wired here together with
logging, metrics, tracing and the optional startup migration.
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from metering.api.routes import router
from metering.api.status_routes import router as status_router
from metering.config import settings
from metering.db.migration_runner import run_migrations
from metering.db.session import close_engines
from metering.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from metering.services.usage_journal import drain_pending_writes
from metering.observability.tracing import instrument_fastapi

setup_logging()
logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        period_timezone=settings.period_timezone,
        allowance_cap=settings.periodic_allowance_cap,
        tracing_enabled=settings.tracing_enabled,
        stripe_configured=bool(settings.stripe_api_key),
    )

    if settings.run_migrations_on_startup:
        # Alembic is synchronous
        await asyncio.to_thread(run_migrations)

    yield

    await drain_pending_writes()
    await close_engines()
    logger.info("application_stopped")


def _sanitize_validation_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Validation errors reduced to JSON-safe fields."""
    sanitized = []
    for error in exc.errors():
        item = {key: error.get(key) for key in ("type", "loc", "msg", "input")}
        if "ctx" in error:
            item["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized.append(item)
    return sanitized


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """422 with the sanitized errors, logged for the calling team."""
    errors = _sanitize_validation_errors(exc)
    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=errors,
    )
    return JSONResponse(status_code=422, content={"detail": errors})


def _route_template(request: Request) -> str:
    """Matched route path, so user and artifact ids never become metric labels."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


async def observe_request(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Bind a request id to every log entry and record HTTP metrics."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    method = request.method
    start = time.perf_counter()

    with log_context(request_id=request_id):
        try:
            response = await call_next(request)
        except Exception as e:
            endpoint = _route_template(request)
            metrics.record_http_request(endpoint, method, 500, time.perf_counter() - start)
            metrics.record_error(type(e).__name__, "http_request")
            logger.error(
                "request_failed",
                method=method,
                path=request.url.path,
                error=str(e),
                exc_info=True,
            )
            raise

        duration = time.perf_counter() - start
        endpoint = _route_template(request)
        metrics.record_http_request(endpoint, method, response.status_code, duration)
        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=round(duration, 4),
        )

    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description=settings.api_description,
        lifespan=lifespan,
    )
    application.add_exception_handler(RequestValidationError, validation_exception_handler)

    setup_tracing()
    instrument_fastapi(application)

    application.middleware("http")(observe_request)
    application.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.forwarded_allow_ips)

    application.include_router(router)
    application.include_router(status_router)

    @application.get("/")
    async def root() -> dict[str, str]:
        return {
            "service": settings.api_title,
            "version": settings.api_version,
            "status": "running",
        }

    @application.get("/metrics", include_in_schema=settings.metrics_enabled)
    async def metrics_endpoint() -> Response:
        """Prometheus metrics in text exposition format."""
        if not settings.metrics_enabled:
            return PlainTextResponse("metrics disabled", status_code=404)
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "metering.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        proxy_headers=False,
    )
