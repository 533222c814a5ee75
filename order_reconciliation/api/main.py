"""
FastAPI application for the reconciliation service.

Serves the browser return endpoints, bank transfer checkout, the Stripe
webhook and the monitoring routes.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from order_reconciliation import __version__
from order_reconciliation.config import Settings, get_settings
from order_reconciliation.database.connection import close_db, init_db
from order_reconciliation.monitoring.logging import setup_logging

from .dependencies import get_paypal_client
from .routes import monitoring_router, order_router, webhook_router

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    logger.info(
        "service_starting",
        env=settings.app_env,
        stripe_configured=settings.stripe_configured,
        stripe_test_mode=settings.is_test_mode,
        paypal_environment=settings.paypal_environment,
        smtp_configured=settings.smtp_configured,
    )
    await init_db()

    try:
        yield
    finally:
        # The PayPal client is only built if a wallet return came in
        if get_paypal_client.cache_info().currsize:
            await get_paypal_client().aclose()
        await close_db()
        logger.info("service_stopped")


async def bind_request_id(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Bind a request id into the log context and echo it on the response."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    structlog.contextvars.bind_contextvars(
        request_id=request_id, method=request.method, path=request.url.path
    )
    started = time.perf_counter()
    try:
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", path=request.url.path, error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "ok": False,
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "Something went wrong on our side. Please contact support.",
            },
        },
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)

    application = FastAPI(
        title="Order Reconciliation Service",
        description=(
            "Turns payment confirmations from card, wallet and bank transfer checkouts "
            "into exactly one order each, then sends the order notifications."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    application.state.settings = settings

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )
    application.middleware("http")(bind_request_id)
    application.add_exception_handler(Exception, unhandled_error)

    application.include_router(order_router)
    application.include_router(webhook_router)
    application.include_router(monitoring_router)

    @application.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {"service": settings.app_name, "version": __version__, "env": settings.app_env}

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "order_reconciliation.api.main:app",
        host=_settings.api_host,
        port=_settings.api_port,
        reload=_settings.debug,
        workers=1 if _settings.debug else _settings.api_workers,
        log_level=_settings.log_level.lower(),
    )
