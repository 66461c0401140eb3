"""Donation Engine: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# configure_structlog must run before the other package imports: structlog
# caches the processor chain on first use.
from donation_engine.core.logging import configure_structlog
from donation_engine.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from donation_engine.api.routes import api_router
from donation_engine.core.config import Settings, get_settings
from donation_engine.core.exceptions import RateLimitExceeded
from donation_engine.db import close_db, close_redis, init_db, init_redis
from donation_engine.integrations.gateway import PaymentGateway
from donation_engine.integrations.gateway_fake import GatewayFake
from donation_engine.integrations.helcim import HelcimClient
from donation_engine.middleware.correlation import (
    get_correlation_id,
    setup_correlation_middleware,
)
from donation_engine.services.receipt_notifier import ReceiptNotifier

logger = structlog.get_logger(__name__)


def build_gateway(settings: Settings) -> PaymentGateway:
    """Pick the gateway implementation for this process.

    The fake is only ever used in debug mode: either explicitly requested or
    because no API token is configured. Production without a token fails fast.
    """
    if settings.debug and (settings.use_gateway_fake or not settings.helcim_api_token):
        logger.warning("gateway_fake_enabled", reason="debug_mode")
        return GatewayFake("happy_path")
    if not settings.helcim_api_token:
        raise RuntimeError("HELCIM_API_TOKEN is required outside debug mode")
    return HelcimClient(settings.helcim_api_token)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so the load balancer health check returns 503 while draining
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db()
    logger.info("db_initialized")

    if await init_redis():
        logger.info("redis_initialized")
    elif settings.rate_limit_backend == "redis":
        raise RuntimeError("RATE_LIMIT_BACKEND=redis requires REDIS_URL")
    else:
        logger.info("redis_skipped", reason="no_redis_url")

    app.state.gateway = build_gateway(settings)
    app.state.receipt_notifier = ReceiptNotifier()
    if not settings.helcim_webhook_verifier_token:
        logger.warning("webhook_verifier_token_missing", effect="webhooks_rejected_503")

    yield

    logger.info("shutdown_begin")
    aclose = getattr(app.state.gateway, "aclose", None)
    if aclose is not None:
        await aclose()
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking.

    Logs errors server-side with full context, returns sanitized response to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies: 400 with a field -> message map."""
    debug_id = str(uuid.uuid4())
    errors: dict[str, str] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        errors[".".join(loc) or "body"] = error.get("msg", "Invalid value")

    logger.info(
        "request_validation_failed",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        fields=sorted(errors),
    )

    return JSONResponse(
        status_code=400,
        content={"detail": {"message": "Invalid request", "errors": errors}, "debug_id": debug_id},
    )


async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    debug_id = str(uuid.uuid4())
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests. Please wait and try again.", "debug_id": debug_id},
        headers={"Retry-After": str(exc.retry_after)},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Donation payment and subscription processing",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    setup_correlation_middleware(app)

    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(RequestValidationError)(validation_exception_handler)
    app.exception_handler(RateLimitExceeded)(rate_limit_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "donation_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
