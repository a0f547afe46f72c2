"""
Call Router API

FastAPI application entry point: provider webhooks, agent sessions,
outbound calls and health probes over one routing orchestrator.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from app.config import settings
from app.api.routes import agents, calls, health, webhooks
from app.core.routing.errors import RoutingBackendError
from app.core.routing.orchestrator import CallRoutingOrchestrator, get_orchestrator
from app.infra.database import init_db, close_db
from app.infra.redis import RedisClient

VERSION = "1.0.0"


def setup_logging() -> None:
    """Configure logging based on environment."""
    log_level = logging.DEBUG if settings.debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(level=log_level, format=log_format)

    # Third-party chatter; Twilio logs every REST request at INFO
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


logger = logging.getLogger(__name__)


async def _start_storage() -> None:
    """Create tables in development (migrations own them elsewhere) and connect Redis."""
    if settings.is_development:
        try:
            await init_db()
            logger.info("Database tables initialized")
        except Exception as e:
            logger.warning(f"Database init skipped: {e}")

    if settings.presence_backend == "redis" and await RedisClient.get_client() is None:
        logger.warning("Redis unavailable at startup")


async def _stop(orchestrator: CallRoutingOrchestrator) -> None:
    """Stop ring watchdogs, flush pending notices, then close storage."""
    await orchestrator.shutdown()
    await orchestrator.event_bus.drain()
    await RedisClient.close()
    await close_db()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    The orchestrator is built at startup so a missing presence registry
    fails the deploy instead of the first call.
    """
    # === STARTUP ===
    setup_logging()
    logger.info(f"Starting {settings.app_name} in {settings.app_env} mode")
    health.set_start_time()

    await _start_storage()
    orchestrator = await get_orchestrator()
    logger.info(
        f"Routing ready: registry={type(orchestrator.registry).__name__}, "
        f"default queue={settings.routing_default_queue_id}, "
        f"ring timeout={settings.ring_timeout_seconds}s"
    )

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down call router...")
    await _stop(orchestrator)
    logger.info("Shutdown complete")


app = FastAPI(
    title="Call Router API",
    description="""
    Routes inbound calls to call-center agents and tracks agent presence.

    ## Features
    - Atomic agent claims over a shared presence registry
    - Round-robin, skills-based, weighted and priority routing
    - Dial failover with per-call exclusion, hold queue fallback
    - Live agent and supervisor notifications over WebSockets

    ## Webhooks
    `/webhooks/*` endpoints are called by Twilio and validate its request
    signature when enabled.
    """,
    version=VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle Pydantic validation errors (bad webhook form, bad request body)."""
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "detail": exc.errors(),
        },
    )


@app.exception_handler(RoutingBackendError)
async def routing_backend_exception_handler(
    request: Request,
    exc: RoutingBackendError,
) -> JSONResponse:
    """A backend the router depends on is down; the request may be retried."""
    logger.error(f"Routing backend failure on {request.url.path}: {exc} {exc.context()}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "error": "Service unavailable",
            "detail": str(exc) if settings.is_development else exc.operation,
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")

    # Don't expose internal errors in production
    detail = str(exc) if settings.is_development else "Internal server error"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": detail,
        },
    )


@app.middleware("http")
async def request_timing_middleware(request: Request, call_next):
    """Log slow requests; provider webhooks must answer quickly."""
    start_time = time.time()
    try:
        return await call_next(request)
    finally:
        duration = time.time() - start_time
        if duration > settings.slow_request_seconds:
            logger.warning(f"{request.method} {request.url.path} took {duration:.3f}s")
        elif settings.debug:
            logger.debug(f"{request.method} {request.url.path} completed in {duration:.3f}s")


app.include_router(health.router)
app.include_router(webhooks.router)
app.include_router(agents.router)
app.include_router(calls.router)


@app.get("/", tags=["Root"])
async def root() -> dict:
    """Service name, version and where to find the API docs."""
    return {
        "name": settings.app_name,
        "version": VERSION,
        "status": "running",
        "environment": settings.app_env,
        "presence_backend": settings.presence_backend,
        "docs": "/docs" if settings.is_development else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
