"""KeyGate FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan     — @asynccontextmanager startup/shutdown sequence
  - /            — gated welcome route
  - /random-number — gated demo resource
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()            → app.state.config
  2. KeyGateService.start()   → app.state.service (LoadError aborts startup)
  3. set_issuance_rate()      → slowapi limit from config.limits
  4. app.state.ready = True

Shutdown sequence:
  app.state.ready = False → flush pending quota writes

Uvicorn defaults live in keygate/run.py.
"""

from __future__ import annotations

import os
import random
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from keygate.auth.limiter import limiter, set_issuance_rate
from keygate.auth.middleware import require_admission
from keygate.auth.router import router as keys_router
from keygate.config import Config, load_config
from keygate.errors import KeyGateError, LoadError, QuotaInvariantError
from keygate.health import router as health_router
from keygate.service import KeyGateService
from keygate.utils.logger import (
    bind_request_id,
    clear_request_id,
    configure_logging,
    get_logger,
)

# ─── Logging Setup ────────────────────────────────────────────────────────────
# Configure logging at module import time (before any other imports that may log).
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Gated Routes ─────────────────────────────────────────────────────────────
# Every route on this router counts against the caller's quota.

root_router = APIRouter(tags=["root"])


@root_router.get("/")
async def root(api_key: str = Depends(require_admission)) -> dict[str, str]:
    return {"message": "Welcome"}


@root_router.get("/random-number")
async def random_number(api_key: str = Depends(require_admission)) -> dict[str, float]:
    """Demo resource: a uniform random float in [0, 1)."""
    return {"randomNumber": random.random()}


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence.

    A LoadError from the key store propagates out of the lifespan: uvicorn
    reports a startup failure and exits non-zero before any request is served.
    """
    logger.info("KeyGate starting up...")

    # ── Step 1: Load configuration ────────────────────────────────────────────
    config: Config = load_config()
    app.state.config = config

    # ── Step 2: Load persisted state ──────────────────────────────────────────
    try:
        service = await KeyGateService.start(config)
    except LoadError as exc:
        logger.error("Refusing to start: key store could not be loaded", error=exc.message)
        raise
    app.state.service = service

    # ── Step 3: Issuance rate limit ───────────────────────────────────────────
    set_issuance_rate(config.limits.issuance_rate)

    # ── Step 4: Mark as ready ─────────────────────────────────────────────────
    app.state.ready = True
    logger.info(
        "KeyGate ready",
        keys=len(service.keys),
        max_requests=service.max_requests,
        issuance_rate=config.limits.issuance_rate,
    )

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────────
    logger.info("KeyGate shutting down...")
    app.state.ready = False
    await service.close()
    logger.info("KeyGate shutdown complete")


# ─── Exception Handlers ───────────────────────────────────────────────────────


async def _quota_invariant_handler(request: Request, exc: QuotaInvariantError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"detail": exc.message, "code": exc.code})


async def _keygate_error_handler(request: Request, exc: KeyGateError) -> JSONResponse:
    logger.error("Unhandled KeyGate error", error=exc.message, code=exc.code)
    return JSONResponse(status_code=500, content={"detail": "Internal error", "code": exc.code})


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the KeyGate FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app()

    The module-level `app` is created at import time for uvicorn:
        uvicorn keygate.main:app
    """
    application = FastAPI(
        title="KeyGate",
        description="Per-email API keys with a fixed request quota",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Not ready until lifespan startup completes
    application.state.ready = False
    application.state.service = None

    # ── Rate limiting (issuance endpoint) ─────────────────────────────────────
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    application.add_middleware(SlowAPIMiddleware)

    application.add_exception_handler(QuotaInvariantError, _quota_invariant_handler)
    application.add_exception_handler(KeyGateError, _keygate_error_handler)

    @application.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Tag every log line emitted while serving a request with its ID."""
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        bind_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_id()
        response.headers["X-Request-ID"] = request_id
        return response

    application.include_router(health_router)
    application.include_router(keys_router)
    application.include_router(root_router)

    return application


app = create_app()
