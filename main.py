"""
Identity Verification API

Verifies a user's national identity number against the external identity
registry, either by biographic attributes or by a live face photo, and
records successful verifications on the user's trust profile.

Usage:
    uvicorn main:app --reload

Then access the API documentation at http://localhost:8000/docs
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.dependencies import build_camera_backend, build_services
from utils.exceptions import AppError
from utils.logging_config import configure_logging
from utils.config import ADMIN_API_KEYS, API_KEYS, LOG_LEVEL, LOG_JSON_FORMAT
from middleware.request_id import RequestIDMiddleware
from middleware.api_key import APIKeyMiddleware
from services.db import AsyncSessionLocal, engine, init_db

# Configure structured JSON logging
configure_logging(level=LOG_LEVEL, json_format=LOG_JSON_FORMAT)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.

    Creates tables (Alembic manages production schemas) and wires the
    verification services onto app.state.
    """
    logger.info("Starting Identity Verification API...")

    await init_db()
    services = build_services(AsyncSessionLocal, camera_backend=build_camera_backend())
    app.state.services = services
    logger.info(
        "Registry transport: %s, camera backend: %s",
        services.transport.name,
        type(services.camera_backend).__name__ if services.camera_backend else "none",
    )

    logger.info("Identity Verification API ready!")

    yield  # Application runs here

    logger.info("Shutting down Identity Verification API...")
    # release any camera still held by an open session
    services.sessions.close_all()
    await engine.dispose()


# Create FastAPI application
app = FastAPI(
    title="Identity Verification API",
    description="""
    Identity verification against the national identity registry.

    ## Methods

    * **Attribute match**: identity number + name + birth date (+ optional birth place, nationality, residence)
    * **Face match**: identity number + a live photo, taken by the server camera or uploaded by the browser

    ## Workflow

    1. `POST /api/v1/verification/sessions` opens a session (one active session per user)
    2. Face sessions: `/capture` or `/frame`, then confirm or `/retake`
    3. `/submit` calls the registry once; the session ends `success` or `failed` with a recovery hint
    4. `/retry` after a failure, `/cancel` at any time

    Each user has a daily registry budget (resets at 00:00 UTC); see `/verification/quota/{user_id}`.
    """,
    version="0.1.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from api.routes.metrics import MetricsMiddleware, router as metrics_router

# Add custom middleware (order matters: last added = outermost)
app.add_middleware(MetricsMiddleware)
app.add_middleware(APIKeyMiddleware, api_keys=API_KEYS, admin_api_keys=ADMIN_API_KEYS)
app.add_middleware(RequestIDMiddleware)


# =============================================================================
# GLOBAL EXCEPTION HANDLER
# =============================================================================

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    """
    Global handler for all AppError exceptions.

    Converts custom exceptions to consistent JSON responses.
    """
    if exc.status_code >= 500:
        logger.error(f"[{exc.code}] {exc.message} | Details: {exc.details}")
    else:
        logger.warning(f"[{exc.code}] {exc.message} | Details: {exc.details}")
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict()
    )

# Include API routes
from api.routes import router as production_router
app.include_router(production_router, prefix="/api/v1")
app.include_router(metrics_router)  # /metrics at root level


@app.get("/api")
async def api_info():
    """API information endpoint."""
    return {
        "name": "Identity Verification API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/api/v1/health"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=False
    )
