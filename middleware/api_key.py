"""
API Key Authentication Middleware for the identity verification API.

Validates the X-API-Key header against configured API keys.
Health, metrics and docs stay public. Admin config routes additionally
require a key from ADMIN_API_KEYS when that list is configured.
"""
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse


logger = logging.getLogger(__name__)

# Endpoints that don't require authentication
PUBLIC_PATHS = {
    "/",
    "/api",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/api/v1/health",
    "/metrics",
}

ADMIN_PREFIX = "/api/v1/admin/"


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={
            "status": "error",
            "code": "UNAUTHORIZED",
            "message": message,
            "details": {},
        },
    )


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Middleware to validate API key authentication."""

    def __init__(self, app, api_keys: list[str] = None, admin_api_keys: list[str] = None):
        """
        Initialize API Key middleware.

        Args:
            app: ASGI application
            api_keys: List of valid API keys. If empty/None, auth is disabled.
            admin_api_keys: Keys allowed on /admin routes. If empty/None,
                any valid API key is accepted there.
        """
        super().__init__(app)
        self.api_keys = set(api_keys) if api_keys else set()
        self.admin_api_keys = set(admin_api_keys) if admin_api_keys else set()
        self.auth_enabled = len(self.api_keys) > 0

        if self.auth_enabled:
            logger.info(f"API Key authentication enabled with {len(self.api_keys)} key(s)")
        else:
            logger.info("API Key authentication disabled (no keys configured)")

    async def dispatch(self, request: Request, call_next):
        if not self.auth_enabled:
            return await call_next(request)

        path = request.url.path
        if path in PUBLIC_PATHS:
            return await call_next(request)

        api_key = request.headers.get("X-API-Key")
        if not api_key:
            logger.warning(f"Missing API key for {request.method} {path}")
            return _unauthorized("Missing X-API-Key header")

        if api_key not in self.api_keys:
            logger.warning(f"Invalid API key for {request.method} {path}")
            return _unauthorized("Invalid API key")

        if path.startswith(ADMIN_PREFIX) and self.admin_api_keys and api_key not in self.admin_api_keys:
            logger.warning(f"Non-admin API key used for {request.method} {path}")
            return _unauthorized("API key is not allowed to change configuration")

        return await call_next(request)
