"""
API Routes Module.

This module combines all route modules into a single router for the
identity verification API (mounted under /api/v1).
"""
from fastapi import APIRouter

from .health import router as health_router
from .verification import router as verification_router
from .admin_config import router as admin_config_router

# Combined router that includes all sub-routers
router = APIRouter()

router.include_router(health_router)
router.include_router(verification_router)
router.include_router(admin_config_router)

__all__ = ["router"]
