"""Health check endpoints."""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import VerificationServices, get_services
from models.schemas import HealthResponse
from services.db import get_db
from services.registry_client import DirectRegistryTransport, ServerMediatedTransport

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


def _registry_configured(services: VerificationServices) -> bool:
    transport = services.transport
    if isinstance(transport, DirectRegistryTransport):
        return transport.is_configured
    if isinstance(transport, ServerMediatedTransport):
        return bool(transport.server_url)
    return True


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    services: VerificationServices = Depends(get_services),
):
    """
    Check that the database answers and the registry transport is configured.
    """
    database_ready = False
    try:
        await db.execute(text("SELECT 1"))
        database_ready = True
    except SQLAlchemyError as e:
        logger.error("Health check: database unavailable: %s", e)

    return HealthResponse(
        status="ok" if database_ready else "degraded",
        database_ready=database_ready,
        registry_configured=_registry_configured(services),
        registry_transport=services.transport.name,
        camera_backend=type(services.camera_backend).__name__ if services.camera_backend else None,
    )
