"""
Admin Configuration API – runtime overrides for verification settings.

Routes
------
GET    /admin/config              – every configurable key with its effective value
GET    /admin/config/effective    – the resolved settings the next submit will use
POST   /admin/config              – set one override (validated before saving)
DELETE /admin/config/{key}        – drop an override, back to the static default

Overrides take effect on the next request; open sessions pick up a new
MATCH_THRESHOLD or quota limit at their next submit.
"""
import logging
from typing import Any, List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_settings
from services.config_service import (
    VerificationSettings,
    delete_dynamic_config,
    get_all_configs,
    parse_config_value,
    require_configurable_key,
    set_dynamic_config,
)
from services.db import get_db

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin/config", tags=["Admin Config"])


class ConfigEntry(BaseModel):
    key: str
    value: Any
    default_value: Any
    source: Literal["default", "database"]
    description: str


class ConfigListResponse(BaseModel):
    configs: List[ConfigEntry]
    total: int


class ConfigUpdateRequest(BaseModel):
    key: str = Field(..., examples=["MATCH_THRESHOLD"])
    value: str = Field(..., description="Sent as a string; cast and range-checked per key", examples=["0.75"])
    description: Optional[str] = None


class ConfigUpdateResponse(BaseModel):
    key: str
    value: Any
    previous_value: Any
    message: str


class ConfigDeleteResponse(BaseModel):
    key: str
    reverted: bool
    message: str


def _effective(configs: List[dict], key: str) -> Any:
    return next(c["value"] for c in configs if c["key"] == key)


@router.get("", response_model=ConfigListResponse)
async def list_configs(db: AsyncSession = Depends(get_db)):
    configs = await get_all_configs(db)
    return ConfigListResponse(configs=configs, total=len(configs))


@router.get("/effective", response_model=VerificationSettings)
async def effective_settings(settings: VerificationSettings = Depends(get_settings)):
    """Threshold, quota and frame-age values as a submit would resolve them now."""
    return settings


@router.post("", response_model=ConfigUpdateResponse)
async def update_config(
    body: ConfigUpdateRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Set an override. Unknown keys and out-of-range values return 422 and
    nothing is written.
    """
    value = parse_config_value(body.key, body.value)
    previous = _effective(await get_all_configs(db), body.key)

    await set_dynamic_config(db, body.key, body.value, body.description)
    # thresholds and quotas are audit-relevant
    logger.warning("Verification setting %s changed: %s -> %s", body.key, previous, value,
                   extra={"operation": "config_update"})
    return ConfigUpdateResponse(
        key=body.key,
        value=value,
        previous_value=previous,
        message=f"{body.key} applies from the next verification request",
    )


@router.delete("/{key}", response_model=ConfigDeleteResponse)
async def revert_config(
    key: str,
    db: AsyncSession = Depends(get_db),
):
    require_configurable_key(key)

    reverted = await delete_dynamic_config(db, key)
    if reverted:
        logger.warning("Verification setting %s reverted to default", key, extra={"operation": "config_revert"})
    return ConfigDeleteResponse(
        key=key,
        reverted=reverted,
        message=f"{key} reverted to default" if reverted else f"{key} was already using the default value",
    )
