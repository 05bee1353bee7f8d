"""
Dynamic Configuration Service.

Runtime-configurable verification settings. Overrides live in the
`system_configs` table; a key without an override falls back to the
static default in ``utils/config.py``.

Usage
-----
    from services.config_service import load_verification_settings, set_dynamic_config

    settings = await load_verification_settings(db)
    await set_dynamic_config(db, "MATCH_THRESHOLD", "0.8")
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.sql_models import SystemConfig
from utils import config as static_config
from utils.exceptions import InvalidInputError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigurableKey:
    cast: Callable[[str], Any]
    description: str
    validate: Callable[[Any], bool]
    rule: str


def _fraction(value: float) -> bool:
    return 0.0 < value <= 1.0


def _non_negative(value: int) -> bool:
    return value >= 0


CONFIGURABLE_KEYS: Dict[str, ConfigurableKey] = {
    "MATCH_THRESHOLD": ConfigurableKey(
        cast=float,
        description="Minimum registry score (0.0-1.0) for a match, shared by attribute and face checks",
        validate=_fraction,
        rule="a number in (0, 1]",
    ),
    "DAILY_QUOTA_LIMIT": ConfigurableKey(
        cast=int,
        description="Registry calls allowed per caller per UTC day",
        validate=_non_negative,
        rule="an integer >= 0",
    ),
    "LOW_QUOTA_WARNING_THRESHOLD": ConfigurableKey(
        cast=int,
        description="Warn the user when fewer registry calls than this remain",
        validate=_non_negative,
        rule="an integer >= 0",
    ),
    "FRAME_MAX_AGE_SECONDS": ConfigurableKey(
        cast=int,
        description="Maximum age of a captured frame accepted for face matching",
        validate=_non_negative,
        rule="an integer >= 0",
    ),
}


@dataclass(frozen=True)
class VerificationSettings:
    """Effective settings for one request."""
    match_threshold: float
    daily_quota_limit: int
    low_quota_warning_threshold: int
    frame_max_age_seconds: int


def _static_default(key: str) -> Any:
    return getattr(static_config, key)


def require_configurable_key(key: str) -> ConfigurableKey:
    """Raises InvalidInputError (field="key") for keys that cannot be overridden."""
    meta = CONFIGURABLE_KEYS.get(key)
    if meta is None:
        raise InvalidInputError(
            f"Unknown config key: '{key}'",
            field="key",
            details={"valid_keys": list(CONFIGURABLE_KEYS)},
        )
    return meta


def parse_config_value(key: str, raw: str) -> Any:
    """
    Cast and validate a raw string for a configurable key.

    Raises:
        InvalidInputError: If the key is unknown or the value is out of range
    """
    meta = require_configurable_key(key)
    try:
        value = meta.cast(raw)
    except (TypeError, ValueError):
        raise InvalidInputError(f"{key} must be {meta.rule}", field="value")
    if not meta.validate(value):
        raise InvalidInputError(f"{key} must be {meta.rule}", field="value")
    return value


async def get_dynamic_config(db: AsyncSession, key: str) -> Any:
    """Get one config value. DB override wins; otherwise the static default."""
    default = _static_default(key)
    row = await db.get(SystemConfig, key)
    if row is None:
        return default
    try:
        return parse_config_value(key, row.value)
    except InvalidInputError:
        logger.warning("Bad DB value for %s (%r); using default", key, row.value)
        return default


async def load_verification_settings(db: AsyncSession) -> VerificationSettings:
    """Resolve every verification setting in one query."""
    result = await db.execute(
        select(SystemConfig).where(SystemConfig.key.in_(list(CONFIGURABLE_KEYS)))
    )
    overrides = {row.key: row.value for row in result.scalars().all()}

    values = {}
    for key in CONFIGURABLE_KEYS:
        values[key] = _static_default(key)
        if key in overrides:
            try:
                values[key] = parse_config_value(key, overrides[key])
            except InvalidInputError:
                logger.warning("Bad DB value for %s (%r); using default", key, overrides[key])

    return VerificationSettings(
        match_threshold=values["MATCH_THRESHOLD"],
        daily_quota_limit=values["DAILY_QUOTA_LIMIT"],
        low_quota_warning_threshold=values["LOW_QUOTA_WARNING_THRESHOLD"],
        frame_max_age_seconds=values["FRAME_MAX_AGE_SECONDS"],
    )


async def set_dynamic_config(
    db: AsyncSession,
    key: str,
    value: str,
    description: Optional[str] = None,
) -> SystemConfig:
    """Create or update a config override after validating it."""
    parse_config_value(key, value)

    row = await db.get(SystemConfig, key)
    if row:
        row.value = value
        if description is not None:
            row.description = description
    else:
        row = SystemConfig(
            key=key,
            value=value,
            description=description or CONFIGURABLE_KEYS[key].description,
        )
        db.add(row)

    await db.flush()
    return row


async def get_all_configs(db: AsyncSession) -> List[dict]:
    """Return every configurable key with its effective (DB or default) value."""
    result = await db.execute(select(SystemConfig))
    db_rows = {r.key: r for r in result.scalars().all()}

    configs = []
    for key, meta in CONFIGURABLE_KEYS.items():
        default = _static_default(key)
        effective, source = default, "default"
        db_row = db_rows.get(key)
        if db_row:
            try:
                effective, source = parse_config_value(key, db_row.value), "database"
            except InvalidInputError:
                logger.warning("Bad DB value for %s (%r); listing default", key, db_row.value)

        configs.append({
            "key": key,
            "value": effective,
            "default_value": default,
            "source": source,
            "description": meta.description,
        })

    return configs


async def delete_dynamic_config(db: AsyncSession, key: str) -> bool:
    """Remove a DB override so the key reverts to its static default."""
    row = await db.get(SystemConfig, key)
    if row:
        await db.delete(row)
        await db.flush()
        return True
    return False
