"""
Quota Guard: per-caller daily budget for registry calls.

Every registry call is preceded by `try_consume`, which atomically checks
and increments the caller's counter for the current UTC day. `remaining`
is a pure read used to warn users before they run out.

Two stores are provided:
- InMemoryQuotaStore: per-caller lock around check-and-increment; for
  single-process deployments and tests.
- SqlQuotaStore: conditional UPDATE ... RETURNING so the database performs
  the check-and-increment atomically across processes.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from models.sql_models import QuotaCounter
from services.metrics import QUOTA_REJECTIONS, STORE_FAILURES
from utils.config import DAILY_QUOTA_LIMIT, LOW_QUOTA_WARNING_THRESHOLD
from utils.date_utils import day_bucket, next_day_boundary, utc_now
from utils.exceptions import QuotaExceededError, ServiceUnavailableError, StoreError

logger = logging.getLogger(__name__)


class QuotaStore(ABC):
    """Storage for per-caller, per-day counters."""

    @abstractmethod
    async def increment_if_below(self, caller_id: str, day: date, limit: int) -> Optional[int]:
        """Increment the counter if it is below `limit`; return the new count or None."""

    @abstractmethod
    async def get_count(self, caller_id: str, day: date) -> int:
        """Current count, 0 if the caller has no counter for `day`."""


class InMemoryQuotaStore(QuotaStore):
    def __init__(self):
        self._counts: Dict[Tuple[str, date], int] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, caller_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(caller_id)
            if lock is None:
                lock = self._locks[caller_id] = threading.Lock()
            return lock

    async def increment_if_below(self, caller_id: str, day: date, limit: int) -> Optional[int]:
        with self._lock_for(caller_id):
            count = self._counts.get((caller_id, day), 0)
            if count >= limit:
                return None
            self._counts[(caller_id, day)] = count + 1
            # drop buckets from previous days for this caller
            for key in [k for k in self._counts if k[0] == caller_id and k[1] != day]:
                del self._counts[key]
            return count + 1

    async def get_count(self, caller_id: str, day: date) -> int:
        return self._counts.get((caller_id, day), 0)


class SqlQuotaStore(QuotaStore):
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def increment_if_below(self, caller_id: str, day: date, limit: int) -> Optional[int]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    conn = await session.connection()
                    await session.execute(self._insert_if_absent(conn.dialect.name, caller_id, day))

                    result = await session.execute(
                        update(QuotaCounter)
                        .where(
                            QuotaCounter.caller_id == caller_id,
                            QuotaCounter.day == day,
                            QuotaCounter.count < limit,
                        )
                        .values(count=QuotaCounter.count + 1)
                        .returning(QuotaCounter.count)
                        .execution_options(synchronize_session=False)
                    )
                    return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            STORE_FAILURES.labels(operation="quota_increment").inc()
            logger.exception("Quota counter update failed", extra={"caller_id": caller_id})
            raise StoreError(str(e), operation="quota_increment")

    async def get_count(self, caller_id: str, day: date) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(QuotaCounter.count).where(
                    QuotaCounter.caller_id == caller_id,
                    QuotaCounter.day == day,
                )
            )
            return result.scalar_one_or_none() or 0

    @staticmethod
    def _insert_if_absent(dialect_name: str, caller_id: str, day: date):
        if dialect_name == "postgresql":
            insert = postgresql.insert
        elif dialect_name == "sqlite":
            insert = sqlite.insert
        else:
            raise StoreError(f"Unsupported database dialect: {dialect_name}", operation="quota_increment")
        return (
            insert(QuotaCounter)
            .values(caller_id=caller_id, day=day, count=0)
            .on_conflict_do_nothing(index_elements=["caller_id", "day"])
        )


@dataclass(frozen=True)
class QuotaStatus:
    caller_id: str
    limit: int
    used: int
    remaining: int
    low: bool
    resets_at: datetime


class QuotaGuard:
    """
    Enforces and reports a per-caller daily registry budget.

    The day boundary is 00:00 UTC for all callers.
    """

    def __init__(
        self,
        store: QuotaStore,
        daily_limit: int = DAILY_QUOTA_LIMIT,
        low_threshold: int = LOW_QUOTA_WARNING_THRESHOLD,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.daily_limit = daily_limit
        self.low_threshold = low_threshold
        self._clock = clock

    def with_limits(self, daily_limit: int, low_threshold: int) -> "QuotaGuard":
        """Same counters, different limits (runtime config overrides)."""
        return QuotaGuard(self.store, daily_limit, low_threshold, self._clock)

    async def try_consume(self, caller_id: str) -> int:
        """
        Atomically take one call from today's budget.

        Returns:
            Calls remaining after this one

        Raises:
            QuotaExceededError: If the budget is exhausted; nothing is consumed
            ServiceUnavailableError: If the counter store cannot be reached
        """
        now = self._clock()
        try:
            count = await self.store.increment_if_below(caller_id, day_bucket(now), self.daily_limit)
        except StoreError as e:
            logger.error(
                "Quota counter unavailable: %s", e.cause,
                extra={"caller_id": caller_id, "operation": "quota_consume", "outcome": "store_error"},
            )
            raise ServiceUnavailableError(details={"operation": "quota_consume"})
        if count is None:
            QUOTA_REJECTIONS.inc()
            logger.warning(
                "Daily registry quota exhausted (limit=%d)", self.daily_limit,
                extra={"caller_id": caller_id, "operation": "quota_consume", "outcome": "rejected"},
            )
            raise QuotaExceededError(
                caller_id,
                limit=self.daily_limit,
                details={"resets_at": next_day_boundary(now).isoformat()},
            )
        return max(self.daily_limit - count, 0)

    async def remaining(self, caller_id: str) -> int:
        """Calls left today. Read-only."""
        used = await self.store.get_count(caller_id, day_bucket(self._clock()))
        return max(self.daily_limit - used, 0)

    async def status(self, caller_id: str) -> QuotaStatus:
        now = self._clock()
        used = await self.store.get_count(caller_id, day_bucket(now))
        remaining = max(self.daily_limit - used, 0)
        return QuotaStatus(
            caller_id=caller_id,
            limit=self.daily_limit,
            used=used,
            remaining=remaining,
            low=remaining < self.low_threshold,
            resets_at=next_day_boundary(now),
        )
