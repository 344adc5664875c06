# mailgate: Quota Lock Manager
#
# Once the day's cap is known to be exhausted, callers can check this
# flag instead of incrementing the counter. The flag is an optimization
# only: admission is decided by the counter comparison.
#
# The flag and the next-retry timestamp are written in one MULTI/EXEC,
# timestamp first, and deleted by a single DEL, so a reader that sees
# the flag always finds the timestamp too. Both keys expire at the
# next-retry instant.

import logging
from datetime import datetime, timezone
from typing import Optional

from ..store.keys import KeySpace, seconds_until, utc_now
from ..store.redis_client import guarded

logger = logging.getLogger(__name__)


class QuotaLockManager:
    def __init__(self, client, keys: Optional[KeySpace] = None, timeout: float = 2.0, clock=utc_now):
        self._client = client
        self._keys = keys or KeySpace()
        self._timeout = timeout
        self._clock = clock

    async def set_lock(self, next_retry_at: datetime) -> datetime:
        """Mark the quota exhausted until ``next_retry_at`` (idempotent)."""
        if next_retry_at.tzinfo is None:
            next_retry_at = next_retry_at.replace(tzinfo=timezone.utc)
        ttl = seconds_until(next_retry_at, self._clock())
        await guarded("quota_lock.set", self._write(next_retry_at, ttl), self._timeout)
        logger.info("Email quota locked until %s", next_retry_at.isoformat())
        return next_retry_at

    async def _write(self, next_retry_at: datetime, ttl: int):
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(self._keys.quota_next_retry, next_retry_at.isoformat(), ex=ttl)
            pipe.set(self._keys.quota_locked, "1", ex=ttl)
            return await pipe.execute()

    async def is_locked(self) -> bool:
        value = await guarded(
            "quota_lock.is_locked", self._client.get(self._keys.quota_locked), self._timeout
        )
        return value == "1"

    async def get_next_retry(self) -> Optional[datetime]:
        raw = await guarded(
            "quota_lock.next_retry",
            self._client.get(self._keys.quota_next_retry),
            self._timeout,
        )
        if raw is None:
            return None
        return datetime.fromisoformat(raw)

    async def clear_lock(self) -> bool:
        """Remove the flag and timestamp. Returns True if a lock was present."""
        removed = await guarded(
            "quota_lock.clear",
            self._client.delete(self._keys.quota_locked, self._keys.quota_next_retry),
            self._timeout,
        )
        if removed:
            logger.info("Email quota lock cleared")
        return bool(removed)
