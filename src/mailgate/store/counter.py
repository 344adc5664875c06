# mailgate: Usage Counter Store
#
# Thin wrapper over the shared Redis instance that owns the per-day
# email counter. Redis INCR is the only source of ordering: there is no
# client-side lock and no read-modify-write anywhere on this path, so
# any number of processes can increment concurrently.

import logging
from typing import Optional

from .keys import COUNTER_TTL_SECONDS, DateLike, KeySpace, current_date_utc
from .redis_client import guarded

logger = logging.getLogger(__name__)


class UsageCounterStore:
    """Per-UTC-day email counter backed by Redis.

    Usage::

        counter = UsageCounterStore(redis_client)
        count = await counter.increment("2025-11-11")   # 1, 2, 3 ...
        await counter.peek("2025-11-11")                # no mutation
    """

    def __init__(
        self,
        client,
        keys: Optional[KeySpace] = None,
        ttl_seconds: int = COUNTER_TTL_SECONDS,
        timeout: float = 2.0,
    ):
        self._client = client
        self._keys = keys or KeySpace()
        self._ttl = ttl_seconds
        self._timeout = timeout

    @property
    def keys(self) -> KeySpace:
        return self._keys

    async def increment(self, day: Optional[DateLike] = None) -> int:
        """Atomically add one to the day's counter and return the new value.

        The key is created at 0 by INCR when absent. The TTL is applied
        only when the key has none, which covers both a fresh key and a
        key orphaned by a crash between INCR and EXPIRE.
        """
        key = self._keys.email_quota(day or current_date_utc())
        new_count, ttl = await guarded("counter.increment", self._incr(key), self._timeout)
        if ttl < 0:
            await guarded(
                "counter.expire",
                self._client.expire(key, self._ttl),
                self._timeout,
            )
        return int(new_count)

    async def _incr(self, key: str):
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.ttl(key)
            return await pipe.execute()

    async def peek(self, day: Optional[DateLike] = None) -> int:
        """Read the day's counter without mutating it (0 if absent)."""
        key = self._keys.email_quota(day or current_date_utc())
        raw = await guarded("counter.peek", self._client.get(key), self._timeout)
        return int(raw) if raw is not None else 0

    async def reset(self, day: Optional[DateLike] = None) -> None:
        """Delete the day's counter."""
        key = self._keys.email_quota(day or current_date_utc())
        await guarded("counter.reset", self._client.delete(key), self._timeout)
        logger.info("Usage counter reset: %s", key)
