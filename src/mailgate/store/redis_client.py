# mailgate: Shared Redis Client
#
# One asyncio Redis client per process. Services, jobs and routes share
# it instead of opening their own connection pools.

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from ..errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

_client: Optional[aioredis.Redis] = None


def get_redis_client(url: Optional[str] = None) -> aioredis.Redis:
    """Get or create the process-wide Redis client."""
    global _client
    if _client is None:
        if url is None:
            from ..config import get_settings

            url = get_settings().redis_url
        _client = aioredis.Redis.from_url(
            url,
            decode_responses=True,
            health_check_interval=30,
            retry_on_timeout=False,
        )
        logger.info("Redis client created for %s", url.split("@")[-1])
    return _client


async def close_redis_client() -> None:
    """Close the shared client (call on SIGTERM)."""
    global _client
    if _client is not None:
        logger.info("Disconnecting Redis...")
        await _client.aclose()
        _client = None


async def guarded(operation: str, awaitable: Awaitable[T], timeout: float) -> T:
    """Await a store call with a deadline, mapping outages to StoreUnavailable.

    Any RedisError counts as an outage (read-only replica during failover,
    OOM or MISCONF replies), except WatchError, which callers running
    optimistic transactions handle themselves.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except WatchError:
        raise
    except (RedisError, asyncio.TimeoutError, OSError) as exc:
        logger.warning("Store call %s failed: %s", operation, exc)
        raise StoreUnavailable(operation, exc) from exc
