# mailgate: Shared Fast Store
#
# Key layout, the shared Redis client and the per-day usage counter.

from .counter import UsageCounterStore
from .keys import (
    COUNTER_TTL_SECONDS,
    KeySpace,
    current_date_utc,
    next_utc_midnight,
)
from .redis_client import close_redis_client, get_redis_client

__all__ = [
    "COUNTER_TTL_SECONDS",
    "KeySpace",
    "UsageCounterStore",
    "close_redis_client",
    "current_date_utc",
    "get_redis_client",
    "next_utc_midnight",
]
