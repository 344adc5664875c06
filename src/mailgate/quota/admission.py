# mailgate: Admission Controller
#
# Decides whether one outbound email may be sent under the daily cap.
#
# Increment-first design:
#   1. HIGH priority: increment, always admitted (security alerts and
#      flagged-content notices are never dropped by volume limits)
#   2. NORMAL priority: increment, then admitted iff count <= cap
#
# Rejected attempts still increment. Past the cap the counter measures
# demand rather than emails sent, which is what shows how far over
# quota the fleet is. Do not "fix" this by skipping the increment.

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from ..store.counter import UsageCounterStore
from ..store.keys import DateLike

logger = logging.getLogger(__name__)


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"

    @classmethod
    def coerce(cls, value: Union["Priority", str]) -> "Priority":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"unknown priority {value!r} (expected 'normal' or 'high')")


# Reasons carried on AdmissionResult
REASON_ADMITTED = "admitted"
REASON_CAP_EXCEEDED = "cap_exceeded"
REASON_QUOTA_LOCKED = "quota_locked"
REASON_STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class AdmissionResult:
    """Outcome of one admission attempt.

    ``count`` is the post-increment counter value. It is None when no
    counter round-trip happened (quota lock short-circuit, or a store
    outage resolved by the fail-open/fail-closed policy).
    """

    admitted: bool
    count: Optional[int]
    priority: Priority = Priority.NORMAL
    reason: str = REASON_ADMITTED

    @property
    def cap_exceeded(self) -> bool:
        return self.reason == REASON_CAP_EXCEEDED

    def to_dict(self) -> dict:
        return {
            "admitted": self.admitted,
            "count": self.count,
            "priority": self.priority.value,
            "reason": self.reason,
        }


class AdmissionController:
    """Cap check with a high-priority bypass.

    Safe for any number of concurrent ``try_admit`` calls: the only
    shared state is the Redis counter, and its INCR linearizes callers
    across the whole fleet. Store outages propagate as StoreUnavailable.
    """

    def __init__(self, counter: UsageCounterStore, daily_cap: int = 200):
        if daily_cap < 1:
            raise ValueError("daily_cap must be at least 1")
        self._counter = counter
        self._cap = daily_cap

    @property
    def daily_cap(self) -> int:
        return self._cap

    async def try_admit(
        self,
        priority: Union[Priority, str] = Priority.NORMAL,
        day: Optional[DateLike] = None,
    ) -> AdmissionResult:
        priority = Priority.coerce(priority)
        count = await self._counter.increment(day)

        if priority is Priority.HIGH:
            if count > self._cap:
                logger.info("High-priority email admitted over cap (%d/%d)", count, self._cap)
            return AdmissionResult(True, count, priority, REASON_ADMITTED)

        if count <= self._cap:
            return AdmissionResult(True, count, priority, REASON_ADMITTED)

        logger.debug("Email rejected: daily cap reached (%d/%d)", count, self._cap)
        return AdmissionResult(False, count, priority, REASON_CAP_EXCEEDED)
