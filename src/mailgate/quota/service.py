# mailgate: Email Quota Gate
#
# The single entry point every subsystem calls before sending an email.
# Wraps the Admission Controller with the caller-side duties:
#
#   - skip the counter while the quota lock is set (normal priority only)
#   - set the quota lock, retry at next UTC midnight, on a rejection
#   - clear a leftover lock on the first admission of a new day
#   - fire threshold alerts on the admitted count
#   - resolve store outages: fail open for HIGH, fail closed for NORMAL
#
# Usage::
#
#     quota = get_quota_service()
#     result = await quota.request_send("normal")
#     if result.admitted:
#         transport.send(...)

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from ..errors import StoreUnavailable
from ..store.counter import UsageCounterStore
from ..store.keys import current_date_utc, next_utc_midnight, utc_now
from .admission import (
    REASON_QUOTA_LOCKED,
    REASON_STORE_UNAVAILABLE,
    AdmissionController,
    AdmissionResult,
    Priority,
)
from .alerts import QuotaAlerter
from .lock import QuotaLockManager

logger = logging.getLogger(__name__)


class EmailQuotaService:
    def __init__(
        self,
        counter: UsageCounterStore,
        admission: AdmissionController,
        locks: QuotaLockManager,
        alerter: Optional[QuotaAlerter] = None,
        fail_open_normal: bool = False,
        clock=utc_now,
    ):
        self._counter = counter
        self._admission = admission
        self._locks = locks
        self._alerter = alerter
        self._fail_open_normal = fail_open_normal
        self._clock = clock

    @property
    def daily_cap(self) -> int:
        return self._admission.daily_cap

    @property
    def locks(self) -> QuotaLockManager:
        return self._locks

    # ── Send path ────────────────────────────────────────────────

    async def request_send(self, priority: Union[Priority, str] = Priority.NORMAL) -> AdmissionResult:
        """Ask for permission to send one email now."""
        priority = Priority.coerce(priority)
        now = self._clock()
        day = current_date_utc(now)

        try:
            if priority is Priority.NORMAL and await self._locks.is_locked():
                return AdmissionResult(False, None, priority, REASON_QUOTA_LOCKED)
            result = await self._admission.try_admit(priority, day)
        except StoreUnavailable as exc:
            return self._resolve_outage(priority, exc)

        if not result.admitted:
            await self._lock_until_tomorrow(now, result.count)
            return result

        if result.count == 1:
            await self._clear_stale_lock()

        if self._alerter is not None:
            try:
                await self._alerter.check(result.count)
            except StoreUnavailable as exc:
                logger.warning("Threshold alert check skipped: %s", exc)
            except Exception as exc:
                # admission stands, only the alert is lost
                logger.error("Threshold alert delivery failed: %s", exc, exc_info=True)

        return result

    def _resolve_outage(self, priority: Priority, exc: StoreUnavailable) -> AdmissionResult:
        admitted = priority is Priority.HIGH or self._fail_open_normal
        logger.error(
            "Quota store unavailable (%s); %s %s-priority email",
            exc.operation,
            "admitting" if admitted else "rejecting",
            priority.value,
        )
        get_audit_logger().log_event(
            EventType.QUOTA_STORE_UNAVAILABLE,
            EventSeverity.ALERT,
            f"Quota store unavailable during {exc.operation}",
            details={"priority": priority.value, "admitted": admitted, "error": str(exc.cause)},
        )
        return AdmissionResult(admitted, None, priority, REASON_STORE_UNAVAILABLE)

    async def _lock_until_tomorrow(self, now: datetime, count: Optional[int]) -> None:
        retry_at = next_utc_midnight(now)
        try:
            await self._locks.set_lock(retry_at)
        except StoreUnavailable as exc:
            logger.warning("Could not set quota lock: %s", exc)
            return
        get_audit_logger().log_event(
            EventType.QUOTA_LOCKED,
            EventSeverity.ALERT,
            f"Daily email cap reached ({count}/{self.daily_cap}), locked until {retry_at.isoformat()}",
            details={"count": count, "cap": self.daily_cap, "next_retry": retry_at.isoformat()},
        )

    async def _clear_stale_lock(self) -> None:
        try:
            if await self._locks.clear_lock():
                get_audit_logger().log_event(
                    EventType.QUOTA_LOCK_CLEARED,
                    EventSeverity.INFO,
                    "Quota lock cleared by first admission of the day",
                )
        except StoreUnavailable as exc:
            logger.warning("Could not clear quota lock: %s", exc)

    # ── Read-only status ─────────────────────────────────────────

    async def is_quota_locked(self) -> bool:
        return await self._locks.is_locked()

    async def get_next_retry_time(self) -> Optional[datetime]:
        return await self._locks.get_next_retry()

    async def status(self) -> Dict[str, Any]:
        """Snapshot for dashboards. Raises StoreUnavailable on outage."""
        day = current_date_utc(self._clock())
        count = await self._counter.peek(day)
        next_retry = await self._locks.get_next_retry()
        return {
            "date": day,
            "count": count,
            "cap": self.daily_cap,
            "remaining": max(0, self.daily_cap - count),
            "over_quota_by": max(0, count - self.daily_cap),
            "locked": await self._locks.is_locked(),
            "next_retry": next_retry.isoformat() if next_retry else None,
        }
