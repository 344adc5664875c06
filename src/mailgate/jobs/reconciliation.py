# mailgate: Nightly Reconciliation Job
#
# Copies the fast Redis counter into the durable usage ledger. Redis is
# authoritative during the day but volatile (TTL-bound, can be flushed);
# the ledger is durable but only as fresh as the last run.
#
# Each run:
#   1. finalizes yesterday: its counter still lives (48h TTL) and now
#      includes the sends after yesterday's 23:59 run. Persist it, then
#      delete the key.
#   2. snapshots today.
#   3. clears a quota lock whose retry time has already passed.
#
# Idempotent: the ledger's count is overwritten with the observed value,
# never added to, so a second run (lock TTL race, manual re-run) leaves
# the rows exactly as they were.

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from ..errors import ReconciliationConflict
from ..quota.lock import QuotaLockManager
from ..storage.ledger import EmailUsageLedger
from ..store.counter import UsageCounterStore
from ..store.keys import DateLike, date_key, utc_now

logger = logging.getLogger(__name__)

RECONCILIATION_JOB_NAME = "reconciliation"


@dataclass
class ReconciliationResult:
    date: str
    observed: int
    ledger_count: int
    previous_snapshot: Optional[int]
    changed: bool
    conflict: bool = False
    counter_reset: bool = False

    @property
    def delta(self) -> int:
        return self.ledger_count - (self.previous_snapshot or 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "observed": self.observed,
            "ledger_count": self.ledger_count,
            "previous_snapshot": self.previous_snapshot,
            "delta": self.delta,
            "changed": self.changed,
            "conflict": self.conflict,
            "counter_reset": self.counter_reset,
        }


class ReconciliationJob:
    def __init__(
        self,
        counter: UsageCounterStore,
        ledger: EmailUsageLedger,
        locks: Optional[QuotaLockManager] = None,
        clock=utc_now,
    ):
        self._counter = counter
        self._ledger = ledger
        self._locks = locks
        self._clock = clock

    async def run(self) -> List[ReconciliationResult]:
        """Nightly entry point: finalize yesterday, snapshot today."""
        now = self._clock()
        today = now.date()
        results = [
            await self.reconcile(today - timedelta(days=1), finalize=True),
            await self.reconcile(today),
        ]
        await self._clear_stale_lock(now)
        return results

    async def reconcile(self, day: DateLike, finalize: bool = False) -> ReconciliationResult:
        """Copy one date's counter into the ledger.

        Args:
            day: UTC date to reconcile.
            finalize: Delete the counter key once its value is persisted
                (only for dates that can no longer receive sends).
        """
        key = date_key(day)
        observed = await self._counter.peek(key)
        existing = self._ledger.get(key)

        if observed == 0:
            # Nothing to copy: either no sends, or the counter is gone.
            if existing is not None and not finalize:
                logger.warning(
                    "Counter for %s missing but ledger holds %d; keeping ledger",
                    key,
                    existing.count,
                )
            ledger_count = existing.count if existing else 0
            previous = existing.last_snapshot_count if existing else None
            return ReconciliationResult(key, 0, ledger_count, previous, changed=False)

        outcome = self._ledger.record_snapshot(key, observed, self._clock())
        result = ReconciliationResult(
            date=key,
            observed=observed,
            ledger_count=outcome.row.count,
            previous_snapshot=outcome.previous_snapshot,
            changed=outcome.changed,
            conflict=outcome.regressed,
        )

        if outcome.regressed:
            self._report_conflict(ReconciliationConflict(key, observed, outcome.row.count))
        elif outcome.changed:
            logger.info(
                "Reconciliation complete: %d emails on %s (previous snapshot %s)",
                observed,
                key,
                outcome.previous_snapshot,
            )
            get_audit_logger().log_event(
                EventType.RECONCILIATION_SNAPSHOT,
                EventSeverity.INFO,
                f"Ledger snapshot for {key}: {observed}",
                details=result.to_dict(),
            )

        if finalize and not outcome.regressed:
            await self._counter.reset(key)
            result.counter_reset = True

        return result

    async def heal_on_boot(self) -> Optional[ReconciliationResult]:
        """Catch up today's snapshot at worker start if the ledger lags the counter."""
        key = date_key(self._clock())
        observed = await self._counter.peek(key)
        if observed == 0:
            return None
        row = self._ledger.get(key)
        if row is not None and row.last_snapshot_count >= observed:
            return None
        logger.info(
            "Reconciling email usage on boot: counter=%d ledger=%d",
            observed,
            row.last_snapshot_count if row else 0,
        )
        return await self.reconcile(key)

    def _report_conflict(self, conflict: ReconciliationConflict) -> None:
        logger.warning("%s; ledger kept (not retried)", conflict)
        get_audit_logger().log_event(
            EventType.RECONCILIATION_CONFLICT,
            EventSeverity.WARNING,
            str(conflict),
            details={
                "date": conflict.day,
                "observed": conflict.observed,
                "ledger_count": conflict.ledger_count,
            },
        )

    async def _clear_stale_lock(self, now: datetime) -> None:
        if self._locks is None or not await self._locks.is_locked():
            return
        retry_at = await self._locks.get_next_retry()
        if retry_at is not None and retry_at <= now:
            await self._locks.clear_lock()
            get_audit_logger().log_event(
                EventType.QUOTA_LOCK_CLEARED,
                EventSeverity.INFO,
                "Stale quota lock cleared by reconciliation",
                details={"next_retry": retry_at.isoformat()},
            )
