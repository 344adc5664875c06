# mailgate: Email Usage Ledger (SQLite)
#
# Durable, append-only history of daily email usage: one row per UTC
# date. Rows are created lazily by the first reconciliation of a date
# and only ever written by the reconciliation job; dashboards and
# alerting read them. Rows are never deleted.

import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.db import connect as db_connect
from ..store.keys import DateLike, date_key


@dataclass(frozen=True)
class LedgerRow:
    date: str
    count: int
    last_snapshot_count: int
    updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "count": self.count,
            "last_snapshot_count": self.last_snapshot_count,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class SnapshotOutcome:
    """Result of one ledger write attempt."""

    row: LedgerRow
    previous_snapshot: Optional[int]  # None when the row was created
    changed: bool
    regressed: bool = False  # observed value below the ledger; row kept

    @property
    def delta(self) -> int:
        return self.row.last_snapshot_count - (self.previous_snapshot or 0)


class EmailUsageLedger:
    """SQLite-backed durable copy of the daily counter.

    Thread-safe via a reentrant lock around every statement.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = db_connect(db_path, check_same_thread=False, row_factory=True)
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS email_usage (
                    date                TEXT    PRIMARY KEY,
                    count               INTEGER NOT NULL DEFAULT 0,
                    last_snapshot_count INTEGER NOT NULL DEFAULT 0,
                    updated_at          TEXT    NOT NULL
                );
                """
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, day: DateLike) -> Optional[LedgerRow]:
        with self._lock:
            row = self._conn.execute(
                "SELECT date, count, last_snapshot_count, updated_at "
                "FROM email_usage WHERE date = ?",
                (date_key(day),),
            ).fetchone()
        return self._to_row(row) if row else None

    def recent(self, limit: int = 30) -> List[LedgerRow]:
        """Most recent rows, newest date first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT date, count, last_snapshot_count, updated_at "
                "FROM email_usage ORDER BY date DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._to_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Writes (reconciliation job only)
    # ------------------------------------------------------------------

    def record_snapshot(
        self, day: DateLike, count: int, now: Optional[datetime] = None
    ) -> SnapshotOutcome:
        """Overwrite the day's count with an observed counter value.

        Read-then-overwrite, never add: recording the same value twice
        leaves the row untouched, including ``updated_at``.

        Concurrent writers for one date are last-write-wins only while the
        observed value does not fall: a value lower than the stored count
        (counter flushed or reset) is not written and comes back with
        ``regressed=True``. The upsert's WHERE clause enforces this
        atomically.
        """
        if count < 0:
            raise ValueError("count cannot be negative")
        key = date_key(day)
        stamp = (now or datetime.now(timezone.utc)).isoformat()

        with self._lock:
            existing = self.get(key)
            previous = existing.last_snapshot_count if existing else None
            if existing is not None and (
                existing.count == count and existing.last_snapshot_count == count
            ):
                return SnapshotOutcome(existing, previous, False)

            try:
                cur = self._conn.execute(
                    """
                    INSERT INTO email_usage (date, count, last_snapshot_count, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(date) DO UPDATE SET
                        count = excluded.count,
                        last_snapshot_count = excluded.last_snapshot_count,
                        updated_at = excluded.updated_at
                    WHERE excluded.count >= email_usage.count
                    """,
                    (key, count, count, stamp),
                )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise

            row = self.get(key)
        if cur.rowcount == 0:
            return SnapshotOutcome(row, previous, False, regressed=True)
        return SnapshotOutcome(row, previous, True)

    @staticmethod
    def _to_row(row) -> LedgerRow:
        return LedgerRow(
            date=row["date"],
            count=int(row["count"]),
            last_snapshot_count=int(row["last_snapshot_count"]),
            updated_at=row["updated_at"],
        )
