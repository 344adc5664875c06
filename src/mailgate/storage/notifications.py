# mailgate: Notification Records & Preferences
#
# Notifications and per-user email preferences are owned by the
# notification-creation subsystem. The digest job only reads them,
# through the NotificationSource protocol. SqliteNotificationStore is
# the implementation the worker uses by default (and the tests use);
# applications with their own schema plug in their own source.

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Protocol

from ..core.db import connect as db_connect


class NotificationType(str, Enum):
    NEW_TESTIMONIAL = "new_testimonial"
    TESTIMONIAL_APPROVED = "testimonial_approved"
    TESTIMONIAL_REJECTED = "testimonial_rejected"
    TESTIMONIAL_FLAGGED = "testimonial_flagged"
    SECURITY_ALERT = "security_alert"
    SYSTEM = "system"


# Sent immediately by the notification worker, never batched into a digest.
CRITICAL_TYPES: FrozenSet[NotificationType] = frozenset(
    {NotificationType.TESTIMONIAL_FLAGGED, NotificationType.SECURITY_ALERT}
)


def is_critical(ntype: NotificationType) -> bool:
    return NotificationType(ntype) in CRITICAL_TYPES


@dataclass
class NotificationRecord:
    user_id: str
    type: NotificationType
    title: str
    message: str = ""
    link: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def critical(self) -> bool:
        return is_critical(self.type)


@dataclass(frozen=True)
class Recipient:
    user_id: str
    email: str
    name: str = ""


class NotificationSource(Protocol):
    def list_since(
        self,
        user_id: str,
        since: datetime,
        exclude_types: Iterable[NotificationType] = (),
        limit: Optional[int] = None,
    ) -> List[NotificationRecord]: ...

    def list_users_with_email_enabled(self) -> List[Recipient]: ...


def _iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SqliteNotificationStore:
    """SQLite-backed NotificationSource (plus the writes tests and demos need)."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = db_connect(db_path, check_same_thread=False, row_factory=True)
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id    TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    name  TEXT NOT NULL DEFAULT ''
                );

                CREATE TABLE IF NOT EXISTS notification_preferences (
                    user_id       TEXT    PRIMARY KEY
                                  REFERENCES users(id) ON DELETE CASCADE,
                    email_enabled INTEGER NOT NULL DEFAULT 1
                );

                CREATE TABLE IF NOT EXISTS notifications (
                    id         TEXT PRIMARY KEY,
                    user_id    TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    type       TEXT NOT NULL,
                    title      TEXT NOT NULL,
                    message    TEXT NOT NULL DEFAULT '',
                    link       TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_notifications_user_created
                    ON notifications(user_id, created_at);
                """
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_user(self, user_id: str, email: str, name: str = "", email_enabled: bool = True) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO users (id, email, name) VALUES (?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET email = excluded.email, name = excluded.name",
                (user_id, email, name),
            )
            self._conn.execute(
                "INSERT INTO notification_preferences (user_id, email_enabled) VALUES (?, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET email_enabled = excluded.email_enabled",
                (user_id, int(email_enabled)),
            )
            self._conn.commit()

    def set_email_enabled(self, user_id: str, enabled: bool) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE notification_preferences SET email_enabled = ? WHERE user_id = ?",
                (int(enabled), user_id),
            )
            self._conn.commit()

    def add(self, record: NotificationRecord) -> NotificationRecord:
        with self._lock:
            self._conn.execute(
                "INSERT INTO notifications (id, user_id, type, title, message, link, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.user_id,
                    NotificationType(record.type).value,
                    record.title,
                    record.message,
                    record.link,
                    _iso(record.created_at),
                ),
            )
            self._conn.commit()
        return record

    # ------------------------------------------------------------------
    # NotificationSource
    # ------------------------------------------------------------------

    def list_since(
        self,
        user_id: str,
        since: datetime,
        exclude_types: Iterable[NotificationType] = (),
        limit: Optional[int] = None,
    ) -> List[NotificationRecord]:
        """Notifications for ``user_id`` created at or after ``since``, newest first."""
        excluded = [NotificationType(t).value for t in exclude_types]
        sql = "SELECT * FROM notifications WHERE user_id = ? AND created_at >= ?"
        params: list = [user_id, _iso(since)]
        if excluded:
            sql += f" AND type NOT IN ({', '.join('?' for _ in excluded)})"
            params.extend(excluded)
        sql += " ORDER BY created_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [
            NotificationRecord(
                id=r["id"],
                user_id=r["user_id"],
                type=NotificationType(r["type"]),
                title=r["title"],
                message=r["message"],
                link=r["link"],
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    def list_users_with_email_enabled(self) -> List[Recipient]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT u.id, u.email, u.name FROM users u "
                "JOIN notification_preferences p ON p.user_id = u.id "
                "WHERE p.email_enabled = 1 ORDER BY u.id"
            ).fetchall()
        return [Recipient(user_id=r["id"], email=r["email"], name=r["name"]) for r in rows]
