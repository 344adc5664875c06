# mailgate: Durable Storage
#
# SQLite-backed usage ledger and the notification source the digest
# job reads from.

from .ledger import EmailUsageLedger, LedgerRow, SnapshotOutcome
from .notifications import (
    CRITICAL_TYPES,
    NotificationRecord,
    NotificationSource,
    NotificationType,
    Recipient,
    SqliteNotificationStore,
)

__all__ = [
    "CRITICAL_TYPES",
    "EmailUsageLedger",
    "LedgerRow",
    "NotificationRecord",
    "NotificationSource",
    "NotificationType",
    "Recipient",
    "SnapshotOutcome",
    "SqliteNotificationStore",
]
