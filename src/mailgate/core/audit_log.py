# mailgate: Quota Audit Trail
#
# Append-only JSON-lines record of every decision that changes what the
# fleet is allowed to send: threshold crossings, quota locks, job runs
# and ledger snapshots. Operators reconcile billing disputes from this
# trail, so entries are never rewritten.

import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog


def _utc_day() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class EventType(str, Enum):
    """Types of quota/digest events that are audited."""

    # Quota
    QUOTA_THRESHOLD = "quota.threshold"
    QUOTA_LOCKED = "quota.locked"
    QUOTA_LOCK_CLEARED = "quota.lock_cleared"
    QUOTA_STORE_UNAVAILABLE = "quota.store_unavailable"

    # Scheduled jobs
    JOB_SKIPPED = "job.skipped"
    DIGEST_COMPLETED = "digest.completed"
    DIGEST_PARTIAL_FAILURE = "digest.partial_failure"
    RECONCILIATION_SNAPSHOT = "reconciliation.snapshot"
    RECONCILIATION_CONFLICT = "reconciliation.conflict"


class EventSeverity(str, Enum):
    """Severity levels for audit events."""

    INFO = "info"
    WARNING = "warning"
    ALERT = "alert"
    CRITICAL = "critical"


class AuditLogger:
    """Structured, append-only audit logger.

    Events go through structlog's JSON renderer into a dedicated stdlib
    logger (``mailgate.audit``) that writes one file per UTC day. The
    logger does not propagate, so audit lines never leak into the
    application log.
    """

    LOGGER_NAME = "mailgate.audit"

    def __init__(self, log_dir: Optional[Path] = None):
        self.log_dir = Path(log_dir or "./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._stdlib_logger = logging.getLogger(self.LOGGER_NAME)
        self._stdlib_logger.setLevel(logging.INFO)
        self._stdlib_logger.propagate = False
        self._setup_file_handler()

        self.logger = structlog.wrap_logger(
            self._stdlib_logger,
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
        )

    def _setup_file_handler(self):
        """Attach a file handler for today's audit file (once per path)."""
        self._log_day = _utc_day()
        self.log_file = self.log_dir / f"audit_{self._log_day}.log"

        for handler in self._stdlib_logger.handlers:
            if getattr(handler, "baseFilename", None) == str(self.log_file.resolve()):
                self._file_handler = handler
                return

        file_handler = logging.FileHandler(self.log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(message)s"))  # structlog renders
        self._stdlib_logger.addHandler(file_handler)
        self._file_handler = file_handler

    def _roll_over_if_new_day(self) -> None:
        """Switch to a new daily file once the UTC date changes."""
        if _utc_day() == self._log_day:
            return
        old = self._file_handler
        self._stdlib_logger.removeHandler(old)
        old.close()
        self._setup_file_handler()

    def close(self) -> None:
        """Detach and close file handlers (tests, shutdown)."""
        for handler in list(self._stdlib_logger.handlers):
            self._stdlib_logger.removeHandler(handler)
            handler.close()

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Append one audit event.

        Returns:
            str: Event ID (UUID) for reference
        """
        self._roll_over_if_new_day()
        event_id = str(uuid4())
        event_data = {
            "event_id": event_id,
            "event_type": event_type.value,
            "severity": severity.value,
            "message": message,
            "details": details or {},
        }
        if severity in (EventSeverity.ALERT, EventSeverity.CRITICAL):
            self.logger.warning("quota_event", **event_data)
        else:
            self.logger.info("quota_event", **event_data)
        return event_id


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        from ..config import get_settings

        _audit_logger = AuditLogger(Path(get_settings().audit_dir))
    return _audit_logger
