# mailgate: Daily Digest Job
#
# Once a day, for every user with email enabled:
#   - collect digestible notifications from the last 24h (critical types
#     are excluded: they were already sent immediately)
#   - ask the quota gate for admission (normal priority)
#   - admitted: compose one plain-text digest and hand it to the transport
#   - rejected: drop the digest for today. The query is time-bounded, not
#     state-tracked, so tomorrow's digest still covers the window. Nothing
#     is lost, only delayed.
#
# A failure for one recipient (query, admission, composition or transport)
# is recorded and the loop moves on. Failures are summarized after the batch.

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from ..errors import PartialDigestFailure
from ..quota.admission import Priority
from ..quota.service import EmailQuotaService
from ..storage.notifications import (
    CRITICAL_TYPES,
    NotificationRecord,
    NotificationSource,
    Recipient,
)
from ..store.keys import utc_now
from ..transport import EmailTransport

logger = logging.getLogger(__name__)

DIGEST_JOB_NAME = "digest"
DIGEST_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class DigestMessage:
    subject: str
    body: str


def compose_digest(
    recipient: Recipient,
    notifications: List[NotificationRecord],
    app_url: Optional[str] = None,
) -> DigestMessage:
    """Build the plain-text digest for one recipient."""
    if not notifications:
        raise ValueError("cannot compose a digest without notifications")

    n = len(notifications)
    subject = f"Your Daily Digest - {n} update{'s' if n > 1 else ''}"

    by_type = Counter(rec.type.value.replace("_", " ") for rec in notifications)
    summary = ", ".join(f"{count} {label}" for label, count in sorted(by_type.items()))

    lines = [f"Hi {recipient.name or 'there'},", "", f"Here's what happened in the last 24 hours ({summary}):", ""]
    for rec in notifications:
        line = f"- {rec.title}"
        if rec.message:
            line += f": {rec.message}"
        if rec.link:
            line += f" ({rec.link})"
        lines.append(line)
    if app_url:
        lines += ["", f"Manage your email preferences: {app_url}/settings/notifications"]
    return DigestMessage(subject=subject, body="\n".join(lines))


@dataclass
class RecipientFailure:
    user_id: str
    stage: str  # "query", "admit", "compose", "send"
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"user_id": self.user_id, "stage": self.stage, "error": self.error}


class DigestReport:
    """Summary of one digest run."""

    def __init__(self, started: datetime):
        self.started = started.isoformat()
        self.finished: Optional[str] = None
        self.skipped_reason: Optional[str] = None
        self.recipients: int = 0
        self.sent: int = 0
        self.no_notifications: int = 0
        self.skipped_quota: int = 0
        self.notifications_included: int = 0
        self.failures: List[RecipientFailure] = []

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def partial_failure(self) -> Optional[PartialDigestFailure]:
        if not self.failures:
            return None
        return PartialDigestFailure(self.failures)

    def raise_for_failures(self) -> None:
        failure = self.partial_failure
        if failure is not None:
            raise failure

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "finished": self.finished,
            "skipped_reason": self.skipped_reason,
            "recipients": self.recipients,
            "sent": self.sent,
            "no_notifications": self.no_notifications,
            "skipped_quota": self.skipped_quota,
            "notifications_included": self.notifications_included,
            "failed": self.failed,
            "failures": [f.to_dict() for f in self.failures],
        }


class DigestJob:
    """Aggregates each user's digestible notifications into one email.

    Usage::

        job = DigestJob(store, quota_service, transport)
        report = await job.run()
    """

    def __init__(
        self,
        source: NotificationSource,
        quota: EmailQuotaService,
        transport: EmailTransport,
        max_items: int = 50,
        window: timedelta = DIGEST_WINDOW,
        app_url: Optional[str] = None,
        clock=utc_now,
    ):
        self._source = source
        self._quota = quota
        self._transport = transport
        self._max_items = max_items
        self._window = window
        self._app_url = app_url
        self._clock = clock
        self._last_report: Optional[DigestReport] = None

    async def run(self) -> DigestReport:
        now = self._clock()
        report = DigestReport(now)

        if await self._quota.is_quota_locked():
            next_retry = await self._quota.get_next_retry_time()
            logger.warning("Email quota locked until %s, skipping digest job", next_retry)
            report.skipped_reason = "quota_locked"
            return self._finalize(report)

        recipients = self._source.list_users_with_email_enabled()
        since = now - self._window
        logger.info("Processing digest for %d users", len(recipients))

        for recipient in recipients:
            report.recipients += 1
            await self._process(recipient, since, report)

        return self._finalize(report)

    async def _process(self, recipient: Recipient, since: datetime, report: DigestReport) -> None:
        try:
            notifications = self._source.list_since(
                recipient.user_id, since, CRITICAL_TYPES, limit=self._max_items
            )
        except Exception as exc:
            self._fail(report, recipient, "query", exc)
            return

        if not notifications:
            report.no_notifications += 1
            return

        try:
            admission = await self._quota.request_send(Priority.NORMAL)
        except Exception as exc:
            self._fail(report, recipient, "admit", exc)
            return
        if not admission.admitted:
            report.skipped_quota += 1
            logger.info(
                "Digest for %s dropped today (%s, count=%s)",
                recipient.user_id,
                admission.reason,
                admission.count,
            )
            return

        try:
            message = compose_digest(recipient, notifications, self._app_url)
        except Exception as exc:
            self._fail(report, recipient, "compose", exc)
            return

        try:
            delivered = await self._transport.send(recipient, message.subject, message.body)
        except Exception as exc:
            self._fail(report, recipient, "send", exc)
            return
        if not delivered:
            self._fail(report, recipient, "send", "transport reported failure")
            return

        report.sent += 1
        report.notifications_included += len(notifications)
        logger.info(
            "Digest sent to %s: %d notifications (%s/%d)",
            recipient.user_id,
            len(notifications),
            admission.count,
            self._quota.daily_cap,
        )

    @staticmethod
    def _fail(report: DigestReport, recipient: Recipient, stage: str, exc) -> None:
        logger.warning("Digest %s failed for %s: %s", stage, recipient.user_id, exc)
        report.failures.append(RecipientFailure(recipient.user_id, stage, str(exc)))

    def _finalize(self, report: DigestReport) -> DigestReport:
        report.finished = self._clock().isoformat()
        self._last_report = report

        logger.info(
            "Daily digest job completed: sent=%d skipped_quota=%d "
            "no_notifications=%d failed=%d",
            report.sent,
            report.skipped_quota,
            report.no_notifications,
            report.failed,
        )

        audit = get_audit_logger()
        audit.log_event(
            EventType.DIGEST_COMPLETED,
            EventSeverity.INFO,
            f"Digest run: {report.sent} sent, {report.skipped_quota} deferred by quota",
            details={k: v for k, v in report.to_dict().items() if k != "failures"},
        )
        failure = report.partial_failure
        if failure is not None:
            logger.error("%s", failure)
            audit.log_event(
                EventType.DIGEST_PARTIAL_FAILURE,
                EventSeverity.WARNING,
                str(failure),
                details={"failures": [f.to_dict() for f in report.failures]},
            )
        return report

    def get_last_report(self) -> Optional[Dict[str, Any]]:
        if self._last_report is None:
            return None
        return self._last_report.to_dict()
