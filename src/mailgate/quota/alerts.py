# mailgate: Quota Threshold Alerts
#
# Fires an operator alert the first time the day's counter reaches each
# configured percentage of the cap (default 80/90/100). Admission hands
# out gapless counts, so exactly one caller observes count == threshold;
# a SET NX marker per (day, percent) additionally stops a second fleet
# instance from re-sending the same alert after a counter reset.

import logging
import math
import os
from typing import Dict, List, Optional, Protocol, Sequence

import httpx

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from ..store.keys import KeySpace, current_date_utc, next_utc_midnight, seconds_until, utc_now
from ..store.redis_client import guarded

logger = logging.getLogger(__name__)

_LEVELS = {100: "exhausted", 90: "critical"}
_COLORS = {"warning": "#FFA500", "critical": "#FF4500", "exhausted": "#DC143C"}


def alert_level(percent: int) -> str:
    """Map a threshold percentage to a severity label."""
    for floor in sorted(_LEVELS, reverse=True):
        if percent >= floor:
            return _LEVELS[floor]
    return "warning"


class AlertSink(Protocol):
    async def notify_threshold(self, percent_used: int, count: int, cap: int) -> None: ...


class LogAlertSink:
    """Sink that only logs. Default when no webhook is configured."""

    async def notify_threshold(self, percent_used: int, count: int, cap: int) -> None:
        logger.warning("Email quota at %d%% (%d/%d)", percent_used, count, cap)


class SlackAlertSink:
    """Posts threshold alerts to a Slack incoming webhook."""

    def __init__(self, webhook_url: Optional[str], timeout: float = 5.0, transport=None):
        self._webhook_url = webhook_url
        self._timeout = timeout
        self._transport = transport

    @staticmethod
    def format_message(percent_used: int, count: int, cap: int) -> str:
        if percent_used >= 100:
            return (
                f"Email quota exhausted ({count}/{cap}) - non-critical emails "
                f"deferred to tomorrow's digest"
            )
        suffix = " - approaching limit" if percent_used >= 90 else ""
        return f"Email quota at {percent_used}% ({count}/{cap}){suffix}"

    async def notify_threshold(self, percent_used: int, count: int, cap: int) -> None:
        message = self.format_message(percent_used, count, cap)
        if not self._webhook_url:
            logger.warning("SLACK_WEBHOOK_URL not configured, skipping alert: %s", message)
            return

        level = alert_level(percent_used)
        payload = {
            "text": message,
            "username": "mailgate",
            "icon_emoji": ":bell:",
            "attachments": [
                {
                    "color": _COLORS.get(level, "#808080"),
                    "fields": [
                        {"title": "Service", "value": "Email Notifications", "short": True},
                        {
                            "title": "Environment",
                            "value": os.getenv("ENVIRONMENT", "development"),
                            "short": True,
                        },
                        {"title": "Level", "value": level, "short": True},
                    ],
                }
            ],
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._webhook_url, json=payload)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Slack alert failed: %s", exc)


class QuotaAlerter:
    """Detects threshold crossings and forwards them to an AlertSink."""

    def __init__(
        self,
        client,
        sink: AlertSink,
        daily_cap: int,
        thresholds: Sequence[int] = (80, 90, 100),
        keys: Optional[KeySpace] = None,
        timeout: float = 2.0,
        clock=utc_now,
    ):
        self._client = client
        self._sink = sink
        self._cap = daily_cap
        self._keys = keys or KeySpace()
        self._timeout = timeout
        self._clock = clock
        # threshold count -> percent (the higher percent wins a shared count)
        self._marks: Dict[int, int] = {}
        for pct in sorted(set(thresholds)):
            self._marks[math.ceil(daily_cap * pct / 100)] = pct

    @property
    def threshold_counts(self) -> Dict[int, int]:
        return dict(self._marks)

    async def check(self, count: Optional[int]) -> List[int]:
        """Fire any alert whose threshold equals ``count``. Returns fired percentages."""
        if count is None or count not in self._marks:
            return []

        pct = self._marks[count]
        now = self._clock()
        marker = self._keys.quota_alert(current_date_utc(now), pct)
        first = await guarded(
            "alerts.mark",
            self._client.set(marker, "1", nx=True, ex=seconds_until(next_utc_midnight(now), now)),
            self._timeout,
        )
        if not first:
            return []

        await self._sink.notify_threshold(pct, count, self._cap)
        get_audit_logger().log_event(
            EventType.QUOTA_THRESHOLD,
            EventSeverity.ALERT if pct >= 100 else EventSeverity.WARNING,
            f"Email quota at {pct}% ({count}/{self._cap})",
            details={"percent": pct, "count": count, "cap": self._cap},
        )
        logger.info("Quota alert sent: %d%% (%d/%d)", pct, count, self._cap)
        return [pct]
