# mailgate: Shared Store Key Layout & TTLs
#
# Centralized key naming so every fleet instance agrees on where the
# counter and lock flags live. All keys share one namespace prefix.
#
#   <prefix>email:quota:<YYYY-MM-DD>        daily usage counter
#   <prefix>email:quota:locked              quota lock flag
#   <prefix>email:quota:next_retry          next retry timestamp (ISO 8601)
#   <prefix>email:quota:alert:<date>:<pct>  threshold alert dedup marker
#   <prefix>lock:<job_name>                 distributed job lock

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union

# Counter lives two days so a late reconciliation can still read it.
COUNTER_TTL_SECONDS = 48 * 3600

DateLike = Union[date, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def date_key(day: DateLike) -> str:
    """Normalize a date (or YYYY-MM-DD string) to the YYYY-MM-DD key form."""
    if isinstance(day, datetime):
        return day.astimezone(timezone.utc).date().isoformat()
    if isinstance(day, date):
        return day.isoformat()
    return date.fromisoformat(day).isoformat()


def current_date_utc(now: Optional[datetime] = None) -> str:
    """Today's UTC calendar date as YYYY-MM-DD."""
    now = now or utc_now()
    return now.astimezone(timezone.utc).date().isoformat()


def next_utc_midnight(now: Optional[datetime] = None) -> datetime:
    """Start of the next UTC day (conventional quota retry time)."""
    now = (now or utc_now()).astimezone(timezone.utc)
    tomorrow = now.date() + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=timezone.utc)


def seconds_until(moment: datetime, now: Optional[datetime] = None) -> int:
    """Whole seconds until ``moment``, never less than 1 (valid Redis TTL)."""
    now = now or utc_now()
    return max(1, int((moment - now).total_seconds()))


class KeySpace:
    """Builds namespaced keys for one deployment."""

    def __init__(self, prefix: str = "mailgate:"):
        self.prefix = prefix

    def email_quota(self, day: DateLike) -> str:
        return f"{self.prefix}email:quota:{date_key(day)}"

    @property
    def quota_locked(self) -> str:
        return f"{self.prefix}email:quota:locked"

    @property
    def quota_next_retry(self) -> str:
        return f"{self.prefix}email:quota:next_retry"

    def quota_alert(self, day: DateLike, percent: int) -> str:
        return f"{self.prefix}email:quota:alert:{date_key(day)}:{percent}"

    def job_lock(self, job_name: str) -> str:
        if not job_name:
            raise ValueError("job_name is required")
        return f"{self.prefix}lock:{job_name}"
