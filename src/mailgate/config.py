# mailgate: Runtime Configuration
#
# All tunables come from the environment (optionally a .env file).
# The daily cap, job schedules and lock TTLs are fleet-wide settings:
# every instance must run with the same values or the cap is no longer
# a single shared limit.

import os
import threading
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv


# ── Defaults ─────────────────────────────────────────────────────

DEFAULT_DAILY_CAP = 200
DEFAULT_ALERT_THRESHOLDS = (80, 90, 100)  # percent of cap
DEFAULT_STORE_TIMEOUT = 2.0  # seconds per Redis round-trip

DEFAULT_DIGEST_CRON = "0 9 * * *"  # 09:00 UTC
DEFAULT_DIGEST_LOCK_TTL = 3600
DEFAULT_DIGEST_MAX_ITEMS = 50

DEFAULT_RECONCILIATION_CRON = "59 23 * * *"  # 23:59 UTC
DEFAULT_RECONCILIATION_LOCK_TTL = 600


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _parse_thresholds(raw: Optional[str]) -> Tuple[int, ...]:
    """Parse "80,90,100" into a sorted tuple of unique percentages."""
    if not raw:
        return DEFAULT_ALERT_THRESHOLDS
    values = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        pct = int(part)
        if not 0 < pct <= 100:
            raise ValueError(f"alert threshold out of range: {pct}")
        values.add(pct)
    return tuple(sorted(values))


@dataclass
class Settings:
    """Engine settings. Construct directly in tests, use load_settings() in production."""

    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "mailgate:"

    daily_cap: int = DEFAULT_DAILY_CAP
    alert_thresholds: Tuple[int, ...] = DEFAULT_ALERT_THRESHOLDS
    store_timeout: float = DEFAULT_STORE_TIMEOUT
    fail_open_normal: bool = False  # normal priority fails closed unless set

    db_path: str = "./data/mailgate.db"
    audit_dir: str = "./audit_logs"

    digest_cron: str = DEFAULT_DIGEST_CRON
    digest_lock_ttl: int = DEFAULT_DIGEST_LOCK_TTL
    digest_max_items: int = DEFAULT_DIGEST_MAX_ITEMS
    reconciliation_cron: str = DEFAULT_RECONCILIATION_CRON
    reconciliation_lock_ttl: int = DEFAULT_RECONCILIATION_LOCK_TTL

    enable_real_emails: bool = False
    resend_api_key: Optional[str] = field(default=None, repr=False)
    email_from: str = "Notifications <notifications@example.com>"
    app_url: str = "http://localhost:3000"
    slack_webhook_url: Optional[str] = field(default=None, repr=False)
    admin_token: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        if self.daily_cap < 1:
            raise ValueError("daily_cap must be at least 1")
        if self.digest_lock_ttl <= 0 or self.reconciliation_lock_ttl <= 0:
            raise ValueError("job lock TTLs must be positive")
        if self.store_timeout <= 0:
            raise ValueError("store_timeout must be positive")


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build Settings from the process environment (and .env, if present)."""
    load_dotenv(env_file)

    return Settings(
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        key_prefix=os.getenv("MAILGATE_KEY_PREFIX", "mailgate:"),
        daily_cap=_env_int("MAILGATE_DAILY_CAP", DEFAULT_DAILY_CAP),
        alert_thresholds=_parse_thresholds(os.getenv("MAILGATE_ALERT_THRESHOLDS")),
        store_timeout=_env_float("MAILGATE_STORE_TIMEOUT", DEFAULT_STORE_TIMEOUT),
        fail_open_normal=_env_bool("MAILGATE_FAIL_OPEN_NORMAL"),
        db_path=os.getenv("MAILGATE_DB_PATH", "./data/mailgate.db"),
        audit_dir=os.getenv("MAILGATE_AUDIT_DIR", "./audit_logs"),
        digest_cron=os.getenv("MAILGATE_DIGEST_CRON", DEFAULT_DIGEST_CRON),
        digest_lock_ttl=_env_int("MAILGATE_DIGEST_LOCK_TTL", DEFAULT_DIGEST_LOCK_TTL),
        digest_max_items=_env_int("MAILGATE_DIGEST_MAX_ITEMS", DEFAULT_DIGEST_MAX_ITEMS),
        reconciliation_cron=os.getenv(
            "MAILGATE_RECONCILIATION_CRON", DEFAULT_RECONCILIATION_CRON
        ),
        reconciliation_lock_ttl=_env_int(
            "MAILGATE_RECONCILIATION_LOCK_TTL", DEFAULT_RECONCILIATION_LOCK_TTL
        ),
        enable_real_emails=_env_bool("MAILGATE_ENABLE_REAL_EMAILS"),
        resend_api_key=os.getenv("RESEND_API_KEY") or None,
        email_from=os.getenv("EMAIL_FROM", "Notifications <notifications@example.com>"),
        app_url=os.getenv("APP_URL", "http://localhost:3000"),
        slack_webhook_url=os.getenv("SLACK_WEBHOOK_URL") or None,
        admin_token=os.getenv("MAILGATE_ADMIN_TOKEN") or None,
    )


# ── Singleton ────────────────────────────────────────────────────

_settings: Optional[Settings] = None
_settings_lock = threading.Lock()


def get_settings() -> Settings:
    """Get or create the process-wide settings singleton."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = load_settings()
    return _settings


def override_settings(settings: Optional[Settings]) -> None:
    """Replace the singleton (tests and embedding applications)."""
    global _settings
    with _settings_lock:
        _settings = settings
