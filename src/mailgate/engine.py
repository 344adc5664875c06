# mailgate: Engine Assembly
#
# Wires the counter, admission controller, quota lock, alerts, jobs and
# scheduler from one Settings object and one Redis client. Tests build
# an Engine on a fake Redis; the worker and API use get_engine().

import logging
from dataclasses import dataclass
from typing import Optional

from .config import Settings, get_settings
from .jobs.digest import DIGEST_JOB_NAME, DigestJob
from .jobs.job_lock import DistributedJobLock
from .jobs.reconciliation import RECONCILIATION_JOB_NAME, ReconciliationJob
from .jobs.scheduler import JobScheduler, ScheduledTask
from .quota.admission import AdmissionController
from .quota.alerts import AlertSink, LogAlertSink, QuotaAlerter, SlackAlertSink
from .quota.lock import QuotaLockManager
from .quota.service import EmailQuotaService
from .storage.ledger import EmailUsageLedger
from .storage.notifications import NotificationSource, SqliteNotificationStore
from .store.counter import UsageCounterStore
from .store.keys import KeySpace, utc_now
from .store.redis_client import get_redis_client
from .transport import EmailTransport, build_transport

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    settings: Settings
    counter: UsageCounterStore
    admission: AdmissionController
    locks: QuotaLockManager
    quota: EmailQuotaService
    job_lock: DistributedJobLock
    ledger: EmailUsageLedger
    digest: DigestJob
    reconciliation: ReconciliationJob
    scheduler: JobScheduler

    def tasks(self):
        return [
            ScheduledTask(
                name=DIGEST_JOB_NAME,
                cron=self.settings.digest_cron,
                handler=self.digest.run,
                lock_ttl=self.settings.digest_lock_ttl,
            ),
            ScheduledTask(
                name=RECONCILIATION_JOB_NAME,
                cron=self.settings.reconciliation_cron,
                handler=self.reconciliation.run,
                lock_ttl=self.settings.reconciliation_lock_ttl,
            ),
        ]

    def register_jobs(self) -> None:
        for task in self.tasks():
            self.scheduler.register(task)


def build_engine(
    settings: Settings,
    client,
    source: Optional[NotificationSource] = None,
    transport: Optional[EmailTransport] = None,
    alert_sink: Optional[AlertSink] = None,
    ledger: Optional[EmailUsageLedger] = None,
    clock=utc_now,
) -> Engine:
    keys = KeySpace(settings.key_prefix)
    timeout = settings.store_timeout

    counter = UsageCounterStore(client, keys, timeout=timeout)
    admission = AdmissionController(counter, settings.daily_cap)
    locks = QuotaLockManager(client, keys, timeout=timeout, clock=clock)

    if alert_sink is None:
        alert_sink = SlackAlertSink(settings.slack_webhook_url) if settings.slack_webhook_url else LogAlertSink()
    alerter = QuotaAlerter(
        client,
        alert_sink,
        settings.daily_cap,
        settings.alert_thresholds,
        keys=keys,
        timeout=timeout,
        clock=clock,
    )
    quota = EmailQuotaService(
        counter,
        admission,
        locks,
        alerter=alerter,
        fail_open_normal=settings.fail_open_normal,
        clock=clock,
    )

    ledger = ledger or EmailUsageLedger(settings.db_path)
    source = source or SqliteNotificationStore(settings.db_path)
    transport = transport or build_transport(settings)

    digest = DigestJob(
        source,
        quota,
        transport,
        max_items=settings.digest_max_items,
        app_url=settings.app_url,
        clock=clock,
    )
    reconciliation = ReconciliationJob(counter, ledger, locks, clock=clock)

    job_lock = DistributedJobLock(client, keys, timeout=timeout)
    return Engine(
        settings=settings,
        counter=counter,
        admission=admission,
        locks=locks,
        quota=quota,
        job_lock=job_lock,
        ledger=ledger,
        digest=digest,
        reconciliation=reconciliation,
        scheduler=JobScheduler(job_lock),
    )


# ── Singleton ────────────────────────────────────────────────────

_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Get or create the process-wide engine from environment settings."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings, get_redis_client(settings.redis_url))
    return _engine


def set_engine(engine: Optional[Engine]) -> None:
    global _engine
    _engine = engine


def get_quota_service() -> EmailQuotaService:
    """The quota gate other subsystems call before sending any email."""
    return get_engine().quota
