# mailgate: Fleet Job Scheduler
#
# Every fleet instance runs its own APScheduler and fires the same cron
# callbacks at the same wall-clock time. No central queue. The wrapper
# around every handler starts with a DistributedJobLock acquire, so
# exactly one instance does the work and the rest no-op for that tick.
#
# The lock is left to expire by TTL by default. Releasing early would
# let an instance whose clock runs a little behind win the lock and run
# the job a second time the same day.

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from .job_lock import DistributedJobLock

logger = logging.getLogger(__name__)


@dataclass
class ScheduledTask:
    """Descriptor for one fleet-wide daily job."""

    name: str
    cron: str  # standard 5-field crontab, evaluated in UTC
    handler: Callable[[], Awaitable[Any]]
    lock_ttl: int
    release_on_completion: bool = False

    def trigger(self) -> CronTrigger:
        return CronTrigger.from_crontab(self.cron, timezone="UTC")


@dataclass
class JobRun:
    """What happened when a task fired on this instance."""

    task: str
    ran: bool
    started: str
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = self.result
        if hasattr(result, "to_dict"):
            result = result.to_dict()
        elif isinstance(result, list):
            result = [r.to_dict() if hasattr(r, "to_dict") else r for r in result]
        return {
            "task": self.task,
            "ran": self.ran,
            "started": self.started,
            "result": result,
            "error": self.error,
        }


class JobScheduler:
    """Registers ScheduledTasks with APScheduler behind the job-lock guard.

    Usage::

        sched = JobScheduler(DistributedJobLock(redis))
        sched.register(ScheduledTask("digest", "0 9 * * *", digest.run, 3600))
        sched.start()      # inside a running event loop
        ...
        sched.stop()
    """

    def __init__(self, job_lock: DistributedJobLock, scheduler: Optional[AsyncIOScheduler] = None):
        self._job_lock = job_lock
        self._scheduler = scheduler  # created lazily inside the running event loop
        self._tasks: Dict[str, ScheduledTask] = {}
        self._last_runs: Dict[str, JobRun] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, task: ScheduledTask) -> None:
        if task.lock_ttl <= 0:
            raise ValueError(f"task {task.name!r} needs a positive lock TTL")
        self._tasks[task.name] = task
        self.scheduler.add_job(
            self.run_guarded,
            trigger=task.trigger(),
            args=[task.name],
            id=f"mailgate_{task.name}",
            name=f"mailgate {task.name} ({task.cron} UTC)",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info("Scheduled job %s at '%s' UTC", task.name, task.cron)

    @property
    def tasks(self) -> List[ScheduledTask]:
        return list(self._tasks.values())

    @property
    def scheduler(self) -> AsyncIOScheduler:
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone="UTC")
        return self._scheduler

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.start()
        logger.info("Job scheduler started with %d task(s)", len(self._tasks))

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Job scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_guarded(self, name: str) -> JobRun:
        """Run a registered task if this instance wins the job lock.

        Exceptions from the handler are logged and captured on the
        returned JobRun so the scheduler keeps running.
        """
        task = self._tasks[name]
        run = JobRun(task=name, ran=False, started=datetime.now(timezone.utc).isoformat())

        try:
            acquired = await self._job_lock.try_acquire(task.name, task.lock_ttl)
        except Exception as exc:
            logger.error("Job %s: lock acquire failed: %s", name, exc)
            run.error = str(exc)
            self._last_runs[name] = run
            return run

        if not acquired:
            get_audit_logger().log_event(
                EventType.JOB_SKIPPED,
                EventSeverity.INFO,
                f"Job {name} skipped: lock held by another instance",
                details={"job": name},
            )
            self._last_runs[name] = run
            return run

        run.ran = True
        logger.info("Scheduled run triggered: %s", name)
        try:
            run.result = await task.handler()
            logger.info("Scheduled run complete: %s", name)
        except Exception as exc:
            run.error = str(exc)
            logger.error("Scheduled run %s failed: %s", name, exc, exc_info=True)
        finally:
            if task.release_on_completion:
                try:
                    await self._job_lock.release(task.name)
                except Exception as exc:
                    logger.warning("Job %s: lock release failed: %s", name, exc)

        self._last_runs[name] = run
        return run

    def get_last_run(self, name: str) -> Optional[Dict[str, Any]]:
        run = self._last_runs.get(name)
        return run.to_dict() if run else None
