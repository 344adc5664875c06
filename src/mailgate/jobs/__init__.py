# mailgate: Scheduled Jobs
#
# Fleet-wide job lock, the cron scheduler wrapper, and the two daily jobs.

from .digest import DIGEST_JOB_NAME, DigestJob, DigestReport, compose_digest
from .job_lock import DistributedJobLock
from .reconciliation import RECONCILIATION_JOB_NAME, ReconciliationJob, ReconciliationResult
from .scheduler import JobRun, JobScheduler, ScheduledTask

__all__ = [
    "DIGEST_JOB_NAME",
    "DigestJob",
    "DigestReport",
    "DistributedJobLock",
    "JobRun",
    "JobScheduler",
    "RECONCILIATION_JOB_NAME",
    "ReconciliationJob",
    "ReconciliationResult",
    "ScheduledTask",
    "compose_digest",
]
