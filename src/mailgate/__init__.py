# mailgate: Email Quota & Digest Coordination Engine
#
# Fleet-wide daily email cap with a high-priority bypass, plus the
# exactly-once daily digest and reconciliation jobs, coordinated through
# Redis alone (no job broker, no leader election).

__version__ = "0.1.0"
__description__ = "Email quota & digest coordination engine"

from .errors import (
    MailgateError,
    PartialDigestFailure,
    ReconciliationConflict,
    StoreUnavailable,
)
from .quota.admission import AdmissionResult, Priority

__all__ = [
    "__version__",
    "AdmissionResult",
    "MailgateError",
    "PartialDigestFailure",
    "Priority",
    "ReconciliationConflict",
    "StoreUnavailable",
]
