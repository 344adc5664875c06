# mailgate: Quota Module
#
# Admission control, the quota lock, threshold alerts and the gate that
# ties them together.

from .admission import AdmissionController, AdmissionResult, Priority
from .alerts import AlertSink, LogAlertSink, QuotaAlerter, SlackAlertSink
from .lock import QuotaLockManager
from .service import EmailQuotaService

__all__ = [
    "AdmissionController",
    "AdmissionResult",
    "AlertSink",
    "EmailQuotaService",
    "LogAlertSink",
    "Priority",
    "QuotaAlerter",
    "QuotaLockManager",
    "SlackAlertSink",
]
