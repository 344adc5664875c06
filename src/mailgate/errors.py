# mailgate: Exception Types
#
# Only infrastructure failures are exceptions. Cap exhaustion and lock
# contention are ordinary return values (AdmissionResult.admitted=False,
# DistributedJobLock.try_acquire() -> False).


class MailgateError(Exception):
    """Base class for mailgate errors."""


class StoreUnavailable(MailgateError):
    """The shared fast store could not be reached or timed out.

    Raised distinctly from a cap rejection so call sites can fail open
    (high priority) or fail closed (normal priority).
    """

    def __init__(self, operation: str, cause: Exception = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Shared store unavailable during {operation}{detail}")


class PartialDigestFailure(MailgateError):
    """One or more recipients failed within a digest run.

    Built after the batch completes from the per-recipient failures; the
    remaining recipients were still processed.
    """

    def __init__(self, failures):
        self.failures = list(failures)
        users = ", ".join(f.user_id for f in self.failures[:5])
        more = f" (+{len(self.failures) - 5} more)" if len(self.failures) > 5 else ""
        super().__init__(f"Digest failed for {len(self.failures)} recipient(s): {users}{more}")


class ReconciliationConflict(MailgateError):
    """Observed counter disagrees with the ledger in a way that cannot be overwritten.

    Never raised out of the reconciliation job; recorded on the result
    and in the audit trail.
    """

    def __init__(self, day: str, observed: int, ledger_count: int):
        self.day = day
        self.observed = observed
        self.ledger_count = ledger_count
        super().__init__(
            f"Counter for {day} regressed: observed {observed}, "
            f"ledger holds {ledger_count}"
        )
