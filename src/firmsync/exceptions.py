__all__ = ['SyncError', 'LockAcquisitionError', 'TransportError',
           'ReconciliationStepError', 'SyncRejectedError']


class SyncError(Exception):
    """Base class for provider synchronization errors.
    """


class LockAcquisitionError(SyncError):
    """Raised when another instance currently holds the lease.
    """


class TransportError(SyncError):
    """Raised when the provider is unreachable or returns an unusable payload.

    Nothing has been written locally when this is raised, so the same window
    can be retried as-is.
    """


class ReconciliationStepError(SyncError):
    """Raised when one apply step fails.

    Earlier steps have already committed.
    """

    def __init__(self, step: str, cause: Exception):
        super().__init__(f'{step} failed: {cause}')
        self.step = step
        self.cause = cause


class SyncRejectedError(SyncError):
    """Raised when too many sync runs are already queued.
    """
