import datetime
import logging
import threading

from firmsync.config import SyncConfig
from firmsync.exceptions import LockAcquisitionError
from firmsync.lock import LockCoordinator
from firmsync.metrics import SyncMetrics
from firmsync.model import SyncResult
from firmsync.monitor import Monitor
from firmsync.reconcile import Reconciler

logger = logging.getLogger(__name__)

__all__ = ['SyncScheduler']


class SyncScheduler(Monitor):
    """Fixed-rate trigger for sync runs, one cluster-wide run per tick.
    """

    def __init__(self, reconciler: Reconciler, coordinator: LockCoordinator, metrics: SyncMetrics,
                 config: SyncConfig, shutdown_event: threading.Event):
        """Initialize sync scheduler.

        Args:
            reconciler: Reconciler to run
            coordinator: Lock coordinator guarding each run
            metrics: Metrics sink
            config: Sync configuration (interval, startup switch, lock key, lease)
            shutdown_event: Shutdown event
        """
        super().__init__('sync-scheduler', config.interval_sec, shutdown_event, fixed_rate=True)
        self.reconciler = reconciler
        self.coordinator = coordinator
        self.metrics = metrics
        self.config = config

    def locked(self, task):
        """Run task under the sync lease.
        """
        timeout = datetime.timedelta(seconds=self.config.lease_timeout_sec)
        return self.coordinator.with_lock(self.config.lock_key, timeout, task)

    def before_first_check(self) -> None:
        self.on_application_ready()

    def check(self) -> None:
        self.scheduled_sync()

    def on_application_ready(self) -> SyncResult:
        """Run once at startup when run_on_startup is enabled.
        """
        if not self.config.run_on_startup:
            logger.debug('Sync on startup disabled')
            return None
        logger.info('Running sync on startup')
        return self.scheduled_sync()

    def scheduled_sync(self) -> SyncResult:
        """One scheduled tick; never raises.

        Returns
            SyncResult, or None if the tick was skipped or failed
        """
        self.metrics.requests.inc()
        with self.metrics.duration.time():
            try:
                result = self.reconciler.synchronize_async(guard=self.locked).result()
            except LockAcquisitionError as e:
                self.metrics.skipped.inc()
                logger.info(f'Scheduled sync skipped: {e}')
                return None
            except Exception as e:
                self.metrics.record_exception()
                logger.error(f'Scheduled sync failed: {e}', exc_info=True)
                return None

        self.metrics.record_result(result)
        if result.has_errors:
            logger.error(f'Scheduled sync finished with errors: {list(result.errors)}')
        else:
            logger.info(f'Scheduled sync finished: {result.summary()}')
        return result
