import contextlib
import logging
import threading
from concurrent.futures import Future

from sqlalchemy import Engine, create_engine

from firmsync.config import SyncConfig
from firmsync.lock import LeaseRenewalMonitor, LockCoordinator, LockStore
from firmsync.metrics import SyncMetrics
from firmsync.provider import FileProviderClient, HttpProviderClient, ProviderClient
from firmsync.reconcile import Reconciler
from firmsync.scheduler import SyncScheduler
from firmsync.schema import build_tables, ensure_database_ready
from firmsync.store import DirectoryStore

logger = logging.getLogger(__name__)

__all__ = ['SyncService', 'build_provider']


def build_provider(config: SyncConfig) -> ProviderClient:
    """Provider client for the configured source (local file or HTTP API).
    """
    if config.provider_local_file:
        logger.info(f'Using local provider snapshot {config.provider_local_file}')
        return FileProviderClient(config.provider_local_file)
    return HttpProviderClient(
        config.provider_base_url,
        api_key=config.provider_api_key,
        connect_timeout=config.provider_connect_timeout_sec,
        read_timeout=config.provider_read_timeout_sec,
    )


class SyncService:
    """Provider sync for one application instance.

    Basic usage:
    ```python
    with SyncService(SyncConfig.from_environment()) as service:
        future = service.trigger_sync()
        print(future.result().summary())
    ```

    Entering prepares the schema and starts the scheduler and lease renewal
    threads; exiting raises the shutdown flag, lets an in-flight run finish
    and disposes the engine.
    """

    def __init__(self, config: SyncConfig = None, engine: Engine = None,
                 provider: ProviderClient = None, metrics: SyncMetrics = None,
                 instance_id: str = None):
        """Initialize sync service.

        Args:
            config: Sync configuration (from the environment if omitted)
            engine: SQLAlchemy engine (built from config if omitted)
            provider: Provider client (built from config if omitted)
            metrics: Metrics sink (own registry if omitted)
            instance_id: Lock owner id (fresh uuid if omitted)
        """
        self.config = config or SyncConfig.from_environment()
        self._owns_engine = engine is None
        self.engine = engine or create_engine(self.config.connection_string, pool_pre_ping=True,
                                              pool_size=10, max_overflow=5)
        self.tables = build_tables(self.config.appname)
        self.shutdown_event = threading.Event()
        self.metrics = metrics or SyncMetrics()

        self.store = DirectoryStore(self.engine, self.tables)
        self.coordinator = LockCoordinator(LockStore(self.engine, self.tables), instance_id)
        self.reconciler = Reconciler(self.store, provider or build_provider(self.config),
                                     self.config, self.shutdown_event)
        self.scheduler = SyncScheduler(self.reconciler, self.coordinator, self.metrics,
                                       self.config, self.shutdown_event)
        self.lease_renewal = LeaseRenewalMonitor(self.coordinator, self.config.lease_renew_interval_sec,
                                                 self.shutdown_event)

    def __enter__(self):
        logger.info(f'Starting provider sync as {self.coordinator.instance_id}')
        ensure_database_ready(self.engine, self.config.appname)
        self.lease_renewal.start()
        self.scheduler.start()
        return self

    def __exit__(self, exc_ty, exc_val, tb):
        logger.debug('Stopping provider sync')
        if exc_ty:
            logger.error(exc_val)

        self.reconciler.request_shutdown()
        for monitor in (self.scheduler, self.lease_renewal):
            monitor.stop()
        self.scheduler.join()
        self.reconciler.close()
        self.lease_renewal.join()

        if self._owns_engine:
            with contextlib.suppress(Exception):
                self.engine.dispose()

    def trigger_sync(self) -> Future:
        """Manual sync under the same lease as scheduled runs.

        The future raises LockAcquisitionError if another run holds the lease.

        Raises
            SyncRejectedError: If too many runs are already queued
        """
        logger.info('Manual sync requested')
        return self.reconciler.synchronize_async(guard=self.scheduler.locked)

