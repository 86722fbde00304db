import logging

from prometheus_client import CollectorRegistry, Counter, Histogram

from firmsync.model import SyncResult

logger = logging.getLogger(__name__)

__all__ = ['SyncMetrics']

# counter name -> SyncResult field
RESULT_COUNTERS = {
    'sync_firms_created': 'firms_created',
    'sync_firms_updated': 'firms_updated',
    'sync_firms_disabled': 'firms_disabled',
    'sync_firms_reactivated': 'firms_reactivated',
    'sync_offices_created': 'offices_created',
    'sync_offices_updated': 'offices_updated',
    'sync_offices_disabled': 'offices_disabled',
    'sync_offices_deleted': 'offices_deleted',
    'sync_offices_reactivated': 'offices_reactivated',
}


class SyncMetrics:
    """Prometheus counters and timer for scheduled sync runs.

    Each instance registers on its own registry unless one is passed in, so
    several services (and tests) can coexist in one process.
    """

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or CollectorRegistry()
        self.requests = Counter('sync_requests', 'Sync runs requested', registry=self.registry)
        self.success = Counter('sync_success', 'Sync runs finished without errors', registry=self.registry)
        self.failure = Counter('sync_failure', 'Sync runs that failed or reported errors',
                               registry=self.registry)
        self.errors = Counter('sync_errors', 'Errors raised or reported by sync runs', registry=self.registry)
        self.skipped = Counter('sync_skipped', 'Sync ticks skipped because another instance held the lock',
                               registry=self.registry)
        self.duration = Histogram('sync_duration_seconds', 'Sync run duration', registry=self.registry,
                                  buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0, 1800.0))
        self.result_counters = {
            name: Counter(name, f'{field.replace("_", " ").capitalize()} by sync', registry=self.registry)
            for name, field in RESULT_COUNTERS.items()
        }

    def record_result(self, result: SyncResult) -> None:
        """Add a run's per-field counts, whether or not it had errors.
        """
        for name, field in RESULT_COUNTERS.items():
            amount = getattr(result, field)
            if amount:
                self.result_counters[name].inc(amount)
        if result.has_errors:
            self.failure.inc()
            self.errors.inc(len(result.errors))
        else:
            self.success.inc()

    def record_exception(self) -> None:
        self.failure.inc()
        self.errors.inc()

    def value(self, name: str) -> float:
        """Current sample value, e.g. value('sync_requests_total').
        """
        return self.registry.get_sample_value(name) or 0.0
