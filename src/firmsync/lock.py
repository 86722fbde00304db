"""Database-backed leases giving one instance at a time a named critical section.
"""
import contextlib
import datetime
import logging
import threading
import uuid
from collections.abc import Callable

from sqlalchemy import Engine, delete, select, update
from sqlalchemy.dialects import postgresql, sqlite

from firmsync.exceptions import LockAcquisitionError
from firmsync.monitor import Monitor
from firmsync.schema import as_utc

logger = logging.getLogger(__name__)

__all__ = ['LockStore', 'LockCoordinator', 'LeaseRenewalMonitor', 'utcnow']


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_timedelta(timeout: datetime.timedelta | float) -> datetime.timedelta:
    """Accept a timedelta or a number of seconds.
    """
    if isinstance(timeout, datetime.timedelta):
        delta = timeout
    else:
        delta = datetime.timedelta(seconds=timeout)
    if delta <= datetime.timedelta(0):
        raise ValueError(f'Lock timeout must be positive, got {timeout}')
    return delta


def upsert_for(engine: Engine) -> Callable:
    """Dialect insert construct supporting ON CONFLICT.
    """
    name = engine.dialect.name
    if name == 'postgresql':
        return postgresql.insert
    if name == 'sqlite':
        return sqlite.insert
    raise NotImplementedError(f'Conditional lock writes are not supported on {name}')


class LockStore:
    """Lock table access: one row per key with owner and expiry.
    """

    def __init__(self, engine: Engine, tables):
        """Initialize lock store.

        Args:
            engine: SQLAlchemy engine
            tables: Table namespace from schema.build_tables
        """
        self.engine = engine
        self.table = tables.lock
        self._insert = upsert_for(engine)

    def acquire(self, key: str, owner_id: str, expires_at: datetime.datetime,
                now: datetime.datetime = None) -> int:
        """Insert the lease, or take it over if the current row has expired.

        One statement, so two instances can never both see the same expired
        row and both win.

        Returns
            Rows written: 1 when acquired, 0 when someone else holds a live lease
        """
        now = now or utcnow()
        stmt = self._insert(self.table).values(
            key=key, owner_id=owner_id, acquired_at=now, expires_at=expires_at)
        stmt = stmt.on_conflict_do_update(
            index_elements=[self.table.c.key],
            set_={
                'owner_id': stmt.excluded.owner_id,
                'acquired_at': stmt.excluded.acquired_at,
                'expires_at': stmt.excluded.expires_at,
            },
            where=self.table.c.expires_at <= now,
        ).returning(self.table.c.owner_id)

        with self.engine.begin() as conn:
            rows = conn.execute(stmt).fetchall()
        return len(rows)

    def release(self, key: str, owner_id: str) -> None:
        """Delete the lease if owner_id still holds it; otherwise do nothing.
        """
        stmt = delete(self.table).where(
            self.table.c.key == key, self.table.c.owner_id == owner_id)
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        if result.rowcount == 0:
            logger.debug(f'Lock {key} no longer owned by {owner_id}, nothing to release')

    def extend(self, key: str, owner_id: str, new_expires_at: datetime.datetime) -> int:
        """Push the expiry of a lease owned by owner_id.

        Returns
            Rows updated: 0 when the lease was lost to another owner
        """
        stmt = (update(self.table)
                .where(self.table.c.key == key, self.table.c.owner_id == owner_id)
                .values(expires_at=new_expires_at))
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount

    def get(self, key: str) -> dict:
        """Current lease row for key, or None.
        """
        with self.engine.connect() as conn:
            row = conn.execute(select(self.table).where(self.table.c.key == key)).first()
        if row is None:
            return None
        record = dict(row._mapping)
        record['acquired_at'] = as_utc(record['acquired_at'])
        record['expires_at'] = as_utc(record['expires_at'])
        return record


class LockCoordinator:
    """Acquires, renews and releases named leases for this process instance.
    """

    def __init__(self, store: LockStore, instance_id: str = None,
                 clock: Callable[[], datetime.datetime] = utcnow):
        """Initialize lock coordinator.

        Args:
            store: Lock store
            instance_id: Owner id written to lease rows (unique per process by default)
            clock: Source of aware UTC timestamps
        """
        self.store = store
        self.instance_id = instance_id or str(uuid.uuid4())
        self.clock = clock
        self._held = {}
        self._held_lock = threading.Lock()

    def held_keys(self) -> set[str]:
        with self._held_lock:
            return set(self._held)

    def _try_acquire(self, key: str, timeout: datetime.timedelta) -> bool:
        now = self.clock()
        acquired = self.store.acquire(key, self.instance_id, now + timeout, now) > 0
        if acquired:
            logger.info(f'Lock {key} acquired by {self.instance_id} until {now + timeout}')
        else:
            logger.info(f'Lock {key} is held by another instance')
        return acquired

    def _release(self, key: str) -> None:
        try:
            self.store.release(key, self.instance_id)
            logger.debug(f'Lock {key} released by {self.instance_id}')
        except Exception as e:
            logger.warning(f'Failed to release lock {key}: {e}')

    @contextlib.contextmanager
    def lock(self, key: str, timeout: datetime.timedelta | float):
        """Context manager holding the lease for key.

        Args:
            key: Lock name
            timeout: Lease length (timedelta or seconds)

        Raises
            LockAcquisitionError: If the lease is held elsewhere (including
                by another thread of this process)
        """
        timeout = as_timedelta(timeout)
        with self._held_lock:
            if key in self._held:
                raise LockAcquisitionError(f'Failed to acquire lock for key: {key} (already held by this instance)')
            self._held[key] = timeout
        try:
            acquired = self._try_acquire(key, timeout)
        except BaseException:
            with self._held_lock:
                self._held.pop(key, None)
            raise
        if not acquired:
            with self._held_lock:
                self._held.pop(key, None)
            raise LockAcquisitionError(f'Failed to acquire lock for key: {key}')
        try:
            yield self
        finally:
            with self._held_lock:
                self._held.pop(key, None)
            self._release(key)

    def with_lock(self, key: str, timeout: datetime.timedelta | float, task: Callable):
        """Run task while holding the lease for key and return its result.

        A task returning nothing covers the no-result form. The lease is
        released on every exit path and the task's exception propagates.

        Raises
            LockAcquisitionError: If the lease is held elsewhere; task is not run
        """
        with self.lock(key, timeout):
            return task()

    def extend_leases(self) -> list[str]:
        """Extend every lease this instance currently holds.

        Returns
            Keys whose expiry was actually pushed out
        """
        with self._held_lock:
            held = dict(self._held)

        extended = []
        for key, timeout in held.items():
            try:
                new_expiry = self.clock() + timeout
                if self.store.extend(key, self.instance_id, new_expiry):
                    extended.append(key)
                    logger.debug(f'Lease {key} extended to {new_expiry}')
                else:
                    logger.warning(f'Lease {key} was lost before it could be extended')
            except Exception as e:
                logger.warning(f'Failed to extend lease {key}: {e}')
        return extended


class LeaseRenewalMonitor(Monitor):
    """Keeps leases held by a coordinator from expiring during long runs.
    """

    def __init__(self, coordinator: LockCoordinator, interval: float, shutdown_event: threading.Event):
        """Initialize lease renewal monitor.

        Args:
            coordinator: Lock coordinator whose leases are renewed
            interval: Renewal interval in seconds
            shutdown_event: Shutdown event
        """
        super().__init__(f'lease-renewal-{coordinator.instance_id[:8]}', interval, shutdown_event)
        self.coordinator = coordinator

    def check(self) -> None:
        """Extend held leases.
        """
        if self.coordinator.held_keys():
            self.coordinator.extend_leases()
