"""Shared test fixtures, utilities, and helpers.

This module provides common test infrastructure to avoid duplication across test files.
Includes config builders, provider fakes, snapshot factories, wait helpers and
database utilities.

USE THIS FILE FOR:
- Creating reusable test fixtures and utilities
- Adding new wait/assertion helpers used by multiple test files
- Test data factories
"""
import datetime
import logging
import threading
import time

from sqlalchemy import create_engine, event, select

from firmsync.config import SyncConfig
from firmsync.lock import LockCoordinator, LockStore
from firmsync.provider import parse_snapshot
from firmsync.reconcile import Reconciler
from firmsync.schema import build_tables
from firmsync.store import DirectoryStore

logger = logging.getLogger(__name__)

UTC = datetime.timezone.utc


# ============================================================================
# CONFIG BUILDERS - Create test configurations
# ============================================================================

def make_config(**overrides) -> SyncConfig:
    """Create SyncConfig with test-optimized values.

    Fast intervals for quick tests. Use overrides for specific test needs.

    Usage:
        config = make_config()
        config = make_config(interval_sec=1, run_on_startup=True)
    """
    defaults = {
        'interval_sec': 3600,
        'lease_timeout_sec': 30,
        'lease_renew_interval_sec': 1,
        'appname': 'sync_',
    }
    defaults.update(overrides)
    return SyncConfig(**defaults)


# ============================================================================
# PROVIDER DATA - Snapshot rows and fake clients
# ============================================================================

def office_row(office_code: str, firm_code: str, firm_name: str = None,
               firm_type: str = 'LEGAL_SERVICES_PROVIDER', parent: str = None,
               line1: str = '1 High Street', city: str = 'London',
               postcode: str = 'SW1A 1AA', **extra) -> dict:
    """One row of the provider's office snapshot.
    """
    row = {
        'firmNumber': firm_code,
        'firmName': firm_name or f'Firm {firm_code}',
        'firmType': firm_type,
        'parentFirmNumber': parent,
        'officeAccountNo': office_code,
        'officeAddressLine1': line1,
        'officeAddressLine2': None,
        'officeAddressLine3': None,
        'officeAddressCity': city,
        'officeAddressPostcode': postcode,
    }
    row.update(extra)
    return row


def snapshot(*rows) -> dict:
    return {'offices': list(rows)}


class FakeProvider:
    """Provider client serving whatever snapshot the test sets.

    Usage:
        provider = FakeProvider(snapshot(office_row('1A', 'FRA')))
        provider.fail_with = TransportError('down')
    """

    def __init__(self, payload: dict = None):
        self.payload = payload
        self.fail_with = None
        self.calls = []
        self.closed = False
        self.lock = threading.Lock()

    def fetch_firms_and_offices(self, from_ts, to_ts):
        with self.lock:
            self.calls.append((from_ts, to_ts))
        if self.fail_with is not None:
            raise self.fail_with
        return parse_snapshot(self.payload, from_ts, to_ts)

    def close(self):
        self.closed = True


class SlowProvider(FakeProvider):
    """Provider that blocks until released, for concurrency tests.
    """

    def __init__(self, payload: dict = None):
        super().__init__(payload)
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch_firms_and_offices(self, from_ts, to_ts):
        self.entered.set()
        assert self.release.wait(timeout=10), 'SlowProvider was never released'
        return super().fetch_firms_and_offices(from_ts, to_ts)


class FixedClock:
    """Settable clock returning aware UTC times.
    """

    def __init__(self, now: datetime.datetime = None):
        self.now = now or datetime.datetime(2025, 6, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += datetime.timedelta(**kwargs)


# ============================================================================
# OBJECT FACTORIES
# ============================================================================

def create_reconciler(engine, provider, config: SyncConfig = None, **kwargs) -> Reconciler:
    config = config or make_config()
    store = DirectoryStore(engine, build_tables(config.appname))
    return Reconciler(store, provider, config, **kwargs)


def create_coordinator(engine, instance_id: str = None, **kwargs) -> LockCoordinator:
    return LockCoordinator(LockStore(engine, build_tables('sync_')), instance_id, **kwargs)


# ============================================================================
# DATABASE HELPERS
# ============================================================================

def _on_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute('PRAGMA foreign_keys=ON')
    cursor.close()


def _on_begin(conn):
    conn.exec_driver_sql('BEGIN IMMEDIATE')


def sqlite_engine(path):
    """SQLite engine safe for multi-threaded tests.

    Transactions open with BEGIN IMMEDIATE so concurrent writers queue on the
    busy timeout instead of failing when a read lock would need upgrading.
    """
    engine = create_engine(f'sqlite:///{path}',
                           connect_args={'timeout': 30, 'check_same_thread': False})
    event.listen(engine, 'connect', _on_connect)
    event.listen(engine, 'begin', _on_begin)
    return engine


def firm_rows(engine) -> dict:
    """Firm rows keyed by code.
    """
    firm = build_tables('sync_').firm
    with engine.connect() as conn:
        return {row.code: row for row in conn.execute(select(firm))}


def office_rows(engine) -> dict:
    """Office rows keyed by code.
    """
    office = build_tables('sync_').office
    with engine.connect() as conn:
        return {row.code: row for row in conn.execute(select(office))}


def firm_id_of(engine, code: str) -> int:
    return firm_rows(engine)[code].id


def add_assignment(engine, office_code: str, user_id: str = 'user-1') -> None:
    store = DirectoryStore(engine, build_tables('sync_'))
    office_id = office_rows(engine)[office_code].id
    with engine.begin() as conn:
        store.add_assignment(conn, office_id, user_id)


def active_firms_without_offices(engine) -> list[str]:
    store = DirectoryStore(engine, build_tables('sync_'))
    with engine.connect() as conn:
        return [firm.code for firm in store.active_firms_without_active_offices(conn)]


# ============================================================================
# WAIT HELPERS
# ============================================================================

def wait_for_condition(condition: callable, timeout_sec: float = 5.0,
                       check_interval: float = 0.05) -> bool:
    """Wait for arbitrary condition function to return True.

    Returns
        True if condition met, False if timeout

    Usage:
        assert wait_for_condition(lambda: len(my_list) > 0, timeout_sec=5)
    """
    start = time.time()
    while time.time() - start < timeout_sec:
        if condition():
            return True
        time.sleep(check_interval)
    return False


def wait_for(condition: callable, timeout_sec: float = 5.0) -> bool:
    """Shorter alias for wait_for_condition().
    """
    return wait_for_condition(condition, timeout_sec)


__all__ = [
    'UTC',
    'make_config', 'office_row', 'snapshot', 'FakeProvider', 'SlowProvider', 'FixedClock',
    'create_reconciler', 'create_coordinator',
    'sqlite_engine', 'firm_rows', 'office_rows', 'firm_id_of', 'add_assignment', 'active_firms_without_offices',
    'wait_for_condition', 'wait_for',
]
