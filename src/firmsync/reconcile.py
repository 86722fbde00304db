"""Reconciliation of the provider's firm/office snapshot into the local store.

A run moves through IDLE -> WINDOW_COMPUTED -> FETCHING -> DIFFING ->
APPLYING -> COMPLETED. Diffing is a pure function of the fetched dataset and
the local rows (build_plan); applying runs the plan as five steps, each in its
own transaction:

1. create new firms, their parents, then new offices
2. update changed firms and offices
3. deactivate firms no longer present upstream
4. reactivate offices, then firms, that reappeared
5. remove offices no longer present upstream, then deactivate any firm left
   without an active office

A failed step is recorded into the result and stops the remaining steps;
earlier steps stay committed. The watermark only advances when every step
succeeded.
"""
import datetime
import functools
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum

from sqlalchemy import Connection

from firmsync.config import SyncConfig
from firmsync.exceptions import ReconciliationStepError, SyncRejectedError
from firmsync.lock import utcnow
from firmsync.model import Address, Firm, FirmType, Office, SyncResult, SyncTally
from firmsync.model import blank_to_none, same_text
from firmsync.provider import ProviderClient, ProviderDataset
from firmsync.store import DirectoryStore
from firmsync.window import compute_fetch_window

logger = logging.getLogger(__name__)

__all__ = ['SyncState', 'SyncStateMachine', 'SyncPlan', 'FirmUpdate', 'OfficeUpdate',
           'check_integrity', 'build_plan', 'Reconciler', 'SHUTDOWN_WARNING']

SHUTDOWN_WARNING = 'Sync aborted - application is shutting down'


# ============================================================
# RUN STATE
# ============================================================

class SyncState(Enum):
    """Phases of a single reconciliation run.
    """
    IDLE = 'idle'
    WINDOW_COMPUTED = 'window_computed'
    FETCHING = 'fetching'
    DIFFING = 'diffing'
    APPLYING = 'applying'
    COMPLETED = 'completed'
    ABORTED = 'aborted'
    FAILED = 'failed'


TERMINAL_STATES = frozenset({SyncState.COMPLETED, SyncState.ABORTED, SyncState.FAILED})


class SyncStateMachine:
    """Validated state transitions for one run.
    """

    def __init__(self):
        self.state = SyncState.IDLE
        self._valid_transitions = {}
        self._setup_transition_graph()

    def _setup_transition_graph(self) -> None:
        """Define valid state transitions.
        """
        self._add_transition(SyncState.IDLE, SyncState.WINDOW_COMPUTED)
        self._add_transition(SyncState.WINDOW_COMPUTED, SyncState.FETCHING)
        self._add_transition(SyncState.FETCHING, SyncState.DIFFING)
        self._add_transition(SyncState.FETCHING, SyncState.FAILED)
        self._add_transition(SyncState.DIFFING, SyncState.APPLYING)
        self._add_transition(SyncState.APPLYING, SyncState.COMPLETED)
        for state in SyncState:
            if state not in TERMINAL_STATES:
                self._add_transition(state, SyncState.ABORTED)

    def _add_transition(self, from_state: SyncState, to_state: SyncState) -> None:
        if from_state not in self._valid_transitions:
            self._valid_transitions[from_state] = set()
        self._valid_transitions[from_state].add(to_state)

    def transition_to(self, new_state: SyncState) -> bool:
        """Attempt transition with validation.

        Returns
            True if transition succeeded, False if invalid
        """
        if self.state == new_state:
            return True

        if new_state not in self._valid_transitions.get(self.state, set()):
            logger.error(f'Invalid sync transition: {self.state.value} -> {new_state.value}')
            return False

        logger.debug(f'Sync transition: {self.state.value} -> {new_state.value}')
        self.state = new_state
        return True

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES


# ============================================================
# PLAN
# ============================================================

@dataclass
class FirmUpdate:
    """Field changes for an existing firm; None/False means unchanged.
    """
    firm: Firm
    name: str = None
    parent_changed: bool = False
    parent_code: str = None


@dataclass
class OfficeUpdate:
    """Field changes for an existing office.
    """
    office: Office
    firm_code: str = None
    address: Address = None

    @property
    def moved(self) -> bool:
        return self.firm_code is not None


@dataclass
class SyncPlan:
    """Changes needed to converge the local store on a provider dataset.
    """
    firm_creates: list[Firm] = field(default_factory=list)
    office_creates: list[Office] = field(default_factory=list)
    firm_updates: list[FirmUpdate] = field(default_factory=list)
    office_updates: list[OfficeUpdate] = field(default_factory=list)
    firm_deactivations: list[Firm] = field(default_factory=list)
    office_reactivations: list[Office] = field(default_factory=list)
    firm_reactivations: list[Firm] = field(default_factory=list)
    office_removals: list[Office] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not any((self.firm_creates, self.office_creates, self.firm_updates,
                        self.office_updates, self.firm_deactivations, self.office_reactivations,
                        self.firm_reactivations, self.office_removals))

    def summary(self) -> str:
        return (f'Firms: {len(self.firm_creates)} new, {len(self.firm_updates)} changed, '
                f'{len(self.firm_deactivations)} gone, {len(self.firm_reactivations)} back | '
                f'Offices: {len(self.office_creates)} new, {len(self.office_updates)} changed, '
                f'{len(self.office_removals)} gone, {len(self.office_reactivations)} back')


def check_integrity(dataset: ProviderDataset, tally: SyncTally) -> ProviderDataset:
    """Drop offices whose firm is missing and firms that have no offices.

    The local store cannot hold either, so they are reported and left out of
    the plan rather than failing a whole apply step.
    """
    offices = {code: office for code, office in dataset.offices.items()
               if office.firm_code in dataset.firms}
    orphans = len(dataset.offices) - len(offices)
    if orphans:
        tally.warn(f'Removed {orphans} orphan offices')
        logger.warning(f'Removed {orphans} orphan offices whose firm is not in the provider data')

    with_offices = {office.firm_code for office in offices.values()}
    firms = {code: firm for code, firm in dataset.firms.items() if code in with_offices}
    empty = len(dataset.firms) - len(firms)
    if empty:
        tally.warn(f'Removed {empty} firms without offices')
        logger.warning(f'Removed {empty} firms without offices from the provider data')

    if not orphans and not empty:
        return dataset
    return replace(dataset, firms=firms, offices=offices)


def _parent_code(value: str) -> str:
    """Provider parent reference; blank and the literal 'null' mean none.
    """
    value = blank_to_none(value)
    if value is None or value.strip().lower() == 'null':
        return None
    return value.strip()


def build_plan(dataset: ProviderDataset, local_firms: dict[str, Firm],
               local_offices: dict[str, Office]) -> SyncPlan:
    """Compare a provider dataset with local rows keyed by natural code.

    Text fields compare with null and empty treated alike. Firms the local
    store cannot accept (unknown type, no name, name already taken) are
    skipped with a warning and neither they nor their offices are touched.

    Args:
        dataset: Provider firms and offices (after check_integrity)
        local_firms: Local firms keyed by code
        local_offices: Local offices keyed by code

    Returns
        SyncPlan
    """
    plan = SyncPlan()
    skipped = set()
    types = {}

    def skip(code, reason):
        skipped.add(code)
        plan.warnings.append(f'Skipping firm {code}: {reason}')
        logger.warning(f'Skipping firm {code}: {reason}')

    for code in sorted(dataset.firms):
        upstream = dataset.firms[code]
        try:
            types[code] = FirmType.parse(upstream.type)
        except ValueError as e:
            skip(code, e)
            continue
        if blank_to_none(upstream.name) is None:
            skip(code, 'firm name is empty or null')

    # Name uniqueness, tracked as the plan claims names. A name given up by a
    # rename is only free for later renames: creates are applied before updates.
    names = {firm.name: firm.code for firm in local_firms.values()}
    released = {}
    accepted_names = {}
    for code in sorted(dataset.firms):
        if code in skipped:
            continue
        name = dataset.firms[code].name
        local = local_firms.get(code)
        if local is not None and (same_text(local.name, name) or local.type is not types[code]):
            continue
        holder = names.get(name)
        if local is None and holder is None and name in released:
            skip(code, f'name {name!r} is still held by firm {released[name]} until its rename is applied')
            continue
        if holder is not None and holder != code:
            if local is None:
                skip(code, f'name {name!r} already used by firm {holder}')
            else:
                message = f'Firm {code} name change to {name!r} skipped - name already used by firm {holder}'
                plan.warnings.append(message)
                logger.warning(message)
            continue
        if local is not None:
            names.pop(local.name, None)
            released[local.name] = code
        names[name] = code
        accepted_names[code] = name

    # Existing firms are checked by their stored type. A stored parent counts
    # until a run has cleared it.
    def parent_type(code: str) -> FirmType:
        local = local_firms.get(code)
        return local.type if local is not None else types[code]

    def has_parent(code: str) -> bool:
        local = local_firms.get(code)
        if local is not None and blank_to_none(local.parent_code) is not None:
            return True
        return _parent_code(dataset.firms[code].parent_code) is not None

    def resolve_parent(code: str) -> str:
        parent = _parent_code(dataset.firms[code].parent_code)
        if parent is None:
            return None
        problem = None
        if parent == code:
            problem = 'a firm cannot be its own parent'
        elif parent not in dataset.firms or parent in skipped:
            problem = f'parent firm {parent} not found'
        elif parent_type(parent) is FirmType.ADVOCATE:
            problem = f'parent firm {parent} is ADVOCATE type'
        elif has_parent(parent):
            problem = f'parent firm {parent} already has a parent (multi-level hierarchy not allowed)'
        if problem:
            message = f'Firm {code} parent cleared - {problem}'
            plan.warnings.append(message)
            logger.warning(message)
            return None
        return parent

    for code in sorted(dataset.firms):
        if code in skipped:
            continue
        upstream = dataset.firms[code]
        firm_type = types[code]
        parent = resolve_parent(code)
        local = local_firms.get(code)

        if local is None:
            plan.firm_creates.append(Firm(id=None, code=code, name=upstream.name, type=firm_type,
                                          parent_code=parent))
            continue

        if not local.active:
            plan.firm_reactivations.append(local)

        if local.type is not firm_type:
            message = (f'Firm {code} type change from {local.type.value} to {firm_type.value} '
                       f'rejected - firm type cannot change')
            plan.warnings.append(message)
            logger.warning(message)
            continue

        change = FirmUpdate(firm=local, name=accepted_names.get(code))
        if blank_to_none(local.parent_code) != parent:
            change.parent_changed = True
            change.parent_code = parent
        if change.name is not None or change.parent_changed:
            logger.debug(f'Firm {code} changed: {change}')
            plan.firm_updates.append(change)

    for code, local in sorted(local_firms.items()):
        if local.active and code not in dataset.firms:
            plan.firm_deactivations.append(local)

    for code in sorted(dataset.offices):
        upstream = dataset.offices[code]
        if upstream.firm_code in skipped:
            continue
        local = local_offices.get(code)
        if local is None:
            plan.office_creates.append(Office(id=None, code=code, firm_code=upstream.firm_code,
                                              address=upstream.address.normalized()))
            continue

        if not local.active:
            plan.office_reactivations.append(local)

        change = OfficeUpdate(office=local)
        if local.firm_code != upstream.firm_code:
            change.firm_code = upstream.firm_code
        if not local.address.same_as(upstream.address):
            change.address = upstream.address.normalized()
        if change.moved or change.address is not None:
            logger.debug(f'Office {code} changed: {change}')
            plan.office_updates.append(change)

    for code, local in sorted(local_offices.items()):
        if local.active and code not in dataset.offices:
            plan.office_removals.append(local)

    return plan


# ============================================================
# ENGINE
# ============================================================

class Reconciler:
    """Runs reconciliation against one local store and one provider.
    """

    def __init__(self, store: DirectoryStore, provider: ProviderClient,
                 config: SyncConfig = None, shutdown_event: threading.Event = None,
                 clock: Callable[[], datetime.datetime] = utcnow):
        """Initialize reconciler.

        Args:
            store: Local directory store
            provider: Provider client
            config: Sync configuration (window sizes, pending limit)
            shutdown_event: Shared shutdown flag, checked once per run before fetching
            clock: Source of aware UTC timestamps
        """
        self.store = store
        self.engine = store.engine
        self.provider = provider
        self.config = config or SyncConfig()
        self.shutdown_event = shutdown_event or threading.Event()
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='firmsync')
        self._pending = 0
        self._pending_lock = threading.Lock()

    def request_shutdown(self) -> None:
        self.shutdown_event.set()

    def fetch_window(self) -> tuple[datetime.datetime, datetime.datetime]:
        return compute_fetch_window(
            self.store.read_metadata(),
            self.clock(),
            datetime.timedelta(seconds=self.config.default_window_sec),
            datetime.timedelta(seconds=self.config.window_cap_sec),
            datetime.timedelta(seconds=self.config.safety_buffer_sec),
        )

    def _load_plan(self, dataset: ProviderDataset) -> SyncPlan:
        with self.engine.connect() as conn:
            local_firms = self.store.load_firms(conn)
            local_offices = self.store.load_offices(conn)
        return build_plan(dataset, local_firms, local_offices)

    def preview(self) -> SyncPlan:
        """Fetch the next window and return the plan without writing anything.

        Raises
            TransportError: If the provider fetch fails
        """
        window_start, window_end = self.fetch_window()
        dataset = self.provider.fetch_firms_and_offices(window_start, window_end)
        tally = SyncTally()
        plan = self._load_plan(check_integrity(dataset, tally))
        plan.warnings[:0] = tally.warnings
        logger.info(f'Sync preview for {window_start} - {window_end}: {plan.summary()}')
        return plan

    def synchronize(self, shutdown: threading.Event = None) -> SyncResult:
        """Run one reconciliation.

        Args:
            shutdown: Shutdown flag for this run (defaults to the shared one)

        Returns
            SyncResult, partial with errors if an apply step failed

        Raises
            TransportError: If the provider fetch fails; nothing was written
        """
        shutdown = shutdown or self.shutdown_event
        machine = SyncStateMachine()
        tally = SyncTally()

        window_start, window_end = self.fetch_window()
        machine.transition_to(SyncState.WINDOW_COMPUTED)

        if shutdown.is_set():
            machine.transition_to(SyncState.ABORTED)
            logger.warning(SHUTDOWN_WARNING)
            return SyncResult.aborted(SHUTDOWN_WARNING)

        logger.info(f'Sync started for window {window_start} - {window_end}')
        machine.transition_to(SyncState.FETCHING)
        try:
            dataset = self.provider.fetch_firms_and_offices(window_start, window_end)
        except Exception as e:
            machine.transition_to(SyncState.FAILED)
            logger.error(f'Provider fetch failed for window {window_start} - {window_end}: {e}')
            raise

        machine.transition_to(SyncState.DIFFING)
        dataset = check_integrity(dataset, tally)
        plan = self._load_plan(dataset)
        for warning in plan.warnings:
            tally.warn(warning)
        logger.info(f'Sync plan: {plan.summary()}')

        machine.transition_to(SyncState.APPLYING)
        completed = self._apply(plan, tally, window_start, window_end)
        machine.transition_to(SyncState.COMPLETED)

        result = tally.freeze(window_start, window_end)
        if completed:
            self.store.write_metadata(window_start, window_end)
            logger.info(f'Sync completed: {result.summary()}')
        else:
            logger.warning(f'Sync completed with {len(result.errors)} errors '
                           f'(earlier steps were committed): {result.summary()}')
        return result

    def synchronize_async(self, guard: Callable[[Callable[[], SyncResult]], SyncResult] = None) -> Future:
        """Queue a run on the sync worker thread.

        Args:
            guard: Optional wrapper the run executes through, e.g. a lock

        Returns
            Future resolving to the SyncResult

        Raises
            SyncRejectedError: If max_pending_syncs runs are already queued
        """
        task = self.synchronize if guard is None else functools.partial(guard, self.synchronize)
        with self._pending_lock:
            if self._pending >= self.config.max_pending_syncs:
                raise SyncRejectedError(f'{self._pending} sync runs already pending')
            self._pending += 1
        try:
            future = self._executor.submit(task)
        except RuntimeError:
            self._finished()
            raise
        future.add_done_callback(self._finished)
        return future

    def _finished(self, future: Future = None) -> None:
        with self._pending_lock:
            self._pending -= 1

    def close(self) -> None:
        """Stop accepting runs and wait for the running one to finish.
        """
        self._executor.shutdown(wait=True, cancel_futures=True)
        self.provider.close()

    # ============================================================
    # APPLY
    # ============================================================

    def _apply(self, plan: SyncPlan, tally: SyncTally, window_start: datetime.datetime,
               window_end: datetime.datetime) -> bool:
        steps = [
            ('create', self._create),
            ('update', self._update),
            ('deactivate', self._deactivate),
            ('reactivate', self._reactivate),
            ('remove', self._remove),
        ]
        for name, step in steps:
            try:
                self._run_step(name, step, plan, tally)
            except ReconciliationStepError as e:
                logger.error(f'Sync {e} (window {window_start} - {window_end}, '
                             f'counts so far: {tally.counts})', exc_info=e.cause)
                tally.error(str(e))
                return False
        return True

    def _run_step(self, name: str, step: Callable, plan: SyncPlan, tally: SyncTally) -> None:
        """Run one step in its own transaction; counts only land on commit.
        """
        step_tally = SyncTally()
        try:
            with self.engine.begin() as conn:
                step(conn, plan, step_tally)
        except Exception as e:
            raise ReconciliationStepError(name, e) from e
        for key, amount in step_tally.counts.items():
            tally.add(key, amount)
        for warning in step_tally.warnings:
            tally.warn(warning)

    def _create(self, conn: Connection, plan: SyncPlan, tally: SyncTally) -> None:
        for firm in plan.firm_creates:
            self.store.insert_firm(conn, firm.code, firm.name, firm.type)
            logger.debug(f'Created firm {firm.code}')
            tally.add('firms_created')

        firm_ids = self.store.firm_ids_by_code(conn)
        for firm in plan.firm_creates:
            if firm.parent_code is not None:
                self.store.update_firm(conn, firm_ids[firm.code], parent_firm_id=firm_ids[firm.parent_code])

        for office in plan.office_creates:
            self.store.insert_office(conn, office.code, firm_ids[office.firm_code], office.address)
            logger.debug(f'Created office {office.code} for firm {office.firm_code}')
            tally.add('offices_created')

    def _update(self, conn: Connection, plan: SyncPlan, tally: SyncTally) -> None:
        firm_ids = self.store.firm_ids_by_code(conn)
        for change in plan.firm_updates:
            values = {}
            if change.name is not None:
                values['name'] = change.name
            if change.parent_changed:
                values['parent_firm_id'] = firm_ids[change.parent_code] if change.parent_code else None
            self.store.update_firm(conn, change.firm.id, **values)
            tally.add('firms_updated')

        for change in plan.office_updates:
            office = change.office
            firm_id = firm_ids[change.firm_code] if change.moved else None
            self.store.update_office(conn, office.id, firm_id=firm_id, address=change.address)
            if change.moved:
                removed = self.store.clear_assignments(conn, office.id)
                message = (f'Office {office.code} moved from firm {office.firm_code} to '
                           f'{change.firm_code} - removed {removed} user assignments')
                tally.warn(message)
                logger.warning(message)
            tally.add('offices_updated')

    def _deactivate(self, conn: Connection, plan: SyncPlan, tally: SyncTally) -> None:
        for firm in plan.firm_deactivations:
            self.store.set_firm_active(conn, firm.id, False)
            message = f'Firm {firm.code} no longer present in provider data - deactivated'
            tally.warn(message)
            logger.warning(message)
            tally.add('firms_disabled')

    def _reactivate(self, conn: Connection, plan: SyncPlan, tally: SyncTally) -> None:
        for office in plan.office_reactivations:
            self.store.set_office_active(conn, office.id, True)
            logger.info(f'Reactivated office {office.code}')
            tally.add('offices_reactivated')
        for firm in plan.firm_reactivations:
            self.store.set_firm_active(conn, firm.id, True)
            logger.info(f'Reactivated firm {firm.code}')
            tally.add('firms_reactivated')

    def _remove(self, conn: Connection, plan: SyncPlan, tally: SyncTally) -> None:
        for office in plan.office_removals:
            if self.store.count_assignments(conn, office.id):
                self.store.set_office_active(conn, office.id, False)
                logger.info(f'Deactivated office {office.code} (has user assignments)')
                tally.add('offices_disabled')
            else:
                self.store.delete_office(conn, office.id)
                logger.info(f'Deleted office {office.code}')
                tally.add('offices_deleted')

        for firm in self.store.active_firms_without_active_offices(conn):
            self.store.set_firm_active(conn, firm.id, False)
            message = f'Firm {firm.code} has no active offices - deactivated'
            tally.warn(message)
            logger.warning(message)
            tally.add('firms_disabled')
