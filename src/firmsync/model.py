"""Domain records for mirrored firms and offices and the sync result.
"""
import datetime
from dataclasses import dataclass, field, fields
from enum import Enum

__all__ = ['FirmType', 'Address', 'Firm', 'Office', 'SyncResult', 'SyncTally',
           'SyncMetadata', 'blank_to_none', 'same_text']


def blank_to_none(value: str) -> str:
    """Collapse None, empty and whitespace-only strings to None.

    >>> blank_to_none('  ') is None
    True
    >>> blank_to_none(' 1 High St')
    ' 1 High St'
    """
    if value is None:
        return None
    value = str(value)
    return value if value.strip() else None


def same_text(a: str, b: str) -> bool:
    """Compare mirrored text fields treating null and empty alike.

    >>> same_text(None, '')
    True
    >>> same_text('Leeds', 'Leeds')
    True
    >>> same_text('Leeds', None)
    False
    """
    return blank_to_none(a) == blank_to_none(b)


class FirmType(Enum):
    """Provider firm categories.
    """
    ADVOCATE = 'ADVOCATE'
    CHAMBERS = 'CHAMBERS'
    LEGAL_SERVICES_PROVIDER = 'LEGAL_SERVICES_PROVIDER'
    PARTNERSHIP = 'PARTNERSHIP'

    @classmethod
    def parse(cls, value: str) -> 'FirmType':
        """Parse provider spelling, e.g. 'Legal Services Provider'.

        Raises
            ValueError: If value is blank or not a known type
        """
        if blank_to_none(value) is None:
            raise ValueError('firm type is empty or null')
        key = value.strip().upper().replace(' ', '_').replace('-', '_')
        try:
            return cls[key]
        except KeyError:
            raise ValueError(f'unknown firm type {value!r}') from None


@dataclass(frozen=True)
class Address:
    line1: str = None
    line2: str = None
    line3: str = None
    city: str = None
    postcode: str = None

    def same_as(self, other: 'Address') -> bool:
        """Field-wise tolerant comparison.
        """
        return all(same_text(getattr(self, f.name), getattr(other, f.name))
                   for f in fields(Address))

    def normalized(self) -> 'Address':
        return Address(**{f.name: blank_to_none(getattr(self, f.name)) for f in fields(Address)})


@dataclass
class Firm:
    """Local mirror of a provider firm.
    """
    id: int
    code: str
    name: str
    type: FirmType
    parent_code: str = None
    active: bool = True


@dataclass
class Office:
    """Local mirror of a provider office.
    """
    id: int
    code: str
    firm_code: str
    address: Address = field(default_factory=Address)
    active: bool = True
    firm_id: int = None


@dataclass(frozen=True)
class SyncMetadata:
    """Watermark of the last fully successful sync window.
    """
    last_successful_from: datetime.datetime
    last_successful_to: datetime.datetime
    updated_at: datetime.datetime


@dataclass(frozen=True)
class SyncResult:
    """Immutable summary of one reconciliation run.

    firms_deleted is always 0: firms are only ever deactivated.
    """
    firms_created: int = 0
    firms_updated: int = 0
    firms_disabled: int = 0
    firms_reactivated: int = 0
    firms_deleted: int = 0
    offices_created: int = 0
    offices_updated: int = 0
    offices_disabled: int = 0
    offices_reactivated: int = 0
    offices_deleted: int = 0
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    window_start: datetime.datetime = None
    window_end: datetime.datetime = None

    @classmethod
    def aborted(cls, reason: str) -> 'SyncResult':
        return cls(warnings=(reason,))

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def total_changes(self) -> int:
        return sum(getattr(self, name) for name in COUNT_FIELDS)

    def summary(self) -> str:
        return (f'Firms: {self.firms_created} created, {self.firms_updated} updated, '
                f'{self.firms_disabled} disabled, {self.firms_reactivated} reactivated | '
                f'Offices: {self.offices_created} created, {self.offices_updated} updated, '
                f'{self.offices_disabled} disabled, {self.offices_reactivated} reactivated, '
                f'{self.offices_deleted} deleted')


COUNT_FIELDS = [f.name for f in fields(SyncResult) if f.type is int]


class SyncTally:
    """Mutable accumulator a run writes into before freezing a SyncResult.
    """

    def __init__(self):
        self.counts = dict.fromkeys(COUNT_FIELDS, 0)
        self.warnings = []
        self.errors = []

    def add(self, name: str, amount: int = 1) -> None:
        if name not in self.counts:
            raise KeyError(f'Unknown sync counter: {name}')
        self.counts[name] += amount

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)

    def freeze(self, window_start: datetime.datetime = None,
               window_end: datetime.datetime = None) -> SyncResult:
        return SyncResult(warnings=tuple(self.warnings), errors=tuple(self.errors),
                          window_start=window_start, window_end=window_end, **self.counts)
