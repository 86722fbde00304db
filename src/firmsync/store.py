"""Local firm/office tables and the sync watermark.
"""
import datetime
import logging

from sqlalchemy import Connection, Engine, delete, exists, func, insert, select
from sqlalchemy import update

from firmsync.lock import upsert_for, utcnow
from firmsync.model import Address, Firm, FirmType, Office, SyncMetadata
from firmsync.model import blank_to_none
from firmsync.schema import as_utc

logger = logging.getLogger(__name__)

__all__ = ['DirectoryStore']


class DirectoryStore:
    """Reads and writes mirrored firms and offices.

    Methods taking a connection run inside the caller's transaction; the
    caller decides the transaction boundary.
    """

    def __init__(self, engine: Engine, tables):
        """Initialize directory store.

        Args:
            engine: SQLAlchemy engine
            tables: Table namespace from schema.build_tables
        """
        self.engine = engine
        self.tables = tables
        self._insert = upsert_for(engine)

    # ============================================================
    # READS
    # ============================================================

    def load_firms(self, conn: Connection) -> dict[str, Firm]:
        """All firms with a code, keyed by code.
        """
        firm = self.tables.firm
        parent = firm.alias('parent')
        sql = (select(firm.c.id, firm.c.code, firm.c.name, firm.c.type, firm.c.active,
                      parent.c.code.label('parent_code'))
               .select_from(firm.outerjoin(parent, firm.c.parent_firm_id == parent.c.id))
               .where(firm.c.code.is_not(None)))
        firms = {}
        for row in conn.execute(sql):
            firms[row.code] = Firm(id=row.id, code=row.code, name=row.name,
                                   type=FirmType(row.type), parent_code=row.parent_code,
                                   active=bool(row.active))
        return firms

    def load_offices(self, conn: Connection) -> dict[str, Office]:
        """All offices with a code, keyed by code.
        """
        office = self.tables.office
        firm = self.tables.firm
        sql = (select(office, firm.c.code.label('firm_code'))
               .select_from(office.join(firm, office.c.firm_id == firm.c.id))
               .where(office.c.code.is_not(None)))
        offices = {}
        for row in conn.execute(sql):
            offices[row.code] = Office(
                id=row.id, code=row.code, firm_code=row.firm_code, firm_id=row.firm_id,
                active=bool(row.active),
                address=Address(row.address_line_1, row.address_line_2, row.address_line_3,
                                row.city, row.postcode))
        return offices

    def firm_ids_by_code(self, conn: Connection) -> dict[str, int]:
        firm = self.tables.firm
        return {row.code: row.id for row in
                conn.execute(select(firm.c.code, firm.c.id).where(firm.c.code.is_not(None)))}

    def count_assignments(self, conn: Connection, office_id: int) -> int:
        assignment = self.tables.assignment
        sql = select(func.count()).select_from(assignment).where(assignment.c.office_id == office_id)
        return conn.execute(sql).scalar_one()

    def active_firms_without_active_offices(self, conn: Connection) -> list[Firm]:
        """Active firms that would violate the firm-has-office rule.
        """
        firm = self.tables.firm
        office = self.tables.office
        has_office = exists().where(office.c.firm_id == firm.c.id, office.c.active.is_(True))
        sql = (select(firm.c.id, firm.c.code, firm.c.name, firm.c.type)
               .where(firm.c.active.is_(True), ~has_office)
               .order_by(firm.c.code))
        return [Firm(id=row.id, code=row.code, name=row.name, type=FirmType(row.type))
                for row in conn.execute(sql)]

    # ============================================================
    # FIRM WRITES
    # ============================================================

    def insert_firm(self, conn: Connection, code: str, name: str, firm_type: FirmType,
                    parent_firm_id: int = None) -> int:
        now = utcnow()
        result = conn.execute(insert(self.tables.firm).values(
            code=code, name=name, type=firm_type.value, parent_firm_id=parent_firm_id,
            active=True, created_at=now, updated_at=now))
        return result.inserted_primary_key[0]

    def update_firm(self, conn: Connection, firm_id: int, **values) -> None:
        """Update firm columns (name, parent_firm_id, active).
        """
        firm = self.tables.firm
        conn.execute(update(firm).where(firm.c.id == firm_id).values(updated_at=utcnow(), **values))

    def set_firm_active(self, conn: Connection, firm_id: int, active: bool) -> None:
        self.update_firm(conn, firm_id, active=active)

    # ============================================================
    # OFFICE WRITES
    # ============================================================

    @staticmethod
    def _address_values(address: Address) -> dict:
        address = address.normalized()
        return {
            'address_line_1': address.line1,
            'address_line_2': address.line2,
            'address_line_3': address.line3,
            'city': address.city,
            'postcode': blank_to_none(address.postcode),
        }

    def insert_office(self, conn: Connection, code: str, firm_id: int, address: Address) -> int:
        now = utcnow()
        result = conn.execute(insert(self.tables.office).values(
            code=code, firm_id=firm_id, active=True, created_at=now, updated_at=now,
            **self._address_values(address)))
        return result.inserted_primary_key[0]

    def update_office(self, conn: Connection, office_id: int, firm_id: int = None,
                      address: Address = None, active: bool = None) -> None:
        office = self.tables.office
        values = {'updated_at': utcnow()}
        if firm_id is not None:
            values['firm_id'] = firm_id
        if address is not None:
            values.update(self._address_values(address))
        if active is not None:
            values['active'] = active
        conn.execute(update(office).where(office.c.id == office_id).values(**values))

    def set_office_active(self, conn: Connection, office_id: int, active: bool) -> None:
        self.update_office(conn, office_id, active=active)

    def delete_office(self, conn: Connection, office_id: int) -> None:
        office = self.tables.office
        conn.execute(delete(office).where(office.c.id == office_id))

    def clear_assignments(self, conn: Connection, office_id: int) -> int:
        assignment = self.tables.assignment
        result = conn.execute(delete(assignment).where(assignment.c.office_id == office_id))
        return result.rowcount

    def add_assignment(self, conn: Connection, office_id: int, user_id: str) -> None:
        conn.execute(insert(self.tables.assignment).values(
            office_id=office_id, user_id=user_id, created_at=utcnow()))

    # ============================================================
    # WATERMARK
    # ============================================================

    def read_metadata(self) -> SyncMetadata:
        """Last successful sync window, or None before the first success.
        """
        meta = self.tables.sync_metadata
        with self.engine.connect() as conn:
            row = conn.execute(select(meta).where(meta.c.singleton == 1)).first()
        if row is None:
            return None
        return SyncMetadata(
            last_successful_from=as_utc(row.last_successful_from),
            last_successful_to=as_utc(row.last_successful_to),
            updated_at=as_utc(row.updated_at))

    def write_metadata(self, window_from: datetime.datetime, window_to: datetime.datetime,
                       now: datetime.datetime = None) -> SyncMetadata:
        """Record a fully successful window (singleton upsert).
        """
        now = now or utcnow()
        stmt = self._insert(self.tables.sync_metadata).values(
            singleton=1, last_successful_from=window_from, last_successful_to=window_to,
            updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[self.tables.sync_metadata.c.singleton],
            set_={
                'last_successful_from': stmt.excluded.last_successful_from,
                'last_successful_to': stmt.excluded.last_successful_to,
                'updated_at': stmt.excluded.updated_at,
            })
        with self.engine.begin() as conn:
            conn.execute(stmt)
        logger.debug(f'Sync watermark advanced to {window_to}')
        return SyncMetadata(window_from, window_to, now)
