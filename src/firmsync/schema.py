import datetime
import functools
import logging
from types import SimpleNamespace

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Engine
from sqlalchemy import ForeignKey, Integer, MetaData, PrimaryKeyConstraint
from sqlalchemy import String, Table, inspect

logger = logging.getLogger(__name__)

TABLE_KEYS = ['Lock', 'Firm', 'Office', 'Assignment', 'Metadata']


def get_table_names(appname: str = 'sync_') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table names
    """
    return {
        'Lock': f'{appname}lock',
        'Firm': f'{appname}firm',
        'Office': f'{appname}office',
        'Assignment': f'{appname}office_assignment',
        'Metadata': f'{appname}sync_metadata',
    }


@functools.cache
def build_tables(appname: str = 'sync_') -> SimpleNamespace:
    """Build SQLAlchemy table definitions for an appname prefix.

    Each prefix gets its own MetaData so several prefixes can live in one
    database (the tests rely on this).
    """
    names = get_table_names(appname)
    metadata = MetaData()

    lock = Table(
        names['Lock'], metadata,
        Column('key', String(255), primary_key=True),
        Column('owner_id', String(255), nullable=False),
        Column('acquired_at', DateTime(timezone=True), nullable=False),
        Column('expires_at', DateTime(timezone=True), nullable=False, index=True),
    )

    firm = Table(
        names['Firm'], metadata,
        Column('id', Integer, primary_key=True, autoincrement=True),
        Column('code', String(255), unique=True),
        Column('name', String(255), nullable=False, unique=True),
        Column('type', String(64), nullable=False),
        Column('parent_firm_id', Integer, ForeignKey(f'{names["Firm"]}.id'), nullable=True),
        Column('active', Boolean, nullable=False, default=True),
        Column('created_at', DateTime(timezone=True), nullable=False),
        Column('updated_at', DateTime(timezone=True), nullable=False),
    )

    office = Table(
        names['Office'], metadata,
        Column('id', Integer, primary_key=True, autoincrement=True),
        Column('code', String(255), unique=True),
        Column('firm_id', Integer, ForeignKey(f'{names["Firm"]}.id'), nullable=False, index=True),
        Column('address_line_1', String(255)),
        Column('address_line_2', String(255)),
        Column('address_line_3', String(255)),
        Column('city', String(255)),
        Column('postcode', String(16)),
        Column('active', Boolean, nullable=False, default=True),
        Column('created_at', DateTime(timezone=True), nullable=False),
        Column('updated_at', DateTime(timezone=True), nullable=False),
    )

    assignment = Table(
        names['Assignment'], metadata,
        Column('office_id', Integer, ForeignKey(f'{names["Office"]}.id'), nullable=False),
        Column('user_id', String(255), nullable=False),
        Column('created_at', DateTime(timezone=True), nullable=False),
        PrimaryKeyConstraint('office_id', 'user_id'),
    )

    sync_metadata = Table(
        names['Metadata'], metadata,
        Column('singleton', Integer, primary_key=True, default=1, autoincrement=False),
        Column('last_successful_from', DateTime(timezone=True), nullable=False),
        Column('last_successful_to', DateTime(timezone=True), nullable=False),
        Column('updated_at', DateTime(timezone=True), nullable=False),
        CheckConstraint('singleton = 1'),
    )

    return SimpleNamespace(
        metadata=metadata,
        names=names,
        lock=lock,
        firm=firm,
        office=office,
        assignment=assignment,
        sync_metadata=sync_metadata,
    )


def as_utc(value: datetime.datetime) -> datetime.datetime:
    """Normalize a stored timestamp to an aware UTC datetime.

    SQLite hands back naive values; everything is written as UTC, so a
    naive value is UTC by construction.
    """
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def verify_tables_exist(engine: Engine, appname: str = 'sync_') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to existence status (True if exists, False otherwise)
    """
    tables = get_table_names(appname)
    inspector = inspect(engine)
    return {key: inspector.has_table(tables[key]) for key in TABLE_KEYS}


def ensure_database_ready(engine: Engine, appname: str = 'sync_') -> None:
    """Ensure database has all required tables.

    Safe to call repeatedly - only missing tables are created.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    logger.debug('Verifying database structure')

    table_status = verify_tables_exist(engine, appname)
    missing_tables = [k for k in TABLE_KEYS if not table_status.get(k, False)]
    if missing_tables:
        logger.info(f'Creating missing tables: {missing_tables}')

    try:
        build_tables(appname).metadata.create_all(engine, checkfirst=True)
    except Exception as e:
        logger.error(f'Failed to create tables: {e}')
        raise

    logger.info('Database structure verified and ready')
