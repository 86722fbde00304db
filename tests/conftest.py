"""Pytest configuration and shared fixtures.

WHAT THIS FILE PROVIDES:
- engine: SQLAlchemy engine on a fresh SQLite file with all tables created
- tables: Table namespace for the test appname prefix

Every test gets its own database file, so tests need no table cleanup.
The same SQLAlchemy code paths run against PostgreSQL in production.
"""
import logging

import pytest
from fixtures import sqlite_engine

from firmsync import schema

logger = logging.getLogger(__name__)

APPNAME = 'sync_'


@pytest.fixture
def engine(tmp_path):
    """Provide SQLAlchemy engine with the sync tables in place.
    """
    engine = sqlite_engine(tmp_path / 'firmsync.db')
    schema.ensure_database_ready(engine, APPNAME)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def tables():
    return schema.build_tables(APPNAME)
