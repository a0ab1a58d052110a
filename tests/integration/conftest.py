"""
Integration Test Fixtures

These tests run against a real PostgreSQL server and are skipped unless
POSTBOX_TEST_DATABASE_URL points at a disposable database.
"""

import os
import uuid

import pytest

from postbox.database import DatabaseAdapter, DatabaseBackend, DatabaseConfig
from postbox.inbox import DeduplicationLedger
from postbox.outbox import PartitionedOutboxStore
from postbox.schema import setup_schema

POSTGRES_URL = os.getenv("POSTBOX_TEST_DATABASE_URL")


def pytest_collection_modifyitems(config, items):
    if POSTGRES_URL:
        return
    skip = pytest.mark.skip(reason="POSTBOX_TEST_DATABASE_URL not set")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
async def pg():
    """Connected PostgreSQL adapter."""
    adapter = DatabaseAdapter(DatabaseConfig(
        backend=DatabaseBackend.POSTGRESQL,
        postgres_url=POSTGRES_URL,
    ))
    await adapter.connect()
    yield adapter
    await adapter.disconnect()


@pytest.fixture
async def tables(pg):
    """Store and ledger over uniquely named tables, dropped afterwards."""
    suffix = uuid.uuid4().hex[:8]
    store = PartitionedOutboxStore(pg, table_name=f"outbox_{suffix}")
    ledger = DeduplicationLedger(table_name=f"dedup_{suffix}")
    await setup_schema(pg, store, ledger)

    yield store, ledger

    async with pg.transaction() as tx:
        await tx.execute(f"DROP TABLE IF EXISTS {store.table_name}")
        await tx.execute(f"DROP TABLE IF EXISTS {ledger.table_name}")
