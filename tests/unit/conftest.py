"""
Unit Test Fixtures

Every database test gets its own file-backed SQLite database with the
schema already created, and a ManualClock so lease expiry needs no sleeping.
"""

import pytest

from postbox.clock import ManualClock
from postbox.database import DatabaseAdapter, DatabaseBackend, DatabaseConfig
from postbox.inbox import DeduplicationGuard, DeduplicationLedger
from postbox.outbox import PartitionedOutboxStore
from postbox.schema import setup_schema


@pytest.fixture
def clock() -> ManualClock:
    """Clock that only moves when a test advances it."""
    return ManualClock()


@pytest.fixture
async def db(tmp_path):
    """Connected adapter over a fresh SQLite file, tables created explicitly."""
    adapter = DatabaseAdapter(DatabaseConfig(
        backend=DatabaseBackend.SQLITE,
        sqlite_path=str(tmp_path / "postbox-test.db"),
    ))
    await adapter.connect()
    await setup_schema(adapter)
    yield adapter
    await adapter.disconnect()


@pytest.fixture
def store(db, clock) -> PartitionedOutboxStore:
    return PartitionedOutboxStore(db, clock=clock)


@pytest.fixture
def ledger(clock) -> DeduplicationLedger:
    return DeduplicationLedger(clock=clock)


@pytest.fixture
def guard(ledger) -> DeduplicationGuard:
    return DeduplicationGuard(ledger)
