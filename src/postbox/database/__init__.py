"""
Database abstraction layer supporting SQLite and PostgreSQL.

Usage:
    from postbox.database import DatabaseAdapter

    db = DatabaseAdapter()
    await db.connect()

    async with db.transaction() as tx:
        rows = await tx.fetch("SELECT * FROM postbox_outbox WHERE id = $1", record_id)
"""

from .adapter import (
    DatabaseAdapter,
    DatabaseBackend,
    DatabaseConfig,
    Transaction,
    is_unique_violation,
)

__all__ = [
    "DatabaseAdapter",
    "DatabaseBackend",
    "DatabaseConfig",
    "Transaction",
    "is_unique_violation",
]
