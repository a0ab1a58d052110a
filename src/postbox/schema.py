"""
Explicit schema setup.

Tables are created by deployment or test bootstrap code calling
setup_schema(), never lazily on first use.
"""

import logging
from typing import Optional

from .database.adapter import DatabaseAdapter
from .inbox.ledger import DeduplicationLedger
from .outbox.store import PartitionedOutboxStore

logger = logging.getLogger(__name__)


async def setup_schema(
    db: DatabaseAdapter,
    store: Optional[PartitionedOutboxStore] = None,
    ledger: Optional[DeduplicationLedger] = None,
) -> None:
    """Create the outbox and deduplication tables in one transaction."""
    store = store or PartitionedOutboxStore(db)
    ledger = ledger or DeduplicationLedger()

    async with db.transaction() as tx:
        await store.create_schema(tx)
        await ledger.create_schema(tx)

    logger.info(
        "Schema setup complete: outbox=%s deduplication=%s",
        store.table_name, ledger.table_name
    )
