"""
Deduplication Ledger

Idempotency store keyed by message id. The primary key on message_id is
the atomicity anchor: the check and the record happen in one INSERT, so
two concurrent consumers of the same message can never both see "new".
"""

import logging
from datetime import datetime
from typing import Optional, Union
from uuid import UUID

from pydantic import BaseModel

from ..clock import Clock, SystemClock
from ..database.adapter import Transaction, is_unique_violation
from ..observability.metrics import record_counter

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "postbox_deduplication"


class DeduplicationRecord(BaseModel):
    """Witness that a message has been processed."""

    message_id: str
    message_name: str
    processed_at: datetime


class DeduplicationLedger:
    """
    Insert-if-absent ledger of processed message ids.

    The ledger never opens, commits or rolls back a transaction. Every
    method runs inside the Transaction it is given, which is what lets a
    ledger entry commit or roll back together with the handler it guards.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        table_name: str = DEFAULT_TABLE,
    ):
        if not table_name.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table_name!r}")
        self._clock = clock or SystemClock()
        self.table_name = table_name

    async def create_schema(self, tx: Transaction) -> None:
        """Create the ledger table and its indexes if they do not exist."""
        t = self.table_name
        timestamp = "TIMESTAMPTZ" if tx.is_postgres else "TEXT"
        # No foreign keys: the ledger must stay valid before domain rows exist
        await tx.execute(f"""
            CREATE TABLE IF NOT EXISTS {t} (
                message_id VARCHAR(64) NOT NULL PRIMARY KEY,
                message_name VARCHAR(255) NOT NULL,
                processed_at {timestamp} NOT NULL
            )
        """)
        await tx.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{t}_message_name ON {t} (message_name)"
        )
        await tx.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{t}_processed_at ON {t} (processed_at)"
        )
        logger.info("Deduplication schema ready: table=%s", t)

    async def record_if_absent(
        self,
        tx: Transaction,
        message_id: Union[str, UUID],
        message_name: str,
    ) -> bool:
        """
        Record a message id unless it is already present.

        Args:
            tx: Caller's open transaction
            message_id: Unique message identifier
            message_name: Message type label, informational only

        Returns:
            False if the id is new (proceed), True if it is a duplicate (skip)

        Raises:
            Any storage error other than the uniqueness violation on message_id
        """
        key = _normalize_id(message_id)

        # PostgreSQL aborts the whole transaction on a failed INSERT, so the
        # conflict is resolved in the statement instead of by catching it
        if tx.is_postgres:
            inserted = await tx.fetchval(
                f"""
                INSERT INTO {self.table_name} (message_id, message_name, processed_at)
                VALUES ($1, $2, $3)
                ON CONFLICT (message_id) DO NOTHING
                RETURNING 1
                """,
                key,
                message_name,
                self._clock.now(),
            )
            duplicate = inserted is None
        else:
            try:
                await tx.execute(
                    f"""
                    INSERT INTO {self.table_name} (message_id, message_name, processed_at)
                    VALUES ($1, $2, $3)
                    """,
                    key,
                    message_name,
                    self._clock.now(),
                )
                duplicate = False
            except Exception as e:
                if not is_unique_violation(e):
                    raise
                duplicate = True

        if duplicate:
            record_counter("postbox_duplicates_total", attributes={"message_name": message_name})
            logger.info(
                "Duplicate message detected by deduplication ledger: message_id=%s message_name=%s",
                key, message_name
            )
        return duplicate

    async def exists(self, tx: Transaction, message_id: Union[str, UUID]) -> bool:
        """Whether a message id is recorded. Not for use on the processing path."""
        row = await tx.fetchval(
            f"SELECT 1 FROM {self.table_name} WHERE message_id = $1",
            _normalize_id(message_id),
        )
        return row is not None

    async def get(self, tx: Transaction, message_id: Union[str, UUID]) -> Optional[DeduplicationRecord]:
        row = await tx.fetchrow(
            f"""
            SELECT message_id, message_name, processed_at
            FROM {self.table_name} WHERE message_id = $1
            """,
            _normalize_id(message_id),
        )
        return DeduplicationRecord.model_validate(row) if row else None

    async def purge_older_than(self, tx: Transaction, cutoff: datetime) -> int:
        """
        Delete ledger entries processed before a cutoff.

        Returns:
            Number of entries deleted
        """
        deleted = await tx.execute(
            f"DELETE FROM {self.table_name} WHERE processed_at < $1",
            cutoff,
        )
        logger.info(
            "Removed old deduplication records: cutoff=%s deleted=%s",
            cutoff.isoformat(), deleted
        )
        return deleted


def _normalize_id(message_id: Union[str, UUID]) -> str:
    key = str(message_id).strip()
    if not key:
        raise ValueError("message_id must not be empty")
    return key
