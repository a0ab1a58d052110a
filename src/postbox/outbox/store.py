"""
Partitioned Outbox Store

Durable FIFO-per-partition queue that is safe for concurrent multi-worker
polling.

Records sharing a non-empty partition_key are handed out strictly in id
order: only the head of a partition (its oldest not-completed record) can
ever be claimed, and while the head is leased the partition yields nothing.
Records with an empty partition_key carry no ordering constraint and are
claimed independently of each other.

Usage:
    store = PartitionedOutboxStore(db)

    async with db.transaction() as tx:
        # atomic with your business writes
        await store.enqueue(b'{"order": 42}', partition_key="order-42",
                            queue_name="orders", tx=tx)

    record = await store.claim_next("orders", redeliver_timeout=3600)
    if record:
        await publish(record)
        await store.ack(record.id)
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

from ..clock import Clock, SystemClock
from ..database.adapter import DatabaseAdapter, Transaction
from ..exceptions import RecordNotFoundError
from .models import OutboxRecord, PartitionLag

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "postbox_outbox"
DEFAULT_QUEUE = "outbox"

_COLUMNS = (
    "id, body, headers, queue_name, partition_key, created_at, available_at, "
    "lease_marker, completed_at, last_error, attempts"
)


def _as_timedelta(value: Union[float, int, timedelta]) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


class PartitionedOutboxStore:
    """
    Outbox table plus the claim/ack/nack operations over it.

    All coordination between workers happens in the database: on PostgreSQL
    through row locks taken with FOR UPDATE SKIP LOCKED, on SQLite through
    the write lock taken by BEGIN IMMEDIATE. No in-process state is shared.
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        clock: Optional[Clock] = None,
        table_name: str = DEFAULT_TABLE,
    ):
        if not table_name.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table_name!r}")
        self._db = db
        self._clock = clock or SystemClock()
        self.table_name = table_name

    @property
    def clock(self) -> Clock:
        return self._clock

    async def create_schema(self, tx: Transaction) -> None:
        """Create the outbox table and its indexes if they do not exist."""
        t = self.table_name
        if tx.is_postgres:
            await tx.execute(f"""
                CREATE TABLE IF NOT EXISTS {t} (
                    id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
                    body BYTEA NOT NULL,
                    headers TEXT NOT NULL DEFAULT '{{}}',
                    queue_name VARCHAR(190) NOT NULL,
                    partition_key VARCHAR(255) NOT NULL DEFAULT '',
                    created_at TIMESTAMPTZ NOT NULL,
                    available_at TIMESTAMPTZ NOT NULL,
                    lease_marker TIMESTAMPTZ NULL,
                    completed_at TIMESTAMPTZ NULL,
                    last_error TEXT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0
                )
            """)
        else:
            # AUTOINCREMENT keeps ids monotonic even after deletes
            await tx.execute(f"""
                CREATE TABLE IF NOT EXISTS {t} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    body BLOB NOT NULL,
                    headers TEXT NOT NULL DEFAULT '{{}}',
                    queue_name VARCHAR(190) NOT NULL,
                    partition_key VARCHAR(255) NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    available_at TEXT NOT NULL,
                    lease_marker TEXT NULL,
                    completed_at TEXT NULL,
                    last_error TEXT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0
                )
            """)

        await tx.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{t}_partition_order "
            f"ON {t} (queue_name, partition_key, completed_at, id)"
        )
        await tx.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{t}_available "
            f"ON {t} (queue_name, available_at, lease_marker, id)"
        )
        logger.info("Outbox schema ready: table=%s", t)

    async def enqueue(
        self,
        body: bytes,
        headers: Optional[Dict[str, str]] = None,
        partition_key: str = "",
        queue_name: str = DEFAULT_QUEUE,
        available_at: Optional[datetime] = None,
        tx: Optional[Transaction] = None,
    ) -> int:
        """
        Insert a record and return its store-assigned id.

        Args:
            body: Opaque payload
            headers: String metadata, stored as JSON
            partition_key: Ordering group; "" means unordered
            queue_name: Logical queue the record belongs to
            available_at: Not claimable before this instant (defaults to now)
            tx: Producer's transaction to join; a new one is opened if omitted

        Returns:
            The new record id

        Raises:
            TypeError: a header key or value is not a string
        """
        if partition_key is None:
            partition_key = ""
        headers = headers or {}
        for key, value in headers.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise TypeError(
                    f"Outbox headers must map str to str, got {key!r}: {type(value).__name__}"
                )
        now = self._clock.now()
        params = (
            bytes(body),
            json.dumps(headers),
            queue_name,
            partition_key,
            now,
            available_at or now,
        )
        query = f"""
            INSERT INTO {self.table_name} (
                body, headers, queue_name, partition_key, created_at, available_at
            ) VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING id
        """

        if tx is not None:
            record_id = await tx.fetchval(query, *params)
        else:
            async with self._db.transaction() as own_tx:
                record_id = await own_tx.fetchval(query, *params)

        logger.debug(
            "Enqueued outbox record: id=%s queue=%s partition=%r",
            record_id, queue_name, partition_key
        )
        return int(record_id)

    async def claim_next(
        self,
        queue_name: str,
        redeliver_timeout: Union[float, int, timedelta],
    ) -> Optional[OutboxRecord]:
        """
        Lease the next claimable head-of-line record of a queue.

        The head of a partition is its smallest not-completed id. Lease and
        availability are tested on the head row itself, so a partition whose
        head is leased or delayed is skipped as a whole instead of handing
        out its second record. Heads locked by a concurrent claimer are
        skipped, never waited on.

        Args:
            queue_name: Queue to claim from
            redeliver_timeout: Lease length; older leases are reclaimable

        Returns:
            The leased record, or None when nothing is claimable
        """
        now = self._clock.now()
        lease_threshold = now - _as_timedelta(redeliver_timeout)

        async with self._db.transaction() as tx:
            lock_clause = "FOR UPDATE SKIP LOCKED" if tx.is_postgres else ""
            row = await tx.fetchrow(
                f"""
                SELECT {_COLUMNS}
                FROM {self.table_name} r
                WHERE r.queue_name = $1
                  AND r.completed_at IS NULL
                  AND r.available_at <= $2
                  AND (r.lease_marker IS NULL OR r.lease_marker < $3)
                  AND (
                        r.partition_key = ''
                        OR r.id IN (
                            SELECT MIN(s.id) FROM {self.table_name} s
                            WHERE s.queue_name = $1
                              AND s.completed_at IS NULL
                              AND s.partition_key <> ''
                            GROUP BY s.partition_key
                        )
                  )
                ORDER BY r.id
                LIMIT 1
                {lock_clause}
                """,
                queue_name,
                now,
                lease_threshold,
            )

            if row is None:
                return None

            # Decode before leasing so an unreadable row rolls the lease back
            record = OutboxRecord.model_validate(row)

            await tx.execute(
                f"""
                UPDATE {self.table_name}
                SET lease_marker = $1, attempts = attempts + 1
                WHERE id = $2
                """,
                now,
                row["id"],
            )

        record = record.model_copy(update={
            "lease_marker": now,
            "attempts": record.attempts + 1,
        })

        if record.attempts > 1:
            logger.info(
                "Redelivering outbox record: id=%s partition=%r attempt=%s",
                record.id, record.partition_key, record.attempts
            )
        else:
            logger.debug(
                "Claimed outbox record: id=%s partition=%r",
                record.id, record.partition_key
            )
        return record

    async def ack(self, record_id: int) -> None:
        """
        Mark a record terminally complete.

        Completion is kept apart from the lease marker, so a completed
        record never becomes claimable again however much time passes.
        Acking an already completed record is a no-op.
        """
        async with self._db.transaction() as tx:
            updated = await tx.execute(
                f"""
                UPDATE {self.table_name}
                SET completed_at = COALESCE(completed_at, $1), lease_marker = NULL
                WHERE id = $2
                """,
                self._clock.now(),
                record_id,
            )
        if updated == 0:
            raise RecordNotFoundError(record_id)
        logger.debug("Acked outbox record: id=%s", record_id)

    async def nack(self, record_id: int) -> None:
        """
        Release a lease without completing the record.

        The record is claimable again immediately, without waiting for the
        redeliver timeout. Has no effect on completed records.
        """
        async with self._db.transaction() as tx:
            updated = await tx.execute(
                f"""
                UPDATE {self.table_name}
                SET lease_marker = NULL
                WHERE id = $1 AND completed_at IS NULL
                """,
                record_id,
            )
            if updated == 0:
                await self._require(tx, record_id)
        logger.debug("Nacked outbox record: id=%s", record_id)

    async def keepalive(self, record_id: int) -> bool:
        """
        Refresh the lease of a record that is still being worked on.

        Returns:
            True if the lease was extended, False if the record is no longer
            leased (completed, nacked, or never claimed)
        """
        async with self._db.transaction() as tx:
            updated = await tx.execute(
                f"""
                UPDATE {self.table_name}
                SET lease_marker = $1
                WHERE id = $2 AND completed_at IS NULL AND lease_marker IS NOT NULL
                """,
                self._clock.now(),
                record_id,
            )
            if updated == 0:
                await self._require(tx, record_id)
        return updated > 0

    async def reject(self, record_id: int, error: str) -> None:
        """
        Give up on a record.

        The record is completed with its error kept in last_error, which
        unblocks the rest of its partition.
        """
        async with self._db.transaction() as tx:
            updated = await tx.execute(
                f"""
                UPDATE {self.table_name}
                SET completed_at = $1, lease_marker = NULL, last_error = $2
                WHERE id = $3 AND completed_at IS NULL
                """,
                self._clock.now(),
                error[:2000],
                record_id,
            )
            if updated == 0:
                await self._require(tx, record_id)
        logger.warning("Rejected outbox record: id=%s error=%s", record_id, error)

    async def get(self, record_id: int) -> Optional[OutboxRecord]:
        """Load a record by id."""
        row = await self._db.fetchrow(
            f"SELECT {_COLUMNS} FROM {self.table_name} WHERE id = $1",
            record_id,
        )
        return OutboxRecord.model_validate(row) if row else None

    async def partition_lag(self, queue_name: str) -> List[PartitionLag]:
        """
        Per-partition backlog of a queue.

        A head whose lease age keeps growing, or whose attempts keep
        climbing, is a stuck partition.
        """
        rows = await self._db.fetch(
            f"""
            SELECT p.partition_key, p.pending, p.head_id,
                   h.lease_marker AS head_lease_marker,
                   h.attempts AS head_attempts
            FROM (
                SELECT partition_key, COUNT(*) AS pending, MIN(id) AS head_id
                FROM {self.table_name}
                WHERE queue_name = $1
                  AND completed_at IS NULL
                  AND partition_key <> ''
                GROUP BY partition_key
            ) p
            JOIN {self.table_name} h ON h.id = p.head_id
            ORDER BY p.partition_key
            """,
            queue_name,
        )

        now = self._clock.now()
        result = []
        for row in rows:
            lag = PartitionLag.model_validate(row)
            if lag.head_lease_marker is not None:
                lag.head_lease_age_seconds = (now - lag.head_lease_marker).total_seconds()
            result.append(lag)
        return result

    async def purge_completed(
        self,
        queue_name: str,
        older_than: datetime,
        batch_size: int = 1000,
    ) -> int:
        """
        Delete completed records whose completion predates a cutoff.

        Runs in batches, each in its own transaction.

        Returns:
            Total number of records deleted
        """
        total = 0
        while True:
            async with self._db.transaction() as tx:
                deleted = await tx.execute(
                    f"""
                    DELETE FROM {self.table_name}
                    WHERE id IN (
                        SELECT id FROM {self.table_name}
                        WHERE queue_name = $1
                          AND completed_at IS NOT NULL
                          AND completed_at < $2
                        ORDER BY id
                        LIMIT $3
                    )
                    """,
                    queue_name,
                    older_than,
                    batch_size,
                )
            total += deleted
            if deleted < batch_size:
                break

        logger.info(
            "Purged completed outbox records: queue=%s cutoff=%s deleted=%s",
            queue_name, older_than.isoformat(), total
        )
        return total

    async def _require(self, tx: Transaction, record_id: int) -> None:
        exists = await tx.fetchval(
            f"SELECT 1 FROM {self.table_name} WHERE id = $1",
            record_id,
        )
        if exists is None:
            raise RecordNotFoundError(record_id)
