"""
Outbox Pattern Implementation

Durable at-least-once delivery with per-partition ordering.

Usage:
    from postbox.outbox import PartitionedOutboxStore, OutboxWorker

    async with db.transaction() as tx:
        # This is atomic with your business transaction
        await store.enqueue(body, headers, partition_key=order_id,
                            queue_name="orders", tx=tx)

    worker = OutboxWorker(store, publisher, queue_name="orders")
    await worker.start()
"""

from .models import OutboxRecord, PartitionLag, WorkerState
from .publisher import HttpPublisher, LoggingPublisher, Publisher
from .store import PartitionedOutboxStore
from .worker import OutboxWorker

__all__ = [
    "OutboxRecord",
    "PartitionLag",
    "WorkerState",
    "Publisher",
    "LoggingPublisher",
    "HttpPublisher",
    "PartitionedOutboxStore",
    "OutboxWorker",
]
