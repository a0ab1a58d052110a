"""
Postbox

Partitioned transactional outbox and deduplicating inbox.
"""

from .clock import Clock, ManualClock, SystemClock
from .database import DatabaseAdapter, DatabaseBackend, DatabaseConfig, Transaction
from .exceptions import (
    InvalidMessageIdentityError,
    PostboxError,
    PublishError,
    RecordNotFoundError,
    TransactionRequiredError,
)
from .inbox import DeduplicationGuard, DeduplicationLedger, HandlerOutcome
from .outbox import OutboxRecord, OutboxWorker, PartitionedOutboxStore, WorkerState
from .schema import setup_schema

__version__ = "0.1.0"

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "DatabaseAdapter",
    "DatabaseBackend",
    "DatabaseConfig",
    "Transaction",
    "PostboxError",
    "TransactionRequiredError",
    "RecordNotFoundError",
    "PublishError",
    "InvalidMessageIdentityError",
    "DeduplicationGuard",
    "DeduplicationLedger",
    "HandlerOutcome",
    "OutboxRecord",
    "OutboxWorker",
    "PartitionedOutboxStore",
    "WorkerState",
    "setup_schema",
]
