"""
Inbox Pattern Implementation

Provides consumer-side deduplication for effectively-once processing.

Usage:
    from postbox.inbox import DeduplicationGuard, DeduplicationLedger

    guard = DeduplicationGuard(DeduplicationLedger())

    async with db.transaction() as tx:
        outcome = await guard.run_once(tx, message_id, "OrderPlaced", handle)
"""

from .guard import DeduplicationGuard, HandlerOutcome
from .identity import MessageIdentity, resolve_message_identity
from .ledger import DeduplicationLedger, DeduplicationRecord

__all__ = [
    "DeduplicationGuard",
    "DeduplicationLedger",
    "DeduplicationRecord",
    "HandlerOutcome",
    "MessageIdentity",
    "resolve_message_identity",
]
