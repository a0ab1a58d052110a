"""
Deduplication Guard

Makes at-least-once delivery look effectively-once to a handler.

The guard has one hard precondition: it runs inside a transaction that was
opened before it and is committed after it. The ledger entry and the
handler's side effects then commit together, or roll back together when the
handler raises, leaving the message safe to retry. Within that transaction
the guard must be the first step, before any other side effect.

process() is the call path that satisfies this contract on its own: it
opens the transaction, runs the guard first, and commits.
"""

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Union
from uuid import UUID

from ..database.adapter import DatabaseAdapter, Transaction
from ..exceptions import TransactionRequiredError
from .identity import resolve_message_identity
from .ledger import DeduplicationLedger

logger = logging.getLogger(__name__)

Handler = Callable[[Transaction], Awaitable[Any]]


class HandlerOutcome(str, Enum):
    """Result of a guarded handler invocation."""
    PROCESSED = "processed"
    SKIPPED = "skipped"  # already processed


class DeduplicationGuard:
    """
    Wraps handler invocation with a ledger check.

    Usage:
        guard = DeduplicationGuard(ledger)

        async with db.transaction() as tx:
            outcome = await guard.run_once(tx, message_id, "OrderPlaced", handle)

    Handler exceptions are never caught here. They must reach the
    transaction so it rolls back the ledger entry with everything else.
    """

    def __init__(self, ledger: DeduplicationLedger):
        self.ledger = ledger

    async def run_once(
        self,
        tx: Transaction,
        message_id: Union[str, UUID],
        message_name: str,
        handler: Handler,
    ) -> HandlerOutcome:
        """
        Run a handler unless its message has been processed before.

        Args:
            tx: The open transaction the handler's side effects go through
            message_id: Unique message identifier
            message_name: Message type label
            handler: Async callable receiving the transaction

        Returns:
            HandlerOutcome.PROCESSED or HandlerOutcome.SKIPPED

        Raises:
            TransactionRequiredError: tx is not an open transaction
            Whatever the handler raises, unchanged
        """
        if not isinstance(tx, Transaction) or not tx.active:
            raise TransactionRequiredError(
                "DeduplicationGuard.run_once must be called inside an open transaction"
            )

        if await self.ledger.record_if_absent(tx, message_id, message_name):
            logger.debug(
                "Skipping already processed message: message_id=%s message_name=%s",
                message_id, message_name
            )
            return HandlerOutcome.SKIPPED

        await handler(tx)
        return HandlerOutcome.PROCESSED

    async def process(
        self,
        db: DatabaseAdapter,
        message_id: Union[str, UUID],
        message_name: str,
        handler: Handler,
    ) -> HandlerOutcome:
        """
        Open a transaction, run the guarded handler first thing inside it, commit.

        A handler exception rolls the transaction back and is re-raised.
        """
        async with db.transaction() as tx:
            return await self.run_once(tx, message_id, message_name, handler)

    async def process_message(
        self,
        db: DatabaseAdapter,
        headers: Mapping[str, str],
        handler: Handler,
    ) -> HandlerOutcome:
        """Resolve the message identity from headers, then process()."""
        identity = resolve_message_identity(headers)
        return await self.process(db, identity.message_id, identity.message_name, handler)
