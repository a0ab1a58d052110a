"""
Postbox exceptions

Empty claims and duplicate deliveries are return values, not exceptions.
Everything here is a real failure that the caller has to see.
"""


class PostboxError(Exception):
    """Base class for all postbox errors."""


class TransactionRequiredError(PostboxError):
    """Raised when an operation that must join a transaction is called outside one."""


class RecordNotFoundError(PostboxError):
    """Raised when an outbox record id does not exist."""

    def __init__(self, record_id: int):
        self.record_id = record_id
        super().__init__(f"Outbox record not found: {record_id}")


class PublishError(PostboxError):
    """Raised by a publisher when the downstream system rejects or cannot take a message."""


class InvalidMessageIdentityError(PostboxError, ValueError):
    """Raised when an incoming message carries no usable message_id/message_name."""
