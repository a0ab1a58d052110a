"""
Message identity resolution for incoming messages.
"""

from dataclasses import dataclass
from typing import Mapping
from uuid import UUID

from ..exceptions import InvalidMessageIdentityError

MESSAGE_ID_HEADER = "message_id"
MESSAGE_NAME_HEADER = "message_name"
UNKNOWN_MESSAGE_NAME = "unknown"


@dataclass(frozen=True)
class MessageIdentity:
    """The (id, name) pair the deduplication ledger is keyed on."""
    message_id: str
    message_name: str


def resolve_message_identity(headers: Mapping[str, str]) -> MessageIdentity:
    """
    Read message_id and message_name from message headers.

    The id must be a UUID; it is returned in canonical lowercase form so
    that differently formatted copies of one id deduplicate together.

    Raises:
        InvalidMessageIdentityError: message_id missing or not a UUID
    """
    raw_id = headers.get(MESSAGE_ID_HEADER)
    if not raw_id:
        raise InvalidMessageIdentityError(f"Missing {MESSAGE_ID_HEADER} header")

    message_name = headers.get(MESSAGE_NAME_HEADER) or UNKNOWN_MESSAGE_NAME

    try:
        message_id = UUID(str(raw_id))
    except ValueError as e:
        raise InvalidMessageIdentityError(
            f'{MESSAGE_ID_HEADER} is not a valid UUID: "{raw_id}" (message_name: {message_name})'
        ) from e

    return MessageIdentity(message_id=str(message_id), message_name=message_name)
