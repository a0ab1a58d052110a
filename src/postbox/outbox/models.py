"""
Outbox Models
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class WorkerState(str, Enum):
    """Terminal state of one worker iteration."""
    EMPTY = "empty"
    ACKED = "acked"
    NACKED = "nacked"
    LEFT_FOR_REDELIVERY = "left_for_redelivery"


class OutboxRecord(BaseModel):
    """A row in the outbox table."""

    id: int
    body: bytes
    headers: Dict[str, str] = Field(default_factory=dict)
    queue_name: str
    partition_key: str = ""

    created_at: datetime
    available_at: datetime
    lease_marker: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    attempts: int = 0

    @field_validator("headers", mode="before")
    @classmethod
    def _decode_headers(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value else {}
        return value

    @field_validator("body", mode="before")
    @classmethod
    def _coerce_body(cls, value: Any) -> Any:
        # SQLite may hand TEXT back for bodies written by other tools
        if isinstance(value, str):
            return value.encode("utf-8")
        if isinstance(value, memoryview):
            return value.tobytes()
        return value

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @property
    def is_ordered(self) -> bool:
        """Whether this record belongs to a causal-ordering group."""
        return self.partition_key != ""


class PartitionLag(BaseModel):
    """Backlog of one partition, for spotting stuck heads."""

    partition_key: str
    pending: int
    head_id: int
    head_lease_marker: Optional[datetime] = None
    head_attempts: int = 0
    head_lease_age_seconds: Optional[float] = None
