"""
Postbox configuration from environment variables.
"""

import os
from typing import Optional

from .database.adapter import DatabaseConfig


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


class Settings:
    """Runtime settings for the outbox workers and the inbox tables."""

    def __init__(self):
        self.database = DatabaseConfig()

        self.outbox_table = os.getenv("POSTBOX_OUTBOX_TABLE", "postbox_outbox")
        self.dedup_table = os.getenv("POSTBOX_DEDUP_TABLE", "postbox_deduplication")
        self.queue_name = os.getenv("POSTBOX_QUEUE", "outbox")

        # Should exceed the worst-case publish latency, or healthy
        # deliveries get redelivered
        self.redeliver_timeout = float(os.getenv("POSTBOX_REDELIVER_TIMEOUT", "3600"))
        self.poll_interval = float(os.getenv("POSTBOX_POLL_INTERVAL", "1.0"))
        self.workers = int(os.getenv("POSTBOX_WORKERS", "1"))
        self.nack_on_failure = _env_bool("POSTBOX_NACK_ON_FAILURE", "true")

        self.publish_url: Optional[str] = os.getenv("POSTBOX_PUBLISH_URL") or None
        self.publish_timeout = float(os.getenv("POSTBOX_PUBLISH_TIMEOUT", "10"))

        self.auto_setup = _env_bool("POSTBOX_AUTO_SETUP", "false")

        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.log_structured = os.getenv("LOG_FORMAT", "json").lower() == "json"
        self.otlp_endpoint: Optional[str] = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or None

        self.validate()

    def validate(self) -> None:
        if self.redeliver_timeout <= 0:
            raise ValueError("POSTBOX_REDELIVER_TIMEOUT must be positive")
        if self.poll_interval <= 0:
            raise ValueError("POSTBOX_POLL_INTERVAL must be positive")
        if self.workers < 1:
            raise ValueError("POSTBOX_WORKERS must be at least 1")

    def __repr__(self) -> str:
        return (
            f"Settings(database={self.database!r}, queue={self.queue_name}, "
            f"workers={self.workers}, redeliver_timeout={self.redeliver_timeout}, "
            f"nack_on_failure={self.nack_on_failure})"
        )
