"""
Tests for message identity resolution and settings.
"""

from uuid import uuid4

import pytest

from postbox.config import Settings
from postbox.database import DatabaseBackend
from postbox.exceptions import InvalidMessageIdentityError
from postbox.inbox import resolve_message_identity


class TestResolveMessageIdentity:
    """Test reading message_id/message_name from headers."""

    def test_valid_headers(self):
        message_id = uuid4()

        identity = resolve_message_identity({
            "message_id": str(message_id),
            "message_name": "order.placed",
        })

        assert identity.message_id == str(message_id)
        assert identity.message_name == "order.placed"

    def test_id_is_canonicalised(self):
        """Upper-case and braced forms map to the same id."""
        message_id = uuid4()

        identity = resolve_message_identity({
            "message_id": "{" + str(message_id).upper() + "}",
            "message_name": "x",
        })

        assert identity.message_id == str(message_id)

    @pytest.mark.parametrize("headers", [
        {"message_name": "x"},
        {"message_id": "", "message_name": "x"},
        {"message_id": "not-a-uuid", "message_name": "x"},
    ])
    def test_invalid_headers(self, headers):
        with pytest.raises(InvalidMessageIdentityError):
            resolve_message_identity(headers)

    def test_missing_name_defaults_to_unknown(self):
        identity = resolve_message_identity({"message_id": str(uuid4())})
        assert identity.message_name == "unknown"

    def test_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            resolve_message_identity({"message_id": "nope", "message_name": "x"})


class TestSettings:
    """Test environment-driven configuration."""

    def test_defaults(self, monkeypatch):
        for name in (
            "DATABASE_BACKEND", "POSTBOX_QUEUE", "POSTBOX_WORKERS",
            "POSTBOX_REDELIVER_TIMEOUT", "POSTBOX_NACK_ON_FAILURE", "POSTBOX_PUBLISH_URL",
        ):
            monkeypatch.delenv(name, raising=False)

        settings = Settings()

        assert settings.database.backend == DatabaseBackend.SQLITE
        assert settings.queue_name == "outbox"
        assert settings.workers == 1
        assert settings.redeliver_timeout == 3600
        assert settings.nack_on_failure is True
        assert settings.publish_url is None

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("DATABASE_BACKEND", "postgresql")
        monkeypatch.setenv("DATABASE_URL", "postgresql://u:secret@db:5432/app")
        monkeypatch.setenv("POSTBOX_QUEUE", "orders")
        monkeypatch.setenv("POSTBOX_WORKERS", "4")
        monkeypatch.setenv("POSTBOX_REDELIVER_TIMEOUT", "120")
        monkeypatch.setenv("POSTBOX_NACK_ON_FAILURE", "false")

        settings = Settings()

        assert settings.database.backend == DatabaseBackend.POSTGRESQL
        assert settings.queue_name == "orders"
        assert settings.workers == 4
        assert settings.redeliver_timeout == 120
        assert settings.nack_on_failure is False
        assert "secret" not in repr(settings)

    @pytest.mark.parametrize("name,value", [
        ("POSTBOX_REDELIVER_TIMEOUT", "0"),
        ("POSTBOX_POLL_INTERVAL", "-1"),
        ("POSTBOX_WORKERS", "0"),
    ])
    def test_invalid_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)

        with pytest.raises(ValueError):
            Settings()
