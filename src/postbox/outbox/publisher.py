"""
Outbox Publishers

A publisher hands one claimed record to the downstream system. It returns
normally on success and raises on failure; the worker decides what a
failure means for the record.
"""

import logging
from typing import Dict, Optional, Protocol

import httpx

from ..exceptions import PublishError
from ..observability.tracing import inject_trace_context

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    """Downstream delivery of an outbox record."""

    async def publish(self, body: bytes, headers: Dict[str, str]) -> None:
        """Deliver a message. Raises on failure."""


class LoggingPublisher:
    """Publisher that only logs. Used when no downstream endpoint is configured."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    async def publish(self, body: bytes, headers: Dict[str, str]) -> None:
        logger.log(
            self.level,
            "Published outbox message: %d bytes, headers=%s",
            len(body), headers
        )


class HttpPublisher:
    """
    Delivers each record as an HTTP POST.

    Record headers are sent as HTTP headers together with the current
    trace context. Any non-2xx response is a publish failure.

    Usage:
        async with HttpPublisher("https://broker.internal/messages") as publisher:
            await publisher.publish(body, {"message_name": "order.placed"})
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def publish(self, body: bytes, headers: Dict[str, str]) -> None:
        request_headers = inject_trace_context(dict(headers))
        request_headers.setdefault("content-type", "application/octet-stream")

        try:
            response = await self._client.post(self.url, content=body, headers=request_headers)
        except httpx.HTTPError as e:
            raise PublishError(f"HTTP publish to {self.url} failed: {e}") from e

        if response.status_code >= 300:
            raise PublishError(
                f"HTTP publish to {self.url} rejected: {response.status_code} {response.text[:200]}"
            )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False
