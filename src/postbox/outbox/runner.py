"""
Outbox Worker Runner

Standalone entry point running a pool of outbox workers as a background
service, with graceful shutdown on SIGTERM/SIGINT.

Usage:
    python -m postbox.outbox.runner

Environment Variables:
    DATABASE_BACKEND: sqlite or postgresql (default: sqlite)
    DATABASE_URL: PostgreSQL connection string
    POSTBOX_QUEUE: Queue to drain (default: outbox)
    POSTBOX_WORKERS: Concurrent workers (default: 1)
    POSTBOX_REDELIVER_TIMEOUT: Lease length in seconds (default: 3600)
    POSTBOX_POLL_INTERVAL: Polling interval in seconds (default: 1.0)
    POSTBOX_NACK_ON_FAILURE: Release failed records at once (default: true)
    POSTBOX_PUBLISH_URL: HTTP endpoint to publish to (default: log only)
    POSTBOX_AUTO_SETUP: Create tables before starting (default: false)
    LOG_LEVEL: Logging level (default: INFO)
"""

import sys
import signal
import asyncio
import logging
from typing import List, Optional

from ..config import Settings
from ..database.adapter import DatabaseAdapter
from ..inbox.ledger import DeduplicationLedger
from ..observability import configure_logging, init_metrics, init_tracing
from ..schema import setup_schema
from .publisher import HttpPublisher, LoggingPublisher, Publisher
from .store import PartitionedOutboxStore
from .worker import OutboxWorker

logger = logging.getLogger(__name__)


class OutboxRunner:
    """
    Manages the worker pool lifecycle with graceful shutdown.
    """

    def __init__(self, settings: Optional[Settings] = None, publisher: Optional[Publisher] = None):
        self.settings = settings or Settings()
        self.db = DatabaseAdapter(self.settings.database)
        self.store = PartitionedOutboxStore(self.db, table_name=self.settings.outbox_table)
        self.publisher = publisher or self._build_publisher()
        self.workers: List[OutboxWorker] = []
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False

    def _build_publisher(self) -> Publisher:
        if self.settings.publish_url:
            return HttpPublisher(self.settings.publish_url, timeout=self.settings.publish_timeout)
        logger.warning("POSTBOX_PUBLISH_URL not set, records will only be logged")
        return LoggingPublisher()

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

    def _handle_shutdown_signal(self, sig: signal.Signals):
        """Handle shutdown signal."""
        if self._shutdown_requested:
            logger.warning(f"Received {sig.name} again, forcing exit")
            sys.exit(1)

        logger.info(f"Received {sig.name}, initiating graceful shutdown")
        self.request_shutdown()

    def request_shutdown(self):
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def run(self, install_signal_handlers: bool = True):
        """Run the workers until shutdown is requested."""
        s = self.settings
        logger.info("Starting Outbox Runner")
        logger.info(f"  Queue: {s.queue_name}")
        logger.info(f"  Workers: {s.workers}")
        logger.info(f"  Redeliver timeout: {s.redeliver_timeout}s")
        logger.info(f"  Poll interval: {s.poll_interval}s")
        logger.info(f"  Nack on failure: {s.nack_on_failure}")

        if install_signal_handlers:
            self._setup_signal_handlers()

        await self.db.connect()

        if s.auto_setup:
            await setup_schema(self.db, self.store, DeduplicationLedger(table_name=s.dedup_table))

        self.workers = [
            OutboxWorker(
                self.store,
                self.publisher,
                queue_name=s.queue_name,
                redeliver_timeout=s.redeliver_timeout,
                poll_interval=s.poll_interval,
                nack_on_failure=s.nack_on_failure,
                name=f"outbox-worker:{s.queue_name}:{i}",
            )
            for i in range(s.workers)
        ]

        try:
            for worker in self.workers:
                await worker.start()
            logger.info("Outbox Runner is running")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Outbox Runner error: {e}", exc_info=True)
            raise
        finally:
            logger.info("Stopping outbox workers")
            for worker in self.workers:
                await worker.stop()
            if isinstance(self.publisher, HttpPublisher):
                await self.publisher.aclose()
            await self.db.disconnect()
            logger.info("Outbox Runner stopped")

    async def health_check(self) -> dict:
        """Return health status for monitoring."""
        running = [w.running for w in self.workers]
        return {
            "status": "healthy" if running and all(running) else "unhealthy",
            "workers": len(self.workers),
            "running": sum(running),
            "shutdown_requested": self._shutdown_requested,
        }


async def main():
    """Main entry point."""
    settings = Settings()
    configure_logging(level=settings.log_level, structured=settings.log_structured)
    if settings.otlp_endpoint:
        init_tracing(otlp_endpoint=settings.otlp_endpoint)
        init_metrics(otlp_endpoint=settings.otlp_endpoint)

    runner = OutboxRunner(settings)
    await runner.run()


def cli():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
