"""
Outbox Worker

Background worker that drives the claim/publish/ack cycle for one queue.

Per iteration:
    claim -> nothing       : EMPTY, sleep poll_interval
    claim -> publish ok    : ack, ACKED
    claim -> publish fails : nack (NACKED) when nack_on_failure is set, then
                             sleep per RETRY_INTERVALS on consecutive failures,
                             otherwise LEFT_FOR_REDELIVERY, which delays the
                             retry by up to redeliver_timeout

A worker that dies between claim and ack leaves the record leased; it
becomes claimable again once redeliver_timeout has elapsed.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional, Sequence, Union

from ..observability.metrics import record_counter, record_histogram
from ..observability.tracing import create_span
from .models import WorkerState
from .publisher import Publisher
from .store import DEFAULT_QUEUE, PartitionedOutboxStore

logger = logging.getLogger(__name__)

RETRY_INTERVALS = [1, 5, 15, 60, 300]  # 1s, 5s, 15s, 1m, 5m


def calculate_retry_delay(failures: int, intervals: Sequence[float] = RETRY_INTERVALS) -> float:
    """Delay before retrying after the given number of consecutive failures."""
    if failures <= 0:
        return 0.0
    return intervals[min(failures, len(intervals)) - 1]


class OutboxWorker:
    """
    Polls one queue of the outbox and delivers records through a publisher.

    Any number of workers may run against the same queue, in one process
    or many; they coordinate only through the store.
    """

    def __init__(
        self,
        store: PartitionedOutboxStore,
        publisher: Publisher,
        queue_name: str = DEFAULT_QUEUE,
        redeliver_timeout: Union[float, timedelta] = 3600,
        poll_interval: float = 1.0,
        nack_on_failure: bool = True,
        error_backoff: Optional[float] = None,
        retry_intervals: Sequence[float] = RETRY_INTERVALS,
        name: Optional[str] = None,
    ):
        self.store = store
        self.publisher = publisher
        self.queue_name = queue_name
        self.redeliver_timeout = redeliver_timeout
        self.poll_interval = poll_interval
        self.nack_on_failure = nack_on_failure
        self.error_backoff = error_backoff if error_backoff is not None else poll_interval
        self.retry_intervals = list(retry_intervals)
        self.name = name or f"outbox-worker:{queue_name}"
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._failures = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the worker."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info(f"{self.name} started")

    async def stop(self):
        """Stop the worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"{self.name} stopped")

    async def _run(self):
        """Main polling loop."""
        while self._running:
            try:
                state = await self.run_once()
                if state == WorkerState.EMPTY:
                    await asyncio.sleep(self.poll_interval)
                elif state == WorkerState.NACKED:
                    # A released record is claimable at once; pace the retries
                    await asyncio.sleep(calculate_retry_delay(self._failures, self.retry_intervals))
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"{self.name} error: {e}", exc_info=True)
                await asyncio.sleep(self.error_backoff)

    async def run_once(self) -> WorkerState:
        """
        Run one claim/publish/ack iteration.

        Publish failures are handled here; storage errors propagate.
        """
        attributes = {"outbox.queue": self.queue_name}

        with create_span("postbox.claim", attributes):
            record = await self.store.claim_next(self.queue_name, self.redeliver_timeout)

        if record is None:
            return WorkerState.EMPTY

        record_counter("postbox_claimed_total", attributes=attributes)

        span_attributes = {
            **attributes,
            "outbox.id": record.id,
            "outbox.partition_key": record.partition_key,
            "outbox.attempts": record.attempts,
        }
        clock = self.store.clock
        started = clock.monotonic()
        try:
            with create_span("postbox.publish", span_attributes):
                await self.publisher.publish(record.body, record.headers)
        except Exception as e:
            record_counter("postbox_publish_failed_total", attributes=attributes)
            self._failures += 1
            if self.nack_on_failure:
                await self.store.nack(record.id)
                record_counter("postbox_nacked_total", attributes=attributes)
                logger.warning(
                    "Publish failed, record released for retry: id=%s partition=%r attempt=%s: %s",
                    record.id, record.partition_key, record.attempts, e
                )
                return WorkerState.NACKED

            logger.warning(
                "Publish failed, record left for redelivery after lease expiry: "
                "id=%s partition=%r attempt=%s: %s",
                record.id, record.partition_key, record.attempts, e
            )
            return WorkerState.LEFT_FOR_REDELIVERY
        finally:
            record_histogram(
                "postbox_publish_duration_seconds",
                clock.monotonic() - started,
                attributes=attributes,
            )

        await self.store.ack(record.id)
        self._failures = 0
        record_counter("postbox_acked_total", attributes=attributes)
        logger.debug("Delivered outbox record: id=%s", record.id)
        return WorkerState.ACKED
