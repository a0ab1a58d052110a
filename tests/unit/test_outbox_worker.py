"""
Tests for OutboxWorker.
"""

import asyncio
from collections import defaultdict

import pytest

from postbox.exceptions import PublishError
from postbox.outbox import OutboxWorker, WorkerState
from postbox.outbox.worker import calculate_retry_delay

QUEUE = "orders"


class RecordingPublisher:
    """Publisher that remembers what it delivered."""

    def __init__(self):
        self.published = []

    async def publish(self, body, headers):
        self.published.append((body, headers))


class FailingPublisher:
    def __init__(self):
        self.attempts = 0

    async def publish(self, body, headers):
        self.attempts += 1
        raise PublishError("broker unavailable")


class FlakyStore:
    """Store wrapper whose first claim fails like a dropped connection."""

    def __init__(self, store):
        self._store = store
        self.failures = 0

    async def claim_next(self, queue_name, redeliver_timeout):
        if self.failures == 0:
            self.failures += 1
            raise ConnectionError("database went away")
        return await self._store.claim_next(queue_name, redeliver_timeout)

    def __getattr__(self, name):
        return getattr(self._store, name)


class TestRunOnce:
    """Test a single claim/publish/ack iteration."""

    @pytest.mark.asyncio
    async def test_empty_queue(self, store):
        worker = OutboxWorker(store, RecordingPublisher(), queue_name=QUEUE)

        assert await worker.run_once() == WorkerState.EMPTY

    @pytest.mark.asyncio
    async def test_publish_then_ack(self, store):
        publisher = RecordingPublisher()
        worker = OutboxWorker(store, publisher, queue_name=QUEUE)
        record_id = await store.enqueue(b"hello", {"message_name": "greeting"}, queue_name=QUEUE)

        assert await worker.run_once() == WorkerState.ACKED

        assert publisher.published == [(b"hello", {"message_name": "greeting"})]
        assert (await store.get(record_id)).is_completed
        assert await worker.run_once() == WorkerState.EMPTY

    @pytest.mark.asyncio
    async def test_failure_nacks_for_immediate_retry(self, store):
        publisher = FailingPublisher()
        worker = OutboxWorker(store, publisher, queue_name=QUEUE, nack_on_failure=True)
        record_id = await store.enqueue(b"x", queue_name=QUEUE)

        assert await worker.run_once() == WorkerState.NACKED
        assert await worker.run_once() == WorkerState.NACKED

        record = await store.get(record_id)
        assert publisher.attempts == 2
        assert record.attempts == 2
        assert not record.is_completed

    @pytest.mark.asyncio
    async def test_failure_left_for_lease_expiry(self, store, clock):
        """Without nack, the retry waits for the redeliver timeout."""
        publisher = FailingPublisher()
        worker = OutboxWorker(
            store, publisher, queue_name=QUEUE,
            redeliver_timeout=30, nack_on_failure=False,
        )
        await store.enqueue(b"x", partition_key="p", queue_name=QUEUE)

        assert await worker.run_once() == WorkerState.LEFT_FOR_REDELIVERY
        assert await worker.run_once() == WorkerState.EMPTY

        clock.advance(31)
        assert await worker.run_once() == WorkerState.LEFT_FOR_REDELIVERY
        assert publisher.attempts == 2

    @pytest.mark.asyncio
    async def test_stuck_partition_does_not_block_others(self, store):
        """A failing head only holds back its own partition."""
        published = []

        class SelectivePublisher:
            async def publish(self, body, headers):
                if body == b"poison":
                    raise PublishError("rejected")
                published.append(body)

        worker = OutboxWorker(store, SelectivePublisher(), queue_name=QUEUE, nack_on_failure=False)
        await store.enqueue(b"poison", partition_key="A", queue_name=QUEUE)
        await store.enqueue(b"a-2", partition_key="A", queue_name=QUEUE)
        await store.enqueue(b"b-1", partition_key="B", queue_name=QUEUE)
        await store.enqueue(b"free", queue_name=QUEUE)

        states = [await worker.run_once() for _ in range(4)]

        assert states[-1] == WorkerState.EMPTY
        assert published == [b"b-1", b"free"]

    @pytest.mark.asyncio
    async def test_publish_timed_with_store_clock(self, store, clock, monkeypatch):
        """Publish duration is measured on the store's clock."""
        durations = []
        monkeypatch.setattr(
            "postbox.outbox.worker.record_histogram",
            lambda name, value, attributes=None: durations.append((name, value)),
        )

        class SlowPublisher:
            async def publish(self, body, headers):
                clock.advance(2)

        worker = OutboxWorker(store, SlowPublisher(), queue_name=QUEUE)
        await store.enqueue(b"x", queue_name=QUEUE)

        assert await worker.run_once() == WorkerState.ACKED
        assert durations == [("postbox_publish_duration_seconds", 2.0)]

    @pytest.mark.asyncio
    async def test_storage_errors_propagate(self, store):
        worker = OutboxWorker(FlakyStore(store), RecordingPublisher(), queue_name=QUEUE)

        with pytest.raises(ConnectionError):
            await worker.run_once()


class TestConcurrentWorkers:
    """Test several workers draining one queue."""

    @pytest.mark.asyncio
    async def test_partition_order_preserved(self, store):
        order = defaultdict(list)

        class PartitionRecorder:
            async def publish(self, body, headers):
                await asyncio.sleep(0)
                order[headers["partition"]].append(int(headers["seq"]))

        for seq in range(5):
            for partition in ("A", "B", "C"):
                await store.enqueue(
                    b"x", {"partition": partition, "seq": str(seq)},
                    partition_key=partition, queue_name=QUEUE,
                )

        workers = [OutboxWorker(store, PartitionRecorder(), queue_name=QUEUE) for _ in range(4)]

        async def drain(worker):
            while await worker.run_once() != WorkerState.EMPTY:
                pass

        # Each worker stops at its first empty poll; repeat until nothing is left
        for _ in range(10):
            await asyncio.gather(*(drain(w) for w in workers))

        assert dict(order) == {p: [0, 1, 2, 3, 4] for p in ("A", "B", "C")}


class TestLifecycle:
    """Test the background polling loop."""

    @pytest.mark.asyncio
    async def test_start_drains_queue_and_stop(self, store):
        publisher = RecordingPublisher()
        worker = OutboxWorker(store, publisher, queue_name=QUEUE, poll_interval=0.01)
        for i in range(3):
            await store.enqueue(str(i).encode(), queue_name=QUEUE)

        await worker.start()
        assert worker.running
        try:
            for _ in range(500):
                if len(publisher.published) == 3:
                    break
                await asyncio.sleep(0.01)
        finally:
            await worker.stop()

        assert not worker.running
        assert [body for body, _ in publisher.published] == [b"0", b"1", b"2"]

    @pytest.mark.asyncio
    async def test_loop_survives_storage_error(self, store):
        """The loop logs, backs off, and retries the whole iteration."""
        publisher = RecordingPublisher()
        flaky = FlakyStore(store)
        worker = OutboxWorker(flaky, publisher, queue_name=QUEUE, poll_interval=0.01, error_backoff=0.01)
        await store.enqueue(b"x", queue_name=QUEUE)

        await worker.start()
        try:
            for _ in range(500):
                if publisher.published:
                    break
                await asyncio.sleep(0.01)
        finally:
            await worker.stop()

        assert flaky.failures == 1
        assert publisher.published == [(b"x", {})]

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, store):
        worker = OutboxWorker(store, RecordingPublisher(), queue_name=QUEUE, poll_interval=0.01)

        await worker.start()
        task = worker._task
        await worker.start()

        assert worker._task is task
        await worker.stop()

    @pytest.mark.asyncio
    async def test_failed_publishes_are_paced(self, store):
        """A failing head is retried after a delay, not in a tight loop."""
        publisher = FailingPublisher()
        worker = OutboxWorker(
            store, publisher, queue_name=QUEUE,
            poll_interval=1.0, retry_intervals=[0.2, 1.0],
        )
        await store.enqueue(b"x", partition_key="A", queue_name=QUEUE)

        await worker.start()
        await asyncio.sleep(0.5)
        await worker.stop()

        assert 1 <= publisher.attempts <= 3


class TestRetryDelay:

    def test_grows_with_consecutive_failures(self):
        intervals = [1, 5, 15]

        assert calculate_retry_delay(0, intervals) == 0
        assert calculate_retry_delay(1, intervals) == 1
        assert calculate_retry_delay(2, intervals) == 5
        assert calculate_retry_delay(3, intervals) == 15
        assert calculate_retry_delay(10, intervals) == 15
