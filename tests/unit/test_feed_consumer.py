"""
Unit tests for the feed consumer.

Drives the consumer with a scripted change feed and in-memory stores to
check flush triggers, checkpoint ordering and failure recovery.
"""

import threading
import time

import pytest

from anonsync.core.config import SyncConfig
from anonsync.core.errors import SubscriptionFailure, WriteFailure
from anonsync.store.upsert import AnonymizedWriter
from anonsync.streaming.pipeline import ConsumerState, FeedConsumer, create_feed_consumer
from conftest import FakeChangeStream, make_customer_document, make_event

CHECKPOINT_KEY = "customers_anonymised"


def build_consumer(source, target, checkpoint_store, **kwargs) -> FeedConsumer:
    kwargs.setdefault("batch_count", 1000)
    kwargs.setdefault("save_interval_ms", 60000)
    return FeedConsumer(
        source=source,
        writer=AnonymizedWriter(target),
        checkpoint_store=checkpoint_store,
        checkpoint_key=CHECKPOINT_KEY,
        **kwargs,
    )


def script_feed(source, consumer, items, stop_when_exhausted=True) -> FakeChangeStream:
    stream = FakeChangeStream(items, on_exhausted=consumer.stop if stop_when_exhausted else None)
    source.stream = stream
    return stream


def token(sequence: int) -> dict:
    return {"_data": f"{sequence:08d}"}


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.mark.unit
class TestFlushTriggers:
    """Tests for the size and time triggers"""

    def test_size_trigger(self, source_store, target_store, checkpoint_store):
        consumer = build_consumer(source_store, target_store, checkpoint_store, batch_count=2)
        documents = [make_customer_document(i) for i in range(3)]
        script_feed(source_store, consumer, [make_event(d, i + 1) for i, d in enumerate(documents)])

        consumer.run()

        assert [len(call) for call in target_store.bulk_calls] == [2, 1]
        assert checkpoint_store.saved_tokens == [token(2), token(3)]
        assert consumer.state == ConsumerState.STOPPED
        assert consumer.total_records == 3

    def test_exactly_batch_count_records_flush_once(
        self, source_store, target_store, checkpoint_store
    ):
        consumer = build_consumer(source_store, target_store, checkpoint_store, batch_count=4)

        for i in range(4):
            consumer.handle_event(make_event(make_customer_document(i), i + 1))

        assert [len(call) for call in target_store.bulk_calls] == [4]
        assert len(consumer.buffer) == 0

    def test_timer_flushes_partial_batch_once(self, source_store, target_store, checkpoint_store):
        consumer = build_consumer(source_store, target_store, checkpoint_store, save_interval_ms=30)
        for i in range(3):
            consumer.handle_event(make_event(make_customer_document(i), i + 1))
        assert target_store.bulk_calls == []

        consumer._timer.start()
        try:
            assert wait_for(lambda: target_store.count() == 3)
            time.sleep(0.1)
        finally:
            consumer._timer.stop()

        assert [len(call) for call in target_store.bulk_calls] == [3]
        assert len(consumer.buffer) == 0

    def test_timer_trigger(self, source_store, target_store, checkpoint_store):
        consumer = build_consumer(source_store, target_store, checkpoint_store, save_interval_ms=20)
        documents = [make_customer_document(i) for i in range(3)]
        script_feed(
            source_store,
            consumer,
            [make_event(d, i + 1) for i, d in enumerate(documents)],
            stop_when_exhausted=False,
        )

        thread = threading.Thread(target=consumer.run)
        thread.start()
        try:
            assert wait_for(lambda: target_store.count() == 3)
            assert wait_for(lambda: checkpoint_store.load(CHECKPOINT_KEY) is not None)
        finally:
            consumer.stop()
            thread.join(timeout=5)

        assert not thread.is_alive()
        assert checkpoint_store.load(CHECKPOINT_KEY).resume_token == token(3)
        assert consumer.state == ConsumerState.STOPPED

    def test_shutdown_flushes_remaining_records(self, source_store, target_store, checkpoint_store):
        consumer = build_consumer(source_store, target_store, checkpoint_store)
        script_feed(source_store, consumer, [make_event(make_customer_document(1), 1)])

        consumer.run()

        assert target_store.count() == 1
        assert checkpoint_store.saved_tokens == [token(1)]

    def test_empty_flush_writes_nothing(self, source_store, target_store, checkpoint_store):
        consumer = build_consumer(source_store, target_store, checkpoint_store)

        assert consumer.flush("timer") == 0
        assert target_store.bulk_calls == []
        assert checkpoint_store.saved_tokens == []

    def test_checkpoints_follow_feed_order(self, source_store, target_store, checkpoint_store):
        consumer = build_consumer(source_store, target_store, checkpoint_store, batch_count=3)
        events = [make_event(make_customer_document(i), i + 1) for i in range(10)]
        script_feed(source_store, consumer, events)

        consumer.run()

        sequences = [int(t["_data"]) for t in checkpoint_store.saved_tokens]
        assert sequences == sorted(sequences)
        assert sequences[-1] == 10
        assert target_store.count() == 10


@pytest.mark.unit
class TestSkippedEvents:
    """Tests for events without a full document"""

    def test_missing_document_skipped(self, source_store, target_store, checkpoint_store):
        consumer = build_consumer(source_store, target_store, checkpoint_store)
        script_feed(
            source_store,
            consumer,
            [make_event(make_customer_document(1), 1), make_event(None, 2, "update")],
        )

        consumer.run()

        assert target_store.count() == 1
        assert consumer.skipped_events == 1
        assert checkpoint_store.load(CHECKPOINT_KEY).resume_token == token(2)

    def test_only_skipped_events_still_advance_checkpoint(
        self, source_store, target_store, checkpoint_store
    ):
        consumer = build_consumer(source_store, target_store, checkpoint_store)
        script_feed(source_store, consumer, [make_event(None, 7, "update")])

        consumer.run()

        assert target_store.bulk_calls == []
        assert checkpoint_store.saved_tokens == [token(7)]


@pytest.mark.unit
class TestWriteFailures:
    """Tests for failed bulk writes"""

    def test_failed_batch_waits_for_next_timed_flush(
        self, source_store, target_store, checkpoint_store
    ):
        target_store.fail_writes = 1
        consumer = build_consumer(source_store, target_store, checkpoint_store, batch_count=2)
        events = [make_event(make_customer_document(i), i + 1) for i in range(5)]
        script_feed(source_store, consumer, events)

        consumer.run()

        # Later events do not re-send the requeued batch; shutdown writes everything
        assert [len(call) for call in target_store.bulk_calls] == [2, 5]
        assert checkpoint_store.saved_tokens == [token(5)]
        assert target_store.count() == 5
        assert consumer.write_failures == 1

    def test_timer_retry_reenables_size_trigger(
        self, source_store, target_store, checkpoint_store
    ):
        target_store.fail_writes = 1
        consumer = build_consumer(
            source_store, target_store, checkpoint_store, batch_count=2, save_interval_ms=30
        )
        for i in range(3):
            consumer.handle_event(make_event(make_customer_document(i), i + 1))
        assert [len(call) for call in target_store.bulk_calls] == [2]

        consumer._timer.start()
        try:
            assert wait_for(lambda: target_store.count() == 3)
        finally:
            consumer._timer.stop()

        for i in range(3, 5):
            consumer.handle_event(make_event(make_customer_document(i), i + 1))

        assert [len(call) for call in target_store.bulk_calls] == [2, 3, 2]
        assert checkpoint_store.load(CHECKPOINT_KEY).resume_token == token(5)

    def test_target_outage_does_not_write_per_event(
        self, source_store, target_store, checkpoint_store
    ):
        target_store.fail_writes = 100
        consumer = build_consumer(source_store, target_store, checkpoint_store, batch_count=2)
        events = [make_event(make_customer_document(i), i + 1) for i in range(10)]
        script_feed(source_store, consumer, events)

        consumer.run()

        assert [len(call) for call in target_store.bulk_calls] == [2, 10]
        assert checkpoint_store.saved_tokens == []
        assert consumer.write_failures == 2
        assert consumer.get_status()["buffered_records"] == 10
        assert consumer.state == ConsumerState.STOPPED

    def test_failed_shutdown_flush_keeps_checkpoint(
        self, source_store, target_store, checkpoint_store
    ):
        checkpoint_store.save(CHECKPOINT_KEY, token(1))
        target_store.fail_writes = 1
        consumer = build_consumer(source_store, target_store, checkpoint_store)
        script_feed(source_store, consumer, [make_event(make_customer_document(2), 2)])

        consumer.run()

        assert target_store.count() == 0
        assert checkpoint_store.load(CHECKPOINT_KEY).resume_token == token(1)
        assert consumer.get_status()["buffered_records"] == 1

    def test_checkpoint_write_failure_is_absorbed(
        self, source_store, target_store, checkpoint_store
    ):
        checkpoint_store.fail_saves = 1
        consumer = build_consumer(source_store, target_store, checkpoint_store, batch_count=1)
        events = [make_event(make_customer_document(i), i + 1) for i in range(2)]
        script_feed(source_store, consumer, events)

        consumer.run()

        assert consumer.state == ConsumerState.STOPPED
        assert target_store.count() == 2
        assert checkpoint_store.saved_tokens == [token(2)]


@pytest.mark.unit
class TestSubscriptionLifecycle:
    """Tests for subscribe, resume and failure handling"""

    def test_starts_at_tail_without_checkpoint(self, source_store, target_store, checkpoint_store):
        consumer = build_consumer(source_store, target_store, checkpoint_store)
        stream = script_feed(source_store, consumer, [])

        consumer.run()

        assert source_store.watch_calls == [None]
        assert stream.closed

    def test_resumes_from_checkpoint(self, source_store, target_store, checkpoint_store):
        checkpoint_store.save(CHECKPOINT_KEY, token(42))
        consumer = build_consumer(source_store, target_store, checkpoint_store)
        script_feed(source_store, consumer, [])

        consumer.run()

        assert source_store.watch_calls == [token(42)]

    def test_on_subscribed_runs_before_first_event(
        self, source_store, target_store, checkpoint_store
    ):
        consumer = build_consumer(source_store, target_store, checkpoint_store)
        script_feed(source_store, consumer, [make_event(make_customer_document(1), 1)])
        observed = []

        consumer.run(on_subscribed=lambda: observed.append(len(consumer.buffer)))

        assert observed == [0]

    def test_failed_catch_up_keeps_streaming(self, source_store, target_store, checkpoint_store):
        consumer = build_consumer(source_store, target_store, checkpoint_store)
        script_feed(source_store, consumer, [make_event(make_customer_document(1), 1)])

        def failing_catch_up():
            raise WriteFailure("catch-up page failed")

        consumer.run(on_subscribed=failing_catch_up)

        assert consumer.state == ConsumerState.STOPPED
        assert consumer.write_failures == 1
        assert target_store.count() == 1
        assert checkpoint_store.load(CHECKPOINT_KEY).resume_token == token(1)

    def test_on_subscribed_other_errors_fail_consumer(
        self, source_store, target_store, checkpoint_store
    ):
        consumer = build_consumer(source_store, target_store, checkpoint_store)
        stream = script_feed(source_store, consumer, [])

        def broken_catch_up():
            raise RuntimeError("catch-up crashed")

        with pytest.raises(RuntimeError, match="catch-up crashed"):
            consumer.run(on_subscribed=broken_catch_up)

        assert consumer.state == ConsumerState.FAILED
        assert stream.closed

    def test_subscription_failure_at_open(self, source_store, target_store, checkpoint_store):
        source_store.watch_error = SubscriptionFailure("not a replica set")
        consumer = build_consumer(source_store, target_store, checkpoint_store)

        with pytest.raises(SubscriptionFailure):
            consumer.run()

        assert consumer.state == ConsumerState.FAILED
        assert not consumer._timer.is_running

    def test_crash_and_restart_redelivers_unacknowledged_events(
        self, source_store, target_store, checkpoint_store
    ):
        """Test that events after the last checkpoint are re-delivered exactly once"""
        documents = [make_customer_document(i) for i in range(3)]
        events = [make_event(d, i + 1) for i, d in enumerate(documents)]

        first = build_consumer(source_store, target_store, checkpoint_store, batch_count=2)
        stream = script_feed(
            source_store, first, events + [SubscriptionFailure("stream lost")]
        )

        with pytest.raises(SubscriptionFailure):
            first.run()

        assert first.state == ConsumerState.FAILED
        assert stream.closed
        assert checkpoint_store.load(CHECKPOINT_KEY).resume_token == token(2)
        assert target_store.count() == 2

        # The server replays everything after the persisted token
        second = build_consumer(source_store, target_store, checkpoint_store, batch_count=2)
        script_feed(source_store, second, events[2:])
        second.run()

        assert source_store.watch_calls[-1] == token(2)
        assert target_store.count() == 3
        assert checkpoint_store.load(CHECKPOINT_KEY).resume_token == token(3)

    def test_timer_error_fails_consumer(
        self, source_store, target_store, checkpoint_store, monkeypatch
    ):
        consumer = build_consumer(source_store, target_store, checkpoint_store, save_interval_ms=10)
        script_feed(source_store, consumer, [], stop_when_exhausted=False)

        def broken_save(documents):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(consumer.writer, "save", broken_save)

        with pytest.raises(RuntimeError, match="unexpected"):
            consumer.run()
        assert consumer.state == ConsumerState.FAILED

    def test_run_twice_concurrently_rejected(self, source_store, target_store, checkpoint_store):
        consumer = build_consumer(source_store, target_store, checkpoint_store)
        consumer.state = ConsumerState.STREAMING

        with pytest.raises(RuntimeError, match="already running"):
            consumer.run()


@pytest.mark.unit
def test_get_status(source_store, target_store, checkpoint_store):
    consumer = build_consumer(source_store, target_store, checkpoint_store, batch_count=2)
    script_feed(source_store, consumer, [make_event(make_customer_document(i), i + 1) for i in range(2)])

    consumer.run()
    status = consumer.get_status()

    assert status == {
        "state": "stopped",
        "checkpoint_key": CHECKPOINT_KEY,
        "has_checkpoint": True,
        "buffered_records": 0,
        "total_flushes": 2,
        "total_records": 2,
        "write_failures": 0,
        "skipped_events": 0,
    }


@pytest.mark.unit
def test_create_feed_consumer(source_store, target_store, checkpoint_store):
    config = SyncConfig(
        db_uri="mongodb://localhost:27017",
        batch_count=10,
        save_interval_ms=250,
        anonymizer_strategy="keyed_hash",
        anonymizer_key="secret",
    )

    consumer = create_feed_consumer(config, source_store, target_store, checkpoint_store)

    assert consumer.batch_count == 10
    assert consumer.save_interval_ms == 250
    assert consumer.checkpoint_key == "customers_anonymised"
    assert consumer.writer.target is target_store
    assert consumer.writer.mode == "feed"
