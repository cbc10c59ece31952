"""
Feed consumer: the continuous change-capture, anonymize, checkpoint loop.

Coordinates the flow: change feed → batch buffer → (size/timer trigger) →
anonymized writer → checkpoint store
"""

import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

from anonsync.core.errors import MalformedEvent, WriteFailure
from anonsync.core.models import ChangeEvent
from anonsync.core.transform import build_generator
from anonsync.observability.logger import get_logger
from anonsync.observability.metrics import MetricsCollector
from anonsync.store.checkpoint import CheckpointStore
from anonsync.store.upsert import AnonymizedWriter
from anonsync.streaming.buffer import BatchBuffer
from anonsync.streaming.flush_timer import FlushTimer

logger = get_logger(__name__)


class ConsumerState(str, Enum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    STOPPED = "stopped"
    FAILED = "failed"


class ChangeFeed(Protocol):
    def try_next(self) -> Optional[ChangeEvent]:
        ...

    def close(self) -> None:
        ...


class FeedSource(Protocol):
    def watch(
        self,
        resume_after: Optional[dict[str, Any]] = None,
        max_await_time_ms: int = 500,
    ) -> ChangeFeed:
        ...


class FeedConsumer:
    """
    Resumable change feed consumer.

    Flow:
    1. Load the checkpoint and start the flush timer
    2. Subscribe to the feed, resuming from the checkpoint when present
    3. Buffer the full document of every insert/update event
    4. Flush on size (every append) or on time (fixed period)
    5. Persist the batch's resume token only after its write succeeded

    Flushes are serialized, so checkpoints are written in feed order and a
    token never advances past a batch that was not written.
    """

    def __init__(
        self,
        source: FeedSource,
        writer: AnonymizedWriter,
        checkpoint_store: CheckpointStore,
        checkpoint_key: str,
        batch_count: int = 1000,
        save_interval_ms: int = 1000,
        max_await_time_ms: int = 500,
    ):
        """
        Initialize feed consumer.

        Args:
            source: Source store exposing the change feed
            writer: Sink writer for drained batches
            checkpoint_store: Durable store of the resume token
            checkpoint_key: Name of the checkpoint slot
            batch_count: Size trigger threshold
            save_interval_ms: Period of the time trigger
            max_await_time_ms: Longest wait of one feed poll
        """
        if batch_count <= 0:
            raise ValueError("batch_count must be positive")

        self.source = source
        self.writer = writer
        self.checkpoint_store = checkpoint_store
        self.checkpoint_key = checkpoint_key
        self.batch_count = batch_count
        self.save_interval_ms = save_interval_ms
        self.max_await_time_ms = max_await_time_ms

        self.buffer = BatchBuffer()
        self.metrics = MetricsCollector()
        self.state = ConsumerState.IDLE
        self.last_checkpoint_token: Optional[dict[str, Any]] = None

        self.total_flushes = 0
        self.total_records = 0
        self.write_failures = 0
        self.skipped_events = 0
        self._retry_pending = False

        self._flush_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._timer = FlushTimer(
            lambda: self.flush("timer"),
            interval_seconds=save_interval_ms / 1000.0,
        )

    def run(self, on_subscribed: Optional[Callable[[], object]] = None) -> None:
        """
        Consume the change feed until ``stop()`` is called.

        Args:
            on_subscribed: Called once after the subscription is open and
                before the first event is consumed; a WriteFailure it raises
                is logged and counted, and consumption continues

        Raises:
            SubscriptionFailure: If the feed errors; the persisted checkpoint
                stays valid for a restart
            RuntimeError: If the consumer is already running
        """
        if self.state in (ConsumerState.SUBSCRIBING, ConsumerState.STREAMING):
            raise RuntimeError("Feed consumer is already running")

        self._stop_event.clear()
        self.state = ConsumerState.SUBSCRIBING

        try:
            resume_token = self.checkpoint_store.load_token(self.checkpoint_key)
            self.last_checkpoint_token = resume_token
            if resume_token is None:
                logger.info(f"No checkpoint '{self.checkpoint_key}' found, starting at the feed tail")
            else:
                logger.info(f"Resuming from checkpoint '{self.checkpoint_key}'")

            self._timer.start()
            feed = self.source.watch(
                resume_after=resume_token,
                max_await_time_ms=self.max_await_time_ms,
            )
            try:
                self.state = ConsumerState.STREAMING
                logger.info("Change feed subscription established")
                if on_subscribed is not None:
                    self._run_hook(on_subscribed)
                self._consume(feed)
            finally:
                feed.close()
        except Exception as e:
            self._fail(e)
            raise

        self._timer.stop()
        self.flush("shutdown")
        self.state = ConsumerState.STOPPED
        logger.info(
            f"Feed consumer stopped after {self.total_flushes} flushes "
            f"({self.total_records} records)"
        )

    def stop(self) -> None:
        """Request a graceful shutdown; the loop exits after the current poll."""
        logger.info("Stop requested for feed consumer")
        self._stop_event.set()

    def _run_hook(self, on_subscribed: Callable[[], object]) -> None:
        try:
            on_subscribed()
        except WriteFailure as e:
            self.write_failures += 1
            logger.error(
                f"Catch-up after subscribe failed, continuing with the feed "
                f"(run a full reindex to fill the gap): {e}",
                exc_info=True,
            )

    def _consume(self, feed: ChangeFeed) -> None:
        while not self._stop_event.is_set():
            if self._timer.error is not None:
                raise self._timer.error

            event = feed.try_next()
            if event is None:
                continue
            self.handle_event(event)

    def _fail(self, error: Exception) -> None:
        self._timer.stop()
        self.state = ConsumerState.FAILED

        # Buffered records are re-delivered from the persisted checkpoint
        dropped = self.buffer.drain_all()
        self.metrics.set_buffered(0)
        logger.error(
            f"Feed consumer failed, discarding {len(dropped)} buffered records: {error}",
            exc_info=True,
        )

    def handle_event(self, event: ChangeEvent) -> None:
        """
        Buffer one change event and fire the size trigger if reached.

        Events without a full document are skipped.
        """
        try:
            document = event.require_document()
        except MalformedEvent as e:
            logger.warning(f"Skipping event: {e}")
            self.skipped_events += 1
            self.metrics.record_skipped_event("missing_document")
            self.buffer.advance_token(e.resume_token)
            return

        length = self.buffer.append(document, event.resume_token)
        self.metrics.set_buffered(length)
        if length >= self.batch_count:
            self.flush("size")

    def flush(self, trigger: str = "timer") -> int:
        """
        Drain the buffer, write the batch, then persist its checkpoint.

        Args:
            trigger: "size" drains only a full batch and is skipped while a
                failed batch awaits retry; anything else drains unconditionally

        Returns:
            Number of records committed by this flush
        """
        with self._flush_lock:
            if trigger == "size":
                if self._retry_pending:
                    # A failed batch waits for the next timer period
                    return 0
                batch = self.buffer.drain_if_at_least(self.batch_count)
                if batch is None:
                    # The timer drained the buffer first
                    return 0
            else:
                batch = self.buffer.drain_all()

            try:
                committed = self.writer.save(batch.records)
            except WriteFailure as e:
                self.write_failures += 1
                self.buffer.requeue(batch)
                self._retry_pending = True
                self.metrics.record_flush(trigger, len(batch), success=False)
                logger.error(
                    f"{trigger} flush of {len(batch)} records failed, "
                    f"checkpoint not advanced: {e}",
                    exc_info=True,
                )
                return 0

            self._retry_pending = False
            self.total_flushes += 1
            self.total_records += committed
            self.metrics.record_flush(trigger, len(batch))
            if len(batch):
                logger.info(f"{trigger} flush committed {committed} of {len(batch)} records")

            self._persist_checkpoint(batch.resume_token)
            self.metrics.set_buffered(len(self.buffer))
            return committed

    def _persist_checkpoint(self, resume_token: Optional[dict[str, Any]]) -> None:
        if resume_token is None or resume_token == self.last_checkpoint_token:
            return

        try:
            self.checkpoint_store.save(self.checkpoint_key, resume_token)
        except WriteFailure as e:
            self.metrics.record_checkpoint_write(success=False)
            logger.error(f"Checkpoint write failed, will retry on next flush: {e}", exc_info=True)
            return

        self.last_checkpoint_token = resume_token
        self.metrics.record_checkpoint_write()
        logger.debug(f"Checkpoint '{self.checkpoint_key}' advanced")

    def get_status(self) -> Dict[str, Any]:
        """
        Get current status of the feed consumer.

        Returns:
            Dictionary with consumer status information
        """
        return {
            "state": self.state.value,
            "checkpoint_key": self.checkpoint_key,
            "has_checkpoint": self.last_checkpoint_token is not None,
            "buffered_records": len(self.buffer),
            "total_flushes": self.total_flushes,
            "total_records": self.total_records,
            "write_failures": self.write_failures,
            "skipped_events": self.skipped_events,
        }


def create_feed_consumer(config, source: FeedSource, target, checkpoint_store: CheckpointStore) -> FeedConsumer:
    """
    Factory function to create a FeedConsumer from configuration.

    Args:
        config: SyncConfig
        source: Source store exposing the change feed
        target: Target store receiving the upserts
        checkpoint_store: Durable store of the resume token

    Returns:
        Configured FeedConsumer instance
    """
    writer = AnonymizedWriter(
        target,
        generate=build_generator(config.anonymizer_strategy, config.anonymizer_key),
        mode="feed",
    )
    return FeedConsumer(
        source=source,
        writer=writer,
        checkpoint_store=checkpoint_store,
        checkpoint_key=config.checkpoint_key,
        batch_count=config.batch_count,
        save_interval_ms=config.save_interval_ms,
        max_await_time_ms=config.max_await_time_ms,
    )
