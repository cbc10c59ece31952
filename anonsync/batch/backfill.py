"""
Backfill runner: bulk re-transform of the source collection.

Bypasses the change feed and pushes source documents through the same
anonymized writer, one fixed-size page per bulk write.
"""

import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Protocol

from anonsync.core.errors import WriteFailure
from anonsync.core.models import CREATED_AT_FIELD
from anonsync.core.transform import build_generator
from anonsync.observability import metrics
from anonsync.observability.logger import get_logger, log_operation
from anonsync.store.upsert import AnonymizedWriter

from .readers import iter_pages

logger = get_logger(__name__)


class PagedSource(Protocol):
    def iter_documents(
        self,
        created_since: Optional[datetime] = None,
        batch_size: Optional[int] = None,
    ) -> Iterable[dict[str, Any]]:
        ...


class LatestLookup(Protocol):
    def find_latest(self) -> Optional[dict[str, Any]]:
        ...


@dataclass
class BackfillResult:
    """
    Outcome of one backfill run.

    Attributes:
        mode: "full" or "incremental"
        pages: Bulk writes performed
        records: Records committed
        watermark: createdAt lower bound of an incremental run
        duration_seconds: Wall time of the run
    """

    mode: str
    pages: int = 0
    records: int = 0
    watermark: Optional[datetime] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        if self.watermark is not None:
            result["watermark"] = self.watermark.isoformat()
        return result


class BackfillRunner:
    """
    One-shot bulk pass over the source collection.

    Modes:
    - full: every source document
    - incremental: source documents created at or after the newest
      anonymized document (the boundary record is reprocessed)
    """

    def __init__(
        self,
        source: PagedSource,
        target: LatestLookup,
        writer: AnonymizedWriter,
        page_size: int = 100000,
        max_retries: int = 3,
        retry_delay: float = 2.0,
    ):
        """
        Initialize backfill runner.

        Args:
            source: Source store with paged reads
            target: Target store, queried for its newest document
            writer: Sink writer shared with the feed path
            page_size: Maximum documents per bulk write
            max_retries: Attempts per page before the run aborts
            retry_delay: Seconds between attempts
        """
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.source = source
        self.target = target
        self.writer = writer
        self.page_size = page_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def run_full(self) -> BackfillResult:
        """
        Re-transform the entire source collection.

        Returns:
            BackfillResult

        Raises:
            WriteFailure: If a page still fails after all retries
        """
        result = BackfillResult(mode="full")
        start = time.monotonic()

        with log_operation("Full backfill", logger=logger, page_size=self.page_size):
            documents = self.source.iter_documents(batch_size=self.page_size)
            self._save_pages(documents, result)

        result.duration_seconds = round(time.monotonic() - start, 3)
        return result

    def run_incremental(self) -> BackfillResult:
        """
        Re-transform source records not older than the newest target record.

        Does nothing when the target collection is empty.

        Returns:
            BackfillResult

        Raises:
            WriteFailure: If a page still fails after all retries
        """
        result = BackfillResult(mode="incremental")
        start = time.monotonic()

        latest = self.target.find_latest()
        if not latest or latest.get(CREATED_AT_FIELD) is None:
            logger.info("Target collection is empty, nothing to catch up")
            return result

        result.watermark = latest[CREATED_AT_FIELD]

        with log_operation(
            "Incremental backfill",
            logger=logger,
            watermark=result.watermark.isoformat(),
        ):
            documents = self.source.iter_documents(
                created_since=result.watermark,
                batch_size=self.page_size,
            )
            self._save_pages(documents, result)

        result.duration_seconds = round(time.monotonic() - start, 3)
        return result

    def _save_pages(self, documents: Iterable[dict[str, Any]], result: BackfillResult) -> None:
        for page in iter_pages(documents, self.page_size):
            committed = self._save_page(page)
            result.pages += 1
            result.records += committed
            metrics.increment_counter(metrics.backfill_pages_total, 1, mode=result.mode)
            logger.info(
                f"{result.mode} backfill page {result.pages}: {committed} records "
                f"({result.records} total)"
            )

    def _save_page(self, page: list[dict[str, Any]]) -> int:
        attempt = 1
        while True:
            try:
                return self.writer.save(page)
            except WriteFailure as e:
                if attempt >= self.max_retries:
                    raise
                logger.warning(
                    f"Backfill page write failed (attempt {attempt}/{self.max_retries}), "
                    f"retrying in {self.retry_delay}s: {e}"
                )
                time.sleep(self.retry_delay)
                attempt += 1


def create_backfill_runner(config, source, target) -> BackfillRunner:
    """
    Factory function to create a BackfillRunner from configuration.

    Args:
        config: SyncConfig
        source: Source store
        target: Target store (also receives the upserts)

    Returns:
        Configured BackfillRunner instance
    """
    writer = AnonymizedWriter(
        target,
        generate=build_generator(config.anonymizer_strategy, config.anonymizer_key),
        mode="backfill",
    )
    return BackfillRunner(
        source=source,
        target=target,
        writer=writer,
        page_size=config.max_write_batch_size,
        max_retries=config.backfill_max_retries,
        retry_delay=config.backfill_retry_delay,
    )
