"""
In-memory batch buffer shared by the size trigger and the timer trigger.

Every mutation happens under one lock. Drains swap the buffer for a fresh
list, so two flushes never observe overlapping records.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Batch:
    """
    Records handed to the sink by one flush.

    Attributes:
        records: Source documents, in arrival order
        resume_token: Feed position of the last event covered by this batch
    """

    records: list[dict[str, Any]] = field(default_factory=list)
    resume_token: Optional[dict[str, Any]] = None

    def __len__(self) -> int:
        return len(self.records)


class BatchBuffer:
    """
    Mutex-protected record buffer with atomic swap-and-drain.

    Besides records, the buffer tracks the resume token of the latest event it
    has seen, so a drained batch always knows how far the checkpoint may move.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records: list[dict[str, Any]] = []
        self._resume_token: Optional[dict[str, Any]] = None

    def append(self, record: dict[str, Any], resume_token: Optional[dict[str, Any]] = None) -> int:
        """
        Add one record.

        Args:
            record: Source document
            resume_token: Feed position of the event carrying the record

        Returns:
            Buffer length after the append
        """
        with self._lock:
            self._records.append(record)
            if resume_token is not None:
                self._resume_token = resume_token
            return len(self._records)

    def advance_token(self, resume_token: dict[str, Any]) -> None:
        """Move the pending position past an event that added no record."""
        with self._lock:
            self._resume_token = resume_token

    def drain_if_at_least(self, count: int) -> Optional[Batch]:
        """
        Swap out the contents if at least ``count`` records are buffered.

        Returns:
            The drained batch, or None when the buffer holds fewer records
        """
        with self._lock:
            if len(self._records) < count:
                return None
            return self._swap()

    def drain_all(self) -> Batch:
        """Swap out the contents unconditionally, even when empty."""
        with self._lock:
            return self._swap()

    def requeue(self, batch: Batch) -> None:
        """
        Put a batch that failed to write back in front of the buffer.

        Records appended since the drain stay behind the requeued ones, and
        the newest known position is kept.
        """
        with self._lock:
            self._records = batch.records + self._records
            if self._resume_token is None:
                self._resume_token = batch.resume_token

    def _swap(self) -> Batch:
        batch = Batch(records=self._records, resume_token=self._resume_token)
        self._records = []
        self._resume_token = None
        return batch

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
