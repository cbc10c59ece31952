"""
MongoDB change stream source.

Subscribes to insert/update events of a collection, requesting the full
current document on every event, optionally resuming from a stored token.
"""

from typing import Any, Optional

from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from anonsync.core.errors import SubscriptionFailure
from anonsync.core.models import ChangeEvent
from anonsync.observability.logger import get_logger

logger = get_logger(__name__)

OPERATION_TYPES = ("insert", "update")


class ChangeStreamSource:
    """
    Change feed subscription over one collection.

    Emits ``ChangeEvent`` objects. Resume tokens are passed through untouched.
    """

    def __init__(
        self,
        collection: Collection,
        resume_after: Optional[dict[str, Any]] = None,
        max_await_time_ms: int = 500,
    ):
        """
        Initialize change stream source.

        Args:
            collection: Source collection to watch
            resume_after: Token of the last acknowledged event, None to start at the tail
            max_await_time_ms: Longest time one poll blocks waiting for an event
        """
        self.collection = collection
        self.resume_after = resume_after
        self.max_await_time_ms = max_await_time_ms
        self._stream = None

    @property
    def pipeline(self) -> list[dict[str, Any]]:
        return [{"$match": {"operationType": {"$in": list(OPERATION_TYPES)}}}]

    def open(self) -> "ChangeStreamSource":
        """
        Open the change stream.

        Raises:
            SubscriptionFailure: If the server rejects the subscription
        """
        logger.info(
            f"Opening change stream on '{self.collection.name}' "
            f"({'resuming from checkpoint' if self.resume_after else 'starting at tail'})"
        )
        try:
            self._stream = self.collection.watch(
                self.pipeline,
                full_document="updateLookup",
                resume_after=self.resume_after,
                max_await_time_ms=self.max_await_time_ms,
            )
        except PyMongoError as e:
            raise SubscriptionFailure(f"Failed to open change stream: {e}") from e
        return self

    def try_next(self) -> Optional[ChangeEvent]:
        """
        Poll for the next event.

        Returns:
            Next event, or None when nothing arrived within max_await_time_ms

        Raises:
            SubscriptionFailure: If the stream errors
        """
        if self._stream is None:
            raise RuntimeError("Change stream is not open. Call open() first.")

        try:
            change = self._stream.try_next()
        except PyMongoError as e:
            raise SubscriptionFailure(f"Change stream failed: {e}") from e

        if change is None:
            return None
        return ChangeEvent.from_change(change)

    def close(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
