"""
Collection adapter for customer documents.

The same adapter serves as the source store (change feed, paged reads) and
the target store (latest-record lookup, bulk upsert).
"""

from datetime import datetime
from typing import Any, Iterator, Optional

from pymongo import ASCENDING, DESCENDING, ReplaceOne
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from anonsync.core.errors import WriteFailure
from anonsync.core.models import CREATED_AT_FIELD, UpsertOperation
from anonsync.observability.logger import get_logger
from anonsync.streaming.sources.change_stream_source import ChangeStreamSource

logger = get_logger(__name__)


class MongoCustomerStore:
    """
    Read/write access to one customer collection.
    """

    def __init__(self, collection: Collection):
        """
        Args:
            collection: The backing pymongo collection
        """
        self.collection = collection

    @property
    def name(self) -> str:
        return self.collection.name

    def watch(
        self,
        resume_after: Optional[dict[str, Any]] = None,
        max_await_time_ms: int = 500,
    ) -> ChangeStreamSource:
        """
        Open a change feed subscription on the collection.

        Args:
            resume_after: Token to resume from, None to start at the feed tail
            max_await_time_ms: Longest time one poll blocks

        Returns:
            Opened ChangeStreamSource
        """
        source = ChangeStreamSource(
            self.collection,
            resume_after=resume_after,
            max_await_time_ms=max_await_time_ms,
        )
        return source.open()

    def iter_documents(
        self,
        created_since: Optional[datetime] = None,
        batch_size: Optional[int] = None,
    ) -> Iterator[dict[str, Any]]:
        """
        Iterate over the collection.

        Args:
            created_since: Only documents with createdAt >= this value,
                sorted by createdAt ascending. None for the whole collection
            batch_size: Cursor batch size hint

        Yields:
            Raw documents
        """
        if created_since is None:
            cursor = self.collection.find({})
        else:
            cursor = self.collection.find(
                {CREATED_AT_FIELD: {"$gte": created_since}},
                sort=[(CREATED_AT_FIELD, ASCENDING)],
            )
        if batch_size:
            cursor = cursor.batch_size(batch_size)

        with cursor:
            yield from cursor

    def find_latest(self) -> Optional[dict[str, Any]]:
        """
        Most recently created document, projected to its createdAt.

        Returns:
            ``{"_id": ..., "createdAt": ...}`` or None for an empty collection
        """
        return self.collection.find_one(
            {},
            projection={CREATED_AT_FIELD: 1},
            sort=[(CREATED_AT_FIELD, DESCENDING)],
        )

    def bulk_upsert(self, operations: list[UpsertOperation]) -> int:
        """
        Execute replace-or-insert operations as one unordered bulk write.

        Args:
            operations: Upsert triples

        Returns:
            Number of operations submitted

        Raises:
            WriteFailure: If the bulk write fails, even partially
        """
        if not operations:
            return 0

        requests = [
            ReplaceOne(op.filter, op.replacement, upsert=op.upsert)
            for op in operations
        ]
        try:
            result = self.collection.bulk_write(requests, ordered=False)
        except PyMongoError as e:
            raise WriteFailure(
                f"Bulk upsert of {len(requests)} documents into '{self.name}' failed: {e}"
            ) from e

        logger.debug(
            f"Bulk upsert into '{self.name}': matched={result.matched_count} "
            f"upserted={result.upserted_count}"
        )
        return len(requests)

    def insert_many(self, documents: list[dict[str, Any]]) -> int:
        """
        Insert new documents.

        Raises:
            WriteFailure: If the insert fails
        """
        if not documents:
            return 0
        try:
            result = self.collection.insert_many(documents)
        except PyMongoError as e:
            raise WriteFailure(f"Insert into '{self.name}' failed: {e}") from e
        return len(result.inserted_ids)

    def count(self) -> int:
        return self.collection.count_documents({})
