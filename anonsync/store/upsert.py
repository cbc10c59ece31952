"""
Idempotent upsert of anonymized customers.

Every source document becomes a whole-document replacement keyed by its
``_id``, so re-submitting a record any number of times leaves exactly one
anonymized document per id.
"""

from typing import Any, Protocol

from pydantic import ValidationError

from anonsync.core.models import Customer, UpsertOperation
from anonsync.core.transform import ValueGenerator, anonymize
from anonsync.core.transform.generators import RandomValueGenerator
from anonsync.observability import metrics
from anonsync.observability.logger import get_logger

logger = get_logger(__name__)


class TargetStore(Protocol):
    """Store accepting bulk (filter, replacement, upsert) triples."""

    def bulk_upsert(self, operations: list[UpsertOperation]) -> int:
        ...


class AnonymizedWriter:
    """
    Writes batches of source documents into the anonymized collection.

    A failed bulk write fails the whole call; callers keep their checkpoint
    or cursor where it was and resubmit the same batch.
    """

    def __init__(
        self,
        target: TargetStore,
        generate: ValueGenerator | None = None,
        mode: str = "feed",
    ):
        """
        Initialize anonymized writer.

        Args:
            target: Target store receiving the upserts
            generate: Value generator for the transform (random if omitted)
            mode: Metrics label of the caller ("feed" or "backfill")
        """
        self.target = target
        self.generate = generate or RandomValueGenerator()
        self.mode = mode

    def build_operations(self, documents: list[dict[str, Any]]) -> list[UpsertOperation]:
        """
        Transform source documents into upsert operations.

        Documents that are not valid customers are skipped and logged.

        Args:
            documents: Raw source documents

        Returns:
            One UpsertOperation per valid document
        """
        operations = []
        for document in documents:
            try:
                customer = Customer.from_document(document)
            except ValidationError as e:
                logger.warning(
                    f"Skipping malformed document {document.get('_id')!r}: "
                    f"{e.error_count()} validation error(s)",
                    extra={"errors": e.errors(include_url=False, include_input=False)},
                )
                metrics.increment_counter(metrics.malformed_records_total, 1, mode=self.mode)
                continue

            if customer.id is None:
                logger.warning("Skipping document without _id")
                metrics.increment_counter(metrics.malformed_records_total, 1, mode=self.mode)
                continue

            anonymized = anonymize(customer, self.generate)
            operations.append(
                UpsertOperation(
                    filter={"_id": customer.id},
                    replacement=anonymized.to_document(),
                    upsert=True,
                )
            )
        return operations

    def save(self, documents: list[dict[str, Any]]) -> int:
        """
        Anonymize and upsert a batch of source documents.

        Args:
            documents: Raw source documents

        Returns:
            Number of upserts committed (0 for an empty batch)

        Raises:
            WriteFailure: If the bulk write fails
        """
        if not documents:
            return 0

        logger.info(f"save count: {len(documents)}")

        operations = self.build_operations(documents)
        if not operations:
            return 0

        with metrics.track_duration(metrics.write_duration_seconds, mode=self.mode):
            committed = self.target.bulk_upsert(operations)

        metrics.increment_counter(metrics.records_written_total, committed, mode=self.mode)
        return committed
