"""
ChangeEvent model representing one event of the source change feed.
"""

from typing import Any, Mapping

from pydantic import BaseModel

from anonsync.core.errors import MalformedEvent


class ChangeEvent(BaseModel):
    """
    A single insert/update event emitted by the change feed.

    Attributes:
        operation_type: Feed operation ("insert", "update", ...)
        full_document: Current full document, absent when the row is gone
        resume_token: Opaque feed position; stored and replayed verbatim, never parsed
    """

    operation_type: str
    full_document: dict[str, Any] | None = None
    resume_token: dict[str, Any]

    @classmethod
    def from_change(cls, change: Mapping[str, Any]) -> "ChangeEvent":
        """
        Build from a raw change stream document.

        The change document's ``_id`` is the resume token for that event.
        """
        return cls(
            operation_type=change.get("operationType", "unknown"),
            full_document=change.get("fullDocument"),
            resume_token=change["_id"],
        )

    @property
    def has_document(self) -> bool:
        return self.full_document is not None

    def require_document(self) -> dict[str, Any]:
        """
        Return the full document of the event.

        Raises:
            MalformedEvent: If the document no longer exists (deleted before
                the update lookup ran)
        """
        if self.full_document is None:
            raise MalformedEvent(
                f"{self.operation_type} event carries no full document",
                resume_token=self.resume_token,
            )
        return self.full_document
