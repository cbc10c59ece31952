"""
UpsertOperation model: one (filter, replacement, upsert) triple of a bulk write.
"""

from typing import Any

from pydantic import BaseModel


class UpsertOperation(BaseModel):
    """
    Replace-or-insert of a single target document.

    Attributes:
        filter: Match on the document identity, e.g. ``{"_id": ...}``
        replacement: Full replacement document
        upsert: Insert when no document matches
    """

    filter: dict[str, Any]
    replacement: dict[str, Any]
    upsert: bool = True
