"""
Checkpoint model: the single persisted feed position of a sync pipeline.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class Checkpoint(BaseModel):
    """
    Last acknowledged change feed position.

    Overwritten after every committed flush, never appended.

    Attributes:
        key: Name of the checkpoint slot
        resume_token: Opaque token handed back by the change feed
        updated_at: When the checkpoint was last written
    """

    key: str = Field(..., min_length=1)
    resume_token: dict[str, Any]
    updated_at: datetime = Field(default_factory=datetime.utcnow)
