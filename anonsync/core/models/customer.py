"""
Customer model representing one document of the source (or target) collection.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

# Replication watermark of the source collection
CREATED_AT_FIELD = "createdAt"


class Address(BaseModel):
    """
    Postal address embedded in a customer document.

    Attributes:
        line1: First address line (identifying)
        line2: Second address line (identifying)
        postcode: Postal code (identifying)
        city: City (kept verbatim)
        state: Region/state (kept verbatim)
        country: ISO alpha-2 country code (kept verbatim)
    """

    line1: str
    line2: str
    postcode: str
    city: str
    state: str
    country: str


class Customer(BaseModel):
    """
    A customer record as stored in the source and anonymized collections.

    Field names are snake_case in Python and camelCase in the store; the model
    accepts either and dumps by alias so documents round-trip unchanged.

    Attributes:
        id: Identity assigned by the source store (``_id``), copied verbatim
        first_name: Given name
        last_name: Family name
        email: Email address
        address: Postal address
        created_at: Creation timestamp, used as the replication watermark
    """

    id: Any = Field(default=None, alias="_id")
    first_name: str = Field(..., alias="firstName")
    last_name: str = Field(..., alias="lastName")
    email: str
    address: Address
    created_at: datetime = Field(..., alias=CREATED_AT_FIELD)

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "_id": "65a1f0c2e4b0a1b2c3d4e5f6",
                "firstName": "Ada",
                "lastName": "Lovelace",
                "email": "ada@example.com",
                "address": {
                    "line1": "12 Analytical Row",
                    "line2": "Apt. 3",
                    "postcode": "EC1A 1BB",
                    "city": "London",
                    "state": "LDN",
                    "country": "GB"
                },
                "createdAt": "2024-01-12T10:00:00Z"
            }
        }

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "Customer":
        """Build a Customer from a raw store document."""
        return cls.model_validate(document)

    def to_document(self) -> dict[str, Any]:
        """
        Dump to the store's document shape.

        ``_id`` is omitted when unset so the store assigns one on insert.
        """
        document = self.model_dump(by_alias=True)
        if self.id is None:
            document.pop("_id")
        return document
