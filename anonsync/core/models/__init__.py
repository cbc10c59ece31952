"""
Core data models for the anonymizing sync pipeline.

All models use Pydantic for runtime validation and type safety.
"""

from .change_event import ChangeEvent
from .checkpoint import Checkpoint
from .customer import CREATED_AT_FIELD, Address, Customer
from .upsert_operation import UpsertOperation

__all__ = [
    "CREATED_AT_FIELD",
    "Address",
    "Customer",
    "ChangeEvent",
    "Checkpoint",
    "UpsertOperation",
]
