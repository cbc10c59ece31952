"""
One-shot bulk re-transform of the source collection.
"""

from .backfill import BackfillResult, BackfillRunner
from .readers import iter_pages

__all__ = [
    "BackfillResult",
    "BackfillRunner",
    "iter_pages",
]
