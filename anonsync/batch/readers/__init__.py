"""
Source cursor readers.
"""

from .cursor_reader import iter_pages

__all__ = [
    "iter_pages",
]
