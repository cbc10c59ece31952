"""
Fixed-size paging over a document cursor.
"""

from typing import Any, Iterable, Iterator


def iter_pages(documents: Iterable[dict[str, Any]], page_size: int) -> Iterator[list[dict[str, Any]]]:
    """
    Group a cursor into pages of at most ``page_size`` documents.

    The final partial page is yielded as well; an empty cursor yields nothing.

    Args:
        documents: Cursor or any iterable of documents
        page_size: Maximum documents per page

    Yields:
        Lists of documents
    """
    if page_size <= 0:
        raise ValueError("page_size must be positive")

    page: list[dict[str, Any]] = []
    for document in documents:
        page.append(document)
        if len(page) >= page_size:
            yield page
            page = []

    if page:
        yield page
