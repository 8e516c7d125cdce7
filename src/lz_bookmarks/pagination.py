"""Cursor pagination state for one (operation, filter) listing.

Pages are requested newest to oldest; each page's nextCursor is handed back
to the server to get the next, strictly older, page. The aggregator keeps the
pages in fetch order and refuses pages that would break that ordering:

    IDLE -> FETCHING_FIRST -> READY <-> FETCHING_NEXT

Exhaustion is READY with no next cursor. The aggregator does no I/O; the
query binding drives it around its fetches.
"""

import enum
import logging

from .errors import PaginationIntegrityError
from .models import AnnotatedBookmark, BookmarkPage, InfiniteData

logger = logging.getLogger(__name__)


class PaginationState(enum.Enum):
    IDLE = "idle"
    FETCHING_FIRST = "fetching_first"
    READY = "ready"
    FETCHING_NEXT = "fetching_next"


class PaginationAggregator:
    def __init__(self, pages: tuple[BookmarkPage, ...] | list[BookmarkPage] = ()):
        self._pages: tuple[BookmarkPage, ...] = ()
        self._state = PaginationState.IDLE
        self._error: Exception | None = None
        if pages:
            self.restore(pages)

    @property
    def state(self) -> PaginationState:
        return self._state

    @property
    def pages(self) -> tuple[BookmarkPage, ...]:
        return self._pages

    @property
    def bookmarks(self) -> list[AnnotatedBookmark]:
        return [ab for page in self._pages for ab in page.bookmarks]

    @property
    def error(self) -> Exception | None:
        return self._error

    @property
    def next_cursor(self) -> int | None:
        return self._pages[-1].next_cursor if self._pages else None

    @property
    def has_next_page(self) -> bool:
        return self.next_cursor is not None

    @property
    def exhausted(self) -> bool:
        return bool(self._pages) and self.next_cursor is None

    @property
    def is_fetching(self) -> bool:
        return self._state in (
            PaginationState.FETCHING_FIRST,
            PaginationState.FETCHING_NEXT,
        )

    @property
    def is_fetching_next_page(self) -> bool:
        return self._state is PaginationState.FETCHING_NEXT

    def snapshot(self) -> InfiniteData:
        return InfiniteData(pages=self._pages)

    def begin_first(self) -> None:
        """Start the initial fetch (no cursor)."""
        if self._state is not PaginationState.IDLE:
            raise RuntimeError(f"Cannot start first fetch from {self._state.name}")
        self._state = PaginationState.FETCHING_FIRST

    def begin_next(self) -> int | None:
        """Start a next-page fetch and return its cursor.

        Returns None, leaving the state unchanged, when a fetch is already
        running or there is nothing more to fetch.
        """
        if self._state is not PaginationState.READY or not self.has_next_page:
            return None
        self._state = PaginationState.FETCHING_NEXT
        return self.next_cursor

    def accept(self, page: BookmarkPage) -> None:
        """Append a fetched page after checking id ordering.

        Raises PaginationIntegrityError, keeping held pages as they were,
        if the page repeats an id or is not strictly older than what we hold.
        """
        if not self.is_fetching:
            raise RuntimeError("accept() called with no fetch in progress")
        try:
            self._check_order(page)
        except PaginationIntegrityError as e:
            self.fail(e)
            raise
        self._pages = self._pages + (page,)
        self._state = PaginationState.READY
        self._error = None
        logger.debug(
            "Accepted page %d (%d bookmarks, next cursor %s)",
            len(self._pages),
            len(page.bookmarks),
            page.next_cursor,
        )

    def fail(self, error: Exception) -> None:
        """Record a failed fetch. Held pages are never rolled back."""
        self._error = error
        self._unwind()

    def abort(self) -> None:
        """Leave a fetching state without recording an error (cancellation)."""
        self._unwind()

    def restore(self, pages: tuple[BookmarkPage, ...] | list[BookmarkPage]) -> None:
        """Seed the aggregator with previously fetched pages (e.g. from cache)."""
        self.reset()
        self._state = PaginationState.FETCHING_FIRST
        try:
            for page in pages:
                self.accept(page)
                self._state = PaginationState.FETCHING_NEXT
        finally:
            self._state = (
                PaginationState.READY if self._pages else PaginationState.IDLE
            )

    def reset(self) -> None:
        self._pages = ()
        self._state = PaginationState.IDLE
        self._error = None

    def _unwind(self) -> None:
        if self._state is PaginationState.FETCHING_FIRST:
            self._state = PaginationState.IDLE
        elif self._state is PaginationState.FETCHING_NEXT:
            self._state = PaginationState.READY

    def _check_order(self, page: BookmarkPage) -> None:
        last_id = None
        for held in reversed(self._pages):
            if held.ids:
                last_id = held.ids[-1]
                break
        for bookmark_id in page.ids:
            if last_id is not None and bookmark_id >= last_id:
                logger.error(
                    "Pagination integrity violation: id %d follows %d",
                    bookmark_id,
                    last_id,
                )
                raise PaginationIntegrityError(
                    f"Bookmark id {bookmark_id} is not older than {last_id}; "
                    "the server returned overlapping or out-of-order pages",
                    bookmark_id=bookmark_id,
                )
            last_id = bookmark_id
