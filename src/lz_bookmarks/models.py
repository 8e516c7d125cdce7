"""Data models for bookmarks returned by the lz API."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class Tag:
    name: str  # case-sensitive, globally unique
    created_at: datetime


@dataclass(frozen=True)
class Bookmark:
    id: int  # doubles as the pagination cursor
    url: str
    title: str
    created_at: datetime
    user_id: int
    unread: bool = False
    shared: bool = False
    description: str | None = None
    notes: str | None = None  # private to the owner
    modified_at: datetime | None = None
    accessed_at: datetime | None = None
    website_title: str | None = None  # as extracted from the page
    website_description: str | None = None


@dataclass(frozen=True)
class AnnotatedBookmark:
    """A bookmark together with the tags set on it."""

    bookmark: Bookmark
    tags: tuple[Tag, ...] = ()

    @property
    def tag_names(self) -> list[str]:
        return [t.name for t in self.tags]


@dataclass(frozen=True)
class BookmarkPage:
    """One page of a listing, newest to oldest."""

    bookmarks: tuple[AnnotatedBookmark, ...] = ()
    next_cursor: int | None = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None

    @property
    def ids(self) -> list[int]:
        return [ab.bookmark.id for ab in self.bookmarks]


@dataclass(frozen=True)
class InfiniteData:
    """All pages fetched so far for one infinite query, in fetch order."""

    pages: tuple[BookmarkPage, ...] = field(default_factory=tuple)

    @property
    def bookmarks(self) -> list[AnnotatedBookmark]:
        return [ab for page in self.pages for ab in page.bookmarks]

    @property
    def next_cursor(self) -> int | None:
        return self.pages[-1].next_cursor if self.pages else None
