"""Decode lz API JSON payloads into model objects.

A listing response looks like:
    {
        "bookmarks": [{"bookmark": {...}, "tags": [{"name": ..., "created_at": ...}]}],
        "nextCursor": 42
    }

Unlike a best-effort scrape, a payload that does not match this shape fails
the whole fetch with DecodeError; a half-decoded page would corrupt the
cursor sequence.
"""

import logging
from datetime import datetime
from typing import Any

from .errors import DecodeError
from .models import AnnotatedBookmark, Bookmark, BookmarkPage, Tag

logger = logging.getLogger(__name__)


def parse_list_result(payload: Any) -> BookmarkPage:
    """Decode a `ListBookmarkResult` payload into a BookmarkPage."""
    if not isinstance(payload, dict):
        raise DecodeError(
            f"Expected a JSON object, got {type(payload).__name__}"
        )

    raw_bookmarks = payload.get("bookmarks")
    if not isinstance(raw_bookmarks, list):
        raise DecodeError("Response is missing the 'bookmarks' list")

    bookmarks = []
    for index, raw in enumerate(raw_bookmarks):
        try:
            bookmarks.append(parse_annotated_bookmark(raw))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise DecodeError(f"Malformed bookmark at index {index}: {e!r}") from e

    next_cursor = payload.get("nextCursor")
    if next_cursor is not None and not _is_int(next_cursor):
        raise DecodeError(f"nextCursor must be an integer, got {next_cursor!r}")

    logger.debug(
        "Decoded page of %d bookmarks (nextCursor=%s)", len(bookmarks), next_cursor
    )
    return BookmarkPage(bookmarks=tuple(bookmarks), next_cursor=next_cursor)


def parse_annotated_bookmark(raw: dict) -> AnnotatedBookmark:
    if not isinstance(raw, dict):
        raise TypeError(f"expected an object, got {type(raw).__name__}")
    tags = raw.get("tags", [])
    if not isinstance(tags, list):
        raise TypeError("'tags' must be a list")
    return AnnotatedBookmark(
        bookmark=parse_bookmark(raw["bookmark"]),
        tags=tuple(parse_tag(t) for t in tags),
    )


def parse_bookmark(raw: dict) -> Bookmark:
    if not _is_int(raw["id"]):
        raise TypeError(f"bookmark id must be an integer, got {raw['id']!r}")
    if not _is_int(raw["user_id"]):
        raise TypeError("bookmark user_id must be an integer")
    return Bookmark(
        id=raw["id"],
        url=_require_str(raw, "url"),
        title=_require_str(raw, "title"),
        created_at=_parse_timestamp(raw["created_at"]),
        user_id=raw["user_id"],
        unread=_require_bool(raw, "unread"),
        shared=_require_bool(raw, "shared"),
        description=raw.get("description"),
        notes=raw.get("notes"),
        modified_at=_parse_optional_timestamp(raw.get("modified_at")),
        accessed_at=_parse_optional_timestamp(raw.get("accessed_at")),
        website_title=raw.get("website_title"),
        website_description=raw.get("website_description"),
    )


def parse_tag(raw: dict) -> Tag:
    return Tag(
        name=_require_str(raw, "name"),
        created_at=_parse_timestamp(raw["created_at"]),
    )


def serialize_page(page: BookmarkPage) -> dict:
    """Inverse of parse_list_result, used to persist cached pages."""
    return {
        "bookmarks": [
            {
                "bookmark": _serialize_bookmark(ab.bookmark),
                "tags": [
                    {"name": t.name, "created_at": t.created_at.isoformat()}
                    for t in ab.tags
                ],
            }
            for ab in page.bookmarks
        ],
        "nextCursor": page.next_cursor,
    }


def _serialize_bookmark(b: Bookmark) -> dict:
    return {
        "id": b.id,
        "url": b.url,
        "title": b.title,
        "description": b.description,
        "notes": b.notes,
        "unread": b.unread,
        "shared": b.shared,
        "created_at": b.created_at.isoformat(),
        "modified_at": b.modified_at.isoformat() if b.modified_at else None,
        "accessed_at": b.accessed_at.isoformat() if b.accessed_at else None,
        "user_id": b.user_id,
        "website_title": b.website_title,
        "website_description": b.website_description,
    }


def _is_int(value: Any) -> bool:
    # bool is an int subclass; JSON true is not a bookmark id
    return isinstance(value, int) and not isinstance(value, bool)


def _require_str(raw: dict, key: str) -> str:
    value = raw[key]
    if not isinstance(value, str):
        raise TypeError(f"'{key}' must be a string, got {type(value).__name__}")
    return value


def _require_bool(raw: dict, key: str) -> bool:
    value = raw[key]
    if not isinstance(value, bool):
        raise TypeError(f"'{key}' must be a boolean, got {type(value).__name__}")
    return value


def _parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str):
        raise TypeError(f"timestamp must be a string, got {value!r}")
    # fromisoformat accepts a trailing "Z" from Python 3.11 on
    return datetime.fromisoformat(value)


def _parse_optional_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return _parse_timestamp(value)
