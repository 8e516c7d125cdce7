"""Shared test fixtures."""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from lz_bookmarks.models import AnnotatedBookmark, Bookmark, BookmarkPage, Tag

FIXTURES_DIR = Path(__file__).parent / "fixtures"

BASE_URL = "http://lz.test/api/v1/"


@pytest.fixture
def page_response() -> dict:
    """Load the sample ListBookmarkResult response (ids 45..43, nextCursor 42)."""
    with open(FIXTURES_DIR / "bookmarks_page.json") as f:
        return json.load(f)


def make_bookmark_json(bookmark_id: int, tags: list[str] | None = None) -> dict:
    return {
        "bookmark": {
            "id": bookmark_id,
            "url": f"https://example.com/{bookmark_id}",
            "title": f"Bookmark {bookmark_id}",
            "unread": False,
            "shared": False,
            "created_at": "2025-02-10T18:30:00Z",
            "user_id": 1,
        },
        "tags": [
            {"name": name, "created_at": "2024-01-01T00:00:00Z"}
            for name in (tags or [])
        ],
    }


def make_page_json(ids: list[int], next_cursor: int | None) -> dict:
    return {
        "bookmarks": [make_bookmark_json(i) for i in ids],
        "nextCursor": next_cursor,
    }


def make_page(ids: list[int], next_cursor: int | None = None) -> BookmarkPage:
    created = datetime(2025, 2, 10, tzinfo=timezone.utc)
    return BookmarkPage(
        bookmarks=tuple(
            AnnotatedBookmark(
                bookmark=Bookmark(
                    id=i,
                    url=f"https://example.com/{i}",
                    title=f"Bookmark {i}",
                    created_at=created,
                    user_id=1,
                ),
                tags=(Tag(name="work", created_at=created),),
            )
            for i in ids
        ),
        next_cursor=next_cursor,
    )


class FakeServer:
    """Serves a fixed dataset the way the lz API paginates it.

    Bookmarks are listed newest (highest id) first; `cursor` is inclusive and
    nextCursor is the id of the first bookmark of the following page.
    """

    def __init__(self, ids: list[int], per_page: int = 20):
        self.ids = sorted(ids, reverse=True)
        self.per_page = per_page
        self.requests = []

    def __call__(self, request):
        import httpx

        self.requests.append(request)
        per_page = int(request.url.params.get("perPage", self.per_page))
        cursor = request.url.params.get("cursor")
        remaining = [i for i in self.ids if cursor is None or i <= int(cursor)]
        batch = remaining[: per_page + 1]
        next_cursor = batch[per_page] if len(batch) > per_page else None
        return httpx.Response(200, json=make_page_json(batch[:per_page], next_cursor))
