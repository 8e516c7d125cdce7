"""Map front-end routes to listing operations.

Two routes exist:
    /             all bookmarks        -> list_bookmarks
    /tag/<token>  bookmarks by tags    -> list_bookmarks_with_tag
"""

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote

from .errors import MissingParameterError, RouteNotFoundError
from .tags import TAG_ROUTE_PREFIX, TagSet, decode_tags, encode_tags


@dataclass(frozen=True)
class Route:
    operation_id: str
    params: dict[str, Any] = field(default_factory=dict)
    active_tags: TagSet = field(default_factory=TagSet)

    @property
    def title(self) -> str:
        if not self.active_tags:
            return "All bookmarks"
        return "Bookmarks tagged " + ", ".join(f"#{t}" for t in self.active_tags)


def resolve_route(path: str) -> Route:
    """Resolve a route path into an operation, its params and the active tags."""
    path = path or "/"
    if path == "/":
        return Route(operation_id="list_bookmarks")

    if path.rstrip("/") == TAG_ROUTE_PREFIX.rstrip("/") or path.startswith(TAG_ROUTE_PREFIX):
        token = path[len(TAG_ROUTE_PREFIX):] if path.startswith(TAG_ROUTE_PREFIX) else ""
        token, _, rest = token.partition("/")
        if rest:
            raise RouteNotFoundError(f"No listing for route {path!r}")
        token = unquote(token)
        if not token:
            raise MissingParameterError("A tag listing needs at least one tag")
        active = decode_tags(token)
        # Normalised so equivalent tokens share a cache key
        return Route(
            operation_id="list_bookmarks_with_tag",
            params={"tag": encode_tags(active)},
            active_tags=active,
        )

    raise RouteNotFoundError(f"No listing for route {path!r}")
