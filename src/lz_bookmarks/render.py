"""Render a bookmark listing as markdown.

Each tag is rendered as a link that narrows the current filter by that tag.
The active filter is passed in; the renderer never works it out itself.
"""

from urllib.parse import urlparse

from .models import AnnotatedBookmark
from .tags import TagSet, tag_link


def render_listing(
    bookmarks: list[AnnotatedBookmark],
    active: TagSet,
    title: str = "",
    has_next_page: bool = False,
) -> str:
    """Render a listing, in the order given (newest first from the API)."""
    lines: list[str] = []
    if title:
        lines.append(f"# {title}")
        lines.append("")

    if not bookmarks:
        lines.append("*No bookmarks found.*")
        return "\n".join(lines) + "\n"

    for ab in bookmarks:
        lines.append(render_bookmark(ab, active))
        lines.append("")

    lines.append("*More bookmarks available.*" if has_next_page else "*Nothing more to load.*")
    return "\n".join(lines) + "\n"


def render_bookmark(ab: AnnotatedBookmark, active: TagSet) -> str:
    """Render a single bookmark entry."""
    b = ab.bookmark
    lines: list[str] = []

    markers = []
    if b.unread:
        markers.append("unread")
    if b.shared:
        markers.append("shared")
    suffix = f" ({', '.join(markers)})" if markers else ""
    lines.append(f"### [{b.title or _shorten_url(b.url)}]({b.url}){suffix}")

    if b.description:
        lines.append("")
        lines.append(b.description)

    if b.notes:
        lines.append("")
        for note_line in b.notes.strip().split("\n"):
            lines.append(f"> {note_line}")

    lines.append("")
    lines.append(f"- **Date:** {b.created_at.strftime('%Y-%m-%d %H:%M')}")
    lines.append(f"- **ID:** {b.id}")
    if ab.tags:
        links = " ".join(
            f"[#{name}]({tag_link(active, name)})" for name in ab.tag_names
        )
        lines.append(f"- **Tags:** {links}")

    lines.append("")
    lines.append("---")
    return "\n".join(lines)


def _shorten_url(url: str) -> str:
    """Shorten a URL for display (domain + truncated path)."""
    parsed = urlparse(url)
    display = parsed.netloc + parsed.path
    if len(display) > 60:
        display = display[:57] + "..."
    return display
