"""Tag filter sets and their URL path token.

A tag filter is carried in a single path segment: the tag names joined by a
space, which the URL layer percent-encodes as %20:

    /tag/work%20urgent  ->  TagSet(["work", "urgent"])

The same set is used two ways: as the active filter of the current listing,
and as the starting point for "also filter by this tag" links. The active set
is always passed explicitly; nothing here keeps ambient state.
"""

import re
from collections.abc import Iterable, Iterator, Mapping
from urllib.parse import quote

from .errors import InvalidTagError

TAG_ROUTE_PREFIX = "/tag/"

# Segments sometimes arrive already decoded and sometimes not.
_SEPARATOR = re.compile(r" |%20")


class TagSet(Mapping[str, bool]):
    """An immutable set of tag names, viewed as a name -> present mapping.

    Iteration follows insertion order so generated links are stable, but
    equality ignores order.
    """

    __slots__ = ("_tags",)

    def __init__(self, tags: Iterable[str] | Mapping[str, bool] = ()):
        if isinstance(tags, Mapping):
            names = [name for name, present in tags.items() if present]
        else:
            names = list(tags)
        self._tags: dict[str, bool] = dict.fromkeys(names, True)

    def __getitem__(self, name: str) -> bool:
        return self._tags[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tags)

    def __len__(self) -> int:
        return len(self._tags)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TagSet):
            return self._tags.keys() == other._tags.keys()
        if isinstance(other, Mapping):
            return self == TagSet(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(frozenset(self._tags))

    def __repr__(self) -> str:
        return f"TagSet({list(self._tags)!r})"

    @property
    def names(self) -> list[str]:
        return list(self._tags)


def encode_tags(tag_set: Iterable[str]) -> str:
    """Join tag names into one path token, in the set's iteration order."""
    names = list(tag_set)
    for name in names:
        _check_encodable(name)
    return " ".join(names)


def decode_tags(segment: str) -> TagSet:
    """Split a path token back into a TagSet.

    An empty segment is the empty set. Any other empty name (a doubled or
    trailing separator) is rejected rather than kept as a "" member.
    """
    if segment == "":
        return TagSet()
    names = _SEPARATOR.split(segment)
    if "" in names:
        raise InvalidTagError(f"Empty tag name in filter {segment!r}")
    return TagSet(names)


def add_tag(tag_set: TagSet, name: str) -> TagSet:
    """Return a copy of tag_set that also contains name."""
    _check_name(name)
    if name in tag_set:
        return tag_set
    return TagSet([*tag_set, name])


def remove_tag(tag_set: TagSet, name: str) -> TagSet:
    return TagSet([n for n in tag_set if n != name])


def toggle_tag(tag_set: TagSet, name: str) -> TagSet:
    if name in tag_set:
        return remove_tag(tag_set, name)
    return add_tag(tag_set, name)


def tag_path(tag_set: TagSet) -> str:
    """Front-end route for a tag filter; the empty filter is the full listing."""
    if not tag_set:
        return "/"
    return TAG_ROUTE_PREFIX + quote(encode_tags(tag_set), safe="")


def tag_link(active: TagSet, name: str) -> str:
    """Destination of the link on a tag: the active filter narrowed by name."""
    return tag_path(add_tag(active, name))


def _check_name(name: str) -> None:
    if name == "":
        raise InvalidTagError("Tag name must not be empty")


def _check_encodable(name: str) -> None:
    _check_name(name)
    if " " in name or "/" in name or "%20" in name:
        raise InvalidTagError(
            f"Tag name {name!r} cannot be used in a filter "
            "(contains a space or '/')"
        )
