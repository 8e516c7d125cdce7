"""Exception hierarchy for the bookmarks client.

Everything raised on purpose by this package derives from LzError so callers
(the CLI in particular) can report failures without catching unrelated bugs.
"""


class LzError(Exception):
    """Base class for all errors raised by lz_bookmarks."""


class TransportError(LzError):
    """A request could not complete or the server refused it."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DecodeError(TransportError):
    """A response body did not match the operation's declared shape."""


class FetchCancelledError(LzError):
    """The request was abandoned through its cancel token."""


class PaginationIntegrityError(LzError):
    """Bookmark ids across pages were repeated or not strictly decreasing."""

    def __init__(self, message: str, bookmark_id: int | None = None):
        super().__init__(message)
        self.bookmark_id = bookmark_id


class InvalidTagError(LzError, ValueError):
    """A tag name that cannot be represented in a tag filter token."""


class UnknownOperationError(LzError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class MissingParameterError(LzError, ValueError):
    """A path placeholder had no (or an empty) value."""


class UnknownParameterError(LzError, ValueError):
    pass


class RouteNotFoundError(LzError, ValueError):
    pass
