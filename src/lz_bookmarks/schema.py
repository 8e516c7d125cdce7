"""Declared operations of the lz bookmarks API.

Each operation is looked up by id in a fixed table instead of building
method names at runtime; the table records everything the fetch client needs
to turn (operation, params) into a request and decode its response.
"""

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

from .errors import MissingParameterError, UnknownOperationError, UnknownParameterError
from .parser import parse_list_result

_PLACEHOLDER = re.compile(r"\{(\w+)\}")

# Query parameters of cursor-paginated listings
PAGINATION_PARAMS = ("cursor", "perPage")


@dataclass(frozen=True)
class Operation:
    id: str
    method: str  # "GET" | "POST" | ...
    path: str  # template, e.g. "/bookmarks/tagged/{tag}"
    decode: Callable[[Any], Any]
    query_params: tuple[str, ...] = ()
    paginated: bool = False
    summary: str = ""
    path_params: tuple[str, ...] = field(init=False)

    def __post_init__(self):
        object.__setattr__(
            self, "path_params", tuple(_PLACEHOLDER.findall(self.path))
        )

    def validate_params(self, params: Mapping[str, Any] | None) -> None:
        """Check params against the template and declared query parameters."""
        params = params or {}
        for name in self.path_params:
            value = params.get(name)
            if value is None or str(value) == "":
                raise MissingParameterError(
                    f"{self.id} requires a non-empty '{name}' parameter"
                )
        allowed = set(self.path_params) | set(self.query_params)
        unknown = sorted(set(params) - allowed)
        if unknown:
            raise UnknownParameterError(
                f"{self.id} does not accept parameter(s): {', '.join(unknown)}"
            )

    def render_path(self, params: Mapping[str, Any] | None) -> str:
        """Substitute placeholders with percent-encoded parameter values."""
        self.validate_params(params)
        params = params or {}
        return _PLACEHOLDER.sub(
            lambda m: quote(str(params[m.group(1)]), safe=""), self.path
        )

    def query(self, params: Mapping[str, Any] | None) -> dict[str, Any]:
        """Query-string portion of params, without unset values."""
        params = params or {}
        return {
            name: params[name]
            for name in self.query_params
            if params.get(name) is not None
        }


LIST_BOOKMARKS = Operation(
    id="list_bookmarks",
    method="GET",
    path="/bookmarks",
    decode=parse_list_result,
    query_params=PAGINATION_PARAMS,
    paginated=True,
    summary="List the user's bookmarks, newest to oldest.",
)

LIST_BOOKMARKS_WITH_TAG = Operation(
    id="list_bookmarks_with_tag",
    method="GET",
    path="/bookmarks/tagged/{tag}",
    decode=parse_list_result,
    query_params=PAGINATION_PARAMS,
    paginated=True,
    summary="List bookmarks carrying every tag in the filter, newest to oldest.",
)

OPERATIONS: dict[str, Operation] = {
    op.id: op for op in (LIST_BOOKMARKS, LIST_BOOKMARKS_WITH_TAG)
}


def get_operation(operation_id: str) -> Operation:
    try:
        return OPERATIONS[operation_id]
    except KeyError:
        raise UnknownOperationError(f"Unknown operation: {operation_id}") from None


def find_operation(method: str, path: str) -> Operation:
    """Look an operation up by method and path template, e.g. ("get", "/bookmarks")."""
    for op in OPERATIONS.values():
        if op.method == method.upper() and op.path == path:
            return op
    raise UnknownOperationError(f"No operation for {method.upper()} {path}")
