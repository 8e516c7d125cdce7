"""HTTP client for the lz bookmarks API.

One call to `fetch` is one HTTP request for one declared operation (see
schema.py). Failures never escape as exceptions: the caller gets a
FetchResult with either decoded data or a FetchError describing what went
wrong, and decides what to raise. Retrying is the query binding's job.
"""

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import httpx

from .errors import DecodeError, FetchCancelledError, LzError, TransportError
from .models import AnnotatedBookmark
from .pagination import PaginationAggregator
from .schema import Operation

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 30.0


class CancelToken:
    """Cancellation signal carried by a single request."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class FetchError:
    kind: str  # "http" | "network" | "decode" | "cancelled"
    message: str
    status_code: int | None = None
    payload: Any = None

    def to_exception(self) -> LzError:
        if self.kind == "cancelled":
            return FetchCancelledError(self.message)
        if self.kind == "decode":
            return DecodeError(self.message, status_code=self.status_code)
        return TransportError(self.message, status_code=self.status_code)


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    """Outcome of one request: exactly one of data / error is set."""

    data: T | None = None
    error: FetchError | None = None
    status_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def cancelled(self) -> bool:
        return self.error is not None and self.error.kind == "cancelled"

    def unwrap(self) -> T:
        """Return data, or raise the exception matching the error."""
        if self.error is not None:
            raise self.error.to_exception()
        return self.data


class BookmarksClient:
    """Async client for the lz bookmarks API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        per_page: int | None = None,
        headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._per_page = per_page
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "accept": "application/json",
                "User-Agent": "lz-bookmarks",
                **(headers or {}),
            },
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    @property
    def base_url(self) -> httpx.URL:
        return self._client.base_url

    def build_request(
        self,
        operation: Operation,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
    ) -> httpx.Request:
        """Build the request for operation; raises on missing path values."""
        params = dict(params or {})
        if operation.paginated and self._per_page and params.get("perPage") is None:
            params["perPage"] = self._per_page

        path = operation.render_path(params)
        return self._client.build_request(
            operation.method,
            path.lstrip("/"),
            params=operation.query(params) or None,
            json=body,
        )

    async def fetch(
        self,
        operation: Operation,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
        signal: CancelToken | None = None,
    ) -> FetchResult:
        """Perform one request for operation and decode its response.

        Invalid params (a missing path value, an undeclared parameter) are
        caller bugs and raise immediately; everything that can go wrong on
        the wire comes back as FetchResult.error.
        """
        request = self.build_request(operation, params, body)

        if signal is not None and signal.cancelled:
            return _cancelled(operation)

        logger.debug("%s %s", request.method, request.url)
        try:
            response = await self._send(request, signal)
        except httpx.HTTPError as e:
            logger.warning("%s failed: %s", operation.id, e)
            return FetchResult(
                error=FetchError(kind="network", message=f"Request failed: {e}")
            )
        if response is None:
            logger.debug("%s cancelled", operation.id)
            return _cancelled(operation)

        if not response.is_success:
            return FetchResult(
                error=_http_error(response), status_code=response.status_code
            )

        try:
            data = operation.decode(response.json())
        except (DecodeError, ValueError) as e:
            # ValueError covers a body that is not JSON at all
            logger.warning("%s returned an undecodable body: %s", operation.id, e)
            return FetchResult(
                error=FetchError(
                    kind="decode",
                    message=f"Could not decode {operation.id} response: {e}",
                    status_code=response.status_code,
                ),
                status_code=response.status_code,
            )
        return FetchResult(data=data, status_code=response.status_code)

    async def fetch_all(
        self,
        operation: Operation,
        params: Mapping[str, Any] | None = None,
        max_pages: int = 50,
    ) -> list[AnnotatedBookmark]:
        """Follow nextCursor until the listing is exhausted or max_pages is hit.

        Raises the first error met; ids are checked the same way the
        infinite query checks them.
        """
        pages = PaginationAggregator()
        pages.begin_first()
        cursor: int | None = None

        for page_num in range(max_pages):
            logger.info("Fetching bookmarks page %d...", page_num + 1)
            page_params = {**(params or {}), "cursor": cursor}
            result = await self.fetch(operation, page_params)
            if not result.ok:
                pages.fail(result.error.to_exception())
                raise pages.error
            pages.accept(result.data)
            logger.info(
                "Fetched %d bookmarks (total: %d)",
                len(result.data.bookmarks),
                len(pages.bookmarks),
            )

            cursor = pages.begin_next()
            if cursor is None:
                logger.info("No more bookmarks. Pagination complete.")
                break

        return pages.bookmarks

    async def _send(
        self, request: httpx.Request, signal: CancelToken | None
    ) -> httpx.Response | None:
        if signal is None:
            return await self._client.send(request)

        sending = asyncio.ensure_future(self._client.send(request))
        waiting = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait(
                {sending, waiting}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            sending.cancel()
            raise
        finally:
            waiting.cancel()
        if not sending.done():
            sending.cancel()
            return None
        if signal.cancelled:
            # Finished and cancelled in the same tick: the caller asked to
            # ignore it.
            return None
        return sending.result()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()


def _cancelled(operation: Operation) -> FetchResult:
    return FetchResult(
        error=FetchError(kind="cancelled", message=f"{operation.id} was cancelled")
    )


def _http_error(response: httpx.Response) -> FetchError:
    status = response.status_code
    payload = None
    server_message = ""
    try:
        payload = response.json()
    except ValueError:
        payload = response.text or None
    if isinstance(payload, dict):
        server_message = str(payload.get("error_message") or "")

    if status in (401, 403):
        message = (
            "Authentication failed. The API refused the request; check that "
            "the base URL points at a server you are signed in to."
        )
    elif status == 404:
        message = "Not found (404). Check the API base URL in your config."
    elif status == 429:
        retry_after = response.headers.get("retry-after")
        message = "Rate limited by the server."
        if retry_after:
            message += f" Retry in {retry_after}s."
    else:
        message = f"HTTP error {status}"

    if server_message:
        message = f"{message} Server said: {server_message}"
    logger.warning("Request to %s failed: %s", response.request.url, message)
    return FetchError(kind="http", message=message, status_code=status, payload=payload)
