"""Cache-aware queries over the bookmarks API.

A QueryClient owns one QueryCache, the table of in-flight fetches (at most
one per key) and the pagination state of every infinite query. Consumers get
Query / InfiniteQuery objects and read their state at any time; fetches run
as asyncio tasks, so starting one never blocks the caller.

    async with BookmarksClient(base_url) as api:
        queries = QueryClient(api)
        listing = queries.use_infinite_fetch("list_bookmarks")
        await listing.fetch()
        while listing.has_next_page:
            await listing.fetch_next_page()

Cancellation goes through CancelToken: when the last observer of a key
closes, or an infinite query switches filters, the in-flight fetch for the
old key is cancelled and its result is dropped without touching the cache.
"""

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .cache import ERROR, LOADING, SUCCESS, CacheEntry, QueryCache, QueryKey, make_query_key
from .client import BookmarksClient, CancelToken, FetchError, FetchResult
from .errors import PaginationIntegrityError
from .models import AnnotatedBookmark, BookmarkPage, InfiniteData
from .pagination import PaginationAggregator, PaginationState
from .schema import Operation, get_operation

logger = logging.getLogger(__name__)

NETWORK_MODES = ("online", "offline_first", "always")


def default_retry_delay(attempt: int) -> float:
    """Exponential backoff: 1s, 2s, 4s, ... capped at 30s."""
    return min(2.0**attempt, 30.0)


@dataclass(frozen=True)
class QueryOptions:
    retry: int = 3  # extra attempts after the first failure
    retry_delay: Callable[[int], float] = default_retry_delay
    stale_time: float = 0.0  # seconds a result counts as fresh
    refetch_on_focus: bool = True
    refetch_on_reconnect: bool = True
    network_mode: str = "online"

    def __post_init__(self):
        if self.network_mode not in NETWORK_MODES:
            raise ValueError(
                f"network_mode must be one of {', '.join(NETWORK_MODES)}, "
                f"got {self.network_mode!r}"
            )
        if self.retry < 0:
            raise ValueError("retry must be >= 0")


@dataclass
class _InFlight:
    task: asyncio.Task
    token: CancelToken
    kind: str  # "fetch" | "first" | "next" | "refetch"


Listener = Callable[["Query"], None]


class QueryClient:
    """Binds declared operations to cached, revalidating queries."""

    def __init__(
        self,
        client: BookmarksClient,
        cache: QueryCache | None = None,
        options: QueryOptions | None = None,
    ):
        self.client = client
        self.cache = cache if cache is not None else QueryCache()
        self.options = options or QueryOptions()
        self._inflight: dict[QueryKey, _InFlight] = {}
        self._collections: dict[QueryKey, PaginationAggregator] = {}
        self._active: list[Query] = []
        self._online = asyncio.Event()
        self._online.set()

    def use_fetch(
        self,
        operation_id: str,
        params: Mapping[str, Any] | None = None,
        options: QueryOptions | None = None,
    ) -> "Query":
        return Query(self, get_operation(operation_id), params, options)

    def use_infinite_fetch(
        self,
        operation_id: str,
        params: Mapping[str, Any] | None = None,
        options: QueryOptions | None = None,
    ) -> "InfiniteQuery":
        return InfiniteQuery(self, get_operation(operation_id), params, options)

    @property
    def online(self) -> bool:
        return self._online.is_set()

    def set_online(self, online: bool) -> list[asyncio.Task]:
        """Record connectivity; coming back online revalidates stale queries."""
        if online == self.online:
            return []
        if not online:
            logger.info("Network went offline; new fetches will wait")
            self._online.clear()
            return []
        logger.info("Network is back online")
        self._online.set()
        return self._revalidate(lambda q: q.options.refetch_on_reconnect)

    def focus(self) -> list[asyncio.Task]:
        """The consumer regained focus: refetch stale queries that opted in."""
        return self._revalidate(lambda q: q.options.refetch_on_focus)

    def is_fetching(self, key: QueryKey) -> bool:
        return key in self._inflight

    def cancel(self, key: QueryKey) -> None:
        """Cancel the in-flight fetch for key; its result will be ignored."""
        inflight = self._inflight.pop(key, None)
        if inflight is not None:
            logger.debug("Cancelling %s fetch for %s", inflight.kind, key)
            inflight.token.cancel()

    def invalidate(self, key: QueryKey | None = None) -> None:
        """Forget cached results (one key or all) so the next start refetches."""
        self.cache.invalidate(key)
        if key is None:
            self._collections = {
                k: agg for k, agg in self._collections.items() if self.is_fetching(k)
            }
        elif not self.is_fetching(key):
            self._collections.pop(key, None)

    async def aclose(self) -> None:
        """Cancel every in-flight fetch and wait for the tasks to finish."""
        inflight = list(self._inflight.values())
        for key in list(self._inflight):
            self.cancel(key)
        if inflight:
            await asyncio.gather(*(f.task for f in inflight), return_exceptions=True)

    # Internals used by Query and InfiniteQuery

    def _attach(self, query: "Query") -> None:
        if query not in self._active:
            self._active.append(query)

    def _detach(self, query: "Query") -> None:
        if query in self._active:
            self._active.remove(query)
        if self.cache.observer_count(query.key) == 0:
            self.cancel(query.key)
            self._collections.pop(query.key, None)

    def _revalidate(self, wanted: Callable[["Query"], bool]) -> list[asyncio.Task]:
        tasks = []
        seen: set[QueryKey] = set()
        for query in list(self._active):
            if query.key in seen or not wanted(query):
                continue
            seen.add(query.key)
            if query.entry.is_stale(query.options.stale_time):
                task = query._revalidate()
                if task is not None:
                    tasks.append(task)
        return tasks

    def _spawn(self, key: QueryKey, kind: str, run) -> asyncio.Task:
        token = CancelToken()
        task = asyncio.create_task(run(token))
        # Tasks from focus() and set_online() may never be awaited
        task.add_done_callback(_log_task_failure)
        self._inflight[key] = _InFlight(task=task, token=token, kind=kind)
        return task

    def _clear_inflight(self, key: QueryKey, token: CancelToken) -> None:
        inflight = self._inflight.get(key)
        if inflight is not None and inflight.token is token:
            del self._inflight[key]

    def _record_failure(self, key: QueryKey, error: Exception) -> None:
        entry = self.cache.get(key) or CacheEntry()
        self.cache.put(key, entry.with_error(error))

    def _aggregator(self, key: QueryKey) -> PaginationAggregator:
        agg = self._collections.get(key)
        if agg is None:
            entry = self.cache.get(key)
            pages = entry.data.pages if entry and isinstance(entry.data, InfiniteData) else ()
            agg = self._collections[key] = PaginationAggregator(pages)
        return agg

    async def _fetch_with_retry(
        self,
        operation: Operation,
        params: Mapping[str, Any],
        token: CancelToken,
        options: QueryOptions,
    ) -> FetchResult:
        attempt = 0
        while True:
            if self._must_wait_for_network(options, attempt):
                logger.info("Offline; %s is waiting for the network", operation.id)
                await _first_of(self._online.wait(), token.wait())
            if token.cancelled:
                return _cancelled_result(operation)

            result = await self.client.fetch(operation, params, signal=token)
            if result.ok or result.cancelled or attempt >= options.retry:
                return result

            delay = options.retry_delay(attempt)
            attempt += 1
            logger.warning(
                "%s failed (%s); retry %d of %d in %.1fs",
                operation.id,
                result.error.message,
                attempt,
                options.retry,
                delay,
            )
            try:
                await asyncio.wait_for(token.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    def _must_wait_for_network(self, options: QueryOptions, attempt: int) -> bool:
        if self.online or options.network_mode == "always":
            return False
        if options.network_mode == "offline_first":
            return attempt > 0
        return True

    def _start_fetch(self, query: "Query") -> asyncio.Task:
        inflight = self._inflight.get(query.key)
        if inflight is not None:
            return inflight.task

        key, operation, params, options = query.key, query.operation, query.params, query.options

        async def run(token: CancelToken) -> None:
            try:
                result = await self._fetch_with_retry(operation, params, token, options)
            except Exception as e:
                logger.exception("%s failed unexpectedly", operation.id)
                if not token.cancelled:
                    self._record_failure(key, e)
                return
            finally:
                self._clear_inflight(key, token)
            if token.cancelled or result.cancelled:
                return
            entry = self.cache.get(key) or CacheEntry()
            if result.ok:
                self.cache.put(key, entry.with_data(result.data))
            else:
                self.cache.put(key, entry.with_error(result.error.to_exception()))

        return self._spawn(key, "fetch", run)

    def _start_first_page(self, query: "InfiniteQuery") -> asyncio.Task | None:
        inflight = self._inflight.get(query.key)
        if inflight is not None:
            return inflight.task
        agg = self._aggregator(query.key)
        if agg.state is not PaginationState.IDLE:
            return None
        agg.begin_first()
        return self._spawn(query.key, "first", self._page_runner(query, agg, None))

    def _start_next_page(self, query: "InfiniteQuery") -> asyncio.Task | None:
        # Dropped, not queued, while anything is in flight for this key
        if query.key in self._inflight:
            return None
        agg = self._aggregator(query.key)
        cursor = agg.begin_next()
        if cursor is None:
            return None
        return self._spawn(query.key, "next", self._page_runner(query, agg, cursor))

    def _page_runner(self, query: "InfiniteQuery", agg: PaginationAggregator, cursor):
        key, operation, options = query.key, query.operation, query.options
        params = {**query.params, "cursor": cursor}

        async def run(token: CancelToken) -> None:
            try:
                result = await self._fetch_with_retry(operation, params, token, options)
            except Exception as e:
                logger.exception("%s failed unexpectedly", operation.id)
                agg.fail(e)
                if not token.cancelled:
                    self._record_failure(key, e)
                return
            finally:
                self._clear_inflight(key, token)
            if token.cancelled or result.cancelled:
                agg.abort()
                return
            entry = self.cache.get(key) or CacheEntry()
            if not result.ok:
                error = result.error.to_exception()
                agg.fail(error)
                self.cache.put(key, entry.with_error(error))
                return
            try:
                agg.accept(result.data)
            except PaginationIntegrityError as e:
                self.cache.put(key, entry.with_error(e))
                return
            self.cache.put(key, entry.with_data(agg.snapshot()))

        return run

    def _start_refetch_pages(self, query: "InfiniteQuery") -> asyncio.Task | None:
        """Re-fetch as many pages as are held, then swap them in at once."""
        inflight = self._inflight.get(query.key)
        if inflight is not None:
            return inflight.task
        agg = self._aggregator(query.key)
        if agg.state is PaginationState.IDLE:
            return self._start_first_page(query)

        key, operation, options = query.key, query.operation, query.options
        page_count = max(len(agg.pages), 1)

        async def run(token: CancelToken) -> None:
            fresh = PaginationAggregator()
            fresh.begin_first()
            cursor = None
            error: Exception | None = None
            try:
                for _ in range(page_count):
                    params = {**query.params, "cursor": cursor}
                    result = await self._fetch_with_retry(operation, params, token, options)
                    if token.cancelled or result.cancelled:
                        return
                    if not result.ok:
                        error = result.error.to_exception()
                        break
                    try:
                        fresh.accept(result.data)
                    except PaginationIntegrityError as e:
                        error = e
                        break
                    cursor = fresh.begin_next()
                    if cursor is None:
                        break
            except Exception as e:
                logger.exception("%s refetch failed unexpectedly", operation.id)
                error = e
            finally:
                self._clear_inflight(key, token)
            if token.cancelled:
                return

            entry = self.cache.get(key) or CacheEntry()
            if error is not None:
                # Held pages stay as they were
                self.cache.put(key, entry.with_error(error))
                return
            fresh.abort()
            if self._collections.get(key) is agg:
                self._collections[key] = fresh
            self.cache.put(key, entry.with_data(fresh.snapshot()))

        return self._spawn(key, "refetch", run)


class Query:
    """Observed state of one single-request query."""

    kind = "fetch"

    def __init__(
        self,
        client: QueryClient,
        operation: Operation,
        params: Mapping[str, Any] | None = None,
        options: QueryOptions | None = None,
    ):
        operation.validate_params(params)
        self._client = client
        self.operation = operation
        self.params: dict[str, Any] = dict(params or {})
        self.options = options or client.options
        self.key = make_query_key(operation.id, self.params, kind=self.kind)
        self._listeners: list[Listener] = []
        self._unsubscribe: Callable[[], None] | None = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.operation.id} {self.key[2]} {self.status}>"

    @property
    def entry(self) -> CacheEntry:
        return self._client.cache.get(self.key) or CacheEntry()

    @property
    def status(self) -> str:
        return self.entry.status

    @property
    def data(self) -> Any:
        return self.entry.data

    @property
    def error(self) -> Exception | None:
        return self.entry.error

    @property
    def is_loading(self) -> bool:
        return self.status == LOADING

    @property
    def is_success(self) -> bool:
        return self.status == SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status == ERROR

    @property
    def is_fetching(self) -> bool:
        return self._client.is_fetching(self.key)

    @property
    def is_observing(self) -> bool:
        return self._unsubscribe is not None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call listener(query) after every cache write for this query's key."""
        self._observe()
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def start(self) -> asyncio.Task | None:
        """Begin observing; fetch in the background if there is no fresh data."""
        self._observe()
        if self.entry.is_stale(self.options.stale_time):
            return self._revalidate()
        return None

    async def fetch(self) -> "Query":
        """Start and wait for the resulting fetch, if one was needed."""
        task = self.start()
        if task is not None:
            await task
        return self

    async def refetch(self) -> "Query":
        """Fetch again regardless of freshness and wait for the result."""
        self._observe()
        task = self._revalidate()
        if task is not None:
            await task
        return self

    def close(self) -> None:
        """Stop observing. The last observer of a key cancels its fetch."""
        if self._unsubscribe is None:
            return
        self._unsubscribe()
        self._unsubscribe = None
        self._listeners.clear()
        self._client._detach(self)

    def _revalidate(self) -> asyncio.Task | None:
        return self._client._start_fetch(self)

    def _observe(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._client.cache.subscribe(self.key, self._notify)
            self._client._attach(self)

    def _notify(self, entry: CacheEntry) -> None:
        for listener in list(self._listeners):
            listener(self)


class InfiniteQuery(Query):
    """A query over a cursor-paginated listing that grows page by page."""

    kind = "infinite"

    def __init__(
        self,
        client: QueryClient,
        operation: Operation,
        params: Mapping[str, Any] | None = None,
        options: QueryOptions | None = None,
    ):
        if not operation.paginated:
            raise ValueError(f"{operation.id} is not a paginated operation")
        params = {k: v for k, v in (params or {}).items() if k != "cursor"}
        super().__init__(client, operation, params, options)

    @property
    def data(self) -> InfiniteData | None:
        return self.entry.data

    @property
    def pages(self) -> tuple[BookmarkPage, ...]:
        data = self.data
        return data.pages if data is not None else ()

    @property
    def bookmarks(self) -> list[AnnotatedBookmark]:
        """Every fetched bookmark, newest to oldest, in one sequence."""
        data = self.data
        return data.bookmarks if data is not None else []

    @property
    def has_next_page(self) -> bool:
        data = self.data
        return data is not None and data.next_cursor is not None

    @property
    def is_fetching_next_page(self) -> bool:
        inflight = self._client._inflight.get(self.key)
        return inflight is not None and inflight.kind == "next"

    def start(self) -> asyncio.Task | None:
        self._observe()
        agg = self._client._aggregator(self.key)
        if agg.state is PaginationState.IDLE:
            return self._client._start_first_page(self)
        if self.entry.is_stale(self.options.stale_time):
            return self._client._start_refetch_pages(self)
        return None

    async def fetch_next_page(self) -> "InfiniteQuery":
        """Fetch the page after the last one held.

        Does nothing when a fetch is already running for this listing or the
        last page had no next cursor.
        """
        self._observe()
        task = self._client._start_next_page(self)
        if task is not None:
            await task
        return self

    def set_params(self, params: Mapping[str, Any] | None) -> asyncio.Task | None:
        """Switch to another filter; the old listing's pages are let go."""
        params = {k: v for k, v in (params or {}).items() if k != "cursor"}
        self.operation.validate_params(params)
        key = make_query_key(self.operation.id, params, kind=self.kind)
        if key == self.key:
            return None
        listeners = list(self._listeners)
        was_observing = self.is_observing
        self.close()
        self.params = params
        self.key = key
        self._listeners = listeners
        if was_observing:
            return self.start()
        return None

    def _revalidate(self) -> asyncio.Task | None:
        return self._client._start_refetch_pages(self)


def _cancelled_result(operation: Operation) -> FetchResult:
    return FetchResult(
        error=FetchError(kind="cancelled", message=f"{operation.id} was cancelled")
    )


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("Query task failed: %r", error, exc_info=error)


async def _first_of(*aws) -> None:
    """Wait until any of aws finishes, cancelling the rest."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
