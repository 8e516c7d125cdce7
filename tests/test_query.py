"""Tests for the cached query binding."""

import asyncio

import httpx
import pytest
import pytest_asyncio
import respx

from conftest import BASE_URL, FakeServer, make_page_json
from lz_bookmarks.cache import QueryCache
from lz_bookmarks.client import BookmarksClient
from lz_bookmarks.errors import (
    DecodeError,
    MissingParameterError,
    PaginationIntegrityError,
    TransportError,
)
from lz_bookmarks.query import QueryClient, QueryOptions

LIST_URL = BASE_URL + "bookmarks"

NO_RETRY = QueryOptions(retry=0)


@pytest_asyncio.fixture
async def api():
    async with BookmarksClient(BASE_URL) as client:
        yield client


@pytest_asyncio.fixture
async def queries(api):
    qc = QueryClient(api, QueryCache(), NO_RETRY)
    yield qc
    await qc.aclose()


def gated(response_json):
    """A side effect that holds every response until the gate opens."""
    gate = asyncio.Event()

    async def respond(request):
        await gate.wait()
        return httpx.Response(200, json=response_json)

    return gate, respond


class TestSinglePageQuery:
    @respx.mock
    @pytest.mark.asyncio
    async def test_loading_then_success(self, queries, page_response):
        respx.get(LIST_URL).mock(return_value=httpx.Response(200, json=page_response))
        query = queries.use_fetch("list_bookmarks")

        assert query.is_loading
        task = query.start()
        assert query.is_fetching
        await task

        assert query.is_success
        assert not query.is_fetching
        assert query.data.ids == [45, 44, 43]

    @respx.mock
    @pytest.mark.asyncio
    async def test_identical_keys_share_one_request(self, queries, page_response):
        route = respx.get(LIST_URL).mock(return_value=httpx.Response(200, json=page_response))
        first = queries.use_fetch("list_bookmarks", {"perPage": 3})
        second = queries.use_fetch("list_bookmarks", {"perPage": 3})
        seen = []
        first.subscribe(lambda q: seen.append("first"))
        second.subscribe(lambda q: seen.append("second"))

        await asyncio.gather(first.fetch(), second.fetch())

        assert route.call_count == 1
        assert first.key == second.key
        assert first.data is second.data
        assert sorted(seen) == ["first", "second"]

    def test_tag_filter_is_part_of_the_key(self):
        queries = QueryClient(BookmarksClient(BASE_URL))
        work = queries.use_fetch("list_bookmarks_with_tag", {"tag": "work"})
        home = queries.use_fetch("list_bookmarks_with_tag", {"tag": "home"})
        assert work.key != home.key

    def test_missing_tag_fails_at_construction(self):
        queries = QueryClient(BookmarksClient(BASE_URL))
        with pytest.raises(MissingParameterError):
            queries.use_fetch("list_bookmarks_with_tag", {"tag": ""})

    @respx.mock
    @pytest.mark.asyncio
    async def test_error_keeps_previous_data(self, queries, page_response):
        respx.get(LIST_URL).mock(
            side_effect=[
                httpx.Response(200, json=page_response),
                httpx.ConnectError("network down"),
            ]
        )
        query = queries.use_fetch("list_bookmarks")
        await query.fetch()
        await query.refetch()

        assert query.is_error
        assert isinstance(query.error, TransportError)
        assert query.data.ids == [45, 44, 43]

    @respx.mock
    @pytest.mark.asyncio
    async def test_fresh_data_is_not_refetched(self, api, page_response):
        route = respx.get(LIST_URL).mock(return_value=httpx.Response(200, json=page_response))
        queries = QueryClient(api, options=QueryOptions(retry=0, stale_time=300))
        query = queries.use_fetch("list_bookmarks")
        await query.fetch()
        assert query.start() is None
        assert route.call_count == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_retry_policy(self, api, page_response):
        route = respx.get(LIST_URL).mock(
            side_effect=[
                httpx.Response(503),
                httpx.Response(503),
                httpx.Response(200, json=page_response),
            ]
        )
        options = QueryOptions(retry=2, retry_delay=lambda attempt: 0)
        query = QueryClient(api, options=options).use_fetch("list_bookmarks")

        await query.fetch()

        assert route.call_count == 3
        assert query.is_success

    @respx.mock
    @pytest.mark.asyncio
    async def test_retries_exhausted(self, api):
        route = respx.get(LIST_URL).mock(return_value=httpx.Response(503))
        options = QueryOptions(retry=1, retry_delay=lambda attempt: 0)
        query = QueryClient(api, options=options).use_fetch("list_bookmarks")

        await query.fetch()

        assert route.call_count == 2
        assert query.is_error

    @respx.mock
    @pytest.mark.asyncio
    async def test_undecodable_body_is_an_error_state(self, queries):
        respx.get(LIST_URL).mock(return_value=httpx.Response(200, json={"items": []}))
        query = queries.use_fetch("list_bookmarks")

        await query.fetch()

        assert query.status == "error"
        assert isinstance(query.error, DecodeError)
        assert not query.is_fetching


class TestCancellation:
    @pytest.mark.asyncio
    async def test_close_before_resolution_leaves_cache_untouched(
        self, queries, page_response
    ):
        gate, respond = gated(page_response)
        query = queries.use_fetch("list_bookmarks")
        updates = []
        query.subscribe(updates.append)

        with respx.mock(assert_all_called=False) as rx:
            rx.get(LIST_URL).mock(side_effect=respond)
            task = query.start()
            await asyncio.sleep(0.01)
            query.close()
            gate.set()
            await task

        assert updates == []
        assert queries.cache.get(query.key) is None
        assert not queries.is_fetching(query.key)

    @respx.mock
    @pytest.mark.asyncio
    async def test_other_observer_keeps_fetch_alive(self, queries, page_response):
        gate, respond = gated(page_response)
        respx.get(LIST_URL).mock(side_effect=respond)
        leaving = queries.use_fetch("list_bookmarks")
        staying = queries.use_fetch("list_bookmarks")

        task = leaving.start()
        staying.start()
        await asyncio.sleep(0.01)
        leaving.close()
        gate.set()
        await task

        assert staying.is_success


class TestInfiniteQuery:
    @respx.mock
    @pytest.mark.asyncio
    async def test_next_page_uses_cursor(self, queries, page_response):
        # page 1 ends with nextCursor 42; page 2 must be requested with it
        route = respx.get(LIST_URL).mock(
            side_effect=[
                httpx.Response(200, json=page_response),
                httpx.Response(200, json=make_page_json([42, 41], None)),
            ]
        )
        listing = queries.use_infinite_fetch("list_bookmarks")

        await listing.fetch()
        assert listing.has_next_page
        await listing.fetch_next_page()

        assert "cursor" not in route.calls[0].request.url.params
        assert route.calls[1].request.url.params["cursor"] == "42"
        assert [ab.bookmark.id for ab in listing.bookmarks] == [45, 44, 43, 42, 41]
        assert len(listing.pages) == 2
        assert not listing.has_next_page

    @respx.mock
    @pytest.mark.asyncio
    async def test_no_next_cursor_means_no_more_pages(self, queries):
        route = respx.get(LIST_URL).mock(
            return_value=httpx.Response(200, json=make_page_json([3, 2, 1], None))
        )
        listing = queries.use_infinite_fetch("list_bookmarks")

        await listing.fetch()
        assert listing.has_next_page is False
        await listing.fetch_next_page()

        assert route.call_count == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_next_page_twice_is_one_request(self, queries):
        server = FakeServer(list(range(1, 10)), per_page=3)
        route = respx.get(LIST_URL).mock(side_effect=server)
        listing = queries.use_infinite_fetch("list_bookmarks", {"perPage": 3})
        await listing.fetch()

        await asyncio.gather(listing.fetch_next_page(), listing.fetch_next_page())

        assert route.call_count == 2
        assert len(listing.pages) == 2

    @respx.mock
    @pytest.mark.asyncio
    async def test_is_fetching_next_page_only_for_next_pages(self, queries):
        gate = asyncio.Event()
        server = FakeServer(list(range(1, 10)), per_page=3)

        async def respond(request):
            await gate.wait()
            return server(request)

        respx.get(LIST_URL).mock(side_effect=respond)
        listing = queries.use_infinite_fetch("list_bookmarks", {"perPage": 3})

        first = listing.start()
        await asyncio.sleep(0.01)
        assert listing.is_fetching
        assert not listing.is_fetching_next_page
        gate.set()
        await first

        gate.clear()
        pending = asyncio.create_task(listing.fetch_next_page())
        await asyncio.sleep(0.01)
        assert listing.is_fetching_next_page
        gate.set()
        await pending
        assert not listing.is_fetching_next_page

    @respx.mock
    @pytest.mark.asyncio
    async def test_pagination_terminates_with_full_dataset(self, queries):
        dataset = list(range(100, 177))
        respx.get(LIST_URL).mock(side_effect=FakeServer(dataset, per_page=10))
        listing = queries.use_infinite_fetch("list_bookmarks", {"perPage": 10})

        await listing.fetch()
        for _ in range(20):
            if not listing.has_next_page:
                break
            await listing.fetch_next_page()

        ids = [ab.bookmark.id for ab in listing.bookmarks]
        assert not listing.has_next_page
        assert len(ids) == len(set(ids))
        assert sorted(ids) == dataset
        assert ids == sorted(ids, reverse=True)

    @respx.mock
    @pytest.mark.asyncio
    async def test_next_page_failure_keeps_pages(self, queries, page_response):
        respx.get(LIST_URL).mock(
            side_effect=[
                httpx.Response(200, json=page_response),
                httpx.ConnectError("network down"),
            ]
        )
        listing = queries.use_infinite_fetch("list_bookmarks")
        await listing.fetch()
        await listing.fetch_next_page()

        assert listing.is_error
        assert [ab.bookmark.id for ab in listing.bookmarks] == [45, 44, 43]
        assert listing.has_next_page

    @respx.mock
    @pytest.mark.asyncio
    async def test_undecodable_first_page_can_be_retried(self, queries, page_response):
        route = respx.get(LIST_URL).mock(
            side_effect=[
                httpx.Response(200, json={"bookmarks": [1]}),
                httpx.Response(200, json=page_response),
            ]
        )
        listing = queries.use_infinite_fetch("list_bookmarks")

        await listing.fetch()
        assert listing.status == "error"
        assert isinstance(listing.error, DecodeError)
        assert not listing.is_fetching

        await listing.fetch()
        assert route.call_count == 2
        assert listing.is_success
        assert [ab.bookmark.id for ab in listing.bookmarks] == [45, 44, 43]

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_an_error_state(self, queries, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(queries.client, "fetch", broken)
        listing = queries.use_infinite_fetch("list_bookmarks")

        await listing.fetch()

        assert listing.is_error
        assert str(listing.error) == "boom"
        assert not listing.is_fetching

    @respx.mock
    @pytest.mark.asyncio
    async def test_overlapping_page_is_an_integrity_error(self, queries, page_response):
        respx.get(LIST_URL).mock(
            side_effect=[
                httpx.Response(200, json=page_response),
                httpx.Response(200, json=make_page_json([43, 42], None)),
            ]
        )
        listing = queries.use_infinite_fetch("list_bookmarks")
        await listing.fetch()
        await listing.fetch_next_page()

        assert isinstance(listing.error, PaginationIntegrityError)
        assert len(listing.pages) == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_refetch_failure_keeps_pages(self, queries, page_response):
        respx.get(LIST_URL).mock(
            side_effect=[
                httpx.Response(200, json=page_response),
                httpx.ConnectError("network down"),
            ]
        )
        listing = queries.use_infinite_fetch("list_bookmarks")
        await listing.fetch()
        await listing.refetch()

        assert listing.is_error
        assert len(listing.bookmarks) == 3

    @respx.mock
    @pytest.mark.asyncio
    async def test_refetch_reloads_held_pages(self, queries):
        server = FakeServer(list(range(1, 10)), per_page=3)
        route = respx.get(LIST_URL).mock(side_effect=server)
        listing = queries.use_infinite_fetch("list_bookmarks", {"perPage": 3})
        await listing.fetch()
        await listing.fetch_next_page()

        server.ids = sorted(range(1, 11), reverse=True)
        await listing.refetch()

        assert route.call_count == 4
        assert [ab.bookmark.id for ab in listing.bookmarks] == [10, 9, 8, 7, 6, 5]

    @pytest.mark.asyncio
    async def test_changing_filter_cancels_and_restarts(self, queries, page_response):
        gate, respond = gated(page_response)
        listing = queries.use_infinite_fetch("list_bookmarks_with_tag", {"tag": "work"})
        old_key = listing.key

        with respx.mock(assert_all_called=False) as rx:
            rx.get(BASE_URL + "bookmarks/tagged/work").mock(side_effect=respond)
            home = rx.get(BASE_URL + "bookmarks/tagged/home").mock(
                return_value=httpx.Response(200, json=make_page_json([9, 8], None))
            )
            listing.start()
            await asyncio.sleep(0.01)
            task = listing.set_params({"tag": "home"})
            gate.set()
            await task
            await asyncio.sleep(0.01)

        assert home.call_count == 1
        assert queries.cache.get(old_key) is None
        assert [ab.bookmark.id for ab in listing.bookmarks] == [9, 8]

    @respx.mock
    @pytest.mark.asyncio
    async def test_two_observers_see_the_same_pages(self, queries, page_response):
        route = respx.get(LIST_URL).mock(return_value=httpx.Response(200, json=page_response))
        a = queries.use_infinite_fetch("list_bookmarks")
        b = queries.use_infinite_fetch("list_bookmarks")

        await asyncio.gather(a.fetch(), b.fetch())

        assert route.call_count == 1
        assert a.pages == b.pages


class TestRevalidation:
    @respx.mock
    @pytest.mark.asyncio
    async def test_focus_refetches_stale_queries(self, queries, page_response):
        route = respx.get(LIST_URL).mock(return_value=httpx.Response(200, json=page_response))
        query = queries.use_fetch("list_bookmarks")
        await query.fetch()

        await asyncio.gather(*queries.focus())

        assert route.call_count == 2

    @respx.mock
    @pytest.mark.asyncio
    async def test_unawaited_focus_failure_is_logged(
        self, queries, page_response, monkeypatch, caplog
    ):
        respx.get(LIST_URL).mock(return_value=httpx.Response(200, json=page_response))
        query = queries.use_fetch("list_bookmarks")
        await query.fetch()

        async def broken(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(queries.client, "fetch", broken)
        queries.focus()
        await asyncio.sleep(0.01)

        assert query.is_error
        assert query.data.ids == [45, 44, 43]
        assert "failed unexpectedly" in caplog.text

    @respx.mock
    @pytest.mark.asyncio
    async def test_focus_respects_opt_out(self, api, page_response):
        route = respx.get(LIST_URL).mock(return_value=httpx.Response(200, json=page_response))
        queries = QueryClient(api, options=QueryOptions(retry=0, refetch_on_focus=False))
        await queries.use_fetch("list_bookmarks").fetch()

        assert queries.focus() == []
        assert route.call_count == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_online_mode_waits_for_network(self, queries, page_response):
        route = respx.get(LIST_URL).mock(return_value=httpx.Response(200, json=page_response))
        queries.set_online(False)
        query = queries.use_fetch("list_bookmarks")

        task = query.start()
        await asyncio.sleep(0.01)
        assert route.call_count == 0
        assert query.is_loading

        queries.set_online(True)
        await task
        assert query.is_success

    @respx.mock
    @pytest.mark.asyncio
    async def test_offline_first_tries_once_and_keeps_cache(self, api, page_response):
        route = respx.get(LIST_URL).mock(
            side_effect=[
                httpx.Response(200, json=page_response),
                httpx.ConnectError("offline"),
            ]
        )
        options = QueryOptions(retry=0, network_mode="offline_first")
        queries = QueryClient(api, options=options)
        query = queries.use_fetch("list_bookmarks")
        await query.fetch()

        queries.set_online(False)
        await query.refetch()

        assert route.call_count == 2
        assert query.data.ids == [45, 44, 43]

    def test_unknown_network_mode(self):
        with pytest.raises(ValueError):
            QueryOptions(network_mode="sometimes")
