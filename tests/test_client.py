import asyncio
from datetime import timedelta

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from antidote.datastore.stores import MemoryKeyValueStore
from antidote.services.client import ApiClient, create_api_client
from antidote.services.errors import (
    BadResponseError,
    ConnectionFailureError,
    RequestCancelledError,
    RequestTimeoutError,
    UnknownApiError,
)
from antidote.services.refresh import TokenRefreshAgent
from antidote.services.request import RequestDescriptor, Response
from antidote.services.retry import RetryPolicy
from antidote.services.stages import (
    AuthStage,
    CacheStage,
    DeduplicationStage,
    RetryStage,
    TransportStage,
)
from antidote.services.tokens import TokenRecord, TokenStore
from antidote.settings import Settings
from tests.conftest import FakeTokenSource, FakeTransport, json_response

TOP_TRACKS = "/api/user/top-tracks"


async def settle_tasks() -> None:
    await asyncio.sleep(0.01)


class CountingTokenSource(FakeTokenSource):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.access_calls = 0

    async def access_token(self) -> str | None:
        self.access_calls += 1
        return await super().access_token()


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_concurrent_gets_share_one_network_call(self, make_client):
        gate = asyncio.Event()
        transport = FakeTransport(gate=gate)
        client = make_client(transport)

        tasks = [asyncio.create_task(client.get("/api/stats")) for _ in range(5)]
        await settle_tasks()
        assert client.registry.get_in_flight_count() == 1

        gate.set()
        results = await asyncio.gather(*tasks)

        assert transport.calls == 1
        assert all(r is results[0] for r in results)
        assert client.registry.get_in_flight_count() == 0

    @pytest.mark.asyncio
    async def test_concurrent_gets_share_one_error(self, make_client):
        gate = asyncio.Event()
        error = BadResponseError(500, "boom")

        async def fail(request: RequestDescriptor) -> Response:
            raise error

        transport = FakeTransport(fail, gate=gate)
        client = make_client(transport)

        tasks = [asyncio.create_task(client.get("/api/stats")) for _ in range(3)]
        await settle_tasks()
        gate.set()
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        assert transport.calls == 1
        assert all(o is error for o in outcomes)

    @pytest.mark.asyncio
    async def test_param_order_does_not_split_dedup(self, make_client):
        gate = asyncio.Event()
        transport = FakeTransport(gate=gate)
        client = make_client(transport)

        first = asyncio.create_task(client.get("/api/user/saved-tracks", {"limit": 50, "offset": 0}))
        second = asyncio.create_task(client.get("/api/user/saved-tracks", {"offset": 0, "limit": 50}))
        await settle_tasks()
        gate.set()
        await asyncio.gather(first, second)

        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_inline_query_order_does_not_split_dedup(self, make_client):
        gate = asyncio.Event()
        transport = FakeTransport(gate=gate)
        client = make_client(transport)

        first = asyncio.create_task(client.get("/api/user/saved-tracks?limit=50&offset=0"))
        second = asyncio.create_task(client.get("/api/user/saved-tracks?offset=0&limit=50"))
        await settle_tasks()
        gate.set()
        await asyncio.gather(first, second)

        assert transport.calls == 1
        assert transport.requests[0].path == "/api/user/saved-tracks"

    @pytest.mark.asyncio
    async def test_posts_are_never_deduplicated(self, make_client):
        gate = asyncio.Event()
        transport = FakeTransport(gate=gate)
        client = make_client(transport)

        tasks = [
            asyncio.create_task(client.post("/api/liked-tracks", {"track_id": "t1"}))
            for _ in range(2)
        ]
        await settle_tasks()
        gate.set()
        await asyncio.gather(*tasks)

        assert transport.calls == 2

    @pytest.mark.asyncio
    async def test_owner_cancellation_fails_waiters(self, make_client):
        transport = FakeTransport(gate=asyncio.Event())
        client = make_client(transport)

        owner = asyncio.create_task(client.get("/api/stats"))
        await settle_tasks()
        waiter = asyncio.create_task(client.get("/api/stats"))
        await settle_tasks()

        owner.cancel()

        with pytest.raises(asyncio.CancelledError):
            await owner
        with pytest.raises(RequestCancelledError):
            await waiter
        assert client.registry.get_in_flight_count() == 0

    @pytest.mark.asyncio
    async def test_waiter_cancellation_leaves_owner_running(self, make_client):
        gate = asyncio.Event()
        transport = FakeTransport(gate=gate)
        client = make_client(transport)

        owner = asyncio.create_task(client.get("/api/stats"))
        await settle_tasks()
        waiter = asyncio.create_task(client.get("/api/stats"))
        await settle_tasks()

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        gate.set()
        assert await owner == {"path": "/api/stats"}

    @pytest.mark.asyncio
    async def test_cancel_pending(self, make_client):
        gate = asyncio.Event()
        client = make_client(FakeTransport(gate=gate))

        owner = asyncio.create_task(client.get("/api/stats"))
        await settle_tasks()
        waiter = asyncio.create_task(client.get("/api/stats"))
        await settle_tasks()

        assert client.cancel_pending() == 1
        with pytest.raises(RequestCancelledError):
            await waiter

        gate.set()
        assert await owner == {"path": "/api/stats"}


class TestCaching:
    @pytest.mark.asyncio
    async def test_second_get_is_served_from_cache(self, make_client):
        transport = FakeTransport()
        client = make_client(transport)

        first = await client.get("/api/stats")
        second = await client.get("/api/stats")

        assert first == second
        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_expired_entry_goes_to_network(self, make_client, clock):
        transport = FakeTransport()
        client = make_client(transport)

        await client.get("/api/stats")
        clock.advance(minutes=60)
        await client.get("/api/stats")

        assert transport.calls == 2

    @pytest.mark.asyncio
    async def test_different_query_is_a_different_entry(self, make_client):
        transport = FakeTransport()
        client = make_client(transport)

        await client.get(TOP_TRACKS, {"time_range": "short_term"})
        await client.get(TOP_TRACKS, {"time_range": "long_term"})

        assert transport.calls == 2

    @pytest.mark.asyncio
    async def test_mutations_are_never_cached(self, make_client, cache):
        transport = FakeTransport()
        client = make_client(transport)

        await client.post("/api/playlists", {"name": "Mix"})
        await client.post("/api/playlists", {"name": "Mix"})
        await client.put("/api/playlists/1", {"name": "Mix"})
        await client.delete("/api/playlists/1")

        assert transport.calls == 4
        assert cache.get_stats().writes == 0

    @pytest.mark.asyncio
    async def test_failed_get_is_not_cached(self, make_client):
        outcomes = [json_response({"error": "down"}, 503), json_response({"ok": True})]

        async def handler(request: RequestDescriptor) -> Response:
            response = outcomes.pop(0)
            if not response.ok:
                raise BadResponseError(response.status_code, "down")
            return response

        transport = FakeTransport(handler)
        client = make_client(transport)

        with pytest.raises(BadResponseError):
            await client.get("/api/stats")
        assert await client.get("/api/stats") == {"ok": True}
        assert transport.calls == 2

    @pytest.mark.asyncio
    async def test_null_payload_is_served_from_cache(self, make_client):
        async def empty(request: RequestDescriptor) -> Response:
            return json_response(None)

        transport = FakeTransport(empty)
        client = make_client(transport)

        assert await client.get("/api/history") is None
        assert await client.get("/api/history") is None
        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_cache_disabled(self, make_client):
        transport = FakeTransport()
        client = make_client(transport, cache_enabled=False)

        await client.get("/api/stats")
        await client.get("/api/stats")

        assert transport.calls == 2

    @pytest.mark.asyncio
    async def test_clear_cache(self, make_client):
        transport = FakeTransport()
        client = make_client(transport)

        await client.get("/api/stats")
        assert await client.clear_cache() == 1
        await client.get("/api/stats")

        assert transport.calls == 2


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_primary_endpoint_gets_bearer_only(self, make_client, token_store):
        await token_store.set_primary_token("session")
        transport = FakeTransport()
        client = make_client(transport, token_source=FakeTokenSource())

        await client.get("/api/stats")

        headers = transport.requests[0].header_map
        assert headers == {"Authorization": "Bearer session"}

    @pytest.mark.asyncio
    async def test_spotify_endpoint_gets_both_tokens(self, make_client, token_store):
        await token_store.set_primary_token("session")
        transport = FakeTransport()
        client = make_client(transport, token_source=FakeTokenSource("spotify-old"))

        await client.get(TOP_TRACKS)

        headers = transport.requests[0].header_map
        assert headers["Authorization"] == "Bearer session"
        assert headers["X-Spotify-Token"] == "spotify-old"

    @pytest.mark.asyncio
    async def test_public_endpoint_is_anonymous(self, make_client, token_store):
        await token_store.set_primary_token("session")
        transport = FakeTransport()
        client = make_client(transport, token_source=FakeTokenSource())

        await client.get("/api/health")

        assert transport.requests[0].header_map == {}

    @pytest.mark.asyncio
    async def test_without_tokens_request_goes_unauthenticated(self, make_client):
        transport = FakeTransport()
        client = make_client(transport, token_source=FakeTokenSource(token=None))

        await client.get(TOP_TRACKS)

        assert transport.requests[0].header_map == {}

    @pytest.mark.asyncio
    async def test_caller_headers_are_kept(self, make_client, token_store):
        await token_store.set_primary_token("session")
        transport = FakeTransport()
        client = make_client(transport)

        await client.request("GET", "/api/stats", headers={"X-Request-Source": "widget"})

        headers = transport.requests[0].header_map
        assert headers["X-Request-Source"] == "widget"
        assert headers["Authorization"] == "Bearer session"


def reject_token(expired: str):
    """Handler that answers 401 whenever the Spotify header is ``expired``."""

    async def handler(request: RequestDescriptor) -> Response:
        if request.header_map.get("X-Spotify-Token") == expired:
            raise BadResponseError(401, "Spotify token expired")
        return json_response({"tracks": ["t1"]})

    return handler


async def always_unauthorized(request: RequestDescriptor) -> Response:
    raise BadResponseError(401, "Unauthorized")


class TestTokenRefresh:
    @pytest.mark.asyncio
    async def test_refresh_and_redispatch_once(self, make_client):
        transport = FakeTransport(reject_token("spotify-old"))
        source = FakeTokenSource("spotify-old", refreshed=["spotify-new"])
        client = make_client(transport, token_source=source)

        assert await client.get(TOP_TRACKS) == {"tracks": ["t1"]}

        assert source.refresh_calls == 1
        assert transport.calls == 2
        assert transport.requests[1].header_map["X-Spotify-Token"] == "spotify-new"

    @pytest.mark.asyncio
    async def test_failed_refresh_surfaces_original_401(self, make_client):
        transport = FakeTransport(reject_token("spotify-old"))
        source = FakeTokenSource("spotify-old", refreshed=[None])
        client = make_client(transport, token_source=source)

        with pytest.raises(BadResponseError) as exc_info:
            await client.get(TOP_TRACKS)

        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Spotify token expired"
        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_second_401_is_not_refreshed_again(self, make_client):
        transport = FakeTransport(always_unauthorized)
        source = FakeTokenSource("spotify-old", refreshed=["spotify-new", "spotify-newer"])
        client = make_client(transport, token_source=source)

        with pytest.raises(BadResponseError) as exc_info:
            await client.get(TOP_TRACKS)

        assert exc_info.value.is_auth_error
        assert source.refresh_calls == 1
        assert transport.calls == 2

    @pytest.mark.asyncio
    async def test_malformed_refresh_response_keeps_401(self, make_client, token_store, clock):
        await token_store.save_record(
            TokenRecord("spotify-old", "refresh", clock.now - timedelta(minutes=1))
        )

        def refresh_handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "new", "expires_in": "soon"})

        agent = TokenRefreshAgent(
            token_store,
            refresh_url="https://auth.test/refresh",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(refresh_handler)),
            clock=clock,
        )
        transport = FakeTransport(always_unauthorized)
        client = make_client(transport, token_source=agent)

        with pytest.raises(BadResponseError) as exc_info:
            await client.get(TOP_TRACKS)

        assert exc_info.value.status_code == 401
        assert transport.calls == 2

    @pytest.mark.asyncio
    async def test_token_storage_failure_keeps_401(self, cache, clock, fast_retry):
        class LockedStore(MemoryKeyValueStore):
            async def get(self, key: str) -> str | None:
                raise OperationalError("SELECT", {}, Exception("database is locked"))

        token_store = TokenStore(LockedStore(), clock=clock)
        agent = TokenRefreshAgent(token_store, refresh_url="https://auth.test/refresh", clock=clock)
        transport = FakeTransport(always_unauthorized)
        client = ApiClient(
            transport=transport,
            cache=cache,
            token_store=token_store,
            token_source=agent,
            retry_policy=fast_retry,
        )

        with pytest.raises(BadResponseError) as exc_info:
            await client.get(TOP_TRACKS)

        assert exc_info.value.status_code == 401
        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_primary_endpoint_401_is_not_refreshed(self, make_client):
        transport = FakeTransport(always_unauthorized)
        source = FakeTokenSource(refreshed=["spotify-new"])
        client = make_client(transport, token_source=source)

        with pytest.raises(BadResponseError):
            await client.get("/api/stats")

        assert source.refresh_calls == 0
        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_post_to_spotify_endpoint_is_refreshed(self, make_client):
        transport = FakeTransport(reject_token("spotify-old"))
        source = FakeTokenSource("spotify-old", refreshed=["spotify-new"])
        client = make_client(transport, token_source=source)

        await client.post("/api/mood/analyze", {"limit": 20})

        assert source.refresh_calls == 1
        assert transport.calls == 2


def failing(error_factory, times: int | None = None):
    """Handler that raises ``error_factory()`` ``times`` times (forever if None)."""
    state = {"failures": 0}

    async def handler(request: RequestDescriptor) -> Response:
        if times is None or state["failures"] < times:
            state["failures"] += 1
            raise error_factory()
        return json_response({"ok": True})

    return handler


class TestRetry:
    @pytest.mark.asyncio
    async def test_get_timeout_is_attempted_max_attempts_times(self, make_client):
        transport = FakeTransport(failing(RequestTimeoutError))
        client = make_client(transport)

        with pytest.raises(RequestTimeoutError):
            await client.get("/api/stats")

        assert transport.calls == 3

    @pytest.mark.asyncio
    async def test_transient_failures_then_success(self, make_client):
        transport = FakeTransport(failing(ConnectionFailureError, times=2))
        client = make_client(transport)

        assert await client.get("/api/stats") == {"ok": True}
        assert transport.calls == 3

    @pytest.mark.asyncio
    async def test_post_is_not_retried(self, make_client):
        transport = FakeTransport(failing(RequestTimeoutError))
        client = make_client(transport)

        with pytest.raises(RequestTimeoutError):
            await client.post("/api/playlists", {"name": "Mix"})

        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_bad_response_is_not_retried(self, make_client):
        transport = FakeTransport(failing(lambda: BadResponseError(503)))
        client = make_client(transport)

        with pytest.raises(BadResponseError):
            await client.get("/api/stats")

        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_backoff_delays(self, make_client):
        delays = []

        async def record_sleep(delay: float) -> None:
            delays.append(delay)

        transport = FakeTransport(failing(RequestTimeoutError))
        client = make_client(transport, retry_policy=RetryPolicy(base_delay=1.0, jitter=0))
        client.stages[3]._sleep = record_sleep

        with pytest.raises(RequestTimeoutError):
            await client.get("/api/stats")

        assert delays == [1.0, 2.0]


class TestPipeline:
    def test_stage_order(self, make_client):
        client = make_client(FakeTransport())

        assert [type(stage) for stage in client.stages] == [
            DeduplicationStage,
            CacheStage,
            AuthStage,
            RetryStage,
            TransportStage,
        ]

    @pytest.mark.asyncio
    async def test_unexpected_transport_exception_is_classified(self, make_client):
        async def explode(request: RequestDescriptor) -> Response:
            raise RuntimeError("boom")

        client = make_client(FakeTransport(explode))

        with pytest.raises(UnknownApiError):
            await client.get("/api/stats")
        with pytest.raises(UnknownApiError):
            await client.post("/api/playlists", {})

    @pytest.mark.asyncio
    async def test_health_status(self, make_client):
        client = make_client(FakeTransport())

        await client.get("/api/stats")
        await client.get("/api/stats")

        status = client.get_health_status()
        assert status["transport_sends"] == 1
        assert status["cache"]["hits"] == 1
        assert status["deduplicator"]["total_requests"] == 2
        assert status["deduplicator"]["deduplicated"] == 0

    @pytest.mark.asyncio
    async def test_close(self, make_client):
        transport = FakeTransport()

        async with make_client(transport) as client:
            await client.get("/api/stats")

        assert transport.closed

    @pytest.mark.asyncio
    async def test_top_tracks_session(self, make_client, token_store, clock):
        """Cold fetch, cache hit, then refetch after the entry expires."""
        await token_store.set_primary_token("session")
        transport = FakeTransport()
        source = CountingTokenSource("spotify-token")
        client = make_client(transport, token_source=source)
        params = {"time_range": "medium_term"}

        first = await client.get(TOP_TRACKS, params)
        clock.advance(minutes=30)
        second = await client.get(TOP_TRACKS, params)

        assert first == second == {"path": TOP_TRACKS}
        assert transport.calls == 1
        assert source.access_calls == 1

        clock.advance(minutes=31)
        await client.get(TOP_TRACKS, params)

        assert transport.calls == 2
        assert source.access_calls == 2
        assert transport.requests[1].params == (("time_range", "medium_term"),)


class TestCreateApiClient:
    @pytest.mark.asyncio
    async def test_builds_persistent_client(self, tmp_path):
        settings = Settings(
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'client.db'}",
            token_store_secret="s3cret",
            supabase_url="https://project.supabase.co",
            cache_expiration_minutes=5,
        )

        client = await create_api_client(settings)
        try:
            assert isinstance(client, ApiClient)
            assert client.cache.default_ttl == timedelta(minutes=5)

            await client.token_store.set_primary_token("session")
            assert await client.token_store.get_primary_token() == "session"
        finally:
            await client.close()
