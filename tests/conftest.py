import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import pytest

from antidote.datastore.stores import MemoryKeyValueStore
from antidote.services.cache import ResponseCache
from antidote.services.client import ApiClient
from antidote.services.request import RequestDescriptor, Response
from antidote.services.retry import RetryPolicy
from antidote.services.tokens import TokenStore


class FakeClock:
    """Settable clock for expiry tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeTransport:
    """
    Scripted transport.

    ``handler`` receives each request and returns a Response or raises.
    When ``gate`` is set, every send waits on it first, which keeps
    requests in flight until the test releases them.
    """

    def __init__(
        self,
        handler: Callable[[RequestDescriptor], Awaitable[Response]] | None = None,
        gate: asyncio.Event | None = None,
    ):
        self.handler = handler or self._ok
        self.gate = gate
        self.requests: list[RequestDescriptor] = []
        self.closed = False

    @staticmethod
    async def _ok(request: RequestDescriptor) -> Response:
        return Response(status_code=200, data={"path": request.path})

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def send(self, request: RequestDescriptor) -> Response:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        return await self.handler(request)

    async def close(self) -> None:
        self.closed = True


class FakeTokenSource:
    """Token source with scripted refresh results."""

    def __init__(self, token: str | None = "spotify-old", refreshed: list[Any] | None = None):
        self.token = token
        self.refreshed = list(refreshed or [])
        self.refresh_calls = 0

    async def access_token(self) -> str | None:
        return self.token

    async def refresh(self) -> str | None:
        self.refresh_calls += 1
        new_token = self.refreshed.pop(0) if self.refreshed else None
        if new_token:
            self.token = new_token
        return new_token


def json_response(data: Any, status_code: int = 200) -> Response:
    return Response(status_code=status_code, data=data)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def cache(clock: FakeClock) -> ResponseCache:
    return ResponseCache(MemoryKeyValueStore(), default_ttl=timedelta(minutes=60), clock=clock)


@pytest.fixture
def token_store(clock: FakeClock) -> TokenStore:
    return TokenStore(MemoryKeyValueStore(), clock=clock)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0, jitter=0)


@pytest.fixture
def make_client(cache, token_store, fast_retry):
    """Build an ApiClient around the shared fixtures."""

    def _make(transport, token_source=None, retry_policy=None, **kwargs) -> ApiClient:
        return ApiClient(
            transport=transport,
            cache=kwargs.pop("cache", cache),
            token_store=token_store,
            token_source=token_source,
            retry_policy=retry_policy or fast_retry,
            **kwargs,
        )

    return _make
