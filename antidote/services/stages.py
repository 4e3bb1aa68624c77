"""
Pipeline stages.

Each stage is an async middleware ``stage(ctx, call_next)``. The stage list is
composed once into a single handler; its order is the order a request passes
through:

    DeduplicationStage -> CacheStage -> AuthStage -> RetryStage -> TransportStage
"""

import asyncio
import functools
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, Sequence

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from antidote.services.cache import ResponseCache
from antidote.services.deduplicator import PendingRequestRegistry
from antidote.services.endpoints import AuthRequirement, EndpointClassifier
from antidote.services.errors import (
    ApiError,
    BadResponseError,
    RequestCancelledError,
    classify_exception,
)
from antidote.services.request import RequestDescriptor, Response
from antidote.services.retry import RetryPolicy
from antidote.services.tokens import TokenStore
from antidote.services.transport import Transport

AUTHORIZATION_HEADER = "Authorization"
SPOTIFY_TOKEN_HEADER = "X-Spotify-Token"


@dataclass
class RequestContext:
    """Per-call state shared by the stages."""

    request: RequestDescriptor
    key: str
    attempts: int = 0
    refreshed: bool = False

    @property
    def is_get(self) -> bool:
        return self.request.method == "GET"


Handler = Callable[[RequestContext], Awaitable[Response]]


class Middleware(Protocol):
    async def __call__(self, ctx: RequestContext, call_next: Handler) -> Response: ...


async def _end_of_pipeline(ctx: RequestContext) -> Response:
    raise RuntimeError(f"No stage handled {ctx.request.method} {ctx.request.path}")


def compose(stages: Sequence[Middleware]) -> Handler:
    """Chain ``stages`` into one handler; the first stage runs first."""
    handler: Handler = _end_of_pipeline
    for stage in reversed(stages):
        handler = functools.partial(stage, call_next=handler)
    return handler


class DeduplicationStage:
    """
    Collapses concurrent identical GETs onto one execution.

    The owning call settles the shared entry with its outcome; waiters
    return that same outcome. Other methods pass straight through.
    """

    def __init__(self, registry: PendingRequestRegistry):
        self.registry = registry

    async def __call__(self, ctx: RequestContext, call_next: Handler) -> Response:
        if not ctx.is_get:
            return await call_next(ctx)

        handle = self.registry.enter(ctx.key)
        if not handle.is_new:
            return await handle.wait()

        try:
            response = await call_next(ctx)
        except asyncio.CancelledError:
            handle.settle(error=RequestCancelledError())
            raise
        except ApiError as e:
            handle.settle(error=e)
            raise
        except Exception as e:
            error = classify_exception(e)
            handle.settle(error=error)
            raise error from e

        handle.settle(result=response)
        return response


class CacheStage:
    """Serves GETs from the response cache and stores successful ones."""

    def __init__(self, cache: ResponseCache, enabled: bool = True):
        self.cache = cache
        self.enabled = enabled

    async def __call__(self, ctx: RequestContext, call_next: Handler) -> Response:
        if not (self.enabled and ctx.is_get):
            return await call_next(ctx)

        cached = await self.cache.lookup(ctx.key)
        if cached is not None:
            return Response(status_code=200, data=cached.data, from_cache=True)

        response = await call_next(ctx)
        if response.ok:
            await self.cache.write(ctx.key, response.data)
        return response


class TokenSource(Protocol):
    """What AuthStage needs from the refresh agent."""

    async def access_token(self) -> str | None: ...

    async def refresh(self) -> str | None: ...


class AuthStage:
    """
    Attaches credentials and handles Spotify token expiry.

    A 401 on a Spotify endpoint triggers one refresh. If it yields a token,
    the request is sent once more through the stages below this one.
    """

    def __init__(
        self,
        token_store: TokenStore,
        token_source: TokenSource | None = None,
        classifier: EndpointClassifier | None = None,
    ):
        self.token_store = token_store
        self.token_source = token_source
        self.classifier = classifier or EndpointClassifier()

    async def __call__(self, ctx: RequestContext, call_next: Handler) -> Response:
        requirement = self.classifier.classify(ctx.request.path)
        if requirement == AuthRequirement.NONE:
            return await call_next(ctx)

        headers = await self._auth_headers(requirement)
        if headers:
            ctx.request = ctx.request.with_headers(headers)

        try:
            return await call_next(ctx)
        except BadResponseError as e:
            if (
                e.status_code != 401
                or requirement != AuthRequirement.SECONDARY
                or self.token_source is None
                or ctx.refreshed
            ):
                raise

            ctx.refreshed = True
            logger.info(f"Spotify token rejected for {ctx.request.path}, refreshing")
            new_token = await self.token_source.refresh()
            if not new_token:
                logger.warning("Spotify token refresh failed; reconnection required")
                raise

            ctx.request = ctx.request.with_headers({SPOTIFY_TOKEN_HEADER: new_token})
            return await call_next(ctx)

    async def _auth_headers(self, requirement: AuthRequirement) -> dict[str, str]:
        headers: dict[str, str] = {}

        try:
            primary = await self.token_store.get_primary_token()
        except SQLAlchemyError as e:
            logger.warning(f"Could not read primary token, continuing without it: {e}")
            primary = None
        if primary:
            headers[AUTHORIZATION_HEADER] = f"Bearer {primary}"

        if requirement == AuthRequirement.SECONDARY and self.token_source is not None:
            try:
                spotify_token = await self.token_source.access_token()
            except SQLAlchemyError as e:
                logger.warning(f"Could not read Spotify token, continuing without it: {e}")
                spotify_token = None
            if spotify_token:
                headers[SPOTIFY_TOKEN_HEADER] = spotify_token

        return headers


class RetryStage:
    """Retries transient failures of idempotent requests with backoff."""

    def __init__(
        self,
        policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.policy = policy
        self._sleep = sleep

    async def __call__(self, ctx: RequestContext, call_next: Handler) -> Response:
        attempt = 0
        while True:
            attempt += 1
            ctx.attempts += 1
            try:
                return await call_next(ctx)
            except ApiError as e:
                decision = self.policy.decide(ctx.request.method, e.kind, attempt)
                if not decision.retry:
                    raise
                logger.warning(
                    f"{ctx.request.method} {ctx.request.path} failed ({e.kind.value}), "
                    f"retrying in {decision.delay:.2f}s "
                    f"(attempt {attempt}/{self.policy.max_attempts})"
                )
            await self._sleep(decision.delay)


class TransportStage:
    """Terminal stage: hands the request to the transport."""

    def __init__(self, transport: Transport):
        self.transport = transport
        self.sends = 0

    async def __call__(self, ctx: RequestContext, call_next: Handler) -> Response:
        self.sends += 1
        return await self.transport.send(ctx.request)
