"""
ApiClient - Async client for the Antidote backend.

Every call runs through a fixed stage chain:
- DeduplicationStage: concurrent identical GETs share one execution
- CacheStage: fresh cached GET responses skip the network
- AuthStage: bearer and Spotify tokens, one refresh on Spotify 401
- RetryStage: bounded retry of transient GET failures
- TransportStage: httpx
"""

from datetime import timedelta
from typing import Any, Mapping

from loguru import logger

from antidote.datastore.engine import Database, init_db
from antidote.datastore.stores import (
    KeyValueStore,
    MemoryKeyValueStore,
    SignedKeyValueStore,
    SqlKeyValueStore,
)
from antidote.services.cache import ResponseCache
from antidote.services.deduplicator import PendingRequestRegistry
from antidote.services.endpoints import EndpointClassifier
from antidote.services.errors import classify_exception
from antidote.services.refresh import IdentitySession, TokenRefreshAgent
from antidote.services.request import (
    QueryParams,
    RequestDescriptor,
    Response,
    canonical_key,
)
from antidote.services.retry import NO_RETRY, RetryPolicy
from antidote.services.stages import (
    AuthStage,
    CacheStage,
    DeduplicationStage,
    Middleware,
    RequestContext,
    RetryStage,
    TokenSource,
    TransportStage,
    compose,
)
from antidote.services.tokens import TokenStore
from antidote.services.transport import HttpxTransport, Transport
from antidote.settings import Settings

CACHE_NAMESPACE = "api_cache"
TOKEN_NAMESPACE = "secure_tokens"


class ApiClient:
    """
    Request pipeline facade.

    Usage:
        async with await create_api_client(settings) as client:
            tracks = await client.get(
                "/api/user/top-tracks", params={"time_range": "medium_term"}
            )

        # Or assemble the parts yourself
        client = ApiClient(
            transport=HttpxTransport("http://localhost:5000"),
            cache=ResponseCache(MemoryKeyValueStore()),
            token_store=TokenStore(MemoryKeyValueStore()),
        )
    """

    def __init__(
        self,
        transport: Transport,
        cache: ResponseCache | None = None,
        token_store: TokenStore | None = None,
        token_source: TokenSource | None = None,
        retry_policy: RetryPolicy | None = None,
        classifier: EndpointClassifier | None = None,
        registry: PendingRequestRegistry | None = None,
        cache_enabled: bool = True,
        database: Database | None = None,
        debug: bool = False,
    ):
        self._transport = transport
        self._cache = cache or ResponseCache(MemoryKeyValueStore(), debug=debug)
        self._token_store = token_store or TokenStore(MemoryKeyValueStore())
        self._token_source = token_source
        self._registry = registry or PendingRequestRegistry(debug=debug)
        self._database = database

        self.transport_stage = TransportStage(transport)
        self.stages: tuple[Middleware, ...] = (
            DeduplicationStage(self._registry),
            CacheStage(self._cache, enabled=cache_enabled),
            AuthStage(self._token_store, token_source, classifier),
            RetryStage(retry_policy or RetryPolicy()),
            self.transport_stage,
        )
        self._handler = compose(self.stages)

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def token_store(self) -> TokenStore:
        return self._token_store

    @property
    def registry(self) -> PendingRequestRegistry:
        return self._registry

    async def send(self, request: RequestDescriptor) -> Response:
        """Run ``request`` through the pipeline and return the settled response."""
        ctx = RequestContext(request=request, key=canonical_key(request))
        try:
            return await self._handler(ctx)
        except Exception as e:
            error = classify_exception(e)
            if error is e:
                raise
            raise error from e

    async def request(
        self,
        method: str,
        path: str,
        params: QueryParams | None = None,
        json_data: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """
        Make an API request and return the decoded JSON payload.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path: Path relative to the API base URL
            params: Query parameters
            json_data: JSON body for POST/PUT requests
            headers: Additional headers

        Raises:
            RequestTimeoutError, BadResponseError, ConnectionFailureError,
            RequestCancelledError or UnknownApiError
        """
        request = RequestDescriptor.build(
            method, path, params=params, headers=headers, json=json_data
        )
        response = await self.send(request)
        return response.data

    async def get(self, path: str, params: QueryParams | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(
        self, path: str, json_data: Any = None, params: QueryParams | None = None
    ) -> Any:
        return await self.request("POST", path, params=params, json_data=json_data)

    async def put(
        self, path: str, json_data: Any = None, params: QueryParams | None = None
    ) -> Any:
        return await self.request("PUT", path, params=params, json_data=json_data)

    async def delete(self, path: str, params: QueryParams | None = None) -> None:
        await self.request("DELETE", path, params=params)

    def cancel_pending(self) -> int:
        """Fail all in-flight GETs with RequestCancelledError (e.g. on logout)."""
        return self._registry.cancel_all()

    async def clear_cache(self) -> int:
        return await self._cache.clear()

    def get_health_status(self) -> dict[str, Any]:
        """Cache and deduplication statistics."""
        return {
            "cache": self._cache.get_stats().to_dict(),
            "deduplicator": self._registry.get_stats().to_dict(),
            "transport_sends": self.transport_stage.sends,
        }

    async def close(self) -> None:
        """Close the transport and release resources."""
        self._registry.cancel_all()
        await self._transport.close()
        close_source = getattr(self._token_source, "close", None)
        if close_source is not None:
            await close_source()
        if self._database is not None:
            await self._database.close()
            self._database = None
        logger.debug("ApiClient closed")

    async def __aenter__(self) -> "ApiClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()


async def create_api_client(
    settings: Settings,
    identity_session: IdentitySession | None = None,
) -> ApiClient:
    """Build an ApiClient with SQLite-backed cache and token storage."""
    database = await init_db(settings.database_url, echo=settings.database_echo)

    token_backend: KeyValueStore = SqlKeyValueStore(
        database.session_factory, TOKEN_NAMESPACE
    )
    if settings.token_store_secret:
        token_backend = SignedKeyValueStore(token_backend, settings.token_store_secret)
    else:
        logger.warning("TOKEN_STORE_SECRET is not set; stored tokens are not signed")

    token_store = TokenStore(
        token_backend,
        expiry_margin=timedelta(seconds=settings.token_expiry_margin_seconds),
    )

    refresh_headers = {}
    if settings.supabase_anon_key:
        refresh_headers = {
            "apikey": settings.supabase_anon_key,
            "Authorization": f"Bearer {settings.supabase_anon_key}",
        }
    refresh_agent = TokenRefreshAgent(
        token_store,
        refresh_url=settings.refresh_endpoint,
        session=identity_session,
        headers=refresh_headers,
        timeout=settings.request_timeout,
    )

    cache = ResponseCache(
        SqlKeyValueStore(database.session_factory, CACHE_NAMESPACE),
        default_ttl=timedelta(minutes=settings.cache_expiration_minutes),
        debug=settings.debug,
    )

    retry_policy = NO_RETRY
    if settings.enable_retry_logic:
        retry_policy = RetryPolicy(
            max_attempts=settings.max_request_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

    logger.info(f"API client configured for {settings.api_base_url}")
    return ApiClient(
        transport=HttpxTransport(settings.api_base_url, timeout=settings.request_timeout),
        cache=cache,
        token_store=token_store,
        token_source=refresh_agent,
        retry_policy=retry_policy,
        cache_enabled=settings.enable_offline_cache,
        database=database,
        debug=settings.debug,
    )
