"""
TokenRefreshAgent - Mints a new Spotify access token.

Precedence:
1. A fresher token handed back by the active identity session
2. The remote refresh endpoint, called with the stored refresh token

A failed refresh returns None and leaves the stored record untouched;
callers treat that as "reconnection required".
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

import httpx
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from antidote.services.tokens import TokenRecord, TokenStore
from antidote.utils import mask_token, utcnow

DEFAULT_EXPIRES_IN = 3600


def _parse_expires_in(value: Any) -> int:
    """Lifetime in seconds from a refresh response; unusable values get the default."""
    if value is None:
        return DEFAULT_EXPIRES_IN
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid expires_in {value!r} in token refresh response")
        return DEFAULT_EXPIRES_IN
    return seconds if seconds > 0 else DEFAULT_EXPIRES_IN


@dataclass(frozen=True)
class SessionToken:
    """A Spotify token obtained from an identity provider session."""

    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_in: int = DEFAULT_EXPIRES_IN


class IdentitySession(Protocol):
    """An identity-provider session that may hold a fresher Spotify token."""

    async def fresh_token(self) -> SessionToken | None: ...


class TokenRefreshAgent:
    """
    Refreshes the Spotify token and hands out valid tokens.

    Concurrent ``refresh()`` calls share a single in-flight refresh.

    Usage:
        agent = TokenRefreshAgent(token_store, refresh_url=settings.refresh_endpoint)
        token = await agent.refresh()
        if token is None:
            # ask the user to reconnect Spotify
    """

    def __init__(
        self,
        token_store: TokenStore,
        refresh_url: str | None = None,
        session: IdentitySession | None = None,
        http_client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._token_store = token_store
        self._refresh_url = refresh_url
        self._session = session
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._headers = headers or {}
        self._timeout = timeout
        self._clock = clock
        self._in_flight: asyncio.Task[str | None] | None = None
        self.refresh_count = 0

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        return self._http_client

    async def access_token(self) -> str | None:
        """A usable Spotify token: the stored one if not expired, else a refreshed one."""
        record = await self._token_store.get_record()
        if record is not None and not await self._token_store.is_expired():
            return record.access_token
        return await self.refresh()

    async def refresh(self) -> str | None:
        """Refresh the Spotify token. Returns the new token, or None on failure."""
        if self._in_flight is None or self._in_flight.done():
            self._in_flight = asyncio.create_task(self._refresh())
        return await asyncio.shield(self._in_flight)

    async def _refresh(self) -> str | None:
        self.refresh_count += 1

        try:
            token = await self._from_session()
            if token is not None:
                return token
            return await self._from_endpoint()
        except SQLAlchemyError as e:
            logger.warning(f"Spotify token refresh failed, token storage unavailable: {e}")
            return None

    async def _from_session(self) -> str | None:
        if self._session is None:
            return None

        try:
            session_token = await self._session.fresh_token()
        except Exception as e:
            logger.warning(f"Identity session refresh failed, falling back: {e}")
            return None

        if session_token is None or not session_token.access_token:
            return None

        previous_refresh = await self._token_store.get_refresh_token()
        await self._store(
            access_token=session_token.access_token,
            refresh_token=session_token.refresh_token or previous_refresh,
            expires_in=_parse_expires_in(session_token.expires_in),
        )
        logger.info("Spotify token adopted from identity session")
        return session_token.access_token

    async def _from_endpoint(self) -> str | None:
        refresh_token = await self._token_store.get_refresh_token()
        if not refresh_token:
            logger.info("No Spotify refresh token stored; reconnection required")
            return None

        if not self._refresh_url:
            logger.warning("No token refresh endpoint configured")
            return None

        client = await self._get_http_client()
        try:
            response = await client.post(
                self._refresh_url,
                json={"refresh_token": refresh_token},
                headers=self._headers,
            )
            response.raise_for_status()
            payload: Any = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(
                f"Spotify token refresh rejected: HTTP {e.response.status_code}"
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Spotify token refresh failed: {e}")
            return None

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            logger.warning("Spotify token refresh returned no access token")
            return None

        await self._store(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or refresh_token,
            expires_in=_parse_expires_in(payload.get("expires_in")),
        )
        logger.info(f"Spotify token refreshed ({mask_token(access_token)})")
        return access_token

    async def _store(
        self, access_token: str, refresh_token: str | None, expires_in: int
    ) -> None:
        await self._token_store.save_record(
            TokenRecord(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=self._clock() + timedelta(seconds=expires_in),
            )
        )

    async def close(self) -> None:
        """Close the HTTP client if this agent created it."""
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None
