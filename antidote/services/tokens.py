"""
TokenStore - Durable storage for the Spotify token record and the backend
session token.

The Spotify record (access token, refresh token, expiry) is written as a
unit under a lock and mirrored in memory, so a read that follows an update
always observes the whole new record.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from loguru import logger

from antidote.datastore.stores import KeyValueStore
from antidote.utils import mask_token, utcnow

SPOTIFY_ACCESS_TOKEN_KEY = "spotify_access_token"
SPOTIFY_REFRESH_TOKEN_KEY = "spotify_refresh_token"
SPOTIFY_TOKEN_EXPIRY_KEY = "spotify_token_expiry"
SUPABASE_TOKEN_KEY = "supabase_auth_token"

DEFAULT_EXPIRY_MARGIN = timedelta(minutes=5)


@dataclass(frozen=True)
class TokenRecord:
    """Spotify credentials. Token values never appear in repr."""

    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_at: datetime | None = None

    def is_expired(self, now: datetime, margin: timedelta = DEFAULT_EXPIRY_MARGIN) -> bool:
        """Expired once within ``margin`` of the literal expiry; no expiry means expired."""
        if self.expires_at is None:
            return True
        return now >= self.expires_at - margin

    def describe(self) -> str:
        return (
            f"access={mask_token(self.access_token)} "
            f"refresh={mask_token(self.refresh_token)} "
            f"expires_at={self.expires_at.isoformat() if self.expires_at else None}"
        )


class TokenStore:
    """
    Token persistence on top of a (secure) KeyValueStore.

    Usage:
        store = TokenStore(SignedKeyValueStore(sql_store, secret))

        await store.save_record(TokenRecord(access, refresh, expires_at))
        if await store.is_expired():
            ...
    """

    def __init__(
        self,
        store: KeyValueStore,
        expiry_margin: timedelta = DEFAULT_EXPIRY_MARGIN,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._expiry_margin = expiry_margin
        self._clock = clock
        self._lock = asyncio.Lock()
        self._record: TokenRecord | None = None
        self._loaded = False

    @property
    def expiry_margin(self) -> timedelta:
        return self._expiry_margin

    async def get_record(self) -> TokenRecord | None:
        """Current Spotify record, loaded from the store on first use."""
        async with self._lock:
            if not self._loaded:
                self._record = await self._load_record()
                self._loaded = True
            return self._record

    async def _load_record(self) -> TokenRecord | None:
        access_token = await self._store.get(SPOTIFY_ACCESS_TOKEN_KEY)
        if not access_token:
            return None

        refresh_token = await self._store.get(SPOTIFY_REFRESH_TOKEN_KEY)
        expiry_raw = await self._store.get(SPOTIFY_TOKEN_EXPIRY_KEY)
        expires_at = None
        if expiry_raw:
            try:
                expires_at = datetime.fromisoformat(expiry_raw)
            except ValueError:
                logger.warning("Stored Spotify token expiry is invalid; treating as expired")

        return TokenRecord(
            access_token=access_token,
            refresh_token=refresh_token or None,
            expires_at=expires_at,
        )

    async def save_record(self, record: TokenRecord) -> None:
        """Persist ``record``, replacing the previous one as a unit."""
        async with self._lock:
            await self._store.set(SPOTIFY_ACCESS_TOKEN_KEY, record.access_token)
            if record.refresh_token:
                await self._store.set(SPOTIFY_REFRESH_TOKEN_KEY, record.refresh_token)
            else:
                await self._store.delete(SPOTIFY_REFRESH_TOKEN_KEY)
            if record.expires_at is not None:
                await self._store.set(
                    SPOTIFY_TOKEN_EXPIRY_KEY, record.expires_at.isoformat()
                )
            else:
                await self._store.delete(SPOTIFY_TOKEN_EXPIRY_KEY)

            self._record = record
            self._loaded = True
        logger.debug(f"Spotify token record updated ({record.describe()})")

    async def get_access_token(self) -> str | None:
        record = await self.get_record()
        return record.access_token if record else None

    async def get_refresh_token(self) -> str | None:
        record = await self.get_record()
        return record.refresh_token if record else None

    async def get_expires_at(self) -> datetime | None:
        record = await self.get_record()
        return record.expires_at if record else None

    async def is_expired(self) -> bool:
        """True when there is no usable Spotify access token."""
        record = await self.get_record()
        if record is None:
            return True
        return record.is_expired(self._clock(), self._expiry_margin)

    async def has_spotify_tokens(self) -> bool:
        record = await self.get_record()
        return record is not None and record.refresh_token is not None

    async def clear_spotify_tokens(self) -> None:
        async with self._lock:
            await self._store.delete(SPOTIFY_ACCESS_TOKEN_KEY)
            await self._store.delete(SPOTIFY_REFRESH_TOKEN_KEY)
            await self._store.delete(SPOTIFY_TOKEN_EXPIRY_KEY)
            self._record = None
            self._loaded = True
        logger.info("Spotify tokens cleared")

    # Backend session (primary) token

    async def get_primary_token(self) -> str | None:
        return await self._store.get(SUPABASE_TOKEN_KEY)

    async def set_primary_token(self, token: str) -> None:
        await self._store.set(SUPABASE_TOKEN_KEY, token)
        logger.debug(f"Primary token stored ({mask_token(token)})")

    async def clear_primary_token(self) -> None:
        await self._store.delete(SUPABASE_TOKEN_KEY)

    async def clear(self) -> None:
        """Clear all stored tokens."""
        await self.clear_spotify_tokens()
        await self.clear_primary_token()
