"""
Persistent key/value stores.

The response cache and the token store only see the ``KeyValueStore``
protocol:

- MemoryKeyValueStore: process-local dict, for tests and ephemeral use
- SqlKeyValueStore: one namespace of the SQLite ``kv_entries`` table
- SignedKeyValueStore: HMAC-signs values of another store, so that values
  edited outside the application read as absent
"""

import hashlib
import hmac
from typing import Protocol

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from antidote.datastore.repositories import KeyValueRepository


class KeyValueStore(Protocol):
    """Async string key/value storage."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def clear(self) -> int: ...


class MemoryKeyValueStore:
    """Dict-backed store. Contents do not survive the process."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def clear(self) -> int:
        count = len(self._data)
        self._data.clear()
        return count

    def __len__(self) -> int:
        return len(self._data)


class SqlKeyValueStore:
    """
    Store backed by one namespace of the ``kv_entries`` table.

    Every operation runs in its own session and commits before returning,
    so a completed ``set`` is durable.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        namespace: str,
    ):
        self._session_factory = session_factory
        self.namespace = namespace

    async def get(self, key: str) -> str | None:
        async with self._session_factory() as session:
            return await KeyValueRepository(session, self.namespace).get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._session_factory() as session:
            await KeyValueRepository(session, self.namespace).put(key, value)
            await session.commit()

    async def delete(self, key: str) -> bool:
        async with self._session_factory() as session:
            deleted = await KeyValueRepository(session, self.namespace).delete(key)
            await session.commit()
            return deleted

    async def clear(self) -> int:
        async with self._session_factory() as session:
            count = await KeyValueRepository(session, self.namespace).clear()
            await session.commit()
            return count

    async def count(self) -> int:
        async with self._session_factory() as session:
            return await KeyValueRepository(session, self.namespace).count()


class SignedKeyValueStore:
    """
    Wraps another store and signs each value with HMAC-SHA256.

    Stored format is ``<hex signature>:<value>``. The signature covers the
    key as well as the value, so a value copied under another key is rejected
    too.
    """

    def __init__(self, inner: KeyValueStore, secret: str):
        if not secret:
            raise ValueError("SignedKeyValueStore requires a non-empty secret")
        self._inner = inner
        self._secret = secret.encode()

    def _sign(self, key: str, value: str) -> str:
        message = f"{key}\x00{value}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    async def get(self, key: str) -> str | None:
        stored = await self._inner.get(key)
        if stored is None:
            return None

        signature, sep, value = stored.partition(":")
        if not sep or not hmac.compare_digest(signature, self._sign(key, value)):
            logger.warning(f"Discarding tampered value for key '{key}'")
            await self._inner.delete(key)
            return None
        return value

    async def set(self, key: str, value: str) -> None:
        await self._inner.set(key, f"{self._sign(key, value)}:{value}")

    async def delete(self, key: str) -> bool:
        return await self._inner.delete(key)

    async def clear(self) -> int:
        return await self._inner.clear()
