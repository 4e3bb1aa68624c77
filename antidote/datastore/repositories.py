"""
Repository layer for the key/value table.
"""

from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from antidote.datastore.models import KeyValueEntryDB


class KeyValueRepository:
    """Data access for one namespace of ``kv_entries``."""

    def __init__(self, session: AsyncSession, namespace: str):
        self.session = session
        self.namespace = namespace

    async def get(self, key: str) -> str | None:
        result = await self.session.execute(
            select(KeyValueEntryDB.value).where(
                KeyValueEntryDB.namespace == self.namespace,
                KeyValueEntryDB.key == key,
            )
        )
        return result.scalar_one_or_none()

    async def put(self, key: str, value: str) -> None:
        """Insert or update ``key``."""
        result = await self.session.execute(
            select(KeyValueEntryDB).where(
                KeyValueEntryDB.namespace == self.namespace,
                KeyValueEntryDB.key == key,
            )
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            self.session.add(
                KeyValueEntryDB(namespace=self.namespace, key=key, value=value)
            )
        else:
            entry.value = value
            entry.updated_at = datetime.now()
        await self.session.flush()

    async def delete(self, key: str) -> bool:
        result = await self.session.execute(
            delete(KeyValueEntryDB).where(
                KeyValueEntryDB.namespace == self.namespace,
                KeyValueEntryDB.key == key,
            )
        )
        return (result.rowcount or 0) > 0

    async def clear(self) -> int:
        """Delete every entry in the namespace. Returns the number removed."""
        result = await self.session.execute(
            delete(KeyValueEntryDB).where(KeyValueEntryDB.namespace == self.namespace)
        )
        return result.rowcount or 0

    async def count(self) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(KeyValueEntryDB)
            .where(KeyValueEntryDB.namespace == self.namespace)
        )
        return int(result.scalar_one())
