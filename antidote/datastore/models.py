"""
Database models for local persistence.

A single namespaced key/value table backs both the response cache and the
token store; each uses its own namespace.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""

    pass


class KeyValueEntryDB(Base):
    """One stored value, addressed by (namespace, key)."""

    __tablename__ = "kv_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    namespace: Mapped[str] = mapped_column(String(64), nullable=False)
    key: Mapped[str] = mapped_column(String(1000), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    __table_args__ = (
        Index("idx_kv_namespace_key", "namespace", "key", unique=True),
    )

    def __repr__(self) -> str:
        return f"<KeyValueEntry(namespace={self.namespace}, key={self.key[:50]})>"
