"""
Local persistence: SQLite via SQLAlchemy async, exposed as key/value stores.
"""

from antidote.datastore.engine import Database, init_db
from antidote.datastore.stores import (
    KeyValueStore,
    MemoryKeyValueStore,
    SignedKeyValueStore,
    SqlKeyValueStore,
)

__all__ = [
    "Database",
    "init_db",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SignedKeyValueStore",
    "SqlKeyValueStore",
]
