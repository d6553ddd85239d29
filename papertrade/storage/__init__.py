"""Persistence backends for ledger records."""

from papertrade.storage.database import KeyValueModel, SqlPersistence
from papertrade.storage.persistence import InMemoryPersistence, PersistenceAdapter

__all__ = [
    "PersistenceAdapter",
    "InMemoryPersistence",
    "SqlPersistence",
    "KeyValueModel",
]
