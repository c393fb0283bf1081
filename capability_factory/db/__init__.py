"""Database package: shared engine, session factory and the factory record stores."""

from capability_factory.db.base import Base, close_db, get_session_factory, init_db
from capability_factory.db.store import FactoryStore
from capability_factory.db.store_memory import InMemoryFactoryStore
from capability_factory.db.store_sql import SqlFactoryStore

__all__ = [
    "Base",
    "FactoryStore",
    "InMemoryFactoryStore",
    "SqlFactoryStore",
    "close_db",
    "get_session_factory",
    "init_db",
]
