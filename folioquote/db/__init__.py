"""Database package — models, engine, session factory."""

from folioquote.db.database import get_session, init_db
from folioquote.db.models import (
    Base,
    PriceCacheEntry,
    PriceSyncJob,
    SymbolPriority,
)

__all__ = [
    "Base",
    "PriceCacheEntry",
    "PriceSyncJob",
    "SymbolPriority",
    "get_session",
    "init_db",
]
