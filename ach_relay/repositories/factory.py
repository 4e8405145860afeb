from __future__ import annotations

import logging

from ach_relay.config import Settings

from .base import RecordStore

logger = logging.getLogger(__name__)


def get_store(settings: Settings) -> RecordStore:
    """Return the record store for the configured backend."""
    if settings.db_enabled:
        from .pg_store import PgRecordStore

        return PgRecordStore()
    from .memory_store import InMemoryRecordStore

    logger.warning("database not configured; using in-memory record store")
    return InMemoryRecordStore()


_default_store: RecordStore | None = None


def default_store() -> RecordStore:
    """Process-wide store shared by the routers."""
    global _default_store
    if _default_store is None:
        from ach_relay.config import settings

        _default_store = get_store(settings)
    return _default_store
