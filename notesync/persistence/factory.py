"""Pick the persistence adapter for the current deployment."""

from __future__ import annotations

import logging
from pathlib import Path

from notesync.config import Settings
from notesync.persistence.base import PersistenceAdapter
from notesync.persistence.kv import FileKeyValueCache, KeyValueCache, RedisKeyValueCache
from notesync.persistence.local import LocalPersistenceAdapter
from notesync.persistence.remote import RemotePersistenceAdapter

logger = logging.getLogger(__name__)


def build_cache(settings: Settings) -> KeyValueCache:
    if settings.local_cache_backend == "redis":
        return RedisKeyValueCache(settings.redis_url)
    return FileKeyValueCache(Path(settings.local_cache_path))


def build_adapter(settings: Settings) -> PersistenceAdapter:
    """Return the remote adapter or the local fallback, per ``settings``."""
    if settings.persistence_backend == "local":
        logger.info("Using local persistence (%s)", settings.local_cache_backend)
        return LocalPersistenceAdapter(build_cache(settings))
    logger.info("Using record service at %s", settings.record_service_url)
    return RemotePersistenceAdapter(
        settings.record_service_url, timeout=settings.request_timeout
    )
