"""Durable key-value backends for the local-fallback adapter.

Both backends raise ``StorageError`` when the underlying medium fails; the
local adapter decides how to degrade.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Protocol

import redis.asyncio as aioredis

from notesync.errors import StorageError

logger = logging.getLogger(__name__)

KEY_PREFIX = "notesync:"


class KeyValueCache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def close(self) -> None: ...


class FileKeyValueCache:
    """Stores every key in a single JSON object on disk."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    async def get(self, key: str) -> Optional[str]:
        data = self._read_all()
        value = data.get(key)
        return value if isinstance(value, str) else None

    async def set(self, key: str, value: str) -> None:
        data = self._read_all()
        data[key] = value
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as e:
            raise StorageError(f"cannot write {self._path}: {e}") from e

    async def close(self) -> None:
        return None

    def _read_all(self) -> dict[str, object]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(f"cannot read {self._path}: {e}") from e
        except json.JSONDecodeError as e:
            logger.warning("Cache file %s is corrupt, ignoring it: %s", self._path, e)
            return {}
        return raw if isinstance(raw, dict) else {}


class RedisKeyValueCache:
    """Redis-backed cache. Connects lazily on first use."""

    def __init__(self, redis_url: str) -> None:
        self._redis_url = redis_url
        self._client: Optional[aioredis.Redis] = None

    @property
    def available(self) -> bool:
        """Whether the Redis connection is active."""
        return self._client is not None

    async def connect(self) -> None:
        """Connect to Redis. Raises StorageError if Redis is unavailable."""
        try:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)
            await self._client.ping()
            logger.info("Redis cache connected: %s", self._redis_url)
        except Exception as e:
            self._client = None
            raise StorageError(f"Redis unavailable: {e}") from e

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get(self, key: str) -> Optional[str]:
        if not self._client:
            await self.connect()
        try:
            return await self._client.get(f"{KEY_PREFIX}{key}")
        except Exception as e:
            raise StorageError(f"Redis get failed: {e}") from e

    async def set(self, key: str, value: str) -> None:
        if not self._client:
            await self.connect()
        try:
            await self._client.set(f"{KEY_PREFIX}{key}", value)
        except Exception as e:
            raise StorageError(f"Redis set failed: {e}") from e
