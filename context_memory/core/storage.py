"""Durable key-value storage backends for persisted engine state."""

import asyncio
import json
import logging
import os
import re
import tempfile
from typing import Any, Optional, Protocol

import redis.asyncio as redis

from context_memory.core.errors import MemoryStorageError

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Minimal async key-value interface used by persistence."""

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


class JsonFileStore:
    """One JSON document per key under a local directory.

    Writes go to a temporary file in the same directory and are moved into
    place with ``os.replace``, so a reader sees either the old document or
    the new one, never a partial write.
    """

    def __init__(self, directory: Optional[str] = None):
        self.directory = os.path.expanduser(directory or "~/.context-memory/store")
        os.makedirs(self.directory, exist_ok=True)

    def _path(self, key: str) -> str:
        safe_key = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return os.path.join(self.directory, f"{safe_key}.json")

    def _read(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, key: str, value: Any):
        path = self._path(key)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.directory, prefix=".tmp-", suffix=".json"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _delete(self, key: str):
        path = self._path(key)
        if os.path.exists(path):
            os.remove(path)

    async def get(self, key: str) -> Optional[Any]:
        """Read a document; raises ``MemoryStorageError`` if it cannot be parsed."""
        try:
            return await asyncio.to_thread(self._read, key)
        except (OSError, ValueError) as e:
            raise MemoryStorageError(f"Failed to read {key}", cause=e, key=key)

    async def set(self, key: str, value: Any):
        try:
            await asyncio.to_thread(self._write, key, value)
        except (OSError, TypeError, ValueError) as e:
            raise MemoryStorageError(f"Failed to write {key}", cause=e, key=key)

    async def delete(self, key: str):
        try:
            await asyncio.to_thread(self._delete, key)
        except OSError as e:
            raise MemoryStorageError(f"Failed to delete {key}", cause=e, key=key)


class RedisStore:
    """Redis-backed store; values are JSON strings under a key prefix."""

    def __init__(self, url: str = "redis://localhost:6379/0", prefix: str = "context_memory"):
        self.prefix = prefix
        self.redis = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        self._connected: Optional[bool] = None

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def _ensure_connected(self) -> bool:
        """Ping once and remember the outcome."""
        if self._connected is not None:
            return self._connected

        try:
            await self.redis.ping()
            self._connected = True
        except Exception as e:
            logger.warning(f"Redis unavailable: {e}")
            self._connected = False
        return self._connected

    async def get(self, key: str) -> Optional[Any]:
        if not await self._ensure_connected():
            raise MemoryStorageError("Redis is not reachable", key=key)

        try:
            value = await self.redis.get(self._key(key))
        except Exception as e:
            raise MemoryStorageError(f"Failed to read {key}", cause=e, key=key)

        if value is None:
            return None
        try:
            return json.loads(value)
        except ValueError as e:
            raise MemoryStorageError(f"Corrupt value for {key}", cause=e, key=key)

    async def set(self, key: str, value: Any):
        if not await self._ensure_connected():
            raise MemoryStorageError("Redis is not reachable", key=key)

        try:
            await self.redis.set(self._key(key), json.dumps(value, default=str))
        except Exception as e:
            raise MemoryStorageError(f"Failed to write {key}", cause=e, key=key)

    async def delete(self, key: str):
        if not await self._ensure_connected():
            raise MemoryStorageError("Redis is not reachable", key=key)

        try:
            await self.redis.delete(self._key(key))
        except Exception as e:
            raise MemoryStorageError(f"Failed to delete {key}", cause=e, key=key)

    async def close(self):
        await self.redis.aclose()


def create_store(data_dir: str, redis_url: Optional[str] = None) -> KeyValueStore:
    """Redis when a URL is configured, otherwise JSON files under ``data_dir``."""
    if redis_url:
        logger.info("Using Redis key-value store")
        return RedisStore(redis_url)

    directory = os.path.join(os.path.expanduser(data_dir), "store")
    logger.info(f"Using JSON file store at {directory}")
    return JsonFileStore(directory)
