"""Ephemeral storage for file bytes that are waiting for review.

Two backends share one interface: Redis in deployed environments and an
in-process dictionary for local runs and tests. Both honour per-key expiry.
"""
import asyncio
import time
from typing import Dict, Optional, Protocol, Tuple

import structlog
from redis import asyncio as aioredis

from upload_review.core.errors import TempFileNotFoundError

logger = structlog.get_logger(__name__)


class TempStorage(Protocol):
    async def store(self, key: str, data: bytes, ttl_seconds: Optional[int] = None) -> None: ...

    async def get(self, key: str) -> bytes: ...

    async def delete(self, key: str) -> None: ...

    async def set_ttl(self, key: str, ttl_seconds: int) -> None: ...

    async def close(self) -> None: ...


class InMemoryTempStorage:
    def __init__(self, clock=time.monotonic):
        self._data: Dict[str, Tuple[bytes, Optional[float]]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    async def store(self, key: str, data: bytes, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        async with self._lock:
            self._data[key] = (bytes(data), expires_at)

    async def get(self, key: str) -> bytes:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                raise TempFileNotFoundError(key)
            data, expires_at = entry
            if self._expired(expires_at):
                del self._data[key]
                raise TempFileNotFoundError(key)
            return data

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def set_ttl(self, key: str, ttl_seconds: int) -> None:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                raise TempFileNotFoundError(key)
            self._data[key] = (entry[0], self._clock() + ttl_seconds)

    async def purge_expired(self) -> int:
        async with self._lock:
            expired = [k for k, (_, exp) in self._data.items() if self._expired(exp)]
            for key in expired:
                del self._data[key]
        if expired:
            logger.info("temp_storage.purged_expired", count=len(expired))
        return len(expired)

    def __contains__(self, key: str) -> bool:
        entry = self._data.get(key)
        return entry is not None and not self._expired(entry[1])

    async def close(self) -> None:
        self._data.clear()


class RedisTempStorage:
    def __init__(self, client: aioredis.Redis, prefix: str = ""):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "") -> "RedisTempStorage":
        client = aioredis.Redis.from_url(
            url,
            socket_connect_timeout=5,
            socket_timeout=3,
        )
        return cls(client, prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def store(self, key: str, data: bytes, ttl_seconds: Optional[int] = None) -> None:
        # value and expiry in a single SET
        await self._client.set(self._key(key), data, ex=ttl_seconds)

    async def get(self, key: str) -> bytes:
        data = await self._client.get(self._key(key))
        if data is None:
            raise TempFileNotFoundError(key)
        return data

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def set_ttl(self, key: str, ttl_seconds: int) -> None:
        applied = await self._client.expire(self._key(key), ttl_seconds)
        if not applied:
            raise TempFileNotFoundError(key)

    async def ping(self) -> bool:
        return await self._client.ping()

    async def close(self) -> None:
        await self._client.aclose()


async def create_temp_storage(redis_url: Optional[str], prefix: str) -> "TempStorage":
    """Redis when a URL is configured, otherwise the in-process store."""
    if not redis_url:
        logger.warning("temp_storage.in_memory", reason="REDIS_URL not set")
        return InMemoryTempStorage()

    storage = RedisTempStorage.from_url(redis_url, prefix)
    try:
        await storage.ping()
    except Exception as e:
        await storage.close()
        raise RuntimeError(f"Failed to connect to Redis: {str(e)}") from e
    return storage
