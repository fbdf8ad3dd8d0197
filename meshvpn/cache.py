from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Protocol

from cachetools import TLRUCache
from redis import asyncio as aioredis

log = logging.getLogger(__name__)


class Cache(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


class NullCache:
    """No backend configured: every read is a miss, every write is dropped."""

    async def get(self, key: str) -> str | None:
        return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None


class TTLMemoryCache:
    """Process-local cache for a single worker. Opt-in via CACHE_BACKEND=memory."""

    def __init__(self, maxsize: int = 4096, timer: Callable[[], float] = time.monotonic) -> None:
        # entries are (value, ttl) so every key expires on its own schedule
        self._data: TLRUCache = TLRUCache(maxsize=maxsize, ttu=lambda _k, item, now: now + item[1], timer=timer)

    async def get(self, key: str) -> str | None:
        item = self._data.get(key)
        return item[0] if item is not None else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._data[key] = (value, max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class RedisCache:
    def __init__(self, url: str) -> None:
        if not (url.startswith("redis://") or url.startswith("rediss://")):
            url = f"redis://{url}"
        self._client = aioredis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def close(self) -> None:
        await self._client.aclose()


class SafeCache:
    """Best-effort wrapper: backend errors are logged and degrade to a miss."""

    def __init__(self, backend: Cache) -> None:
        self.backend = backend
        self.last_error: str | None = None

    async def get(self, key: str) -> str | None:
        try:
            return await self.backend.get(key)
        except Exception as e:
            self._failed("get", key, e)
            return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self.backend.set(key, value, ttl_seconds)
        except Exception as e:
            self._failed("set", key, e)

    async def delete(self, key: str) -> None:
        try:
            await self.backend.delete(key)
        except Exception as e:
            self._failed("delete", key, e)

    async def get_json(self, key: str) -> Any | None:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            log.warning("cache_bad_json key=%s", key)
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.set(key, json.dumps(value, default=str), ttl_seconds)

    async def get_float(self, key: str) -> float | None:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            log.warning("cache_bad_float key=%s value=%r", key, raw)
            return None

    async def close(self) -> None:
        close = getattr(self.backend, "close", None)
        if close is not None:
            try:
                await close()
            except Exception:
                log.exception("cache_close_failed")

    def _failed(self, op: str, key: str, err: Exception) -> None:
        self.last_error = f"{type(err).__name__}: {err}"
        log.warning("cache_%s_failed key=%s err=%s", op, key, self.last_error)


def build_cache(redis_url: str, backend: str = "") -> SafeCache:
    """Pick a backend. Without REDIS_URL every call is a miss unless memory is asked for."""
    url = (redis_url or "").strip()
    backend = (backend or "").strip().lower()
    if backend == "memory":
        log.warning("cache_in_process single worker only")
        return SafeCache(TTLMemoryCache())
    if not url or url.lower() == "none" or backend == "none":
        log.warning("cache_disabled REDIS_URL not provided")
        return SafeCache(NullCache())
    return SafeCache(RedisCache(url))
