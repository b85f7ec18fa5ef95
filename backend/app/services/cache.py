from __future__ import annotations

import json
import threading
import time
from typing import Any

import redis

from app.utils.settings import get_settings


class CacheBackend:
    def get(self, key: str) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        raise NotImplementedError


class RedisCache(CacheBackend):
    def __init__(self, redis_url: str):
        self.client = redis.Redis.from_url(redis_url, decode_responses=True, socket_connect_timeout=1)
        self.client.ping()

    def get(self, key: str) -> Any:
        raw = self.client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        raw = json.dumps(value, default=str)
        if ttl_seconds:
            self.client.setex(key, ttl_seconds, raw)
        else:
            self.client.set(key, raw)


class InMemoryCache(CacheBackend):
    def __init__(self):
        self._store: dict[str, tuple[float | None, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            data = self._store.get(key)
            if data is None:
                return None
            expire_at, value = data
            if expire_at is not None and expire_at < time.time():
                self._store.pop(key, None)
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        expire_at = time.time() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._store[key] = (expire_at, value)


def coordinate_key(namespace: str, lat: float, lng: float, *, precision: int = 2) -> str:
    """Cache key for a location rounded to ~1 km so nearby routes share entries."""
    return f"{namespace}:{round(float(lat), precision)}:{round(float(lng), precision)}"


class LocationCache:
    """Provider payloads keyed by rounded coordinate.

    Backend failures are treated as misses; a cache outage must never fail a
    provider call.
    """

    def __init__(self, namespace: str, ttl_seconds: int, backend: CacheBackend | None = None) -> None:
        self.namespace = namespace
        self.ttl_seconds = int(ttl_seconds)
        self._backend = backend

    @property
    def backend(self) -> CacheBackend:
        return self._backend or get_cache()

    def get(self, lat: float, lng: float) -> dict[str, Any] | None:
        if self.ttl_seconds <= 0:
            return None
        try:
            value = self.backend.get(coordinate_key(self.namespace, lat, lng))
        except redis.RedisError:
            return None
        return value if isinstance(value, dict) else None

    def put(self, lat: float, lng: float, payload: dict[str, Any]) -> None:
        if self.ttl_seconds <= 0:
            return
        try:
            self.backend.set(coordinate_key(self.namespace, lat, lng), payload, ttl_seconds=self.ttl_seconds)
        except redis.RedisError:
            return


_CACHE: CacheBackend | None = None


def get_cache() -> CacheBackend:
    global _CACHE
    if _CACHE is not None:
        return _CACHE

    settings = get_settings()
    try:
        _CACHE = RedisCache(settings.redis_url)
    except Exception:  # noqa: BLE001
        _CACHE = InMemoryCache()
    return _CACHE


def reset_cache() -> None:
    global _CACHE
    _CACHE = None
