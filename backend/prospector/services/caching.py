from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

import redis
from ..core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

CACHE_PREFIX = "prospector"


def cache_key(namespace: str, *parts: str) -> str:
    """
    Build a namespaced key from free-text parts.

    Parts are normalised (stripped, lowercased) and hashed so that user input
    never ends up verbatim in a Redis key.
    """
    normalised = "|".join((p or "").strip().lower() for p in parts)
    digest = hashlib.sha256(normalised.encode("utf-8")).hexdigest()[:32]
    return f"{CACHE_PREFIX}:{namespace}:{digest}"


def _get_sync_redis() -> redis.Redis:
    """
    Create a fresh sync Redis client per call so Celery workers
    don't hold onto closed event loops.
    """
    return redis.from_url(
        str(settings.REDIS_URL),
        decode_responses=True,
        socket_timeout=5,
        socket_connect_timeout=5,
    )


async def cached_get(
    key: str,
    set_value: Any | None = None,
    ttl: int | None = None,
) -> Any:
    """
    Async TTL cache backed by Redis.

        coords = await cached_get(key)                           # read
        await cached_get(key, set_value=coords, ttl=86400)       # write

    Returns the cached (JSON-decoded) value, or None when missing. Redis being
    unavailable is treated as a cache miss.
    """
    client = _get_sync_redis()
    try:
        if set_value is None:
            val = client.get(key)
            if val is not None:
                return json.loads(val)
            return None

        serialized = json.dumps(set_value)
        if ttl is not None:
            client.set(key, serialized, ex=ttl)
        else:
            client.set(key, serialized)
        return set_value

    except redis.RedisError as e:
        logger.debug("Cache unavailable for %s: %s", key, e)
        return None
    finally:
        client.close()
