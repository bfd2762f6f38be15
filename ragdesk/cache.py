"""Caching utilities for query embeddings using Redis.

Provides:
- get_redis: Cached Redis client from REDIS_URL with decode_responses.
- _key_for_embedding: Stable cache key derived from endpoint + model + text.
- get_cached_embedding: Fetch a cached query vector.
- set_cached_embedding: Store a query vector with TTL from settings.EMBEDDING_CACHE_TTL_SECONDS.

The cache is best-effort: Redis failures are logged and treated as a miss.
"""
import hashlib
import json
import logging
from typing import List, Optional

import redis

from ragdesk.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Return a cached Redis client configured from settings.REDIS_URL.

    Returns:
        redis.Redis: Client with decode_responses=True.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def _key_for_embedding(base_url: str, model: str, text: str) -> str:
    h = hashlib.sha256(f"{base_url}|{model}|{text}".encode("utf-8")).hexdigest()
    return f"ragdesk:emb:v1:{h}"


def get_cached_embedding(base_url: str, model: str, text: str) -> Optional[List[float]]:
    """Get a cached query embedding if present.

    Args:
        base_url: Embedding endpoint.
        model: Embedding model.
        text: Query text.

    Returns:
        Optional[List[float]]: The vector, or None on miss, disabled cache or Redis failure.
    """
    if not settings.EMBEDDING_CACHE_ENABLED:
        return None
    try:
        raw = get_redis().get(_key_for_embedding(base_url, model, text))
    except redis.RedisError as e:
        logger.warning("Embedding cache read failed: %s", e)
        return None
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def set_cached_embedding(base_url: str, model: str, text: str, vector: List[float]) -> None:
    """Store a query embedding under the computed key with TTL."""
    if not settings.EMBEDDING_CACHE_ENABLED:
        return
    try:
        get_redis().setex(
            _key_for_embedding(base_url, model, text), settings.EMBEDDING_CACHE_TTL_SECONDS, json.dumps(vector)
        )
    except redis.RedisError as e:
        logger.warning("Embedding cache write failed: %s", e)
