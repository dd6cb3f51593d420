# src/shared/redis.py
"""
Async Redis connector.

Redis is optional for this service: the database remains the source of truth and
Redis only receives dead-letter records for exhausted queue jobs.
"""
from __future__ import annotations

from typing import Optional

from redis.asyncio import Redis

from src.shared.config import get_settings

_redis: Optional[Redis] = None


def create_redis(url: Optional[str] = None) -> Optional[Redis]:
    url = url or get_settings().redis_url
    if not url:
        return None
    return Redis.from_url(url, decode_responses=True, socket_timeout=2.0)


async def get_redis() -> Optional[Redis]:
    """Lazy singleton client; None when REDIS_URL is unset."""
    global _redis
    if _redis is None:
        _redis = create_redis()
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
    _redis = None
