"""Redis client factory and health checks."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional, Tuple

from redis import Redis

from src.core.config import get_settings


@lru_cache(maxsize=1)
def get_client() -> Redis:
    """Shared command connection for locks and event publishing."""

    settings = get_settings()
    return Redis.from_url(settings.redis_url, decode_responses=True)


@lru_cache(maxsize=1)
def get_queue_connection() -> Redis:
    """Connection for rq; job data is pickled, so responses must stay as bytes."""

    settings = get_settings()
    return Redis.from_url(settings.redis_url)


def create_subscriber_client() -> Redis:
    """Dedicated connection for pub/sub; a subscribed connection cannot run other commands."""

    settings = get_settings()
    return Redis.from_url(settings.redis_url, decode_responses=True, health_check_interval=30)


def test_connection() -> Tuple[bool, Optional[str]]:
    try:
        get_client().ping()
        return True, None
    except Exception as exc:  # pragma: no cover
        return False, str(exc)
