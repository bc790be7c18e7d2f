"""
Cross-instance mutex around a tutor's schedule.

The authoritative guard is the ``tutor_schedule_locks`` row taken with
``SELECT ... FOR UPDATE`` inside the writing transaction. This redis mutex
sits in front of it so instances contending for the same tutor back off
before opening a transaction. It fails open when redis is unreachable.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
import time
from typing import Iterator, Optional

from redis import Redis
from redis.exceptions import RedisError

from tutorflow.core.config import settings
from tutorflow.monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

_SYNC_REDIS: Optional[Redis] = None
_SYNC_REDIS_LOCK = threading.Lock()


def _lock_key(tutor_id: str) -> str:
    return f"tutorflow:lock:tutor:{tutor_id}:schedule"


def _get_sync_redis() -> Optional[Redis]:
    global _SYNC_REDIS
    if _SYNC_REDIS is not None:
        return _SYNC_REDIS
    with _SYNC_REDIS_LOCK:
        if _SYNC_REDIS is not None:
            return _SYNC_REDIS
        try:
            client = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=1,
            )
            client.ping()
        except (RedisError, OSError) as exc:
            logger.warning("tutor_lock_redis_unavailable: %s", exc)
            return None
        _SYNC_REDIS = client
        return _SYNC_REDIS


def acquire_tutor_lock(tutor_id: str, ttl_s: Optional[int] = None) -> bool:
    """Try to take the mutex; returns True when held or when redis is unavailable."""
    if not settings.redis_locks_enabled:
        return True
    client = _get_sync_redis()
    if client is None:
        prometheus_metrics.record_tutor_lock("acquire", "redis_unavailable")
        return True
    ttl = ttl_s or settings.tutor_lock_ttl_seconds
    try:
        acquired = bool(client.set(_lock_key(tutor_id), str(time.time()), nx=True, ex=ttl))
    except RedisError as exc:
        prometheus_metrics.record_tutor_lock("acquire", "error")
        logger.warning(
            "tutor_lock_acquire_failed",
            extra={"tutor_id": tutor_id, "error": str(exc), "error_type": type(exc).__name__},
        )
        return True
    prometheus_metrics.record_tutor_lock("acquire", "success" if acquired else "blocked")
    return acquired


def release_tutor_lock(tutor_id: str) -> None:
    if not settings.redis_locks_enabled:
        return
    client = _get_sync_redis()
    if client is None:
        return
    try:
        deleted = client.delete(_lock_key(tutor_id))
        prometheus_metrics.record_tutor_lock("release", "success" if deleted else "not_found")
    except RedisError as exc:
        prometheus_metrics.record_tutor_lock("release", "error")
        logger.warning(
            "tutor_lock_release_failed",
            extra={"tutor_id": tutor_id, "error": str(exc), "error_type": type(exc).__name__},
        )


@contextmanager
def tutor_schedule_lock(tutor_id: str, ttl_s: Optional[int] = None) -> Iterator[bool]:
    """Hold the redis mutex for the duration of the block when it could be taken."""
    acquired = acquire_tutor_lock(tutor_id, ttl_s=ttl_s)
    try:
        yield acquired
    finally:
        if acquired:
            release_tutor_lock(tutor_id)
