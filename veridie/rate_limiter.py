"""
Fixed-window rate limiting for webhook and availability endpoints.

Counters live in process memory and are mirrored to Redis when REDIS_URL is
set, so several workers converge on a shared count. Redis trouble never
blocks a request: the in-memory counter keeps working on its own.
"""

import logging
import os
import time
from threading import Lock
from typing import Optional

import redis
from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL")

# Format: {key: {'count': int, 'reset_time': int, 'last_redis_sync': int}}
memory_cache: dict[str, dict] = {}
cache_lock = Lock()

MEMORY_CACHE_SYNC_INTERVAL = 10  # Sync to Redis every 10 seconds

redis_client: Optional[redis.Redis] = None
_redis_disabled = False


def get_redis_client() -> Optional[redis.Redis]:
    """Lazily connect to Redis; None when not configured or unreachable"""
    global redis_client, _redis_disabled

    if redis_client is not None or _redis_disabled:
        return redis_client
    if not REDIS_URL:
        _redis_disabled = True
        return None

    try:
        client = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            health_check_interval=30,
        )
        client.ping()
        redis_client = client
        logger.info("📡 Redis connected for rate limiting")
    except redis.RedisError as e:
        logger.warning(f"⚠️ Redis unavailable, rate limiting is per-process only: {e}")
        _redis_disabled = True
    return redis_client


def _new_entry(now: int, window_seconds: int, count: int = 0) -> dict:
    return {"count": count, "reset_time": now + window_seconds, "last_redis_sync": now}


def check_rate_limit(key: str, limit: int, window_seconds: int) -> tuple[bool, int, int]:
    """
    Count one request against `key`.

    Returns:
        Tuple of (is_allowed, current_count, ttl_seconds)
    """
    now = int(time.time())
    client = get_redis_client()

    with cache_lock:
        entry = memory_cache.get(key)
        if entry is None:
            entry = _new_entry(now, window_seconds)
            if client is not None:
                try:
                    redis_count = client.get(key)
                    redis_ttl = client.ttl(key)
                    if redis_count and redis_ttl > 0:
                        entry = {
                            "count": int(redis_count),
                            "reset_time": now + redis_ttl,
                            "last_redis_sync": now,
                        }
                except redis.RedisError as e:
                    logger.warning(f"⚠️ Failed to load {key} from Redis: {e}")
            memory_cache[key] = entry

        if now >= entry["reset_time"]:
            entry.update(_new_entry(now, window_seconds))
            entry["last_redis_sync"] = 0

        is_allowed = entry["count"] < limit
        if is_allowed:
            entry["count"] += 1

        if client is not None and now - entry["last_redis_sync"] >= MEMORY_CACHE_SYNC_INTERVAL:
            try:
                client.set(key, entry["count"], ex=max(1, entry["reset_time"] - now))
                entry["last_redis_sync"] = now
            except redis.RedisError as e:
                logger.warning(f"⚠️ Failed to sync {key} to Redis: {e}")

        return is_allowed, entry["count"], max(0, entry["reset_time"] - now)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def create_rate_limiter(
    limit: int, window_seconds: int, key_prefix: str = "rate_limit", use_ip: bool = True
):
    """
    Create a rate limiter dependency with specific parameters

    Example usage:
        rate_limit_webhook = create_rate_limiter(limit=100, window_seconds=60, key_prefix="webhook_calendly", use_ip=False)

        @router.post("/events")
        async def handle(request: Request, _: None = Depends(rate_limit_webhook)):
            ...
    """

    async def rate_limiter(request: Request):
        key = f"{key_prefix}:{_client_ip(request)}" if use_ip else f"{key_prefix}:global"
        is_allowed, current_count, ttl = check_rate_limit(key, limit, window_seconds)

        if not is_allowed:
            logger.warning(f"🚫 Rate limit EXCEEDED for {key} - {current_count}/{limit}")
            raise HTTPException(
                status_code=429,
                detail={
                    "message": f"Rate limit exceeded. Maximum {limit} requests per {window_seconds} seconds.",
                    "retry_after": ttl,
                },
                headers={"Retry-After": str(ttl)},
            )

    return rate_limiter
