from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError

from stsaccess.core.config import get_settings


logger = logging.getLogger(__name__)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()

_local_locks: dict[str, asyncio.Lock] = {}
_local_owners: dict[str, str] = {}


async def get_resilience_redis() -> Redis | None:
    # Reuse a shared Redis connection for cross-worker coordination.
    settings = get_settings()
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("resilience_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


@dataclass(slots=True)
class RunLock:
    key: str
    token: str
    redis: Any | None
    local: bool


def _local_lock(key: str) -> asyncio.Lock:
    lock = _local_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _local_locks[key] = lock
    return lock


async def acquire_run_lock(key: str, *, ttl_s: int) -> RunLock | None:
    """Take a non-blocking, TTL-bounded lock shared across workers.

    Returns None when another holder owns the lock. Falls back to an
    in-process lock when Redis is not reachable.
    """
    token = uuid4().hex
    redis = await get_resilience_redis()
    if redis is not None:
        try:
            acquired = await redis.set(key, token, nx=True, ex=max(5, int(ttl_s)))
        except RedisError as exc:
            logger.warning("run_lock_redis_failed key=%s", key, exc_info=exc)
        else:
            if not acquired:
                return None
            return RunLock(key=key, token=token, redis=redis, local=False)

    # Fall back to an in-process lock for deterministic local and test environments.
    lock = _local_lock(key)
    if lock.locked():
        return None
    await lock.acquire()
    _local_owners[key] = token
    return RunLock(key=key, token=token, redis=None, local=True)


async def release_run_lock(lock: RunLock) -> None:
    # Release only if this holder still owns the token to avoid clobbering a newer lock holder.
    if lock.local:
        local = _local_lock(lock.key)
        if local.locked() and _local_owners.get(lock.key) == lock.token:
            _local_owners.pop(lock.key, None)
            local.release()
        return
    if lock.redis is None:
        return
    try:
        current = await lock.redis.get(lock.key)
        value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
        if value == lock.token:
            await lock.redis.delete(lock.key)
    except RedisError as exc:
        # The TTL frees the lock eventually.
        logger.warning("run_lock_release_failed key=%s", lock.key, exc_info=exc)
