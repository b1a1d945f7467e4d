"""
Shared async Redis client for the listing cache and the view guard.

One redis.asyncio client over an explicit ConnectionPool, created in the
FastAPI lifespan (or by the CLI) and closed on shutdown. Responses are
decoded to str: every cached value is JSON text or a set member. Short
socket timeouts keep a slow or unreachable cache from stalling requests,
since every caller degrades on RedisError.

All keys are namespaced with REDIS_ENV so several deployments can share an
instance.
"""

import logging
import os

import redis.asyncio as aioredis
from redis.asyncio.connection import ConnectionPool

logger = logging.getLogger(__name__)

REDIS_HOST: str = os.getenv("REDIS_HOST", "redis")
REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
ENV_PREFIX: str = os.getenv("REDIS_ENV", "unknown_env")

# Seconds before a cache command gives up and the caller falls back to the store.
_SOCKET_TIMEOUT: float = 2.0
# Keys deleted per DEL call when evicting by pattern.
_DELETE_BATCH_SIZE: int = 500

_pool: ConnectionPool | None = None
_client: aioredis.Redis | None = None


def redis_key(*parts: str) -> str:
    """Join key parts with ':' under the environment prefix."""
    return ":".join((ENV_PREFIX, *parts))


def get_redis_client() -> aioredis.Redis:
    if _client is None:
        raise RuntimeError("Redis client is not initialized; call init_redis() first")
    return _client


async def init_redis(max_connections: int = 20) -> None:
    """Create the pool and client, then ping so startup fails fast when Redis is down."""
    global _pool, _client
    _pool = ConnectionPool(
        host=REDIS_HOST,
        port=REDIS_PORT,
        max_connections=max_connections,
        decode_responses=True,
        socket_timeout=_SOCKET_TIMEOUT,
        socket_connect_timeout=_SOCKET_TIMEOUT,
    )
    _client = aioredis.Redis(connection_pool=_pool)
    await _client.ping()
    logger.info("Redis client ready at %s:%d (key prefix %s)", REDIS_HOST, REDIS_PORT, ENV_PREFIX)


async def close_redis() -> None:
    global _pool, _client
    if _client is not None:
        await _client.aclose()
    if _pool is not None:
        await _pool.aclose()
    _pool = None
    _client = None


async def check_redis() -> str:
    """'ok' when a PING succeeds, otherwise the error message. Never raises."""
    try:
        await get_redis_client().ping()
    except Exception as e:
        return str(e)
    return "ok"


async def delete_by_pattern(pattern: str) -> int:
    """
    Delete every key matching an already-prefixed glob pattern.

    Keys are discovered with SCAN (never KEYS) and deleted in batches.

    Returns:
        Number of keys deleted.
    """
    client = get_redis_client()
    removed = 0
    batch: list[str] = []
    async for key in client.scan_iter(match=pattern, count=_DELETE_BATCH_SIZE):
        batch.append(key)
        if len(batch) >= _DELETE_BATCH_SIZE:
            removed += int(await client.delete(*batch))
            batch = []
    if batch:
        removed += int(await client.delete(*batch))
    return removed
