"""
Distributed locks on Redis.

Ownership-tagged, TTL-bound mutual exclusion for cross-process singleton
jobs. Release and renew are atomic compare-then-act Lua scripts, so a
process can never release or extend a lock it no longer owns.

All operations are time-bounded; a slow Redis counts as failure.
"""

import asyncio
import logging
import os
import socket
import uuid

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

DEFAULT_OPERATION_TIMEOUT = 5.0

# KEYS[1] = lock key, ARGV[1] = owner token
# Returns 1 if released, 0 if not owned
RELEASE_LOCK_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
else
  return 0
end
"""

# KEYS[1] = lock key, ARGV[1] = owner token, ARGV[2] = new TTL in seconds
# Returns 1 if renewed, 0 if the lock belongs to someone else (or expired)
RENEW_LOCK_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('expire', KEYS[1], ARGV[2])
else
  return 0
end
"""


def generate_owner_token() -> str:
    """Unique lock owner identifier: host, pid and a random suffix."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex}"


async def acquire_lock(
    client: "redis.Redis",
    key: str,
    owner_token: str,
    ttl_seconds: int,
    timeout: float = DEFAULT_OPERATION_TIMEOUT,
) -> bool:
    """
    Attempt to acquire a lock with SET NX EX.

    Returns:
        True if acquired, False if held by another owner or Redis failed.
        A Redis failure never grants the lock.
    """
    try:
        async with asyncio.timeout(timeout):
            result = await client.set(key, owner_token, ex=ttl_seconds, nx=True)
    except (RedisError, asyncio.TimeoutError, OSError) as e:
        logger.warning(f"Failed to acquire lock | key={key} | error={type(e).__name__}: {e}")
        return False

    acquired = bool(result)
    logger.debug(f"Lock acquire | key={key} | acquired={acquired}")
    return acquired


async def release_lock(
    client: "redis.Redis",
    key: str,
    owner_token: str,
    timeout: float = DEFAULT_OPERATION_TIMEOUT,
) -> bool:
    """
    Release a lock only if owner_token still owns it.

    Returns:
        True if released; False if not owned (no-op) or on error. Never raises.
    """
    try:
        async with asyncio.timeout(timeout):
            result = await client.eval(RELEASE_LOCK_SCRIPT, 1, key, owner_token)
    except (RedisError, asyncio.TimeoutError, OSError) as e:
        logger.warning(f"Failed to release lock | key={key} | error={type(e).__name__}: {e}")
        return False

    released = int(result or 0) == 1
    if not released:
        logger.info(f"Lock not released, no longer owned | key={key}")
    return released


async def renew_lock(
    client: "redis.Redis",
    key: str,
    owner_token: str,
    ttl_seconds: int,
    timeout: float = DEFAULT_OPERATION_TIMEOUT,
) -> bool:
    """
    Extend the TTL of a lock only if owner_token still owns it.

    Returns:
        True if renewed, False if the lock was lost or Redis failed.
    """
    try:
        async with asyncio.timeout(timeout):
            result = await client.eval(RENEW_LOCK_SCRIPT, 1, key, owner_token, ttl_seconds)
    except (RedisError, asyncio.TimeoutError, OSError) as e:
        logger.warning(f"Failed to renew lock | key={key} | error={type(e).__name__}: {e}")
        return False

    return int(result or 0) == 1
