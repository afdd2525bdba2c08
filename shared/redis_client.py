"""
Shared Redis client and stream writes.

Redis holds:
- Conversation checkpoints and message history (agent.state.checkpoint_store)
- Tool execution idempotency records (agent.services.tool_ledger)
- Distributed locks for singleton background jobs (shared.redis_locks)
- Deferred agent turns queued while the LLM circuit is open (Redis Streams)
"""

import json
import logging
from functools import lru_cache
from typing import Any

import redis.asyncio as redis
from redis import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from shared.config import get_settings

# Redis Streams constants
DEFERRED_TURNS_STREAM = "deferred_turns_stream"
STREAM_MAX_LEN = 10000  # Approximate trim to keep stream bounded

logger = logging.getLogger(__name__)


class RedisUnavailableError(Exception):
    """Raised when a Redis write that callers depend on cannot be performed."""


@lru_cache
def get_redis_client() -> "redis.Redis":
    """
    Process-wide Redis client (pooled, retries on timeout, pings every 30s).

    Key layout:
        conversation:{id}:checkpoint, conversation:{id}:messages
        tool:executed:{hash}
        lock:{job_name}
    """
    settings = get_settings()

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            max_connections=20,
            decode_responses=True,
            retry_on_timeout=True,
            health_check_interval=30,
        )

        logger.info(
            f"Redis client initialized: {settings.REDIS_URL} "
            f"(max_connections=20, retry_on_timeout=True, health_check_interval=30s)"
        )
        return client

    except RedisConnectionError as e:
        logger.error(f"Redis connection failed: {e}", exc_info=True)
        raise


async def close_redis_client() -> None:
    """Close the pooled client and drop it from the cache (worker shutdown)."""
    try:
        client = get_redis_client()
        await client.aclose()
        logger.info("Redis client closed")
    except RedisError as e:
        logger.warning(f"Error closing Redis client: {e}")
    finally:
        get_redis_client.cache_clear()


# =============================================================================
# Redis Streams Functions (Persistent Message Delivery)
# =============================================================================


async def add_to_stream(
    stream: str,
    message: dict[str, Any],
    max_len: int = STREAM_MAX_LEN,
    client: "redis.Redis | None" = None,
) -> str:
    """
    Add a message to a Redis Stream with automatic trimming.

    Stream messages persist until explicitly acknowledged, so work queued
    while a dependency is down survives worker restarts.

    Args:
        stream: Name of the Redis Stream
        message: Message dict to add (will be JSON-serialized)
        max_len: Maximum stream length (approximate trimming for performance)
        client: Redis client (defaults to the process singleton)

    Returns:
        Stream message ID (e.g., "1234567890123-0")

    Raises:
        RedisUnavailableError: If the message could not be written
    """
    client = client or get_redis_client()

    try:
        json_message = json.dumps(message, default=str)

        message_id = await client.xadd(
            stream,
            {"data": json_message},
            maxlen=max_len,
            approximate=True,
        )

        logger.debug(
            f"Message added to stream '{stream}': id={message_id}, "
            f"data={json_message[:100]}..."
        )
        return message_id

    except RedisError as e:
        logger.error(f"Redis error adding to stream '{stream}': {e}")
        raise RedisUnavailableError(f"Could not add message to stream '{stream}'") from e
