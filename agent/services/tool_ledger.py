"""
Tool execution ledger - idempotency for side-effecting tool calls.

A tool call is identified by (appointment, tool name, canonical arguments).
Before executing, the executor claims the call with SET NX; a second claim of
the same call within the TTL (a retried turn, a duplicate webhook) fails and
the tool is skipped. A claim is released again when the tool fails, so the
model can retry it.

Key pattern: tool:executed:{sha256[:32]}
"""

import hashlib
import json
import logging
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

TOOL_EXECUTION_PREFIX = "tool:executed:"
TOOL_EXECUTION_TTL_SECONDS = 3600


def tool_call_key(appointment_id: str, tool_name: str, args: dict[str, Any]) -> str:
    """Deterministic ledger key; argument order does not matter."""
    payload = json.dumps(
        {"appointment_id": str(appointment_id), "tool": tool_name, "args": args},
        sort_keys=True,
        default=str,
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]
    return f"{TOOL_EXECUTION_PREFIX}{digest}"


class ToolExecutionLedger:
    def __init__(self, client: "redis.Redis", ttl_seconds: int = TOOL_EXECUTION_TTL_SECONDS):
        self.client = client
        self.ttl_seconds = ttl_seconds

    async def claim(self, appointment_id: str, tool_name: str, args: dict[str, Any]) -> bool:
        """
        Claim a tool call for execution.

        Returns:
            False if the same call was already claimed within the TTL

        Raises:
            RedisError: Ledger unavailable (nothing has executed yet)
        """
        key = tool_call_key(appointment_id, tool_name, args)
        claimed = await self.client.set(key, tool_name, ex=self.ttl_seconds, nx=True)
        if not claimed:
            logger.info(
                f"Duplicate tool call detected | tool={tool_name} | appointment_id={appointment_id}",
                extra={"tool_name": tool_name, "appointment_id": str(appointment_id)},
            )
        return bool(claimed)

    async def release(self, appointment_id: str, tool_name: str, args: dict[str, Any]) -> None:
        """Forget a claim after the tool failed."""
        key = tool_call_key(appointment_id, tool_name, args)
        try:
            await self.client.delete(key)
        except RedisError as e:
            logger.warning(
                f"Failed to release tool claim, retry blocked until TTL | tool={tool_name} | "
                f"appointment_id={appointment_id} | error={e}"
            )
