"""
Conversation checkpoint and history persistence on Redis.

Key patterns:
    conversation:{conversation_id}:checkpoint  - ConversationCheckpoint JSON
    conversation:{conversation_id}:messages    - LangChain message dicts (JSON list)

Checkpoints are never deleted, only overwritten. No transactional coupling
to the booking database is assumed.
"""

import json
import logging
from typing import Protocol

import redis.asyncio as redis
from langchain_core.messages import BaseMessage, ToolMessage, messages_from_dict, messages_to_dict
from pydantic import ValidationError

from agent.state.checkpoint import ConversationCheckpoint

logger = logging.getLogger(__name__)

CHECKPOINT_KEY = "conversation:{conversation_id}:checkpoint"
MESSAGES_KEY = "conversation:{conversation_id}:messages"


class CheckpointStore(Protocol):
    async def load(self, conversation_id: str) -> ConversationCheckpoint | None: ...

    async def save(self, conversation_id: str, checkpoint: ConversationCheckpoint) -> None: ...


class RedisConversationStore:
    """CheckpointStore plus message history, backed by Redis strings."""

    def __init__(self, client: "redis.Redis", max_messages: int = 40):
        self.client = client
        self.max_messages = max_messages

    async def load(self, conversation_id: str) -> ConversationCheckpoint | None:
        raw = await self.client.get(CHECKPOINT_KEY.format(conversation_id=conversation_id))
        if raw is None:
            return None
        try:
            return ConversationCheckpoint.model_validate_json(raw)
        except ValidationError as e:
            logger.error(
                f"Corrupt checkpoint ignored | conversation_id={conversation_id} | error={e}",
                extra={"conversation_id": conversation_id},
            )
            return None

    async def save(self, conversation_id: str, checkpoint: ConversationCheckpoint) -> None:
        await self.client.set(
            CHECKPOINT_KEY.format(conversation_id=conversation_id),
            checkpoint.model_dump_json(),
        )
        logger.debug(
            f"Checkpoint saved | conversation_id={conversation_id} | stage={checkpoint.stage.value}",
            extra={"conversation_id": conversation_id},
        )

    async def load_messages(self, conversation_id: str) -> list[BaseMessage]:
        raw = await self.client.get(MESSAGES_KEY.format(conversation_id=conversation_id))
        if raw is None:
            return []
        try:
            return messages_from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(
                f"Corrupt message history ignored | conversation_id={conversation_id} | error={e}",
                extra={"conversation_id": conversation_id},
            )
            return []

    async def save_messages(self, conversation_id: str, messages: list[BaseMessage]) -> None:
        window = messages[-self.max_messages:] if self.max_messages else messages
        # A window must not open on tool results whose AI call was trimmed
        while window and isinstance(window[0], ToolMessage):
            window = window[1:]
        await self.client.set(
            MESSAGES_KEY.format(conversation_id=conversation_id),
            json.dumps(messages_to_dict(window), default=str),
        )
