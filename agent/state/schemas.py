"""
ConversationState schema for one scheduling conversation.

The tool loop mutates a ConversationState in place during a turn: it appends
messages and replaces the checkpoint as tools succeed. The scheduling
service loads it before the turn and persists it afterwards.
"""

from typing import TypedDict
from uuid import UUID

from langchain_core.messages import BaseMessage

from agent.state.checkpoint import ConversationCheckpoint


class SchedulingContext(TypedDict, total=False):
    """
    Static facts about the conversation, fixed for the whole turn.

    Fields:
        appointment_id: AppointmentRequest primary key (also the conversation id)
        resource_id: Therapist identifier in the booking directory
        resource_name: Therapist display name
        resource_email: Therapist address (send_email allow-list)
        requester_id: Client identifier (distinct-requester counting)
        requester_name: Client display name
        requester_email: Client address (send_email allow-list)
        timezone: IANA zone for presenting times
    """

    appointment_id: UUID
    resource_id: str
    resource_name: str
    resource_email: str
    requester_id: str
    requester_name: str
    requester_email: str
    timezone: str


class ConversationState(TypedDict, total=False):
    """
    Mutable per-turn state.

    Fields:
        conversation_id: Key for checkpoint and message storage
        messages: Conversation history (LangChain messages, excluding system prompt)
        checkpoint: Current ConversationCheckpoint (None before the first action)
        context: SchedulingContext for this conversation
        escalation_triggered: Set when flag_for_human_review executed
        escalation_reason: Reason given by the model
    """

    conversation_id: str
    messages: list[BaseMessage]
    checkpoint: ConversationCheckpoint | None
    context: SchedulingContext
    escalation_triggered: bool
    escalation_reason: str | None
