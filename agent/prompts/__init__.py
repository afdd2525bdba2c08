"""
Prompt loading utilities for the scheduling agent.

This module loads the system prompt template from disk and fills in the
per-conversation context (parties, current stage, local time).
"""

import logging
from datetime import datetime
from pathlib import Path

import pytz

from agent.state.checkpoint import (
    ConversationCheckpoint,
    get_stage_description,
    get_valid_actions_for_stage,
)
from agent.state.schemas import SchedulingContext

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Europe/London"


def load_scheduling_system_prompt() -> str:
    """
    Load the scheduling system prompt template from disk.

    Returns:
        str: Prompt template with {placeholders}.

    Raises:
        No exceptions raised - returns fallback template on errors.
    """
    prompt_path = Path(__file__).parent / "scheduling_system_prompt.md"
    fallback_prompt = (
        "You are a scheduling coordinator arranging a session between "
        "{requester_name} ({requester_email}) and {resource_name} ({resource_email}). "
        "Current stage: {stage_description}. Valid next actions:\n{valid_actions}\n"
        "Current time: {current_datetime} ({timezone}). Use tools and flag for human "
        "review when unsure."
    )

    try:
        with open(prompt_path, "r", encoding="utf-8") as f:
            prompt = f.read()

        if len(prompt) < 100:
            logger.error(
                f"System prompt too short ({len(prompt)} characters), using fallback"
            )
            return fallback_prompt

        logger.debug(f"Loaded scheduling system prompt ({len(prompt)} characters)")
        return prompt

    except OSError as e:
        logger.error(f"Error reading system prompt file {prompt_path}: {e}, using fallback")
        return fallback_prompt


def build_system_prompt(
    context: SchedulingContext,
    checkpoint: ConversationCheckpoint | None,
    now: datetime | None = None,
) -> str:
    """
    Render the system prompt for one turn.

    Args:
        context: Parties of the conversation
        checkpoint: Current checkpoint; None means the conversation just started
        now: Override for the current time (tests)
    """
    tz_name = context.get("timezone") or DEFAULT_TIMEZONE
    try:
        tz = pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone, using {DEFAULT_TIMEZONE} | timezone={tz_name}")
        tz_name = DEFAULT_TIMEZONE
        tz = pytz.timezone(tz_name)

    current = (now or datetime.now(pytz.utc)).astimezone(tz)
    stage = checkpoint.stage if checkpoint else None

    return load_scheduling_system_prompt().format(
        stage_description=get_stage_description(stage),
        valid_actions=get_valid_actions_for_stage(stage),
        requester_name=context.get("requester_name") or "the client",
        requester_email=context.get("requester_email") or "unknown",
        resource_name=context.get("resource_name") or "the therapist",
        resource_email=context.get("resource_email") or "unknown",
        current_datetime=current.strftime("%A %d %B %Y, %H:%M"),
        timezone=tz_name,
    )
