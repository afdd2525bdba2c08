"""
Chat model factory.

The model is called through shared.resilient_api, which owns retry policy,
so the client's own retries are disabled.
"""

import logging

from langchain_core.runnables import Runnable
from langchain_openai import ChatOpenAI

from agent.tools.scheduling_tools import SCHEDULING_TOOLS
from shared.config import Settings, get_settings

logger = logging.getLogger(__name__)


def get_chat_model(settings: Settings | None = None) -> Runnable:
    """Build the scheduling chat model with the scheduling tools bound."""
    settings = settings or get_settings()
    llm = ChatOpenAI(
        model=settings.LLM_MODEL,
        base_url=settings.LLM_BASE_URL,
        api_key=settings.LLM_API_KEY,
        temperature=settings.LLM_TEMPERATURE,
        request_timeout=settings.LLM_REQUEST_TIMEOUT_SECONDS,
        max_retries=0,
    )
    logger.info(f"Chat model configured | model={settings.LLM_MODEL} | tools={len(SCHEDULING_TOOLS)}")
    return llm.bind_tools(SCHEDULING_TOOLS)
