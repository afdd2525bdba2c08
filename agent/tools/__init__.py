"""
Scheduling tools exposed to the language model.

Argument models and OpenAI-format definitions live in scheduling_tools;
execution lives in agent.services.tool_executor.
"""

from agent.tools.scheduling_tools import (
    SCHEDULING_TOOLS,
    SIDE_EFFECT_TOOLS,
    ToolArgumentError,
    is_side_effect_tool,
    parse_tool_args,
)

__all__ = [
    "SCHEDULING_TOOLS",
    "SIDE_EFFECT_TOOLS",
    "ToolArgumentError",
    "is_side_effect_tool",
    "parse_tool_args",
]
