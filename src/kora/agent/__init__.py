"""LLM turn execution."""

from .loop import AgentConfig, AgentLoop, AgentResult, StopReason
from .prompt import build_system_prompt, format_tool_result

__all__ = [
    "AgentConfig",
    "AgentLoop",
    "AgentResult",
    "StopReason",
    "build_system_prompt",
    "format_tool_result",
]
