"""Prompt builder for the assistant."""

from datetime import datetime
from typing import Any

SYSTEM_PROMPT_BASE = """You are Kora, a personal assistant with a persistent memory.

There is one ongoing conversation with your owner, shared across every channel they use. Treat earlier messages as things that really happened, and keep continuity with them.

Current time: {now}

You have access to the following tools:
{tools_description}

When the recent conversation doesn't cover what the user is asking about, search your memory before saying you don't know.
Keep replies short and direct unless asked for detail."""


def build_system_prompt(
    tools_schema: list[dict[str, Any]],
    memory_block: str = "",
    facts_block: str = "",
    now: datetime | None = None,
) -> str:
    """Build the system prompt with tools, recalled memories and known facts.

    Args:
        tools_schema: List of tool schemas for the LLM.
        memory_block: Optional "Earlier Context" block from retrieval.
        facts_block: Optional "Known Facts" block from the fact store.
        now: Time to show the model; defaults to local now.

    Returns:
        Complete system prompt string.
    """
    if not tools_schema:
        tools_desc = "No tools available."
    else:
        tools_desc = "\n".join(
            f"- {t['function']['name']}: {t['function']['description']}"
            for t in tools_schema
        )

    now = now or datetime.now().astimezone()
    prompt = SYSTEM_PROMPT_BASE.format(
        now=now.strftime("%A, %B %d %Y, %I:%M %p %Z").strip(),
        tools_description=tools_desc,
    )

    for block in (facts_block, memory_block):
        if block.strip():
            prompt += "\n\n" + block.strip()

    return prompt


def format_tool_result(tool_name: str, success: bool, output: str, error: str | None) -> str:
    """Format a tool result for the conversation."""
    if success:
        return f"[{tool_name}] Success:\n{output}"
    return f"[{tool_name}] Error: {error}"
