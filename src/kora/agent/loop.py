"""Agent loop: one LLM turn over the shared conversation log."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from groq import AsyncGroq

from ..conversation.state import strip_thinking
from ..tools import ToolRegistry
from .prompt import build_system_prompt, format_tool_result

if TYPE_CHECKING:
    from ..conversation import ConversationState

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "llama-3.3-70b-versatile"


class StopReason(Enum):
    """Reasons for stopping the agent loop."""

    COMPLETE = "complete"
    MAX_TURNS = "max_turns"
    REPEATED_CALL = "repeated_call"
    CONSECUTIVE_ERRORS = "consecutive_errors"


STOP_MESSAGES = {
    StopReason.MAX_TURNS: "Max turns reached",
    StopReason.REPEATED_CALL: "Stopped: repeated tool call detected",
    StopReason.CONSECUTIVE_ERRORS: "Stopped: {errors} consecutive errors",
}


@dataclass
class AgentConfig:
    """Configuration for the agent loop."""

    model: str = DEFAULT_MODEL
    max_turns: int = 10
    max_consecutive_errors: int = 3
    max_repeated_calls: int = 2
    max_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_turns < 1:
            raise ValueError("max_turns must be >= 1")


@dataclass
class AgentResult:
    """Result from running the agent loop."""

    response: str
    stop_reason: StopReason
    turns: int
    tool_calls: list[dict[str, Any]] = field(default_factory=list)


class AgentLoop:
    """Think, act, observe until the model answers without tool calls.

    Tool-call sub-turns are kept aside and committed to the conversation
    together with the final answer. If the LLM call raises, the log is
    left untouched so the caller can roll back the user message.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        config: AgentConfig | None = None,
        groq_client: AsyncGroq | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or AgentConfig()
        self.client = groq_client or AsyncGroq(api_key=os.getenv("GROQ_API_KEY"))
        self._last_tool_call: str | None = None
        self._repeated_count: int = 0
        self._consecutive_errors: int = 0

    def _reset_state(self) -> None:
        """Reset loop state for a new run."""
        self._last_tool_call = None
        self._repeated_count = 0
        self._consecutive_errors = 0

    def _check_repeated_call(self, tool_call: dict[str, Any]) -> bool:
        """Check if this is a repeated tool call."""
        call_sig = json.dumps(tool_call, sort_keys=True)
        if call_sig == self._last_tool_call:
            self._repeated_count += 1
            return self._repeated_count >= self.config.max_repeated_calls
        self._last_tool_call = call_sig
        self._repeated_count = 1
        return False

    def _commit(
        self,
        state: ConversationState,
        sub_turns: list[dict[str, Any]],
        response: str,
        stop_reason: StopReason,
        turns: int,
        tool_calls: list[dict[str, Any]],
    ) -> AgentResult:
        for entry in sub_turns:
            state.append_raw_message(entry)
        stored = state.append_assistant_response(response)

        if stop_reason is not StopReason.COMPLETE:
            logger.warning("Agent stopped early: %s after %d turns", stop_reason.value, turns)

        return AgentResult(
            response=stored["content"],
            stop_reason=stop_reason,
            turns=turns,
            tool_calls=tool_calls,
        )

    @staticmethod
    def _parse_arguments(raw: str | None) -> dict[str, Any]:
        try:
            args = json.loads(raw or "{}")
        except json.JSONDecodeError:
            return {}
        return args if isinstance(args, dict) else {}

    async def _run_tool_calls(
        self,
        tool_calls: list[Any],
        tool_calls_log: list[dict[str, Any]],
    ) -> tuple[list[dict[str, Any]], StopReason | None]:
        """Execute one batch of tool calls.

        Returns:
            The tool result entries, or a stop reason when a breaker trips.
            A tripped batch is discarded whole.
        """
        results: list[dict[str, Any]] = []

        for tool_call in tool_calls:
            tool_name = tool_call.function.name
            tool_args = self._parse_arguments(tool_call.function.arguments)

            call_record = {"name": tool_name, "args": tool_args}
            tool_calls_log.append(call_record)

            if self._check_repeated_call(call_record):
                return [], StopReason.REPEATED_CALL

            result = await self.registry.dispatch(tool_name, tool_args)
            results.append({
                "role": "tool",
                "tool_call_id": tool_call.id,
                "content": format_tool_result(
                    tool_name, result.success, result.output, result.error
                ),
            })

            if result.success:
                self._consecutive_errors = 0
                continue
            self._consecutive_errors += 1
            if self._consecutive_errors >= self.config.max_consecutive_errors:
                return [], StopReason.CONSECUTIVE_ERRORS

        return results, None

    async def run(
        self,
        state: ConversationState,
        memory_block: str = "",
        facts_block: str = "",
    ) -> AgentResult:
        """Run one turn against the conversation log.

        The log is expected to end with the user's message.

        Args:
            state: The shared conversation state.
            memory_block: Recalled memories for the system prompt.
            facts_block: Known facts for the system prompt.

        Returns:
            AgentResult with response and metadata.
        """
        self._reset_state()

        tools_schema = self.registry.get_tools_schema()
        messages: list[dict[str, Any]] = [
            {
                "role": "system",
                "content": build_system_prompt(tools_schema, memory_block, facts_block),
            },
        ]
        messages.extend(state.messages_for_llm())

        sub_turns: list[dict[str, Any]] = []
        tool_calls_log: list[dict[str, Any]] = []

        for turn in range(self.config.max_turns):
            logger.debug("LLM request: %d messages, turn %d", len(messages), turn + 1)

            response = await self.client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                tools=tools_schema or None,
                tool_choice="auto" if tools_schema else None,
                max_tokens=self.config.max_tokens,
            )
            assistant_message = response.choices[0].message

            if not assistant_message.tool_calls:
                return self._commit(
                    state,
                    sub_turns,
                    strip_thinking(assistant_message.content or ""),
                    StopReason.COMPLETE,
                    turn + 1,
                    tool_calls_log,
                )

            # Only include fields accepted by the chat completions API
            call_entry: dict[str, Any] = {
                "role": "assistant",
                "content": strip_thinking(assistant_message.content or ""),
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": tc.type,
                        "function": {
                            "name": tc.function.name,
                            "arguments": tc.function.arguments,
                        },
                    }
                    for tc in assistant_message.tool_calls
                ],
            }

            results, stop_reason = await self._run_tool_calls(
                assistant_message.tool_calls, tool_calls_log
            )
            if stop_reason is not None:
                return self._commit(
                    state,
                    sub_turns,
                    STOP_MESSAGES[stop_reason].format(
                        errors=self.config.max_consecutive_errors
                    ),
                    stop_reason,
                    turn + 1,
                    tool_calls_log,
                )

            batch = [call_entry, *results]
            messages.extend(batch)
            sub_turns.extend(batch)

        return self._commit(
            state,
            sub_turns,
            STOP_MESSAGES[StopReason.MAX_TURNS],
            StopReason.MAX_TURNS,
            self.config.max_turns,
            tool_calls_log,
        )
