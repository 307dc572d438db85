"""Gateway: the single entry point every channel uses to talk to the assistant.

A turn runs on the conversation's queue: append the user message, recall
context, run the agent, persist. The memory write happens after the turn,
in the background, so a slow embedding call never delays the reply.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable

from .conversation import ConversationState, content_to_text

if TYPE_CHECKING:
    from .agent import AgentLoop
    from .logging import JSONLLogger
    from .memory import MemoryManager

logger = logging.getLogger(__name__)

ERROR_REPLY = "Sorry, I ran into an error. Please try again."
NO_NOTIFICATION = "NO_NOTIFICATION"

ReplyCallback = Callable[[str], Awaitable[None]]


@dataclass
class GatewayConfig:
    """Configuration for turn orchestration."""

    hot_context_messages: int = 10  # recent entries treated as already visible
    include_facts: bool = True
    memory_top_k: int | None = None


class Gateway:
    """Runs turns for all channels against one conversation."""

    def __init__(
        self,
        state: ConversationState,
        agent: AgentLoop,
        memory: MemoryManager | None = None,
        config: GatewayConfig | None = None,
        event_log: JSONLLogger | None = None,
    ) -> None:
        self.state = state
        self.agent = agent
        self.memory = memory
        self.config = config or GatewayConfig()
        self.event_log = event_log

    def _hot_content(self) -> list[str]:
        recent = self.state.get_recent_messages(self.config.hot_context_messages)
        texts = (content_to_text(entry.get("content")) for entry in recent)
        return [text for text in texts if text]

    async def _recall(self, query: str, hot_content: list[str]) -> tuple[str, str]:
        if self.memory is None:
            return "", ""
        memory_block = await self.memory.get_relevant_memories(
            query, hot_content, self.config.memory_top_k
        )
        facts_block = self.memory.get_facts_block() if self.config.include_facts else ""
        return memory_block, facts_block

    async def _run_turn(self, content: str, channel: str) -> str:
        start_time = time.time()
        hot_content = self._hot_content()
        self.state.append_user_message(content)

        try:
            memory_block, facts_block = await self._recall(content, hot_content)
            result = await self.agent.run(self.state, memory_block, facts_block)
        except Exception as e:
            self.state.rollback_last_user_message()
            if self.event_log is not None:
                self.event_log.log_turn(
                    channel,
                    False,
                    duration_ms=(time.time() - start_time) * 1000,
                    error=str(e),
                )
            raise

        self.state.persist_state()

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Turn on %s finished in %.0fms (%s)", channel, duration_ms, result.stop_reason.value
        )
        if self.event_log is not None:
            self.event_log.log_turn(
                channel,
                True,
                duration_ms=duration_ms,
                message_count=self.state.message_count,
                stop_reason=result.stop_reason.value,
            )

        if self.memory is not None:
            self.memory.schedule_exchange(content, result.response, channel)

        return result.response

    async def handle_message(self, content: str, channel: str) -> str:
        """Run a turn for an inbound message and return the reply.

        Raises whatever the turn raised, after the user message was rolled back.
        """
        return await self.state.enqueue_turn(lambda: self._run_turn(content, channel))

    def handle_rapid_fire(self, content: str, channel: str, reply: ReplyCallback) -> None:
        """Buffer a message; closely spaced ones become one turn.

        `reply` receives the assistant's answer, or ERROR_REPLY if the turn failed.
        """

        async def on_batch(combined: str) -> None:
            try:
                response = await self.handle_message(combined, channel)
            except Exception:
                logger.exception("Turn failed on %s", channel)
                response = ERROR_REPLY
            await reply(response)

        self.state.queue_rapid_fire_message(content, on_batch, sender=channel)

    async def deliver_proactive(self, text: str, channel: str) -> bool:
        """Record an assistant-initiated message (e.g. a heartbeat) in the log.

        Empty text and the NO_NOTIFICATION sentinel are dropped.

        Returns:
            True if the message was recorded.
        """
        cleaned = text.strip()
        if not cleaned or NO_NOTIFICATION in cleaned:
            logger.info("Proactive message on %s suppressed", channel)
            return False

        async def record() -> bool:
            self.state.append_assistant_response([{"type": "text", "text": cleaned}])
            self.state.persist_state()
            return True

        delivered = await self.state.enqueue_turn(record)
        if self.event_log is not None:
            self.event_log.log("proactive_message", channel=channel, length=len(cleaned))
        return delivered

    async def shutdown(self) -> None:
        """Flush buffered messages, let queued turns finish and drain memory writes."""
        await self.state.flush_pending()
        await self.state.idle()
        if self.memory is not None:
            await self.memory.drain()
