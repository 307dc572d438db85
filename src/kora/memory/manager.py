"""Memory manager: the write and read pipelines behind one interface.

Write: after each exchange a chunk is embedded and stored, and fact
extraction runs in the background. Read: relevant chunks are recalled
for the next turn's context.

Every call is a no-op when the stores failed to open, so the assistant
keeps answering without memory.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Coroutine

from .chunking import DEFAULT_CONFIG, ChunkingConfig, create_recent_chunk
from .facts import FactStore, format_facts_for_prompt
from .models import Message, utc_now_iso
from .retrieval import MemoryRetriever, format_memories_for_prompt
from .store import ChunkStore

if TYPE_CHECKING:
    from ..logging import JSONLLogger

logger = logging.getLogger(__name__)


class MemoryManager:
    """Coordinates chunk storage, fact extraction and retrieval."""

    def __init__(
        self,
        chunks: ChunkStore,
        facts: FactStore | None = None,
        retriever: MemoryRetriever | None = None,
        chunking: ChunkingConfig = DEFAULT_CONFIG,
        event_log: JSONLLogger | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            chunks: Store for conversation chunks.
            facts: Optional store for durable facts.
            retriever: Retriever over the chunk store (created if omitted).
            chunking: Chunk length and window limits.
            event_log: Optional structured event log.
        """
        self.chunks = chunks
        self.facts = facts
        self.retriever = retriever or MemoryRetriever(chunks)
        self.chunking = chunking
        self.event_log = event_log
        self._background: set[asyncio.Task[Any]] = set()

    def initialize(self) -> bool:
        """Open the stores. Failures leave memory disabled, never raise.

        Returns:
            True if the chunk store is usable.
        """
        try:
            self.chunks.init()
        except Exception:
            logger.exception("Memory store unavailable, continuing without memory")

        if self.facts is not None:
            try:
                self.facts.init()
            except Exception:
                logger.exception("Facts store unavailable, continuing without facts")

        return self.is_initialized()

    def is_initialized(self) -> bool:
        """Check if the chunk store is usable."""
        return self.chunks.is_initialized()

    def facts_initialized(self) -> bool:
        """Check if the fact store is usable."""
        return self.facts is not None and self.facts.is_initialized()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def store_exchange(
        self,
        user_message: str,
        assistant_message: str,
        channel: str,
        timestamp: str | None = None,
    ) -> str | None:
        """Store an exchange as a chunk and queue fact extraction.

        Returns:
            The chunk id, or None when memory is off or the exchange is noise.
        """
        if not self.is_initialized():
            logger.debug("Memory store not initialized, skipping")
            return None

        ts = timestamp or utc_now_iso()
        messages = [
            Message(role="user", content=user_message, timestamp=ts, channel=channel),
            Message(role="assistant", content=assistant_message, timestamp=ts, channel=channel),
        ]

        chunk = create_recent_chunk(messages, self.chunking)
        if chunk is None:
            return None

        chunk_id = await self.chunks.add_chunk(chunk.content, chunk.channel, chunk.turn_count)

        if self.facts_initialized():
            self._spawn(self._process_facts(user_message, assistant_message, chunk_id))

        return chunk_id

    async def _process_facts(
        self, user_message: str, assistant_message: str, chunk_id: str
    ) -> None:
        assert self.facts is not None
        stats = await self.facts.process_exchange(user_message, assistant_message, chunk_id)
        if stats is not None and self.event_log is not None:
            self.event_log.log_fact_operations(
                chunk_id,
                added=stats.added,
                updated=stats.updated,
                deleted=stats.deleted,
                confirmed=stats.confirmed,
            )

    async def _store_safely(
        self,
        user_message: str,
        assistant_message: str,
        channel: str,
        timestamp: str | None,
    ) -> str | None:
        try:
            chunk_id = await self.store_exchange(
                user_message, assistant_message, channel, timestamp
            )
        except Exception as e:
            logger.exception("Failed to store exchange in memory")
            if self.event_log is not None:
                self.event_log.log_memory_write(channel, None, error=str(e))
            return None

        if self.event_log is not None:
            self.event_log.log_memory_write(channel, chunk_id)
        return chunk_id

    def schedule_exchange(
        self,
        user_message: str,
        assistant_message: str,
        channel: str,
        timestamp: str | None = None,
    ) -> asyncio.Task[str | None] | None:
        """Store an exchange in the background, off the turn path.

        Returns:
            The background task, or None when memory is off.
        """
        if not self.is_initialized():
            return None
        return self._spawn(
            self._store_safely(user_message, assistant_message, channel, timestamp)
        )

    async def drain(self) -> None:
        """Wait for all background memory writes, including fact extraction."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def get_relevant_memories(
        self,
        query: str,
        hot_content: list[str] | None = None,
        top_k: int | None = None,
    ) -> str:
        """Recall memories for a query as a prompt block.

        Failures are logged and yield an empty block.
        """
        if not self.is_initialized():
            return ""

        try:
            memories = await self.retriever.retrieve(query, top_k, hot_content)
        except Exception:
            logger.exception("Memory retrieval failed")
            return ""

        if self.event_log is not None:
            self.event_log.log_retrieval(query, len(memories))
        return format_memories_for_prompt(memories)

    def get_facts_block(self) -> str:
        """All known facts as a prompt block, or '' when unavailable."""
        if not self.facts_initialized():
            return ""
        assert self.facts is not None
        try:
            return format_facts_for_prompt(self.facts.get_all_facts())
        except Exception:
            logger.exception("Failed to load facts")
            return ""
