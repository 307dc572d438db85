"""Memory tools: let the assistant search its own long-term memory."""

import logging
from typing import Any

from ..tools.base import Tool, ToolResult
from .manager import MemoryManager
from .retrieval import format_memories_for_prompt

logger = logging.getLogger(__name__)

SEARCH_TYPES = ("conversations", "facts", "both")


class SearchMemoryTool(Tool):
    """Deep recall over stored conversation chunks and extracted facts."""

    def __init__(
        self, memory: MemoryManager, conversation_k: int = 5, fact_limit: int = 10
    ) -> None:
        """Initialize with a memory manager.

        Args:
            memory: The MemoryManager whose stores are searched.
            conversation_k: Requested number of conversation memories.
            fact_limit: Maximum facts returned.
        """
        self.memory = memory
        self.conversation_k = conversation_k
        self.fact_limit = fact_limit

    @property
    def name(self) -> str:
        return "search_memory"

    @property
    def description(self) -> str:
        return (
            "Search your past conversations and extracted knowledge. "
            "Use when the recent conversation doesn't have what you need, "
            "like trying to remember something from weeks ago."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "What you're trying to remember. Be specific.",
                },
                "search_type": {
                    "type": "string",
                    "enum": list(SEARCH_TYPES),
                    "description": "What to search. Defaults to both.",
                },
            },
            "required": ["query"],
        }

    async def _search_conversations(self, query: str) -> str:
        if not self.memory.is_initialized():
            return "Conversation memory store not available."
        try:
            memories = await self.memory.retriever.retrieve(query, self.conversation_k)
        except Exception as e:
            logger.warning("Conversation search failed: %s", e)
            return f"Conversation search error: {e}"
        return format_memories_for_prompt(memories) or "No matching conversations found."

    async def _search_facts(self, query: str) -> str:
        if not self.memory.facts_initialized():
            return "Facts store not available."
        assert self.memory.facts is not None
        try:
            facts = await self.memory.facts.find_similar_facts(query, self.fact_limit)
        except Exception as e:
            logger.warning("Facts search failed: %s", e)
            return f"Facts search error: {e}"
        if not facts:
            return "No matching facts found."
        lines = [
            f"- [{f.category.value}] {f.content} (confidence: {f.confidence:.2f})"
            for f in facts
        ]
        return "## Relevant Facts\n\n" + "\n".join(lines)

    async def execute(self, **kwargs: Any) -> ToolResult:
        """Search memory.

        Args:
            query: What to look for.
            search_type: 'conversations', 'facts' or 'both' (default).

        Returns:
            ToolResult with one section per searched store.
        """
        query = kwargs.get("query", "").strip()
        search_type = kwargs.get("search_type") or "both"

        if not query:
            return ToolResult(success=False, output="", error="'query' is required")

        sections = []
        if search_type in ("conversations", "both"):
            sections.append(await self._search_conversations(query))
        if search_type in ("facts", "both"):
            sections.append(await self._search_facts(query))

        return ToolResult(success=True, output="\n\n".join(sections))
