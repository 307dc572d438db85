"""CLI interface for Kora."""

import asyncio
import os
from pathlib import Path

from groq import AsyncGroq

from .agent import AgentConfig, AgentLoop
from .agent.loop import DEFAULT_MODEL
from .conversation import ConversationConfig, ConversationState
from .gateway import Gateway
from .logging import configure_logger
from .memory import (
    ChunkStore,
    Embedder,
    EmbeddingConfig,
    FactExtractor,
    FactStore,
    MemoryManager,
    OpenAIEmbedder,
    SearchMemoryTool,
    Tier,
    VectorDatabase,
)
from .memory.embeddings import (
    DEFAULT_BASE_URL,
    DEFAULT_EMBEDDING_DIMENSIONS,
    DEFAULT_EMBEDDING_MODEL,
)
from .memory.facts import DEFAULT_FACT_MODEL
from .memory.models import parse_iso
from .memory.retrieval import MemoryRetriever
from .memory.vector_store import id_in
from .tools import ToolRegistry

CHANNEL = "cli"
MEMORY_DB_DIRNAME = "memory"

BANNER = """
Kora - personal assistant with long-term memory

Commands:
  /exit, /quit  - Exit the CLI
  /memory       - Show memory store status
  /reload       - Reload the conversation from disk
  /help         - Show this help

Type your message and press Enter.
"""

SMOKE_CHUNKS = [
    "User asked about the weather in New York. Assistant said it was sunny and 72F.",
    "User discussed their favorite coffee shops. Assistant recommended Blue Bottle.",
    "User mentioned they have a meeting with John at 3pm tomorrow.",
]


def _config_from_env() -> tuple[AgentConfig, EmbeddingConfig, ConversationConfig, str]:
    """Load configuration from environment variables."""
    agent_config = AgentConfig(model=os.getenv("GROQ_MODEL", DEFAULT_MODEL))

    embedding_config = EmbeddingConfig(
        api_key=os.getenv("OPENAI_API_KEY"),
        model=os.getenv("KORA_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
        dimensions=int(
            os.getenv("KORA_EMBEDDING_DIMENSIONS", str(DEFAULT_EMBEDDING_DIMENSIONS))
        ),
        base_url=os.getenv("KORA_EMBEDDING_BASE_URL", DEFAULT_BASE_URL),
    )

    workspace = os.getenv("KORA_WORKSPACE")
    conversation_config = ConversationConfig(
        workspace=Path(workspace).expanduser() if workspace else None
    )

    fact_model = os.getenv("KORA_FACT_MODEL", DEFAULT_FACT_MODEL)

    return agent_config, embedding_config, conversation_config, fact_model


class CLI:
    """Interactive command-line channel."""

    def __init__(
        self,
        config: AgentConfig | None = None,
        conversation_config: ConversationConfig | None = None,
        embedder: Embedder | None = None,
        groq_client: AsyncGroq | None = None,
        fact_model: str | None = None,
    ) -> None:
        if config is None or conversation_config is None or embedder is None:
            agent_config, embedding_config, conv_config, env_fact_model = _config_from_env()
            config = config or agent_config
            conversation_config = conversation_config or conv_config
            embedder = embedder or OpenAIEmbedder(embedding_config)
            fact_model = fact_model or env_fact_model

        assert conversation_config.workspace is not None
        self.workspace = conversation_config.workspace
        self.embedder = embedder
        self.event_log = configure_logger(log_dir=self.workspace / "logs")

        self.state = ConversationState(conversation_config)

        client = groq_client or AsyncGroq(api_key=os.getenv("GROQ_API_KEY"))
        self.db = VectorDatabase(self.workspace / MEMORY_DB_DIRNAME)
        extractor = FactExtractor(client, fact_model or DEFAULT_FACT_MODEL)
        self.memory = MemoryManager(
            ChunkStore(self.db, embedder),
            facts=FactStore(self.db, embedder, extractor=extractor),
            event_log=self.event_log,
        )

        registry = ToolRegistry([SearchMemoryTool(self.memory)])
        self.agent = AgentLoop(registry, config, groq_client=client)
        self.gateway = Gateway(self.state, self.agent, self.memory, event_log=self.event_log)

    def start(self) -> None:
        """Restore the conversation and open the memory stores."""
        restored = self.state.load()
        if not self.memory.initialize():
            print("⚠ Memory unavailable, running without long-term memory")
        print(f"Workspace: {self.workspace} ({restored} messages restored)\n")

    def _format_response(self, response: str) -> str:
        """Format the assistant's response for display."""
        return "\n".join(["\n" + "─" * 40, response, "─" * 40])

    async def _process_message(self, message: str) -> None:
        """Run a turn and print the reply."""
        try:
            response = await self.gateway.handle_message(message, CHANNEL)
        except Exception as e:
            print(f"\n❌ Error: {e}")
            return
        print(self._format_response(response))

    def _memory_status(self) -> str:
        if not self.memory.is_initialized():
            return "Memory: not initialized"
        counts = self.memory.chunks.get_chunk_counts()
        facts = len(self.memory.facts.get_all_facts()) if self.memory.facts else 0
        return (
            f"Memory: {counts[Tier.WARM]} warm / {counts[Tier.COLD]} cold chunks, "
            f"{facts} facts"
        )

    async def _handle_command(self, command: str) -> bool:
        """Handle a special command. Returns True if should continue, False to exit."""
        cmd = command.lower().strip()

        if cmd in ("/exit", "/quit", "exit", "quit"):
            print("\n👋 Goodbye!")
            return False

        if cmd == "/memory":
            print(self._memory_status())
            return True

        if cmd == "/reload":
            count = await self.state.request_reload()
            print(f"✓ Reloaded {count} messages")
            return True

        if cmd == "/help":
            print(BANNER)
            return True

        return True  # Unknown command, continue

    async def close(self) -> None:
        """Finish pending work and release resources."""
        await self.gateway.shutdown()
        if isinstance(self.embedder, OpenAIEmbedder):
            await self.embedder.aclose()
        self.db.close()

    async def run(self) -> None:
        """Run the interactive CLI."""
        print(BANNER)
        self.start()

        try:
            while True:
                try:
                    # Read off the event loop so background memory writes keep going
                    user_input = (await asyncio.to_thread(input, "you> ")).strip()
                except (KeyboardInterrupt, EOFError):
                    print("\n👋 Goodbye!")
                    break

                if not user_input:
                    continue

                if user_input.startswith("/") or user_input.lower() in ("exit", "quit"):
                    if not await self._handle_command(user_input):
                        break
                    continue

                await self._process_message(user_input)
        finally:
            await self.close()


async def run_cli() -> None:
    """Run the CLI with configuration from the environment."""
    if not os.getenv("GROQ_API_KEY"):
        print("❌ Error: GROQ_API_KEY environment variable not set")
        print("Please set it in your .env file or environment")
        return

    cli = CLI()
    await cli.run()


async def run_smoke(
    workspace: Path | None = None,
    embedder: Embedder | None = None,
    pause: float = 0.5,
) -> bool:
    """Exercise the memory write and read paths end to end.

    Adds test chunks, searches the store directly, retrieves through the
    ranking pipeline and checks that retrieval advanced lastAccessedAt past
    createdAt. Test chunks are removed afterwards.

    Returns:
        True if the touch check passed.
    """
    if workspace is None or embedder is None:
        _, embedding_config, conv_config, _ = _config_from_env()
        workspace = workspace or conv_config.workspace
        embedder = embedder or OpenAIEmbedder(embedding_config)
    assert workspace is not None

    print("=== Memory System Smoke Test ===\n")

    db = VectorDatabase(workspace / MEMORY_DB_DIRNAME)
    store = ChunkStore(db, embedder)
    added: list[str] = []

    try:
        print("1. Initializing memory store...")
        store.init()
        print("   ✓ Initialized\n")

        print("2. Adding test chunks...")
        for content in SMOKE_CHUNKS:
            chunk_id = await store.add_chunk(content, "test", 2, Tier.WARM)
            added.append(chunk_id)
            print(f"   Added: {chunk_id}")
        print()

        print("3. Searching chunks directly (weather query)...")
        for scored in await store.search_chunks("weather", limit=3):
            print(f"   - Similarity {scored.score:.3f}: {scored.chunk.content[:50]}...")
        print()

        await asyncio.sleep(pause)

        print("4. Retrieving memories (weather query)...")
        retriever = MemoryRetriever(store)
        memories = await retriever.retrieve("What was the weather like?", top_k=5)
        print(f"   Found {len(memories)} memories:")
        for memory in memories:
            print(f"   - Score {memory.score:.3f}: {memory.content[:50]}...")
        print()

        print("5. Verifying lastAccessedAt was updated...")
        chunk = store.get_chunk(added[0])
        passed = chunk is not None and parse_iso(chunk.last_accessed_at) > parse_iso(
            chunk.created_at
        )
        if chunk is not None:
            print(f"   createdAt:      {chunk.created_at}")
            print(f"   lastAccessedAt: {chunk.last_accessed_at}")
        print("   ✓ touch working\n" if passed else "   ✗ lastAccessedAt not advanced\n")

        print("6. Retrieving memories (coffee query, K=10)...")
        coffee = await retriever.retrieve("coffee shops recommendations", top_k=10)
        print(f"   Returned {len(coffee)} results\n")

        return passed
    finally:
        if added:
            print("7. Cleaning up test chunks...")
            store.table.delete_where(*id_in(added))
            print("   ✓ Test chunks removed\n")
        if isinstance(embedder, OpenAIEmbedder):
            await embedder.aclose()
        db.close()
        print("=== Smoke Test Complete ===")
