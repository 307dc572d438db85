"""Long-term memory: chunk storage, retrieval and durable facts."""

from .chunking import ChunkingConfig, create_chunks, create_recent_chunk, is_trivial
from .embeddings import Embedder, EmbeddingConfig, EmbeddingError, OpenAIEmbedder
from .facts import FactExtractor, FactStore, format_facts_for_prompt
from .manager import MemoryManager
from .models import (
    Chunk,
    Fact,
    FactCandidate,
    FactCategory,
    FactOperation,
    FactOperationStats,
    MemoryChunk,
    Message,
    RetrievedMemory,
    ScoredChunk,
    Tier,
)
from .retrieval import MemoryRetriever, RetrievalConfig, format_memories_for_prompt
from .store import ChunkStore, MemoryStoreNotInitializedError
from .tools import SearchMemoryTool
from .vector_store import VectorDatabase, VectorTable

__all__ = [
    "Chunk",
    "ChunkStore",
    "ChunkingConfig",
    "Embedder",
    "EmbeddingConfig",
    "EmbeddingError",
    "Fact",
    "FactCandidate",
    "FactCategory",
    "FactExtractor",
    "FactOperation",
    "FactOperationStats",
    "FactStore",
    "MemoryChunk",
    "MemoryManager",
    "MemoryRetriever",
    "MemoryStoreNotInitializedError",
    "Message",
    "OpenAIEmbedder",
    "RetrievalConfig",
    "RetrievedMemory",
    "ScoredChunk",
    "SearchMemoryTool",
    "Tier",
    "VectorDatabase",
    "VectorTable",
    "create_chunks",
    "create_recent_chunk",
    "format_facts_for_prompt",
    "format_memories_for_prompt",
    "is_trivial",
]
