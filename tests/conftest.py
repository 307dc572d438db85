"""Shared fixtures."""

import hashlib
import re
from pathlib import Path

import pytest

from kora.memory import ChunkStore, Embedder, VectorDatabase


class FakeEmbedder(Embedder):
    """Deterministic bag-of-words embedder: each word hashes to one dimension."""

    def __init__(self, dimensions: int = 1024) -> None:
        self._dimensions = dimensions
        self.calls: list[list[str]] = []

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def vector(self, text: str) -> list[float]:
        vec = [0.0] * self._dimensions
        for word in re.findall(r"\w+", text.lower()):
            idx = int(hashlib.md5(word.encode()).hexdigest(), 16) % self._dimensions
            vec[idx] += 1.0
        return vec

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self.vector(t) for t in texts]


class ConstantEmbedder(Embedder):
    """Embeds every text to the same vector, so every row matches perfectly."""

    dimensions = 8

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [[1.0] * self.dimensions for _ in texts]


@pytest.fixture
def embedder() -> FakeEmbedder:
    """Create a deterministic embedder."""
    return FakeEmbedder()


@pytest.fixture
def db(tmp_path: Path) -> VectorDatabase:
    """Create a vector database in a temporary directory."""
    database = VectorDatabase(tmp_path / "memory")
    yield database
    database.close()


@pytest.fixture
def chunk_store(db: VectorDatabase, embedder: FakeEmbedder) -> ChunkStore:
    """Create an initialized chunk store."""
    store = ChunkStore(db, embedder)
    store.init()
    return store


@pytest.fixture
def constant_embedder() -> ConstantEmbedder:
    """Create an embedder that makes every text identical."""
    return ConstantEmbedder()
