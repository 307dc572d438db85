"""Text embedding adapters.

The default adapter calls an OpenAI-compatible /embeddings endpoint
through the OpenAI SDK (text-embedding-3-small, 1536 dimensions).
Anything implementing Embedder can be swapped in, e.g. a local model
server.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from openai import AsyncOpenAI

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_EMBEDDING_DIMENSIONS = 1536
DEFAULT_BASE_URL = "https://api.openai.com/v1"


class EmbeddingError(RuntimeError):
    """Raised when the embedding provider returns an unusable response."""


class Embedder(ABC):
    """Maps text to fixed-length vectors."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Vector length, fixed for the lifetime of a store."""
        ...

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts, preserving input order."""
        ...

    async def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        vectors = await self.embed_batch([text])
        return vectors[0]


@dataclass
class EmbeddingConfig:
    """Configuration for the OpenAI embedding adapter."""

    api_key: str | None = None
    model: str = DEFAULT_EMBEDDING_MODEL
    dimensions: int = DEFAULT_EMBEDDING_DIMENSIONS
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.api_key is None:
            self.api_key = os.getenv("OPENAI_API_KEY")
        if self.dimensions < 1:
            raise ValueError("dimensions must be positive")


class OpenAIEmbedder(Embedder):
    """Embedder backed by an OpenAI-compatible embeddings API."""

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.config = config or EmbeddingConfig()
        self.client = client or AsyncOpenAI(
            api_key=self.config.api_key,
            base_url=self.config.base_url,
            timeout=self.config.timeout,
        )

    @property
    def dimensions(self) -> int:
        return self.config.dimensions

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        response = await self.client.embeddings.create(
            model=self.config.model,
            input=texts,
            dimensions=self.config.dimensions,
        )

        data = response.data
        if len(data) != len(texts):
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(data)}")

        # The API may return items out of order; 'index' is authoritative
        ordered = sorted(data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]

    async def aclose(self) -> None:
        """Close the underlying API client."""
        await self.client.close()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors, 0.0 when either is all zeros."""
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape:
        raise ValueError("Vectors must have same length")

    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)
