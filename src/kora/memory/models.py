"""Data models for the memory system."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Tier(str, Enum):
    """Recency partition of stored chunks."""

    WARM = "warm"
    COLD = "cold"


class FactCategory(str, Enum):
    """Kinds of durable facts kept about the user."""

    PREFERENCE = "preference"
    PERSONAL_INFO = "personal_info"
    DECISION = "decision"
    COMMITMENT = "commitment"
    CONTACT = "contact"
    PROJECT = "project"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "FactCategory":
        """Coerce a raw category string, falling back to OTHER."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER


class FactOperation(str, Enum):
    """Reconciliation operations returned by fact extraction."""

    ADD = "ADD"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    NOOP = "NOOP"


@dataclass(frozen=True)
class Message:
    """A single recorded chat message.

    Attributes:
        role: 'user' or 'assistant'.
        content: The message text.
        timestamp: ISO timestamp of the message.
        channel: Channel the message came through (cli, telegram, web...).
    """

    role: str
    content: str
    timestamp: str
    channel: str


@dataclass
class Chunk:
    """A formatted, embeddable window of messages."""

    content: str
    channel: str
    turn_count: int
    start_time: str
    end_time: str


@dataclass
class MemoryChunk:
    """An embedded chunk as stored in the vector table.

    Attributes:
        id: '<tier>-<epoch ms>-<suffix>', unique and sortable by creation.
        content: The formatted chunk text.
        channel: Channel of the first message in the chunk.
        tier: WARM when written, may be demoted to COLD.
        created_at: ISO timestamp when stored.
        last_accessed_at: ISO timestamp of the last retrieval (never before created_at).
        turn_count: Number of messages in the chunk.
        vector: The embedding.
    """

    id: str
    content: str
    channel: str
    tier: Tier
    created_at: str
    last_accessed_at: str
    turn_count: int
    vector: list[float] = field(default_factory=list)

    def to_row(self) -> dict[str, Any]:
        """Convert to a vector table row."""
        return {
            "id": self.id,
            "content": self.content,
            "channel": self.channel,
            "tier": self.tier.value,
            "created_at": self.created_at,
            "last_accessed_at": self.last_accessed_at,
            "turn_count": self.turn_count,
            "vector": self.vector,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MemoryChunk":
        """Create from a vector table row."""
        return cls(
            id=row["id"],
            content=row["content"],
            channel=row["channel"],
            tier=Tier(row["tier"]),
            created_at=row["created_at"],
            last_accessed_at=row["last_accessed_at"],
            turn_count=row["turn_count"],
            vector=list(row["vector"]),
        )


@dataclass
class ScoredChunk:
    """A chunk returned by vector search with its cosine similarity."""

    chunk: MemoryChunk
    score: float


@dataclass(frozen=True)
class RetrievedMemory:
    """A memory ready for prompt formatting."""

    content: str
    channel: str
    age: str
    score: float
    tier: Tier


@dataclass
class Fact:
    """A durable fact about the user.

    Attributes:
        id: 'fact-<epoch ms>-<suffix>'.
        content: The fact as a clear statement.
        category: What kind of fact this is.
        confidence: Extraction confidence in [0, 1].
        source_chunk_id: Chunk of the exchange the fact came from.
        created_at: ISO timestamp when first added.
        last_validated_at: ISO timestamp of the last reconfirmation or update.
        vector: Embedding of the content.
    """

    id: str
    content: str
    category: FactCategory
    confidence: float
    source_chunk_id: str
    created_at: str
    last_validated_at: str
    vector: list[float] = field(default_factory=list)

    def to_row(self) -> dict[str, Any]:
        """Convert to a vector table row."""
        return {
            "id": self.id,
            "content": self.content,
            "category": self.category.value,
            "confidence": self.confidence,
            "source_chunk_id": self.source_chunk_id,
            "created_at": self.created_at,
            "last_validated_at": self.last_validated_at,
            "vector": self.vector,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Fact":
        """Create from a vector table row."""
        return cls(
            id=row["id"],
            content=row["content"],
            category=FactCategory.parse(row["category"]),
            confidence=float(row["confidence"]),
            source_chunk_id=row["source_chunk_id"],
            created_at=row["created_at"],
            last_validated_at=row["last_validated_at"],
            vector=list(row["vector"]),
        )


@dataclass(frozen=True)
class FactCandidate:
    """A fact proposed by the extractor, with its reconciliation operation."""

    content: str
    category: FactCategory
    confidence: float
    operation: FactOperation
    target_fact_id: str | None = None


@dataclass
class FactOperationStats:
    """Counts of applied fact operations."""

    added: int = 0
    updated: int = 0
    deleted: int = 0
    confirmed: int = 0


def to_iso(moment: datetime) -> str:
    """Serialize a datetime as a UTC ISO timestamp with microseconds.

    All stored timestamps use this one format so they compare correctly
    as strings inside SQL predicates.
    """
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utc_now_iso() -> str:
    """Current time as a stored timestamp."""
    return to_iso(datetime.now(timezone.utc))


def parse_iso(value: str) -> datetime:
    """Parse a stored timestamp, treating naive values as UTC."""
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment
