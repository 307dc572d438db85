"""Memory retrieval with time-weighted scoring.

Scores blend cosine similarity (0-1) with exponential recency decay.
Rough calibration for text-embedding-3-small:
  - near-exact text match: ~0.80
  - good semantic match:   ~0.50
  - weak or irrelevant:    ~0.15
A 0.35 floor drops the irrelevant tail while keeping meaningful overlap.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from .models import RetrievedMemory, ScoredChunk, parse_iso
from .store import ChunkStore

logger = logging.getLogger(__name__)


@dataclass
class RetrievalConfig:
    """Tuning for memory retrieval.

    Attributes:
        default_top_k: Results requested when the caller gives no K.
        min_top_k: Always keep at least this many results if available.
        max_top_k: Never keep more than this many.
        similarity_threshold: Minimum combined score to keep a result.
        score_gap_threshold: A drop larger than this between neighbours ends the list.
        recency_weight: Share of the combined score given to recency.
        decay_rate: Per-hour decay; 0.005 halves recency in roughly six days.
        exclude_prefix_length: Characters of hot-context text used for overlap checks.
    """

    default_top_k: int = 5
    min_top_k: int = 2
    max_top_k: int = 10
    similarity_threshold: float = 0.35
    score_gap_threshold: float = 0.10
    recency_weight: float = 0.2
    decay_rate: float = 0.005
    exclude_prefix_length: int = 50

    def __post_init__(self) -> None:
        if not 0.0 <= self.recency_weight <= 1.0:
            raise ValueError("recency_weight must be within [0, 1]")
        if not 0.0 <= self.decay_rate < 1.0:
            raise ValueError("decay_rate must be within [0, 1)")
        if self.min_top_k < 1 or self.max_top_k < self.min_top_k:
            raise ValueError("need 1 <= min_top_k <= max_top_k")


def compute_recency(
    last_accessed_at: str, decay_rate: float, now: datetime | None = None
) -> float:
    """Exponential decay: (1 - decay_rate) ** hours_since_last_access."""
    now = now or datetime.now(timezone.utc)
    hours = (now - parse_iso(last_accessed_at)).total_seconds() / 3600
    return (1 - decay_rate) ** max(0.0, hours)


def combine_scores(semantic: float, recency: float, recency_weight: float) -> float:
    """Weighted blend of similarity and recency."""
    return semantic * (1 - recency_weight) + recency * recency_weight


def adaptive_top_k(
    scores: list[float], min_k: int, max_k: int, gap_threshold: float
) -> int:
    """Decide how many of the sorted scores to keep.

    The first min_k are always kept. After that, results up to max_k are
    added while the drop from the previous score stays within the
    threshold; the first larger drop ends the list.

    Args:
        scores: Combined scores, sorted descending.
        min_k: Minimum results to keep.
        max_k: Maximum results to keep.
        gap_threshold: Largest tolerated drop between neighbours.

    Returns:
        Number of leading results to keep.
    """
    if len(scores) <= min_k:
        return len(scores)

    keep = min_k
    for i in range(min_k, min(len(scores), max_k)):
        gap = scores[i - 1] - scores[i]
        if gap > gap_threshold:
            logger.debug("Adaptive cutoff at %d results (gap: %.3f)", i, gap)
            break
        keep = i + 1
    return keep


def format_age(timestamp: str, now: datetime | None = None) -> str:
    """Human-readable age: '5m ago', '3h ago', '2d ago', '4w ago'."""
    now = now or datetime.now(timezone.utc)
    minutes = max(0, int((now - parse_iso(timestamp)).total_seconds() // 60))

    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    days = hours // 24
    if days < 7:
        return f"{days}d ago"
    return f"{days // 7}w ago"


def overlaps_context(content: str, exclude_content: list[str], prefix_length: int = 50) -> bool:
    """Check if content already contains the start of any hot-context text."""
    lowered = content.lower()
    for text in exclude_content:
        prefix = text.lower()[:prefix_length]
        if prefix and prefix in lowered:
            return True
    return False


@dataclass
class RankedChunk:
    """A search result with its recency and combined score."""

    scored: ScoredChunk
    recency: float
    combined: float


class MemoryRetriever:
    """Retrieves, ranks and reinforces memories for a query."""

    def __init__(self, store: ChunkStore, config: RetrievalConfig | None = None) -> None:
        self.store = store
        self.config = config or RetrievalConfig()

    def rank(
        self,
        results: list[ScoredChunk],
        exclude_content: list[str] | None = None,
        now: datetime | None = None,
    ) -> list[RankedChunk]:
        """Score, filter, sort and cut search results."""
        cfg = self.config
        exclude_content = exclude_content or []

        candidates = []
        for result in results:
            recency = compute_recency(result.chunk.last_accessed_at, cfg.decay_rate, now)
            combined = combine_scores(result.score, recency, cfg.recency_weight)
            if combined < cfg.similarity_threshold:
                continue
            if overlaps_context(result.chunk.content, exclude_content, cfg.exclude_prefix_length):
                continue
            candidates.append(RankedChunk(result, recency, combined))

        candidates.sort(key=lambda c: c.combined, reverse=True)
        keep = adaptive_top_k(
            [c.combined for c in candidates],
            cfg.min_top_k,
            cfg.max_top_k,
            cfg.score_gap_threshold,
        )
        return candidates[:keep]

    async def retrieve(
        self,
        query: str,
        top_k: int | None = None,
        exclude_content: list[str] | None = None,
    ) -> list[RetrievedMemory]:
        """Retrieve relevant memories for a query.

        Searches both tiers with 2x oversampling, blends similarity with
        recency, drops weak and already-visible results, applies the
        adaptive cutoff and touches the survivors.

        Args:
            query: The text to recall memories for.
            top_k: Requested number of results (sets the oversampling size).
            exclude_content: Texts already in the hot context.

        Returns:
            Memories sorted by combined score, highest first.
        """
        top_k = top_k or self.config.default_top_k
        results = await self.store.search_chunks(query, top_k * 2)

        now = datetime.now(timezone.utc)
        kept = self.rank(results, exclude_content, now)

        self.store.touch_chunks([c.scored.chunk.id for c in kept])

        for c in kept:
            logger.debug(
                "Retrieved (score: %.3f): %s...", c.combined, c.scored.chunk.content[:60]
            )

        return [
            RetrievedMemory(
                content=c.scored.chunk.content,
                channel=c.scored.chunk.channel,
                age=format_age(c.scored.chunk.created_at, now),
                score=c.combined,
                tier=c.scored.chunk.tier,
            )
            for c in kept
        ]


def format_memories_for_prompt(memories: list[RetrievedMemory]) -> str:
    """Format retrieved memories as a prompt block, or '' when empty."""
    if not memories:
        return ""

    lines = ["## Earlier Context (from memory)\n"]
    for memory in memories:
        channel_note = f" [{memory.channel}]" if memory.channel else ""
        lines.append(f"**{memory.age}{channel_note}:**")
        lines.append(memory.content)
        lines.append("")

    return "\n".join(lines)
