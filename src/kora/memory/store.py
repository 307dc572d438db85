"""Vector storage for conversation chunks.

Holds both tiers: WARM chunks written after each exchange and COLD
chunks demoted by maintenance.
"""

import logging
import random
import string
import time
from datetime import datetime, timedelta

from .embeddings import Embedder
from .models import MemoryChunk, ScoredChunk, Tier, parse_iso, to_iso, utc_now_iso
from .vector_store import DISTANCE_KEY, VectorDatabase, VectorTable, id_in

logger = logging.getLogger(__name__)

CHUNKS_TABLE = "chunks"
SEED_ID = "__init__"

_ID_ALPHABET = string.ascii_lowercase + string.digits


class MemoryStoreNotInitializedError(RuntimeError):
    """Raised when a store is used before init()."""


def new_id(prefix: str, suffix_length: int = 6) -> str:
    """Build a sortable unique id: '<prefix>-<epoch ms>-<random base36>'."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=suffix_length))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def retag_id(chunk_id: str, prefix: str) -> str:
    """Swap the prefix of an id, keeping its timestamp and suffix."""
    _, _, rest = chunk_id.partition("-")
    return f"{prefix}-{rest}"


class ChunkStore:
    """Persistent storage and similarity search for memory chunks."""

    def __init__(self, db: VectorDatabase, embedder: Embedder) -> None:
        """Initialize the store.

        Args:
            db: The vector database holding the chunks table.
            embedder: Embedder used for chunk content and queries.
        """
        self.db = db
        self.embedder = embedder
        self._table: VectorTable | None = None

    def init(self) -> None:
        """Open the chunks table, creating it on first run."""
        if CHUNKS_TABLE in self.db.table_names():
            self._table = self.db.open_table(CHUNKS_TABLE, fts_column="content")
            logger.info(
                "Opened existing chunks table (%d rows)", self._table.count_rows()
            )
            return

        now = utc_now_iso()
        seed = MemoryChunk(
            id=SEED_ID,
            content="",
            channel="",
            tier=Tier.WARM,
            created_at=now,
            last_accessed_at=now,
            turn_count=0,
            vector=[0.0] * self.embedder.dimensions,
        )
        self._table = self.db.create_table(CHUNKS_TABLE, seed.to_row(), fts_column="content")
        logger.info("Created new chunks table")

    def is_initialized(self) -> bool:
        """Check if init() has completed."""
        return self._table is not None

    @property
    def table(self) -> VectorTable:
        if self._table is None:
            raise MemoryStoreNotInitializedError("Memory store not initialized")
        return self._table

    async def add_chunk(
        self,
        content: str,
        channel: str,
        turn_count: int,
        tier: Tier = Tier.WARM,
    ) -> str:
        """Embed and store a chunk.

        Returns:
            The new chunk id.
        """
        table = self.table
        chunk_id = new_id(tier.value)
        now = utc_now_iso()

        logger.debug("Embedding chunk (%d chars)", len(content))
        vector = await self.embedder.embed(content)

        chunk = MemoryChunk(
            id=chunk_id,
            content=content,
            channel=channel,
            tier=tier,
            created_at=now,
            last_accessed_at=now,
            turn_count=turn_count,
            vector=vector,
        )
        table.add_row(chunk.to_row())
        logger.info("Added chunk %s to %s tier", chunk_id, tier.value)

        return chunk_id

    def get_chunk(self, chunk_id: str) -> MemoryChunk | None:
        """Fetch a chunk by id."""
        rows = self.table.query("id = ?", (chunk_id,), limit=1)
        return MemoryChunk.from_row(rows[0]) if rows else None

    async def search_chunks(
        self,
        query: str,
        limit: int = 5,
        tier: Tier | None = None,
        keywords: str | None = None,
    ) -> list[ScoredChunk]:
        """Find chunks similar to a query.

        Args:
            query: Free text to embed and compare against.
            limit: Maximum chunks to return.
            tier: Restrict to one tier.
            keywords: Optional full-text filter combined with vector search.

        Returns:
            Chunks with cosine similarity scores, highest first.
        """
        table = self.table
        logger.debug("Searching chunks for: %r", query[:50])
        query_vector = await self.embedder.embed(query)

        where, params = (("tier = ?", (tier.value,)) if tier else (None, ()))
        rows = table.vector_search(
            query_vector, limit=limit, where=where, params=params, text=keywords
        )

        scored = [
            ScoredChunk(chunk=MemoryChunk.from_row(row), score=1.0 - row[DISTANCE_KEY])
            for row in rows
        ]
        logger.debug("Found %d chunks", len(scored))
        return scored

    def touch_chunks(self, ids: list[str]) -> int:
        """Mark chunks as accessed now, in one batched write.

        The new timestamp is strictly later than every touched chunk's
        current last_accessed_at. Failures are logged and swallowed.

        Returns:
            Number of chunks touched.
        """
        if self._table is None or not ids:
            return 0

        try:
            current = self._table.query(*id_in(ids))

            now = datetime.now().astimezone()
            if current:
                latest = max(parse_iso(row["last_accessed_at"]) for row in current)
                now = max(now, latest + timedelta(microseconds=1))

            count = self._table.update_many(ids, {"last_accessed_at": to_iso(now)})
            logger.debug("Touched %d chunks", count)
            return count
        except (OSError, RuntimeError, ValueError) as e:
            logger.warning("Touch failed (non-fatal): %s", e)
            return 0

    def get_chunk_counts(self) -> dict[Tier, int]:
        """Count chunks per tier."""
        if self._table is None:
            return {Tier.WARM: 0, Tier.COLD: 0}
        return {
            tier: self._table.count_rows("tier = ?", (tier.value,)) for tier in Tier
        }

    def delete_chunks_older_than(self, date: datetime, tier: Tier) -> int:
        """Delete chunks of a tier created before a date.

        Returns:
            Number of chunks deleted.
        """
        if self._table is None:
            return 0
        count = self._table.delete_where(
            "tier = ? AND created_at < ?", (tier.value, to_iso(date))
        )
        logger.info("Deleted %d %s chunks older than %s", count, tier.value, date)
        return count

    def demote_chunks_older_than(self, date: datetime) -> int:
        """Move WARM chunks created before a date to the COLD tier.

        Demoted chunks are re-keyed to a cold- id with the same timestamp
        and suffix, so the id keeps naming the tier.

        Returns:
            Number of chunks demoted.
        """
        if self._table is None:
            return 0

        rows = self._table.query(
            "tier = ? AND created_at < ?", (Tier.WARM.value, to_iso(date))
        )
        if not rows:
            return 0

        old_ids = [row["id"] for row in rows]
        for row in rows:
            row["id"] = retag_id(row["id"], Tier.COLD.value)
            row["tier"] = Tier.COLD.value

        count = self._table.replace_rows(old_ids, rows)
        logger.info("Demoted %d chunks older than %s", count, date)
        return count
