"""Tests for ChunkStore."""

import re
from datetime import datetime, timedelta, timezone

import pytest

from kora.memory import ChunkStore, MemoryStoreNotInitializedError, Tier, VectorDatabase
from kora.memory.models import parse_iso
from kora.memory.store import retag_id


class TestChunkStoreInit:
    """Tests for ChunkStore initialization."""

    def test_creates_table_on_first_run(self, db: VectorDatabase, embedder):
        """init creates an empty chunks table."""
        store = ChunkStore(db, embedder)
        assert not store.is_initialized()
        store.init()
        assert store.is_initialized()
        assert "chunks" in db.table_names()
        assert store.table.count_rows() == 0

    def test_init_reopens_existing(self, chunk_store: ChunkStore, db: VectorDatabase, embedder):
        """A second store opens the existing table instead of recreating it."""
        assert chunk_store.table.count_rows() == 0
        other = ChunkStore(db, embedder)
        other.init()
        assert other.table.dimensions == embedder.dimensions

    @pytest.mark.asyncio
    async def test_uninitialized_add_raises(self, db: VectorDatabase, embedder):
        """Using the store before init raises."""
        store = ChunkStore(db, embedder)
        with pytest.raises(MemoryStoreNotInitializedError):
            await store.add_chunk("hello world", "cli", 2)

    def test_uninitialized_helpers_are_noops(self, db: VectorDatabase, embedder):
        """Maintenance helpers do nothing before init."""
        store = ChunkStore(db, embedder)
        assert store.touch_chunks(["x"]) == 0
        assert store.get_chunk_counts() == {Tier.WARM: 0, Tier.COLD: 0}
        assert store.demote_chunks_older_than(datetime.now(timezone.utc)) == 0


class TestAddChunk:
    """Tests for adding chunks."""

    @pytest.mark.asyncio
    async def test_add_chunk_fields(self, chunk_store: ChunkStore):
        """A new chunk is warm, sortable by id and not yet accessed."""
        chunk_id = await chunk_store.add_chunk("User likes hiking in the Alps", "telegram", 2)

        assert re.fullmatch(r"warm-\d{13}-[a-z0-9]{6}", chunk_id)
        chunk = chunk_store.get_chunk(chunk_id)
        assert chunk is not None
        assert chunk.tier is Tier.WARM
        assert chunk.channel == "telegram"
        assert chunk.turn_count == 2
        assert chunk.last_accessed_at == chunk.created_at
        assert len(chunk.vector) == chunk_store.embedder.dimensions

    @pytest.mark.asyncio
    async def test_add_cold_chunk(self, chunk_store: ChunkStore):
        """Chunks can be written straight to the cold tier."""
        chunk_id = await chunk_store.add_chunk("archived note", "cli", 1, Tier.COLD)
        assert chunk_id.startswith("cold-")

    def test_get_missing_chunk(self, chunk_store: ChunkStore):
        """Unknown ids return None."""
        assert chunk_store.get_chunk("warm-0-000000") is None


class TestSearchChunks:
    """Tests for similarity search."""

    @pytest.mark.asyncio
    async def test_most_similar_first(self, chunk_store: ChunkStore):
        """The chunk sharing the query's words ranks first."""
        await chunk_store.add_chunk("meeting with John tomorrow at three", "cli", 2)
        await chunk_store.add_chunk("favorite coffee shop is Blue Bottle", "cli", 2)

        results = await chunk_store.search_chunks("coffee shop", limit=2)

        assert len(results) == 2
        assert "coffee" in results[0].chunk.content
        assert 0.0 < results[0].score <= 1.0
        assert results[0].score > results[1].score

    @pytest.mark.asyncio
    async def test_tier_filter(self, chunk_store: ChunkStore):
        """Search can be restricted to one tier."""
        await chunk_store.add_chunk("coffee in the warm tier", "cli", 2)
        await chunk_store.add_chunk("coffee in the cold tier", "cli", 2, Tier.COLD)

        results = await chunk_store.search_chunks("coffee", tier=Tier.COLD)

        assert [r.chunk.tier for r in results] == [Tier.COLD]

    @pytest.mark.asyncio
    async def test_keyword_restriction(self, chunk_store: ChunkStore):
        """Keywords limit vector search to full-text matches."""
        await chunk_store.add_chunk("dinner plans with Maria", "cli", 2)
        await chunk_store.add_chunk("dinner recipe for lasagna", "cli", 2)

        results = await chunk_store.search_chunks("dinner", keywords="lasagna")

        assert len(results) == 1
        assert "lasagna" in results[0].chunk.content


class TestTouchChunks:
    """Tests for retrieval reinforcement."""

    @pytest.mark.asyncio
    async def test_touch_strictly_advances(self, chunk_store: ChunkStore):
        """Touching moves last_accessed_at strictly forward, every time."""
        chunk_id = await chunk_store.add_chunk("remember the milk", "cli", 2)
        before = chunk_store.get_chunk(chunk_id)

        assert chunk_store.touch_chunks([chunk_id]) == 1
        first = chunk_store.get_chunk(chunk_id)
        assert chunk_store.touch_chunks([chunk_id]) == 1
        second = chunk_store.get_chunk(chunk_id)

        assert parse_iso(first.last_accessed_at) > parse_iso(before.last_accessed_at)
        assert parse_iso(second.last_accessed_at) > parse_iso(first.last_accessed_at)
        assert second.created_at == before.created_at

    @pytest.mark.asyncio
    async def test_touch_batch(self, chunk_store: ChunkStore):
        """Several chunks are touched in one call."""
        ids = [await chunk_store.add_chunk(f"note number {i}", "cli", 1) for i in range(3)]
        assert chunk_store.touch_chunks(ids) == 3

    def test_touch_nothing(self, chunk_store: ChunkStore):
        """An empty id list touches nothing."""
        assert chunk_store.touch_chunks([]) == 0


class TestMaintenance:
    """Tests for counts, retention and demotion."""

    @pytest.mark.asyncio
    async def test_counts_per_tier(self, chunk_store: ChunkStore):
        """Counts are reported per tier."""
        await chunk_store.add_chunk("one", "cli", 1)
        await chunk_store.add_chunk("two", "cli", 1)
        await chunk_store.add_chunk("three", "cli", 1, Tier.COLD)

        assert chunk_store.get_chunk_counts() == {Tier.WARM: 2, Tier.COLD: 1}

    @pytest.mark.asyncio
    async def test_delete_older_than_only_touches_tier(self, chunk_store: ChunkStore):
        """Retention deletes old chunks of the given tier only."""
        await chunk_store.add_chunk("warm note", "cli", 1)
        await chunk_store.add_chunk("cold note", "cli", 1, Tier.COLD)
        cutoff = datetime.now(timezone.utc) + timedelta(minutes=1)

        assert chunk_store.delete_chunks_older_than(cutoff, Tier.COLD) == 1
        assert chunk_store.get_chunk_counts() == {Tier.WARM: 1, Tier.COLD: 0}

    @pytest.mark.asyncio
    async def test_delete_keeps_newer(self, chunk_store: ChunkStore):
        """Chunks created after the cutoff survive."""
        await chunk_store.add_chunk("fresh note", "cli", 1)
        cutoff = datetime.now(timezone.utc) - timedelta(days=1)
        assert chunk_store.delete_chunks_older_than(cutoff, Tier.WARM) == 0

    @pytest.mark.asyncio
    async def test_demote(self, chunk_store: ChunkStore):
        """Old warm chunks move to the cold tier under a cold- id."""
        chunk_id = await chunk_store.add_chunk("warm note", "cli", 1)
        original = chunk_store.get_chunk(chunk_id)
        cutoff = datetime.now(timezone.utc) + timedelta(minutes=1)

        assert chunk_store.demote_chunks_older_than(cutoff) == 1

        cold_id = "cold-" + chunk_id.removeprefix("warm-")
        assert chunk_store.get_chunk(chunk_id) is None
        demoted = chunk_store.get_chunk(cold_id)
        assert demoted.tier is Tier.COLD
        assert demoted.content == original.content
        assert demoted.created_at == original.created_at
        assert demoted.vector == pytest.approx(original.vector)
        assert chunk_store.get_chunk_counts() == {Tier.WARM: 0, Tier.COLD: 1}

    @pytest.mark.asyncio
    async def test_demote_keeps_newer_and_cold(self, chunk_store: ChunkStore):
        """Fresh warm chunks and existing cold chunks are left alone."""
        warm_id = await chunk_store.add_chunk("fresh note", "cli", 1)
        cold_id = await chunk_store.add_chunk("archived note", "cli", 1, Tier.COLD)
        cutoff = datetime.now(timezone.utc) - timedelta(days=1)

        assert chunk_store.demote_chunks_older_than(cutoff) == 0
        assert chunk_store.get_chunk(warm_id).tier is Tier.WARM
        assert chunk_store.get_chunk(cold_id).tier is Tier.COLD


def test_retag_id_keeps_stamp_and_suffix():
    assert retag_id("warm-1718000000000-ab12cd", "cold") == "cold-1718000000000-ab12cd"
