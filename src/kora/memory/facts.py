"""Durable fact extraction and storage.

An LLM reads each exchange together with the facts already known and
proposes ADD / UPDATE / DELETE / NOOP operations. Deduplication is mostly
the extractor's job (it sees the existing facts); a nearest-neighbour check
on ADD catches the duplicates it misses.
"""

import json
import logging
import re
from typing import Any

from groq import AsyncGroq

from .embeddings import Embedder, cosine_similarity
from .models import (
    Fact,
    FactCandidate,
    FactCategory,
    FactOperation,
    FactOperationStats,
    utc_now_iso,
)
from .store import MemoryStoreNotInitializedError, new_id
from .vector_store import VectorDatabase, VectorTable

logger = logging.getLogger(__name__)

FACTS_TABLE = "facts"
SEED_ID = "__init__"
DEFAULT_FACT_MODEL = "llama-3.1-8b-instant"
DEFAULT_DEDUP_THRESHOLD = 0.92

EXTRACTION_PROMPT = """Analyze this conversation exchange and extract any facts worth remembering.

Exchange:
User: {user_message}
Assistant: {assistant_response}
{existing_facts}

Extract facts that are:
- Preferences (likes, dislikes, favorites)
- Personal info (name, location, schedule patterns)
- Decisions made
- Commitments (things to do, promises)
- Info about contacts/people
- Project/work related info

For each fact, determine:
- operation: ADD (new fact), UPDATE (modifies existing fact), DELETE (contradicts existing fact), or NOOP (already known, no change)
- If UPDATE, DELETE or NOOP, specify which existing fact ID it affects

Respond in JSON format:
{{
  "facts": [
    {{
      "content": "the fact as a clear statement",
      "category": "preference|personal_info|decision|commitment|contact|project|other",
      "confidence": 0.0-1.0,
      "operation": "ADD|UPDATE|DELETE|NOOP",
      "targetFactId": "only if UPDATE, DELETE or NOOP"
    }}
  ]
}}

If no facts worth extracting, return: {{"facts": []}}
Only extract genuinely useful, stable facts. Skip transient conversation details."""

CATEGORY_LABELS = {
    FactCategory.PREFERENCE: "Preferences",
    FactCategory.PERSONAL_INFO: "Personal Info",
    FactCategory.DECISION: "Decisions",
    FactCategory.COMMITMENT: "Commitments",
    FactCategory.CONTACT: "Contacts",
    FactCategory.PROJECT: "Projects/Work",
    FactCategory.OTHER: "Other",
}

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class FactExtractor:
    """Proposes fact operations for an exchange using the LLM."""

    def __init__(
        self,
        llm_client: AsyncGroq,
        model: str = DEFAULT_FACT_MODEL,
        max_tokens: int = 1024,
    ) -> None:
        """Initialize the extractor.

        Args:
            llm_client: The Groq client for LLM calls.
            model: The model to use for extraction.
            max_tokens: Response budget for the extraction call.
        """
        self.client = llm_client
        self.model = model
        self.max_tokens = max_tokens

    def build_prompt(
        self, user_message: str, assistant_response: str, existing_facts: list[Fact]
    ) -> str:
        """Render the extraction prompt with the known facts listed by id."""
        if existing_facts:
            listing = "\n".join(f"- [{f.id}] {f.content}" for f in existing_facts)
            existing = f"\nExisting known facts:\n{listing}"
        else:
            existing = "\nNo existing facts yet."

        return EXTRACTION_PROMPT.format(
            user_message=user_message,
            assistant_response=assistant_response,
            existing_facts=existing,
        )

    async def extract(
        self,
        user_message: str,
        assistant_response: str,
        existing_facts: list[Fact],
    ) -> list[FactCandidate]:
        """Extract fact candidates from an exchange.

        Returns:
            Candidates, empty if none found or on error.
        """
        prompt = self.build_prompt(user_message, assistant_response, existing_facts)

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=0.1,
                max_tokens=self.max_tokens,
            )
            content = response.choices[0].message.content or ""
        except Exception as e:
            logger.warning(f"Fact extraction failed: {e}")
            return []

        candidates = self._parse_response(content)
        logger.info("Extracted %d fact candidates", len(candidates))
        return candidates

    def _parse_response(self, content: str) -> list[FactCandidate]:
        """Parse the first JSON object in the response into candidates."""
        match = _JSON_OBJECT.search(content)
        if not match:
            logger.warning("No JSON in extraction response")
            return []

        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse extraction response: {e}")
            return []

        if not isinstance(data, dict) or not isinstance(data.get("facts"), list):
            logger.warning("Invalid response structure: missing 'facts' list")
            return []

        candidates = []
        for item in data["facts"]:
            candidate = self._parse_item(item)
            if candidate is None:
                logger.warning(f"Skipping invalid fact item: {item}")
                continue
            candidates.append(candidate)
        return candidates

    def _parse_item(self, item: Any) -> FactCandidate | None:
        if not isinstance(item, dict):
            return None

        content = item.get("content")
        if not isinstance(content, str) or not content.strip():
            return None

        try:
            operation = FactOperation(str(item.get("operation", "ADD")).strip().upper())
        except ValueError:
            return None

        try:
            confidence = float(item.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5

        target = item.get("targetFactId")
        return FactCandidate(
            content=content.strip(),
            category=FactCategory.parse(item.get("category", "other")),
            confidence=min(1.0, max(0.0, confidence)),
            operation=operation,
            target_fact_id=str(target) if target else None,
        )


class FactStore:
    """Persistent, reconciled storage for durable facts."""

    def __init__(
        self,
        db: VectorDatabase,
        embedder: Embedder,
        extractor: FactExtractor | None = None,
        dedup_threshold: float | None = DEFAULT_DEDUP_THRESHOLD,
    ) -> None:
        """Initialize the store.

        Args:
            db: The vector database holding the facts table.
            embedder: Embedder for fact content.
            extractor: Optional extractor used by process_exchange.
            dedup_threshold: Cosine similarity at which an ADD is treated as
                a reconfirmation of the nearest existing fact. None disables.
        """
        self.db = db
        self.embedder = embedder
        self.extractor = extractor
        self.dedup_threshold = dedup_threshold
        self._table: VectorTable | None = None

    def init(self) -> None:
        """Open the facts table, creating it on first run."""
        if FACTS_TABLE in self.db.table_names():
            self._table = self.db.open_table(FACTS_TABLE)
            logger.info("Opened existing facts table (%d rows)", self._table.count_rows())
            return

        now = utc_now_iso()
        seed = Fact(
            id=SEED_ID,
            content="",
            category=FactCategory.OTHER,
            confidence=0.0,
            source_chunk_id="",
            created_at=now,
            last_validated_at=now,
            vector=[0.0] * self.embedder.dimensions,
        )
        self._table = self.db.create_table(FACTS_TABLE, seed.to_row())
        logger.info("Created new facts table")

    def is_initialized(self) -> bool:
        """Check if init() has completed."""
        return self._table is not None

    @property
    def table(self) -> VectorTable:
        if self._table is None:
            raise MemoryStoreNotInitializedError("Facts store not initialized")
        return self._table

    def get_all_facts(self) -> list[Fact]:
        """All stored facts, oldest first."""
        if self._table is None:
            return []
        facts = [Fact.from_row(row) for row in self._table.query()]
        return sorted(facts, key=lambda fact: fact.created_at)

    def get_fact(self, fact_id: str) -> Fact | None:
        """Fetch a fact by id."""
        rows = self.table.query("id = ?", (fact_id,), limit=1)
        return Fact.from_row(rows[0]) if rows else None

    async def find_similar_facts(self, content: str, limit: int = 3) -> list[Fact]:
        """Facts closest in meaning to the given text."""
        if self._table is None:
            return []
        vector = await self.embedder.embed(content)
        return [Fact.from_row(row) for row in self._table.vector_search(vector, limit)]

    def _near_duplicate(self, vector: list[float]) -> Fact | None:
        if self.dedup_threshold is None:
            return None
        rows = self.table.vector_search(vector, limit=1)
        if not rows:
            return None
        nearest = Fact.from_row(rows[0])
        if cosine_similarity(vector, nearest.vector) >= self.dedup_threshold:
            return nearest
        return None

    async def apply_operations(
        self, candidates: list[FactCandidate], source_chunk_id: str
    ) -> FactOperationStats:
        """Apply extracted operations to the store.

        A failing candidate is logged and skipped; the rest still apply.

        Returns:
            Counts of applied operations.
        """
        table = self.table
        stats = FactOperationStats()
        now = utc_now_iso()

        for candidate in candidates:
            try:
                await self._apply(table, candidate, source_chunk_id, now, stats)
            except Exception:
                logger.exception("Failed to apply fact operation %s", candidate.operation.value)

        return stats

    async def _apply(
        self,
        table: VectorTable,
        candidate: FactCandidate,
        source_chunk_id: str,
        now: str,
        stats: FactOperationStats,
    ) -> None:
        op = candidate.operation
        target = candidate.target_fact_id

        if op is FactOperation.ADD:
            vector = await self.embedder.embed(candidate.content)
            duplicate = self._near_duplicate(vector)
            if duplicate is not None:
                table.update_where("id = ?", (duplicate.id,), {"last_validated_at": now})
                logger.info("ADD matched existing fact %s, reconfirmed", duplicate.id)
                stats.confirmed += 1
                return

            fact = Fact(
                id=new_id("fact", suffix_length=4),
                content=candidate.content,
                category=candidate.category,
                confidence=candidate.confidence,
                source_chunk_id=source_chunk_id,
                created_at=now,
                last_validated_at=now,
                vector=vector,
            )
            table.add_row(fact.to_row())
            logger.info("Added fact: %s...", candidate.content[:50])
            stats.added += 1
            return

        if not target:
            logger.warning("%s without targetFactId skipped", op.value)
            return

        if op is FactOperation.UPDATE:
            vector = await self.embedder.embed(candidate.content)
            count = table.update_where(
                "id = ?",
                (target,),
                {
                    "content": candidate.content,
                    "confidence": candidate.confidence,
                    "last_validated_at": now,
                    "vector": vector,
                },
            )
            if count:
                logger.info("Updated %s: %s...", target, candidate.content[:50])
                stats.updated += 1
            else:
                logger.warning("UPDATE target %s not found", target)

        elif op is FactOperation.DELETE:
            if table.delete_where("id = ?", (target,)):
                logger.info("Deleted %s", target)
                stats.deleted += 1
            else:
                logger.warning("DELETE target %s not found", target)

        elif op is FactOperation.NOOP:
            if table.update_where("id = ?", (target,), {"last_validated_at": now}):
                stats.confirmed += 1

    async def process_exchange(
        self, user_message: str, assistant_response: str, source_chunk_id: str
    ) -> FactOperationStats | None:
        """Extract and apply facts for one exchange.

        Never raises: a missed fact is harmless, a broken turn is not.

        Returns:
            Applied counts, or None when extraction was skipped or failed.
        """
        if self.extractor is None or self._table is None:
            return None

        try:
            candidates = await self.extractor.extract(
                user_message, assistant_response, self.get_all_facts()
            )
            if not candidates:
                return FactOperationStats()

            stats = await self.apply_operations(candidates, source_chunk_id)
            logger.info(
                "Applied facts: +%d ~%d -%d =%d",
                stats.added,
                stats.updated,
                stats.deleted,
                stats.confirmed,
            )
            return stats
        except Exception:
            logger.exception("Fact processing failed")
            return None


def format_facts_for_prompt(facts: list[Fact]) -> str:
    """Format facts grouped by category, or '' when empty."""
    if not facts:
        return ""

    by_category: dict[FactCategory, list[Fact]] = {}
    for fact in facts:
        by_category.setdefault(fact.category, []).append(fact)

    lines = ["## Known Facts About User\n"]
    for category, category_facts in by_category.items():
        lines.append(f"**{CATEGORY_LABELS[category]}:**")
        for fact in category_facts:
            lines.append(f"- {fact.content}")
        lines.append("")

    return "\n".join(lines)
