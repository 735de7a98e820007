"""Memory retrieval: embedding search, composite ranking, access logging and dedup."""

import logging
import math
from datetime import datetime
from typing import List, Optional, Tuple

from coach.core.errors import EmbeddingError, ValidationError
from coach.core.interfaces import PersistenceCoordinator
from coach.llm.embeddings import EmbeddingService
from coach.models.memory import (
    MemoryEntry,
    MemoryAccessLog,
    MemoryCandidate,
    MemoryCategory,
    RankedMemory,
    DedupVerdict,
    DedupResult,
)
from server.config import config
from server.logging_config import get_logger

MEMORY_PROMPT_FOOTER = (
    "Use this information to personalize your responses, but don't explicitly "
    "mention that you're using remembered information unless directly relevant "
    "to the conversation."
)


def cosine_similarity(a: List[float], b: List[float]) -> float:
    """Cosine similarity of two vectors. Mismatched or zero vectors score 0."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def build_memory_prompt(memories: List[RankedMemory], base_prompt: str) -> str:
    """Append a REMEMBERED INFORMATION section to the system prompt."""
    if not memories:
        return base_prompt

    lines = "\n".join(
        f"- {m.entry.content} ({m.entry.category.value}, importance: {m.entry.importance:g})"
        for m in memories
    )
    return f"{base_prompt}\n\nREMEMBERED INFORMATION:\n{lines}\n\n{MEMORY_PROMPT_FOOTER}"


class MemoryRetrievalEngine:
    """Ranks a user's stored memories against a query and guards memory writes."""

    def __init__(
        self,
        store: PersistenceCoordinator,
        embedder: EmbeddingService,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.logger = logger or get_logger(__name__)
        self.settings = config.MEMORY

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def _recency(self, entry: MemoryEntry, now: datetime) -> float:
        anchor = entry.last_accessed or entry.created_at
        age_days = max((now - anchor).total_seconds(), 0.0) / 86400
        return math.exp(-math.log(2) * age_days / self.settings.RECENCY_HALF_LIFE_DAYS)

    def _frequency(self, entry: MemoryEntry) -> float:
        saturation = max(self.settings.ACCESS_SATURATION, 1)
        return min(1.0, math.log1p(entry.access_count) / math.log1p(saturation))

    def score(self, entry: MemoryEntry, similarity: float, now: Optional[datetime] = None) -> float:
        now = now or datetime.utcnow()
        recency_frequency = (self._recency(entry, now) + self._frequency(entry)) / 2
        return (
            self.settings.SIMILARITY_WEIGHT * similarity
            + self.settings.IMPORTANCE_WEIGHT * entry.importance
            + self.settings.RECENCY_WEIGHT * recency_frequency
        )

    def _usable(self, entry: MemoryEntry) -> bool:
        return bool(entry.embedding) and len(entry.embedding) == self.settings.EMBEDDING_DIMENSIONS

    def rank(self, entries: List[MemoryEntry], query_embedding: List[float]) -> List[RankedMemory]:
        """Score active entries against a query embedding, best first."""
        now = datetime.utcnow()
        ranked = []
        for entry in entries:
            if not entry.is_active:
                continue
            if not self._usable(entry):
                self.logger.debug(f"Skipping memory {entry.id}: missing or mismatched embedding")
                continue
            similarity = cosine_similarity(query_embedding, entry.embedding)
            ranked.append(RankedMemory(entry=entry, similarity=similarity, score=self.score(entry, similarity, now)))

        # Ties go to the most recently accessed entry; never-accessed last
        ranked.sort(key=lambda r: r.entry.last_accessed or datetime.min, reverse=True)
        ranked.sort(key=lambda r: r.score, reverse=True)
        return ranked

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        user_id: str,
        query: str,
        limit: Optional[int] = None,
        conversation_id: Optional[str] = None,
    ) -> List[RankedMemory]:
        """
        Return the top memories for a query.

        Entries returned with similarity at or above the relevance threshold
        are access-logged and have their access count and timestamp updated.
        An embedding failure yields an empty list.
        """
        limit = self.settings.DEFAULT_LIMIT if limit is None else limit
        if limit <= 0 or not (query or "").strip():
            return []

        try:
            query_embedding = await self.embedder.embed(query)
        except EmbeddingError as e:
            self.logger.warning(f"Memory retrieval skipped, embedding failed: {e}")
            return []

        entries = await self.store.read_memories(user_id)
        top = self.rank(entries, query_embedding)[:limit]

        now = datetime.utcnow()
        for hit in top:
            if hit.similarity < self.settings.RELEVANCE_THRESHOLD:
                continue
            await self.store.append_access_log(
                MemoryAccessLog(
                    memory_id=hit.entry.id,
                    conversation_id=conversation_id,
                    timestamp=now,
                    relevance_score=hit.similarity,
                )
            )
            updated = await self.store.record_memory_access(user_id, hit.entry.id, now)
            if updated is not None:
                hit.entry.access_count = updated.access_count
                hit.entry.last_accessed = updated.last_accessed
                hit.entry.importance = updated.importance

        self.logger.info(f"Retrieved {len(top)} memories for user {user_id}")
        return top

    # ------------------------------------------------------------------
    # Deduplication
    # ------------------------------------------------------------------

    def _best_match(
        self, embedding: List[float], entries: List[MemoryEntry], category: MemoryCategory
    ) -> Tuple[Optional[MemoryEntry], float]:
        best, best_similarity = None, 0.0
        for entry in entries:
            if not entry.is_active or entry.category != category or not self._usable(entry):
                continue
            similarity = cosine_similarity(embedding, entry.embedding)
            if similarity > best_similarity:
                best, best_similarity = entry, similarity
        return best, best_similarity

    async def check_duplicate(
        self,
        candidate: MemoryCandidate,
        user_id: str,
        category: Optional[MemoryCategory] = None,
    ) -> DedupResult:
        """
        Compare a candidate against the user's active memories in one category.

        At or above the skip threshold the matched entry absorbs the
        candidate: its importance is raised (never lowered, capped at 1.0)
        and its access metadata refreshed. The verdict and confidence depend
        only on the stored embeddings, so repeating the call gives the same
        result.
        """
        category = category or candidate.category
        if candidate.embedding is None:
            candidate.embedding = await self.embedder.embed(candidate.content)

        entries = await self.store.read_memories(user_id)
        match, similarity = self._best_match(candidate.embedding, entries, category)

        if match is not None and similarity >= self.settings.DEDUP_SKIP_THRESHOLD:
            await self.store.record_memory_access(
                user_id,
                match.id,
                datetime.utcnow(),
                importance_boost=self.settings.IMPORTANCE_BOOST,
                importance_floor=candidate.importance,
            )
            self.logger.info(f"Duplicate memory merged into {match.id} (similarity {similarity:.3f})")
            return DedupResult(
                verdict=DedupVerdict.SKIP,
                confidence=similarity,
                matched_id=match.id,
                reasoning="Near-identical memory already stored",
            )

        if match is not None and similarity >= self.settings.DEDUP_REVIEW_THRESHOLD:
            return DedupResult(
                verdict=DedupVerdict.REVIEW,
                confidence=similarity,
                matched_id=match.id,
                reasoning="Similar memory exists",
            )

        return DedupResult(
            verdict=DedupVerdict.INSERT,
            confidence=similarity,
            matched_id=match.id if match else None,
            reasoning="No similar memory",
        )

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    async def remember(
        self,
        candidate: MemoryCandidate,
        user_id: str,
        conversation_id: Optional[str] = None,
    ) -> Tuple[DedupResult, Optional[MemoryEntry]]:
        """
        Store a candidate memory after deduplication.

        Returns the dedup result and the entry written, if any. A review
        verdict stores the entry inactive and flagged for review.
        """
        if not candidate.content.strip():
            raise ValidationError("Memory content must not be empty")

        result = await self.check_duplicate(candidate, user_id, candidate.category)
        if result.verdict == DedupVerdict.SKIP:
            return result, None

        entry = MemoryEntry(
            user_id=user_id,
            content=candidate.content,
            category=candidate.category,
            embedding=candidate.embedding,
            importance=candidate.importance,
            keywords=candidate.keywords,
            source_conversation_id=conversation_id,
            is_active=result.verdict == DedupVerdict.INSERT,
            needs_review=result.verdict == DedupVerdict.REVIEW,
        )
        await self.store.write_memory(entry)
        self.logger.info(f"Stored memory {entry.id} for user {user_id} ({result.verdict.value})")
        return result, entry

    async def list_memories(
        self,
        user_id: str,
        category: Optional[MemoryCategory] = None,
        include_inactive: bool = False,
    ) -> List[MemoryEntry]:
        entries = await self.store.read_memories(user_id)
        entries = [
            e for e in entries
            if (include_inactive or e.is_active or e.needs_review)
            and (category is None or e.category == category)
        ]
        return sorted(entries, key=lambda e: e.created_at, reverse=True)

    async def delete_memory(self, user_id: str, memory_id: str) -> bool:
        deleted = await self.store.delete_memory(user_id, memory_id)
        if deleted:
            self.logger.info(f"Deleted memory {memory_id} for user {user_id}")
        return deleted

    async def approve_memory(self, user_id: str, memory_id: str) -> Optional[MemoryEntry]:
        """Activate a memory that was held for review."""
        return await self.store.set_memory_status(user_id, memory_id, is_active=True, needs_review=False)
