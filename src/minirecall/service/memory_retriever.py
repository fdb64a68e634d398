from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from functools import partial

import anyio
import anyio.to_thread

from minirecall.config.profiles import MemoryTier, resolve_tier
from minirecall.domain.budget import apply_memory_budget
from minirecall.domain.constants import MEMORY_CANDIDATE_POOL, MEMORY_MIN_CONFIDENCE
from minirecall.domain.diagnostics import RetrievalDiagnostics
from minirecall.domain.errors import require_owner
from minirecall.domain.models import CONTEXTUAL_KINDS, PROFILE_KINDS, Memory
from minirecall.domain.retrieval.relevance import memory_relevance_score, passes_memory_rules
from minirecall.infra.sqlite.memory_repository import MemoryRepository
from minirecall.infra.vector.lancedb_store import LanceVectorStore, VectorFilter

logger = logging.getLogger(__name__)


class MemoryRetriever:
    """Two-tier memory selection.

    The profile tier always contributes the most confident preferences and
    facts. The contextual tier ranks goals, decisions and summaries by
    similarity to the query and is skipped when the tier allows none.
    """

    def __init__(
        self,
        *,
        repo: MemoryRepository,
        vector_store: LanceVectorStore,
        min_confidence: float = MEMORY_MIN_CONFIDENCE,
        candidate_pool: int = MEMORY_CANDIDATE_POOL,
    ) -> None:
        self.repo = repo
        self.vector_store = vector_store
        self.min_confidence = max(0.0, min(1.0, float(min_confidence)))
        self.candidate_pool = max(1, int(candidate_pool))

    async def retrieve(
        self,
        *,
        owner_id: str,
        query_text: str,
        query_embedding: list[float] | None,
        tier: str | MemoryTier = "full",
        diagnostics: RetrievalDiagnostics | None = None,
        now: datetime | None = None,
    ) -> list[Memory]:
        owner = require_owner(owner_id)
        preset = resolve_tier(tier)
        diag = diagnostics if diagnostics is not None else RetrievalDiagnostics()
        results: dict[str, list[Memory]] = {"profile": [], "contextual": []}

        async def run(branch: str, fn) -> None:
            try:
                results[branch] = await anyio.to_thread.run_sync(fn)
            except Exception as exc:
                logger.warning("%s memory branch failed: %s", branch, exc)
                diag.record_failure(f"{branch}_memories", exc)

        async with anyio.create_task_group() as tg:
            tg.start_soon(
                run,
                "profile",
                partial(self.list_profile, owner_id=owner, limit=preset.profile_limit, now=now),
            )
            tg.start_soon(
                run,
                "contextual",
                partial(
                    self.list_contextual,
                    owner_id=owner,
                    query_text=query_text,
                    query_embedding=query_embedding,
                    limit=preset.contextual_limit,
                    now=now,
                ),
            )

        diag.profile_memories = len(results["profile"])
        diag.contextual_memories = len(results["contextual"])
        combined = results["profile"] + results["contextual"]
        selected = apply_memory_budget(combined, preset.to_budget())
        diag.memories_after_budget = len(selected)
        return selected

    def list_profile(
        self, *, owner_id: str, limit: int, now: datetime | None = None
    ) -> list[Memory]:
        if limit <= 0:
            return []
        candidates = self.repo.list_by_confidence(
            owner_id=owner_id,
            kinds=PROFILE_KINDS,
            limit=max(limit, self.candidate_pool),
            min_confidence=self.min_confidence,
        )
        kept = [
            m
            for m in candidates
            if m.owner_id == owner_id
            and passes_memory_rules(m, now=now, min_confidence=self.min_confidence)
        ]
        return kept[:limit]

    def list_contextual(
        self,
        *,
        owner_id: str,
        query_text: str,
        query_embedding: list[float] | None,
        limit: int,
        now: datetime | None = None,
    ) -> list[Memory]:
        if limit <= 0 or not query_embedding:
            return []
        candidates = self.list_by_similarity(
            owner_id=owner_id,
            embedding=query_embedding,
            kinds=CONTEXTUAL_KINDS,
            limit=max(limit, self.candidate_pool),
            min_confidence=self.min_confidence,
        )
        kept = [
            m
            for m in candidates
            if passes_memory_rules(m, now=now, min_confidence=self.min_confidence)
        ]
        # sorted() is stable, so equal scores keep similarity order.
        ranked = sorted(
            kept,
            key=lambda m: memory_relevance_score(
                m, requested_kinds=CONTEXTUAL_KINDS, query_text=query_text
            ),
            reverse=True,
        )
        return ranked[:limit]

    def list_by_similarity(
        self,
        *,
        owner_id: str,
        embedding: list[float],
        kinds: tuple[str, ...],
        limit: int,
        min_confidence: float,
    ) -> list[Memory]:
        hits = self.vector_store.search(
            vector=list(embedding),
            top_k=limit,
            where=VectorFilter(
                owner_id=owner_id, kinds=tuple(kinds), min_confidence=min_confidence
            ),
        )
        distances = {str(h["id"]): float(h["distance"]) for h in hits}
        rows = self.repo.fetch_by_ids(owner_id=owner_id, memory_ids=list(distances))
        return [
            replace(m, distance=distances.get(m.id))
            for m in rows
            if m.owner_id == owner_id and m.kind in kinds
        ]
