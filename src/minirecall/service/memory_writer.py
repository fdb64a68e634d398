from __future__ import annotations

import logging
import math

from minirecall.domain.constants import MEMORY_DEDUP_POOL, MEMORY_DEDUP_THRESHOLD
from minirecall.domain.errors import EmbeddingError, ValidationError, require_owner
from minirecall.domain.models import MEMORY_KINDS, Memory
from minirecall.domain.retrieval.dedup import cosine_similarity
from minirecall.infra.sqlite.memory_repository import MemoryRepository
from minirecall.infra.vector.lancedb_store import LanceVectorStore
from minirecall.service.embedding import EmbeddingProviderProtocol

logger = logging.getLogger(__name__)


class MemoryWriter:
    def __init__(
        self,
        *,
        repo: MemoryRepository,
        vector_store: LanceVectorStore,
        embedding_provider: EmbeddingProviderProtocol,
        dedup_threshold: float = MEMORY_DEDUP_THRESHOLD,
        dedup_pool: int = MEMORY_DEDUP_POOL,
    ) -> None:
        self.repo = repo
        self.vector_store = vector_store
        self.embedding_provider = embedding_provider
        self.dedup_threshold = max(0.0, min(1.0, float(dedup_threshold)))
        self.dedup_pool = max(1, int(dedup_pool))

    def add_memory(
        self,
        *,
        owner_id: str,
        kind: str,
        content: str,
        confidence: float,
        created_at: str | None = None,
    ) -> Memory | None:
        """Store a memory unless a near-identical one of the same kind exists.

        Returns None when the write was skipped as a duplicate.
        """
        owner = require_owner(owner_id)
        if kind not in MEMORY_KINDS:
            raise ValidationError(f"unknown memory kind: {kind!r}")
        text = str(content or "").strip()
        if not text:
            raise ValidationError("memory content must not be empty")
        try:
            score = float(confidence)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"invalid memory confidence: {confidence!r}") from exc
        if not math.isfinite(score) or not 0.0 <= score <= 1.0:
            raise ValidationError(f"memory confidence must be within [0, 1]: {confidence!r}")

        vector = self.embedding_provider.embed(text, mode="document")
        if len(vector) != self.vector_store.vector_dim:
            raise EmbeddingError(
                f"embedding dim {len(vector)} does not match "
                f"vector store dim {self.vector_store.vector_dim}"
            )
        for existing in self.repo.list_recent_by_kind(
            owner_id=owner, kind=kind, limit=self.dedup_pool
        ):
            if cosine_similarity(vector, existing.embedding) >= self.dedup_threshold:
                logger.debug("skipping duplicate %s memory for owner %s", kind, owner)
                return None

        memory = self.repo.add_memory(
            owner_id=owner,
            kind=kind,
            content=text,
            confidence=score,
            embedding=vector,
            created_at=created_at,
        )
        self.vector_store.upsert(
            memory.id,
            vector,
            {
                "owner_id": owner,
                "kind": kind,
                "confidence": score,
            },
        )
        return memory

    def delete_memory(self, *, owner_id: str, memory_id: str) -> bool:
        owner = require_owner(owner_id)
        removed = self.repo.delete_memory(owner_id=owner, memory_id=memory_id)
        if removed:
            self.vector_store.delete([memory_id])
        return bool(removed)
