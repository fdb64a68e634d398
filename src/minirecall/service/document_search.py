from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime
from typing import Any

from minirecall.domain.budget import BudgetSpec, apply_budget, coerce_spec
from minirecall.domain.constants import (
    ALLOWED_FILE_TYPES,
    PASSAGE_DEDUP_THRESHOLD,
    PASSAGE_MAX_AGE_DAYS,
    PASSAGE_MIN_CHARS,
    RRF_K,
    SEARCH_TOP_K,
)
from minirecall.domain.diagnostics import RetrievalDiagnostics
from minirecall.domain.errors import RetrievalError, require_owner
from minirecall.domain.models import Passage
from minirecall.domain.retrieval.dedup import cosine_similarity, deduplicate_passages
from minirecall.domain.retrieval.fusion import fuse_hybrid
from minirecall.domain.retrieval.relevance import passes_passage_rules
from minirecall.domain.retrieval.temporal import extract_query_year
from minirecall.infra.sqlite.document_repository import DocumentRepository
from minirecall.infra.vector.lancedb_store import LanceVectorStore, VectorFilter

logger = logging.getLogger(__name__)


class DocumentSearchService:
    """Hybrid passage search: vector + keyword, fused, filtered and budgeted."""

    def __init__(
        self,
        *,
        documents: DocumentRepository,
        vector_store: LanceVectorStore,
        vector_top_k: int = SEARCH_TOP_K,
        keyword_top_k: int = SEARCH_TOP_K,
        rrf_k: int = RRF_K,
        dedup_threshold: float = PASSAGE_DEDUP_THRESHOLD,
        min_chars: int = PASSAGE_MIN_CHARS,
        max_age_days: int = PASSAGE_MAX_AGE_DAYS,
        allowed_file_types: frozenset[str] = ALLOWED_FILE_TYPES,
        default_budget: BudgetSpec | None = None,
    ) -> None:
        self.documents = documents
        self.vector_store = vector_store
        self.vector_top_k = max(1, int(vector_top_k))
        self.keyword_top_k = max(1, int(keyword_top_k))
        self.rrf_k = max(1, int(rrf_k))
        self.dedup_threshold = float(dedup_threshold)
        self.min_chars = max(0, int(min_chars))
        self.max_age_days = int(max_age_days)
        self.allowed_file_types = frozenset(allowed_file_types)
        self.default_budget = default_budget or BudgetSpec()

    def search(
        self,
        *,
        owner_id: str,
        query_text: str,
        query_embedding: list[float] | None,
        budget: BudgetSpec | Mapping[str, Any] | None = None,
        diagnostics: RetrievalDiagnostics | None = None,
        now: datetime | None = None,
    ) -> list[Passage]:
        owner = require_owner(owner_id)
        spec = self.default_budget if budget is None else coerce_spec(BudgetSpec, budget)
        diag = diagnostics if diagnostics is not None else RetrievalDiagnostics()
        now_year = now.year if now is not None else None

        query_year = extract_query_year(query_text)
        diag.query_year = query_year
        diag.temporal_filter_applied = query_year is not None

        vector_hits = self._vector_hits(
            owner=owner,
            query_embedding=query_embedding,
            query_year=query_year,
            now_year=now_year,
            diagnostics=diag,
        )
        keyword_hits = self._keyword_hits(
            owner=owner,
            query_text=query_text,
            query_year=query_year,
            now_year=now_year,
            diagnostics=diag,
        )
        fused = fuse_hybrid(
            vector_hits, keyword_hits, rrf_k=self.rrf_k, diagnostics=diag.hybrid
        )
        if not fused:
            diag.record_final_passages([])
            return []

        try:
            passages = self._hydrate(owner, fused, query_embedding)
        except RetrievalError as exc:
            logger.warning("passage hydration failed (%s): %s", exc.kind, exc)
            diag.record_failure("passage_hydrate", exc)
            diag.record_final_passages([])
            return []

        filtered = [
            p
            for p in passages
            if passes_passage_rules(
                p,
                now=now,
                min_chars=self.min_chars,
                max_age_days=self.max_age_days,
                allowed_file_types=self.allowed_file_types,
            )
        ]
        diag.after_relevance_filter = len(filtered)
        unique = deduplicate_passages(filtered, threshold=self.dedup_threshold)
        diag.after_dedup = len(unique)
        selected = apply_budget(unique, spec)
        diag.record_final_passages(selected)
        return selected

    def _vector_hits(
        self,
        *,
        owner: str,
        query_embedding: list[float] | None,
        query_year: int | None,
        now_year: int | None,
        diagnostics: RetrievalDiagnostics,
    ) -> list[dict[str, Any]]:
        if not query_embedding:
            return []
        try:
            return self.vector_store.search(
                vector=list(query_embedding),
                top_k=self.vector_top_k,
                where=VectorFilter(
                    owner_id=owner, query_year=query_year, now_year=now_year
                ),
            )
        except RetrievalError as exc:
            logger.warning("vector search failed (%s): %s", exc.kind, exc)
            diagnostics.record_failure("vector_search", exc)
            return []

    def _keyword_hits(
        self,
        *,
        owner: str,
        query_text: str,
        query_year: int | None,
        now_year: int | None,
        diagnostics: RetrievalDiagnostics,
    ) -> list[dict[str, Any]]:
        if not str(query_text or "").strip():
            return []
        try:
            return self.documents.search_keyword(
                owner_id=owner,
                query=query_text,
                top_k=self.keyword_top_k,
                query_year=query_year,
                now_year=now_year,
            )
        except RetrievalError as exc:
            logger.warning("keyword search failed (%s): %s", exc.kind, exc)
            diagnostics.record_failure("keyword_search", exc)
            return []

    def _hydrate(
        self,
        owner: str,
        fused: list[dict[str, Any]],
        query_embedding: list[float] | None,
    ) -> list[Passage]:
        rows = self.documents.fetch_passages_by_ids(
            owner_id=owner, passage_ids=[str(x["id"]) for x in fused]
        )
        by_id = {p.id: p for p in rows}
        out: list[Passage] = []
        for hit in fused:
            passage = by_id.get(str(hit["id"]))
            if passage is None:
                continue
            if passage.owner_id != owner:
                logger.error("dropping passage %s: owner mismatch", passage.id)
                continue
            distance = hit.get("distance")
            if distance is None and query_embedding and passage.embedding:
                # Keyword-only hit: score it against the query for a comparable confidence.
                distance = max(0.0, 1.0 - cosine_similarity(query_embedding, passage.embedding))
            out.append(
                replace(
                    passage,
                    distance=float(distance) if distance is not None else None,
                    fused_score=float(hit.get("fused_score", 0.0)),
                )
            )
        return out
