from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from minirecall.domain.models import Passage

MAX_CANDIDATE_SUMMARIES = 5
SNIPPET_CHARS = 80


@dataclass
class HybridSearchDiagnostics:
    embedding_candidates: int = 0
    keyword_candidates: int = 0
    overlap_count: int = 0
    fused_count: int = 0
    top_embedding_distance: float | None = None


@dataclass(frozen=True)
class BranchFailure:
    branch: str
    error_kind: str
    message: str


@dataclass
class RetrievalDiagnostics:
    """Per-call record of pipeline counts and scores. Never persisted."""

    hybrid: HybridSearchDiagnostics = field(default_factory=HybridSearchDiagnostics)
    after_relevance_filter: int = 0
    after_dedup: int = 0
    after_budget: int = 0
    top_score: float | None = None
    top_distance: float | None = None
    score_spread: float | None = None
    unique_documents: int = 0
    temporal_filter_applied: bool = False
    query_year: int | None = None
    profile_memories: int = 0
    contextual_memories: int = 0
    memories_after_budget: int = 0
    failures: list[BranchFailure] = field(default_factory=list)
    candidates: list[dict[str, Any]] = field(default_factory=list)

    def record_failure(self, branch: str, exc: BaseException) -> None:
        kind = getattr(exc, "kind", None) or type(exc).__name__
        self.failures.append(
            BranchFailure(branch=branch, error_kind=str(kind), message=str(exc)[:260])
        )

    def record_final_passages(self, passages: list[Passage]) -> None:
        self.after_budget = len(passages)
        self.unique_documents = len({p.document_id for p in passages})
        if passages and passages[0].fused_score is not None:
            self.top_score = float(passages[0].fused_score)
        distances = [float(p.distance) for p in passages if p.distance is not None]
        if distances:
            self.top_distance = min(distances)
            self.score_spread = max(distances) - min(distances)
        self.candidates = candidate_summaries(passages)

    def to_trace_meta(self) -> dict[str, str | int | float | bool | None]:
        return {
            "embeddingCandidates": self.hybrid.embedding_candidates,
            "keywordCandidates": self.hybrid.keyword_candidates,
            "fusionOverlap": self.hybrid.overlap_count,
            "fusedCount": self.hybrid.fused_count,
            "topEmbeddingDistance": self.hybrid.top_embedding_distance,
            "afterRelevanceFilter": self.after_relevance_filter,
            "afterDedup": self.after_dedup,
            "afterBudget": self.after_budget,
            "topScore": self.top_score,
            "topChunkDistance": self.top_distance,
            "scoreSpread": self.score_spread,
            "uniqueDocuments": self.unique_documents,
            "temporalFilterApplied": self.temporal_filter_applied,
            "queryYear": self.query_year,
            "profileMemories": self.profile_memories,
            "contextualMemories": self.contextual_memories,
            "memoriesAfterBudget": self.memories_after_budget,
            "failures": ",".join(f"{f.branch}:{f.error_kind}" for f in self.failures) or None,
        }


def candidate_summaries(passages: list[Passage]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for passage in passages[:MAX_CANDIDATE_SUMMARIES]:
        snippet = " ".join(passage.content.split())
        if len(snippet) > SNIPPET_CHARS:
            snippet = snippet[:SNIPPET_CHARS] + "..."
        out.append(
            {
                "id": passage.id,
                "document_id": passage.document_id,
                "distance": passage.distance,
                "confidence": passage.confidence,
                "fused_score": passage.fused_score,
                "snippet": snippet,
            }
        )
    return out
