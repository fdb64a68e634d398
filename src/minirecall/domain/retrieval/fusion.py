from __future__ import annotations

from collections import defaultdict
from typing import Any

from minirecall.domain.constants import RRF_K
from minirecall.domain.diagnostics import HybridSearchDiagnostics


def reciprocal_rank_fusion(
    ranked_lists: list[list[dict[str, Any]]],
    *,
    key: str = "id",
    score_key: str = "fused_score",
    rrf_k: int = RRF_K,
) -> list[dict[str, Any]]:
    """Merge ranked lists with ``score = sum(1 / (k + rank + 1))``.

    Ties keep first-seen order, so the first list acts as the tie-breaker.
    Rows seen in several lists are merged; earlier lists win on field clashes.
    """
    if not ranked_lists:
        return []

    index: dict[str, dict[str, Any]] = {}
    fused_scores: defaultdict[str, float] = defaultdict(float)
    source_map: defaultdict[str, set[str]] = defaultdict(set)

    for rows in ranked_lists:
        for rank, row in enumerate(rows):
            rid = str(row.get(key) or "")
            if not rid:
                continue
            merged = index.setdefault(rid, {})
            for field_name, value in row.items():
                merged.setdefault(field_name, value)
            fused_scores[rid] += 1.0 / (rrf_k + rank + 1)
            source = row.get("source")
            if source:
                source_map[rid].add(str(source))

    fused: list[dict[str, Any]] = []
    for rid, score in fused_scores.items():
        row = dict(index[rid])
        row[score_key] = float(score)
        if source_map[rid]:
            row["source"] = ",".join(sorted(source_map[rid]))
        fused.append(row)

    fused.sort(key=lambda x: float(x.get(score_key, 0.0)), reverse=True)
    return fused


def fuse_hybrid(
    vector_hits: list[dict[str, Any]],
    keyword_hits: list[dict[str, Any]],
    *,
    rrf_k: int = RRF_K,
    diagnostics: HybridSearchDiagnostics | None = None,
) -> list[dict[str, Any]]:
    vector_ids = {str(x.get("id")) for x in vector_hits if x.get("id")}
    keyword_ids = {str(x.get("id")) for x in keyword_hits if x.get("id")}
    fused = reciprocal_rank_fusion([vector_hits, keyword_hits], rrf_k=rrf_k)
    for row in fused:
        rid = str(row.get("id"))
        row["in_vector_hits"] = rid in vector_ids
        row["in_keyword_hits"] = rid in keyword_ids
    if diagnostics is not None:
        diagnostics.embedding_candidates = len(vector_hits)
        diagnostics.keyword_candidates = len(keyword_hits)
        diagnostics.overlap_count = len(vector_ids & keyword_ids)
        diagnostics.fused_count = len(fused)
        if vector_hits and vector_hits[0].get("distance") is not None:
            diagnostics.top_embedding_distance = float(vector_hits[0]["distance"])
    return fused
