from __future__ import annotations

import math
from collections.abc import Sequence

from minirecall.domain.constants import PASSAGE_DEDUP_THRESHOLD
from minirecall.domain.models import Passage


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


def deduplicate_passages(
    passages: list[Passage], *, threshold: float = PASSAGE_DEDUP_THRESHOLD
) -> list[Passage]:
    """Drop near-duplicates, keeping the earliest (most relevant) copy.

    Passages without an embedding are always kept.
    """
    kept: list[Passage] = []
    kept_vectors: list[Sequence[float]] = []
    for passage in passages:
        vector = passage.embedding
        if not vector:
            kept.append(passage)
            continue
        if any(cosine_similarity(vector, other) >= threshold for other in kept_vectors):
            continue
        kept.append(passage)
        kept_vectors.append(vector)
    return kept
