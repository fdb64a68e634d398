from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from minirecall.domain.constants import (
    ALLOWED_FILE_TYPES,
    MEMORY_MAX_AGE_DAYS,
    MEMORY_MIN_CONFIDENCE,
    MEMORY_QUERY_PREFIX_CHARS,
    PASSAGE_MAX_AGE_DAYS,
    PASSAGE_MIN_CHARS,
)
from minirecall.domain.models import PROFILE_KINDS, Memory, Passage

_SECONDS_PER_DAY = 86400.0


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 text, SQLite ``datetime('now')`` text, epoch numbers or datetimes.

    Naive values are taken as UTC. Returns None for anything unparseable.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        return None
    elif isinstance(value, (int, float)):
        if not math.isfinite(float(value)):
            return None
        try:
            parsed = datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _age_days(created: datetime, now: datetime | None) -> float:
    ref = now or datetime.now(timezone.utc)
    if ref.tzinfo is None:
        ref = ref.replace(tzinfo=timezone.utc)
    return (ref - created).total_seconds() / _SECONDS_PER_DAY


def passes_passage_rules(
    passage: Passage,
    *,
    now: datetime | None = None,
    min_chars: int = PASSAGE_MIN_CHARS,
    max_age_days: float = PASSAGE_MAX_AGE_DAYS,
    allowed_file_types: Iterable[str] = ALLOWED_FILE_TYPES,
) -> bool:
    if len(passage.content.strip()) < min_chars:
        return False
    effective = passage.metadata.effective_at or passage.created_at
    created = parse_timestamp(effective)
    if created is None:
        return False
    if _age_days(created, now) > max_age_days:
        return False
    file_type = passage.metadata.file_type
    if file_type and file_type.lower() not in set(allowed_file_types):
        return False
    return True


def passes_memory_rules(
    memory: Memory,
    *,
    now: datetime | None = None,
    min_confidence: float = MEMORY_MIN_CONFIDENCE,
) -> bool:
    confidence = memory.confidence
    if not isinstance(confidence, (int, float)) or not math.isfinite(confidence):
        return False
    if confidence < min_confidence:
        return False
    created = parse_timestamp(memory.created_at)
    if created is None:
        return False
    if not memory.content.strip():
        return False
    if memory.kind not in MEMORY_MAX_AGE_DAYS:
        return False
    max_age = MEMORY_MAX_AGE_DAYS[memory.kind]
    if max_age is not None and _age_days(created, now) > max_age:
        return False
    return True


def memory_relevance_score(
    memory: Memory,
    *,
    requested_kinds: Iterable[str] | None = None,
    query_text: str | None = None,
) -> float:
    """Cheap re-rank layered on top of the similarity candidate pool."""
    score = 0.0
    if requested_kinds is not None and memory.kind in set(requested_kinds):
        score += 3.0
    if memory.kind in PROFILE_KINDS:
        score += 2.0
    score += 2.0 * float(memory.confidence)
    if query_text:
        prefix = query_text.lower()[:MEMORY_QUERY_PREFIX_CHARS]
        if prefix in memory.content.lower():
            score += 1.0
    return score
