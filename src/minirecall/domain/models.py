from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Literal

from minirecall.domain.constants import estimate_tokens

MemoryKind = Literal["preference", "goal", "fact", "decision", "summary"]
MEMORY_KINDS: tuple[str, ...] = ("preference", "goal", "fact", "decision", "summary")
PROFILE_KINDS: tuple[str, ...] = ("preference", "fact")
CONTEXTUAL_KINDS: tuple[str, ...] = ("goal", "decision", "summary")


@dataclass(frozen=True)
class TemporalRange:
    start_year: int | None = None
    # None means ongoing ("Present").
    end_year: int | None = None

    @property
    def is_empty(self) -> bool:
        return self.start_year is None and self.end_year is None


@dataclass(frozen=True)
class PassageMetadata:
    file_type: str | None = None
    effective_at: str | None = None
    page: int | None = None
    section: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = ("file_type", "effective_at", "page", "section")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        for key in self._KNOWN:
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, value: dict[str, Any] | None) -> "PassageMetadata":
        if not isinstance(value, dict):
            return cls()
        extra = {k: v for k, v in value.items() if k not in cls._KNOWN}
        file_type = value.get("file_type")
        effective_at = value.get("effective_at")
        section = value.get("section")
        try:
            page = int(value["page"]) if value.get("page") is not None else None
        except (TypeError, ValueError):
            page = None
        return cls(
            file_type=str(file_type).strip().lower() if file_type else None,
            effective_at=str(effective_at) if effective_at is not None else None,
            page=page,
            section=str(section) if section is not None else None,
            extra=extra,
        )


@dataclass(frozen=True)
class Document:
    id: str
    owner_id: str
    source: str
    title: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class Passage:
    id: str
    document_id: str
    owner_id: str
    passage_index: int
    content: str
    token_count: int | None = None
    metadata: PassageMetadata = field(default_factory=PassageMetadata)
    embedding: list[float] | None = None
    temporal: TemporalRange = field(default_factory=TemporalRange)
    created_at: str | None = None
    document_title: str | None = None
    document_source: str | None = None
    distance: float | None = None
    fused_score: float | None = None

    @property
    def confidence(self) -> float | None:
        if self.distance is None:
            return None
        return max(0.0, min(1.0, 1.0 - float(self.distance)))

    @property
    def tokens(self) -> int:
        if self.token_count is not None and self.token_count >= 0:
            return int(self.token_count)
        return estimate_tokens(self.content)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Passage":
        raw_meta = row.get("metadata_json")
        try:
            meta = json.loads(raw_meta) if raw_meta else {}
        except (TypeError, ValueError):
            meta = {}
        vector = safe_vector(row.get("embedding_json"))
        token_count = row.get("token_count")
        return cls(
            id=str(row["id"]),
            document_id=str(row["document_id"]),
            owner_id=str(row["owner_id"]),
            passage_index=int(row.get("passage_index") or 0),
            content=str(row.get("content") or ""),
            token_count=int(token_count) if token_count is not None else None,
            metadata=PassageMetadata.from_dict(meta),
            embedding=vector or None,
            temporal=TemporalRange(
                start_year=_optional_int(row.get("start_year")),
                end_year=_optional_int(row.get("end_year")),
            ),
            created_at=str(row["created_at"]) if row.get("created_at") else None,
            document_title=row.get("document_title"),
            document_source=row.get("document_source"),
        )


@dataclass(frozen=True)
class Memory:
    id: str
    owner_id: str
    kind: str
    content: str
    confidence: float
    created_at: str
    embedding: list[float] | None = None
    distance: float | None = None

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.content)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Memory":
        # Corrupt confidence values surface as NaN and fail the relevance rules.
        try:
            confidence = float(row.get("confidence"))
        except (TypeError, ValueError):
            confidence = math.nan
        vector = safe_vector(row.get("embedding_json"))
        return cls(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            kind=str(row.get("kind") or ""),
            content=str(row.get("content") or ""),
            confidence=confidence,
            created_at=str(row.get("created_at") or ""),
            embedding=vector or None,
        )


def safe_vector(value: Any) -> list[float]:
    if isinstance(value, list):
        return [float(x) for x in value if isinstance(x, (int, float))]
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return []
        if isinstance(parsed, list):
            return [float(x) for x in parsed if isinstance(x, (int, float))]
    return []


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
