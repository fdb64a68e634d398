from __future__ import annotations

import json
import uuid
from collections.abc import Sequence
from datetime import datetime, timezone

from minirecall.domain.errors import StoreQueryError, ValidationError, require_owner
from minirecall.domain.models import MEMORY_KINDS, Memory
from minirecall.infra.sqlite.db import SQLiteEngine

_MEMORY_COLUMNS = "id,owner_id,kind,content,confidence,created_at,embedding_json"


def _kinds_clause(kinds: Sequence[str] | None) -> tuple[str, list[str]]:
    if not kinds:
        return "", []
    unknown = [k for k in kinds if k not in MEMORY_KINDS]
    if unknown:
        raise ValidationError(f"unknown memory kinds: {unknown}")
    placeholders = ",".join("?" for _ in kinds)
    return f" AND kind IN ({placeholders})", list(kinds)


class MemoryRepository:
    def __init__(self, engine: SQLiteEngine) -> None:
        self.engine = engine

    def add_memory(
        self,
        *,
        owner_id: str,
        kind: str,
        content: str,
        confidence: float,
        embedding: list[float] | None = None,
        created_at: str | None = None,
    ) -> Memory:
        owner = require_owner(owner_id)
        if kind not in MEMORY_KINDS:
            raise ValidationError(f"unknown memory kind: {kind!r}")
        mid = uuid.uuid4().hex
        created = created_at or datetime.now(timezone.utc).isoformat()
        self.engine.execute(
            f"""
            INSERT INTO memory({_MEMORY_COLUMNS})
            VALUES(?,?,?,?,?,?,?)
            """,
            (
                mid,
                owner,
                kind,
                content,
                float(confidence),
                created,
                json.dumps(embedding) if embedding else None,
            ),
        )
        row = self.engine.query_one(
            f"SELECT {_MEMORY_COLUMNS} FROM memory WHERE id=?", (mid,)
        )
        if row is None:
            raise StoreQueryError(f"memory insert lost: {mid}")
        return Memory.from_row(row)

    def list_by_confidence(
        self,
        *,
        owner_id: str,
        kinds: Sequence[str] | None,
        limit: int,
        min_confidence: float,
    ) -> list[Memory]:
        kinds_sql, kinds_params = _kinds_clause(kinds)
        rows = self.engine.query_all(
            f"""
            SELECT {_MEMORY_COLUMNS}
            FROM memory
            WHERE owner_id=? AND confidence >= ? {kinds_sql}
            ORDER BY confidence DESC, created_at DESC, id ASC
            LIMIT ?
            """,
            [require_owner(owner_id), float(min_confidence), *kinds_params, max(1, int(limit))],
        )
        return [Memory.from_row(r) for r in rows]

    def fetch_by_ids(self, *, owner_id: str, memory_ids: list[str]) -> list[Memory]:
        owner = require_owner(owner_id)
        unique_ids = [x for x in dict.fromkeys(str(v).strip() for v in memory_ids) if x]
        if not unique_ids:
            return []
        placeholders = ",".join("?" for _ in unique_ids)
        rows = self.engine.query_all(
            f"""
            SELECT {_MEMORY_COLUMNS}
            FROM memory
            WHERE owner_id=? AND id IN ({placeholders})
            """,
            [owner, *unique_ids],
        )
        order = {mid: idx for idx, mid in enumerate(unique_ids)}
        rows.sort(key=lambda x: order.get(str(x.get("id")), 1_000_000))
        return [Memory.from_row(r) for r in rows]

    def list_recent_by_kind(
        self, *, owner_id: str, kind: str, limit: int = 50
    ) -> list[Memory]:
        rows = self.engine.query_all(
            f"""
            SELECT {_MEMORY_COLUMNS}
            FROM memory
            WHERE owner_id=? AND kind=?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (require_owner(owner_id), kind, max(1, int(limit))),
        )
        return [Memory.from_row(r) for r in rows]

    def list_memories(self, *, owner_id: str, limit: int = 20) -> list[Memory]:
        rows = self.engine.query_all(
            f"""
            SELECT {_MEMORY_COLUMNS}
            FROM memory
            WHERE owner_id=?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (require_owner(owner_id), max(1, int(limit))),
        )
        return [Memory.from_row(r) for r in rows]

    def delete_memory(self, *, owner_id: str, memory_id: str) -> int:
        return self.engine.execute(
            "DELETE FROM memory WHERE owner_id=? AND id=?",
            (require_owner(owner_id), memory_id),
        )
