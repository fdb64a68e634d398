from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from minirecall.domain.constants import KEYWORD_MAX_TERMS, KEYWORD_MIN_TOKEN_CHARS
from minirecall.domain.errors import StoreQueryError, require_owner
from minirecall.domain.models import Document, Passage, PassageMetadata, TemporalRange
from minirecall.domain.retrieval.temporal import current_year
from minirecall.infra.sqlite.db import SQLiteEngine

_PASSAGE_COLUMNS = """
    p.id,
    p.document_id,
    p.owner_id,
    p.passage_index,
    p.content,
    p.token_count,
    p.metadata_json,
    p.embedding_json,
    p.start_year,
    p.end_year,
    p.created_at,
    d.title AS document_title,
    d.source AS document_source
"""


@dataclass(frozen=True)
class NewPassage:
    passage_index: int
    content: str
    token_count: int
    embedding: list[float] | None = None
    metadata: PassageMetadata = field(default_factory=PassageMetadata)
    temporal: TemporalRange = field(default_factory=TemporalRange)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def year_filter_clause(
    query_year: int | None, *, alias: str = "p", now_year: int | None = None
) -> tuple[str, list[Any]]:
    """SQL fragment keeping passages whose validity range covers ``query_year``.

    A null end year covers every year from the start through the current year.
    """
    if query_year is None:
        return "", []
    ref_year = now_year or current_year()
    sql = (
        f" AND {alias}.start_year IS NOT NULL"
        f" AND {alias}.start_year <= ?"
        f" AND ({alias}.end_year >= ? OR ({alias}.end_year IS NULL AND ? <= ?))"
    )
    return sql, [int(query_year), int(query_year), int(query_year), int(ref_year)]


class DocumentRepository:
    def __init__(
        self,
        engine: SQLiteEngine,
        *,
        keyword_match_mode: str = "or",
        keyword_min_token_chars: int = KEYWORD_MIN_TOKEN_CHARS,
    ) -> None:
        self.engine = engine
        self.keyword_match_mode = "and" if keyword_match_mode == "and" else "or"
        self.keyword_min_token_chars = max(1, int(keyword_min_token_chars))
        self._fts_available: bool | None = None

    def upsert_document(
        self,
        *,
        owner_id: str,
        source: str,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Document:
        owner = require_owner(owner_id)
        now = _now_iso()
        meta_json = json.dumps(metadata or {}, ensure_ascii=False)
        self.engine.execute(
            """
            INSERT INTO document(id,owner_id,source,title,metadata_json,created_at,updated_at)
            VALUES(?,?,?,?,?,?,?)
            ON CONFLICT(owner_id,source) DO UPDATE SET
              title=excluded.title,
              metadata_json=excluded.metadata_json,
              updated_at=excluded.updated_at
            """,
            (uuid.uuid4().hex, owner, source, title, meta_json, now, now),
        )
        row = self.engine.query_one(
            """
            SELECT id,owner_id,source,title,metadata_json,created_at,updated_at
            FROM document WHERE owner_id=? AND source=?
            """,
            (owner, source),
        )
        if row is None:
            raise StoreQueryError(f"document upsert lost: {source}")
        return _to_document(row)

    def get_document(self, *, owner_id: str, document_id: str) -> Document | None:
        row = self.engine.query_one(
            """
            SELECT id,owner_id,source,title,metadata_json,created_at,updated_at
            FROM document WHERE owner_id=? AND id=?
            """,
            (require_owner(owner_id), document_id),
        )
        return _to_document(row) if row else None

    def list_documents(self, *, owner_id: str, limit: int = 100) -> list[Document]:
        rows = self.engine.query_all(
            """
            SELECT id,owner_id,source,title,metadata_json,created_at,updated_at
            FROM document WHERE owner_id=?
            ORDER BY updated_at DESC LIMIT ?
            """,
            (require_owner(owner_id), max(1, int(limit))),
        )
        return [_to_document(r) for r in rows]

    def replace_passages(
        self, *, owner_id: str, document_id: str, passages: list[NewPassage]
    ) -> list[str]:
        owner = require_owner(owner_id)
        now = _now_iso()
        fts = self._has_keyword_index()
        ids: list[str] = []
        with self.engine.transaction() as conn:
            if fts:
                conn.execute(
                    """
                    DELETE FROM passage_keyword_fts
                    WHERE passage_id IN (SELECT id FROM passage WHERE document_id=?)
                    """,
                    (document_id,),
                )
            conn.execute(
                "DELETE FROM passage WHERE document_id=? AND owner_id=?",
                (document_id, owner),
            )
            for item in passages:
                pid = uuid.uuid4().hex
                ids.append(pid)
                conn.execute(
                    """
                    INSERT INTO passage(
                      id,document_id,owner_id,passage_index,content,token_count,metadata_json,
                      embedding_json,start_year,end_year,created_at,updated_at
                    ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        pid,
                        document_id,
                        owner,
                        int(item.passage_index),
                        item.content,
                        int(item.token_count),
                        json.dumps(item.metadata.to_dict(), ensure_ascii=False),
                        json.dumps(item.embedding) if item.embedding else None,
                        item.temporal.start_year,
                        item.temporal.end_year,
                        now,
                        now,
                    ),
                )
                if fts:
                    conn.execute(
                        """
                        INSERT INTO passage_keyword_fts(passage_id,owner_id,content)
                        VALUES(?,?,?)
                        """,
                        (pid, owner, item.content),
                    )
        return ids

    def delete_document(self, *, owner_id: str, document_id: str) -> list[str]:
        """Delete a document and its passages; returns the removed passage ids."""
        owner = require_owner(owner_id)
        fts = self._has_keyword_index()
        with self.engine.transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM passage WHERE document_id=? AND owner_id=?",
                (document_id, owner),
            ).fetchall()
            passage_ids = [str(r["id"]) for r in rows]
            if fts and passage_ids:
                placeholders = ",".join("?" for _ in passage_ids)
                conn.execute(
                    f"DELETE FROM passage_keyword_fts WHERE passage_id IN ({placeholders})",
                    passage_ids,
                )
            conn.execute(
                "DELETE FROM document WHERE id=? AND owner_id=?",
                (document_id, owner),
            )
        return passage_ids

    def fetch_passages_by_ids(
        self, *, owner_id: str, passage_ids: list[str]
    ) -> list[Passage]:
        owner = require_owner(owner_id)
        unique_ids = [x for x in dict.fromkeys(str(v).strip() for v in passage_ids) if x]
        if not unique_ids:
            return []
        placeholders = ",".join("?" for _ in unique_ids)
        rows = self.engine.query_all(
            f"""
            SELECT {_PASSAGE_COLUMNS}
            FROM passage p
            JOIN document d ON d.id = p.document_id
            WHERE p.owner_id=? AND p.id IN ({placeholders})
            """,
            [owner, *unique_ids],
        )
        order = {pid: idx for idx, pid in enumerate(unique_ids)}
        rows.sort(key=lambda x: order.get(str(x.get("id")), 1_000_000))
        return [Passage.from_row(r) for r in rows]

    def fetch_passages_for_document(
        self, *, owner_id: str, document_id: str
    ) -> list[Passage]:
        rows = self.engine.query_all(
            f"""
            SELECT {_PASSAGE_COLUMNS}
            FROM passage p
            JOIN document d ON d.id = p.document_id
            WHERE p.owner_id=? AND p.document_id=?
            ORDER BY p.passage_index ASC
            """,
            (require_owner(owner_id), document_id),
        )
        return [Passage.from_row(r) for r in rows]

    def search_keyword(
        self,
        *,
        owner_id: str,
        query: str,
        top_k: int,
        query_year: int | None = None,
        now_year: int | None = None,
    ) -> list[dict[str, Any]]:
        """Full-text search scoped to one owner, best match first.

        Rows carry ``rank`` (higher is better) and the raw ``bm25_score``.
        """
        owner = require_owner(owner_id)
        terms = self.tokenize_query(query)
        if not terms:
            return []
        if self._has_keyword_index():
            return self._search_keyword_fts(
                owner=owner,
                terms=terms,
                top_k=top_k,
                query_year=query_year,
                now_year=now_year,
            )
        return self._search_keyword_scan(
            owner=owner,
            terms=terms,
            top_k=top_k,
            query_year=query_year,
            now_year=now_year,
        )

    def tokenize_query(self, text: str) -> list[str]:
        tokens = []
        for raw in str(text or "").lower().split():
            token = re.sub(r"[^\w\-]+", "", raw).strip("-_")
            if len(token) >= self.keyword_min_token_chars:
                tokens.append(token)
        return list(dict.fromkeys(tokens))[:KEYWORD_MAX_TERMS]

    def _search_keyword_fts(
        self,
        *,
        owner: str,
        terms: list[str],
        top_k: int,
        query_year: int | None,
        now_year: int | None,
    ) -> list[dict[str, Any]]:
        joiner = " AND " if self.keyword_match_mode == "and" else " OR "
        match_query = joiner.join(f'"{_escape_fts_term(t)}"' for t in terms)
        year_sql, year_params = year_filter_clause(query_year, now_year=now_year)
        sql = f"""
            SELECT
              p.id AS id,
              bm25(passage_keyword_fts) AS bm25_score
            FROM passage_keyword_fts
            JOIN passage p ON p.id = passage_keyword_fts.passage_id
            WHERE passage_keyword_fts MATCH ?
              AND p.owner_id=?
              {year_sql}
            ORDER BY bm25(passage_keyword_fts) ASC, p.id ASC
            LIMIT ?
        """
        params: list[Any] = [match_query, owner, *year_params, max(1, int(top_k))]
        rows = self.engine.query_all(sql, params)
        out: list[dict[str, Any]] = []
        for row in rows:
            bm25_val = float(row.get("bm25_score") or 0.0)
            out.append(
                {
                    "id": str(row["id"]),
                    "bm25_score": bm25_val,
                    # FTS5 bm25 is lower-is-better; flip it into a descending rank.
                    "rank": -bm25_val,
                    "source": "keyword_fts",
                }
            )
        return out

    def _search_keyword_scan(
        self,
        *,
        owner: str,
        terms: list[str],
        top_k: int,
        query_year: int | None,
        now_year: int | None,
    ) -> list[dict[str, Any]]:
        year_sql, year_params = year_filter_clause(query_year, now_year=now_year)
        rows = self.engine.query_all(
            f"""
            SELECT p.id, p.content
            FROM passage p
            WHERE p.owner_id=? {year_sql}
            ORDER BY p.created_at DESC
            LIMIT ?
            """,
            [owner, *year_params, max(800, int(top_k) * 40)],
        )
        scored: list[dict[str, Any]] = []
        for row in rows:
            text = str(row.get("content", "")).lower()
            counts = [text.count(term) for term in terms]
            if self.keyword_match_mode == "and" and not all(counts):
                continue
            score = float(sum(counts))
            if score <= 0:
                continue
            scored.append(
                {
                    "id": str(row["id"]),
                    "bm25_score": None,
                    "rank": score,
                    "source": "keyword_scan",
                }
            )
        scored.sort(key=lambda x: float(x["rank"]), reverse=True)
        return scored[: max(1, int(top_k))]

    def _has_keyword_index(self) -> bool:
        if self._fts_available:
            return True
        row = self.engine.query_one(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='passage_keyword_fts'"
        )
        self._fts_available = row is not None
        return self._fts_available


def _escape_fts_term(term: str) -> str:
    return str(term or "").replace('"', '""')


def _to_document(row: dict[str, Any]) -> Document:
    try:
        meta = json.loads(row.get("metadata_json") or "{}")
    except ValueError:
        meta = {}
    return Document(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        source=str(row["source"]),
        title=row.get("title"),
        metadata=meta if isinstance(meta, dict) else {},
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )
