from __future__ import annotations

import logging

from minirecall.domain.errors import StoreQueryError
from minirecall.infra.sqlite.db import SQLiteEngine

logger = logging.getLogger(__name__)


def init_schema(engine: SQLiteEngine) -> None:
    ddl = [
        """
        CREATE TABLE IF NOT EXISTS document (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            source TEXT NOT NULL,
            title TEXT,
            metadata_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(owner_id, source)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS passage (
            id TEXT PRIMARY KEY,
            document_id TEXT NOT NULL,
            owner_id TEXT NOT NULL,
            passage_index INTEGER NOT NULL,
            content TEXT NOT NULL,
            token_count INTEGER NOT NULL DEFAULT 0,
            metadata_json TEXT NOT NULL DEFAULT '{}',
            embedding_json TEXT,
            start_year INTEGER,
            end_year INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(document_id, passage_index),
            FOREIGN KEY(document_id) REFERENCES document(id) ON DELETE CASCADE
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_passage_owner ON passage(owner_id)",
        """
        CREATE INDEX IF NOT EXISTS idx_passage_temporal
        ON passage(owner_id, start_year, end_year)
        """,
        """
        CREATE TABLE IF NOT EXISTS memory (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            kind TEXT NOT NULL
                CHECK(kind IN ('preference','goal','fact','decision','summary')),
            content TEXT NOT NULL,
            confidence REAL NOT NULL,
            created_at TEXT NOT NULL,
            embedding_json TEXT
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_memory_owner_kind
        ON memory(owner_id, kind, confidence DESC)
        """,
    ]
    for sql in ddl:
        engine.execute(sql)
    _ensure_keyword_index(engine)


def _ensure_keyword_index(engine: SQLiteEngine) -> None:
    try:
        engine.execute(
            """
            CREATE VIRTUAL TABLE IF NOT EXISTS passage_keyword_fts
            USING fts5(
                passage_id UNINDEXED,
                owner_id UNINDEXED,
                content,
                tokenize='unicode61'
            )
            """
        )
    except StoreQueryError as exc:
        # SQLite builds without FTS5 fall back to a lexical scan.
        logger.warning("keyword index unavailable: %s", exc)
        return
    _rebuild_keyword_index_if_needed(engine)


def _rebuild_keyword_index_if_needed(engine: SQLiteEngine) -> None:
    engine.execute(
        """
        DELETE FROM passage_keyword_fts
        WHERE passage_id NOT IN (SELECT id FROM passage)
        """
    )
    engine.execute(
        """
        INSERT INTO passage_keyword_fts(passage_id,owner_id,content)
        SELECT p.id, p.owner_id, p.content
        FROM passage p
        WHERE NOT EXISTS (
            SELECT 1 FROM passage_keyword_fts idx WHERE idx.passage_id = p.id
        )
        """
    )
