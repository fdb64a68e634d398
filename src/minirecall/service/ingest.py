from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from minirecall.domain.constants import CHUNK_MAX_CHUNKS, CHUNK_MAX_TOKENS, CHUNK_OVERLAP_TOKENS
from minirecall.domain.errors import EmbeddingError, ValidationError, require_owner
from minirecall.domain.models import PassageMetadata
from minirecall.domain.retrieval.temporal import extract_temporal_range
from minirecall.infra.sqlite.document_repository import DocumentRepository, NewPassage
from minirecall.infra.vector.lancedb_store import LanceVectorStore
from minirecall.service.chunking import chunk_text
from minirecall.service.embedding import EmbeddingProviderProtocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    document_id: str
    passage_count: int


class IngestService:
    def __init__(
        self,
        *,
        documents: DocumentRepository,
        vector_store: LanceVectorStore,
        embedding_provider: EmbeddingProviderProtocol,
        chunk_max_tokens: int = CHUNK_MAX_TOKENS,
        chunk_overlap_tokens: int = CHUNK_OVERLAP_TOKENS,
        chunk_max_chunks: int = CHUNK_MAX_CHUNKS,
    ) -> None:
        self.documents = documents
        self.vector_store = vector_store
        self.embedding_provider = embedding_provider
        self.chunk_max_tokens = max(1, int(chunk_max_tokens))
        self.chunk_overlap_tokens = max(0, int(chunk_overlap_tokens))
        self.chunk_max_chunks = max(1, int(chunk_max_chunks))

    def ingest_document(
        self,
        *,
        owner_id: str,
        source: str,
        text: str,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> IngestResult:
        """Store a document as embedded passages, replacing any earlier version.

        ``metadata`` may carry ``file_type`` and ``effective_at``; both are
        copied onto every passage for the relevance rules.
        """
        owner = require_owner(owner_id)
        source = str(source or "").strip()
        if not source:
            raise ValidationError("document source must not be empty")
        doc_meta = dict(metadata or {})
        passage_meta = PassageMetadata.from_dict(
            {k: doc_meta[k] for k in ("file_type", "effective_at") if k in doc_meta}
        )

        chunks = chunk_text(
            text,
            max_tokens=self.chunk_max_tokens,
            overlap_tokens=self.chunk_overlap_tokens,
            max_chunks=self.chunk_max_chunks,
        )
        # Embed and check every vector before touching storage, so a bad
        # provider response leaves the old version intact.
        new_passages = [
            NewPassage(
                passage_index=chunk.chunk_index,
                content=chunk.content,
                token_count=chunk.token_count,
                embedding=self.embedding_provider.embed(chunk.content, mode="document"),
                metadata=passage_meta,
                temporal=extract_temporal_range(chunk.content),
            )
            for chunk in chunks
        ]
        expected_dim = self.vector_store.vector_dim
        for item in new_passages:
            if item.embedding and len(item.embedding) != expected_dim:
                raise EmbeddingError(
                    f"embedding dim {len(item.embedding)} does not match "
                    f"vector store dim {expected_dim} for {source!r}"
                )

        document = self.documents.upsert_document(
            owner_id=owner, source=source, title=title, metadata=doc_meta
        )
        self.vector_store.delete_by_document(owner_id=owner, document_id=document.id)
        passage_ids = self.documents.replace_passages(
            owner_id=owner, document_id=document.id, passages=new_passages
        )
        self.vector_store.upsert_many(
            [
                (
                    pid,
                    item.embedding or [],
                    {
                        "owner_id": owner,
                        "document_id": document.id,
                        "start_year": item.temporal.start_year,
                        "end_year": item.temporal.end_year,
                    },
                )
                for pid, item in zip(passage_ids, new_passages)
                if item.embedding
            ]
        )
        logger.info(
            "ingested document %s for owner %s: %d passages",
            document.id,
            owner,
            len(passage_ids),
        )
        return IngestResult(document_id=document.id, passage_count=len(passage_ids))

    def delete_document(self, *, owner_id: str, document_id: str) -> int:
        owner = require_owner(owner_id)
        removed = self.documents.delete_document(owner_id=owner, document_id=document_id)
        self.vector_store.delete_by_document(owner_id=owner, document_id=document_id)
        return len(removed)
