from __future__ import annotations

from dataclasses import dataclass

from minirecall.config.logging_config import setup_logging
from minirecall.config.settings import RecallSettings
from minirecall.domain.budget import BudgetSpec
from minirecall.infra.sqlite.db import SQLiteEngine
from minirecall.infra.sqlite.document_repository import DocumentRepository
from minirecall.infra.sqlite.init_schema import init_schema
from minirecall.infra.sqlite.memory_repository import MemoryRepository
from minirecall.infra.vector.lancedb_store import LanceVectorStore
from minirecall.service.document_search import DocumentSearchService
from minirecall.service.embedding import EmbeddingProviderProtocol
from minirecall.service.ingest import IngestService
from minirecall.service.memory_retriever import MemoryRetriever
from minirecall.service.memory_writer import MemoryWriter
from minirecall.service.openai_embedding import build_embedding_provider
from minirecall.service.retrieval_service import RetrievalService


@dataclass
class RecallServices:
    settings: RecallSettings
    engine: SQLiteEngine
    documents: DocumentRepository
    memories: MemoryRepository
    passage_vectors: LanceVectorStore
    memory_vectors: LanceVectorStore
    embedding_provider: EmbeddingProviderProtocol
    ingest: IngestService
    memory_writer: MemoryWriter
    document_search: DocumentSearchService
    memory_retriever: MemoryRetriever
    retrieval: RetrievalService


def build_services(
    settings: RecallSettings,
    *,
    embedding_provider: EmbeddingProviderProtocol | None = None,
) -> RecallServices:
    setup_logging(settings)
    engine = SQLiteEngine(settings.db_path)
    init_schema(engine)
    documents = DocumentRepository(
        engine,
        keyword_match_mode=settings.keyword_match_mode,
        keyword_min_token_chars=settings.keyword_min_token_chars,
    )
    memories = MemoryRepository(engine)

    def vector_store(table_name: str) -> LanceVectorStore:
        return LanceVectorStore(
            settings.lancedb_dir,
            settings.embedding_dim,
            table_name=table_name,
            use_lancedb=settings.vector_lancedb_enabled,
            index_type=settings.vector_index_type,
            index_metric=settings.vector_index_metric,
            index_min_rows=settings.vector_index_min_rows,
        )

    passage_vectors = vector_store("passage_vectors")
    memory_vectors = vector_store("memory_vectors")
    embedder = embedding_provider or build_embedding_provider(settings)

    document_search = DocumentSearchService(
        documents=documents,
        vector_store=passage_vectors,
        vector_top_k=settings.document_top_k,
        keyword_top_k=settings.keyword_top_k,
        rrf_k=settings.rrf_k,
        dedup_threshold=settings.passage_dedup_threshold,
        min_chars=settings.passage_min_chars,
        max_age_days=settings.passage_max_age_days,
        allowed_file_types=settings.allowed_file_types,
        default_budget=BudgetSpec(
            max_total_tokens=settings.max_total_tokens,
            max_items=settings.max_items,
            max_per_source=settings.max_per_source,
            max_item_tokens=settings.max_item_tokens,
        ),
    )
    memory_retriever = MemoryRetriever(
        repo=memories,
        vector_store=memory_vectors,
        min_confidence=settings.memory_min_confidence,
        candidate_pool=settings.memory_candidate_pool,
    )
    return RecallServices(
        settings=settings,
        engine=engine,
        documents=documents,
        memories=memories,
        passage_vectors=passage_vectors,
        memory_vectors=memory_vectors,
        embedding_provider=embedder,
        ingest=IngestService(
            documents=documents,
            vector_store=passage_vectors,
            embedding_provider=embedder,
            chunk_max_tokens=settings.chunk_max_tokens,
            chunk_overlap_tokens=settings.chunk_overlap_tokens,
            chunk_max_chunks=settings.chunk_max_chunks,
        ),
        memory_writer=MemoryWriter(
            repo=memories,
            vector_store=memory_vectors,
            embedding_provider=embedder,
            dedup_threshold=settings.memory_dedup_threshold,
        ),
        document_search=document_search,
        memory_retriever=memory_retriever,
        retrieval=RetrievalService(
            document_search=document_search,
            memory_retriever=memory_retriever,
            embedding_provider=embedder,
            query_embed_cache_size=settings.query_embed_cache_size,
            query_embed_cache_ttl_sec=settings.query_embed_cache_ttl_sec,
            search_trace_enabled=settings.search_trace_enabled,
            search_trace_slow_ms=settings.search_trace_slow_ms,
        ),
    )
