from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from threading import Lock
from typing import Any

import anyio
import anyio.to_thread

from minirecall.config.profiles import MemoryTier, resolve_tier
from minirecall.domain.budget import BudgetSpec, coerce_spec
from minirecall.domain.diagnostics import RetrievalDiagnostics
from minirecall.domain.errors import EmbeddingError, require_owner
from minirecall.domain.models import Memory, Passage
from minirecall.domain.retrieval.arrange import build_context_block, distribute_u_shape
from minirecall.service.document_search import DocumentSearchService
from minirecall.service.embedding import EmbeddingProviderProtocol
from minirecall.service.memory_retriever import MemoryRetriever

logger = logging.getLogger(__name__)


@dataclass
class RetrievedContext:
    passages: list[Passage] = field(default_factory=list)
    memories: list[Memory] = field(default_factory=list)
    diagnostics: RetrievalDiagnostics = field(default_factory=RetrievalDiagnostics)

    def to_context_block(self) -> str | None:
        return build_context_block(self.passages, self.memories)


class RetrievalService:
    def __init__(
        self,
        *,
        document_search: DocumentSearchService,
        memory_retriever: MemoryRetriever,
        embedding_provider: EmbeddingProviderProtocol | None = None,
        query_embed_cache_size: int = 256,
        query_embed_cache_ttl_sec: int = 900,
        search_trace_enabled: bool = False,
        search_trace_slow_ms: int = 0,
    ) -> None:
        self.document_search = document_search
        self.memory_retriever = memory_retriever
        self.embedding_provider = embedding_provider
        self.query_embed_cache_size = max(32, int(query_embed_cache_size))
        self.query_embed_cache_ttl_sec = max(30, int(query_embed_cache_ttl_sec))
        self.search_trace_enabled = bool(search_trace_enabled)
        self.search_trace_slow_ms = max(0, int(search_trace_slow_ms))
        self._query_embed_cache: OrderedDict[str, tuple[int, list[float]]] = OrderedDict()
        self._query_embed_lock = Lock()

    async def retrieve(
        self,
        *,
        owner_id: str,
        query_text: str,
        query_embedding: list[float] | None,
        budget: BudgetSpec | Mapping[str, Any] | None = None,
        tier: str | MemoryTier = "full",
        diagnostics: RetrievalDiagnostics | None = None,
        now: datetime | None = None,
    ) -> RetrievedContext:
        """Run document search and memory selection concurrently.

        A failing branch contributes nothing and is recorded in the
        diagnostics; only malformed options raise, before any I/O.
        """
        owner = require_owner(owner_id)
        spec = None if budget is None else coerce_spec(BudgetSpec, budget)
        preset = resolve_tier(tier)
        diag = diagnostics if diagnostics is not None else RetrievalDiagnostics()
        started = time.perf_counter()
        results: dict[str, list[Any]] = {"passages": [], "memories": []}

        async def documents_branch() -> None:
            try:
                results["passages"] = await anyio.to_thread.run_sync(
                    partial(
                        self.document_search.search,
                        owner_id=owner,
                        query_text=query_text,
                        query_embedding=query_embedding,
                        budget=spec,
                        diagnostics=diag,
                        now=now,
                    )
                )
            except Exception as exc:
                logger.exception("document branch failed for owner %s", owner)
                diag.record_failure("documents", exc)

        async def memories_branch() -> None:
            try:
                results["memories"] = await self.memory_retriever.retrieve(
                    owner_id=owner,
                    query_text=query_text,
                    query_embedding=query_embedding,
                    tier=preset,
                    diagnostics=diag,
                    now=now,
                )
            except Exception as exc:
                logger.exception("memory branch failed for owner %s", owner)
                diag.record_failure("memories", exc)

        async with anyio.create_task_group() as tg:
            tg.start_soon(documents_branch)
            tg.start_soon(memories_branch)

        passages = [p for p in results["passages"] if p.owner_id == owner]
        memories = [m for m in results["memories"] if m.owner_id == owner]
        memories.sort(key=lambda m: float(m.confidence), reverse=True)

        # Passages keep fused pipeline order; only memories are sorted by confidence.
        context = RetrievedContext(
            passages=distribute_u_shape(passages),
            memories=distribute_u_shape(memories),
            diagnostics=diag,
        )
        self._emit_search_trace(
            "retrieve",
            owner_id=owner,
            tier=preset.name,
            ms_total=round((time.perf_counter() - started) * 1000.0, 2),
            **diag.to_trace_meta(),
        )
        return context

    async def retrieve_text(
        self,
        *,
        owner_id: str,
        query_text: str,
        budget: BudgetSpec | Mapping[str, Any] | None = None,
        tier: str | MemoryTier = "full",
        now: datetime | None = None,
    ) -> RetrievedContext:
        """Embed the query, then retrieve. Without an embedding only the
        keyword and profile paths contribute."""
        owner = require_owner(owner_id)
        if budget is not None:
            coerce_spec(BudgetSpec, budget)
        resolve_tier(tier)
        diag = RetrievalDiagnostics()
        embedding: list[float] | None = None
        if self.embedding_provider is None:
            diag.record_failure(
                "query_embedding", EmbeddingError("no embedding provider configured")
            )
        else:
            try:
                embedding = await anyio.to_thread.run_sync(self._embed_query, query_text)
            except EmbeddingError as exc:
                logger.warning("query embedding failed: %s", exc)
                diag.record_failure("query_embedding", exc)
        return await self.retrieve(
            owner_id=owner,
            query_text=query_text,
            query_embedding=embedding,
            budget=budget,
            tier=tier,
            diagnostics=diag,
            now=now,
        )

    def _embed_query(self, query: str) -> list[float]:
        key = str(query or "").strip()
        if not key:
            return self.embedding_provider.embed(key, mode="query")
        now = int(time.time())
        with self._query_embed_lock:
            cached = self._query_embed_cache.get(key)
            if cached and now - int(cached[0]) <= self.query_embed_cache_ttl_sec:
                self._query_embed_cache.move_to_end(key)
                return list(cached[1])
            if cached:
                self._query_embed_cache.pop(key, None)
        vec = self.embedding_provider.embed(key, mode="query")
        safe_vec = [float(x) for x in vec if isinstance(x, (int, float))]
        with self._query_embed_lock:
            self._query_embed_cache[key] = (now, safe_vec)
            self._query_embed_cache.move_to_end(key)
            while len(self._query_embed_cache) > self.query_embed_cache_size:
                self._query_embed_cache.popitem(last=False)
        return list(safe_vec)

    def _emit_search_trace(self, event: str, **payload: Any) -> None:
        if not self.search_trace_enabled:
            return
        total = float(payload.get("ms_total", 0.0) or 0.0)
        if self.search_trace_slow_ms > 0 and total < float(self.search_trace_slow_ms):
            return
        row = {"event": event, "ts_ms": int(time.time() * 1000)}
        row.update(payload)
        logger.info(
            "[search-trace] %s",
            json.dumps(row, ensure_ascii=False, separators=(",", ":"), default=str),
        )
