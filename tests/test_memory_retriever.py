from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from functools import partial
from pathlib import Path
from tempfile import TemporaryDirectory

import anyio

from minirecall.domain.diagnostics import RetrievalDiagnostics
from minirecall.domain.errors import StoreQueryError, ValidationError
from minirecall.infra.sqlite.db import SQLiteEngine
from minirecall.infra.sqlite.init_schema import init_schema
from minirecall.infra.sqlite.memory_repository import MemoryRepository
from minirecall.infra.vector.lancedb_store import LanceVectorStore, VectorFilter
from minirecall.service.embedding import HashEmbeddingProvider
from minirecall.service.memory_retriever import MemoryRetriever
from minirecall.service.memory_writer import MemoryWriter

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
DIM = 64


class _FailingVectorStore:
    def search(self, **kwargs):
        raise StoreQueryError("vector store timed out")


class MemoryRetrieverTests(unittest.TestCase):
    def _build(self, tmp: str):
        engine = SQLiteEngine(Path(tmp) / "recall.db")
        init_schema(engine)
        repo = MemoryRepository(engine)
        store = LanceVectorStore(
            Path(tmp) / "vectors", DIM, table_name="memory_vectors", use_lancedb=False
        )
        embedder = HashEmbeddingProvider(dim=DIM)
        writer = MemoryWriter(repo=repo, vector_store=store, embedding_provider=embedder)
        return repo, store, embedder, writer

    def _seed(self, writer: MemoryWriter) -> dict[str, str]:
        rows = [
            ("u1", "preference", "Prefers green tea over coffee", 0.9, 5),
            ("u1", "fact", "Lives in Lisbon with two cats", 0.8, 400),
            ("u1", "preference", "Likes concise bullet answers", 0.7, 20),
            ("u1", "fact", "Might own a sailboat", 0.5, 3),
            ("u2", "fact", "Works as a pilot for a cargo airline", 0.99, 1),
            ("u1", "goal", "Run a marathon in spring", 0.95, 10),
            ("u1", "goal", "Plan the offsite for the design team", 0.7, 10),
            ("u1", "summary", "Discussed kitchen renovation budget options", 0.65, 30),
            ("u1", "decision", "Chose the cheaper moving company", 0.9, 40),
        ]
        ids = {}
        for owner, kind, content, confidence, days_old in rows:
            memory = writer.add_memory(
                owner_id=owner,
                kind=kind,
                content=content,
                confidence=confidence,
                created_at=(NOW - timedelta(days=days_old)).isoformat(),
            )
            ids[content] = memory.id
        return ids

    def test_full_tier_returns_profile_then_ranked_contextual(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo, store, embedder, writer = self._build(tmp)
            self._seed(writer)
            retriever = MemoryRetriever(repo=repo, vector_store=store)
            diagnostics = RetrievalDiagnostics()
            query = "plan the offsite agenda"
            memories = anyio.run(
                partial(
                    retriever.retrieve,
                    owner_id="u1",
                    query_text=query,
                    query_embedding=embedder.embed(query, mode="query"),
                    tier="full",
                    diagnostics=diagnostics,
                    now=NOW,
                )
            )
            self.assertEqual(
                [
                    "Prefers green tea over coffee",
                    "Lives in Lisbon with two cats",
                    "Likes concise bullet answers",
                    "Plan the offsite for the design team",
                    "Run a marathon in spring",
                ],
                [m.content for m in memories],
            )
            self.assertTrue(all(m.owner_id == "u1" for m in memories))
            self.assertEqual(3, diagnostics.profile_memories)
            self.assertEqual(2, diagnostics.contextual_memories)
            self.assertEqual(5, diagnostics.memories_after_budget)

    def test_minimal_tier_skips_contextual_memories(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo, store, embedder, writer = self._build(tmp)
            self._seed(writer)
            retriever = MemoryRetriever(repo=repo, vector_store=store)
            memories = anyio.run(
                partial(
                    retriever.retrieve,
                    owner_id="u1",
                    query_text="plan the offsite",
                    query_embedding=embedder.embed("plan the offsite", mode="query"),
                    tier="minimal",
                    now=NOW,
                )
            )
            self.assertEqual(
                ["Prefers green tea over coffee", "Lives in Lisbon with two cats"],
                [m.content for m in memories],
            )

    def test_missing_embedding_keeps_profile_tier(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo, store, _, writer = self._build(tmp)
            self._seed(writer)
            retriever = MemoryRetriever(repo=repo, vector_store=store)
            memories = anyio.run(
                partial(
                    retriever.retrieve,
                    owner_id="u1",
                    query_text="anything",
                    query_embedding=None,
                    now=NOW,
                )
            )
            self.assertEqual({"preference", "fact"}, {m.kind for m in memories})
            self.assertEqual(3, len(memories))

    def test_store_failure_degrades_contextual_tier_only(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo, _, embedder, writer = self._build(tmp)
            self._seed(writer)
            retriever = MemoryRetriever(repo=repo, vector_store=_FailingVectorStore())
            diagnostics = RetrievalDiagnostics()
            memories = anyio.run(
                partial(
                    retriever.retrieve,
                    owner_id="u1",
                    query_text="plan the offsite",
                    query_embedding=embedder.embed("plan the offsite", mode="query"),
                    diagnostics=diagnostics,
                    now=NOW,
                )
            )
            self.assertEqual(3, len(memories))
            self.assertEqual(1, len(diagnostics.failures))
            self.assertEqual("contextual_memories", diagnostics.failures[0].branch)
            self.assertEqual("store_query_error", diagnostics.failures[0].error_kind)

    def test_unknown_tier_is_rejected(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo, store, _, _ = self._build(tmp)
            retriever = MemoryRetriever(repo=repo, vector_store=store)
            with self.assertRaises(ValidationError):
                anyio.run(
                    partial(
                        retriever.retrieve,
                        owner_id="u1",
                        query_text="q",
                        query_embedding=None,
                        tier="huge",
                    )
                )


class MemoryWriterTests(unittest.TestCase):
    def test_near_duplicate_of_same_kind_is_skipped(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            engine = SQLiteEngine(Path(tmp) / "recall.db")
            init_schema(engine)
            repo = MemoryRepository(engine)
            store = LanceVectorStore(Path(tmp) / "vectors", DIM, use_lancedb=False)
            writer = MemoryWriter(
                repo=repo, vector_store=store, embedding_provider=HashEmbeddingProvider(DIM)
            )
            first = writer.add_memory(
                owner_id="u1", kind="preference", content="Prefers window seats", confidence=0.9
            )
            dup = writer.add_memory(
                owner_id="u1", kind="preference", content="prefers WINDOW seats", confidence=0.8
            )
            other_kind = writer.add_memory(
                owner_id="u1", kind="fact", content="Prefers window seats", confidence=0.8
            )
            other_owner = writer.add_memory(
                owner_id="u2", kind="preference", content="Prefers window seats", confidence=0.8
            )
            self.assertIsNotNone(first)
            self.assertIsNone(dup)
            self.assertIsNotNone(other_kind)
            self.assertIsNotNone(other_owner)
            self.assertEqual(2, len(repo.list_memories(owner_id="u1")))

    def test_rejects_invalid_input(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            engine = SQLiteEngine(Path(tmp) / "recall.db")
            init_schema(engine)
            writer = MemoryWriter(
                repo=MemoryRepository(engine),
                vector_store=LanceVectorStore(Path(tmp) / "vectors", DIM, use_lancedb=False),
                embedding_provider=HashEmbeddingProvider(DIM),
            )
            with self.assertRaises(ValidationError):
                writer.add_memory(owner_id="u1", kind="mood", content="x", confidence=0.9)
            with self.assertRaises(ValidationError):
                writer.add_memory(owner_id="u1", kind="fact", content="  ", confidence=0.9)
            with self.assertRaises(ValidationError):
                writer.add_memory(owner_id="u1", kind="fact", content="x", confidence=1.5)
            with self.assertRaises(ValidationError):
                writer.add_memory(owner_id="", kind="fact", content="x", confidence=0.5)


    def test_delete_memory_removes_vector_row(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            engine = SQLiteEngine(Path(tmp) / "recall.db")
            init_schema(engine)
            repo = MemoryRepository(engine)
            store = LanceVectorStore(
                Path(tmp) / "vectors", DIM, table_name="memory_vectors", use_lancedb=False
            )
            embedder = HashEmbeddingProvider(DIM)
            writer = MemoryWriter(repo=repo, vector_store=store, embedding_provider=embedder)
            query = "book flights for the lisbon conference"
            stale = writer.add_memory(
                owner_id="u1", kind="goal", content=query, confidence=0.9
            )
            kept = writer.add_memory(
                owner_id="u1",
                kind="goal",
                content="Reserve a hotel near the conference venue",
                confidence=0.9,
            )

            self.assertTrue(writer.delete_memory(owner_id="u1", memory_id=stale.id))
            self.assertFalse(writer.delete_memory(owner_id="u2", memory_id=kept.id))

            vector = embedder.embed(query, mode="query")
            hits = store.search(vector=vector, top_k=10, where=VectorFilter(owner_id="u1"))
            self.assertEqual([kept.id], [h["id"] for h in hits])

            retriever = MemoryRetriever(repo=repo, vector_store=store, candidate_pool=1)
            contextual = retriever.list_contextual(
                owner_id="u1", query_text=query, query_embedding=vector, limit=1
            )
            self.assertEqual([kept.id], [m.id for m in contextual])


if __name__ == "__main__":
    unittest.main()
