from __future__ import annotations

import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from minirecall.domain.errors import ValidationError
from minirecall.domain.models import TemporalRange
from minirecall.infra.sqlite.db import SQLiteEngine
from minirecall.infra.sqlite.document_repository import DocumentRepository, NewPassage
from minirecall.infra.sqlite.init_schema import init_schema


def _new(idx: int, content: str, temporal: TemporalRange | None = None) -> NewPassage:
    return NewPassage(
        passage_index=idx,
        content=content,
        token_count=len(content) // 4 + 1,
        embedding=[1.0, 0.0, 0.0, 0.0],
        temporal=temporal or TemporalRange(),
    )


class DocumentRepositoryTests(unittest.TestCase):
    def _build_repo(self, tmp: str, **kwargs) -> DocumentRepository:
        engine = SQLiteEngine(Path(tmp) / "recall.db")
        init_schema(engine)
        return DocumentRepository(engine, **kwargs)

    def _seed(self, repo: DocumentRepository, owner: str, source: str, texts, **kwargs):
        doc = repo.upsert_document(owner_id=owner, source=source, title=source.title())
        ids = repo.replace_passages(
            owner_id=owner,
            document_id=doc.id,
            passages=[_new(i, t, **kwargs) for i, t in enumerate(texts)],
        )
        return doc, ids

    def test_upsert_document_is_unique_per_owner_and_source(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo = self._build_repo(tmp)
            first = repo.upsert_document(owner_id="u1", source="cv.pdf", title="CV")
            second = repo.upsert_document(owner_id="u1", source="cv.pdf", title="CV v2")
            other = repo.upsert_document(owner_id="u2", source="cv.pdf", title="CV")
            self.assertEqual(first.id, second.id)
            self.assertEqual("CV v2", second.title)
            self.assertNotEqual(first.id, other.id)

    def test_keyword_search_is_scoped_to_owner(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo = self._build_repo(tmp)
            _, mine = self._seed(repo, "u1", "a.md", ["kubernetes migration plan for payments"])
            self._seed(repo, "u2", "b.md", ["kubernetes migration plan for billing"])
            hits = repo.search_keyword(owner_id="u1", query="kubernetes migration", top_k=10)
            self.assertEqual(mine, [h["id"] for h in hits])
            self.assertGreaterEqual(hits[0]["rank"], 0.0)

    def test_keyword_search_ranks_better_matches_first(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo = self._build_repo(tmp)
            _, ids = self._seed(
                repo,
                "u1",
                "notes.md",
                [
                    "lunch order for the team offsite",
                    "offsite agenda: offsite budget, offsite venue and offsite travel",
                ],
            )
            hits = repo.search_keyword(owner_id="u1", query="offsite", top_k=10)
            self.assertEqual([ids[1], ids[0]], [h["id"] for h in hits])
            self.assertGreater(hits[0]["rank"], hits[1]["rank"])

    def test_keyword_and_mode_requires_every_term(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo = self._build_repo(tmp, keyword_match_mode="and")
            _, ids = self._seed(
                repo, "u1", "n.md", ["alpha release checklist", "alpha beta release notes"]
            )
            hits = repo.search_keyword(owner_id="u1", query="alpha beta", top_k=10)
            self.assertEqual([ids[1]], [h["id"] for h in hits])

    def test_short_tokens_are_discarded(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo = self._build_repo(tmp)
            self.assertEqual(["project", "status"], repo.tokenize_query("a to Project status!"))
            self.assertEqual([], repo.search_keyword(owner_id="u1", query="a is to", top_k=5))

    def test_keyword_search_applies_year_filter(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo = self._build_repo(tmp)
            doc = repo.upsert_document(owner_id="u1", source="cv.md")
            ids = repo.replace_passages(
                owner_id="u1",
                document_id=doc.id,
                passages=[
                    _new(0, "engineer at acme", TemporalRange(2015, 2018)),
                    _new(1, "engineer at initech", TemporalRange(2022, None)),
                    _new(2, "engineer hobby projects"),
                ],
            )
            hits = repo.search_keyword(
                owner_id="u1", query="engineer", top_k=10, query_year=2023, now_year=2025
            )
            self.assertEqual([ids[1]], [h["id"] for h in hits])
            future = repo.search_keyword(
                owner_id="u1", query="engineer", top_k=10, query_year=2027, now_year=2025
            )
            self.assertEqual([], future)

    def test_fetch_by_ids_preserves_order_and_owner(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo = self._build_repo(tmp)
            doc, ids = self._seed(repo, "u1", "a.md", ["first passage", "second passage"])
            _, foreign = self._seed(repo, "u2", "b.md", ["foreign passage"])
            rows = repo.fetch_passages_by_ids(
                owner_id="u1", passage_ids=[ids[1], foreign[0], ids[0]]
            )
            self.assertEqual([ids[1], ids[0]], [p.id for p in rows])
            self.assertEqual("A.Md", rows[0].document_title)
            self.assertEqual("a.md", rows[0].document_source)
            self.assertEqual([1.0, 0.0, 0.0, 0.0], rows[0].embedding)
            self.assertEqual(doc.id, rows[0].document_id)

    def test_delete_document_cascades_to_passages_and_keyword_rows(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo = self._build_repo(tmp)
            doc, ids = self._seed(repo, "u1", "a.md", ["quarterly revenue summary"])
            removed = repo.delete_document(owner_id="u1", document_id=doc.id)
            self.assertEqual(ids, removed)
            self.assertEqual([], repo.fetch_passages_by_ids(owner_id="u1", passage_ids=ids))
            self.assertEqual(
                [], repo.search_keyword(owner_id="u1", query="quarterly revenue", top_k=5)
            )
            self.assertIsNone(repo.get_document(owner_id="u1", document_id=doc.id))

    def test_replace_passages_drops_previous_version(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo = self._build_repo(tmp)
            doc, old_ids = self._seed(repo, "u1", "a.md", ["draft wording"])
            new_ids = repo.replace_passages(
                owner_id="u1", document_id=doc.id, passages=[_new(0, "final wording")]
            )
            rows = repo.fetch_passages_for_document(owner_id="u1", document_id=doc.id)
            self.assertEqual(new_ids, [p.id for p in rows])
            self.assertNotIn(old_ids[0], new_ids)
            self.assertEqual([], repo.search_keyword(owner_id="u1", query="draft", top_k=5))

    def test_blank_owner_is_rejected(self) -> None:
        with TemporaryDirectory(ignore_cleanup_errors=True) as tmp:
            repo = self._build_repo(tmp)
            with self.assertRaises(ValidationError):
                repo.search_keyword(owner_id="  ", query="anything", top_k=5)


if __name__ == "__main__":
    unittest.main()
