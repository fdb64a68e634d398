from __future__ import annotations

import unittest

from minirecall.domain.budget import (
    BudgetSpec,
    MemoryBudgetSpec,
    apply_budget,
    apply_memory_budget,
    coerce_spec,
)
from minirecall.domain.constants import estimate_tokens
from minirecall.domain.errors import ValidationError
from minirecall.domain.models import Memory, Passage


def _passage(pid: str, tokens: int, document_id: str = "d1") -> Passage:
    return Passage(
        id=pid,
        document_id=document_id,
        owner_id="u1",
        passage_index=0,
        content="x" * (tokens * 4),
        token_count=tokens,
    )


def _memory(mid: str, chars: int) -> Memory:
    return Memory(
        id=mid,
        owner_id="u1",
        kind="fact",
        content="y" * chars,
        confidence=0.9,
        created_at="2025-01-01T00:00:00+00:00",
    )


def _ids(items):
    return [x.id for x in items]


class BudgetTests(unittest.TestCase):
    def test_token_overflow_skips_instead_of_stopping(self) -> None:
        items = [_passage("p0", 100), _passage("p1", 200), _passage("p2", 50)]
        out = apply_budget(items, {"maxContextTokens": 250, "maxChunks": 10})
        self.assertEqual(["p0", "p2"], _ids(out))

    def test_first_item_is_exempt_from_item_size_cap(self) -> None:
        items = [_passage("big", 500), _passage("small", 10), _passage("big2", 400)]
        out = apply_budget(items, {"maxItemTokens": 300})
        self.assertEqual(["big", "small"], _ids(out))

    def test_max_items_caps_output(self) -> None:
        items = [_passage(f"p{i}", 5, document_id=f"d{i}") for i in range(10)]
        out = apply_budget(items, {"maxItems": 3})
        self.assertEqual(["p0", "p1", "p2"], _ids(out))

    def test_per_source_cap(self) -> None:
        items = [
            _passage("a1", 5, "A"),
            _passage("a2", 5, "A"),
            _passage("b1", 5, "B"),
            _passage("a3", 5, "A"),
            _passage("b2", 5, "B"),
        ]
        out = apply_budget(items, {"maxPerSource": 2})
        self.assertEqual(["a1", "a2", "b1", "b2"], _ids(out))

    def test_output_is_ordered_subsequence(self) -> None:
        items = [
            _passage("p0", 700, "A"),
            _passage("p1", 20, "A"),
            _passage("p2", 1200, "B"),
            _passage("p3", 300, "A"),
            _passage("p4", 90, "C"),
            _passage("p5", 60, "A"),
        ]
        out = apply_budget(
            items,
            BudgetSpec(max_total_tokens=900, max_items=4, max_per_source=3, max_item_tokens=1000),
        )
        positions = [_ids(items).index(pid) for pid in _ids(out)]
        self.assertEqual(sorted(positions), positions)
        self.assertLessEqual(len(out), 4)
        self.assertEqual(["p0", "p1", "p4"], _ids(out))

    def test_token_estimate_used_when_count_missing(self) -> None:
        passage = Passage(
            id="p", document_id="d", owner_id="u1", passage_index=0, content="abcde"
        )
        self.assertEqual(2, passage.tokens)
        self.assertEqual(1, estimate_tokens("a"))
        self.assertEqual(0, estimate_tokens(""))

    def test_empty_input(self) -> None:
        self.assertEqual([], apply_budget([], None))

    def test_defaults(self) -> None:
        spec = coerce_spec(BudgetSpec, None)
        self.assertEqual(3000, spec.max_total_tokens)
        self.assertEqual(8, spec.max_items)
        self.assertEqual(4, spec.max_per_source)
        self.assertEqual(1000, spec.max_item_tokens)

    def test_unknown_option_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            apply_budget([_passage("p0", 1)], {"maxTokens": 10})

    def test_non_positive_option_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            coerce_spec(BudgetSpec, {"maxPerDoc": 0})
        with self.assertRaises(ValidationError):
            coerce_spec(BudgetSpec, {"maxItems": -1})
        with self.assertRaises(ValidationError):
            coerce_spec(BudgetSpec, ["maxItems", 3])

    def test_zero_items_returns_nothing(self) -> None:
        passages = [_passage("p0", 10), _passage("p1", 10, "d2")]
        self.assertEqual([], apply_budget(passages, {"maxItems": 0}))
        self.assertEqual([], apply_budget(passages, BudgetSpec(max_items=0)))


class MemoryBudgetTests(unittest.TestCase):
    def test_count_and_token_caps(self) -> None:
        memories = [_memory("m0", 400), _memory("m1", 2000), _memory("m2", 40), _memory("m3", 40)]
        out = apply_memory_budget(memories, {"maxMemories": 2, "maxTokens": 200})
        self.assertEqual(["m0", "m2"], _ids(out))

    def test_zero_items_returns_nothing(self) -> None:
        out = apply_memory_budget([_memory("m0", 10)], MemoryBudgetSpec(max_items=0))
        self.assertEqual([], out)


if __name__ == "__main__":
    unittest.main()
