from __future__ import annotations

import math
import unittest
from datetime import datetime, timedelta, timezone

from minirecall.domain.models import Memory, Passage, PassageMetadata
from minirecall.domain.retrieval.relevance import (
    memory_relevance_score,
    parse_timestamp,
    passes_memory_rules,
    passes_passage_rules,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
LONG_TEXT = "Quarterly planning notes covering hiring and roadmap."


def _passage(content: str = LONG_TEXT, *, days_old: float = 1, **meta) -> Passage:
    created = (NOW - timedelta(days=days_old)).isoformat()
    return Passage(
        id="p1",
        document_id="d1",
        owner_id="u1",
        passage_index=0,
        content=content,
        metadata=PassageMetadata.from_dict(meta),
        created_at=created,
    )


def _memory(kind: str, *, days_old: float = 1, confidence: float = 0.9, content: str = "Prefers tea") -> Memory:
    return Memory(
        id="m1",
        owner_id="u1",
        kind=kind,
        content=content,
        confidence=confidence,
        created_at=(NOW - timedelta(days=days_old)).isoformat(),
    )


class PassageRuleTests(unittest.TestCase):
    def test_accepts_recent_substantial_passage(self) -> None:
        self.assertTrue(passes_passage_rules(_passage(), now=NOW))

    def test_rejects_short_content_after_trimming(self) -> None:
        self.assertFalse(passes_passage_rules(_passage("   too short   "), now=NOW))

    def test_rejects_passages_older_than_limit(self) -> None:
        self.assertTrue(passes_passage_rules(_passage(days_old=359), now=NOW))
        self.assertFalse(passes_passage_rules(_passage(days_old=361), now=NOW))

    def test_effective_at_overrides_creation_time(self) -> None:
        stale = (NOW - timedelta(days=400)).isoformat()
        self.assertFalse(passes_passage_rules(_passage(effective_at=stale), now=NOW))
        fresh = (NOW - timedelta(days=3)).isoformat()
        self.assertTrue(
            passes_passage_rules(_passage(days_old=900, effective_at=fresh), now=NOW)
        )

    def test_rejects_unparseable_timestamp(self) -> None:
        self.assertFalse(
            passes_passage_rules(_passage(effective_at="not a date"), now=NOW)
        )

    def test_file_type_allow_list(self) -> None:
        self.assertTrue(passes_passage_rules(_passage(file_type="PDF"), now=NOW))
        self.assertFalse(passes_passage_rules(_passage(file_type="exe"), now=NOW))
        self.assertTrue(
            passes_passage_rules(
                _passage(file_type="exe"), now=NOW, allowed_file_types={"exe"}
            )
        )


class MemoryRuleTests(unittest.TestCase):
    def test_goal_expires_after_ninety_days(self) -> None:
        self.assertFalse(passes_memory_rules(_memory("goal", days_old=95), now=NOW))
        self.assertTrue(passes_memory_rules(_memory("goal", days_old=60), now=NOW))

    def test_decision_expires_after_thirty_days(self) -> None:
        self.assertFalse(passes_memory_rules(_memory("decision", days_old=31), now=NOW))
        self.assertTrue(passes_memory_rules(_memory("decision", days_old=29), now=NOW))

    def test_preference_and_fact_never_expire(self) -> None:
        self.assertTrue(passes_memory_rules(_memory("preference", days_old=365), now=NOW))
        self.assertTrue(passes_memory_rules(_memory("fact", days_old=3650), now=NOW))

    def test_confidence_floor(self) -> None:
        self.assertFalse(passes_memory_rules(_memory("fact", confidence=0.59), now=NOW))
        self.assertTrue(passes_memory_rules(_memory("fact", confidence=0.6), now=NOW))
        self.assertFalse(passes_memory_rules(_memory("fact", confidence=math.nan), now=NOW))

    def test_rejects_blank_content_and_unknown_kind(self) -> None:
        self.assertFalse(passes_memory_rules(_memory("fact", content="   "), now=NOW))
        self.assertFalse(passes_memory_rules(_memory("mood"), now=NOW))

    def test_corrupt_row_confidence_is_rejected_not_raised(self) -> None:
        memory = Memory.from_row(
            {
                "id": "m9",
                "owner_id": "u1",
                "kind": "fact",
                "content": "Lives in Lisbon",
                "confidence": "high",
                "created_at": "yesterday",
            }
        )
        self.assertTrue(math.isnan(memory.confidence))
        self.assertFalse(passes_memory_rules(memory, now=NOW))


class MemoryScoreTests(unittest.TestCase):
    def test_score_components(self) -> None:
        memory = _memory("goal", confidence=0.8, content="Ship the new billing flow by Q3")
        score = memory_relevance_score(
            memory,
            requested_kinds=("goal", "decision", "summary"),
            query_text="Ship the new billing flow?",
        )
        self.assertAlmostEqual(3.0 + 1.6 + 1.0, score)

    def test_profile_kind_bonus_without_query_match(self) -> None:
        memory = _memory("fact", confidence=0.5, content="Has two cats")
        self.assertAlmostEqual(
            2.0 + 1.0, memory_relevance_score(memory, query_text="weekend plans")
        )


class TimestampParsingTests(unittest.TestCase):
    def test_accepts_common_shapes(self) -> None:
        self.assertEqual(
            datetime(2024, 1, 2, tzinfo=timezone.utc), parse_timestamp("2024-01-02T00:00:00Z")
        )
        self.assertEqual(
            datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
            parse_timestamp("2024-01-02 03:04:05"),
        )
        self.assertEqual(
            datetime(1970, 1, 1, 0, 0, 10, tzinfo=timezone.utc), parse_timestamp(10)
        )

    def test_rejects_garbage(self) -> None:
        self.assertIsNone(parse_timestamp("soon"))
        self.assertIsNone(parse_timestamp(None))
        self.assertIsNone(parse_timestamp(""))
        self.assertIsNone(parse_timestamp(True))


if __name__ == "__main__":
    unittest.main()
