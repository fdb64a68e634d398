from __future__ import annotations

import math

CHARS_PER_TOKEN = 4

RRF_K = 60
SEARCH_TOP_K = 30
KEYWORD_MIN_TOKEN_CHARS = 3
KEYWORD_MAX_TERMS = 24

PASSAGE_DEDUP_THRESHOLD = 0.92
MEMORY_DEDUP_THRESHOLD = 0.9
MEMORY_DEDUP_POOL = 50

PASSAGE_MIN_CHARS = 30
PASSAGE_MAX_AGE_DAYS = 360
ALLOWED_FILE_TYPES = frozenset(
    {"pdf", "txt", "md", "markdown", "docx", "html", "csv", "json", "notes"}
)

MEMORY_MIN_CONFIDENCE = 0.6
MEMORY_CANDIDATE_POOL = 10
MEMORY_QUERY_PREFIX_CHARS = 12
# None: never expires by age.
MEMORY_MAX_AGE_DAYS: dict[str, int | None] = {
    "preference": None,
    "fact": None,
    "goal": 90,
    "summary": 90,
    "decision": 30,
}

DEFAULT_MAX_TOTAL_TOKENS = 3000
DEFAULT_MAX_ITEMS = 8
DEFAULT_MAX_PER_SOURCE = 4
DEFAULT_MAX_ITEM_TOKENS = 1000

DEFAULT_MAX_MEMORIES = 5
DEFAULT_MAX_MEMORY_TOKENS = 800

CHUNK_MAX_TOKENS = 1000
CHUNK_OVERLAP_TOKENS = 150
CHUNK_MAX_CHUNKS = 10_000


def estimate_tokens(text: str) -> int:
    return int(math.ceil(len(text or "") / CHARS_PER_TOKEN))
