from __future__ import annotations

import re
from datetime import datetime, timezone

from minirecall.domain.models import TemporalRange

_QUERY_YEAR = re.compile(r"\b((?:19|20)\d{2})\b")
_RANGE = re.compile(
    r"(\d{4})\s*[–—-]\s*(present|current|now|ongoing|\d{4})", re.IGNORECASE
)
_ONGOING = re.compile(r"present|current|now|ongoing", re.IGNORECASE)


def current_year() -> int:
    return datetime.now(timezone.utc).year


def extract_query_year(query: str) -> int | None:
    """First 19xx/20xx year in the query, e.g. "what did I do in 2023" -> 2023."""
    match = _QUERY_YEAR.search(str(query or ""))
    if not match:
        return None
    return int(match.group(1))


def extract_temporal_range(text: str) -> TemporalRange:
    """Broadest year range mentioned in a passage.

    "June 2022 - Present" yields an open range; standalone years widen it.
    """
    years: list[int] = []
    ongoing = False
    raw = str(text or "")
    for match in _RANGE.finditer(raw):
        years.append(int(match.group(1)))
        end_part = match.group(2)
        if _ONGOING.fullmatch(end_part):
            ongoing = True
        else:
            years.append(int(end_part))
    for match in _QUERY_YEAR.finditer(raw):
        years.append(int(match.group(1)))
    if not years:
        return TemporalRange()
    return TemporalRange(
        start_year=min(years),
        end_year=None if ongoing else max(years),
    )


def range_includes_year(
    value: TemporalRange, year: int, *, now_year: int | None = None
) -> bool:
    if value.start_year is None:
        return False
    end = value.end_year if value.end_year is not None else (now_year or current_year())
    return value.start_year <= year <= end
