from __future__ import annotations

import re
from dataclasses import dataclass

from minirecall.domain.constants import (
    CHARS_PER_TOKEN,
    CHUNK_MAX_CHUNKS,
    CHUNK_MAX_TOKENS,
    CHUNK_OVERLAP_TOKENS,
    estimate_tokens,
)

_PARAGRAPH_BREAK = re.compile(r"\n\n+")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")


@dataclass(frozen=True)
class TextChunk:
    chunk_index: int
    content: str
    token_count: int


class _ChunkSink:
    def __init__(self, max_chunks: int) -> None:
        self.max_chunks = max_chunks
        self.chunks: list[TextChunk] = []

    @property
    def full(self) -> bool:
        return len(self.chunks) >= self.max_chunks

    def push(self, content: str) -> None:
        trimmed = content.strip()
        if not trimmed or self.full:
            return
        self.chunks.append(
            TextChunk(
                chunk_index=len(self.chunks),
                content=trimmed,
                token_count=estimate_tokens(trimmed),
            )
        )


def _join(head: str, item: str, sep: str) -> str:
    return f"{head}{sep}{item}" if head else item


def chunk_text(
    text: str,
    *,
    max_tokens: int = CHUNK_MAX_TOKENS,
    overlap_tokens: int = CHUNK_OVERLAP_TOKENS,
    max_chunks: int = CHUNK_MAX_CHUNKS,
) -> list[TextChunk]:
    """Split text into passages of at most ``max_tokens`` estimated tokens.

    Paragraphs are packed greedily; oversize paragraphs fall back to
    sentences and oversize sentences to fixed character windows. Each
    flushed chunk seeds the next one with its trailing ``overlap_tokens``
    worth of characters when they fit.
    """
    raw = str(text or "")
    sink = _ChunkSink(max(1, int(max_chunks)))
    max_tokens = max(1, int(max_tokens))
    overlap_chars = max(0, int(overlap_tokens)) * CHARS_PER_TOKEN
    max_chars = max_tokens * CHARS_PER_TOKEN

    if estimate_tokens(raw) <= max_tokens:
        sink.push(raw)
        return sink.chunks

    def fits(value: str) -> bool:
        return estimate_tokens(value) <= max_tokens

    current = ""
    # Overlap text currently heading ``current``; never emitted on its own.
    carried = ""

    def flush() -> str:
        if not current.strip() or current == carried:
            return ""
        sink.push(current)
        if overlap_chars <= 0:
            return ""
        return current[max(0, len(current) - overlap_chars):].strip()

    for part in _PARAGRAPH_BREAK.split(raw):
        paragraph = part.strip()
        if not paragraph:
            continue
        candidate = _join(current, paragraph, "\n\n")
        if fits(candidate):
            current = candidate
            continue
        carried = current = flush()
        if sink.full:
            break

        if fits(paragraph):
            candidate = _join(current, paragraph, "\n\n")
            current = candidate if fits(candidate) else paragraph
            continue

        for piece in _SENTENCE_BREAK.split(paragraph):
            sentence = piece.strip()
            if not sentence:
                continue
            candidate = _join(current, sentence, " ")
            if fits(candidate):
                current = candidate
                continue
            carried = current = flush()
            if sink.full:
                break
            if fits(sentence):
                candidate = _join(current, sentence, " ")
                current = candidate if fits(candidate) else sentence
                continue
            for start in range(0, len(sentence), max_chars):
                sink.push(sentence[start:start + max_chars])
                if sink.full:
                    break
            carried = current = ""
            if sink.full:
                break
        if sink.full:
            break

    if current != carried:
        sink.push(current)
    return sink.chunks
