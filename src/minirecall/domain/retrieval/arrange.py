from __future__ import annotations

from collections.abc import Sequence
from typing import TypeVar

from minirecall.domain.models import Memory, Passage

T = TypeVar("T")


def distribute_u_shape(items: Sequence[T]) -> list[T]:
    """Place the most relevant items at both ends of the sequence.

    Long-context generators attend most to the start and end of their
    input, so the least relevant items go in the middle::

        [1, 2, 3, 4, 5, 6] -> [1, 3, 5, 6, 4, 2]
    """
    if len(items) <= 2:
        return list(items)
    front: list[T] = []
    back: list[T] = []
    for idx, item in enumerate(items):
        if idx % 2 == 0:
            front.append(item)
        else:
            back.insert(0, item)
    return front + back


def build_context_block(
    passages: Sequence[Passage], memories: Sequence[Memory]
) -> str | None:
    """Render already-arranged passages and memories as one context block."""
    sections: list[str] = []
    if memories:
        lines = "\n".join(f"- {m.content}" for m in memories)
        sections.append(f"About the user:\n{lines}")
    if passages:
        blocks = []
        for passage in passages:
            title = passage.document_title or passage.document_source or "notes"
            blocks.append(f"[{title}]\n{passage.content}")
        sections.append("\n\n".join(blocks))
    if not sections:
        return None
    return "\n\n".join(sections)
