from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping, Sequence
from typing import Any, TypeVar

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from minirecall.domain.constants import (
    DEFAULT_MAX_ITEM_TOKENS,
    DEFAULT_MAX_ITEMS,
    DEFAULT_MAX_MEMORIES,
    DEFAULT_MAX_MEMORY_TOKENS,
    DEFAULT_MAX_PER_SOURCE,
    DEFAULT_MAX_TOTAL_TOKENS,
)
from minirecall.domain.errors import ValidationError
from minirecall.domain.models import Memory, Passage

SpecT = TypeVar("SpecT", bound=BaseModel)


class BudgetSpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_total_tokens: int = Field(
        default=DEFAULT_MAX_TOTAL_TOKENS,
        ge=1,
        validation_alias=AliasChoices(
            "max_total_tokens", "maxTotalTokens", "maxContextTokens"
        ),
    )
    max_items: int = Field(
        default=DEFAULT_MAX_ITEMS,
        ge=0,
        validation_alias=AliasChoices("max_items", "maxItems", "maxChunks"),
    )
    max_per_source: int = Field(
        default=DEFAULT_MAX_PER_SOURCE,
        ge=1,
        validation_alias=AliasChoices("max_per_source", "maxPerSource", "maxPerDoc"),
    )
    max_item_tokens: int = Field(
        default=DEFAULT_MAX_ITEM_TOKENS,
        ge=1,
        validation_alias=AliasChoices("max_item_tokens", "maxItemTokens"),
    )


class MemoryBudgetSpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_items: int = Field(
        default=DEFAULT_MAX_MEMORIES,
        ge=0,
        validation_alias=AliasChoices("max_items", "maxItems", "maxMemories"),
    )
    max_total_tokens: int = Field(
        default=DEFAULT_MAX_MEMORY_TOKENS,
        ge=0,
        validation_alias=AliasChoices("max_total_tokens", "maxTotalTokens", "maxTokens"),
    )


def coerce_spec(model: type[SpecT], value: SpecT | Mapping[str, Any] | None) -> SpecT:
    if value is None:
        return model()
    if isinstance(value, model):
        return value
    if not isinstance(value, Mapping):
        raise ValidationError(f"{model.__name__} options must be a mapping")
    try:
        return model.model_validate(dict(value))
    except pydantic.ValidationError as exc:
        raise ValidationError(f"invalid {model.__name__}: {exc}") from exc


def apply_budget(
    passages: Sequence[Passage],
    spec: BudgetSpec | Mapping[str, Any] | None = None,
) -> list[Passage]:
    """Shrink a relevance-sorted list to the budget, preserving order.

    Stages run in order: per-item size (first item exempt), per-source cap,
    then joint count/token caps where an item that does not fit is skipped.
    """
    budget = coerce_spec(BudgetSpec, spec)
    if not passages:
        return []

    sized = [
        p
        for idx, p in enumerate(passages)
        if idx == 0 or p.tokens <= budget.max_item_tokens
    ]

    per_source: defaultdict[str, int] = defaultdict(int)
    capped: list[Passage] = []
    for passage in sized:
        if per_source[passage.document_id] >= budget.max_per_source:
            continue
        per_source[passage.document_id] += 1
        capped.append(passage)

    return _take_within(capped, budget.max_items, budget.max_total_tokens)


def apply_memory_budget(
    memories: Sequence[Memory],
    spec: MemoryBudgetSpec | Mapping[str, Any] | None = None,
) -> list[Memory]:
    budget = coerce_spec(MemoryBudgetSpec, spec)
    return _take_within(list(memories), budget.max_items, budget.max_total_tokens)


ItemT = TypeVar("ItemT", Passage, Memory)


def _take_within(items: list[ItemT], max_items: int, max_tokens: int) -> list[ItemT]:
    selected: list[ItemT] = []
    total = 0
    for item in items:
        if len(selected) >= max_items:
            break
        tokens = item.tokens
        if total + tokens > max_tokens:
            continue
        total += tokens
        selected.append(item)
    return selected
