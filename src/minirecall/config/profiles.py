from __future__ import annotations

from dataclasses import dataclass

from minirecall.domain.budget import MemoryBudgetSpec
from minirecall.domain.errors import ValidationError


@dataclass(frozen=True)
class MemoryTier:
    name: str
    profile_limit: int
    contextual_limit: int
    max_memories: int
    max_memory_tokens: int

    def to_budget(self) -> MemoryBudgetSpec:
        return MemoryBudgetSpec(
            max_items=self.max_memories,
            max_total_tokens=self.max_memory_tokens,
        )


TIER_PRESETS: dict[str, MemoryTier] = {
    "full": MemoryTier(
        name="full",
        profile_limit=3,
        contextual_limit=2,
        max_memories=5,
        max_memory_tokens=800,
    ),
    # Contextual memories are skipped entirely on a minimal budget.
    "minimal": MemoryTier(
        name="minimal",
        profile_limit=2,
        contextual_limit=0,
        max_memories=2,
        max_memory_tokens=300,
    ),
}


def resolve_tier(name: str | MemoryTier) -> MemoryTier:
    if isinstance(name, MemoryTier):
        return name
    tier = TIER_PRESETS.get(str(name or "").strip().lower())
    if tier is None:
        raise ValidationError(f"unknown budget tier: {name!r}")
    return tier
