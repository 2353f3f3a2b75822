"""Usage labels for injected context items."""

from __future__ import annotations

from typing import Any

from agent_router.config import RelevanceWeights
from agent_router.types import ContextBundle, ItemKind, ScoredItem, UsageType


def usage_type(entry: ScoredItem, weights: RelevanceWeights) -> UsageType:
    """An item scoring at least its mention weight was asked for by name."""
    if entry.item.kind is ItemKind.CODE:
        if entry.score >= weights.file_path_mention:
            return UsageType.FILE_REFERENCED
        return UsageType.CODE_ANALYZED
    if entry.score >= weights.explicit_mention:
        return UsageType.REFERENCED
    return UsageType.AUTO_INJECTED


def usage_records(bundle: ContextBundle, weights: RelevanceWeights) -> list[dict[str, Any]]:
    return [
        {
            "item_id": entry.item.item_id,
            "title": entry.item.title,
            "kind": entry.item.kind.value,
            "score": round(entry.score, 2),
            "tokens": entry.token_cost,
            "usage_type": usage_type(entry, weights).value,
        }
        for entry in bundle.items
    ]
