"""Budgeted context assembly from an external knowledge corpus."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from agent_router.config import BudgetConfig
from agent_router.context.scorer import RelevanceScorer
from agent_router.obs.tracing import estimate_tokens
from agent_router.types import ContextBundle, ItemKind, KnowledgeItem, Message, ScoredItem

logger = logging.getLogger("agent_router.context.assembler")

_DOCUMENT_PREVIEW_CHARS = 1000
_CODE_PREVIEW_CHARS = 500


class CorpusAccessor(Protocol):
    """Read-only view of the knowledge corpus."""

    async def candidates(self, scope: str, limit: int) -> Sequence[KnowledgeItem]:
        """Return at most `limit` candidate items for `scope`, most recent first."""


class InMemoryCorpus:
    """Corpus held in process memory, used for tests and local prototyping."""

    def __init__(self, items: Mapping[str, Iterable[KnowledgeItem]] | None = None) -> None:
        self._items: dict[str, list[KnowledgeItem]] = {
            scope: list(entries) for scope, entries in (items or {}).items()
        }

    def add(self, scope: str, item: KnowledgeItem) -> None:
        self._items.setdefault(scope, []).append(item)

    async def candidates(self, scope: str, limit: int) -> Sequence[KnowledgeItem]:
        return list(self._items.get(scope, []))[:limit]


@dataclass(frozen=True, slots=True)
class BudgetPlan:
    token_limit: int
    conversation: int
    context: int
    response: int


class ContextAssembler:
    """Selects the most relevant corpus items that fit a backend's context budget.

    Selection is a greedy knapsack: items are visited in descending relevance
    and admitted while the running total stays within budget. An item that
    would overflow is skipped rather than ending the scan, so smaller items
    ranked below a large one can still be admitted.
    """

    def __init__(
        self,
        scorer: RelevanceScorer,
        corpus: CorpusAccessor | None,
        *,
        config: BudgetConfig | None = None,
        token_limits: Mapping[str, int] | None = None,
    ) -> None:
        self.scorer = scorer
        self.corpus = corpus
        self.config = config or BudgetConfig()
        self.token_limits = dict(token_limits or {})

    def token_limit(self, backend_ids: str | Sequence[str] | None = None) -> int:
        """Limit for one backend, or the smallest limit across several."""
        if backend_ids is None:
            return self.config.default_token_limit
        ids = [backend_ids] if isinstance(backend_ids, str) else list(backend_ids)
        if not ids:
            return self.config.default_token_limit
        return min(self.token_limits.get(i, self.config.default_token_limit) for i in ids)

    def plan(self, backend_ids: str | Sequence[str] | None = None) -> BudgetPlan:
        limit = self.token_limit(backend_ids)
        return BudgetPlan(
            token_limit=limit,
            conversation=math.floor(limit * self.config.conversation_fraction),
            context=math.floor(limit * self.config.context_fraction),
            response=math.floor(limit * self.config.response_fraction),
        )

    async def assemble(
        self,
        query: str,
        *,
        scope: str = "default",
        backend_ids: str | Sequence[str] | None = None,
        now: datetime | None = None,
    ) -> ContextBundle:
        budget = self.plan(backend_ids).context
        if self.corpus is None:
            return ContextBundle.empty(budget)

        try:
            candidates = list(await self.corpus.candidates(scope, self.config.candidate_limit))
        except Exception as exc:
            logger.warning("Corpus access failed for scope %s, continuing without context: %s", scope, exc)
            return ContextBundle.empty(budget)

        ranked = self.scorer.rank(query, candidates[: self.config.candidate_limit], now=now)
        bundle = select_within_budget(ranked, budget)
        logger.info(
            "Context assembled for scope %s: %d/%d items, %d/%d tokens",
            scope,
            len(bundle.items),
            len(candidates),
            bundle.tokens_used,
            budget,
        )
        return bundle

    def trim_history(
        self,
        history: Sequence[Message],
        backend_ids: str | Sequence[str] | None = None,
    ) -> list[Message]:
        """Keep the most recent messages that fit the conversation budget."""
        budget = self.plan(backend_ids).conversation
        kept: list[Message] = []
        used = 0
        for message in reversed(history):
            cost = estimate_tokens(message.content)
            if used + cost > budget:
                break
            kept.append(message)
            used += cost
        kept.reverse()
        return kept


def select_within_budget(ranked: Sequence[ScoredItem], budget: int) -> ContextBundle:
    selected: list[ScoredItem] = []
    by_kind: dict[str, int] = {}
    used = 0
    for entry in ranked:
        if used + entry.token_cost > budget:
            continue
        selected.append(entry)
        used += entry.token_cost
        by_kind[entry.item.kind.value] = by_kind.get(entry.item.kind.value, 0) + 1
    return ContextBundle(items=selected, token_budget=budget, tokens_used=used, included_by_kind=by_kind)


def format_context(bundle: ContextBundle) -> str:
    """Render a bundle as a knowledge-base section for a system prompt."""
    if bundle.is_empty:
        return ""

    documents = [entry for entry in bundle.items if entry.item.kind is ItemKind.DOCUMENT]
    code_files = [entry for entry in bundle.items if entry.item.kind is ItemKind.CODE]
    lines: list[str] = ["## Available Knowledge Base", ""]

    if documents:
        lines.append("### Project Documents:")
        lines.append("")
        for entry in documents:
            lines.append(f"**{entry.item.title}** (Relevance: {entry.score:.1f})")
            lines.append(_truncate(entry.item.text, _DOCUMENT_PREVIEW_CHARS))
            lines.append("")

    if code_files:
        lines.append("### Connected Code Files:")
        lines.append("")
        for entry in code_files:
            path = entry.item.path or entry.item.title
            extension = path.rsplit(".", 1)[-1] if "." in path else ""
            repository = f" ({entry.item.repository})" if entry.item.repository else ""
            lines.append(f"**{path}**{repository} (Relevance: {entry.score:.1f})")
            lines.append(f"```{extension}")
            lines.append(_truncate(entry.item.text, _CODE_PREVIEW_CHARS))
            lines.append("```")
            lines.append("")

    lines.append(
        f"*Context includes {len(documents)} documents and {len(code_files)} code files "
        f"({bundle.tokens_used} tokens)*"
    )
    lines.append(
        "Reference these materials when relevant. Cite specific documents or files when you use them."
    )
    return "\n".join(lines)


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."
