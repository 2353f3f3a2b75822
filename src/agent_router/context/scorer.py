"""Relevance scoring of knowledge items against a query."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from agent_router.config import RelevanceWeights
from agent_router.obs.tracing import estimate_tokens
from agent_router.types import KnowledgeItem, ScoredItem, as_utc, utcnow

_WORD_PATTERN = re.compile(r"[a-z0-9]+")
_DOUBLE_QUOTED = re.compile(r'"([^"]+)"')
_SINGLE_QUOTED = re.compile(r"(?<!\w)'([^']+)'(?!\w)")

STOPWORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "is", "are", "was", "were", "be", "been",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "can", "may", "might", "must", "this", "that", "these", "those",
    }
)


@dataclass(frozen=True, slots=True)
class QueryFeatures:
    """Query-side inputs to scoring, computed once per query."""

    lowered: str
    keywords: tuple[str, ...]
    mentions: frozenset[str]


def extract_keywords(text: str) -> tuple[str, ...]:
    """Lowercase alphanumeric tokens longer than two chars, stopwords removed.

    Order of first appearance is preserved and duplicates dropped.
    """
    seen: dict[str, None] = {}
    for token in _WORD_PATTERN.findall(text.lower()):
        if len(token) <= 2 or token in STOPWORDS:
            continue
        seen.setdefault(token, None)
    return tuple(seen)


def extract_mentions(text: str) -> frozenset[str]:
    quoted = _DOUBLE_QUOTED.findall(text) + _SINGLE_QUOTED.findall(text)
    return frozenset(value.strip().lower() for value in quoted if value.strip())


class RelevanceScorer:
    """Weighted-sum relevance metric.

    The score is a pure function of the query, the item and `now`. Only the
    recency bonus depends on `now`; pass it explicitly for reproducible runs.
    """

    def __init__(self, weights: RelevanceWeights | None = None) -> None:
        self.weights = weights or RelevanceWeights()

    def analyze(self, query: str) -> QueryFeatures:
        return QueryFeatures(
            lowered=query.lower(),
            keywords=extract_keywords(query),
            mentions=extract_mentions(query),
        )

    def score(
        self,
        query: str | QueryFeatures,
        item: KnowledgeItem,
        *,
        now: datetime | None = None,
    ) -> float:
        features = self.analyze(query) if isinstance(query, str) else query
        w = self.weights
        score = 0.0

        if _mentioned(features, item.item_id) or _mentioned(features, item.title):
            score += w.explicit_mention

        if item.path and item.path.lower() in features.lowered:
            score += w.file_path_mention

        if item.repository and item.repository.lower() in features.lowered:
            score += w.repository_mention

        searchable = f"{item.title} {item.description} {item.text}".lower()
        matched = sum(1 for keyword in features.keywords if keyword in searchable)
        score += matched * w.keyword_match

        keyword_set = set(features.keywords)
        matched_tags = sum(1 for tag in item.tags if tag.lower() in keyword_set)
        score += matched_tags * w.tag_match

        if item.last_accessed_at is not None:
            reference = as_utc(now) if now is not None else utcnow()
            age = reference - as_utc(item.last_accessed_at)
            if timedelta(0) <= age < timedelta(hours=w.recent_window_hours):
                score += w.recent_access

        return max(score, 0.0)

    def score_item(
        self,
        query: str | QueryFeatures,
        item: KnowledgeItem,
        *,
        now: datetime | None = None,
    ) -> ScoredItem:
        return ScoredItem(
            item=item,
            score=self.score(query, item, now=now),
            token_cost=estimate_tokens(item.text),
        )

    def rank(
        self,
        query: str,
        items: list[KnowledgeItem],
        *,
        now: datetime | None = None,
    ) -> list[ScoredItem]:
        """Score, drop non-positive, and sort by score desc (stable on ties)."""
        features = self.analyze(query)
        reference = as_utc(now) if now is not None else utcnow()
        scored = [self.score_item(features, item, now=reference) for item in items]
        positive = [entry for entry in scored if entry.score > 0]
        return sorted(positive, key=lambda entry: entry.score, reverse=True)


def _mentioned(features: QueryFeatures, name: str) -> bool:
    # Apostrophes inside a single-quoted name defeat the mention regex, so a
    # verbatim quoted name is accepted too.
    name = name.strip().lower()
    if not name:
        return False
    if name in features.mentions:
        return True
    return f'"{name}"' in features.lowered or f"'{name}'" in features.lowered
