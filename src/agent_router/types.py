"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class RoutingStrategy(str, Enum):
    LOCAL_ONLY = "local-only"
    HYBRID = "hybrid"
    FULL_FANOUT = "full-fanout"


class ItemKind(str, Enum):
    DOCUMENT = "document"
    CODE = "code"


class InteractionType(str, Enum):
    DECISION = "decision"
    CONTRIBUTION = "contribution"
    SYNTHESIS = "synthesis"
    HUMAN_INPUT = "human-input"


class ContributionKind(str, Enum):
    """Finer-grained label used to pick an entry's base impact score."""

    HUMAN_DECISION = "human_decision"
    HUMAN_APPROVAL = "human_approval"
    HUMAN_INPUT = "human_input"
    AGENT_GENERATION = "agent_generation"
    AGENT_SYNTHESIS = "agent_synthesis"
    ROUTING_DECISION = "routing_decision"
    CERTIFICATE = "certificate"


class UsageType(str, Enum):
    """How an injected context item relates to the query it served."""

    REFERENCED = "referenced"
    AUTO_INJECTED = "auto_injected"
    FILE_REFERENCED = "file_referenced"
    CODE_ANALYZED = "code_analyzed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(slots=True)
class Message:
    """One turn of conversation history."""

    role: str
    content: str
    author: str | None = None


@dataclass(slots=True)
class Preferences:
    prefer_local: bool = False
    max_cost: float | None = None
    max_latency_ms: int | None = None


@dataclass(slots=True)
class Query:
    text: str
    history: list[Message] = field(default_factory=list)
    preferences: Preferences = field(default_factory=Preferences)
    scope: str = "default"


@dataclass(frozen=True, slots=True)
class TriageResult:
    """Classification outcome consumed by the router for exactly one query."""

    complexity: Complexity
    routing_strategy: RoutingStrategy
    recommended_backends: tuple[str, ...]
    estimated_cost: float
    estimated_latency_ms: int
    confidence: float
    reasoning: str
    can_handle_locally: bool
    mode: str = "heuristic"


@dataclass(slots=True)
class KnowledgeItem:
    """A corpus entry. The corpus itself is owned elsewhere and only read here."""

    item_id: str
    title: str
    text: str
    description: str = ""
    tags: frozenset[str] = frozenset()
    last_accessed_at: datetime | None = None
    path: str | None = None
    repository: str | None = None
    kind: ItemKind = ItemKind.DOCUMENT


@dataclass(slots=True)
class ScoredItem:
    item: KnowledgeItem
    score: float
    token_cost: int


@dataclass(slots=True)
class ContextBundle:
    """Items admitted under a token budget, in admission order."""

    items: list[ScoredItem]
    token_budget: int
    tokens_used: int
    included_by_kind: dict[str, int] = field(default_factory=dict)

    @classmethod
    def empty(cls, token_budget: int = 0) -> "ContextBundle":
        return cls(items=[], token_budget=token_budget, tokens_used=0)

    @property
    def is_empty(self) -> bool:
        return not self.items


@dataclass(frozen=True, slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class AgentResponse:
    """Output of one successful backend call."""

    backend_id: str
    content: str
    confidence: float
    usage: TokenUsage
    cost: float = 0.0
    latency_ms: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class SynthesizedAnswer:
    text: str
    key_insights: list[str]
    consensus_score: float
    contributing_backends: list[str]
    execution_time_ms: float
    total_cost: float
    mode: str = "single"


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """Immutable attribution record. `payload` is the hashed blob."""

    entry_id: str
    scope: str
    interaction_type: InteractionType
    contribution_kind: ContributionKind
    source: str
    target: str | None
    summary: str
    payload: dict[str, Any]
    content_hash: str
    impact_score: float
    created_at: datetime
    verified: bool = False
    sequence: int = 0
    previous_hash: str = ""
    chain_hash: str = ""


@dataclass(slots=True)
class RoutedResponse:
    """Everything the transport layer needs from one routed query."""

    answer: str
    routing_strategy: RoutingStrategy
    backends_used: list[str]
    failed_backends: list[str]
    execution_time_ms: float
    total_cost: float
    triage_result: TriageResult
    key_insights: list[str] = field(default_factory=list)
    consensus_score: float = 1.0
    context_items: int = 0
    context_tokens: int = 0
    ledger_entry_ids: list[str] = field(default_factory=list)
    recorded: bool = True
    states: list[str] = field(default_factory=list)
