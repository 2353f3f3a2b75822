"""Query triage: complexity estimation and routing strategy selection."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal

from langchain_core.prompts import PromptTemplate
from pydantic import BaseModel, Field, ValidationError

from agent_router.backends.base import PromptBackend
from agent_router.config import TriageConfig
from agent_router.types import Complexity, Preferences, RoutingStrategy, TriageResult

logger = logging.getLogger("agent_router.triage")

TRIAGE_TEMPLATE = PromptTemplate.from_template(
    """Analyze this user query and classify it for routing in a hybrid AI system.

USER QUERY: "{query}"

Consider:
1. **Complexity**: Simple (factual, definitions), Moderate (explanations, basic code), Complex (architecture, deep analysis)
2. **Requires Real-Time Data**: Does it need current web info?
3. **Code Generation**: Is it asking to write significant code?
4. **Multiple Perspectives**: Would multiple AI models add value?

Respond in JSON format ONLY:
{{
  "complexity": "simple|moderate|complex",
  "can_handle_locally": true|false,
  "requires_realtime_data": true|false,
  "requires_code_generation": true|false,
  "benefits_from_multiple_models": true|false,
  "reasoning": "Brief explanation (max 100 chars)"
}}"""
)

SIMPLE_INDICATORS = ("what is", "define", "explain simply", "how do i", "what does", "who is", "when was")
COMPLEX_INDICATORS = ("analyze", "compare", "design", "architect", "review this code", "implement", "refactor")
REALTIME_INDICATORS = ("latest", "current", "today", "recent", "news", "now")
CODE_INDICATORS = ("code", "function", "script", "implement", "refactor", "bug")

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")


class TriageAnalysis(BaseModel):
    """Structured reply expected from the classification backend."""

    complexity: Literal["simple", "moderate", "complex"]
    can_handle_locally: bool = False
    requires_realtime_data: bool = False
    requires_code_generation: bool = False
    benefits_from_multiple_models: bool = False
    reasoning: str = Field(default="", max_length=500)


@dataclass(frozen=True, slots=True)
class TriageSignals:
    complexity: Complexity
    can_handle_locally: bool
    requires_realtime: bool
    requires_code: bool
    multi_perspective: bool


def _indicator_pattern(indicators: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(phrase) for phrase in indicators)
    return re.compile(rf"\b(?:{alternatives})\b")


_SIMPLE = _indicator_pattern(SIMPLE_INDICATORS)
_COMPLEX = _indicator_pattern(COMPLEX_INDICATORS)
_REALTIME = _indicator_pattern(REALTIME_INDICATORS)
_CODE = _indicator_pattern(CODE_INDICATORS)


def parse_analysis(raw: str) -> TriageAnalysis | None:
    """Pull the first JSON object out of a model reply; None when unusable."""
    match = _JSON_BLOCK.search(raw)
    if not match:
        return None
    try:
        return TriageAnalysis.model_validate(json.loads(match.group(0)))
    except (json.JSONDecodeError, ValidationError):
        return None


class QueryClassifier:
    """Estimates complexity and chooses how many backends to consult.

    With a classification backend the query is labelled by a small local
    model; when that backend is missing, errors, or replies with something
    unparseable, fixed indicator lists and length thresholds are used
    instead. Both modes feed the same decision table.
    """

    def __init__(
        self,
        backend: PromptBackend | None = None,
        *,
        config: TriageConfig | None = None,
        cost_table: Mapping[str, float] | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or TriageConfig()
        self.cost_table = dict(cost_table or {})

    async def classify(self, query: str, preferences: Preferences | None = None) -> TriageResult:
        preferences = preferences or Preferences()
        if self.backend is None:
            return self.classify_heuristic(query, preferences)

        try:
            raw = await self.backend.infer(TRIAGE_TEMPLATE.format(query=query))
        except Exception as exc:
            logger.warning("Classification backend failed, using heuristics: %s", exc)
            return self.classify_heuristic(query, preferences)

        analysis = parse_analysis(raw)
        if analysis is None:
            logger.warning("Could not parse classification reply, using heuristics: %.200s", raw)
            return self.classify_heuristic(query, preferences)

        complexity = Complexity(analysis.complexity)
        signals = TriageSignals(
            complexity=complexity,
            can_handle_locally=analysis.can_handle_locally and not analysis.requires_realtime_data,
            requires_realtime=analysis.requires_realtime_data,
            requires_code=analysis.requires_code_generation,
            multi_perspective=analysis.benefits_from_multiple_models,
        )
        result = self._decide(
            signals,
            preferences,
            reasoning=analysis.reasoning or f"Model classification: {complexity.value}",
            mode="model",
        )
        logger.info(
            "Query classified: complexity=%s strategy=%s backends=%s",
            result.complexity.value,
            result.routing_strategy.value,
            ",".join(result.recommended_backends),
        )
        return result

    def classify_heuristic(self, query: str, preferences: Preferences | None = None) -> TriageResult:
        preferences = preferences or Preferences()
        lowered = query.lower()
        length = len(query)

        is_simple = bool(_SIMPLE.search(lowered))
        is_complex = bool(_COMPLEX.search(lowered))
        needs_realtime = bool(_REALTIME.search(lowered))
        needs_code = bool(_CODE.search(lowered))

        if is_simple and length < self.config.simple_max_chars:
            complexity = Complexity.SIMPLE
        elif is_complex or length > self.config.complex_min_chars:
            complexity = Complexity.COMPLEX
        else:
            complexity = Complexity.MODERATE

        signals = TriageSignals(
            complexity=complexity,
            can_handle_locally=complexity is Complexity.SIMPLE and not needs_realtime,
            requires_realtime=needs_realtime,
            requires_code=needs_code,
            multi_perspective=complexity is Complexity.COMPLEX,
        )
        flags = [
            name
            for name, present in (
                ("simple-indicator", is_simple),
                ("complex-indicator", is_complex),
                ("realtime", needs_realtime),
                ("code", needs_code),
            )
            if present
        ]
        reasoning = (
            f"Heuristic classification: {complexity.value} "
            f"({length} chars; signals: {', '.join(flags) or 'none'})"
        )
        return self._decide(signals, preferences, reasoning=reasoning, mode="heuristic")

    def _decide(
        self,
        signals: TriageSignals,
        preferences: Preferences,
        *,
        reasoning: str,
        mode: str,
    ) -> TriageResult:
        cfg = self.config
        simple_offline = signals.complexity is Complexity.SIMPLE and not signals.requires_realtime
        if simple_offline or (signals.can_handle_locally and preferences.prefer_local):
            strategy = RoutingStrategy.LOCAL_ONLY
            backends = [cfg.local_backend]
        elif signals.complexity is Complexity.COMPLEX:
            strategy = RoutingStrategy.FULL_FANOUT
            backends = list(cfg.fanout_backends)
        elif signals.requires_realtime:
            strategy = RoutingStrategy.HYBRID
            backends = [cfg.local_backend, cfg.realtime_backend]
        else:
            strategy = RoutingStrategy.HYBRID
            backends = [cfg.local_backend, cfg.reasoning_backend]
            if signals.requires_code and cfg.code_backend not in backends:
                backends.append(cfg.code_backend)

        backends = _dedupe(backends)
        if preferences.max_cost is not None:
            backends = self._trim_to_cost(backends, preferences.max_cost)

        return TriageResult(
            complexity=signals.complexity,
            routing_strategy=strategy,
            recommended_backends=tuple(backends),
            estimated_cost=round(self.estimate_cost(backends), 6),
            estimated_latency_ms=cfg.latency_estimates_ms.get(strategy.value, 0),
            confidence=self._confidence(signals),
            reasoning=reasoning,
            can_handle_locally=signals.can_handle_locally,
            mode=mode,
        )

    def estimate_cost(self, backends: list[str]) -> float:
        total = 0.0
        for backend_id in backends:
            if backend_id == self.config.local_backend:
                total += self.cost_table.get(backend_id, 0.0)
            else:
                total += self.cost_table.get(backend_id, self.config.default_backend_cost)
        return total

    def _trim_to_cost(self, backends: list[str], max_cost: float) -> list[str]:
        trimmed = list(backends)
        while len(trimmed) > 1 and self.estimate_cost(trimmed) > max_cost:
            trimmed.pop()
        return trimmed

    def _confidence(self, signals: TriageSignals) -> float:
        confidence = self.config.base_confidence
        if signals.complexity is Complexity.SIMPLE and signals.can_handle_locally:
            confidence += 0.2
        if signals.complexity is Complexity.COMPLEX and signals.multi_perspective:
            confidence += 0.15
        return round(min(confidence, self.config.max_confidence), 4)


def _dedupe(backends: list[str]) -> list[str]:
    return list(dict.fromkeys(backends))
