"""Merges several backend responses into one answer."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from itertools import combinations

from langchain_core.prompts import PromptTemplate

from agent_router.backends.base import PromptBackend
from agent_router.config import SynthesisConfig
from agent_router.obs.tracing import Timer
from agent_router.types import AgentResponse, SynthesizedAnswer

logger = logging.getLogger("agent_router.synthesis")

SYNTHESIS_TEMPLATE = PromptTemplate.from_template(
    """You are the synthesis engine for a team of AI agents. Multiple agents have responded to a user query. Merge their insights into a single, cohesive, comprehensive answer.

USER QUERY: "{query}"

AGENT RESPONSES:
{responses}

SYNTHESIS GUIDELINES:
1. **Identify Consensus**: Find common themes and agreements across responses
2. **Highlight Unique Insights**: Include valuable unique perspectives from each agent
3. **Resolve Contradictions**: If agents disagree, state the disagreement explicitly and present both views fairly
4. **Structure Clearly**: Organize the information logically
5. **Be Concise**: Remove redundancy while keeping all valuable information
6. **Attribute When Needed**: Mention which agent provided key insights if relevant

SYNTHESIZED ANSWER:"""
)

_NUMBERED_LINE = re.compile(r"^\s*\d+[.)]\s+(.+)$")
_BULLET_LINE = re.compile(r"^\s*[-*•]\s+(.+)$")
_NON_WORD = re.compile(r"[^\w\s]")
_MIN_INSIGHT_CHARS = 20
_MAX_INSIGHT_CHARS = 200


def build_synthesis_prompt(query: str, responses: Sequence[AgentResponse]) -> str:
    blocks = [
        f"### Response {idx} ({response.backend_id}):\n{response.content}\n"
        for idx, response in enumerate(responses, start=1)
    ]
    return SYNTHESIS_TEMPLATE.format(query=query, responses="\n".join(blocks))


def extract_key_insights(text: str, limit: int = 5) -> list[str]:
    """List items first; otherwise the first clause of each paragraph."""
    insights: list[str] = []
    for line in text.splitlines():
        match = _NUMBERED_LINE.match(line) or _BULLET_LINE.match(line)
        if match:
            insights.append(match.group(1).strip())
    if insights:
        return insights[:limit]

    for paragraph in re.split(r"\n\s*\n", text):
        clause = paragraph.split(".")[0].strip()
        if _MIN_INSIGHT_CHARS < len(clause) < _MAX_INSIGHT_CHARS:
            insights.append(clause)
    return insights[:limit]


def word_set(text: str, min_length: int = 4) -> set[str]:
    words = _NON_WORD.sub("", text.lower()).split()
    return {word for word in words if len(word) >= min_length}


def consensus_score(
    responses: Sequence[AgentResponse],
    *,
    scale: float = 1.5,
    min_word_length: int = 4,
) -> float:
    """Average pairwise Jaccard similarity, scaled and capped at 1.0."""
    if len(responses) < 2:
        return 1.0
    sets = [word_set(response.content, min_word_length) for response in responses]
    similarities: list[float] = []
    for a, b in combinations(sets, 2):
        union = a | b
        similarities.append(len(a & b) / len(union) if union else 0.0)
    average = sum(similarities) / len(similarities)
    return round(min(average * scale, 1.0), 2)


def first_sentence(text: str) -> str:
    head = text.strip().split(".")[0].strip()
    return f"{head}." if head else ""


class ResponseSynthesizer:
    """Produces a `SynthesizedAnswer` from one or more agent responses.

    A single response is passed through verbatim. Two or more are merged by
    the synthesis backend; when that backend is missing or fails, responses
    are concatenated under per-backend headers instead.
    """

    def __init__(
        self,
        backend: PromptBackend | None = None,
        *,
        config: SynthesisConfig | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or SynthesisConfig()

    async def synthesize(self, query: str, responses: Sequence[AgentResponse]) -> SynthesizedAnswer:
        if not responses:
            raise ValueError("synthesize requires at least one response")

        if len(responses) == 1:
            only = responses[0]
            return SynthesizedAnswer(
                text=only.content,
                key_insights=extract_key_insights(only.content, self.config.max_insights),
                consensus_score=1.0,
                contributing_backends=[only.backend_id],
                execution_time_ms=0.0,
                total_cost=only.cost,
                mode="single",
            )

        if self.backend is None:
            return self.fallback(responses)

        try:
            with Timer() as timer:
                text = await self.backend.infer(build_synthesis_prompt(query, responses))
        except Exception as exc:
            logger.warning("Synthesis backend failed, concatenating responses: %s", exc)
            return self.fallback(responses)

        consensus = consensus_score(
            responses,
            scale=self.config.consensus_scale,
            min_word_length=self.config.min_word_length,
        )
        logger.info(
            "Responses synthesized: n=%d consensus=%.2f time=%.0fms",
            len(responses),
            consensus,
            timer.elapsed_ms,
        )
        return SynthesizedAnswer(
            text=text,
            key_insights=extract_key_insights(text, self.config.max_insights),
            consensus_score=consensus,
            contributing_backends=[response.backend_id for response in responses],
            execution_time_ms=timer.elapsed_ms,
            total_cost=sum(response.cost for response in responses),
            mode="model",
        )

    def fallback(self, responses: Sequence[AgentResponse]) -> SynthesizedAnswer:
        text = "\n\n---\n\n".join(
            f"## {response.backend_id}\n\n{response.content}" for response in responses
        )
        insights = [first_sentence(response.content) for response in responses]
        return SynthesizedAnswer(
            text=text,
            key_insights=[insight for insight in insights if insight][: self.config.max_insights],
            consensus_score=self.config.fallback_consensus,
            contributing_backends=[response.backend_id for response in responses],
            execution_time_ms=0.0,
            total_cost=sum(response.cost for response in responses),
            mode="fallback",
        )
