"""Query router: triage, context, dispatch, synthesis and attribution in sequence."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any

from agent_router.backends.factory import build_registry, prompt_backend_for
from agent_router.backends.registry import BackendRegistry
from agent_router.config import RouterConfig
from agent_router.context.assembler import ContextAssembler, CorpusAccessor
from agent_router.context.scorer import RelevanceScorer
from agent_router.context.usage import usage_records
from agent_router.dispatch.dispatcher import BackendDispatcher
from agent_router.errors import RouterError, ServiceUnavailableError
from agent_router.ledger.ledger import AttributionLedger, EntryDraft
from agent_router.ledger.store import InMemoryLedgerStore, LedgerStore
from agent_router.obs.events import ProgressObserver
from agent_router.obs.tracing import Timer
from agent_router.synthesis.synthesizer import ResponseSynthesizer
from agent_router.triage.classifier import QueryClassifier
from agent_router.types import (
    AgentResponse,
    ContextBundle,
    ContributionKind,
    InteractionType,
    Message,
    Preferences,
    Query,
    RoutedResponse,
    SynthesizedAnswer,
    TriageResult,
)

logger = logging.getLogger("agent_router.router")


class RouterState(str, Enum):
    RECEIVED = "received"
    TRIAGED = "triaged"
    CONTEXT_ASSEMBLED = "context-assembled"
    DISPATCHED = "dispatched"
    SYNTHESIZED = "synthesized"
    RECORDED = "recorded"
    DONE = "done"
    FAILED = "failed"


class Router:
    """Single orchestration entry point.

    States advance `received -> triaged -> context-assembled -> dispatched ->
    synthesized -> recorded -> done`; `failed` can follow any of them. Triage
    and context problems degrade to heuristics or an empty bundle. Only a
    total dispatch failure ends the query, as `ServiceUnavailableError`.

    Ledger writes for one query are awaited in causal order: the routing
    decision, then the synthesis (when several backends answered), then one
    contribution per backend response.
    """

    def __init__(
        self,
        *,
        classifier: QueryClassifier,
        assembler: ContextAssembler,
        dispatcher: BackendDispatcher,
        synthesizer: ResponseSynthesizer,
        ledger: AttributionLedger,
        synthesizer_id: str = "synthesizer",
    ) -> None:
        self.classifier = classifier
        self.assembler = assembler
        self.dispatcher = dispatcher
        self.synthesizer = synthesizer
        self.ledger = ledger
        self.synthesizer_id = synthesizer_id

    async def route(
        self,
        text: str,
        *,
        history: Sequence[Message] | None = None,
        preferences: Preferences | None = None,
        scope: str = "default",
        observer: ProgressObserver | None = None,
    ) -> RoutedResponse:
        try:
            return await self._route(text, list(history or []), preferences or Preferences(), scope, observer)
        except RouterError:
            raise
        except Exception as exc:
            logger.exception("Routing failed unexpectedly")
            raise ServiceUnavailableError(f"Routing failed: {exc}") from exc

    async def route_query(
        self, query: Query, *, observer: ProgressObserver | None = None
    ) -> RoutedResponse:
        return await self.route(
            query.text,
            history=query.history,
            preferences=query.preferences,
            scope=query.scope,
            observer=observer,
        )

    async def _route(
        self,
        text: str,
        history: list[Message],
        preferences: Preferences,
        scope: str,
        observer: ProgressObserver | None,
    ) -> RoutedResponse:
        query_id = str(uuid.uuid4())
        states = [RouterState.RECEIVED]

        with Timer() as timer:
            triage = await self._triage(text, preferences)
            states.append(RouterState.TRIAGED)

            backends = list(triage.recommended_backends)
            bundle = await self._assemble(text, scope, backends)
            states.append(RouterState.CONTEXT_ASSEMBLED)

            responses = await self.dispatcher.dispatch(
                backends,
                text,
                history,
                bundle,
                timeout_seconds=self._timeout_for(preferences),
                observer=observer,
            )
            states.append(RouterState.DISPATCHED)
            succeeded = [response.backend_id for response in responses]
            failed = [backend_id for backend_id in backends if backend_id not in succeeded]

            if not responses:
                states.append(RouterState.FAILED)
                entry_id = await self._record_failure(query_id, text, scope, triage, bundle, failed)
                logger.error("All backends failed for query %s: %s", query_id, ", ".join(failed))
                raise ServiceUnavailableError(
                    "No backend produced a response",
                    failed_backends=failed,
                    ledger_entry_id=entry_id,
                )

            answer = await self._synthesize(text, responses)
            states.append(RouterState.SYNTHESIZED)

            entry_ids, recorded = await self._record_success(
                query_id, text, scope, triage, bundle, responses, failed, answer
            )
            if recorded:
                states.append(RouterState.RECORDED)
            states.append(RouterState.DONE)

        logger.info(
            "Query %s routed: strategy=%s used=%s failed=%s time=%.0fms",
            query_id,
            triage.routing_strategy.value,
            ",".join(succeeded),
            ",".join(failed) or "-",
            timer.elapsed_ms,
        )
        return RoutedResponse(
            answer=answer.text,
            routing_strategy=triage.routing_strategy,
            backends_used=succeeded,
            failed_backends=failed,
            execution_time_ms=timer.elapsed_ms,
            total_cost=answer.total_cost,
            triage_result=triage,
            key_insights=answer.key_insights,
            consensus_score=answer.consensus_score,
            context_items=len(bundle.items),
            context_tokens=bundle.tokens_used,
            ledger_entry_ids=entry_ids,
            recorded=recorded,
            states=[state.value for state in states],
        )

    async def _triage(self, text: str, preferences: Preferences) -> TriageResult:
        try:
            return await self.classifier.classify(text, preferences)
        except Exception as exc:
            logger.warning("Triage failed, falling back to heuristics: %s", exc)
            return self.classifier.classify_heuristic(text, preferences)

    async def _assemble(self, text: str, scope: str, backends: list[str]) -> ContextBundle:
        try:
            return await self.assembler.assemble(text, scope=scope, backend_ids=backends)
        except Exception as exc:
            logger.warning("Context assembly failed, continuing without context: %s", exc)
            return ContextBundle.empty(self.assembler.plan(backends).context)

    async def _synthesize(self, text: str, responses: list[AgentResponse]) -> SynthesizedAnswer:
        try:
            return await self.synthesizer.synthesize(text, responses)
        except Exception as exc:
            logger.warning("Synthesis failed, concatenating responses: %s", exc)
            return self.synthesizer.fallback(responses)

    def _timeout_for(self, preferences: Preferences) -> float:
        timeout = self.dispatcher.config.timeout_seconds
        if preferences.max_latency_ms is not None and preferences.max_latency_ms > 0:
            timeout = min(timeout, preferences.max_latency_ms / 1000.0)
        return timeout

    def _routing_payload(
        self,
        query_id: str,
        text: str,
        triage: TriageResult,
        bundle: ContextBundle,
        backends_used: list[str],
        failed: list[str],
        status: str,
    ) -> dict[str, Any]:
        baseline = self.classifier.estimate_cost(list(self.classifier.config.fanout_backends))
        return {
            "query_id": query_id,
            "query": text,
            "status": status,
            "complexity": triage.complexity.value,
            "routing_strategy": triage.routing_strategy.value,
            "recommended_backends": list(triage.recommended_backends),
            "backends_used": backends_used,
            "failed_backends": failed,
            "estimated_cost": triage.estimated_cost,
            "cost_savings": round(max(baseline - triage.estimated_cost, 0.0), 6),
            "confidence": triage.confidence,
            "reasoning": triage.reasoning,
            "triage_mode": triage.mode,
            "context": {
                "items": usage_records(bundle, self.assembler.scorer.weights),
                "tokens_used": bundle.tokens_used,
                "token_budget": bundle.token_budget,
            },
        }

    async def _record_failure(
        self,
        query_id: str,
        text: str,
        scope: str,
        triage: TriageResult,
        bundle: ContextBundle,
        failed: list[str],
    ) -> str | None:
        draft = EntryDraft(
            scope=scope,
            interaction_type=InteractionType.DECISION,
            contribution_kind=ContributionKind.ROUTING_DECISION,
            source="router",
            target=query_id,
            summary=f"Routing failed: {triage.routing_strategy.value}, no backend answered",
            payload=self._routing_payload(query_id, text, triage, bundle, [], failed, "failed"),
        )
        try:
            return await self.ledger.record(draft)
        except Exception:
            logger.exception("Could not record failed routing decision for query %s", query_id)
            return None

    async def _record_success(
        self,
        query_id: str,
        text: str,
        scope: str,
        triage: TriageResult,
        bundle: ContextBundle,
        responses: list[AgentResponse],
        failed: list[str],
        answer: SynthesizedAnswer,
    ) -> tuple[list[str], bool]:
        used = [response.backend_id for response in responses]
        drafts = [
            EntryDraft(
                scope=scope,
                interaction_type=InteractionType.DECISION,
                contribution_kind=ContributionKind.ROUTING_DECISION,
                source="router",
                target=query_id,
                summary=f"{triage.routing_strategy.value} via {', '.join(used)}",
                payload=self._routing_payload(query_id, text, triage, bundle, used, failed, "succeeded"),
            )
        ]
        if len(responses) > 1:
            drafts.append(
                EntryDraft(
                    scope=scope,
                    interaction_type=InteractionType.SYNTHESIS,
                    contribution_kind=ContributionKind.AGENT_SYNTHESIS,
                    source=self.synthesizer_id,
                    target=query_id,
                    payload={
                        "query_id": query_id,
                        "text": answer.text,
                        "key_insights": answer.key_insights,
                        "consensus_score": answer.consensus_score,
                        "contributing_backends": answer.contributing_backends,
                        "mode": answer.mode,
                        "total_cost": answer.total_cost,
                    },
                )
            )
        for response in responses:
            drafts.append(
                EntryDraft(
                    scope=scope,
                    interaction_type=InteractionType.CONTRIBUTION,
                    contribution_kind=ContributionKind.AGENT_GENERATION,
                    source=response.backend_id,
                    target=query_id,
                    payload={
                        "query_id": query_id,
                        "content": response.content,
                        "confidence": response.confidence,
                        "input_tokens": response.usage.input_tokens,
                        "output_tokens": response.usage.output_tokens,
                        "cost": response.cost,
                        "latency_ms": response.latency_ms,
                        "timestamp": response.timestamp.isoformat(),
                    },
                )
            )

        entry_ids: list[str] = []
        for draft in drafts:
            try:
                entry_ids.append(await self.ledger.record(draft))
            except Exception:
                logger.exception("Ledger write failed for query %s; later entries skipped", query_id)
                return entry_ids, False
        return entry_ids, True


def build_router(
    config: RouterConfig | None = None,
    *,
    corpus: CorpusAccessor | None = None,
    ledger_store: LedgerStore | None = None,
    registry: BackendRegistry | None = None,
    models: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
    observer: ProgressObserver | None = None,
) -> Router:
    """Construct every service once and wire them together explicitly."""
    config = config or RouterConfig()
    if registry is None:
        registry, built_models = build_registry(config.backends, env=env)
        models = {**built_models, **(models or {})}
    models = models or {}

    scorer = RelevanceScorer(config.relevance)
    assembler = ContextAssembler(
        scorer, corpus, config=config.budget, token_limits=registry.token_limits()
    )
    classifier = QueryClassifier(
        prompt_backend_for(models, config.classifier_backend),
        config=config.triage,
        cost_table=registry.cost_table(),
    )
    dispatcher = BackendDispatcher(
        registry, config=config.dispatch, assembler=assembler, observer=observer
    )
    synthesizer = ResponseSynthesizer(
        prompt_backend_for(models, config.synthesis_backend), config=config.synthesis
    )
    ledger = AttributionLedger(ledger_store or InMemoryLedgerStore(), config=config.ledger)
    return Router(
        classifier=classifier,
        assembler=assembler,
        dispatcher=dispatcher,
        synthesizer=synthesizer,
        ledger=ledger,
        synthesizer_id=config.synthesis_backend or "synthesizer",
    )
