"""FastAPI entrypoint for routing and ledger endpoints."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import datetime
from typing import Any, Literal

from fastapi import FastAPI, HTTPException
from fastapi import Query as QueryParam
from pydantic import BaseModel, Field

from agent_router.backends.factory import build_registry
from agent_router.config import RouterConfig
from agent_router.errors import ServiceUnavailableError
from agent_router.ledger.ledger import AttributionFilter, EntryDraft
from agent_router.ledger.store import InMemoryLedgerStore, LedgerStore, SqliteLedgerStore
from agent_router.router.router import Router, build_router
from agent_router.types import ContributionKind, InteractionType, Message, Preferences, Query


class MessageModel(BaseModel):
    role: Literal["user", "assistant", "system"] = "user"
    content: str
    author: str | None = None


class PreferencesModel(BaseModel):
    prefer_local: bool = False
    max_cost: float | None = Field(default=None, ge=0.0)
    max_latency_ms: int | None = Field(default=None, ge=1)


class RouteRequest(BaseModel):
    query: str = Field(min_length=1)
    history: list[MessageModel] = Field(default_factory=list)
    preferences: PreferencesModel = Field(default_factory=PreferencesModel)
    scope: str = Field(default="default", min_length=1)


class HumanInputRequest(BaseModel):
    author: str = Field(min_length=1)
    kind: Literal["human_decision", "human_approval", "human_input"] = "human_input"
    content: str = Field(min_length=1)
    target: str | None = None


class CertificateRequest(BaseModel):
    source: str = Field(min_length=1)


def create_app(router: Router) -> FastAPI:
    """Build the HTTP surface around an already-wired router."""

    app = FastAPI(title="Agent Router", version="0.1.0")
    ledger = router.ledger
    registry = router.dispatcher.registry

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "backends": registry.ids(),
            "classifier_mode": "model" if router.classifier.backend is not None else "heuristic",
            "synthesis_mode": "model" if router.synthesizer.backend is not None else "fallback",
        }

    @app.get("/backends")
    def backends() -> dict[str, Any]:
        specs = registry.specs()
        return {
            "items": [
                {
                    "backend_id": spec.backend_id,
                    "name": spec.name,
                    "local": spec.local,
                    "token_limit": spec.token_limit,
                    "estimated_cost_per_call": spec.estimated_cost_per_call,
                }
                for spec in specs
            ]
        }

    @app.post("/route")
    async def route(request: RouteRequest) -> dict[str, Any]:
        try:
            result = await router.route_query(
                Query(
                    text=request.query,
                    history=[Message(**message.model_dump()) for message in request.history],
                    preferences=Preferences(**request.preferences.model_dump()),
                    scope=request.scope,
                )
            )
        except ServiceUnavailableError as exc:
            raise HTTPException(
                status_code=503,
                detail={
                    "error": str(exc),
                    "category": exc.category.value,
                    "failed_backends": exc.failed_backends,
                },
            ) from exc
        return asdict(result)

    @app.get("/ledger/{scope}/entries")
    async def entries(
        scope: str,
        interaction_type: InteractionType | None = None,
        source: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = QueryParam(default=None, ge=0),
    ) -> dict[str, Any]:
        filters = AttributionFilter(
            interaction_type=interaction_type,
            source=source,
            since=since,
            until=until,
            limit=limit,
        )
        items = await ledger.get_attributions(scope, filters)
        return {"items": [asdict(entry) for entry in items]}

    @app.get("/ledger/{scope}/stats")
    async def stats(scope: str) -> dict[str, Any]:
        return asdict(await ledger.get_stats(scope))

    @app.get("/ledger/{scope}/chain")
    async def chain(scope: str) -> dict[str, Any]:
        report = await ledger.verify_chain(scope)
        return {**asdict(report), "blocks": await ledger.export_for_anchoring(scope)}

    @app.get("/ledger/{scope}/agents/{source}/stats")
    async def contribution_stats(scope: str, source: str) -> dict[str, Any]:
        return asdict(await ledger.get_contribution_stats(scope, source))

    @app.get("/ledger/{scope}/context-stats")
    async def context_stats(scope: str, days: int = QueryParam(default=7, ge=1)) -> dict[str, Any]:
        return asdict(await ledger.get_context_statistics(scope, days=days))

    @app.post("/ledger/{scope}/certificates")
    async def certificate(scope: str, request: CertificateRequest) -> dict[str, Any]:
        return asdict(await ledger.generate_certificate(scope, request.source))

    @app.get("/ledger/certificates/{certificate_id}/verify")
    async def verify_certificate(certificate_id: str) -> dict[str, Any]:
        result = await ledger.verify_certificate(certificate_id)
        if result.reason == "Certificate not found":
            raise HTTPException(status_code=404, detail=result.reason)
        return asdict(result)

    @app.post("/ledger/{scope}/human-input")
    async def human_input(scope: str, request: HumanInputRequest) -> dict[str, Any]:
        kind = ContributionKind(request.kind)
        interaction = (
            InteractionType.DECISION
            if kind is ContributionKind.HUMAN_DECISION
            else InteractionType.HUMAN_INPUT
        )
        entry_id = await ledger.record(
            EntryDraft(
                scope=scope,
                interaction_type=interaction,
                contribution_kind=kind,
                source=request.author,
                target=request.target,
                payload={"content": request.content, "author": request.author},
            )
        )
        return {"entry_id": entry_id}

    @app.get("/ledger/entries/{entry_id}/verify")
    async def verify(entry_id: str) -> dict[str, Any]:
        result = await ledger.verify(entry_id)
        if result.reason == "Entry not found":
            raise HTTPException(status_code=404, detail=result.reason)
        return asdict(result)

    @app.post("/ledger/entries/{entry_id}/verified")
    async def mark_verified(entry_id: str) -> dict[str, Any]:
        try:
            await ledger.get(entry_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"entry_id": entry_id, "verified": await ledger.mark_verified(entry_id)}

    return app


def _ledger_store_from_env() -> LedgerStore:
    db_path = os.getenv("AGENT_ROUTER_LEDGER_DB")
    if db_path:
        return SqliteLedgerStore(db_path)
    return InMemoryLedgerStore()


def build_default_app() -> FastAPI:
    """Application wired from environment variables, for `uvicorn --factory`."""

    logging.basicConfig(
        level=os.getenv("AGENT_ROUTER_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config_path = os.getenv("AGENT_ROUTER_CONFIG")
    config = RouterConfig.from_file(config_path) if config_path else RouterConfig()

    registry, models = build_registry(config.backends)
    router = build_router(
        config,
        ledger_store=_ledger_store_from_env(),
        registry=registry,
        models=models,
    )
    return create_app(router)
