from fastapi.testclient import TestClient

from agent_router.api.main import create_app
from agent_router.backends.base import BackendReply
from agent_router.backends.registry import BackendRegistry, BackendSpec
from agent_router.config import DispatchConfig, RouterConfig
from agent_router.router.router import build_router
from agent_router.types import TokenUsage


class EchoBackend:
    async def complete(self, backend_id, system_prompt, messages, context) -> BackendReply:
        return BackendReply(text=f"{backend_id}: {messages[-1].content}", usage=TokenUsage(8, 4))


class FailingBackend:
    async def complete(self, backend_id, system_prompt, messages, context) -> BackendReply:
        raise RuntimeError("provider error")


def _client(local_handle: object) -> TestClient:
    registry = BackendRegistry()
    registry.register(
        BackendSpec(backend_id="muse-local", handle=local_handle, local=True, estimated_cost_per_call=0.0)
    )
    registry.register(BackendSpec(backend_id="claude", display_name="Claude", handle=EchoBackend()))
    router = build_router(RouterConfig(dispatch=DispatchConfig(timeout_seconds=1.0)), registry=registry)
    return TestClient(create_app(router))


def test_api_route_ledger_and_verification() -> None:
    client = _client(EchoBackend())

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["classifier_mode"] == "heuristic"

    backends = client.get("/backends").json()["items"]
    assert [item["backend_id"] for item in backends] == ["muse-local", "claude"]
    assert backends[1]["name"] == "Claude"

    route_resp = client.post("/route", json={"query": "What is a channel?", "scope": "team"})
    assert route_resp.status_code == 200
    payload = route_resp.json()
    assert payload["routing_strategy"] == "local-only"
    assert payload["backends_used"] == ["muse-local"]
    assert payload["answer"] == "muse-local: What is a channel?"
    assert payload["triage_result"]["complexity"] == "simple"
    assert len(payload["ledger_entry_ids"]) == 2

    entries = client.get("/ledger/team/entries").json()["items"]
    assert [entry["interaction_type"] for entry in entries] == ["decision", "contribution"]
    contributions = client.get("/ledger/team/entries", params={"interaction_type": "contribution"})
    assert [entry["source"] for entry in contributions.json()["items"]] == ["muse-local"]

    stats = client.get("/ledger/team/stats").json()
    assert stats["total_entries"] == 2
    assert stats["counts_by_source"] == {"router": 1, "muse-local": 1}

    chain = client.get("/ledger/team/chain").json()
    assert chain["valid"] is True
    assert [block["block_number"] for block in chain["blocks"]] == [1, 2]

    human = client.post(
        "/ledger/team/human-input",
        json={"author": "dana", "kind": "human_approval", "content": "Ship it.", "target": entries[1]["entry_id"]},
    )
    assert human.status_code == 200
    entry_id = human.json()["entry_id"]

    verify = client.get(f"/ledger/entries/{entry_id}/verify")
    assert verify.status_code == 200
    assert verify.json()["valid"] is True

    marked = client.post(f"/ledger/entries/{entry_id}/verified")
    assert marked.json() == {"entry_id": entry_id, "verified": True}


def test_api_reports_unknown_entries_and_outages() -> None:
    client = _client(FailingBackend())

    assert client.get("/ledger/entries/missing/verify").status_code == 404
    assert client.post("/ledger/entries/missing/verified").status_code == 404

    outage = client.post("/route", json={"query": "What is a channel?"})
    assert outage.status_code == 503
    detail = outage.json()["detail"]
    assert detail["category"] == "total-backend-failure"
    assert detail["failed_backends"] == ["muse-local"]

    assert client.post("/route", json={"query": ""}).status_code == 422


def test_api_entry_filters_validate_limit_and_accept_naive_times() -> None:
    client = _client(EchoBackend())
    client.post("/route", json={"query": "What is a channel?", "scope": "team"})

    naive = client.get("/ledger/team/entries", params={"since": "2020-01-01T00:00:00"})
    assert naive.status_code == 200
    assert len(naive.json()["items"]) == 2
    future = client.get("/ledger/team/entries", params={"since": "2999-01-01T00:00:00"})
    assert future.json()["items"] == []

    assert client.get("/ledger/team/entries", params={"limit": 0}).json()["items"] == []
    assert len(client.get("/ledger/team/entries", params={"limit": 1}).json()["items"]) == 1
    assert client.get("/ledger/team/entries", params={"limit": -1}).status_code == 422


def test_api_contributor_stats_and_certificates() -> None:
    client = _client(EchoBackend())
    client.post("/route", json={"query": "What is a channel?", "scope": "team"})

    stats = client.get("/ledger/team/agents/muse-local/stats").json()
    assert stats["total_contributions"] == 1
    assert stats["counts_by_kind"] == {"agent_generation": 1}
    assert stats["total_tokens"] == 12

    issued = client.post("/ledger/team/certificates", json={"source": "muse-local"})
    assert issued.status_code == 200
    certificate_id = issued.json()["certificate_id"]
    assert issued.json()["contribution_count"] == 1

    valid = client.get(f"/ledger/certificates/{certificate_id}/verify").json()
    assert valid["valid"] is True

    client.post("/route", json={"query": "What is a queue?", "scope": "team"})
    outdated = client.get(f"/ledger/certificates/{certificate_id}/verify").json()
    assert outdated["valid"] is False
    assert outdated["reason"] == "Contribution count mismatch"

    assert client.get("/ledger/certificates/missing/verify").status_code == 404
    assert client.post("/ledger/team/certificates", json={"source": ""}).status_code == 422


def test_api_context_statistics_window() -> None:
    client = _client(EchoBackend())
    client.post("/route", json={"query": "What is a channel?", "scope": "team"})

    stats = client.get("/ledger/team/context-stats").json()
    assert stats["period_days"] == 7
    assert stats["queries_with_context"] == 0
    assert stats["top_documents"] == []
    assert client.get("/ledger/team/context-stats", params={"days": 30}).json()["period_days"] == 30
    assert client.get("/ledger/team/context-stats", params={"days": 0}).status_code == 422
