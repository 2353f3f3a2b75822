import asyncio

import pytest

from agent_router.backends.base import BackendReply
from agent_router.backends.registry import BackendRegistry, BackendSpec
from agent_router.context.assembler import ContextAssembler, select_within_budget
from agent_router.context.scorer import RelevanceScorer
from agent_router.dispatch.dispatcher import BackendDispatcher
from agent_router.obs.events import BackendStatus
from agent_router.obs.tracing import CostModel
from agent_router.types import KnowledgeItem, Message, ScoredItem, TokenUsage


class EchoBackend:
    def __init__(self) -> None:
        self.calls: list[tuple[list[Message], str]] = []

    async def complete(self, backend_id, system_prompt, messages, context) -> BackendReply:
        self.calls.append((list(messages), context))
        return BackendReply(text=f"{backend_id}: {messages[-1].content}", usage=TokenUsage(10, 5))


class SlowBackend:
    async def complete(self, backend_id, system_prompt, messages, context) -> BackendReply:
        await asyncio.sleep(1.0)
        return BackendReply(text="too late", usage=TokenUsage())


class FailingBackend:
    async def complete(self, backend_id, system_prompt, messages, context) -> BackendReply:
        raise RuntimeError("rate limited")


def _registry(**handles: object) -> BackendRegistry:
    registry = BackendRegistry()
    for backend_id, handle in handles.items():
        registry.register(
            BackendSpec(
                backend_id=backend_id,
                handle=handle,
                cost_model=CostModel(input_per_1k=1.0, output_per_1k=2.0),
                token_limit=100,
            )
        )
    return registry


@pytest.mark.asyncio
async def test_timeout_and_failure_do_not_cancel_siblings() -> None:
    registry = _registry(claude=EchoBackend(), gemini=SlowBackend(), gpt=EchoBackend(), grok=FailingBackend())
    events = []
    dispatcher = BackendDispatcher(registry, observer=events.append)

    responses = await dispatcher.dispatch(
        ["claude", "gemini", "gpt", "grok"], "Compare designs", timeout_seconds=0.05
    )

    assert [response.backend_id for response in responses] == ["claude", "gpt"]
    assert responses[0].content == "claude: Compare designs"
    statuses = {(event.backend_id, event.status) for event in events}
    assert ("gemini", BackendStatus.TIMED_OUT) in statuses
    assert ("grok", BackendStatus.FAILED) in statuses
    assert ("claude", BackendStatus.COMPLETED) in statuses


@pytest.mark.asyncio
async def test_all_failures_return_empty_list() -> None:
    dispatcher = BackendDispatcher(_registry(a=FailingBackend(), b=SlowBackend()))

    responses = await dispatcher.dispatch(["a", "b"], "hello", timeout_seconds=0.05)

    assert responses == []


@pytest.mark.asyncio
async def test_unknown_backend_is_skipped() -> None:
    events = []
    dispatcher = BackendDispatcher(_registry(claude=EchoBackend()))

    responses = await dispatcher.dispatch(["nope", "claude"], "hi", observer=events.append)

    assert [response.backend_id for response in responses] == ["claude"]
    assert events[0].backend_id == "nope"
    assert events[0].status is BackendStatus.FAILED


@pytest.mark.asyncio
async def test_response_cost_uses_backend_pricing() -> None:
    dispatcher = BackendDispatcher(_registry(claude=EchoBackend()))

    (response,) = await dispatcher.dispatch(["claude"], "hi")

    assert response.usage.total_tokens == 15
    assert response.cost == pytest.approx(0.02)
    assert response.latency_ms >= 0.0
    assert response.confidence == 0.85


@pytest.mark.asyncio
async def test_history_is_trimmed_per_backend_and_context_injected() -> None:
    backend = EchoBackend()
    assembler = ContextAssembler(RelevanceScorer(), None, token_limits={"claude": 100})
    dispatcher = BackendDispatcher(_registry(claude=backend), assembler=assembler)
    history = [Message(role="user", content=str(idx) * 80) for idx in range(3)]
    bundle = select_within_budget(
        [ScoredItem(item=KnowledgeItem(item_id="n", title="Notes", text="text"), score=3.0, token_cost=1)],
        45,
    )

    await dispatcher.dispatch(["claude"], "latest question", history, bundle)

    messages, context = backend.calls[0]
    assert [message.content[0] for message in messages[:-1]] == ["1", "2"]
    assert messages[-1].content == "latest question"
    assert "**Notes**" in context


@pytest.mark.asyncio
async def test_failing_observer_does_not_break_dispatch() -> None:
    def _observer(event: object) -> None:
        raise ValueError("observer bug")

    dispatcher = BackendDispatcher(_registry(claude=EchoBackend()), observer=_observer)

    responses = await dispatcher.dispatch(["claude"], "hi")

    assert len(responses) == 1
