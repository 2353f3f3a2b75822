"""Concurrent fan-out of one query to several agent backends."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from agent_router.backends.registry import BackendRegistry, BackendSpec
from agent_router.config import DispatchConfig
from agent_router.context.assembler import ContextAssembler, format_context
from agent_router.obs.events import BackendStatus, ProgressEvent, ProgressObserver, notify
from agent_router.obs.tracing import Timer
from agent_router.types import AgentResponse, ContextBundle, Message

logger = logging.getLogger("agent_router.dispatch")


class BackendDispatcher:
    """Runs one backend call per identifier inside a task group.

    Every call carries its own timeout. A call that raises or times out is
    logged and left out of the result; it never cancels its siblings. The
    result keeps the requested order and may be empty.
    """

    def __init__(
        self,
        registry: BackendRegistry,
        *,
        config: DispatchConfig | None = None,
        assembler: ContextAssembler | None = None,
        observer: ProgressObserver | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or DispatchConfig()
        self.assembler = assembler
        self.observer = observer

    async def dispatch(
        self,
        backend_ids: Sequence[str],
        query: str,
        history: Sequence[Message] = (),
        bundle: ContextBundle | None = None,
        *,
        timeout_seconds: float | None = None,
        observer: ProgressObserver | None = None,
    ) -> list[AgentResponse]:
        observer = observer or self.observer
        timeout = timeout_seconds if timeout_seconds is not None else self.config.timeout_seconds
        context_text = format_context(bundle) if bundle is not None else ""

        specs: list[BackendSpec] = []
        for backend_id in dict.fromkeys(backend_ids):
            if backend_id not in self.registry:
                logger.warning("Unknown backend %s, skipping", backend_id)
                notify(observer, ProgressEvent(backend_id, BackendStatus.FAILED, "unknown backend"))
                continue
            specs.append(self.registry.get(backend_id))

        if not specs:
            return []

        async with asyncio.TaskGroup() as group:
            tasks = [
                group.create_task(
                    self._call(spec, query, history, context_text, timeout, observer),
                    name=f"dispatch:{spec.backend_id}",
                )
                for spec in specs
            ]

        responses = [task.result() for task in tasks]
        succeeded = [response for response in responses if response is not None]
        logger.info("Dispatch finished: %d/%d backends succeeded", len(succeeded), len(specs))
        return succeeded

    async def _call(
        self,
        spec: BackendSpec,
        query: str,
        history: Sequence[Message],
        context_text: str,
        timeout: float,
        observer: ProgressObserver | None,
    ) -> AgentResponse | None:
        notify(observer, ProgressEvent(spec.backend_id, BackendStatus.PROCESSING))
        messages = self._messages_for(spec, query, history)
        try:
            with Timer() as timer:
                async with asyncio.timeout(timeout):
                    reply = await spec.handle.complete(
                        spec.backend_id, spec.system_prompt, messages, context_text
                    )
        except TimeoutError:
            logger.warning("%s timed out after %.1fs", spec.backend_id, timeout)
            notify(observer, ProgressEvent(spec.backend_id, BackendStatus.TIMED_OUT, f"{timeout:.1f}s"))
            return None
        except Exception as exc:
            logger.warning("%s failed: %s", spec.backend_id, exc)
            notify(observer, ProgressEvent(spec.backend_id, BackendStatus.FAILED, str(exc)[:200]))
            return None

        notify(observer, ProgressEvent(spec.backend_id, BackendStatus.COMPLETED))
        return AgentResponse(
            backend_id=spec.backend_id,
            content=reply.text,
            confidence=spec.confidence,
            usage=reply.usage,
            cost=spec.cost_model.cost_of(reply.usage),
            latency_ms=timer.elapsed_ms,
        )

    def _messages_for(
        self,
        spec: BackendSpec,
        query: str,
        history: Sequence[Message],
    ) -> list[Message]:
        if self.assembler is not None:
            trimmed = self.assembler.trim_history(history, spec.backend_id)
        else:
            trimmed = list(history)
        return [*trimmed, Message(role="user", content=query)]
