"""Backend contracts and LangChain chat-model adapters."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from agent_router.obs.tracing import estimate_tokens
from agent_router.types import Message, TokenUsage


@dataclass(slots=True)
class BackendReply:
    text: str
    usage: TokenUsage


class AgentBackend(Protocol):
    """One backend family. Every registered backend is called the same way."""

    async def complete(
        self,
        backend_id: str,
        system_prompt: str,
        messages: Sequence[Message],
        context: str,
    ) -> BackendReply:
        """Answer the last user message given history and injected context."""


class PromptBackend(Protocol):
    """Single-prompt completion, used for classification and synthesis."""

    async def infer(self, prompt: str) -> str:
        """Return the raw completion text for `prompt`."""


def to_langchain_messages(
    system_prompt: str,
    messages: Sequence[Message],
    context: str = "",
) -> list[BaseMessage]:
    system = "\n\n".join(part for part in (system_prompt.strip(), context.strip()) if part)
    converted: list[BaseMessage] = [SystemMessage(content=system)] if system else []
    for message in messages:
        if message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        elif message.role == "system":
            converted.append(SystemMessage(content=message.content))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


def message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return " ".join(parts).strip()
    return str(content)


def _usage_from(message: Any, prompt_text: str, reply_text: str) -> TokenUsage:
    metadata = getattr(message, "usage_metadata", None)
    if metadata:
        return TokenUsage(
            input_tokens=int(metadata.get("input_tokens", 0)),
            output_tokens=int(metadata.get("output_tokens", 0)),
        )
    return TokenUsage(
        input_tokens=estimate_tokens(prompt_text),
        output_tokens=estimate_tokens(reply_text),
    )


class ChatModelBackend:
    """Adapts any LangChain chat model to the `AgentBackend` contract."""

    def __init__(self, llm: BaseChatModel) -> None:
        self.llm = llm

    async def complete(
        self,
        backend_id: str,
        system_prompt: str,
        messages: Sequence[Message],
        context: str,
    ) -> BackendReply:
        lc_messages = to_langchain_messages(system_prompt, messages, context)
        result = await self.llm.ainvoke(lc_messages)
        text = message_text(result)
        prompt_text = "\n".join(message_text(m) for m in lc_messages)
        return BackendReply(text=text, usage=_usage_from(result, prompt_text, text))


class ChatModelPromptBackend:
    """Adapts a LangChain chat model to the single-prompt `PromptBackend` contract."""

    def __init__(self, llm: BaseChatModel) -> None:
        self.llm = llm

    async def infer(self, prompt: str) -> str:
        result = await self.llm.ainvoke([HumanMessage(content=prompt)])
        return message_text(result)
