"""Builds the backend registry from configuration."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from agent_router.backends.base import ChatModelBackend, ChatModelPromptBackend
from agent_router.backends.registry import BackendRegistry, BackendSpec
from agent_router.config import BackendConfig
from agent_router.obs.tracing import CostModel

logger = logging.getLogger("agent_router.backends.factory")


def create_chat_model(config: BackendConfig, env: Mapping[str, str] | None = None) -> Any:
    """Instantiate the LangChain chat model for one backend entry.

    Returns None when the backend needs an API key that is not set.
    """
    env = os.environ if env is None else env

    if config.provider == "ollama":
        from langchain_community.chat_models import ChatOllama

        return ChatOllama(
            model=config.model,
            base_url=env.get("OLLAMA_HOST", "http://localhost:11434"),
            temperature=config.temperature,
        )

    api_key = env.get(config.api_key_env) if config.api_key_env else None
    if config.api_key_env and not api_key:
        return None

    from langchain_openai import ChatOpenAI

    kwargs: dict[str, Any] = {"model": config.model, "temperature": config.temperature}
    if api_key:
        kwargs["api_key"] = api_key
    if config.base_url:
        kwargs["base_url"] = config.base_url
    return ChatOpenAI(**kwargs)


def spec_from_config(config: BackendConfig, handle: Any) -> BackendSpec:
    return BackendSpec(
        backend_id=config.backend_id,
        display_name=config.display_name,
        handle=handle,
        system_prompt=config.system_prompt,
        token_limit=config.token_limit,
        cost_model=CostModel(input_per_1k=config.input_per_1k, output_per_1k=config.output_per_1k),
        estimated_cost_per_call=config.estimated_cost_per_call,
        confidence=config.confidence,
        local=config.local,
        tags=["local" if config.local else "cloud", config.provider],
    )


def build_registry(
    configs: list[BackendConfig],
    *,
    env: Mapping[str, str] | None = None,
) -> tuple[BackendRegistry, dict[str, Any]]:
    """Register every configured backend that can be constructed.

    Returns the registry plus the underlying chat models keyed by backend id,
    so the same local model can also serve classification and synthesis.
    """
    registry = BackendRegistry()
    models: dict[str, Any] = {}
    for config in configs:
        llm = create_chat_model(config, env)
        if llm is None:
            logger.info("%s API key not provided, backend unavailable", config.backend_id)
            continue
        registry.register(spec_from_config(config, ChatModelBackend(llm)))
        models[config.backend_id] = llm
    logger.info("Backend registry populated: %s", ", ".join(registry.ids()) or "<empty>")
    return registry, models


def prompt_backend_for(models: Mapping[str, Any], backend_id: str | None) -> ChatModelPromptBackend | None:
    if backend_id is None or backend_id not in models:
        return None
    return ChatModelPromptBackend(models[backend_id])
