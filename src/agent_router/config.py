"""Configuration models for the agent router."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class RelevanceWeights(BaseModel):
    """Weights used by the relevance scorer. Hand-tuned, kept configurable."""

    explicit_mention: float = Field(default=10.0, ge=0.0)
    file_path_mention: float = Field(default=8.0, ge=0.0)
    repository_mention: float = Field(default=5.0, ge=0.0)
    keyword_match: float = Field(default=3.0, ge=0.0)
    tag_match: float = Field(default=2.0, ge=0.0)
    recent_access: float = Field(default=1.5, ge=0.0)
    recent_window_hours: float = Field(default=24.0, gt=0.0)


class BudgetConfig(BaseModel):
    """Token budget split between conversation, injected context and response."""

    conversation_fraction: float = Field(default=0.40, ge=0.0, le=1.0)
    context_fraction: float = Field(default=0.45, ge=0.0, le=1.0)
    response_fraction: float = Field(default=0.15, ge=0.0, le=1.0)
    default_token_limit: int = Field(default=16_000, ge=1)
    candidate_limit: int = Field(default=50, ge=1)

    @model_validator(mode="after")
    def _fractions_fit(self) -> "BudgetConfig":
        total = self.conversation_fraction + self.context_fraction + self.response_fraction
        if total > 1.0 + 1e-9:
            raise ValueError(f"budget fractions must sum to <= 1.0, got {total:.2f}")
        return self


class TriageConfig(BaseModel):
    """Backend roles and estimates used by the routing decision table."""

    local_backend: str = "muse-local"
    realtime_backend: str = "perplexity"
    reasoning_backend: str = "claude"
    code_backend: str = "gpt"
    fanout_backends: list[str] = Field(
        default_factory=lambda: ["claude", "gpt", "gemini", "perplexity"],
        min_length=1,
    )
    simple_max_chars: int = Field(default=200, ge=1)
    complex_min_chars: int = Field(default=500, ge=1)
    base_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    max_confidence: float = Field(default=0.99, ge=0.0, le=1.0)
    latency_estimates_ms: dict[str, int] = Field(
        default_factory=lambda: {"local-only": 200, "hybrid": 2500, "full-fanout": 5000}
    )
    default_backend_cost: float = Field(default=0.015, ge=0.0)


class DispatchConfig(BaseModel):
    """Per-backend call limits for the dispatcher."""

    timeout_seconds: float = Field(default=30.0, gt=0.0)


class SynthesisConfig(BaseModel):
    max_insights: int = Field(default=5, ge=1)
    consensus_scale: float = Field(default=1.5, gt=0.0)
    fallback_consensus: float = Field(default=0.5, ge=0.0, le=1.0)
    min_word_length: int = Field(default=4, ge=1)


class LedgerConfig(BaseModel):
    """Base impact scores per contribution kind and bonus limits."""

    base_scores: dict[str, float] = Field(
        default_factory=lambda: {
            "human_decision": 8.0,
            "human_approval": 7.0,
            "human_input": 4.0,
            "agent_generation": 5.0,
            "agent_synthesis": 7.0,
            "routing_decision": 3.0,
        }
    )
    complexity_bonus: dict[str, float] = Field(
        default_factory=lambda: {"simple": 0.0, "moderate": 1.0, "complex": 2.0}
    )
    per_backend_bonus: float = Field(default=0.5, ge=0.0)
    max_bonus: float = Field(default=2.0, ge=0.0)
    max_impact: float = Field(default=10.0, gt=0.0)


class BackendConfig(BaseModel):
    """Declarative backend entry used to populate the registry at startup."""

    backend_id: str = Field(min_length=1)
    display_name: str = ""
    provider: Literal["ollama", "openai", "openai-compatible"] = "openai"
    model: str = Field(min_length=1)
    base_url: str | None = None
    api_key_env: str | None = "OPENAI_API_KEY"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    token_limit: int = Field(default=16_000, ge=1)
    input_per_1k: float = Field(default=0.005, ge=0.0)
    output_per_1k: float = Field(default=0.015, ge=0.0)
    estimated_cost_per_call: float = Field(default=0.015, ge=0.0)
    confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    local: bool = False
    system_prompt: str = ""


def default_backends() -> list[BackendConfig]:
    return [
        BackendConfig(
            backend_id="muse-local",
            display_name="Digital Muse",
            provider="ollama",
            model="llama3.1",
            api_key_env=None,
            token_limit=8_000,
            input_per_1k=0.0,
            output_per_1k=0.0,
            estimated_cost_per_call=0.0,
            local=True,
            system_prompt=(
                "You are Digital Muse, the local assistant of the team. Answer "
                "straightforward questions clearly and concisely."
            ),
        ),
        BackendConfig(
            backend_id="claude",
            display_name="Claude",
            provider="openai-compatible",
            model="claude-sonnet-4-5",
            base_url="https://api.anthropic.com/v1/",
            api_key_env="ANTHROPIC_API_KEY",
            token_limit=200_000,
            input_per_1k=0.003,
            output_per_1k=0.015,
            system_prompt="You are Claude, the team's strategist. Reason carefully and weigh trade-offs.",
        ),
        BackendConfig(
            backend_id="gpt",
            display_name="GPT",
            provider="openai",
            model="gpt-4o",
            token_limit=128_000,
            system_prompt="You are GPT, the team's engineer. Favor concrete, working solutions.",
        ),
        BackendConfig(
            backend_id="gemini",
            display_name="Gemini",
            provider="openai-compatible",
            model="gemini-1.5-pro",
            base_url="https://generativelanguage.googleapis.com/v1beta/openai/",
            api_key_env="GOOGLE_API_KEY",
            token_limit=1_000_000,
            input_per_1k=0.00125,
            output_per_1k=0.005,
            system_prompt="You are Gemini, the team's analyst. Bring breadth and structure.",
        ),
        BackendConfig(
            backend_id="perplexity",
            display_name="Perplexity",
            provider="openai-compatible",
            model="sonar",
            base_url="https://api.perplexity.ai",
            api_key_env="PERPLEXITY_API_KEY",
            token_limit=16_000,
            input_per_1k=0.001,
            output_per_1k=0.001,
            system_prompt="You are Perplexity, the team's researcher. Ground answers in current sources.",
        ),
    ]


class RouterConfig(BaseModel):
    """Top-level configuration tying every stage together."""

    relevance: RelevanceWeights = Field(default_factory=RelevanceWeights)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    triage: TriageConfig = Field(default_factory=TriageConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    backends: list[BackendConfig] = Field(default_factory=default_backends)
    classifier_backend: str | None = "muse-local"
    synthesis_backend: str | None = "muse-local"

    @classmethod
    def from_file(cls, path: str | Path) -> "RouterConfig":
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))
