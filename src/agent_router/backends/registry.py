"""Backend registry built on Pydantic v2 models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agent_router.obs.tracing import CostModel


class BackendSpec(BaseModel):
    """Declarative backend specification for registration and dispatch."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    backend_id: str = Field(min_length=1)
    display_name: str = ""
    handle: Any
    system_prompt: str = ""
    token_limit: int = Field(default=16_000, ge=1)
    cost_model: CostModel = Field(default_factory=CostModel)
    estimated_cost_per_call: float = Field(default=0.015, ge=0.0)
    confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    local: bool = False
    tags: list[str] = Field(default_factory=list)

    @property
    def name(self) -> str:
        return self.display_name or self.backend_id


class BackendRegistry:
    """Maps backend identifiers to callable handles sharing one signature."""

    def __init__(self) -> None:
        self._backends: dict[str, BackendSpec] = {}

    def register(self, spec: BackendSpec) -> None:
        if spec.backend_id in self._backends:
            raise ValueError(f"Backend already registered: {spec.backend_id}")
        self._backends[spec.backend_id] = spec

    def get(self, backend_id: str) -> BackendSpec:
        spec = self._backends.get(backend_id)
        if spec is None:
            raise KeyError(f"Unknown backend: {backend_id}")
        return spec

    def __contains__(self, backend_id: object) -> bool:
        return backend_id in self._backends

    def __len__(self) -> int:
        return len(self._backends)

    def ids(self) -> list[str]:
        return list(self._backends)

    def specs(self) -> list[BackendSpec]:
        return list(self._backends.values())

    def token_limits(self) -> dict[str, int]:
        return {spec.backend_id: spec.token_limit for spec in self._backends.values()}

    def cost_table(self) -> dict[str, float]:
        return {spec.backend_id: spec.estimated_cost_per_call for spec in self._backends.values()}
