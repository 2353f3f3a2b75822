"""Typed failures surfaced by the router."""

from __future__ import annotations

from enum import Enum


class FailureCategory(str, Enum):
    DEGRADED_INPUT = "degraded-input"
    PARTIAL_BACKEND_FAILURE = "partial-backend-failure"
    TOTAL_BACKEND_FAILURE = "total-backend-failure"
    INTEGRITY_VIOLATION = "integrity-violation"


class RouterError(Exception):
    """Base class for every failure that leaves the orchestration core."""

    category: FailureCategory = FailureCategory.DEGRADED_INPUT

    def __init__(self, message: str, *, category: FailureCategory | None = None) -> None:
        super().__init__(message)
        if category is not None:
            self.category = category


class ServiceUnavailableError(RouterError):
    """Every dispatched backend failed; no answer can be produced."""

    category = FailureCategory.TOTAL_BACKEND_FAILURE

    def __init__(
        self,
        message: str,
        *,
        failed_backends: list[str] | None = None,
        ledger_entry_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.failed_backends = list(failed_backends or [])
        self.ledger_entry_id = ledger_entry_id


class IntegrityViolationError(RouterError):
    """A ledger entry's stored payload no longer matches its hash."""

    category = FailureCategory.INTEGRITY_VIOLATION

    def __init__(self, entry_id: str, stored_hash: str, computed_hash: str) -> None:
        super().__init__(
            f"Ledger entry {entry_id} failed verification: "
            f"stored={stored_hash} computed={computed_hash}"
        )
        self.entry_id = entry_id
        self.stored_hash = stored_hash
        self.computed_hash = computed_hash
