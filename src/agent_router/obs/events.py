"""Progress events emitted while backends are processing."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from agent_router.types import utcnow

logger = logging.getLogger("agent_router.obs.events")


class BackendStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    backend_id: str
    status: BackendStatus
    detail: str = ""
    timestamp: datetime = field(default_factory=utcnow)


ProgressObserver = Callable[[ProgressEvent], None]


def notify(observer: ProgressObserver | None, event: ProgressEvent) -> None:
    """Deliver an event without letting the observer affect the caller."""
    if observer is None:
        return
    try:
        observer(event)
    except Exception:
        logger.exception("Progress observer failed for %s (%s)", event.backend_id, event.status.value)
