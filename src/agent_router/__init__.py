"""Agent Router package."""

from .config import RouterConfig
from .errors import IntegrityViolationError, RouterError, ServiceUnavailableError

__all__ = ["IntegrityViolationError", "RouterConfig", "RouterError", "ServiceUnavailableError"]
