"""Exception types raised inside the engine.

Only store failures ever leave a storage adapter. Cache failures are
converted to misses where they happen and never reach a strategy.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class TurnstileError(Exception):
    """Base error for engine failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured context for logs.
    """

    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)


class ConfigurationError(TurnstileError):
    """Raised when settings cannot be turned into a working engine."""


class CacheError(TurnstileError):
    """Raised by cache adapters; callers treat it as a cache miss."""


class StoreError(TurnstileError):
    """Raised when the durable store cannot serve a request."""


class StoreUnavailableError(StoreError):
    """The store could not be reached or the statement failed."""
