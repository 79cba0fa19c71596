"""
Data types shared by strategies, stores and caches.

Timestamps inside records are epoch milliseconds. The public
`LimitStatus` uses whole seconds, since that is what ends up in
response headers.
"""

from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any


class StrategyType(StrEnum):
    FIXED_WINDOW = "fixed-window"
    SLIDING_WINDOW = "sliding-window"
    TOKEN_BUCKET = "token-bucket"


@dataclass(frozen=True)
class LimitStatus:
    """
    Result of an admission check.

    This is the only thing a gate ever needs from the engine:
    whether to reject, and what to put in the rate limit headers.

    Attributes:
        limited: True when the request must be rejected.
        current: Units consumed in the current accounting interval.
        limit: Ceiling for the interval.
        remaining: max(0, limit - current).
        reset_at: Unix timestamp (seconds) when capacity is restored.
        retry_after: Seconds to wait before retrying, 0 when not limited.

    Example headers this maps to:
        RateLimit-Limit: {limit}
        RateLimit-Remaining: {remaining}
        RateLimit-Reset: {reset_at}
        Retry-After: {retry_after}  (only when limited)
    """

    limited: bool
    current: int
    limit: int
    remaining: int
    reset_at: int
    retry_after: int = 0

    @property
    def is_allowed(self) -> bool:
        """Convenience property to check if request should proceed."""
        return not self.limited

    def as_headers(self) -> dict[str, str]:
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_at),
        }
        if self.limited:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass
class StoredRecord:
    """
    Authoritative per-key counting state.

    Field meaning depends on `strategy`:
    - fixed/sliding window: `window_start`/`window_end` bound the current
      aligned window and `previous_count` holds the count of the window
      right before it.
    - token bucket: `window_start` is the last refill time,
      `window_end` is `last_refill + window_ms`, and `count` is the
      running total of consumed units.

    `increment` only consumes when the units fit: `applied` tells the
    caller whether it did.
    """

    key: str
    count: int
    max_requests: int
    window_ms: int
    window_start: int
    window_end: int
    strategy: StrategyType
    previous_count: int = 0
    tokens_remaining: float | None = None
    last_refill: int | None = None
    expires_at: int = 0
    user_id: str | None = None
    tenant_id: str | None = None
    ip_address: str | None = None
    created_at: int = 0
    updated_at: int = 0
    # False when increment declined to consume; the record is then the
    # unchanged stored state
    applied: bool = True


@dataclass
class CachedRecord:
    """Possibly stale projection of a StoredRecord held by a cache."""

    count: int
    max_requests: int
    window_start: int
    window_end: int
    strategy: StrategyType
    previous_count: int = 0
    tokens_remaining: float | None = None
    last_refill: int | None = None

    @classmethod
    def from_record(cls, record: StoredRecord) -> "CachedRecord":
        return cls(
            count=record.count,
            max_requests=record.max_requests,
            window_start=record.window_start,
            window_end=record.window_end,
            strategy=record.strategy,
            previous_count=record.previous_count,
            tokens_remaining=record.tokens_remaining,
            last_refill=record.last_refill,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["strategy"] = self.strategy.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CachedRecord":
        return cls(
            count=int(data["count"]),
            max_requests=int(data["max_requests"]),
            window_start=int(data["window_start"]),
            window_end=int(data["window_end"]),
            strategy=StrategyType(data["strategy"]),
            previous_count=int(data.get("previous_count") or 0),
            tokens_remaining=data.get("tokens_remaining"),
            last_refill=data.get("last_refill"),
        )


@dataclass(frozen=True)
class IncrementOptions:
    """Arguments of the single store write path."""

    max_requests: int
    window_ms: int
    strategy: StrategyType
    now_ms: int
    amount: int = 1
    user_id: str | None = None
    tenant_id: str | None = None
    ip_address: str | None = None


@dataclass(frozen=True)
class LimitOptions:
    """
    Per-call options accepted by the admission service.

    Anything left as None resolves to the service defaults.
    """

    max_requests: int | None = None
    window_ms: int | None = None
    strategy: StrategyType | str | None = None
    amount: int = 1
    user_id: str | None = None
    tenant_id: str | None = None
    ip_address: str | None = None


@dataclass
class LimitDefaults:
    window_ms: int = 60_000
    max_requests: int = 100
    strategy: StrategyType = StrategyType.SLIDING_WINDOW

    def as_dict(self) -> dict[str, Any]:
        return {
            "window_ms": self.window_ms,
            "max_requests": self.max_requests,
            "strategy": self.strategy.value,
        }

