from enum import StrEnum

from fastapi import Request


class Tier(StrEnum):
    FREE = "free"
    PREMIUM = "premium"
    VIP = "vip"


DEFAULT_CEILINGS = {
    Tier.FREE: 5,
    Tier.PREMIUM: 50,
    Tier.VIP: 500,
}

DEFAULT_PREFIXES = {
    "vip_": Tier.VIP,
    "prem_": Tier.PREMIUM,
}


class TierLimits:
    """
    Per-request ceiling derived from the caller's tier.

    Pass an instance as the gate's `max_requests`. Only the ceiling
    varies by tier; the window stays the gate's own or the service
    default.

    The tier comes from `request.state.tier` when an auth layer set it,
    otherwise from the API key prefix. Unknown callers are FREE.

    Example:
        >>> app.add_middleware(RateLimitMiddleware, max_requests=TierLimits({Tier.FREE: 20}))
    """

    def __init__(
        self,
        ceilings: dict[Tier, int] | None = None,
        prefixes: dict[str, Tier] | None = None,
        header: str = "X-API-Key",
    ) -> None:
        self.ceilings = {**DEFAULT_CEILINGS, **(ceilings or {})}
        self.prefixes = prefixes if prefixes is not None else dict(DEFAULT_PREFIXES)
        self.header = header

    def __call__(self, request: Request) -> int:
        return self.ceilings[self.resolve_tier(request)]

    def resolve_tier(self, request: Request) -> Tier:
        tier = getattr(request.state, "tier", None)
        if tier:
            return Tier(tier)

        api_key = request.headers.get(self.header)
        if not api_key:
            return Tier.FREE

        for prefix, prefixed_tier in self.prefixes.items():
            if api_key.startswith(prefix):
                return prefixed_tier

        return Tier.FREE
