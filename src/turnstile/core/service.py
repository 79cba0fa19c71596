"""
Admission service.

Coordinates strategies, the cache tier and the durable store, and is
the programmatic API every gate talks to. One instance is built at
startup and handed to whoever needs it; there is no global instance.
"""

import math
import time
from collections.abc import Callable

import structlog

from turnstile.core.cache.base import RateLimitCache
from turnstile.core.errors import StoreError
from turnstile.core.models import LimitDefaults, LimitOptions, LimitStatus, StrategyType
from turnstile.core.storage.base import RateLimitStore
from turnstile.core.strategies.base import StrategyContext, StrategyOptions
from turnstile.core.strategies.registry import get_strategy
from turnstile.core.timing import now_ms

logger = structlog.get_logger(__name__)


class AdmissionService:
    """
    Public check / increment / clear API over one store and one cache.

    Keys are namespaced per strategy before they reach the store or the
    cache, so a record written by one algorithm is never interpreted by
    another.

    Store failures are handled fail-open: the request is admitted and
    the degradation is logged. An unavailable limiter must not turn into
    an outage of whatever it protects.

    Example:
        >>> service = AdmissionService(store=InMemoryStore(), cache=MemoryCache())
        >>> status = await service.increment_limit("user:42")
        >>> status.remaining
        99
    """

    def __init__(
        self,
        store: RateLimitStore,
        cache: RateLimitCache,
        defaults: LimitDefaults | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self._clock = clock
        self._defaults = LimitDefaults()
        if defaults is not None:
            self.set_defaults(
                window_ms=defaults.window_ms,
                max_requests=defaults.max_requests,
                strategy=defaults.strategy,
            )

    # =========================================================================
    # Checks
    # =========================================================================

    async def check_limit(
        self,
        key: str,
        options: LimitOptions | None = None,
        increment: bool = False,
    ) -> LimitStatus:
        """Status for `key`. Writes only when `increment` is True."""
        options = options or LimitOptions()
        strategy_type = self._resolve_strategy(options.strategy)
        max_requests = self._resolve_positive("max_requests", options.max_requests)
        window_ms = self._resolve_positive("window_ms", options.window_ms)
        amount = options.amount if options.amount > 0 else 1

        current_ms = now_ms(self._clock())
        context = StrategyContext(
            store=self.store,
            cache=self.cache,
            now_ms=current_ms,
            user_id=options.user_id,
            tenant_id=options.tenant_id,
            ip_address=options.ip_address,
        )
        strategy_options = StrategyOptions(
            max_requests=max_requests,
            window_ms=window_ms,
            increment=increment,
            amount=amount,
        )

        try:
            return await get_strategy(strategy_type).check(
                self._namespaced(strategy_type, key), strategy_options, context
            )
        except StoreError as exc:
            logger.warning(
                "rate_limit_store_unavailable",
                key=key,
                strategy=strategy_type.value,
                increment=increment,
                error=exc.message,
                policy="fail_open",
            )
            return LimitStatus(
                limited=False,
                current=0,
                limit=max_requests,
                remaining=max_requests,
                reset_at=math.ceil((current_ms + window_ms) / 1000),
                retry_after=0,
            )

    async def increment_limit(self, key: str, options: LimitOptions | None = None) -> LimitStatus:
        return await self.check_limit(key, options, increment=True)

    async def get_limit_status(self, key: str, options: LimitOptions | None = None) -> LimitStatus:
        return await self.check_limit(key, options)

    async def is_limited(self, key: str, options: LimitOptions | None = None) -> bool:
        status = await self.check_limit(key, options)
        return status.limited

    async def get_remaining_requests(self, key: str, options: LimitOptions | None = None) -> int:
        status = await self.check_limit(key, options)
        return status.remaining

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def clear_limit(self, key: str, user_id: str | None = None) -> bool:
        """
        Forget everything recorded for `key`, under every strategy.

        Used for example after a successful challenge to forgive
        accumulated violations. Clearing an unknown key is not an error.

        Returns:
            True if the store held at least one record for the key.
        """
        existed = False
        for strategy_type in StrategyType:
            namespaced = self._namespaced(strategy_type, key)
            await self.cache.delete(namespaced)
            try:
                existed = await self.store.clear(namespaced, user_id) or existed
            except StoreError as exc:
                logger.warning(
                    "rate_limit_clear_failed",
                    key=key,
                    strategy=strategy_type.value,
                    error=exc.message,
                )
        return existed

    async def cleanup(self) -> int:
        """Remove expired records from the store. Returns how many went."""
        try:
            removed = await self.store.cleanup(now_ms(self._clock()))
        except StoreError as exc:
            logger.warning("rate_limit_cleanup_failed", error=exc.message)
            return 0
        logger.debug("rate_limit_cleanup_complete", removed=removed)
        return removed

    # =========================================================================
    # Defaults
    # =========================================================================

    def get_defaults(self) -> LimitDefaults:
        return LimitDefaults(
            window_ms=self._defaults.window_ms,
            max_requests=self._defaults.max_requests,
            strategy=self._defaults.strategy,
        )

    def set_defaults(
        self,
        window_ms: int | None = None,
        max_requests: int | None = None,
        strategy: StrategyType | str | None = None,
    ) -> LimitDefaults:
        """
        Update the defaults used when a call leaves an option unset.

        Invalid values are ignored and the previous value is kept: a
        non-positive number, or a strategy name that is not one of the
        three known ones. This never raises.
        """
        if window_ms is not None and window_ms > 0:
            self._defaults.window_ms = int(window_ms)
        elif window_ms is not None:
            logger.debug("rate_limit_default_ignored", field="window_ms", value=window_ms)

        if max_requests is not None and max_requests > 0:
            self._defaults.max_requests = int(max_requests)
        elif max_requests is not None:
            logger.debug("rate_limit_default_ignored", field="max_requests", value=max_requests)

        if strategy is not None:
            try:
                self._defaults.strategy = StrategyType(strategy)
            except ValueError:
                logger.debug("rate_limit_default_ignored", field="strategy", value=strategy)

        return self.get_defaults()

    def describe(self) -> dict:
        return {
            **self._defaults.as_dict(),
            "store": self.store.name,
            "cache": self.cache.name,
            "cache_available": self.cache.is_available(),
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _namespaced(strategy: StrategyType, key: str) -> str:
        return f"{strategy.value}:{key}"

    def _resolve_strategy(self, value: StrategyType | str | None) -> StrategyType:
        if value is None:
            return self._defaults.strategy
        try:
            return StrategyType(value)
        except ValueError:
            logger.warning(
                "rate_limit_invalid_option",
                field="strategy",
                value=value,
                fallback=self._defaults.strategy.value,
            )
            return self._defaults.strategy

    def _resolve_positive(self, field: str, value: int | None) -> int:
        default = getattr(self._defaults, field)
        if value is None:
            return default
        if value <= 0:
            logger.warning("rate_limit_invalid_option", field=field, value=value, fallback=default)
            return default
        return int(value)
