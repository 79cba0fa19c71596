import asyncio
import time

import structlog

from turnstile.core.service import AdmissionService

logger = structlog.get_logger(__name__)


class CleanupJob:
    """
    Periodically removes expired rate limit records.

    Runs on its own asyncio task, independent of the request path. A
    failed run is logged and the loop keeps going; overlapping runs are
    skipped rather than queued.
    """

    def __init__(
        self,
        service: AdmissionService,
        interval_ms: int = 300_000,
        initial_delay_ms: int = 10_000,
    ) -> None:
        self._service = service
        self._interval = interval_ms / 1000
        self._initial_delay = initial_delay_ms / 1000
        self._task: asyncio.Task | None = None
        self._shutdown_event = asyncio.Event()
        self._in_progress = False

    @property
    def interval_ms(self) -> int:
        return round(self._interval * 1000)

    async def set_interval(self, interval_ms: int) -> None:
        """Change the period. A running loop is restarted to pick it up."""
        self._interval = interval_ms / 1000
        if self.is_running():
            await self.stop()
            self.start()

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running():
            logger.debug("rate_limit_cleanup_already_running")
            return
        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("rate_limit_cleanup_started", interval_ms=self.interval_ms)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._shutdown_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("rate_limit_cleanup_stopped")

    async def run_now(self) -> int:
        if self._in_progress:
            logger.debug("rate_limit_cleanup_skipped", reason="in_progress")
            return 0

        self._in_progress = True
        started = time.perf_counter()
        try:
            removed = await self._service.cleanup()
        except Exception:
            logger.exception("rate_limit_cleanup_error")
            return 0
        finally:
            self._in_progress = False

        logger.info(
            "rate_limit_cleanup_complete",
            removed=removed,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return removed

    async def _loop(self) -> None:
        delay = self._initial_delay
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            if self._shutdown_event.is_set():
                break
            await self.run_now()
            delay = self._interval
