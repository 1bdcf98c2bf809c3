import asyncio
import time

import structlog

from usagewatch.errors import AuthExpiredError
from usagewatch.events import USAGE_ERROR, USAGE_UPDATED, EventBus
from usagewatch.metrics import MetricsUpdater
from usagewatch.models import UsageSnapshot
from usagewatch.parser import parse
from usagewatch.provider.base import UsageProvider
from usagewatch.session import SessionManager
from usagewatch.store import SettingsStore, SnapshotCache

logger = structlog.get_logger()

_DEFAULT_MAX_ATTEMPTS = 3
_DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
# poll faster once the session window passes the high-water mark
_DEFAULT_FAST_INTERVAL_SECONDS = 30.0
_DEFAULT_HIGH_WATER_PERCENT = 80.0


class UsagePoller:
    """
    UsagePoller drives the fetch -> parse -> publish cycle on an
    adaptive schedule.

    At most one cycle is in flight at any time: refresh() joins a
    running cycle instead of starting a second one, and the timer is
    re-armed only after a cycle, retries included, has completed.
    stop() cancels the timer but lets an in-flight cycle finish; that
    cycle's result is then discarded.
    """

    def __init__(
        self,
        provider: "UsageProvider",
        session: "SessionManager",
        events: "EventBus",
        cache: "SnapshotCache",
        settings: "SettingsStore",
        metrics_updater: "MetricsUpdater",
        max_attempts: "int" = _DEFAULT_MAX_ATTEMPTS,
        retry_base_delay_seconds: "float" = _DEFAULT_RETRY_BASE_DELAY_SECONDS,
        fast_interval_seconds: "float" = _DEFAULT_FAST_INTERVAL_SECONDS,
        high_water_percent: "float" = _DEFAULT_HIGH_WATER_PERCENT,
    ) -> "None":
        self._provider = provider
        self._session = session
        self._events = events
        self._cache = cache
        self._settings = settings
        self._metrics = metrics_updater
        self._max_attempts = max(1, max_attempts)
        self._retry_base_delay = retry_base_delay_seconds
        self._fast_interval = fast_interval_seconds
        self._high_water = high_water_percent

        self._task: "asyncio.Task | None" = None
        self._inflight: "asyncio.Task | None" = None
        self._inflight_generation: "int" = 0
        # bumped by stop(); cycles started under an older value
        # do not publish
        self._generation: "int" = 0
        self._interval: "float" = settings.poll_interval()
        self._last_snapshot: "UsageSnapshot | None" = None
        self._consecutive_failures: "int" = 0

    @property
    def is_running(self) -> "bool":
        return self._task is not None and not self._task.done()

    @property
    def interval(self) -> "float":
        return self._interval

    @property
    def consecutive_failures(self) -> "int":
        return self._consecutive_failures

    @property
    def last_snapshot(self) -> "UsageSnapshot | None":
        return self._last_snapshot or self._cache.get()

    def start(self) -> "None":
        """
        starts polling with an immediate fetch. No-op when already
        running. Must be called from within the event loop.
        """
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("poller_started", interval=self._interval)

    def stop(self) -> "None":
        """
        cancels the pending timer. A cycle that is already fetching
        runs to completion but does not publish.
        """
        self._generation += 1
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("poller_stopped")

    async def close(self) -> "None":
        """
        stops polling and waits for an in-flight cycle to drain.
        """
        self.stop()
        if self._inflight is not None and not self._inflight.done():
            await asyncio.shield(self._inflight)

    async def refresh(self) -> "UsageSnapshot | None":
        """
        runs one fetch cycle outside the schedule, or joins the one
        already in flight. Returns the published snapshot, if any.
        """
        while True:
            task = self._inflight
            if task is None or task.done():
                generation = self._generation
                task = asyncio.create_task(self._fetch_cycle(generation))
                self._inflight = task
                self._inflight_generation = generation
                return await asyncio.shield(task)

            if self._inflight_generation == self._generation:
                return await asyncio.shield(task)

            # a cycle from before the last stop() is still draining;
            # its result is discarded, so wait and start a fresh one
            await asyncio.shield(task)

    async def _run(self) -> "None":
        while True:
            await self.refresh()
            logger.debug("poll_scheduled", interval=self._interval)
            await asyncio.sleep(self._interval)

    def _is_current(self, generation: "int") -> "bool":
        return generation == self._generation

    def _compute_interval(self) -> "float":
        base = self._settings.poll_interval()
        snapshot = self._last_snapshot
        if snapshot is not None and snapshot.session_usage.percent_used > self._high_water:
            return min(base, self._fast_interval)
        return base

    async def _fetch_cycle(self, generation: "int") -> "UsageSnapshot | None":
        cycle_start = time.monotonic()
        try:
            return await self._fetch_with_retries(generation)
        except Exception as e:
            # keeps the schedule alive; the next cycle starts on time
            logger.exception("usage_cycle_error")
            self._metrics.inc_fetch_error("internal")
            self._consecutive_failures += 1
            if self._is_current(generation):
                self._events.emit(USAGE_ERROR, str(e) or "Failed to fetch usage")
            return None
        finally:
            self._metrics.observe_fetch_duration(time.monotonic() - cycle_start)
            if self._is_current(generation):
                self._interval = self._compute_interval()

    async def _fetch_with_retries(self, generation: "int") -> "UsageSnapshot | None":
        credential = self._session.get_credential()
        if credential is None:
            logger.info("usage_fetch_skipped_unauthenticated")
            if self._is_current(generation):
                self._events.emit(USAGE_ERROR, "Not authenticated")
            return None

        attempt = 0
        while True:
            attempt += 1
            try:
                documents = await self._provider.fetch_usage_documents(credential.value)
                break
            except AuthExpiredError:
                self._metrics.inc_fetch_error("auth")
                if not self._is_current(generation):
                    logger.info("usage_result_discarded", reason="stopped")
                    return None
                logger.warning("usage_auth_expired")
                self.stop()
                self._session.handle_expired()
                return None
            except Exception as e:
                self._metrics.inc_fetch_error("transient")
                logger.warning(
                    "usage_fetch_failed",
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    error=str(e),
                )
                if attempt >= self._max_attempts:
                    return self._handle_exhausted(generation, e)

                await asyncio.sleep(self._retry_base_delay * 2**attempt)
                if not self._is_current(generation):
                    logger.info("usage_result_discarded", reason="stopped")
                    return None

        snapshot = parse(documents.bootstrap, documents.rate_limits)
        if not self._is_current(generation):
            logger.info("usage_result_discarded", reason="stopped")
            return None

        self._consecutive_failures = 0
        self._publish(snapshot)
        self._cache.set(snapshot)
        self._metrics.set_last_fetch_success(time.time())
        logger.info(
            "usage_updated",
            session_percent=snapshot.session_usage.percent_used,
            weekly_percent=snapshot.weekly_usage.percent_used,
            tier=snapshot.subscription_tier.value,
        )
        return snapshot

    def _handle_exhausted(
        self, generation: "int", error: "Exception"
    ) -> "UsageSnapshot | None":
        self._consecutive_failures += 1
        if not self._is_current(generation):
            logger.info("usage_result_discarded", reason="stopped")
            return None

        logger.error(
            "usage_fetch_exhausted",
            attempts=self._max_attempts,
            consecutive_failures=self._consecutive_failures,
            error=str(error),
        )
        self._events.emit(USAGE_ERROR, str(error) or "Failed to fetch usage")

        cached = self._last_snapshot or self._cache.get()
        if cached is None:
            return None

        stale = cached.as_stale()
        self._publish(stale)
        return stale

    def _publish(self, snapshot: "UsageSnapshot") -> "None":
        self._last_snapshot = snapshot
        self._metrics.update_usage(snapshot)
        self._events.emit(USAGE_UPDATED, snapshot)
