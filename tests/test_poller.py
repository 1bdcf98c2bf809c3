import asyncio
from typing import Callable

import pytest
from prometheus_client import CollectorRegistry

from usagewatch.errors import AuthExpiredError, TransientFetchError
from usagewatch.events import (
    SESSION_STATUS_CHANGED,
    USAGE_ERROR,
    USAGE_UPDATED,
    EventBus,
)
from usagewatch.metrics import MetricsUpdater
from usagewatch.models import UsageSnapshot
from usagewatch.poller import UsagePoller
from usagewatch.provider.base import UsageDocuments
from usagewatch.session import SessionManager
from usagewatch.store import CredentialStore, JsonFileStore, SettingsStore, SnapshotCache

SESSION_KEY = "sk-ant-sid01-abcdef"


def _documents(session: "float" = 20.0, weekly: "float" = 10.0) -> "UsageDocuments":
    return UsageDocuments(
        bootstrap={
            "account": {
                "memberships": [
                    {"organization": {"uuid": "org-1", "rate_limit_tier": "claude_pro"}}
                ]
            }
        },
        rate_limits={
            "five_hour": {
                "utilization": session,
                "resets_at": "2025-06-04T15:00:00+00:00",
            },
            "seven_day": {
                "utilization": weekly,
                "resets_at": "2025-06-08T11:00:00+00:00",
            },
        },
    )


class ScriptedProvider:
    """
    A mock provider that replays pre-configured results. Exceptions
    in the script are raised instead of returned. When gated, every
    fetch waits for the gate to open first.
    """

    def __init__(self, script: "list[object]", gated: "bool" = False) -> "None":
        self._script = list(script)
        self.calls = 0
        self.concurrent = 0
        self.max_concurrent = 0
        self.gate: "asyncio.Event" = asyncio.Event()
        if not gated:
            self.gate.set()

    @property
    def name(self) -> "str":
        return "scripted"

    async def fetch_usage_documents(self, session_key: "str") -> "UsageDocuments":
        self.calls += 1
        self.concurrent += 1
        self.max_concurrent = max(self.max_concurrent, self.concurrent)
        try:
            await self.gate.wait()
            result = self._script.pop(0) if len(self._script) > 1 else self._script[0]
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            self.concurrent -= 1

    async def probe_session(self, session_key: "str") -> "int":
        return 200

    async def close(self) -> "None":
        pass


def _poller(
    provider: "ScriptedProvider",
    store: "JsonFileStore",
    events: "EventBus",
    metrics_updater: "MetricsUpdater",
    authenticated: "bool" = True,
) -> "UsagePoller":
    session = SessionManager(CredentialStore(store), provider, events)
    if authenticated:
        session.import_credential(SESSION_KEY)
    return UsagePoller(
        provider,
        session,
        events,
        SnapshotCache(store),
        SettingsStore(store, default_poll_interval=60),
        metrics_updater,
        retry_base_delay_seconds=0,
    )


class TestFetchCycle:
    @pytest.mark.asyncio
    async def test_publishes_and_caches_snapshot(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
        registry: "CollectorRegistry",
        recorded: "Callable[[str], list]",
    ) -> "None":
        updates = recorded(USAGE_UPDATED)
        poller = _poller(ScriptedProvider([_documents(42)]), store, events, metrics_updater)

        snapshot = await poller.refresh()

        assert snapshot is not None
        assert snapshot.session_usage.percent_used == 42
        assert updates == [snapshot]
        assert SnapshotCache(store).get() == snapshot
        assert registry.get_sample_value(
            "usagewatch_usage_percent", {"window": "session"}
        ) == 42.0

    @pytest.mark.asyncio
    async def test_unauthenticated_emits_error_without_fetching(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
        recorded: "Callable[[str], list]",
    ) -> "None":
        errors = recorded(USAGE_ERROR)
        provider = ScriptedProvider([_documents()])
        poller = _poller(provider, store, events, metrics_updater, authenticated=False)

        assert await poller.refresh() is None
        assert provider.calls == 0
        assert errors == ["Not authenticated"]

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
        registry: "CollectorRegistry",
        recorded: "Callable[[str], list]",
    ) -> "None":
        errors = recorded(USAGE_ERROR)
        provider = ScriptedProvider(
            [TransientFetchError("boom"), TransientFetchError("boom"), _documents(30)]
        )
        poller = _poller(provider, store, events, metrics_updater)

        snapshot = await poller.refresh()

        assert snapshot is not None
        assert provider.calls == 3
        assert errors == []
        assert registry.get_sample_value(
            "usagewatch_fetch_errors_total", {"kind": "transient"}
        ) == 2.0

    @pytest.mark.asyncio
    async def test_exhausted_retries_republish_stale_cache(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
        recorded: "Callable[[str], list]",
    ) -> "None":
        provider = ScriptedProvider([_documents(55), TransientFetchError("down")])
        poller = _poller(provider, store, events, metrics_updater)
        fresh = await poller.refresh()

        updates = recorded(USAGE_UPDATED)
        errors = recorded(USAGE_ERROR)
        stale = await poller.refresh()

        assert provider.calls == 4
        assert errors == ["down"]
        assert stale is not None
        assert stale.is_stale is True
        assert stale.session_usage == fresh.session_usage
        assert updates == [stale]
        assert poller.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_stale_fallback_reads_persisted_cache(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
        make_snapshot: "Callable[..., UsageSnapshot]",
        recorded: "Callable[[str], list]",
    ) -> "None":
        SnapshotCache(store).set(make_snapshot(session=33))
        updates = recorded(USAGE_UPDATED)
        poller = _poller(
            ScriptedProvider([TransientFetchError("down")]), store, events, metrics_updater
        )

        stale = await poller.refresh()

        assert stale is not None
        assert stale.is_stale is True
        assert stale.session_usage.percent_used == 33
        assert updates == [stale]

    @pytest.mark.asyncio
    async def test_exhausted_without_cache_only_reports_error(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
        recorded: "Callable[[str], list]",
    ) -> "None":
        updates = recorded(USAGE_UPDATED)
        errors = recorded(USAGE_ERROR)
        poller = _poller(
            ScriptedProvider([RuntimeError("unexpected")]), store, events, metrics_updater
        )

        assert await poller.refresh() is None
        assert updates == []
        assert errors == ["unexpected"]

    @pytest.mark.asyncio
    async def test_auth_expired_stops_polling_and_clears_session(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
        recorded: "Callable[[str], list]",
    ) -> "None":
        provider = ScriptedProvider([AuthExpiredError()])
        poller = _poller(provider, store, events, metrics_updater)
        statuses = recorded(SESSION_STATUS_CHANGED)
        updates = recorded(USAGE_UPDATED)

        poller.start()
        for _ in range(10):
            await asyncio.sleep(0)
            if statuses:
                break

        assert provider.calls == 1
        assert statuses == [False]
        assert updates == []
        assert poller.is_running is False
        assert CredentialStore(store).get() is None


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_refresh_joins_inflight_cycle(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
        recorded: "Callable[[str], list]",
    ) -> "None":
        updates = recorded(USAGE_UPDATED)
        provider = ScriptedProvider([_documents(10)], gated=True)
        poller = _poller(provider, store, events, metrics_updater)

        first = asyncio.create_task(poller.refresh())
        second = asyncio.create_task(poller.refresh())
        await asyncio.sleep(0)
        provider.gate.set()
        results = await asyncio.gather(first, second)

        assert provider.calls == 1
        assert provider.max_concurrent == 1
        assert results[0] is results[1]
        assert len(updates) == 1

    @pytest.mark.asyncio
    async def test_refresh_during_polling_does_not_overlap(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
    ) -> "None":
        provider = ScriptedProvider([_documents(10)], gated=True)
        poller = _poller(provider, store, events, metrics_updater)

        poller.start()
        await asyncio.sleep(0)
        manual = asyncio.create_task(poller.refresh())
        await asyncio.sleep(0)
        provider.gate.set()
        await manual

        assert provider.calls == 1
        assert provider.max_concurrent == 1
        poller.stop()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
    ) -> "None":
        provider = ScriptedProvider([_documents(10)], gated=True)
        poller = _poller(provider, store, events, metrics_updater)

        poller.start()
        poller.start()
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert provider.calls == 1
        poller.stop()
        provider.gate.set()
        await poller.close()


class TestStop:
    @pytest.mark.asyncio
    async def test_inflight_result_is_discarded_after_stop(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
        recorded: "Callable[[str], list]",
    ) -> "None":
        updates = recorded(USAGE_UPDATED)
        provider = ScriptedProvider([_documents(10)], gated=True)
        poller = _poller(provider, store, events, metrics_updater)

        poller.start()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert provider.calls == 1

        poller.stop()
        provider.gate.set()
        await poller.close()

        assert updates == []
        assert poller.is_running is False
        assert SnapshotCache(store).get() is None


class TestAdaptiveInterval:
    @pytest.mark.asyncio
    async def test_interval_drops_above_high_water_mark(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
    ) -> "None":
        provider = ScriptedProvider([_documents(85), _documents(40)])
        poller = _poller(provider, store, events, metrics_updater)
        assert poller.interval == 60

        await poller.refresh()
        assert poller.interval == 30

        await poller.refresh()
        assert poller.interval == 60

    @pytest.mark.asyncio
    async def test_interval_follows_settings(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
    ) -> "None":
        provider = ScriptedProvider([_documents(90)])
        poller = _poller(provider, store, events, metrics_updater)
        SettingsStore(store).set_poll_interval(20)

        await poller.refresh()

        # the fast interval never slows down a shorter base interval
        assert poller.interval == 20


class TestCycleErrors:
    @pytest.mark.asyncio
    async def test_unexpected_cycle_error_keeps_polling(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
        registry: "CollectorRegistry",
        recorded: "Callable[[str], list]",
    ) -> "None":
        # a malformed provider result fails after the fetch itself
        provider = ScriptedProvider([object(), _documents(20)])
        poller = _poller(provider, store, events, metrics_updater)
        SettingsStore(store).set_poll_interval(0.01)
        errors = recorded(USAGE_ERROR)
        updates = recorded(USAGE_UPDATED)

        poller.start()
        for _ in range(100):
            await asyncio.sleep(0.01)
            if updates:
                break

        assert poller.is_running is True
        assert provider.calls >= 2
        assert len(errors) == 1
        assert updates[0].session_usage.percent_used == 20
        assert registry.get_sample_value(
            "usagewatch_fetch_errors_total", {"kind": "internal"}
        ) == 1.0
        poller.stop()
        await poller.close()

    @pytest.mark.asyncio
    async def test_refresh_does_not_raise_on_cycle_error(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
    ) -> "None":
        poller = _poller(ScriptedProvider([object()]), store, events, metrics_updater)

        assert await poller.refresh() is None
        assert poller.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_publishing(
        self,
        store: "JsonFileStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
        recorded: "Callable[[str], list]",
    ) -> "None":
        def _explode(snapshot: "UsageSnapshot") -> "None":
            raise RuntimeError("subscriber bug")

        events.subscribe(USAGE_UPDATED, _explode)
        updates = recorded(USAGE_UPDATED)
        poller = _poller(
            ScriptedProvider([_documents(30), _documents(35)]), store, events, metrics_updater
        )

        first = await poller.refresh()
        second = await poller.refresh()

        assert first is not None and second is not None
        assert updates == [first, second]
        assert SnapshotCache(store).get() == second
        assert poller.consecutive_failures == 0
