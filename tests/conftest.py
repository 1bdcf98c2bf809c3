from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import pytest
from prometheus_client import CollectorRegistry

from usagewatch.events import EventBus
from usagewatch.metrics import MetricsUpdater
from usagewatch.models import SubscriptionTier, UsageSnapshot, UsageWindow
from usagewatch.store import JsonFileStore


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def metrics_updater(registry: "CollectorRegistry") -> "MetricsUpdater":
    return MetricsUpdater(registry=registry)


@pytest.fixture()
def store(tmp_path: "Path") -> "JsonFileStore":
    return JsonFileStore(tmp_path / "state.json")


@pytest.fixture()
def events() -> "EventBus":
    return EventBus()


@pytest.fixture()
def recorded(events: "EventBus") -> "Callable[[str], list]":
    """
    subscribes a list to an event and returns it, so tests can
    assert on everything that was published.
    """

    def _record(event: "str") -> "list":
        payloads: "list" = []
        events.subscribe(event, payloads.append)
        return payloads

    return _record


SESSION_RESET = datetime(2025, 6, 1, 15, 0, tzinfo=timezone.utc)
WEEKLY_RESET = datetime(2025, 6, 8, 11, 0, tzinfo=timezone.utc)


def _make_snapshot(
    session: "float" = 0.0,
    weekly: "float" = 0.0,
    session_reset: "datetime" = SESSION_RESET,
    weekly_reset: "datetime" = WEEKLY_RESET,
) -> "UsageSnapshot":
    return UsageSnapshot(
        session_usage=UsageWindow(
            used=round(session / 100 * 45),
            limit=45,
            percent_used=session,
            reset_at=session_reset,
        ),
        weekly_usage=UsageWindow(
            used=round(weekly / 100 * 500),
            limit=500,
            percent_used=weekly,
            reset_at=weekly_reset,
        ),
        subscription_tier=SubscriptionTier.PRO,
        last_updated=datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc),
    )


@pytest.fixture()
def make_snapshot() -> "Callable[..., UsageSnapshot]":
    return _make_snapshot
