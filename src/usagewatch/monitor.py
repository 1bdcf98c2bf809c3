from typing import AsyncIterable

import structlog

from usagewatch.events import THRESHOLD_TRIGGERED, USAGE_UPDATED, EventBus
from usagewatch.metrics import MetricsUpdater
from usagewatch.models import AlertState, Credential, UsageSnapshot
from usagewatch.poller import UsagePoller
from usagewatch.session import BrowserSession, SessionManager
from usagewatch.store import AlertStateRepository, SettingsStore
from usagewatch.thresholds import ThresholdEngine

logger = structlog.get_logger()


class UsageMonitor:
    """
    UsageMonitor wires the services together: every published
    snapshot is evaluated against the configured thresholds, the
    resulting alert state is persisted and fired alerts are
    published as threshold-triggered events.

    Alert state is loaded once here and written back after every
    change.
    """

    def __init__(
        self,
        session: "SessionManager",
        poller: "UsagePoller",
        engine: "ThresholdEngine",
        alert_states: "AlertStateRepository",
        settings: "SettingsStore",
        events: "EventBus",
        metrics_updater: "MetricsUpdater",
    ) -> "None":
        self._session = session
        self._poller = poller
        self._engine = engine
        self._alert_states = alert_states
        self._settings = settings
        self._events = events
        self._metrics = metrics_updater
        self._alert_state: "AlertState" = alert_states.load()
        self._unsubscribe = events.subscribe(USAGE_UPDATED, self._on_usage_updated)

    @property
    def alert_state(self) -> "AlertState":
        return self._alert_state

    def _on_usage_updated(self, snapshot: "UsageSnapshot") -> "None":
        state, alerts = self._engine.check_thresholds(
            snapshot, self._settings.thresholds(), self._alert_state
        )
        if state != self._alert_state:
            self._alert_state = state
            self._alert_states.save(state)

        for alert in alerts:
            logger.info(
                "threshold_triggered",
                threshold_id=alert.threshold_id,
                usage_type=alert.usage_type.value,
                percentage=alert.threshold.percentage,
                current_percent=alert.current_percent,
            )
            self._metrics.inc_alert(alert)
            self._events.emit(THRESHOLD_TRIGGERED, alert)

    async def startup(self) -> "bool":
        """
        validates a stored credential and starts polling when the
        session is usable. Returns whether polling was started.
        """
        if not self._session.is_authenticated:
            logger.info("startup_unauthenticated")
            return False

        result = await self._session.validate()
        if not result.valid:
            return False

        self._poller.start()
        return True

    async def login(
        self,
        navigation_events: "AsyncIterable[str]",
        browser: "BrowserSession",
    ) -> "Credential":
        """
        captures a credential from the login window and starts
        polling. LoginCancelled propagates to the caller.
        """
        credential = await self._session.capture_from_login_flow(
            navigation_events, browser
        )
        self._poller.start()
        return credential

    async def logout(self, browser: "BrowserSession | None" = None) -> "None":
        self._poller.stop()
        await self._session.logout(browser)
        self._alert_state = AlertState()
        self._alert_states.clear()

    async def close(self) -> "None":
        self._unsubscribe()
        await self._poller.close()
