import asyncio
import signal

import structlog
from prometheus_client import start_http_server

from usagewatch.cli import parse_args
from usagewatch.events import (
    SESSION_STATUS_CHANGED,
    THRESHOLD_TRIGGERED,
    USAGE_ERROR,
    EventBus,
)
from usagewatch.logging import setup_logging
from usagewatch.metrics import MetricsUpdater
from usagewatch.models import ThresholdAlert
from usagewatch.monitor import UsageMonitor
from usagewatch.poller import UsagePoller
from usagewatch.provider.claude import ClaudeWebProvider
from usagewatch.session import SessionManager
from usagewatch.store import (
    AlertStateRepository,
    CredentialStore,
    JsonFileStore,
    SettingsStore,
    SnapshotCache,
    load_cipher,
)
from usagewatch.thresholds import ThresholdEngine, build_notification

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def _log_notification(alert: "ThresholdAlert") -> "None":
    notification = build_notification(alert)
    logger.warning(
        "usage_alert",
        title=notification.title,
        body=notification.body,
        urgency=notification.urgency,
        sound=notification.sound,
    )


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level)

    store = JsonFileStore(config.state_file, cipher=load_cipher(config.key_file))
    events = EventBus()
    metrics_updater = MetricsUpdater()
    settings = SettingsStore(store, default_poll_interval=config.poll_interval)
    provider = ClaudeWebProvider()
    session = SessionManager(CredentialStore(store), provider, events)

    if config.session_key and not session.is_authenticated:
        try:
            session.import_credential(config.session_key)
        except ValueError as e:
            raise SystemExit(f"Invalid CLAUDE_SESSION_KEY: {e}") from e

    poller = UsagePoller(
        provider,
        session,
        events,
        SnapshotCache(store),
        settings,
        metrics_updater,
    )
    monitor = UsageMonitor(
        session,
        poller,
        ThresholdEngine(),
        AlertStateRepository(store),
        settings,
        events,
        metrics_updater,
    )

    events.subscribe(THRESHOLD_TRIGGERED, _log_notification)
    events.subscribe(
        USAGE_ERROR, lambda message: logger.warning("usage_error", message=message)
    )

    if config.metrics_enabled:
        host, port = _parse_listen_address(config.listen_address)
        start_http_server(port, addr=host)
        logger.info("metrics_server_started", host=host, port=port)

    async def _run() -> "None":
        done = asyncio.Event()
        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, stop polling gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, done.set)

        def _on_session_status(authenticated: "bool") -> "None":
            logger.info("session_status_changed", authenticated=authenticated)
            if not authenticated:
                done.set()

        events.subscribe(SESSION_STATUS_CHANGED, _on_session_status)

        try:
            if not await monitor.startup():
                raise SystemExit(
                    "No valid claude.ai session. Set CLAUDE_SESSION_KEY to the "
                    "sessionKey cookie value."
                )
            await done.wait()
        finally:
            logger.info("shutting_down")
            await monitor.close()
            await provider.close()
            logger.info("shutdown_complete")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
