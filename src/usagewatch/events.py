from typing import Any, Callable

import structlog

logger = structlog.get_logger()

USAGE_UPDATED = "usage-updated"
USAGE_ERROR = "usage-error"
SESSION_STATUS_CHANGED = "session-status-changed"
THRESHOLD_TRIGGERED = "threshold-triggered"

EVENT_NAMES: "frozenset[str]" = frozenset(
    {USAGE_UPDATED, USAGE_ERROR, SESSION_STATUS_CHANGED, THRESHOLD_TRIGGERED}
)


class EventBus:
    """
    EventBus is an explicit observer registry for the events
    published to the UI, tray and notification collaborators.

    Callbacks run synchronously in registration order. A failing
    callback is logged and skipped; it never reaches the publisher.
    """

    def __init__(self) -> "None":
        self._subscribers: "dict[str, list[Callable[[Any], None]]]" = {
            name: [] for name in EVENT_NAMES
        }

    def subscribe(
        self, event: "str", callback: "Callable[[Any], None]"
    ) -> "Callable[[], None]":
        """
        registers callback for event and returns a function that
        removes the registration again.
        """
        if event not in self._subscribers:
            raise ValueError(f"unknown event: {event}")
        self._subscribers[event].append(callback)

        def _unsubscribe() -> "None":
            if callback in self._subscribers[event]:
                self._subscribers[event].remove(callback)

        return _unsubscribe

    def emit(self, event: "str", payload: "Any") -> "None":
        if event not in self._subscribers:
            raise ValueError(f"unknown event: {event}")
        # copy so callbacks may unsubscribe while being notified
        for callback in list(self._subscribers[event]):
            try:
                callback(payload)
            except Exception:
                logger.exception(
                    "event_subscriber_error",
                    event_name=event,
                    subscriber=getattr(callback, "__qualname__", repr(callback)),
                )
