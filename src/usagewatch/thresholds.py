from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Iterable

from usagewatch.models import (
    AlertState,
    Threshold,
    ThresholdAlert,
    UsageSnapshot,
    UsageType,
)

DEFAULT_COOLDOWN = timedelta(hours=4)
DEFAULT_HYSTERESIS_PERCENT = 5.0


class ThresholdEngine:
    """
    ThresholdEngine decides which threshold alerts a snapshot fires.

    check_thresholds() is pure with respect to the AlertState passed
    in: it returns a new state and leaves persisting it to the
    caller. Per usage type, a reset timestamp that differs from
    the one last seen (rollover) clears every triggered flag of
    that type before any threshold is evaluated. A threshold then
    fires when usage is at or above it, it is not already
    triggered and its cooldown since the last firing has passed.
    Its triggered flag clears again once usage drops more than the
    hysteresis margin below it.
    """

    def __init__(
        self,
        cooldown: "timedelta" = DEFAULT_COOLDOWN,
        hysteresis_percent: "float" = DEFAULT_HYSTERESIS_PERCENT,
    ) -> "None":
        self._cooldown = cooldown
        self._hysteresis = hysteresis_percent

    def check_thresholds(
        self,
        snapshot: "UsageSnapshot",
        thresholds: "Iterable[Threshold]",
        alert_state: "AlertState",
        now: "datetime | None" = None,
    ) -> "tuple[AlertState, list[ThresholdAlert]]":
        now = now or datetime.now(timezone.utc)
        state = self._detect_rollover(snapshot, alert_state)

        triggered = set(state.triggered)
        last_fired_at = dict(state.last_fired_at)
        alerts: "list[ThresholdAlert]" = []

        for threshold in thresholds:
            if not threshold.enabled:
                continue

            current_percent = snapshot.window(threshold.type).percent_used
            key = threshold.alert_key

            if (
                current_percent >= threshold.percentage
                and key not in triggered
                and not self._in_cooldown(last_fired_at.get(key), now)
            ):
                alerts.append(
                    ThresholdAlert(
                        threshold=threshold,
                        current_percent=current_percent,
                        usage_type=threshold.type,
                    )
                )
                triggered.add(key)
                last_fired_at[key] = now

            # cleared regardless of cooldown so the alert can re-arm
            if current_percent < threshold.percentage - self._hysteresis:
                triggered.discard(key)

        return (
            replace(state, triggered=frozenset(triggered), last_fired_at=last_fired_at),
            alerts,
        )

    def _in_cooldown(self, last_fired_at: "datetime | None", now: "datetime") -> "bool":
        return last_fired_at is not None and now - last_fired_at < self._cooldown

    def _detect_rollover(
        self, snapshot: "UsageSnapshot", state: "AlertState"
    ) -> "AlertState":
        triggered = set(state.triggered)
        for usage_type in UsageType:
            previous = state.last_reset_at(usage_type)
            current = snapshot.window(usage_type).reset_at
            if previous is not None and current != previous:
                prefix = f"{usage_type.value}-"
                triggered = {key for key in triggered if not key.startswith(prefix)}

        return replace(
            state,
            triggered=frozenset(triggered),
            last_session_reset_at=snapshot.session_usage.reset_at,
            last_weekly_reset_at=snapshot.weekly_usage.reset_at,
        )


@dataclass(frozen=True, slots=True)
class Notification:
    title: "str"
    body: "str"
    # info, warning or critical
    urgency: "str"
    sound: "bool"


_WINDOW_LABELS: "dict[UsageType, str]" = {
    UsageType.SESSION: "5-Hour Session",
    UsageType.WEEKLY: "Weekly",
}


def build_notification(alert: "ThresholdAlert") -> "Notification":
    """
    renders an alert for the desktop notification surface.
    """
    label = _WINDOW_LABELS[alert.usage_type]
    if alert.current_percent >= 90:
        urgency = "critical"
    elif alert.current_percent >= 75:
        urgency = "warning"
    else:
        urgency = "info"
    return Notification(
        title=f"Claude Usage Alert - {label}",
        body=f"You've used {alert.current_percent:.0f}% of your {label.lower()} limit.",
        urgency=urgency,
        sound=alert.threshold.sound_enabled,
    )
