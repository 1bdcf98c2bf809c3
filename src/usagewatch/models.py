import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone


class UsageType(str, enum.Enum):
    SESSION = "session"
    WEEKLY = "weekly"


class SubscriptionTier(str, enum.Enum):
    FREE = "free"
    PRO = "pro"
    MAX5 = "max5"
    MAX20 = "max20"
    UNKNOWN = "unknown"


def _parse_timestamp(value: "str | None") -> "datetime | None":
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: "datetime | None") -> "str | None":
    return value.isoformat() if value is not None else None


@dataclass(frozen=True, slots=True)
class Credential:
    """
    Credential holds the captured claude.ai session key. The
    secret value is kept out of repr() so it never ends up in logs.
    """

    value: "str" = field(repr=False)
    captured_at: "datetime"


@dataclass(frozen=True, slots=True)
class UsageWindow:
    """
    UsageWindow describes one rolling quota window.
    """

    # estimated from percent_used and the per-tier limit table
    used: "int"
    limit: "int"
    # always clamped to [0, 100]
    percent_used: "float"
    reset_at: "datetime"

    def to_dict(self) -> "dict":
        return {
            "used": self.used,
            "limit": self.limit,
            "percent_used": self.percent_used,
            "reset_at": _format_timestamp(self.reset_at),
        }

    @classmethod
    def from_dict(cls, data: "dict") -> "UsageWindow":
        return cls(
            used=int(data["used"]),
            limit=int(data["limit"]),
            percent_used=float(data["percent_used"]),
            reset_at=_parse_timestamp(data["reset_at"]),
        )


@dataclass(frozen=True, slots=True)
class ModelUsage:
    used: "int"
    limit: "int"
    percent_used: "float"

    def to_dict(self) -> "dict":
        return {
            "used": self.used,
            "limit": self.limit,
            "percent_used": self.percent_used,
        }


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    """
    UsageSnapshot is the canonical, immutable view of one
    successful fetch. A newer snapshot supersedes it; a stale
    republish is a copy with is_stale set.
    """

    session_usage: "UsageWindow"
    weekly_usage: "UsageWindow"
    subscription_tier: "SubscriptionTier"
    last_updated: "datetime"
    # keyed by model family, e.g. "opus" or "sonnet"
    model_usage: "dict[str, ModelUsage]" = field(default_factory=dict)
    is_stale: "bool" = False

    def window(self, usage_type: "UsageType") -> "UsageWindow":
        if usage_type is UsageType.SESSION:
            return self.session_usage
        return self.weekly_usage

    def as_stale(self) -> "UsageSnapshot":
        return replace(self, is_stale=True)

    def to_dict(self) -> "dict":
        return {
            "session_usage": self.session_usage.to_dict(),
            "weekly_usage": self.weekly_usage.to_dict(),
            "subscription_tier": self.subscription_tier.value,
            "last_updated": _format_timestamp(self.last_updated),
            "model_usage": {k: v.to_dict() for k, v in self.model_usage.items()},
        }

    @classmethod
    def from_dict(cls, data: "dict") -> "UsageSnapshot":
        return cls(
            session_usage=UsageWindow.from_dict(data["session_usage"]),
            weekly_usage=UsageWindow.from_dict(data["weekly_usage"]),
            subscription_tier=SubscriptionTier(data.get("subscription_tier", "unknown")),
            last_updated=_parse_timestamp(data["last_updated"]),
            model_usage={
                name: ModelUsage(
                    used=int(m["used"]),
                    limit=int(m["limit"]),
                    percent_used=float(m["percent_used"]),
                )
                for name, m in (data.get("model_usage") or {}).items()
            },
        )


@dataclass(frozen=True, slots=True)
class Threshold:
    """
    Threshold is a user-configured alert level. The alert key
    (type, percentage) is what dedup state is tracked under;
    id is only a stable external handle.
    """

    id: "str"
    type: "UsageType"
    percentage: "float"
    enabled: "bool" = True
    sound_enabled: "bool" = False

    @property
    def alert_key(self) -> "str":
        return make_alert_key(self.type, self.percentage)

    def to_dict(self) -> "dict":
        return {
            "id": self.id,
            "type": self.type.value,
            "percentage": self.percentage,
            "enabled": self.enabled,
            "sound_enabled": self.sound_enabled,
        }

    @classmethod
    def from_dict(cls, data: "dict") -> "Threshold":
        return cls(
            id=str(data["id"]),
            type=UsageType(data["type"]),
            percentage=min(100.0, max(0.0, float(data["percentage"]))),
            enabled=bool(data.get("enabled", True)),
            sound_enabled=bool(data.get("sound_enabled", False)),
        )


def make_alert_key(usage_type: "UsageType", percentage: "float") -> "str":
    return f"{usage_type.value}-{percentage:g}"


DEFAULT_THRESHOLDS: "tuple[Threshold, ...]" = (
    Threshold("session-50", UsageType.SESSION, 50, enabled=True, sound_enabled=False),
    Threshold("session-75", UsageType.SESSION, 75, enabled=True, sound_enabled=True),
    Threshold("session-90", UsageType.SESSION, 90, enabled=True, sound_enabled=True),
    Threshold("weekly-50", UsageType.WEEKLY, 50, enabled=False, sound_enabled=False),
    Threshold("weekly-75", UsageType.WEEKLY, 75, enabled=True, sound_enabled=False),
    Threshold("weekly-90", UsageType.WEEKLY, 90, enabled=True, sound_enabled=True),
)


@dataclass(frozen=True, slots=True)
class AlertState:
    """
    AlertState is the restart-durable dedup state for threshold
    alerts. It is replaced, never mutated, by the threshold engine.
    """

    triggered: "frozenset[str]" = frozenset()
    last_fired_at: "dict[str, datetime]" = field(default_factory=dict)
    last_session_reset_at: "datetime | None" = None
    last_weekly_reset_at: "datetime | None" = None

    def last_reset_at(self, usage_type: "UsageType") -> "datetime | None":
        if usage_type is UsageType.SESSION:
            return self.last_session_reset_at
        return self.last_weekly_reset_at

    def to_dict(self) -> "dict":
        return {
            "triggered_alerts": sorted(self.triggered),
            "last_notification_times": {
                k: _format_timestamp(v) for k, v in self.last_fired_at.items()
            },
            "last_session_reset_at": _format_timestamp(self.last_session_reset_at),
            "last_weekly_reset_at": _format_timestamp(self.last_weekly_reset_at),
        }

    @classmethod
    def from_dict(cls, data: "dict") -> "AlertState":
        return cls(
            triggered=frozenset(data.get("triggered_alerts") or ()),
            last_fired_at={
                k: _parse_timestamp(v)
                for k, v in (data.get("last_notification_times") or {}).items()
                if v
            },
            last_session_reset_at=_parse_timestamp(data.get("last_session_reset_at")),
            last_weekly_reset_at=_parse_timestamp(data.get("last_weekly_reset_at")),
        )


@dataclass(frozen=True, slots=True)
class ThresholdAlert:
    """
    ThresholdAlert is the payload of a threshold-triggered event.
    """

    threshold: "Threshold"
    current_percent: "float"
    usage_type: "UsageType"

    @property
    def threshold_id(self) -> "str":
        return self.threshold.id


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: "bool"
    # HTTP status of the last probe, 0 for network failures
    status: "int"
