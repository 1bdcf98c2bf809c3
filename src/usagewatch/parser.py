"""
Normalises the undocumented claude.ai payloads into a UsageSnapshot.

The upstream schema is unversioned and drifts, so every logical value
is resolved through an ordered chain of small extractor functions. Each
extractor returns None when its shape is absent; the first non-None
result wins, and a computed fallback covers the case where none match.
Nothing in this module raises on malformed input.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Sequence, TypeVar

from usagewatch.models import (
    ModelUsage,
    SubscriptionTier,
    UsageSnapshot,
    UsageType,
    UsageWindow,
)

T = TypeVar("T")

# estimated message limits per tier: the API only exposes percentages
TIER_LIMITS: "dict[SubscriptionTier, dict[UsageType, int]]" = {
    SubscriptionTier.FREE: {UsageType.SESSION: 10, UsageType.WEEKLY: 50},
    SubscriptionTier.PRO: {UsageType.SESSION: 45, UsageType.WEEKLY: 500},
    SubscriptionTier.MAX5: {UsageType.SESSION: 225, UsageType.WEEKLY: 2500},
    SubscriptionTier.MAX20: {UsageType.SESSION: 900, UsageType.WEEKLY: 10000},
    SubscriptionTier.UNKNOWN: {UsageType.SESSION: 45, UsageType.WEEKLY: 500},
}

# highest tier first
TIER_PATTERNS: "tuple[tuple[SubscriptionTier, tuple[str, ...]], ...]" = (
    (SubscriptionTier.MAX20, ("max_20", "20x")),
    (SubscriptionTier.MAX5, ("max_5", "5x", "claude_max")),
    (SubscriptionTier.PRO, ("pro", "plus")),
    (SubscriptionTier.FREE, ("free", "basic")),
)

WINDOW_KEYS: "dict[UsageType, str]" = {
    UsageType.SESSION: "five_hour",
    UsageType.WEEKLY: "seven_day",
}

MODEL_WINDOW_KEYS: "tuple[tuple[str, str], ...]" = (
    ("opus", "seven_day_opus"),
    ("sonnet", "seven_day_sonnet"),
)

RESET_FIELDS: "tuple[str, ...]" = ("resets_at", "reset_at", "resetsAt")

SESSION_WINDOW = timedelta(hours=5)
SESSION_WINDOW_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)
WEEKLY_RESET_HOUR = 11


@dataclass(frozen=True, slots=True)
class _Context:
    bootstrap: "dict[str, Any]"
    rate_limits: "dict[str, Any]"
    now: "datetime"
    tier: "SubscriptionTier" = SubscriptionTier.UNKNOWN


def _dig(doc: "Any", *path: "str | int") -> "Any":
    """
    walks nested dicts/lists, returning None as soon as a step
    does not fit the document's shape.
    """
    current = doc
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
            current = current[step]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(step)
    return current


def _as_number(value: "Any") -> "float | None":
    # bool is an int subclass, but never a usage figure
    if isinstance(value, bool):
        return None
    if not isinstance(value, (int, float, str)):
        return None
    try:
        number = float(value.strip() if isinstance(value, str) else value)
    except (ValueError, OverflowError):
        # OverflowError: integers past the float range
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def clamp_percent(value: "float") -> "float":
    return min(100.0, max(0.0, value))


def _first(
    extractors: "Sequence[Callable[..., T | None]]", *args: "Any"
) -> "T | None":
    for extractor in extractors:
        value = extractor(*args)
        if value is not None:
            return value
    return None


def _organization(ctx: "_Context") -> "dict[str, Any]":
    org = _dig(ctx.bootstrap, "account", "memberships", 0, "organization")
    return org if isinstance(org, dict) else {}


def _membership(ctx: "_Context") -> "dict[str, Any]":
    membership = _dig(ctx.bootstrap, "account", "memberships", 0)
    return membership if isinstance(membership, dict) else {}


# -- tier --------------------------------------------------------------


def match_tier(label: "Any") -> "SubscriptionTier | None":
    """
    case-insensitive substring match of label against the known
    tier identifiers, highest tier first.
    """
    if not isinstance(label, str) or not label:
        return None
    lowered = label.lower()
    for tier, needles in TIER_PATTERNS:
        if any(needle in lowered for needle in needles):
            return tier
    return None


def tier_from_rate_limit_tier(ctx: "_Context") -> "SubscriptionTier | None":
    return match_tier(
        _organization(ctx).get("rate_limit_tier")
        or _membership(ctx).get("rate_limit_tier")
    )


def tier_from_plan_fields(ctx: "_Context") -> "SubscriptionTier | None":
    org = _organization(ctx)
    capabilities = org.get("capabilities")
    candidates: "list[Any]" = [
        org.get("plan"),
        org.get("subscription_tier"),
        _dig(ctx.bootstrap, "account", "plan"),
    ]
    if isinstance(capabilities, list):
        candidates.extend(c for c in capabilities if isinstance(c, str))
    # billing_type is the weakest signal, e.g. "stripe_subscription"
    candidates.append(org.get("billing_type"))
    for candidate in candidates:
        tier = match_tier(candidate)
        if tier is not None:
            return tier
    return None


def tier_from_paid_membership(ctx: "_Context") -> "SubscriptionTier | None":
    """
    a paid membership whose plan could not be read maps to the
    mid tier rather than unknown.
    """
    org = _organization(ctx)
    billing_type = org.get("billing_type")
    if isinstance(billing_type, str) and billing_type and "free" not in billing_type.lower():
        return SubscriptionTier.PRO
    if org.get("has_active_subscription") is True:
        return SubscriptionTier.PRO
    if _dig(ctx.bootstrap, "account", "has_active_subscription") is True:
        return SubscriptionTier.PRO
    return None


TIER_EXTRACTORS: "tuple[Callable[[_Context], SubscriptionTier | None], ...]" = (
    tier_from_rate_limit_tier,
    tier_from_plan_fields,
    tier_from_paid_membership,
)


# -- percent used ------------------------------------------------------


def percent_from_utilization(ctx: "_Context", usage_type: "UsageType") -> "float | None":
    return _as_number(_dig(ctx.rate_limits, WINDOW_KEYS[usage_type], "utilization"))


def percent_from_used_and_limit(
    ctx: "_Context", usage_type: "UsageType"
) -> "float | None":
    window = _dig(ctx.rate_limits, WINDOW_KEYS[usage_type])
    used = _as_number(_dig(window, "used"))
    limit = _as_number(_dig(window, "limit"))
    if used is None or limit is None or limit <= 0:
        return None
    return used / limit * 100


def _percent_from_remaining(
    remaining: "Any", ctx: "_Context", usage_type: "UsageType"
) -> "float | None":
    count = _as_number(remaining)
    if count is None:
        return None
    limit = TIER_LIMITS[ctx.tier][usage_type]
    return (limit - count) / limit * 100


def percent_from_remaining(ctx: "_Context", usage_type: "UsageType") -> "float | None":
    return _percent_from_remaining(
        _dig(ctx.rate_limits, WINDOW_KEYS[usage_type], "remaining"), ctx, usage_type
    )


def percent_from_message_limit(
    ctx: "_Context", usage_type: "UsageType"
) -> "float | None":
    # older payloads only carried a per-session remaining count
    if usage_type is not UsageType.SESSION:
        return None
    remaining = _dig(ctx.rate_limits, "message_limit", "remaining")
    if remaining is None:
        remaining = _dig(ctx.bootstrap, "message_limit", "remaining")
    return _percent_from_remaining(remaining, ctx, usage_type)


PERCENT_EXTRACTORS: "tuple[Callable[[_Context, UsageType], float | None], ...]" = (
    percent_from_utilization,
    percent_from_used_and_limit,
    percent_from_remaining,
    percent_from_message_limit,
)


# -- reset timestamps --------------------------------------------------


def parse_timestamp(value: "Any") -> "datetime | None":
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        # offsets that push year 1 or 9999 out of range
        return None


def reset_from_window(ctx: "_Context", usage_type: "UsageType") -> "datetime | None":
    window = _dig(ctx.rate_limits, WINDOW_KEYS[usage_type])
    for name in RESET_FIELDS:
        parsed = parse_timestamp(_dig(window, name))
        if parsed is not None:
            return parsed
    return None


RESET_EXTRACTORS: "tuple[Callable[[_Context, UsageType], datetime | None], ...]" = (
    reset_from_window,
)


def next_session_reset(now: "datetime") -> "datetime":
    """
    next boundary of the fixed 5-hour grid anchored at
    SESSION_WINDOW_EPOCH.
    """
    elapsed = now - SESSION_WINDOW_EPOCH
    current_window = elapsed // SESSION_WINDOW
    return SESSION_WINDOW_EPOCH + (current_window + 1) * SESSION_WINDOW


def next_weekly_reset(now: "datetime") -> "datetime":
    """
    next Sunday at WEEKLY_RESET_HOUR UTC. On a Sunday this is the
    following Sunday.
    """
    now = now.astimezone(timezone.utc)
    # weekday(): Monday is 0, Sunday is 6
    days_until_sunday = 7 if now.weekday() == 6 else 6 - now.weekday()
    target = now + timedelta(days=days_until_sunday)
    return target.replace(hour=WEEKLY_RESET_HOUR, minute=0, second=0, microsecond=0)


_RESET_FALLBACKS: "dict[UsageType, Callable[[datetime], datetime]]" = {
    UsageType.SESSION: next_session_reset,
    UsageType.WEEKLY: next_weekly_reset,
}


# -- assembly ----------------------------------------------------------


def _build_window(ctx: "_Context", usage_type: "UsageType") -> "UsageWindow":
    percent = _first(PERCENT_EXTRACTORS, ctx, usage_type)
    percent = clamp_percent(percent) if percent is not None else 0.0
    reset_at = _first(RESET_EXTRACTORS, ctx, usage_type)
    if reset_at is None:
        reset_at = _RESET_FALLBACKS[usage_type](ctx.now)

    limit = TIER_LIMITS[ctx.tier][usage_type]
    return UsageWindow(
        used=round(percent / 100 * limit),
        limit=limit,
        percent_used=percent,
        reset_at=reset_at,
    )


def _build_model_usage(ctx: "_Context") -> "dict[str, ModelUsage]":
    limit = TIER_LIMITS[ctx.tier][UsageType.WEEKLY]
    models: "dict[str, ModelUsage]" = {}
    for name, key in MODEL_WINDOW_KEYS:
        percent = _as_number(_dig(ctx.rate_limits, key, "utilization"))
        if percent is None:
            continue
        percent = clamp_percent(percent)
        models[name] = ModelUsage(
            used=round(percent / 100 * limit),
            limit=limit,
            percent_used=percent,
        )
    return models


def parse(
    bootstrap: "Any",
    rate_limits: "Any" = None,
    now: "datetime | None" = None,
) -> "UsageSnapshot":
    """
    builds a best-effort UsageSnapshot from the bootstrap and
    rate-limit documents. Falls back to unknown tier and 0% usage
    when the payload carries no usable signal.
    """
    now = now or datetime.now(timezone.utc)
    ctx = _Context(
        bootstrap=bootstrap if isinstance(bootstrap, dict) else {},
        rate_limits=rate_limits if isinstance(rate_limits, dict) else {},
        now=now,
    )
    tier = _first(TIER_EXTRACTORS, ctx) or SubscriptionTier.UNKNOWN
    ctx = _Context(
        bootstrap=ctx.bootstrap,
        rate_limits=ctx.rate_limits,
        now=now,
        tier=tier,
    )

    return UsageSnapshot(
        session_usage=_build_window(ctx, UsageType.SESSION),
        weekly_usage=_build_window(ctx, UsageType.WEEKLY),
        subscription_tier=tier,
        last_updated=now,
        model_usage=_build_model_usage(ctx),
    )
