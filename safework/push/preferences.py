"""
Recipient notification preferences and the delivery filter.

Priority toggles are independent per level, not a minimum threshold:
turning off MEDIUM does not turn off LOW.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, time
from typing import Any, Mapping, Optional

from safework.core.exceptions import ValidationError
from safework.push.payload import (
    NotificationPayload,
    NotificationPriority,
    NotificationType,
)

TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")

# Types that are muted for new subscriptions
DEFAULT_DISABLED_TYPES = frozenset({NotificationType.LMRA_COMPLETED})


def parse_time_of_day(value: str) -> int:
    """Convert HH:MM to minutes since midnight."""
    match = TIME_PATTERN.match(value) if isinstance(value, str) else None
    if not match:
        raise ValidationError(f"Invalid time of day: {value!r} (expected HH:MM)")
    return int(match.group(1)) * 60 + int(match.group(2))


def _as_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be true or false, got {value!r}")
    return value


def _as_mapping(value: Any, name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValidationError(f"{name} must be an object, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class QuietHours:
    """Daily window during which nothing is delivered."""

    enabled: bool = False
    start: str = "22:00"
    end: str = "08:00"

    def __post_init__(self) -> None:
        _as_bool(self.enabled, "quietHours.enabled")
        parse_time_of_day(self.start)
        parse_time_of_day(self.end)

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "start": self.start, "end": self.end}


@dataclass(frozen=True)
class Channels:
    push: bool = True
    email: bool = True
    sms: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {"push": self.push, "email": self.email, "sms": self.sms}


def _default_priorities() -> dict[NotificationPriority, bool]:
    return {p: True for p in NotificationPriority}


def _default_types() -> dict[NotificationType, bool]:
    return {t: t not in DEFAULT_DISABLED_TYPES for t in NotificationType}


@dataclass(frozen=True)
class Preferences:
    """A recipient's delivery preferences, embedded in the subscription."""

    enabled: bool = True
    priorities: dict[NotificationPriority, bool] = field(default_factory=_default_priorities)
    types: dict[NotificationType, bool] = field(default_factory=_default_types)
    quiet_hours: QuietHours = field(default_factory=QuietHours)
    channels: Channels = field(default_factory=Channels)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the stored document shape."""
        return {
            "enabled": self.enabled,
            "priorities": {p.value: v for p, v in self.priorities.items()},
            "types": {t.value: v for t, v in self.types.items()},
            "quietHours": self.quiet_hours.to_dict(),
            "channels": self.channels.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "Preferences":
        """Build preferences from a stored document, filling gaps with defaults."""
        return cls.defaults().merged(data or {})

    @classmethod
    def defaults(cls) -> "Preferences":
        return cls()

    def merged(self, partial: Mapping[str, Any]) -> "Preferences":
        """Shallow merge: each top-level key given replaces the stored value.

        Nested documents (priorities, types, quiet hours, channels) are
        replaced wholesale rather than deep-merged. Missing keys inside a
        replaced toggle map keep their default value.
        """
        changes: dict[str, Any] = {}

        if "enabled" in partial and partial["enabled"] is not None:
            changes["enabled"] = _as_bool(partial["enabled"], "enabled")

        if partial.get("priorities") is not None:
            changes["priorities"] = _parse_toggles(
                partial["priorities"], NotificationPriority, _default_priorities()
            )

        if partial.get("types") is not None:
            changes["types"] = _parse_toggles(
                partial["types"], NotificationType, _default_types()
            )

        quiet = partial.get("quietHours", partial.get("quiet_hours"))
        if quiet is not None:
            if isinstance(quiet, QuietHours):
                changes["quiet_hours"] = quiet
            else:
                quiet = _as_mapping(quiet, "quietHours")
                changes["quiet_hours"] = QuietHours(
                    **{k: v for k, v in quiet.items() if k in ("enabled", "start", "end") and v is not None}
                )

        channels = partial.get("channels")
        if channels is not None:
            if isinstance(channels, Channels):
                changes["channels"] = channels
            else:
                channels = _as_mapping(channels, "channels")
                changes["channels"] = Channels(
                    **{k: _as_bool(v, f"channels.{k}") for k, v in channels.items() if k in ("push", "email", "sms") and v is not None}
                )

        return replace(self, **changes)


def _parse_toggles(raw: Mapping[Any, Any], enum_cls, defaults: dict) -> dict:
    toggles = dict(defaults)
    for key, value in _as_mapping(raw, enum_cls.__name__).items():
        try:
            member = enum_cls(key.value if isinstance(key, enum_cls) else key)
        except ValueError:
            raise ValidationError(f"Unknown {enum_cls.__name__} key: {key!r}") from None
        if value is not None:
            toggles[member] = _as_bool(value, f"{enum_cls.__name__}.{member.value}")
    return toggles


def is_in_quiet_hours(quiet_hours: QuietHours, now: datetime | time) -> bool:
    """Whether `now` falls inside the half-open window [start, end).

    A window with start > end wraps past midnight; start == end is empty.
    """
    if not quiet_hours.enabled:
        return False

    current = now.hour * 60 + now.minute
    start = parse_time_of_day(quiet_hours.start)
    end = parse_time_of_day(quiet_hours.end)

    if start <= end:
        return start <= current < end
    return current >= start or current < end


def should_deliver(
    preferences: Preferences,
    payload: NotificationPayload,
    now: datetime | time,
) -> bool:
    """Decide whether a notification passes the recipient's preferences."""
    if not preferences.enabled:
        return False

    if not preferences.priorities.get(payload.priority, False):
        return False

    if not preferences.types.get(payload.type, False):
        return False

    if is_in_quiet_hours(preferences.quiet_hours, now):
        return False

    return True
