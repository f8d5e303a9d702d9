"""
Preference Gate: per-user channel opt-outs and quiet hours.

Consulted by dispatch workers before every send:
  channel disabled           → Suppress (terminal, never retried)
  inside quiet hours         → Defer until the window ends (UTC)
  priority 1 (urgent)        → never deferred
  otherwise                  → Allow

Quiet hours are local to the user's stored timezone; start is inclusive,
end exclusive, and a window may cross midnight (22:00 → 07:00).
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError as PydanticValidationError

from database.store_base import BaseStore
from models.errors import ValidationFailed
from models.schemas import (
    PRIORITY_HIGHEST, NotificationItem, UserNotificationPreference, utcnow,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class Allow:
    kind: str = "allow"


@dataclass(frozen=True)
class Suppress:
    reason: str
    kind: str = "suppress"


@dataclass(frozen=True)
class Defer:
    until: datetime
    kind: str = "defer"


GateDecision = Union[Allow, Suppress, Defer]

_EDITABLE_FIELDS = {
    "email_enabled", "push_enabled", "in_app_enabled", "sms_enabled",
    "quiet_hours_start", "quiet_hours_end", "timezone",
}


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationFailed(f"Unknown timezone: {name}") from e


def quiet_window_end(pref: UserNotificationPreference, now: datetime) -> Optional[datetime]:
    """UTC end of the quiet window containing `now`, or None when outside quiet hours."""
    if not pref.has_quiet_hours:
        return None
    tz = _zone(pref.timezone)
    local_now = now.astimezone(tz)
    if not pref.is_quiet_time(local_now.time().replace(tzinfo=None)):
        return None
    end_local = datetime.combine(local_now.date(), pref.quiet_hours_end, tzinfo=tz)
    if end_local <= local_now:
        end_local += timedelta(days=1)
    return end_local.astimezone(timezone.utc)


def evaluate(pref: UserNotificationPreference, item: NotificationItem, now: datetime) -> GateDecision:
    if not pref.is_channel_enabled(item.channel):
        return Suppress(reason=f"{item.channel.value} disabled by user preference")
    if item.priority <= PRIORITY_HIGHEST:
        return Allow()
    until = quiet_window_end(pref, now)
    if until is not None:
        return Defer(until=until)
    return Allow()


class PreferenceGate:
    """
    Usage:
        gate = PreferenceGate(store, default_timezone="America/Bogota")
        decision = await gate.check(item)
        if isinstance(decision, Suppress): ...
    """

    def __init__(self, store: BaseStore, default_timezone: str = "UTC"):
        self._store = store
        self.default_timezone = default_timezone

    async def get_or_create(self, user_id: str) -> UserNotificationPreference:
        """Preferences are created with defaults on first reference."""
        pref = await self._store.get_preference(user_id)
        if pref is None:
            pref = UserNotificationPreference(user_id=user_id, timezone=self.default_timezone)
            await self._store.save_preference(pref)
            logger.info("preferences_created", user_id=user_id, timezone=pref.timezone)
        return pref

    async def update(self, user_id: str, changes: dict[str, Any]) -> UserNotificationPreference:
        changes = dict(changes)
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationFailed(f"Unknown preference fields: {', '.join(sorted(unknown))}")
        if "timezone" in changes:
            _zone(changes["timezone"])
        for key in ("quiet_hours_start", "quiet_hours_end"):
            value = changes.get(key)
            if isinstance(value, str):
                try:
                    changes[key] = time.fromisoformat(value)
                except ValueError as e:
                    raise ValidationFailed(f"{key} must be HH:MM, got {value!r}") from e
            elif value is not None and not isinstance(value, time):
                raise ValidationFailed(f"{key} must be HH:MM, got {value!r}")

        pref = await self.get_or_create(user_id)
        try:
            pref = UserNotificationPreference.model_validate({**pref.model_dump(), **changes})
        except PydanticValidationError as e:
            raise ValidationFailed(f"Invalid preferences for {user_id}: {e}") from e
        if (pref.quiet_hours_start is None) != (pref.quiet_hours_end is None):
            raise ValidationFailed("quiet_hours_start and quiet_hours_end must be set together")
        pref = await self._store.save_preference(pref)
        logger.info("preferences_updated", user_id=user_id, fields=sorted(changes))
        return pref

    async def check(self, item: NotificationItem, now: Optional[datetime] = None) -> GateDecision:
        pref = await self.get_or_create(item.user_id)
        decision = evaluate(pref, item, now or utcnow())
        if not isinstance(decision, Allow):
            logger.info("preference_gate",
                        item_id=item.id,
                        user_id=item.user_id,
                        channel=item.channel.value,
                        decision=decision.kind)
        return decision
