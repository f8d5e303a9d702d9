"""Tests for the preference gate: channel opt-outs, quiet hours and update validation."""
import pytest
from datetime import datetime, time, timezone

from job_queue.preferences import Allow, Defer, Suppress, evaluate, quiet_window_end
from models.errors import ValidationFailed
from models.schemas import ChannelType, NotificationItem, UserNotificationPreference


def _item(channel=ChannelType.PUSH, priority=3):
    return NotificationItem(user_id="u1", template_name="t", channel=channel, priority=priority)


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestQuietWindowEnd:
    def test_outside_window(self):
        pref = UserNotificationPreference(user_id="u1", quiet_hours_start=time(22), quiet_hours_end=time(7))
        assert quiet_window_end(pref, _utc(2025, 3, 10, 12, 0)) is None

    def test_before_midnight_ends_next_morning(self):
        pref = UserNotificationPreference(user_id="u1", quiet_hours_start=time(22), quiet_hours_end=time(7))
        assert quiet_window_end(pref, _utc(2025, 3, 10, 23, 30)) == _utc(2025, 3, 11, 7, 0)

    def test_after_midnight_ends_same_morning(self):
        pref = UserNotificationPreference(user_id="u1", quiet_hours_start=time(22), quiet_hours_end=time(7))
        assert quiet_window_end(pref, _utc(2025, 3, 11, 2, 0)) == _utc(2025, 3, 11, 7, 0)

    def test_local_timezone_converted_back_to_utc(self):
        # Bogotá is UTC-5 all year
        pref = UserNotificationPreference(
            user_id="u1", quiet_hours_start=time(22), quiet_hours_end=time(7), timezone="America/Bogota",
        )
        # 04:00 UTC == 23:00 local
        assert quiet_window_end(pref, _utc(2025, 3, 11, 4, 0)) == _utc(2025, 3, 11, 12, 0)
        # 13:00 UTC == 08:00 local, outside the window
        assert quiet_window_end(pref, _utc(2025, 3, 11, 13, 0)) is None

    def test_end_is_exclusive(self):
        pref = UserNotificationPreference(user_id="u1", quiet_hours_start=time(22), quiet_hours_end=time(7))
        assert quiet_window_end(pref, _utc(2025, 3, 11, 7, 0)) is None


class TestEvaluate:
    def test_allow_by_default(self):
        pref = UserNotificationPreference(user_id="u1")
        assert isinstance(evaluate(pref, _item(), _utc(2025, 3, 10, 23)), Allow)

    def test_disabled_channel_suppresses(self):
        pref = UserNotificationPreference(user_id="u1", push_enabled=False)
        decision = evaluate(pref, _item(), _utc(2025, 3, 10, 12))
        assert isinstance(decision, Suppress)
        assert "push" in decision.reason

    def test_suppress_beats_quiet_hours(self):
        pref = UserNotificationPreference(
            user_id="u1", push_enabled=False, quiet_hours_start=time(22), quiet_hours_end=time(7),
        )
        assert isinstance(evaluate(pref, _item(), _utc(2025, 3, 10, 23)), Suppress)

    def test_quiet_hours_defer(self):
        pref = UserNotificationPreference(user_id="u1", quiet_hours_start=time(22), quiet_hours_end=time(7))
        decision = evaluate(pref, _item(), _utc(2025, 3, 10, 23))
        assert isinstance(decision, Defer)
        assert decision.until == _utc(2025, 3, 11, 7)

    def test_urgent_never_deferred(self):
        pref = UserNotificationPreference(user_id="u1", quiet_hours_start=time(22), quiet_hours_end=time(7))
        assert isinstance(evaluate(pref, _item(priority=1), _utc(2025, 3, 10, 23)), Allow)

    def test_urgent_still_suppressed(self):
        pref = UserNotificationPreference(user_id="u1", email_enabled=False)
        assert isinstance(evaluate(pref, _item(ChannelType.EMAIL, priority=1), _utc(2025, 3, 10, 9)), Suppress)


class TestPreferenceGate:
    @pytest.mark.asyncio
    async def test_created_with_defaults(self, gate, store):
        pref = await gate.get_or_create("u1")
        assert pref.email_enabled and pref.push_enabled and pref.in_app_enabled and pref.sms_enabled
        assert not pref.has_quiet_hours
        assert pref.timezone == "UTC"
        assert await store.get_preference("u1") is not None

    @pytest.mark.asyncio
    async def test_update_parses_times(self, gate):
        pref = await gate.update("u1", {"quiet_hours_start": "22:00", "quiet_hours_end": "07:00",
                                        "timezone": "America/Bogota", "sms_enabled": False})
        assert pref.quiet_hours_start == time(22)
        assert pref.quiet_hours_end == time(7)
        assert pref.timezone == "America/Bogota"
        assert not pref.sms_enabled
        assert (await gate.get_or_create("u1")).quiet_hours_end == time(7)

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, gate):
        with pytest.raises(ValidationFailed):
            await gate.update("u1", {"user_id": "other"})

    @pytest.mark.asyncio
    async def test_update_rejects_bad_timezone(self, gate):
        with pytest.raises(ValidationFailed):
            await gate.update("u1", {"timezone": "Mars/Olympus"})

    @pytest.mark.asyncio
    async def test_update_rejects_half_window(self, gate):
        with pytest.raises(ValidationFailed):
            await gate.update("u1", {"quiet_hours_start": "22:00"})

    @pytest.mark.asyncio
    async def test_update_rejects_bad_time(self, gate):
        with pytest.raises(ValidationFailed):
            await gate.update("u1", {"quiet_hours_start": "late", "quiet_hours_end": "07:00"})

    @pytest.mark.asyncio
    async def test_check_uses_stored_preference(self, gate):
        await gate.update("u1", {"push_enabled": False})
        assert isinstance(await gate.check(_item(), _utc(2025, 3, 10, 12)), Suppress)
        assert isinstance(await gate.check(_item(ChannelType.IN_APP), _utc(2025, 3, 10, 12)), Allow)

    @pytest.mark.asyncio
    async def test_update_rejects_non_boolean_flag(self, gate):
        with pytest.raises(ValidationFailed):
            await gate.update("u1", {"email_enabled": "nope"})
        assert (await gate.get_or_create("u1")).email_enabled is True

    @pytest.mark.asyncio
    async def test_update_rejects_numeric_quiet_hours(self, gate):
        with pytest.raises(ValidationFailed):
            await gate.update("u1", {"email_enabled": "nope", "quiet_hours_start": 5, "quiet_hours_end": 7})
        with pytest.raises(ValidationFailed):
            await gate.update("u1", {"quiet_hours_start": 5, "quiet_hours_end": 7})

        # The rejected updates left nothing behind for the gate to trip over
        pref = await gate.get_or_create("u1")
        assert not pref.has_quiet_hours
        assert isinstance(await gate.check(_item(ChannelType.EMAIL), _utc(2025, 3, 10, 6)), Allow)

    @pytest.mark.asyncio
    async def test_update_rejects_null_flag(self, gate):
        with pytest.raises(ValidationFailed):
            await gate.update("u1", {"push_enabled": None})
