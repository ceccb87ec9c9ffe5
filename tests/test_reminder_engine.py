"""Tests for carealert.core.reminder_engine — scheduling, due-check, acknowledgment."""

import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from carealert.adapters.room_registry import RoomKey, RoomRegistry
from carealert.core.errors import ForbiddenError, NotFoundError, ValidationError
from carealert.core.reminder_engine import REMINDER_EVENT, ReminderEngine
from carealert.data.db import PersistenceError
from carealert.data.models import EmergencyContact, Recurrence
from conftest import T0, FakeSms


@pytest.fixture
def engine(reminder_db, user_db, push, clock):
    return ReminderEngine(
        reminder_db, user_db, push, clock=clock,
        poll_seconds=60, default_snooze_minutes=10, send_family_sms=False,
    )


# ---------------------------------------------------------------------------
# schedule
# ---------------------------------------------------------------------------


class TestSchedule:
    def test_creates_active_reminder(self, engine, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "  Take medication ", T0, "weekly")
        assert r.active is True
        assert r.text == "Take medication"
        assert r.recurrence is Recurrence.WEEKLY
        assert r.next_fire_at == T0

    def test_recurrence_is_case_insensitive(self, engine, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "Walk", T0, "DAILY")
        assert r.recurrence is Recurrence.DAILY

    def test_naive_fire_at_is_utc(self, engine, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "Walk", T0.replace(tzinfo=None))
        assert r.next_fire_at == T0

    @pytest.mark.parametrize("text", ["", "   "])
    def test_missing_text(self, engine, elderly, caregiver, text):
        with pytest.raises(ValidationError):
            engine.schedule(elderly.id, caregiver.id, text, T0)

    def test_missing_fire_at(self, engine, elderly, caregiver):
        with pytest.raises(ValidationError):
            engine.schedule(elderly.id, caregiver.id, "Walk", None)

    def test_bad_recurrence(self, engine, elderly, caregiver):
        with pytest.raises(ValidationError):
            engine.schedule(elderly.id, caregiver.id, "Walk", T0, "monthly")

    def test_owner_must_be_elderly(self, engine, caregiver):
        with pytest.raises(ValidationError):
            engine.schedule(caregiver.id, caregiver.id, "Walk", T0)

    def test_unknown_owner(self, engine, caregiver):
        with pytest.raises(ValidationError):
            engine.schedule(999, caregiver.id, "Walk", T0)


# ---------------------------------------------------------------------------
# due_check
# ---------------------------------------------------------------------------


class TestDueCheck:
    @pytest.mark.asyncio
    async def test_weekly_reminder_fires_and_advances(self, engine, reminder_db, push, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "Take medication", T0, Recurrence.WEEKLY)

        fired = await engine.due_check(T0)

        assert [f.id for f in fired] == [r.id]
        assert push.published == [(
            RoomKey.elderly(elderly.id),
            REMINDER_EVENT,
            {"id": r.id, "text": "Take medication", "meta": None, "fireAt": T0.isoformat()},
        )]
        stored = reminder_db.get_reminder(r.id)
        assert stored.next_fire_at == T0 + timedelta(days=7)
        assert stored.active is True

    @pytest.mark.asyncio
    async def test_lookahead_equals_poll_interval(self, engine, push, elderly, caregiver):
        engine.schedule(elderly.id, caregiver.id, "Inside window", T0 + timedelta(seconds=60))
        engine.schedule(elderly.id, caregiver.id, "Outside window", T0 + timedelta(seconds=61))

        fired = await engine.due_check(T0)

        assert [f.text for f in fired] == ["Inside window"]

    @pytest.mark.asyncio
    async def test_uses_clock_when_now_omitted(self, engine, clock, elderly, caregiver):
        engine.schedule(elderly.id, caregiver.id, "Later", T0 + timedelta(hours=1))
        assert await engine.due_check() == []
        clock.advance(hours=1)
        assert len(await engine.due_check()) == 1

    @pytest.mark.asyncio
    async def test_one_shot_deactivates_and_is_never_reselected(self, engine, reminder_db, push, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "Doctor", T0)

        await engine.due_check(T0)
        await engine.due_check(T0 + timedelta(days=365))

        assert len(push.published) == 1
        assert reminder_db.get_reminder(r.id).active is False

    @pytest.mark.asyncio
    async def test_no_subscriber_is_not_an_error(self, reminder_db, user_db, clock, elderly, caregiver):
        engine = ReminderEngine(reminder_db, user_db, RoomRegistry(), clock=clock, poll_seconds=60)
        r = engine.schedule(elderly.id, caregiver.id, "Walk", T0, "daily")

        fired = await engine.due_check(T0)

        assert len(fired) == 1
        assert reminder_db.get_reminder(r.id).next_fire_at == T0 + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_stalled_connection_does_not_block_the_pass(
        self, reminder_db, user_db, clock, elderly, caregiver,
    ):
        received = []

        async def live(event, payload):
            received.append(event)

        async def stalled(event, payload):
            await asyncio.Event().wait()

        rooms = RoomRegistry(sink_timeout=0.05)
        rooms.connect("phone", live)
        rooms.connect("tablet", stalled)
        rooms.join_user_rooms("phone", elderly.id, elderly.role)
        rooms.join_user_rooms("tablet", elderly.id, elderly.role)
        engine = ReminderEngine(reminder_db, user_db, rooms, clock=clock, poll_seconds=60)
        r = engine.schedule(elderly.id, caregiver.id, "Pills", T0, "daily")

        fired = await asyncio.wait_for(engine.due_check(T0), timeout=2)

        assert [f.id for f in fired] == [r.id]
        assert received == [REMINDER_EVENT]
        assert reminder_db.get_reminder(r.id).next_fire_at == T0 + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_persistence_failure_retries_next_poll(self, engine, reminder_db, push, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "Pills", T0, "daily")

        with patch.object(reminder_db, "save", side_effect=PersistenceError("disk full")):
            fired = await engine.due_check(T0)

        assert fired == []
        assert reminder_db.get_reminder(r.id).next_fire_at == T0

        fired = await engine.due_check(T0 + timedelta(seconds=60))
        assert [f.id for f in fired] == [r.id]
        assert len(push.rooms_for(REMINDER_EVENT)) == 2
        assert reminder_db.get_reminder(r.id).next_fire_at == T0 + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_failure_on_one_reminder_does_not_stop_others(self, engine, reminder_db, elderly, caregiver):
        first = engine.schedule(elderly.id, caregiver.id, "First", T0)
        second = engine.schedule(elderly.id, caregiver.id, "Second", T0 + timedelta(seconds=1))
        real_save = reminder_db.save

        def flaky_save(reminder):
            if reminder.id == first.id:
                raise PersistenceError("locked")
            real_save(reminder)

        with patch.object(reminder_db, "save", side_effect=flaky_save):
            fired = await engine.due_check(T0)

        assert [f.id for f in fired] == [second.id]


# ---------------------------------------------------------------------------
# acknowledge
# ---------------------------------------------------------------------------


class TestAcknowledge:
    def test_taken_daily_advances_24h(self, engine, reminder_db, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "Pills", T0, "daily")
        result = engine.acknowledge(r.id, elderly.id, "taken")
        assert result.next_fire_at == T0 + timedelta(hours=24)
        assert reminder_db.get_reminder(r.id).next_fire_at == T0 + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_taken_one_shot_deactivates_permanently(self, engine, reminder_db, push, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "Doctor", T0)
        engine.acknowledge(r.id, caregiver.id, "taken")

        assert reminder_db.get_reminder(r.id).active is False
        assert await engine.due_check(T0 + timedelta(days=30)) == []
        assert push.published == []

    def test_snooze_sets_now_plus_minutes(self, engine, reminder_db, clock, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "Pills", T0, "weekly")
        clock.advance(minutes=3)
        result = engine.acknowledge(r.id, elderly.id, "snooze", 10)
        assert result.next_fire_at == T0 + timedelta(minutes=13)
        assert result.active is True

    def test_snooze_reactivates_inactive_reminder(self, engine, reminder_db, clock, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "Doctor", T0)
        engine.acknowledge(r.id, elderly.id, "taken")
        result = engine.acknowledge(r.id, elderly.id, "snooze", "5")
        assert result.active is True
        assert reminder_db.get_reminder(r.id).next_fire_at == T0 + timedelta(minutes=5)

    def test_snooze_default_minutes(self, engine, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "Pills", T0)
        assert engine.acknowledge(r.id, elderly.id, "snooze").next_fire_at == T0 + timedelta(minutes=10)

    @pytest.mark.parametrize("minutes", [0, -5, "soon"])
    def test_snooze_rejects_bad_minutes(self, engine, elderly, caregiver, minutes):
        r = engine.schedule(elderly.id, caregiver.id, "Pills", T0)
        with pytest.raises(ValidationError):
            engine.acknowledge(r.id, elderly.id, "snooze", minutes)

    def test_stranger_is_forbidden(self, engine, user_db, elderly, caregiver):
        stranger = user_db.add_user("Eve", "eve@example.com")
        r = engine.schedule(elderly.id, caregiver.id, "Pills", T0)
        with pytest.raises(ForbiddenError):
            engine.acknowledge(r.id, stranger.id, "taken")

    def test_forbidden_checked_before_action(self, engine, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "Pills", T0)
        with pytest.raises(ForbiddenError):
            engine.acknowledge(r.id, 12345, "dance")

    def test_invalid_action(self, engine, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "Pills", T0)
        with pytest.raises(ValidationError):
            engine.acknowledge(r.id, elderly.id, "dance")

    def test_unknown_reminder(self, engine, elderly):
        with pytest.raises(NotFoundError):
            engine.acknowledge(999, elderly.id, "taken")


# ---------------------------------------------------------------------------
# trigger and family SMS
# ---------------------------------------------------------------------------


class TestTrigger:
    @pytest.mark.asyncio
    async def test_trigger_pushes_without_advancing(self, engine, reminder_db, push, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "Pills", T0 + timedelta(days=2), "daily")

        delivered = await engine.trigger(r.id, caregiver.id)

        assert delivered == 1
        assert push.rooms_for(REMINDER_EVENT) == [RoomKey.elderly(elderly.id)]
        assert reminder_db.get_reminder(r.id).next_fire_at == T0 + timedelta(days=2)

    @pytest.mark.asyncio
    async def test_trigger_forbidden_for_stranger(self, engine, elderly, caregiver):
        r = engine.schedule(elderly.id, caregiver.id, "Pills", T0)
        with pytest.raises(ForbiddenError):
            await engine.trigger(r.id, 4242)


class TestFamilySms:
    @pytest.mark.asyncio
    async def test_due_reminder_texts_emergency_contacts_only(
        self, reminder_db, user_db, caregiver_db, push, clock, elderly, caregiver,
    ):
        user_db.set_emergency_contacts(elderly.id, [
            EmergencyContact(name="Dan", phone="+1111"),
            EmergencyContact(name="No phone", phone=""),
        ])
        user_db.link_caregiver(elderly.id, caregiver.id)
        sms = FakeSms()
        engine = ReminderEngine(
            reminder_db, user_db, push, sms=sms, clock=clock,
            poll_seconds=60, send_family_sms=True,
        )
        engine.schedule(elderly.id, caregiver.id, "Pills", T0)

        await engine.due_check(T0)
        await engine.drain()

        assert [to for to, _ in sms.sent] == ["+1111"]
        assert "Reminder for Rosa: Pills" in sms.sent[0][1]

    @pytest.mark.asyncio
    async def test_sms_failure_does_not_block_due_check(
        self, reminder_db, user_db, push, clock, elderly, caregiver,
    ):
        user_db.set_emergency_contacts(elderly.id, [
            EmergencyContact(name="Bad", phone="+1000"),
            EmergencyContact(name="Good", phone="+2000"),
        ])
        sms = FakeSms(fail_for={"+1000"})
        engine = ReminderEngine(
            reminder_db, user_db, push, sms=sms, clock=clock,
            poll_seconds=60, send_family_sms=True,
        )
        r = engine.schedule(elderly.id, caregiver.id, "Pills", T0)

        fired = await engine.due_check(T0)
        await engine.drain()

        assert [f.id for f in fired] == [r.id]
        assert [to for to, _ in sms.sent] == ["+2000"]

    @pytest.mark.asyncio
    async def test_flag_off_sends_nothing(self, reminder_db, user_db, push, clock, elderly, caregiver):
        user_db.set_emergency_contacts(elderly.id, [EmergencyContact(name="Dan", phone="+1111")])
        sms = FakeSms()
        engine = ReminderEngine(
            reminder_db, user_db, push, sms=sms, clock=clock,
            poll_seconds=60, send_family_sms=False,
        )
        engine.schedule(elderly.id, caregiver.id, "Pills", T0)

        await engine.due_check(T0)
        await engine.drain()

        assert sms.sent == []
