"""Shared test fixtures and configuration.

Sets up fake environment variables before carealert.config loads, and
provides temp-file stores, a controllable clock, and recording fakes for
the push and SMS ports.
"""

import os

# Patch env vars BEFORE any carealert imports
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TWILIO_SID", "")
os.environ.setdefault("TWILIO_AUTH_TOKEN", "")
os.environ.setdefault("TWILIO_FROM", "")
os.environ.setdefault("SEND_REMINDER_SMS", "false")
os.environ.setdefault("SMS_TRIGGER_SOURCES", "voice,button,auto")

from datetime import datetime, timedelta, timezone

import pytest

from carealert.ports.sms_port import GatewayError, SmsReceipt


T0 = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingPush:
    """PushPort fake: records (room, event, payload) and reports one delivery."""

    def __init__(self) -> None:
        self.published: list[tuple] = []

    async def publish(self, room, event, payload) -> int:
        self.published.append((room, event, payload))
        return 1

    def rooms_for(self, event: str) -> list:
        return [room for room, ev, _ in self.published if ev == event]


class FakeSms:
    """SmsPort fake: records sends; numbers in fail_for raise GatewayError."""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail_for = fail_for or set()

    async def send(self, phone_number: str, body: str) -> SmsReceipt:
        if phone_number in self.fail_for:
            raise GatewayError(f"unverified number {phone_number}", code=21608)
        self.sent.append((phone_number, body))
        return SmsReceipt(id=f"SM{len(self.sent):04d}", status="queued", to=phone_number)


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_carealert.db")


@pytest.fixture
def user_db(tmp_db_path):
    from carealert.data.db import UserDB
    return UserDB(db_path=tmp_db_path)


@pytest.fixture
def caregiver_db(tmp_db_path):
    from carealert.data.db import CaregiverDB
    return CaregiverDB(db_path=tmp_db_path)


@pytest.fixture
def reminder_db(tmp_db_path):
    from carealert.data.db import ReminderDB
    return ReminderDB(db_path=tmp_db_path)


@pytest.fixture
def alert_db(tmp_db_path):
    from carealert.data.db import AlertDB
    return AlertDB(db_path=tmp_db_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def push():
    return RecordingPush()


@pytest.fixture
def sms():
    return FakeSms()


@pytest.fixture
def elderly(user_db):
    """An elderly owner with no contacts yet."""
    from carealert.data.models import Role
    return user_db.add_user("Rosa", "rosa@example.com", role=Role.ELDERLY, phone="+15550000001")


@pytest.fixture
def caregiver(user_db):
    """A caregiver account (not yet attached to anyone)."""
    from carealert.data.models import Role
    return user_db.add_user("Nurse Joy", "joy@example.com", role=Role.CAREGIVER, phone="+15550000002")
