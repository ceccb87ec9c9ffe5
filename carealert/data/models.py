"""
CareAlert — Data Models.

Reminders and emergency alerts persist in SQLite and are keyed by the
elderly owner. Users, emergency contacts and caregiver contact records are
read by the notification core but managed elsewhere.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum


class Role(str, Enum):
    ELDERLY = "elderly"
    CAREGIVER = "caregiver"


class Recurrence(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"


class SentVia(str, Enum):
    APP = "app"
    VOICE = "voice"
    BUTTON = "button"
    AUTO = "auto"


class AlertStatus(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def can_move_to(self, target: AlertStatus) -> bool:
        """Status only moves forward: open -> acknowledged -> resolved."""
        return target.rank > self.rank


_STATUS_RANK = {
    AlertStatus.OPEN: 0,
    AlertStatus.ACKNOWLEDGED: 1,
    AlertStatus.RESOLVED: 2,
}


@dataclass
class EmergencyContact:
    """A family contact declared on the elderly user's own profile."""

    name: str
    phone: str
    relation: str = ""
    primary: bool = False


@dataclass
class User:
    """An account holder: either an elderly owner or a caregiver."""

    id: int
    name: str
    email: str
    role: Role = Role.ELDERLY
    phone: str | None = None
    emergency_contacts: list[EmergencyContact] = field(default_factory=list)
    created_at: str = ""


@dataclass
class CaregiverContact:
    """A caregiver-management record attached to one elderly user.

    May or may not correspond to a caregiver account; the match is made by
    email or phone when rooms are resolved.
    """

    id: int
    elderly_id: int
    name: str
    email: str
    phone: str
    receive_sms: bool = True
    is_primary: bool = False


@dataclass
class Location:
    lat: float | None = None
    lng: float | None = None
    address: str | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None


@dataclass
class Reminder:
    """A scheduled care reminder for an elderly owner.

    The due-check and "taken" only move next_fire_at forward; snooze sets
    it to now + N. Inactive reminders are never selected by the due-check
    and are never hard-deleted.
    """

    id: int
    owner_id: int
    author_id: int | None
    text: str
    next_fire_at: datetime
    recurrence: Recurrence = Recurrence.NONE
    active: bool = True
    meta: dict | None = None
    created_at: str = ""

    def to_event(self) -> dict:
        """Payload of the `reminder` push event."""
        return {
            "id": self.id,
            "text": self.text,
            "meta": self.meta,
            "fireAt": self.next_fire_at.isoformat(),
        }


@dataclass
class EmergencyAlert:
    """An emergency raised by (or on behalf of) an elderly owner.

    message and location are fixed at creation; only status changes.
    """

    id: int
    owner_id: int
    message: str
    sent_via: SentVia
    created_at: datetime
    location: Location | None = None
    status: AlertStatus = AlertStatus.OPEN

    def to_event(self) -> dict:
        """Serializable form carried by `emergency` / `emergency-update` events."""
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "message": self.message,
            "location": asdict(self.location) if self.location else None,
            "sentVia": self.sent_via.value,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
        }


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
