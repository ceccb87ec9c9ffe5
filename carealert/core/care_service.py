"""
CareAlert — Channel-Agnostic Care Service.

The operations a transport (HTTP, websocket, CLI) exposes, each taking the
authenticated actor id supplied by the session layer. This layer validates
payloads, checks who may act on which record, and delegates to the reminder
engine and alert dispatcher. It never renders anything itself.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from carealert.core.errors import ForbiddenError, NotFoundError, ValidationError
from carealert.data.models import Location, Role
from carealert.ports.sms_port import GatewayError

if TYPE_CHECKING:
    from carealert.adapters.room_registry import RoomKey, RoomRegistry, Sink
    from carealert.core.alert_dispatcher import AlertDispatcher, AlertDispatchResult
    from carealert.core.recipients import RecipientResolver
    from carealert.core.reminder_engine import ReminderEngine
    from carealert.data.db import CaregiverDB, UserDB
    from carealert.data.models import EmergencyAlert, Reminder, User
    from carealert.ports.sms_port import SmsPort, SmsReceipt

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Inbound payloads
# ---------------------------------------------------------------------------


class ReminderRequest(BaseModel):
    """createReminder payload.

    JSON example:
    {
        "ownerEmail": "grandma@example.com",
        "text": "Take medication",
        "fireAt": "2026-10-18T09:00:00Z",
        "recurrence": "daily",
        "meta": {"medicationName": "Aspirin", "dose": "100mg"}
    }
    """
    model_config = ConfigDict(populate_by_name=True)

    owner_id: int | None = Field(default=None, alias="ownerId")
    owner_email: str | None = Field(default=None, alias="ownerEmail")
    text: str = ""
    fire_at: datetime | None = Field(default=None, alias="fireAt")
    recurrence: str = "none"
    meta: dict | None = None


class LocationIn(BaseModel):
    lat: float | None = None
    lng: float | None = None
    address: str | None = None


class AlertRequest(BaseModel):
    """raiseAlert payload. ownerId is only honoured for caregivers."""
    model_config = ConfigDict(populate_by_name=True)

    message: str = ""
    location: LocationIn | None = None
    sent_via: str = Field(default="app", alias="sentVia")
    owner_id: int | None = Field(default=None, alias="ownerId")


def _parse(model: type[BaseModel], payload: BaseModel | dict[str, Any]) -> Any:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(problems) from None


# ---------------------------------------------------------------------------
# CareService
# ---------------------------------------------------------------------------


class CareService:
    """Actor-scoped facade over reminders, alerts and realtime rooms."""

    def __init__(
        self,
        user_db: UserDB,
        caregiver_db: CaregiverDB,
        reminders: ReminderEngine,
        alerts: AlertDispatcher,
        resolver: RecipientResolver,
        rooms: RoomRegistry,
        sms: SmsPort | None = None,
    ) -> None:
        self._users = user_db
        self._caregivers = caregiver_db
        self._reminders = reminders
        self._alerts = alerts
        self._resolver = resolver
        self._rooms = rooms
        self._sms = sms

    def _actor(self, actor_id: int) -> User:
        user = self._users.get_user(actor_id)
        if user is None:
            raise NotFoundError(f"User {actor_id} not found")
        return user

    def _may_act_for(self, actor: User, owner_id: int) -> bool:
        """Owner themself, or a caregiver account attached to the owner."""
        if actor.id == owner_id:
            return True
        if actor.role is not Role.CAREGIVER:
            return False
        return any(u.id == actor.id for u in self._resolver.caregiver_accounts(owner_id))

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def connect(self, connection_id: str, user_id: int, sink: Sink) -> list[RoomKey]:
        """Register a live connection and join the rooms its user listens on."""
        user = self._actor(user_id)
        self._rooms.connect(connection_id, sink)
        joined = self._rooms.join_user_rooms(connection_id, user.id, user.role)
        logger.info(
            "Connection %s joined %s", connection_id, ", ".join(str(r) for r in joined),
        )
        return joined

    def disconnect(self, connection_id: str) -> None:
        self._rooms.disconnect(connection_id)

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def create_reminder(self, actor_id: int, payload: ReminderRequest | dict) -> Reminder:
        actor = self._actor(actor_id)
        if actor.role is not Role.CAREGIVER:
            raise ForbiddenError("only caregivers can create reminders")

        request = _parse(ReminderRequest, payload)
        owner_id = request.owner_id
        if owner_id is None and request.owner_email:
            elderly = self._users.find_by_email(request.owner_email, role=Role.ELDERLY)
            if elderly is None:
                raise NotFoundError(f"elderly user {request.owner_email} not found")
            owner_id = elderly.id
        if owner_id is None:
            raise ValidationError("ownerId or ownerEmail is required")

        return self._reminders.schedule(
            owner_id=owner_id,
            author_id=actor.id,
            text=request.text,
            fire_at=request.fire_at,
            recurrence_value=request.recurrence,
            meta=request.meta,
        )

    def list_reminders(self, actor_id: int) -> list[Reminder]:
        """Caregivers see what they authored; elderly see their active reminders."""
        actor = self._actor(actor_id)
        if actor.role is Role.CAREGIVER:
            return self._reminders.list_for_author(actor.id)
        return self._reminders.list_for_owner(actor.id)

    def acknowledge_reminder(
        self,
        actor_id: int,
        reminder_id: int,
        action: str,
        snooze_minutes: int | str | None = None,
    ) -> Reminder:
        return self._reminders.acknowledge(reminder_id, actor_id, action, snooze_minutes)

    async def trigger_reminder(self, actor_id: int, reminder_id: int) -> int:
        return await self._reminders.trigger(reminder_id, actor_id)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def raise_alert(
        self, actor_id: int, payload: AlertRequest | dict,
    ) -> AlertDispatchResult:
        actor = self._actor(actor_id)
        request = _parse(AlertRequest, payload)

        if request.owner_id is None and actor.role is Role.CAREGIVER:
            raise ValidationError("ownerId is required when a caregiver raises an alert")

        owner_id = actor.id
        if request.owner_id is not None and request.owner_id != actor.id:
            if not self._may_act_for(actor, request.owner_id):
                raise ForbiddenError("not authorized to raise alerts for this user")
            owner_id = request.owner_id

        location = None
        if request.location is not None:
            location = Location(**request.location.model_dump())

        return await self._alerts.raise_alert(
            owner_id=owner_id,
            message=request.message,
            sent_via=request.sent_via,
            location=location,
        )

    def list_alerts(self, actor_id: int) -> list[EmergencyAlert]:
        """Elderly see their own alerts; caregivers only those of their assigned elderly."""
        actor = self._actor(actor_id)
        if actor.role is not Role.CAREGIVER:
            return self._alerts.list_for_owners([actor.id])

        assigned = {r.elderly_id for r in self._caregivers.find_assignments(actor.email, actor.phone)}
        assigned.update(self._users.linked_elderly_ids(actor.id))
        alerts = self._alerts.list_for_owners(sorted(assigned))
        logger.debug(
            "Caregiver #%d has %d assigned elderly, showing %d alerts",
            actor.id, len(assigned), len(alerts),
        )
        return alerts

    async def acknowledge_alert(self, actor_id: int, alert_id: int) -> EmergencyAlert:
        self._authorize_alert(actor_id, alert_id)
        return await self._alerts.acknowledge(alert_id)

    async def resolve_alert(self, actor_id: int, alert_id: int) -> EmergencyAlert:
        self._authorize_alert(actor_id, alert_id)
        return await self._alerts.resolve(alert_id)

    def _authorize_alert(self, actor_id: int, alert_id: int) -> None:
        alert = self._alerts.get(alert_id)
        if not self._may_act_for(self._actor(actor_id), alert.owner_id):
            raise ForbiddenError("not authorized for this alert")

    # ------------------------------------------------------------------
    # Test SMS
    # ------------------------------------------------------------------

    async def send_test_sms(self, actor_id: int, caregiver_contact_id: int) -> SmsReceipt:
        """Send a one-off test message to one of the owner's SMS-enabled caregivers."""
        actor = self._actor(actor_id)
        record = self._caregivers.get_caregiver(caregiver_contact_id)
        if record is None or record.elderly_id != actor.id or not record.receive_sms:
            raise NotFoundError("Caregiver not found or SMS not enabled")
        if self._sms is None:
            raise GatewayError("SMS gateway not configured")

        body = (
            f"Test message from CareAlert: This is a test SMS from "
            f"{actor.name}'s emergency contact system."
        )
        receipt = await self._sms.send(record.phone, body)
        logger.info("Test SMS sent to caregiver contact #%d", record.id)
        return receipt
