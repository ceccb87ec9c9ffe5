"""
CareAlert — Emergency Alert Dispatcher.

Raising an alert:
    1. persist an open EmergencyAlert,
    2. push `emergency` to the owner's room,
    3. resolve recipients and push to every caregiver account's room,
    4. when the SMS policy allows it, fan out SMS to the resolved list.

SMS fan-out walks the priority-ordered recipient list in fixed batches:
sends inside a batch run concurrently, batches run one after another.
Every send is caught on its own and recorded in the delivery report, so
one rejected number never stops the others.

Acknowledge/resolve only move status forward and re-broadcast
`emergency-update` to the owner and caregiver rooms.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from carealert.adapters.room_registry import RoomKey
from carealert.core.clock import Clock, utc_now
from carealert.core.errors import NotFoundError, ValidationError
from carealert.data.models import AlertStatus, EmergencyAlert, Location, Role, SentVia

if TYPE_CHECKING:
    from carealert.core.recipients import RecipientCandidate, RecipientResolver
    from carealert.data.db import AlertDB
    from carealert.ports.push_port import PushPort
    from carealert.ports.sms_port import SmsPort

logger = logging.getLogger(__name__)

EMERGENCY_EVENT = "emergency"
EMERGENCY_UPDATE_EVENT = "emergency-update"

STATUS_SENT = "sent"
STATUS_FAILED = "failed"


@dataclass
class DeliveryReportEntry:
    """Outcome of one SMS attempt."""

    to: str
    status: str
    name: str = ""
    source_type: str = ""
    sid: str | None = None
    error: str | None = None


@dataclass
class AlertDispatchResult:
    alert: EmergencyAlert
    delivery_report: list[DeliveryReportEntry] = field(default_factory=list)
    rooms_notified: list[RoomKey] = field(default_factory=list)
    sms_skipped_reason: str | None = None


def format_alert_sms(alert: EmergencyAlert, owner_name: str | None) -> str:
    """Human-readable SMS body for an emergency alert."""
    when = alert.created_at.strftime("%Y-%m-%d %H:%M UTC")
    lines = [
        "🚨 EMERGENCY ALERT 🚨",
        f"From: {owner_name or 'Unknown User'}",
        f"Message: {alert.message}",
    ]
    if alert.location and alert.location.address:
        lines.append(f"📍 Location: {alert.location.address}")
    lines.append(f"Time: {when}")
    if alert.location and alert.location.has_coordinates:
        lines.append("")
        lines.append(
            f"View on map: https://www.google.com/maps?q={alert.location.lat},{alert.location.lng}"
        )
    lines.append("")
    lines.append("Please respond when you receive this message.")
    return "\n".join(lines)


class AlertDispatcher:
    """Creates alerts and delivers them over push and SMS."""

    def __init__(
        self,
        alert_db: AlertDB,
        resolver: RecipientResolver,
        push: PushPort,
        sms: SmsPort | None = None,
        clock: Clock = utc_now,
        batch_size: int | None = None,
        sms_trigger_sources: list[str] | None = None,
    ) -> None:
        from carealert.config import settings

        self._alerts = alert_db
        self._resolver = resolver
        self._push = push
        self._sms = sms
        self._clock = clock
        self._batch_size = batch_size or settings.SMS_BATCH_SIZE
        if sms_trigger_sources is None:
            sms_trigger_sources = settings.SMS_TRIGGER_SOURCES
        self._sms_sources = frozenset(s.lower() for s in sms_trigger_sources)

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def sms_skip_reason(self, sent_via: SentVia) -> str | None:
        """None when SMS fan-out should run for this source, else why not."""
        if self._sms is None:
            return "SMS gateway not configured"
        if SentVia(sent_via).value not in self._sms_sources:
            return f"sentVia '{SentVia(sent_via).value}' does not trigger SMS"
        return None

    # ------------------------------------------------------------------
    # Raise
    # ------------------------------------------------------------------

    async def raise_alert(
        self,
        owner_id: int,
        message: str,
        sent_via: SentVia | str = SentVia.APP,
        location: Location | None = None,
    ) -> AlertDispatchResult:
        """Persist, push and (policy permitting) SMS an emergency alert."""
        if not message or not message.strip():
            raise ValidationError("message is required")
        try:
            via = SentVia(sent_via.strip().lower() if isinstance(sent_via, str) else sent_via)
        except ValueError:
            raise ValidationError(
                f"sentVia must be one of: {', '.join(v.value for v in SentVia)}"
            ) from None

        # Reading the owner first: if this fails nothing is created.
        owner = self._resolver.owner(owner_id)
        if owner.role is not Role.ELDERLY:
            raise ValidationError(f"ownerId {owner_id} does not resolve to an elderly user")

        alert = self._alerts.add_alert(
            owner_id=owner.id,
            message=message.strip(),
            sent_via=via,
            created_at=self._clock(),
            location=location,
        )
        logger.info("Emergency alert #%d raised for owner #%d via %s", alert.id, owner.id, via.value)

        result = AlertDispatchResult(alert=alert)
        payload = {"alert": alert.to_event()}

        owner_room = RoomKey.elderly(owner.id)
        await self._publish(owner_room, EMERGENCY_EVENT, payload)
        result.rooms_notified.append(owner_room)

        recipients = self._resolver.resolve(owner.id)
        for account in self._resolver.caregiver_accounts(owner.id):
            room = RoomKey.caregiver(account.id)
            await self._publish(room, EMERGENCY_EVENT, payload)
            result.rooms_notified.append(room)

        reason = self.sms_skip_reason(via)
        if reason is not None:
            logger.info("SMS notifications skipped for alert #%d: %s", alert.id, reason)
            result.sms_skipped_reason = reason
            return result

        body = format_alert_sms(alert, owner.name)
        logger.info("Sending alert #%d to %d recipient(s)", alert.id, len(recipients))
        result.delivery_report = await self.fan_out(recipients, body)
        return result

    async def fan_out(
        self, recipients: list[RecipientCandidate], body: str,
    ) -> list[DeliveryReportEntry]:
        """Send body to every recipient, batch by batch, never raising."""
        report: list[DeliveryReportEntry] = []
        for start in range(0, len(recipients), self._batch_size):
            batch = recipients[start:start + self._batch_size]
            report.extend(await asyncio.gather(*(self._send_one(r, body) for r in batch)))
        return report

    async def _send_one(self, recipient: RecipientCandidate, body: str) -> DeliveryReportEntry:
        entry = DeliveryReportEntry(
            to=recipient.contact_handle,
            status=STATUS_SENT,
            name=recipient.display_name,
            source_type=recipient.source_type.value,
        )
        try:
            receipt = await self._sms.send(recipient.contact_handle, body)
            entry.sid = receipt.id
            logger.info("Sent alert to %s (%s)", recipient.display_name, recipient.contact_handle)
        except Exception as exc:
            entry.status = STATUS_FAILED
            entry.error = str(exc) or "Failed to send"
            logger.warning(
                "Failed to send to %s (%s): %s",
                recipient.display_name, recipient.contact_handle, entry.error,
            )
        return entry

    async def _publish(self, room: RoomKey, event: str, payload: dict) -> None:
        try:
            await self._push.publish(room, event, payload)
        except Exception as exc:
            logger.warning("Push of '%s' to room %s failed: %s", event, room, exc)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def get(self, alert_id: int) -> EmergencyAlert:
        alert = self._alerts.get_alert(alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert

    async def acknowledge(self, alert_id: int) -> EmergencyAlert:
        return await self._transition(alert_id, AlertStatus.ACKNOWLEDGED)

    async def resolve(self, alert_id: int) -> EmergencyAlert:
        return await self._transition(alert_id, AlertStatus.RESOLVED)

    async def _transition(self, alert_id: int, target: AlertStatus) -> EmergencyAlert:
        """Move forward to target, or return the alert unchanged if it is already there or past it."""
        alert = self.get(alert_id)
        if not alert.status.can_move_to(target):
            logger.info(
                "Alert #%d already %s; '%s' ignored", alert.id, alert.status.value, target.value,
            )
            return alert

        if not self._alerts.advance_status(alert_id, target):
            # Another writer moved it first; report what is stored now.
            return self.get(alert_id)

        alert = self.get(alert_id)
        logger.info("Alert #%d is now %s", alert.id, alert.status.value)
        await self._broadcast_update(alert)
        return alert

    async def _broadcast_update(self, alert: EmergencyAlert) -> None:
        payload = {"alert": alert.to_event()}
        await self._publish(RoomKey.elderly(alert.owner_id), EMERGENCY_UPDATE_EVENT, payload)
        for account in self._resolver.caregiver_accounts(alert.owner_id):
            await self._publish(RoomKey.caregiver(account.id), EMERGENCY_UPDATE_EVENT, payload)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_for_owners(self, owner_ids: list[int], limit: int | None = None) -> list[EmergencyAlert]:
        if limit is None:
            from carealert.config import settings
            limit = settings.ALERT_LIST_LIMIT
        return self._alerts.list_for_owners(owner_ids, limit=limit)
