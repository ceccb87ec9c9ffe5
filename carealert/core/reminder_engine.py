"""
CareAlert — Reminder Engine.

Owns reminder scheduling, the periodic due-check, and acknowledgment.

Due-check: every poll interval, select active reminders whose next_fire_at
falls within now + poll interval (the lookahead equals the interval so no
reminder slips between two polls), push each to the owner's room, then
advance its recurrence and persist. Push and persist are not transactional:
if the save fails the reminder stays due and the next poll sends it again.

Optional family SMS for reminders runs as a background task so a slow
provider never delays the next poll.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from carealert.adapters.room_registry import RoomKey
from carealert.core import recurrence
from carealert.core.clock import Clock, utc_now
from carealert.core.errors import ForbiddenError, NotFoundError, ValidationError
from carealert.data.models import Recurrence, Reminder, Role, to_utc

if TYPE_CHECKING:
    from carealert.data.db import ReminderDB, UserDB
    from carealert.ports.push_port import PushPort
    from carealert.ports.sms_port import SmsPort

logger = logging.getLogger(__name__)

REMINDER_EVENT = "reminder"

ACTION_TAKEN = "taken"
ACTION_SNOOZE = "snooze"


class ReminderEngine:
    """Schedules, fires and acknowledges reminders."""

    def __init__(
        self,
        reminder_db: ReminderDB,
        user_db: UserDB,
        push: PushPort,
        sms: SmsPort | None = None,
        clock: Clock = utc_now,
        poll_seconds: int | None = None,
        default_snooze_minutes: int | None = None,
        send_family_sms: bool | None = None,
    ) -> None:
        from carealert.config import settings

        self._reminders = reminder_db
        self._users = user_db
        self._push = push
        self._sms = sms
        self._clock = clock
        self.poll_interval = timedelta(seconds=poll_seconds or settings.REMINDER_POLL_SECONDS)
        self._default_snooze = default_snooze_minutes or settings.DEFAULT_SNOOZE_MINUTES
        if send_family_sms is None:
            send_family_sms = settings.SEND_REMINDER_SMS
        self._family_sms = send_family_sms
        self._background: set[asyncio.Task] = set()

        if self._family_sms and self._sms is None:
            logger.warning("SEND_REMINDER_SMS is on but no SMS gateway is configured")

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(
        self,
        owner_id: int,
        author_id: int | None,
        text: str,
        fire_at: datetime | None,
        recurrence_value: Recurrence | str = Recurrence.NONE,
        meta: dict | None = None,
    ) -> Reminder:
        """Create an active reminder for an elderly owner."""
        if not text or not text.strip():
            raise ValidationError("text is required")
        if fire_at is None:
            raise ValidationError("fireAt is required")
        if isinstance(recurrence_value, str):
            recurrence_value = recurrence_value.strip().lower()
        try:
            rec = Recurrence(recurrence_value or Recurrence.NONE)
        except ValueError:
            raise ValidationError(
                f"recurrence must be one of: {', '.join(r.value for r in Recurrence)}"
            ) from None

        owner = self._users.get_user(owner_id) if owner_id is not None else None
        if owner is None or owner.role is not Role.ELDERLY:
            raise ValidationError(f"ownerId {owner_id} does not resolve to an elderly user")

        reminder = self._reminders.add_reminder(
            owner_id=owner.id,
            author_id=author_id,
            text=text.strip(),
            fire_at=to_utc(fire_at),
            recurrence=rec,
            meta=meta,
        )
        logger.info(
            "Reminder #%d scheduled for owner #%d at %s (%s)",
            reminder.id, owner.id, reminder.next_fire_at.isoformat(), rec.value,
        )
        return reminder

    def list_for_owner(self, owner_id: int) -> list[Reminder]:
        """Active reminders of an elderly owner, soonest first."""
        return self._reminders.list_for_owner(owner_id, active_only=True)

    def list_for_author(self, author_id: int) -> list[Reminder]:
        """All reminders a caregiver created, soonest first."""
        return self._reminders.list_for_author(author_id)

    # ------------------------------------------------------------------
    # Due-check
    # ------------------------------------------------------------------

    async def due_check(self, now: datetime | None = None) -> list[Reminder]:
        """Fire every reminder due within the lookahead window.

        Returns the reminders that were pushed and persisted. Failures on a
        single reminder are logged and never stop the rest of the pass.
        """
        now = to_utc(now or self._clock())
        due = self._reminders.get_due(now + self.poll_interval)
        if not due:
            return []

        logger.info("Reminder due-check: %d due at %s", len(due), now.isoformat())
        fired: list[Reminder] = []
        for reminder in due:
            try:
                await self._fire(reminder)
                fired.append(reminder)
            except Exception as exc:
                logger.error(
                    "Reminder #%d not advanced, will retry next poll: %s",
                    reminder.id, exc,
                )
        return fired

    async def _fire(self, reminder: Reminder) -> None:
        payload = reminder.to_event()
        delivered = await self._push.publish(
            RoomKey.elderly(reminder.owner_id), REMINDER_EVENT, payload,
        )
        if delivered == 0:
            logger.info("Reminder #%d fired with no connected subscriber", reminder.id)

        if self._family_sms and self._sms is not None:
            self._spawn(self._send_family_sms(reminder.owner_id, reminder.text, reminder.next_fire_at))

        recurrence.advance(reminder)
        self._reminders.save(reminder)
        if reminder.active:
            logger.info("Reminder #%d advanced to %s", reminder.id, reminder.next_fire_at.isoformat())
        else:
            logger.info("Reminder #%d deactivated", reminder.id)

    # ------------------------------------------------------------------
    # Acknowledgment and manual trigger
    # ------------------------------------------------------------------

    def _authorized(self, reminder_id: int, actor_id: int) -> Reminder:
        reminder = self._reminders.get_reminder(reminder_id)
        if reminder is None:
            raise NotFoundError(f"Reminder {reminder_id} not found")
        if actor_id not in (reminder.owner_id, reminder.author_id):
            raise ForbiddenError("not authorized for this reminder")
        return reminder

    def acknowledge(
        self,
        reminder_id: int,
        actor_id: int,
        action: str,
        snooze_minutes: int | str | None = None,
    ) -> Reminder:
        """Mark a reminder taken (same advance rule as the due-check) or snooze it."""
        reminder = self._authorized(reminder_id, actor_id)

        if action == ACTION_TAKEN:
            recurrence.advance(reminder)
            self._reminders.save(reminder)
            logger.info(
                "Reminder #%d taken by #%d (active=%s, next=%s)",
                reminder.id, actor_id, reminder.active, reminder.next_fire_at.isoformat(),
            )
            return reminder

        if action == ACTION_SNOOZE:
            minutes = self._snooze_minutes(snooze_minutes)
            recurrence.snooze(reminder, self._clock(), minutes)
            self._reminders.save(reminder)
            logger.info("Reminder #%d snoozed %d min by #%d", reminder.id, minutes, actor_id)
            return reminder

        raise ValidationError(f"invalid action: {action!r} (expected 'taken' or 'snooze')")

    def _snooze_minutes(self, value: int | str | None) -> int:
        if value is None or value == "":
            return self._default_snooze
        try:
            minutes = int(value)
        except (TypeError, ValueError):
            raise ValidationError("snoozeMinutes must be a whole number") from None
        if minutes <= 0:
            raise ValidationError("snoozeMinutes must be positive")
        return minutes

    async def trigger(self, reminder_id: int, actor_id: int) -> int:
        """Push a reminder now without touching its schedule."""
        reminder = self._authorized(reminder_id, actor_id)
        delivered = await self._push.publish(
            RoomKey.elderly(reminder.owner_id), REMINDER_EVENT, reminder.to_event(),
        )
        logger.info("Reminder #%d triggered manually (%d delivered)", reminder.id, delivered)
        return delivered

    # ------------------------------------------------------------------
    # Out-of-band family SMS
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for background SMS sends started by earlier polls."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _send_family_sms(self, owner_id: int, text: str, fire_at: datetime) -> None:
        """SMS the owner's emergency contacts. Caregivers are never included."""
        try:
            owner = self._users.get_user(owner_id)
        except Exception as exc:
            logger.warning("Reminder SMS skipped, owner #%d unreadable: %s", owner_id, exc)
            return
        if owner is None:
            return

        body = (
            f"Reminder for {owner.name or 'your loved one'}: {text} "
            f"at {fire_at.strftime('%Y-%m-%d %H:%M UTC')}"
        )
        for contact in owner.emergency_contacts:
            if not contact.phone:
                continue
            try:
                await self._sms.send(contact.phone, body)
                logger.info("Reminder SMS sent to %s for owner #%d", contact.phone, owner_id)
            except Exception as exc:
                logger.warning("Reminder SMS to %s failed: %s", contact.phone, exc)
