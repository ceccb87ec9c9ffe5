"""
CareAlert — Application wiring.

build_app() assembles stores, channel adapters, engines and the scheduler
into one object; main() runs the scheduler until interrupted. Transports
(HTTP routes, websocket handlers) attach to App.service and App.rooms.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass

from carealert.adapters.room_registry import RoomRegistry
from carealert.adapters.twilio_sms import create_sms_gateway
from carealert.core.alert_dispatcher import AlertDispatcher
from carealert.core.care_service import CareService
from carealert.core.clock import Clock, utc_now
from carealert.core.recipients import RecipientResolver
from carealert.core.reminder_engine import ReminderEngine
from carealert.core.scheduler import Scheduler
from carealert.data.db import AlertDB, CaregiverDB, ReminderDB, UserDB
from carealert.ports.sms_port import SmsPort

logger = logging.getLogger(__name__)


@dataclass
class App:
    service: CareService
    rooms: RoomRegistry
    reminders: ReminderEngine
    alerts: AlertDispatcher
    scheduler: Scheduler


def build_app(
    db_path: str | None = None,
    sms: SmsPort | None = None,
    clock: Clock = utc_now,
) -> App:
    """Build the full object graph. sms defaults to the configured gateway."""
    from carealert.config import settings

    db_path = db_path or settings.DATABASE_PATH
    user_db = UserDB(db_path=db_path)
    caregiver_db = CaregiverDB(db_path=db_path)
    reminder_db = ReminderDB(db_path=db_path)
    alert_db = AlertDB(db_path=db_path)

    if sms is None:
        sms = create_sms_gateway(settings)

    rooms = RoomRegistry()
    resolver = RecipientResolver(user_db, caregiver_db)
    reminders = ReminderEngine(reminder_db, user_db, push=rooms, sms=sms, clock=clock)
    alerts = AlertDispatcher(alert_db, resolver, push=rooms, sms=sms, clock=clock)
    service = CareService(
        user_db, caregiver_db,
        reminders=reminders, alerts=alerts, resolver=resolver, rooms=rooms, sms=sms,
    )
    scheduler = Scheduler(reminders, clock=clock)

    logger.info(
        "CareAlert built (db=%s, sms=%s, reminder SMS=%s)",
        db_path,
        "on" if sms is not None else "off",
        "on" if settings.SEND_REMINDER_SMS else "off",
    )
    return App(
        service=service,
        rooms=rooms,
        reminders=reminders,
        alerts=alerts,
        scheduler=scheduler,
    )


async def run(app: App) -> None:
    """Start the scheduler and block until SIGINT/SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows

    app.scheduler.start()
    try:
        await stop.wait()
    finally:
        await app.scheduler.stop()


def main() -> None:
    """Entry point: configure logging, build the app and run it."""
    from carealert.config import settings

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting CareAlert notification core...")
    try:
        asyncio.run(run(build_app()))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
