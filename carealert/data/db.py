"""
CareAlert — SQLite Stores.

The single source of truth for reminders and emergency alerts. Users,
caregiver links and caregiver contact records are stored here too so the
recipient resolver can read the current roster on every alert.

Datetimes are stored as UTC ISO-8601 strings with microsecond precision,
so string comparison in SQL matches chronological order.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from carealert.data.models import (
    AlertStatus,
    CaregiverContact,
    EmergencyAlert,
    EmergencyContact,
    Location,
    Recurrence,
    Reminder,
    Role,
    SentVia,
    User,
    to_utc,
)

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when the store is unavailable or a write fails."""


def _to_db_time(value: datetime) -> str:
    return to_utc(value).isoformat(timespec="microseconds")


def _from_db_time(value: str) -> datetime:
    return to_utc(datetime.fromisoformat(value))


def _now_iso() -> str:
    return _to_db_time(datetime.now(timezone.utc))


class _SQLiteStore:
    """Connection handling shared by every table class.

    Subclasses create their tables in _init_db(), called from __init__.
    """

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from carealert.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection that commits on success and always closes.

        Any sqlite3 error surfaces as PersistenceError.
        """
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open database {self._db_path}: {exc}") from exc
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise PersistenceError(f"Database operation failed: {exc}") from exc
        finally:
            conn.close()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserDB(_SQLiteStore):
    """Accounts (elderly and caregiver) and linked-caregiver relations."""

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                    name               TEXT NOT NULL,
                    email              TEXT NOT NULL UNIQUE,
                    role               TEXT NOT NULL DEFAULT 'elderly',
                    phone              TEXT,
                    emergency_contacts TEXT NOT NULL DEFAULT '[]',
                    created_at         TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS user_caregivers (
                    elderly_id   INTEGER NOT NULL,
                    caregiver_id INTEGER NOT NULL,
                    PRIMARY KEY (elderly_id, caregiver_id)
                )
            """)
        logger.debug("Users table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        contacts = [
            EmergencyContact(**c) for c in json.loads(row["emergency_contacts"] or "[]")
        ]
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            role=Role(row["role"]),
            phone=row["phone"],
            emergency_contacts=contacts,
            created_at=row["created_at"],
        )

    def add_user(
        self,
        name: str,
        email: str,
        role: Role = Role.ELDERLY,
        phone: str | None = None,
        emergency_contacts: list[EmergencyContact] | None = None,
    ) -> User:
        """Register a new account. Emails are stored lower-cased."""
        contacts = emergency_contacts or []
        email = email.strip().lower()
        now = _now_iso()
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO users (name, email, role, phone, emergency_contacts, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    name, email, Role(role).value, phone,
                    json.dumps([c.__dict__ for c in contacts]), now,
                ),
            )
            user_id = cursor.lastrowid

        logger.info("User registered: #%d '%s' (%s)", user_id, name, Role(role).value)
        return User(
            id=user_id,
            name=name,
            email=email,
            role=Role(role),
            phone=phone,
            emergency_contacts=list(contacts),
            created_at=now,
        )

    def get_user(self, user_id: int) -> User | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def find_by_email(self, email: str, role: Role | None = None) -> User | None:
        """Case-insensitive lookup by email, optionally restricted to a role."""
        query = "SELECT * FROM users WHERE email = ?"
        params: list = [email.strip().lower()]
        if role is not None:
            query += " AND role = ?"
            params.append(Role(role).value)
        with self._session() as conn:
            row = conn.execute(query, params).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def set_emergency_contacts(
        self, user_id: int, contacts: list[EmergencyContact],
    ) -> None:
        with self._session() as conn:
            conn.execute(
                "UPDATE users SET emergency_contacts = ? WHERE id = ?",
                (json.dumps([c.__dict__ for c in contacts]), user_id),
            )
        logger.info("Emergency contacts updated for user #%d (%d)", user_id, len(contacts))

    def link_caregiver(self, elderly_id: int, caregiver_id: int) -> None:
        """Link a caregiver account to an elderly user (idempotent)."""
        with self._session() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO user_caregivers (elderly_id, caregiver_id) VALUES (?, ?)",
                (elderly_id, caregiver_id),
            )
        logger.info("Caregiver #%d linked to elderly #%d", caregiver_id, elderly_id)

    def linked_caregivers(self, elderly_id: int) -> list[User]:
        """Caregiver accounts linked to this elderly user."""
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT u.* FROM users u
                JOIN user_caregivers l ON l.caregiver_id = u.id
                WHERE l.elderly_id = ?
                ORDER BY u.id
                """,
                (elderly_id,),
            ).fetchall()
        return [self._row_to_user(r) for r in rows]

    def linked_elderly_ids(self, caregiver_id: int) -> list[int]:
        """Elderly users this caregiver account is linked to."""
        with self._session() as conn:
            rows = conn.execute(
                "SELECT elderly_id FROM user_caregivers WHERE caregiver_id = ? ORDER BY elderly_id",
                (caregiver_id,),
            ).fetchall()
        return [r["elderly_id"] for r in rows]

    def find_caregiver_accounts(
        self, emails: list[str], phones: list[str],
    ) -> list[User]:
        """Caregiver-role accounts whose email or phone is in the given sets."""
        emails = [e.strip().lower() for e in emails if e]
        phones = [p.strip() for p in phones if p]
        if not emails and not phones:
            return []

        conditions: list[str] = []
        params: list = [Role.CAREGIVER.value]
        if emails:
            conditions.append(f"email IN ({', '.join('?' * len(emails))})")
            params.extend(emails)
        if phones:
            conditions.append(f"phone IN ({', '.join('?' * len(phones))})")
            params.extend(phones)

        query = (
            "SELECT * FROM users WHERE role = ? AND ("
            + " OR ".join(conditions)
            + ") ORDER BY id"
        )
        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_user(r) for r in rows]


# ---------------------------------------------------------------------------
# Caregiver contact records
# ---------------------------------------------------------------------------


class CaregiverDB(_SQLiteStore):
    """Caregiver-management contact records (one primary per elderly user)."""

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS caregivers (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    elderly_id  INTEGER NOT NULL,
                    name        TEXT    NOT NULL,
                    email       TEXT    NOT NULL,
                    phone       TEXT    NOT NULL,
                    receive_sms INTEGER NOT NULL DEFAULT 1,
                    is_primary  INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS ux_caregivers_primary
                ON caregivers (elderly_id) WHERE is_primary = 1
            """)
        logger.debug("Caregivers table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_caregiver(row: sqlite3.Row) -> CaregiverContact:
        return CaregiverContact(
            id=row["id"],
            elderly_id=row["elderly_id"],
            name=row["name"],
            email=row["email"],
            phone=row["phone"],
            receive_sms=bool(row["receive_sms"]),
            is_primary=bool(row["is_primary"]),
        )

    def add_caregiver(
        self,
        elderly_id: int,
        name: str,
        email: str,
        phone: str,
        receive_sms: bool = True,
        is_primary: bool = False,
    ) -> CaregiverContact:
        email = email.strip().lower()
        phone = phone.strip()
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO caregivers
                    (elderly_id, name, email, phone, receive_sms, is_primary)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (elderly_id, name, email, phone, int(receive_sms), int(is_primary)),
            )
            caregiver_id = cursor.lastrowid

        logger.info(
            "Caregiver contact added: #%d '%s' for elderly #%d%s",
            caregiver_id, name, elderly_id, " (primary)" if is_primary else "",
        )
        return CaregiverContact(
            id=caregiver_id,
            elderly_id=elderly_id,
            name=name,
            email=email,
            phone=phone,
            receive_sms=receive_sms,
            is_primary=is_primary,
        )

    def get_caregiver(self, caregiver_id: int) -> CaregiverContact | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM caregivers WHERE id = ?", (caregiver_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_caregiver(row)

    def list_for_elderly(
        self, elderly_id: int, sms_only: bool = False,
    ) -> list[CaregiverContact]:
        """Contact records for one elderly user.

        With sms_only, only records that opted into SMS and carry a phone.
        """
        query = "SELECT * FROM caregivers WHERE elderly_id = ?"
        if sms_only:
            query += " AND receive_sms = 1 AND phone != ''"
        query += " ORDER BY id"
        with self._session() as conn:
            rows = conn.execute(query, (elderly_id,)).fetchall()
        return [self._row_to_caregiver(r) for r in rows]

    def find_assignments(
        self, email: str | None, phone: str | None,
    ) -> list[CaregiverContact]:
        """Contact records matching a caregiver account by email or phone."""
        conditions: list[str] = []
        params: list = []
        if email:
            conditions.append("email = ?")
            params.append(email.strip().lower())
        if phone:
            conditions.append("phone = ?")
            params.append(phone.strip())
        if not conditions:
            return []

        query = "SELECT * FROM caregivers WHERE " + " OR ".join(conditions) + " ORDER BY id"
        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_caregiver(r) for r in rows]


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


class ReminderDB(_SQLiteStore):
    """SQLite-backed storage for reminders. Deactivation is the only delete."""

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS reminders (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id     INTEGER NOT NULL,
                    author_id    INTEGER,
                    text         TEXT    NOT NULL,
                    next_fire_at TEXT    NOT NULL,
                    recurrence   TEXT    NOT NULL DEFAULT 'none',
                    active       INTEGER NOT NULL DEFAULT 1,
                    meta         TEXT,
                    created_at   TEXT    NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS ix_reminders_due
                ON reminders (active, next_fire_at)
            """)
        logger.debug("Reminders table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_reminder(row: sqlite3.Row) -> Reminder:
        return Reminder(
            id=row["id"],
            owner_id=row["owner_id"],
            author_id=row["author_id"],
            text=row["text"],
            next_fire_at=_from_db_time(row["next_fire_at"]),
            recurrence=Recurrence(row["recurrence"]),
            active=bool(row["active"]),
            meta=json.loads(row["meta"]) if row["meta"] else None,
            created_at=row["created_at"],
        )

    def add_reminder(
        self,
        owner_id: int,
        author_id: int | None,
        text: str,
        fire_at: datetime,
        recurrence: Recurrence = Recurrence.NONE,
        meta: dict | None = None,
    ) -> Reminder:
        """Insert a new active reminder."""
        now = _now_iso()
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO reminders
                    (owner_id, author_id, text, next_fire_at, recurrence, active, meta, created_at)
                VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    owner_id, author_id, text, _to_db_time(fire_at),
                    Recurrence(recurrence).value,
                    json.dumps(meta) if meta is not None else None,
                    now,
                ),
            )
            reminder_id = cursor.lastrowid

        return Reminder(
            id=reminder_id,
            owner_id=owner_id,
            author_id=author_id,
            text=text,
            next_fire_at=to_utc(fire_at),
            recurrence=Recurrence(recurrence),
            active=True,
            meta=meta,
            created_at=now,
        )

    def get_reminder(self, reminder_id: int) -> Reminder | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM reminders WHERE id = ?", (reminder_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_reminder(row)

    def get_due(self, before: datetime) -> list[Reminder]:
        """Active reminders with next_fire_at <= before, earliest first."""
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM reminders
                WHERE active = 1 AND next_fire_at <= ?
                ORDER BY next_fire_at, id
                """,
                (_to_db_time(before),),
            ).fetchall()
        return [self._row_to_reminder(r) for r in rows]

    def save(self, reminder: Reminder) -> None:
        """Persist the mutable schedule fields (next_fire_at, active)."""
        with self._session() as conn:
            cursor = conn.execute(
                "UPDATE reminders SET next_fire_at = ?, active = ? WHERE id = ?",
                (_to_db_time(reminder.next_fire_at), int(reminder.active), reminder.id),
            )
            if cursor.rowcount == 0:
                raise PersistenceError(f"Reminder {reminder.id} vanished during update")

    def list_for_owner(self, owner_id: int, active_only: bool = True) -> list[Reminder]:
        query = "SELECT * FROM reminders WHERE owner_id = ?"
        if active_only:
            query += " AND active = 1"
        query += " ORDER BY next_fire_at, id"
        with self._session() as conn:
            rows = conn.execute(query, (owner_id,)).fetchall()
        return [self._row_to_reminder(r) for r in rows]

    def list_for_author(self, author_id: int) -> list[Reminder]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM reminders WHERE author_id = ? ORDER BY next_fire_at, id",
                (author_id,),
            ).fetchall()
        return [self._row_to_reminder(r) for r in rows]


# ---------------------------------------------------------------------------
# Emergency alerts
# ---------------------------------------------------------------------------


class AlertDB(_SQLiteStore):
    """SQLite-backed storage for emergency alerts."""

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS alerts (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id   INTEGER NOT NULL,
                    message    TEXT    NOT NULL,
                    location   TEXT,
                    sent_via   TEXT    NOT NULL DEFAULT 'app',
                    status     TEXT    NOT NULL DEFAULT 'open',
                    created_at TEXT    NOT NULL
                )
            """)
        logger.debug("Alerts table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_alert(row: sqlite3.Row) -> EmergencyAlert:
        location = json.loads(row["location"]) if row["location"] else None
        return EmergencyAlert(
            id=row["id"],
            owner_id=row["owner_id"],
            message=row["message"],
            location=Location(**location) if location else None,
            sent_via=SentVia(row["sent_via"]),
            status=AlertStatus(row["status"]),
            created_at=_from_db_time(row["created_at"]),
        )

    def add_alert(
        self,
        owner_id: int,
        message: str,
        sent_via: SentVia,
        created_at: datetime,
        location: Location | None = None,
    ) -> EmergencyAlert:
        """Insert a new open alert."""
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO alerts (owner_id, message, location, sent_via, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    owner_id, message,
                    json.dumps(location.__dict__) if location else None,
                    SentVia(sent_via).value, AlertStatus.OPEN.value,
                    _to_db_time(created_at),
                ),
            )
            alert_id = cursor.lastrowid

        return EmergencyAlert(
            id=alert_id,
            owner_id=owner_id,
            message=message,
            location=location,
            sent_via=SentVia(sent_via),
            status=AlertStatus.OPEN,
            created_at=to_utc(created_at),
        )

    def get_alert(self, alert_id: int) -> EmergencyAlert | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_alert(row)

    def advance_status(self, alert_id: int, target: AlertStatus) -> bool:
        """Move an alert forward to target.

        The WHERE clause only matches statuses that precede target, so a
        concurrent writer can never move the record backwards. Returns
        whether a row changed.
        """
        earlier = [s.value for s in AlertStatus if s.can_move_to(target)]
        if not earlier:
            return False
        with self._session() as conn:
            cursor = conn.execute(
                f"UPDATE alerts SET status = ? WHERE id = ? "
                f"AND status IN ({', '.join('?' * len(earlier))})",
                (AlertStatus(target).value, alert_id, *earlier),
            )
        return cursor.rowcount > 0

    def list_for_owners(self, owner_ids: list[int], limit: int = 200) -> list[EmergencyAlert]:
        """Alerts of the given owners, newest first."""
        if not owner_ids:
            return []
        placeholders = ", ".join("?" * len(owner_ids))
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT * FROM alerts WHERE owner_id IN ({placeholders}) "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (*owner_ids, limit),
            ).fetchall()
        return [self._row_to_alert(r) for r in rows]
