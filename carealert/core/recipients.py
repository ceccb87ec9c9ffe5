"""
CareAlert — Recipient Resolver.

Builds the notification target list for an elderly owner from three
overlapping sources:

    - emergency contacts declared on the owner's profile,
    - caregiver accounts linked to the owner,
    - caregiver-management contact records (SMS-enabled only).

Each source is a tagged variant that knows its own priority. Candidates are
ordered by one comparator, recipient_sort_key(), and then deduplicated by
contact handle so the highest-priority entry for a phone number wins.

The list is recomputed for every alert so it always reflects the current
caregiver roster.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from carealert.core.errors import NotFoundError
from carealert.data.models import CaregiverContact, EmergencyContact, User

if TYPE_CHECKING:
    from carealert.data.db import CaregiverDB, UserDB

logger = logging.getLogger(__name__)

_HANDLE_NOISE = re.compile(r"[\s\-\.\(\)]")


class SourceType(str, Enum):
    EMERGENCY_CONTACT = "emergency_contact"
    LINKED_CAREGIVER = "linked_caregiver"
    CAREGIVER_CONTACT = "caregiver_contact"


@dataclass(frozen=True)
class RecipientCandidate:
    """A derived notification target. Never persisted."""

    contact_handle: str
    display_name: str
    source_type: SourceType
    is_primary: bool
    priority_rank: float


def normalize_handle(phone: str | None) -> str:
    """Strip formatting so the same number written two ways dedups."""
    if not phone:
        return ""
    return _HANDLE_NOISE.sub("", phone)


# ---------------------------------------------------------------------------
# Source variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EmergencyContactSource:
    contact: EmergencyContact

    PRIORITY = 1.0

    def to_candidate(self) -> RecipientCandidate | None:
        handle = normalize_handle(self.contact.phone)
        if not handle:
            return None
        return RecipientCandidate(
            contact_handle=handle,
            display_name=self.contact.name or "Emergency Contact",
            source_type=SourceType.EMERGENCY_CONTACT,
            is_primary=self.contact.primary,
            priority_rank=self.PRIORITY,
        )


@dataclass(frozen=True)
class LinkedCaregiverSource:
    user: User

    PRIORITY = 2.0

    def to_candidate(self) -> RecipientCandidate | None:
        handle = normalize_handle(self.user.phone)
        if not handle:
            return None
        return RecipientCandidate(
            contact_handle=handle,
            display_name=self.user.name or self.user.email or "Caregiver",
            source_type=SourceType.LINKED_CAREGIVER,
            is_primary=False,
            priority_rank=self.PRIORITY,
        )


@dataclass(frozen=True)
class CaregiverContactSource:
    record: CaregiverContact

    PRIMARY_PRIORITY = 0.0
    PRIORITY = 1.5

    def to_candidate(self) -> RecipientCandidate | None:
        handle = normalize_handle(self.record.phone)
        if not handle:
            return None
        return RecipientCandidate(
            contact_handle=handle,
            display_name=self.record.name or "Caregiver",
            source_type=SourceType.CAREGIVER_CONTACT,
            is_primary=self.record.is_primary,
            priority_rank=self.PRIMARY_PRIORITY if self.record.is_primary else self.PRIORITY,
        )


RecipientSource = EmergencyContactSource | LinkedCaregiverSource | CaregiverContactSource


# ---------------------------------------------------------------------------
# Ordering and merge
# ---------------------------------------------------------------------------


def recipient_sort_key(candidate: RecipientCandidate) -> tuple:
    """(priority asc, display name asc), with a case-sensitive final tie-break."""
    return (
        candidate.priority_rank,
        candidate.display_name.casefold(),
        candidate.display_name,
        candidate.contact_handle,
    )


def merge_recipients(sources: list[RecipientSource]) -> list[RecipientCandidate]:
    """Sort every candidate, then keep the first occurrence of each handle."""
    candidates = [c for c in (s.to_candidate() for s in sources) if c is not None]
    candidates.sort(key=recipient_sort_key)

    seen: set[str] = set()
    unique: list[RecipientCandidate] = []
    for candidate in candidates:
        if candidate.contact_handle in seen:
            continue
        seen.add(candidate.contact_handle)
        unique.append(candidate)
    return unique


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class RecipientResolver:
    """Reads the current roster for an owner and derives targets from it."""

    def __init__(self, user_db: UserDB, caregiver_db: CaregiverDB) -> None:
        self._users = user_db
        self._caregivers = caregiver_db

    def owner(self, owner_id: int) -> User:
        owner = self._users.get_user(owner_id)
        if owner is None:
            raise NotFoundError(f"User {owner_id} not found")
        return owner

    def sources(self, owner_id: int) -> list[RecipientSource]:
        owner = self.owner(owner_id)
        sources: list[RecipientSource] = []
        sources.extend(EmergencyContactSource(c) for c in owner.emergency_contacts)
        sources.extend(LinkedCaregiverSource(u) for u in self._users.linked_caregivers(owner_id))
        sources.extend(
            CaregiverContactSource(r)
            for r in self._caregivers.list_for_elderly(owner_id, sms_only=True)
        )
        return sources

    def resolve(self, owner_id: int) -> list[RecipientCandidate]:
        """Deduplicated, priority-ordered SMS targets for the owner."""
        recipients = merge_recipients(self.sources(owner_id))
        logger.debug("Resolved %d recipient(s) for owner #%d", len(recipients), owner_id)
        return recipients

    def caregiver_accounts(self, owner_id: int) -> list[User]:
        """Caregiver accounts that should see the owner's alerts in realtime.

        Linked caregiver accounts plus accounts matching any caregiver
        contact record by email or phone. Unique by account id.
        """
        records = self._caregivers.list_for_elderly(owner_id)
        matched = self._users.find_caregiver_accounts(
            emails=[r.email for r in records],
            phones=[r.phone for r in records],
        )
        accounts: dict[int, User] = {}
        for user in [*self._users.linked_caregivers(owner_id), *matched]:
            accounts.setdefault(user.id, user)
        return list(accounts.values())
