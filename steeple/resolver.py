"""Recipient resolution: turn a reminder audience into people."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from steeple.errors import ResolutionError
from steeple.models import (
    AllMembers,
    Audience,
    EventOccurrence,
    Groups,
    Members,
    Recipient,
    RsvpAttendees,
    RsvpDeclined,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUS = "active"
RSVP_ATTENDING = "attending"
RSVP_DECLINED = "declined"


def member_to_recipient(row: dict) -> Recipient:
    """Build a Recipient from a ``members`` row (firstname/lastname columns)."""
    name = " ".join(p for p in (row.get("firstname"), row.get("lastname")) if p)
    return Recipient(
        id=str(row["id"]),
        name=name or row.get("name") or "",
        phone=row.get("phone") or None,
        email=row.get("email") or None,
    )


class RecipientResolver(ABC):
    """Looks up the members an audience refers to."""

    @abstractmethod
    def resolve(self, audience: Audience, occurrence: EventOccurrence) -> list[Recipient]:
        """Return the recipients for ``audience``.

        Implementations raise ``ResolutionError`` when the directory is
        unavailable. Duplicates are allowed; the scheduler removes them.
        """
        ...


class DirectoryResolver(RecipientResolver):
    """Resolves audiences against the JSON member directory of a DataStore."""

    def __init__(self, store, organization_id: Optional[str] = None) -> None:
        self._store = store
        self._organization_id = organization_id

    def resolve(self, audience: Audience, occurrence: EventOccurrence) -> list[Recipient]:
        try:
            members = {str(m["id"]): m for m in self._store.load_members() if self._eligible(m)}
            if isinstance(audience, AllMembers):
                ids = list(members)
            elif isinstance(audience, Groups):
                ids = self._group_member_ids(audience.group_ids)
            elif isinstance(audience, Members):
                ids = list(audience.member_ids)
            elif isinstance(audience, (RsvpAttendees, RsvpDeclined)):
                status = RSVP_ATTENDING if isinstance(audience, RsvpAttendees) else RSVP_DECLINED
                ids = self._rsvp_member_ids(occurrence, status)
            else:
                raise ResolutionError(f"Unsupported audience: {audience!r}")
        except (OSError, ValueError, KeyError) as exc:
            raise ResolutionError(f"Member directory unavailable: {exc}") from exc

        recipients = [member_to_recipient(members[i]) for i in ids if i in members]
        logger.debug("Resolved %s to %d recipient(s)", audience.kind, len(recipients))
        return recipients

    def _eligible(self, member: dict) -> bool:
        if (member.get("status") or ACTIVE_STATUS) != ACTIVE_STATUS:
            return False
        if self._organization_id and member.get("organization_id") not in (None, self._organization_id):
            return False
        return True

    def _group_member_ids(self, group_ids: tuple[str, ...]) -> list[str]:
        wanted = set(group_ids)
        ids: list[str] = []
        for group in self._store.load_groups():
            if str(group["id"]) in wanted:
                ids.extend(str(m) for m in group.get("member_ids", []))
        return ids

    def _rsvp_member_ids(self, occurrence: EventOccurrence, status: str) -> list[str]:
        ids: list[str] = []
        for row in self._store.load_rsvps():
            event_ref = row.get("occurrence_id") or row.get("series_id") or row.get("event_id")
            if event_ref not in (occurrence.occurrence_id, occurrence.series_id):
                continue
            if row.get("status") == status:
                ids.append(str(row["member_id"]))
        return ids
