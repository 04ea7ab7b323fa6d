"""Supabase (PostgREST) backend for series, reminders, members and the dispatch log.

The engine only needs a handful of table operations, so this talks to
the REST endpoint directly over ``httpx`` instead of pulling in a full
client SDK.

Expected tables (column names follow the church-management schema):
    events                  master/one-off events and materialized instances
    event_reminder_configs  reminder configurations keyed by event_id
    event_reminder_logs     dispatch log, UNIQUE (reminder_config_id, occurrence_id, member_id)
    event_reminder_skips    skipped dispatch attempts, append-only
    members, group_members, event_attendance
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

import httpx

from steeple.config import DEFAULT_HTTP_TIMEOUT, Settings
from steeple.errors import ConfigurationError, DatastoreError, DuplicateDispatch, ResolutionError
from steeple.models import (
    AllMembers,
    Audience,
    Channel,
    DispatchIdentity,
    DispatchSkip,
    DispatchStatus,
    EventOccurrence,
    EventSeries,
    Groups,
    Members,
    Recipient,
    ReminderConfig,
    ReminderDispatch,
    RsvpAttendees,
    RsvpDeclined,
    format_instant,
    parse_instant,
)
from steeple.resolver import (
    ACTIVE_STATUS,
    RSVP_ATTENDING,
    RSVP_DECLINED,
    RecipientResolver,
    member_to_recipient,
)
from steeple.store import DispatchLog, is_claimable

logger = logging.getLogger(__name__)

LOGS_TABLE = "event_reminder_logs"
SKIPS_TABLE = "event_reminder_skips"
MEMBER_COLUMNS = "id,firstname,lastname,phone,email,status,organization_id"


def _in(values: Iterable[str]) -> str:
    return "in.(" + ",".join(str(v) for v in values) + ")"


class SupabaseClient:
    """Minimal PostgREST client: select, insert, upsert, update."""

    def __init__(
        self,
        url: str,
        key: str,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = url.rstrip("/") + "/rest/v1"
        self._headers = {"apikey": key, "Authorization": f"Bearer {key}"}
        self._client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> SupabaseClient:
        if not settings.has_supabase:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")
        return cls(settings.supabase_url, settings.supabase_key, timeout=settings.http_timeout)

    def select(self, table: str, params: Optional[dict] = None) -> list[dict]:
        query = {"select": "*"}
        query.update(params or {})
        return self._request("GET", table, params=query)

    def insert(self, table: str, row: dict) -> dict:
        rows = self._request(
            "POST", table, json=row, headers={"Prefer": "return=representation"}
        )
        return rows[0] if rows else row

    def upsert(self, table: str, rows: list[dict], on_conflict: str = "id") -> None:
        if not rows:
            return
        self._request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json=rows,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    def update(self, table: str, filters: dict, values: dict) -> list[dict]:
        """PATCH rows matching ``filters``; returns the updated rows."""
        return self._request(
            "PATCH",
            table,
            params=filters,
            json=values,
            headers={"Prefer": "return=representation"},
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, table: str, **kwargs) -> list[dict]:
        headers = dict(self._headers)
        headers.update(kwargs.pop("headers", {}))
        url = f"{self.base_url}/{table}"
        try:
            resp = self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise DatastoreError(f"{method} {table}: {exc}") from exc

        if resp.status_code >= 400:
            try:
                detail = resp.json().get("message")
            except ValueError:
                detail = resp.text[:200]
            raise DatastoreError(
                f"{method} {table}: HTTP {resp.status_code}: {detail}", status_code=resp.status_code
            )
        if not resp.content:
            return []
        body = resp.json()
        return body if isinstance(body, list) else [body]


# ------------------------------------------------------------------
# Row mapping
# ------------------------------------------------------------------

def dispatch_to_row(record: ReminderDispatch) -> dict:
    return {
        "reminder_config_id": record.config_id,
        "occurrence_id": record.occurrence_id,
        "member_id": record.recipient_id,
        "event_id": record.series_id,
        "channel": record.channel.value,
        "phone_number": record.address if record.channel is Channel.SMS else None,
        "email": record.address if record.channel is Channel.EMAIL else None,
        "message_sent": record.rendered_message,
        "status": record.status.value,
        "error_message": record.error,
        "provider_id": record.provider_id,
        "was_missed": record.late,
        "timing_hours": record.offset_hours,
        "scheduled_at": format_instant(record.scheduled_at),
        "attempted_at": format_instant(record.attempted_at),
        "sent_at": format_instant(record.sent_at),
    }


def dispatch_from_row(row: dict) -> ReminderDispatch:
    channel = Channel(row.get("channel") or "sms")
    return ReminderDispatch(
        config_id=str(row["reminder_config_id"]),
        occurrence_id=str(row["occurrence_id"]),
        recipient_id=str(row["member_id"]),
        scheduled_at=parse_instant(row["scheduled_at"]),
        attempted_at=parse_instant(row.get("attempted_at")),
        status=DispatchStatus(row.get("status") or "scheduled"),
        rendered_message=row.get("message_sent") or "",
        address=row.get("phone_number") if channel is Channel.SMS else row.get("email"),
        channel=channel,
        series_id=row.get("event_id"),
        sent_at=parse_instant(row.get("sent_at")),
        provider_id=row.get("provider_id") or row.get("twilio_sid"),
        error=row.get("error_message"),
        late=bool(row.get("was_missed")),
        offset_hours=row.get("timing_hours"),
    )


def occurrence_to_row(occurrence: EventOccurrence, organization_id: Optional[str] = None) -> dict:
    """Materialized instance row in ``events``, keyed by the deterministic id."""
    row = occurrence.to_dict()
    row.pop("series_id")
    row.update(parent_event_id=occurrence.series_id, is_master=False, is_recurring=True)
    if organization_id:
        row["organization_id"] = organization_id
    return row


def _identity_filters(identity: DispatchIdentity) -> dict:
    config_id, occ_id, member_id = identity
    return {
        "reminder_config_id": f"eq.{config_id}",
        "occurrence_id": f"eq.{occ_id}",
        "member_id": f"eq.{member_id}",
    }


# ------------------------------------------------------------------
# Dispatch log
# ------------------------------------------------------------------

class SupabaseDispatchLog(DispatchLog):
    """Dispatch log over ``event_reminder_logs``.

    Relies on the table's unique constraint: a 409 on insert means the
    identity is taken. Takeovers of planned or failed rows are
    conditional updates, so two overlapping ticks cannot both win.
    """

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    def find(self, identity: DispatchIdentity) -> Optional[ReminderDispatch]:
        params = _identity_filters(identity)
        params["limit"] = "1"
        rows = self._client.select(LOGS_TABLE, params)
        return dispatch_from_row(rows[0]) if rows else None

    def attempts_for(self, config_id: str, occurrence_id: str) -> list[ReminderDispatch]:
        rows = self._client.select(
            LOGS_TABLE,
            {"reminder_config_id": f"eq.{config_id}", "occurrence_id": f"eq.{occurrence_id}"},
        )
        return [dispatch_from_row(r) for r in rows]

    def claim(self, record: ReminderDispatch, retry_before: datetime) -> ReminderDispatch:
        try:
            self._client.insert(LOGS_TABLE, dispatch_to_row(record))
            return record
        except DatastoreError as exc:
            if exc.status_code != 409:
                raise

        existing = self.find(record.identity)
        if existing is None or not is_claimable(existing, retry_before):
            raise DuplicateDispatch(record.identity)

        filters = _identity_filters(record.identity)
        filters["status"] = f"eq.{existing.status.value}"
        if existing.attempted_at is None:
            filters["attempted_at"] = "is.null"
            if existing.status is DispatchStatus.CANCELLED:
                filters["error_message"] = f"eq.{existing.error}"
        else:
            filters["attempted_at"] = f"lt.{format_instant(retry_before)}"
        if not self._client.update(LOGS_TABLE, filters, dispatch_to_row(record)):
            raise DuplicateDispatch(record.identity)
        return record

    def update(self, record: ReminderDispatch) -> None:
        self._client.update(LOGS_TABLE, _identity_filters(record.identity), dispatch_to_row(record))

    def scheduled_for_config(self, config_id: str) -> list[ReminderDispatch]:
        rows = self._client.select(
            LOGS_TABLE,
            {"reminder_config_id": f"eq.{config_id}", "status": f"eq.{DispatchStatus.SCHEDULED.value}"},
        )
        return [dispatch_from_row(r) for r in rows]

    def all_records(self) -> list[ReminderDispatch]:
        rows = self._client.select(LOGS_TABLE, {"order": "scheduled_at.asc"})
        return [dispatch_from_row(r) for r in rows]

    def record_skip(self, skip: DispatchSkip) -> None:
        self._client.insert(SKIPS_TABLE, {
            "reminder_config_id": skip.config_id,
            "occurrence_id": skip.occurrence_id,
            "member_id": skip.recipient_id,
            "reason": skip.reason,
            "skipped_at": format_instant(skip.skipped_at),
        })

    def skips(self) -> list[DispatchSkip]:
        rows = self._client.select(SKIPS_TABLE, {"order": "skipped_at.asc"})
        return [
            DispatchSkip(
                config_id=str(r["reminder_config_id"]),
                occurrence_id=str(r["occurrence_id"]),
                recipient_id=str(r["member_id"]),
                reason=r.get("reason") or "",
                skipped_at=parse_instant(r["skipped_at"]),
            )
            for r in rows
        ]


# ------------------------------------------------------------------
# Recipient resolver
# ------------------------------------------------------------------

class SupabaseResolver(RecipientResolver):
    """Resolves audiences from ``members``, ``group_members`` and ``event_attendance``."""

    def __init__(self, client: SupabaseClient, organization_id: Optional[str] = None) -> None:
        self._client = client
        self._organization_id = organization_id

    def resolve(self, audience: Audience, occurrence: EventOccurrence) -> list[Recipient]:
        try:
            rows = self._member_rows(audience, occurrence)
        except DatastoreError as exc:
            raise ResolutionError(f"Member lookup failed: {exc}") from exc
        return [member_to_recipient(r) for r in rows if self._eligible(r)]

    def _member_rows(self, audience: Audience, occurrence: EventOccurrence) -> list[dict]:
        if isinstance(audience, AllMembers):
            return self._client.select("members", self._member_filters())
        if isinstance(audience, Members):
            if not audience.member_ids:
                return []
            params = self._member_filters()
            params["id"] = _in(audience.member_ids)
            return self._client.select("members", params)
        if isinstance(audience, Groups):
            if not audience.group_ids:
                return []
            rows = self._client.select(
                "group_members",
                {"select": f"member:members({MEMBER_COLUMNS})", "group_id": _in(audience.group_ids)},
            )
            return [r["member"] for r in rows if r.get("member")]
        if isinstance(audience, (RsvpAttendees, RsvpDeclined)):
            status = RSVP_ATTENDING if isinstance(audience, RsvpAttendees) else RSVP_DECLINED
            rows = self._client.select(
                "event_attendance",
                {
                    "select": f"member:members({MEMBER_COLUMNS})",
                    "event_id": _in((occurrence.occurrence_id, occurrence.series_id)),
                    "status": f"eq.{status}",
                },
            )
            return [r["member"] for r in rows if r.get("member")]
        raise ResolutionError(f"Unsupported audience: {audience!r}")

    def _member_filters(self) -> dict:
        params = {"select": MEMBER_COLUMNS, "status": f"eq.{ACTIVE_STATUS}"}
        if self._organization_id:
            params["organization_id"] = f"eq.{self._organization_id}"
        return params

    def _eligible(self, row: dict) -> bool:
        if (row.get("status") or ACTIVE_STATUS) != ACTIVE_STATUS:
            return False
        if self._organization_id and row.get("organization_id") not in (None, self._organization_id):
            return False
        return True


# ------------------------------------------------------------------
# Datastore
# ------------------------------------------------------------------

class SupabaseStore:
    """Reads definitions and writes occurrences against a Supabase project."""

    def __init__(self, client: SupabaseClient, organization_id: Optional[str] = None) -> None:
        self.client = client
        self.organization_id = organization_id
        self.dispatch_log = SupabaseDispatchLog(client)

    def _org_filter(self) -> dict:
        return {"organization_id": f"eq.{self.organization_id}"} if self.organization_id else {}

    def load_series(self) -> tuple[list[EventSeries], list[ConfigurationError]]:
        """Master events plus one-off events; invalid rows come back as errors."""
        params = self._org_filter()
        params["or"] = "(is_master.eq.true,is_recurring.eq.false)"
        return _validated(self.client.select("events", params), EventSeries.from_dict)

    def load_reminders(self) -> tuple[list[ReminderConfig], list[ConfigurationError]]:
        # Inactive configs are loaded too so their scheduled dispatches get cancelled.
        rows = self.client.select("event_reminder_configs", self._org_filter())
        return _validated(rows, ReminderConfig.from_dict)

    def upsert_occurrences(self, occurrences: list[EventOccurrence]) -> tuple[int, int]:
        """Upsert materialized instances keyed by their deterministic id.

        Returns:
            (added, updated) counts, like the JSON store.
        """
        if not occurrences:
            return 0, 0
        ids = [o.occurrence_id for o in occurrences]
        present = {r["id"] for r in self.client.select("events", {"select": "id", "id": _in(ids)})}
        rows = [occurrence_to_row(o, self.organization_id) for o in occurrences]
        self.client.upsert("events", rows, on_conflict="id")
        updated = sum(1 for i in ids if i in present)
        added = len(ids) - updated
        logger.info("Upsert complete: %d added, %d updated", added, updated)
        return added, updated

    def set_reminder_active(self, config_id: str, active: bool) -> bool:
        rows = self.client.update(
            "event_reminder_configs", {"id": f"eq.{config_id}"}, {"is_active": active}
        )
        return bool(rows)

    def resolver(self) -> SupabaseResolver:
        return SupabaseResolver(self.client, self.organization_id)


def _validated(rows: list[dict], factory) -> tuple[list, list[ConfigurationError]]:
    items = []
    errors: list[ConfigurationError] = []
    for row in rows:
        try:
            items.append(factory(row))
        except ConfigurationError as exc:
            logger.warning("Skipping invalid row %s: %s", row.get("id"), exc)
            errors.append(exc)
    return items, errors
