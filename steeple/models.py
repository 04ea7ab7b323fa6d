"""Series, occurrence, reminder and dispatch data model."""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import ClassVar, Optional, Union

from dateutil import tz

from steeple.errors import ConfigurationError

WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
WEEK_LABELS = ["First", "Second", "Third", "Fourth", "Last"]

# Accepted timing_unit values, each a timedelta keyword
TIMING_UNITS = frozenset({"minutes", "hours", "days", "weeks"})


def parse_instant(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware datetime.

    A trailing ``Z`` is accepted; naive values are rejected since an
    occurrence instant without a zone cannot be placed on the timeline.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as exc:
            raise ConfigurationError(f"Invalid timestamp: {value!r}") from exc
    if dt.tzinfo is None or dt.utcoffset() is None:
        raise ConfigurationError(f"Timestamp must carry a timezone: {value!r}")
    return dt


def format_instant(value: Optional[datetime]) -> Optional[str]:
    """Serialize an aware datetime as a UTC ISO string."""
    if value is None:
        return None
    return value.astimezone(tz.UTC).isoformat()


# ------------------------------------------------------------------
# Recurrence rules
# ------------------------------------------------------------------

@dataclass(frozen=True)
class NoRecurrence:
    """A single, non-recurring event."""

    kind: ClassVar[str] = "none"


@dataclass(frozen=True)
class Daily:
    kind: ClassVar[str] = "daily"
    step_days: ClassVar[int] = 1


@dataclass(frozen=True)
class Weekly:
    kind: ClassVar[str] = "weekly"
    step_days: ClassVar[int] = 7


@dataclass(frozen=True)
class Biweekly:
    kind: ClassVar[str] = "biweekly"
    step_days: ClassVar[int] = 14


@dataclass(frozen=True)
class MonthlyByWeekday:
    """The ``week``-th ``weekday`` of every month.

    ``weekday`` counts from Sunday (0) to Saturday (6). ``week = 5``
    means the last such weekday, so months without a fifth one are
    never skipped.
    """

    week: int
    weekday: int
    kind: ClassVar[str] = "monthly_weekday"

    def __post_init__(self) -> None:
        if not isinstance(self.week, int) or not 1 <= self.week <= 5:
            raise ConfigurationError(f"week must be between 1 and 5, got {self.week!r}")
        if not isinstance(self.weekday, int) or not 0 <= self.weekday <= 6:
            raise ConfigurationError(f"weekday must be between 0 and 6, got {self.weekday!r}")


@dataclass(frozen=True)
class MonthlyByDate:
    """A fixed calendar day each month, clamped to the month's last day."""

    day_of_month: int
    kind: ClassVar[str] = "monthly"

    def __post_init__(self) -> None:
        if not isinstance(self.day_of_month, int) or not 1 <= self.day_of_month <= 31:
            raise ConfigurationError(
                f"day_of_month must be between 1 and 31, got {self.day_of_month!r}"
            )


RecurrenceRule = Union[NoRecurrence, Daily, Weekly, Biweekly, MonthlyByWeekday, MonthlyByDate]
PERIODIC_RULES = (Daily, Weekly, Biweekly)


def _as_int(value, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc


def parse_rule(
    pattern: Optional[str],
    monthly_week=None,
    monthly_weekday=None,
    day_of_month=None,
    first_start: Optional[datetime] = None,
) -> RecurrenceRule:
    """Build a rule from datastore row fields.

    ``pattern`` is the ``recurrence_pattern`` column. A bare ``monthly``
    without ``day_of_month`` repeats on the first occurrence's day.
    """
    key = (pattern or "none").strip().lower()
    if key in ("none", "", "once"):
        return NoRecurrence()
    if key == "daily":
        return Daily()
    if key == "weekly":
        return Weekly()
    if key in ("biweekly", "bi-weekly"):
        return Biweekly()
    if key == "monthly_weekday":
        if monthly_week is None or monthly_weekday is None:
            raise ConfigurationError("monthly_weekday requires monthly_week and monthly_weekday")
        return MonthlyByWeekday(
            week=_as_int(monthly_week, "monthly_week"),
            weekday=_as_int(monthly_weekday, "monthly_weekday"),
        )
    if key == "monthly":
        if day_of_month is None:
            if first_start is None:
                raise ConfigurationError("monthly requires day_of_month or a first start")
            day_of_month = first_start.day
        return MonthlyByDate(day_of_month=_as_int(day_of_month, "day_of_month"))
    raise ConfigurationError(f"Unknown recurrence pattern: {pattern!r}")


def rule_to_dict(rule: RecurrenceRule) -> dict:
    data: dict = {"recurrence_pattern": rule.kind}
    if isinstance(rule, MonthlyByWeekday):
        data.update(monthly_week=rule.week, monthly_weekday=rule.weekday)
    elif isinstance(rule, MonthlyByDate):
        data["day_of_month"] = rule.day_of_month
    return data


def describe_rule(rule: RecurrenceRule) -> str:
    """Human label, e.g. 'Third Wednesday' or 'Bi-weekly'."""
    if isinstance(rule, MonthlyByWeekday):
        return f"{WEEK_LABELS[rule.week - 1]} {WEEKDAY_NAMES[rule.weekday]}"
    if isinstance(rule, MonthlyByDate):
        return f"Monthly on day {rule.day_of_month}"
    return {
        "none": "One-time",
        "daily": "Daily",
        "weekly": "Weekly",
        "biweekly": "Bi-weekly",
    }[rule.kind]


# ------------------------------------------------------------------
# Series and occurrences
# ------------------------------------------------------------------

@dataclass(frozen=True)
class EventSeries:
    """A master event definition from which occurrences are derived."""

    id: str
    title: str
    start: datetime
    end: datetime
    rule: RecurrenceRule = field(default_factory=NoRecurrence)
    description: Optional[str] = None
    location: Optional[str] = None
    horizon_end: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ConfigurationError("EventSeries requires an id")
        for name in ("start", "end", "horizon_end"):
            value = getattr(self, name)
            if value is not None and (value.tzinfo is None or value.utcoffset() is None):
                raise ConfigurationError(f"{self.id}: {name} must be timezone-aware")
        if self.end <= self.start:
            raise ConfigurationError(f"{self.id}: end must be after start")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def is_recurring(self) -> bool:
        return not isinstance(self.rule, NoRecurrence)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "start_date": format_instant(self.start),
            "end_date": format_instant(self.end),
            "horizon_end": format_instant(self.horizon_end),
        }
        data.update(rule_to_dict(self.rule))
        return data

    @classmethod
    def from_dict(cls, data: dict) -> EventSeries:
        """Deserialize a series row. Raises ConfigurationError on bad rows."""
        try:
            series_id = data["id"]
            start = parse_instant(data["start_date"])
            end = parse_instant(data["end_date"])
        except KeyError as exc:
            raise ConfigurationError(f"Series row missing field {exc}") from exc
        if start is None or end is None:
            raise ConfigurationError(f"{series_id}: start_date and end_date are required")
        rule = parse_rule(
            data.get("recurrence_pattern"),
            monthly_week=data.get("monthly_week"),
            monthly_weekday=data.get("monthly_weekday"),
            day_of_month=data.get("day_of_month"),
            first_start=start,
        )
        return cls(
            id=series_id,
            title=data.get("title") or "",
            start=start,
            end=end,
            rule=rule,
            description=data.get("description"),
            location=data.get("location"),
            horizon_end=parse_instant(data.get("horizon_end")),
        )

    def __repr__(self) -> str:
        return f"<EventSeries {self.id!r} '{self.title}' {describe_rule(self.rule)}>"


def occurrence_id(series_id: str, start: datetime) -> str:
    """Deterministic occurrence id from series id and start instant.

    Expanding the same series twice must give the same ids so that
    datastore upserts stay idempotent.
    """
    key = f"{series_id}|{format_instant(start)}"
    return hashlib.sha256(key.encode()).hexdigest()[:16]


@dataclass
class EventOccurrence:
    """A concrete, dated instance of a series."""

    series_id: str
    title: str
    start: datetime
    end: datetime
    location: Optional[str] = None
    description: Optional[str] = None
    occurrence_id: str = field(default="", init=False)

    def __post_init__(self) -> None:
        self.occurrence_id = occurrence_id(self.series_id, self.start)

    @property
    def id(self) -> str:
        return self.occurrence_id

    @property
    def sort_key(self) -> tuple:
        return (self.start, self.title.lower())

    def to_dict(self) -> dict:
        return {
            "id": self.occurrence_id,
            "series_id": self.series_id,
            "title": self.title,
            "location": self.location,
            "description": self.description,
            "start_date": format_instant(self.start),
            "end_date": format_instant(self.end),
        }

    @classmethod
    def from_dict(cls, data: dict) -> EventOccurrence:
        # The id is regenerated from series_id + start
        return cls(
            series_id=data["series_id"],
            title=data.get("title") or "",
            start=parse_instant(data["start_date"]),
            end=parse_instant(data["end_date"]),
            location=data.get("location"),
            description=data.get("description"),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EventOccurrence):
            return NotImplemented
        return self.occurrence_id == other.occurrence_id

    def __hash__(self) -> int:
        return hash(self.occurrence_id)

    def __repr__(self) -> str:
        return f"<EventOccurrence '{self.title}' at {format_instant(self.start)}>"


# ------------------------------------------------------------------
# Audiences
# ------------------------------------------------------------------

@dataclass(frozen=True)
class AllMembers:
    kind: ClassVar[str] = "all"


@dataclass(frozen=True)
class Groups:
    group_ids: tuple[str, ...]
    kind: ClassVar[str] = "groups"

    def __post_init__(self) -> None:
        object.__setattr__(self, "group_ids", tuple(str(g) for g in self.group_ids))


@dataclass(frozen=True)
class Members:
    member_ids: tuple[str, ...]
    kind: ClassVar[str] = "members"

    def __post_init__(self) -> None:
        object.__setattr__(self, "member_ids", tuple(str(m) for m in self.member_ids))


@dataclass(frozen=True)
class RsvpAttendees:
    """Members who RSVP'd as attending."""

    kind: ClassVar[str] = "rsvp_attendees"


@dataclass(frozen=True)
class RsvpDeclined:
    """Members who RSVP'd as not attending."""

    kind: ClassVar[str] = "rsvp_declined"


Audience = Union[AllMembers, Groups, Members, RsvpAttendees, RsvpDeclined]


def parse_audience(target_type: Optional[str], target_groups=None, target_members=None) -> Audience:
    """Build an audience from ``target_type`` and its id lists."""
    key = (target_type or "all").strip().lower()
    if key == "all":
        return AllMembers()
    if key == "groups":
        return Groups(tuple(target_groups or ()))
    if key == "members":
        return Members(tuple(target_members or ()))
    if key == "rsvp_attendees":
        return RsvpAttendees()
    if key == "rsvp_declined":
        return RsvpDeclined()
    raise ConfigurationError(f"Unknown reminder target type: {target_type!r}")


def audience_to_dict(audience: Audience) -> dict:
    return {
        "target_type": audience.kind,
        "target_groups": list(getattr(audience, "group_ids", ())),
        "target_members": list(getattr(audience, "member_ids", ())),
    }


# ------------------------------------------------------------------
# Reminders
# ------------------------------------------------------------------

class Channel(str, Enum):
    SMS = "sms"
    EMAIL = "email"


def offset_from(value, unit: Optional[str] = "hours") -> timedelta:
    """Convert ``timing_value`` + ``timing_unit`` into an offset.

    Unknown units count as hours.
    """
    amount = float(value)
    if amount < 0:
        raise ConfigurationError(f"Reminder offset must not be negative, got {value!r}")
    keyword = (unit or "hours").strip().lower()
    if keyword not in TIMING_UNITS:
        keyword = "hours"
    return timedelta(**{keyword: amount})


@dataclass
class ReminderConfig:
    """When, to whom and what to send before an occurrence starts.

    Exactly one of ``series_id`` (every occurrence of the series) or
    ``occurrence_id`` (a single occurrence) is set.
    """

    id: str
    offset: timedelta
    message_template: str
    audience: Audience = field(default_factory=AllMembers)
    channel: Channel = Channel.SMS
    series_id: Optional[str] = None
    occurrence_id: Optional[str] = None
    active: bool = True
    name: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ConfigurationError("ReminderConfig requires an id")
        if bool(self.series_id) == bool(self.occurrence_id):
            raise ConfigurationError(
                f"{self.id}: exactly one of series_id or occurrence_id must be set"
            )
        if self.offset < timedelta(0):
            raise ConfigurationError(f"{self.id}: offset must not be negative")
        self.channel = Channel(self.channel)

    def targets(self, occurrence: EventOccurrence) -> bool:
        if self.occurrence_id:
            return self.occurrence_id == occurrence.occurrence_id
        return self.series_id == occurrence.series_id

    def fire_at(self, occurrence: EventOccurrence) -> datetime:
        return occurrence.start - self.offset

    @property
    def offset_hours(self) -> float:
        return self.offset.total_seconds() / 3600

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "series_id": self.series_id,
            "occurrence_id": self.occurrence_id,
            "timing_value": self.offset.total_seconds() / 60,
            "timing_unit": "minutes",
            "message_template": self.message_template,
            "channel": self.channel.value,
            "is_active": self.active,
        }
        data.update(audience_to_dict(self.audience))
        return data

    @classmethod
    def from_dict(cls, data: dict) -> ReminderConfig:
        """Deserialize a reminder config row.

        Accepts ``timing_value``/``timing_unit`` or the older
        ``timing_hours`` column.
        """
        if data.get("timing_value") is not None:
            offset = offset_from(data["timing_value"], data.get("timing_unit"))
        elif data.get("timing_hours") is not None:
            offset = offset_from(data["timing_hours"], "hours")
        else:
            raise ConfigurationError(f"{data.get('id')}: reminder has no timing")
        try:
            channel = Channel((data.get("channel") or "sms").lower())
        except ValueError as exc:
            raise ConfigurationError(f"{data.get('id')}: unknown channel {data.get('channel')!r}") from exc
        return cls(
            id=data.get("id") or "",
            name=data.get("name"),
            series_id=data.get("series_id") or data.get("event_id"),
            occurrence_id=data.get("occurrence_id"),
            offset=offset,
            message_template=data.get("message_template") or "",
            audience=parse_audience(
                data.get("target_type"), data.get("target_groups"), data.get("target_members")
            ),
            channel=channel,
            active=bool(data.get("is_active", True)),
        )


@dataclass(frozen=True)
class Recipient:
    id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None

    def address_for(self, channel: Channel) -> Optional[str]:
        return self.phone if channel is Channel.SMS else self.email


class DispatchStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


DispatchIdentity = tuple[str, str, str]

# Error text of a planned dispatch cancelled by deactivating its reminder.
# Such records are picked up again once the reminder is re-enabled.
DEACTIVATED_REASON = "reminder deactivated"
TERMINAL_REASON = "marked terminal"


@dataclass
class ReminderDispatch:
    """One delivery attempt of one reminder to one recipient for one occurrence."""

    config_id: str
    occurrence_id: str
    recipient_id: str
    scheduled_at: datetime
    attempted_at: Optional[datetime] = None
    status: DispatchStatus = DispatchStatus.SCHEDULED
    rendered_message: str = ""
    address: Optional[str] = None
    channel: Channel = Channel.SMS
    series_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    provider_id: Optional[str] = None
    error: Optional[str] = None
    late: bool = False
    offset_hours: Optional[float] = None

    @property
    def identity(self) -> DispatchIdentity:
        return (self.config_id, self.occurrence_id, self.recipient_id)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["channel"] = self.channel.value
        for name in ("scheduled_at", "attempted_at", "sent_at"):
            data[name] = format_instant(getattr(self, name))
        return data

    @classmethod
    def from_dict(cls, data: dict) -> ReminderDispatch:
        data = dict(data)
        data["status"] = DispatchStatus(data.get("status", "scheduled"))
        data["channel"] = Channel(data.get("channel", "sms"))
        for name in ("scheduled_at", "attempted_at", "sent_at"):
            data[name] = parse_instant(data.get(name))
        return cls(**data)

    @property
    def resumable(self) -> bool:
        """Cancelled by deactivation before any attempt was made."""
        return (
            self.status is DispatchStatus.CANCELLED
            and self.attempted_at is None
            and self.error == DEACTIVATED_REASON
        )


@dataclass(frozen=True)
class DispatchSkip:
    """A skipped dispatch call, kept beside the record it deferred to."""

    config_id: str
    occurrence_id: str
    recipient_id: str
    reason: str
    skipped_at: datetime

    @property
    def identity(self) -> DispatchIdentity:
        return (self.config_id, self.occurrence_id, self.recipient_id)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["skipped_at"] = format_instant(self.skipped_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> DispatchSkip:
        data = dict(data)
        data["skipped_at"] = parse_instant(data["skipped_at"])
        return cls(**data)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of a single ``dispatch`` call."""

    outcome: str  # "sent", "failed" or "skipped"
    identity: DispatchIdentity
    reason: Optional[str] = None
    record: Optional[ReminderDispatch] = None

    SENT: ClassVar[str] = "sent"
    FAILED: ClassVar[str] = "failed"
    SKIPPED: ClassVar[str] = "skipped"

    @property
    def ok(self) -> bool:
        return self.outcome == self.SENT
