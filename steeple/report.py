"""Render the upcoming agenda and reminder log as Markdown files."""

from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from itertools import groupby
from pathlib import Path
from typing import Optional

from dateutil import tz

from steeple.models import (
    DispatchStatus,
    EventOccurrence,
    EventSeries,
    ReminderConfig,
    ReminderDispatch,
    describe_rule,
)
from steeple.scheduler import reminder_stats
from steeple.templating import format_time

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_DIR = Path("output")


def _format_date_heading(value: datetime, zone: tzinfo) -> str:
    """'Saturday, February 15, 2026'."""
    return value.astimezone(zone).strftime("%A, %B %d, %Y").replace(" 0", " ")


def _format_time_range(occurrence: EventOccurrence, zone: tzinfo) -> str:
    return f"{format_time(occurrence.start, zone)} - {format_time(occurrence.end, zone)}"


def _format_offset(config: ReminderConfig) -> str:
    hours = config.offset_hours
    if hours and hours % 24 == 0:
        days = int(hours // 24)
        return f"{days} day{'s' if days != 1 else ''} before"
    if hours >= 1:
        return f"{hours:g}h before"
    return f"{config.offset.total_seconds() / 60:g} min before"


# ------------------------------------------------------------------
# Occurrence entry
# ------------------------------------------------------------------

def _render_occurrence(
    occurrence: EventOccurrence,
    series: Optional[EventSeries],
    reminders: list[ReminderConfig],
    zone: tzinfo,
) -> str:
    lines: list[str] = [f"### {occurrence.title}", ""]
    lines.append(f"- **Time:** {_format_time_range(occurrence, zone)}")
    if occurrence.location:
        lines.append(f"- **Location:** {occurrence.location}")
    if series is not None:
        lines.append(f"- **Repeats:** {describe_rule(series.rule)}")
    for config in reminders:
        state = "" if config.active else " (inactive)"
        lines.append(
            f"- **Reminder:** {config.name or config.id}, {config.channel.value}, "
            f"{_format_offset(config)}{state}"
        )
    return "\n".join(lines)


# ------------------------------------------------------------------
# Full document renderers
# ------------------------------------------------------------------

def render_agenda(
    occurrences: list[EventOccurrence],
    series: list[EventSeries],
    configs: list[ReminderConfig],
    now: datetime,
    zone: Optional[tzinfo] = None,
) -> str:
    """Render upcoming occurrences grouped by local date."""
    zone = zone or tz.UTC
    by_id = {s.id: s for s in series}
    lines: list[str] = [
        "# Upcoming Events",
        "",
        f"*Generated {now.astimezone(zone).strftime('%B %d, %Y at %I:%M %p').replace(' 0', ' ')}*",
        "",
        f"*{len(occurrences)} occurrence(s) from {len({o.series_id for o in occurrences})} series*",
        "",
        "---",
        "",
    ]
    if not occurrences:
        lines.append("*No upcoming events.*")
        return "\n".join(lines)

    ordered = sorted(occurrences, key=lambda o: o.sort_key)
    for _day, day_items in groupby(ordered, key=lambda o: o.start.astimezone(zone).date()):
        day_list = list(day_items)
        lines.append(f"## {_format_date_heading(day_list[0].start, zone)}")
        lines.append("")
        for occurrence in day_list:
            reminders = [c for c in configs if c.targets(occurrence)]
            lines.append(_render_occurrence(occurrence, by_id.get(occurrence.series_id), reminders, zone))
            lines.append("")
        lines.append("---")
        lines.append("")
    return "\n".join(lines)


def render_dispatch_log(records: list[ReminderDispatch], now: datetime, zone: Optional[tzinfo] = None) -> str:
    """Render dispatch statistics and the most recent attempts."""
    zone = zone or tz.UTC
    stats = reminder_stats(records)
    lines: list[str] = [
        "# Reminder Log",
        "",
        f"*Generated {now.astimezone(zone).strftime('%B %d, %Y at %I:%M %p').replace(' 0', ' ')}*",
        "",
        f"- **Sent:** {stats['sent']}",
        f"- **Failed:** {stats['failed']}",
        f"- **Scheduled:** {stats['scheduled']}",
        f"- **Cancelled:** {stats['cancelled']}",
        f"- **Late:** {stats['late']}",
        f"- **Delivery rate:** {stats['delivery_rate']}%",
        "",
    ]
    if not records:
        lines.append("*No reminders recorded.*")
        return "\n".join(lines)

    lines.extend(["| When | Reminder | Recipient | Status | Detail |", "|---|---|---|---|---|"])
    for record in sorted(records, key=lambda r: r.attempted_at or r.scheduled_at, reverse=True):
        when = (record.attempted_at or record.scheduled_at).astimezone(zone).strftime("%Y-%m-%d %H:%M")
        detail = record.error or ("late" if record.late else "")
        if record.status is DispatchStatus.SENT and record.provider_id:
            detail = detail or record.provider_id
        lines.append(
            f"| {when} | {record.config_id} | {record.recipient_id} | {record.status.value} | {detail} |"
        )
    return "\n".join(lines)


# ------------------------------------------------------------------
# File writers
# ------------------------------------------------------------------

def publish(
    occurrences: list[EventOccurrence],
    series: list[EventSeries],
    configs: list[ReminderConfig],
    records: list[ReminderDispatch],
    now: datetime,
    output_dir: Path | None = None,
    zone: Optional[tzinfo] = None,
) -> tuple[Path, Path]:
    """Write AGENDA.md and REMINDERS.md to the output directory.

    Returns:
        Tuple of (agenda_path, reminders_path).
    """
    out = output_dir or DEFAULT_OUTPUT_DIR
    out.mkdir(parents=True, exist_ok=True)

    agenda_path = out / "AGENDA.md"
    reminders_path = out / "REMINDERS.md"

    agenda_path.write_text(render_agenda(occurrences, series, configs, now, zone), encoding="utf-8")
    logger.info("Wrote %s (%d occurrences)", agenda_path, len(occurrences))

    reminders_path.write_text(render_dispatch_log(records, now, zone), encoding="utf-8")
    logger.info("Wrote %s (%d dispatches)", reminders_path, len(records))

    return agenda_path, reminders_path
