"""Reminder message rendering."""

from __future__ import annotations

import math
import re
from datetime import datetime, tzinfo
from typing import Optional

from bs4 import BeautifulSoup
from dateutil import tz

from steeple.models import EventOccurrence, Recipient

LATE_PREFIX = "[LATE REMINDER] "
TEST_PREFIX = "[TEST] "
PREVIEW_MEMBER_NAME = "John Doe"
TEST_MEMBER_NAME = "Test User"

PLACEHOLDERS = (
    "event_title",
    "event_time",
    "event_date",
    "event_location",
    "member_name",
    "hours_until_event",
)

_TOKEN_RE = re.compile(r"\{(\w+)\}")
_BLOCK_TAGS = ["p", "div", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6"]


def format_time(value: datetime, zone: tzinfo) -> str:
    """Format an instant as '3:30 PM' in ``zone``."""
    return value.astimezone(zone).strftime("%I:%M %p").lstrip("0")


def format_date(value: datetime, zone: tzinfo) -> str:
    """Format an instant as '08/22/2025' in ``zone``."""
    return value.astimezone(zone).strftime("%m/%d/%Y")


def hours_until(start: datetime, now: datetime) -> int:
    """Whole hours until ``start``, rounded up."""
    return math.ceil((start - now).total_seconds() / 3600)


def placeholder_values(
    occurrence: EventOccurrence,
    member_name: str,
    now: datetime,
    zone: tzinfo,
) -> dict[str, str]:
    return {
        "event_title": occurrence.title or "Event",
        "event_time": format_time(occurrence.start, zone),
        "event_date": format_date(occurrence.start, zone),
        "event_location": occurrence.location or "TBD",
        "member_name": member_name,
        "hours_until_event": str(hours_until(occurrence.start, now)),
    }


def render(
    template: str,
    occurrence: EventOccurrence,
    recipient: Recipient,
    now: Optional[datetime] = None,
    zone: Optional[tzinfo] = None,
) -> str:
    """Substitute placeholder tokens in ``template``.

    Times are converted from the occurrence's instant into ``zone``
    (UTC when omitted). Unknown tokens are left as written so template
    typos stay visible in the output.
    """
    zone = zone or tz.UTC
    now = now or datetime.now(tz.UTC)
    values = placeholder_values(occurrence, recipient.name, now, zone)

    def _sub(match: re.Match) -> str:
        return values.get(match.group(1), match.group(0))

    return _TOKEN_RE.sub(_sub, template or "")


def preview(
    template: str,
    occurrence: EventOccurrence,
    now: Optional[datetime] = None,
    zone: Optional[tzinfo] = None,
) -> str:
    """Render a template with a sample member name."""
    sample = Recipient(id="preview", name=PREVIEW_MEMBER_NAME)
    return render(template, occurrence, sample, now=now, zone=zone)


def unknown_tokens(template: str) -> list[str]:
    """List tokens in ``template`` that render() will leave untouched."""
    return [t for t in _TOKEN_RE.findall(template or "") if t not in PLACEHOLDERS]


def to_plain_text(message: str) -> str:
    """Strip HTML markup for text-only channels.

    Plain messages pass through unchanged; ``<br>`` and block
    elements become line breaks.
    """
    if "<" not in message:
        return message
    soup = BeautifulSoup(message, "html.parser")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(_BLOCK_TAGS):
        block.append("\n")
    text = soup.get_text()
    lines = [" ".join(line.split()) for line in text.splitlines()]
    return "\n".join(line for line in lines if line)
