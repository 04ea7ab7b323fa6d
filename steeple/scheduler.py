"""Reminder scheduling and exactly-once dispatch."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

import httpx

from steeple import templating
from steeple.config import Settings
from steeple.errors import DatastoreError, DispatchError, DuplicateDispatch, ResolutionError
from steeple.messaging.base import BaseDispatcher
from steeple.models import (
    DEACTIVATED_REASON,
    TERMINAL_REASON,
    Channel,
    DispatchIdentity,
    DispatchResult,
    DispatchSkip,
    DispatchStatus,
    EventOccurrence,
    EventSeries,
    Recipient,
    ReminderConfig,
    ReminderDispatch,
)
from steeple.recurrence import expand
from steeple.resolver import RecipientResolver
from steeple.store import DispatchLog, is_claimable

logger = logging.getLogger(__name__)

DuePair = tuple[EventOccurrence, ReminderConfig]


@dataclass
class TickSummary:
    """Counts and per-reminder rows from one ``run_tick`` pass."""

    sent: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0
    errors: list[str] = field(default_factory=list)
    results: list[dict] = field(default_factory=list)

    def tally(self, result: DispatchResult) -> None:
        if result.outcome == DispatchResult.SENT:
            self.sent += 1
        elif result.outcome == DispatchResult.FAILED:
            self.failed += 1
        else:
            self.skipped += 1


class ReminderScheduler:
    """Decides which reminders are due and delivers each one at most once.

    The scheduler owns no clock and no polling loop: an external driver
    (cron, the ``steeple tick`` command) passes ``now`` on every call.
    The dispatch log, recipient resolver and per-channel dispatchers
    are injected.
    """

    def __init__(
        self,
        log: DispatchLog,
        resolver: RecipientResolver,
        dispatchers: dict[Channel, BaseDispatcher],
        settings: Optional[Settings] = None,
    ) -> None:
        self._log = log
        self._resolver = resolver
        self._dispatchers = dict(dispatchers)
        self.settings = settings or Settings()
        self._zone = self.settings.tz

    @property
    def dedup_window(self) -> timedelta:
        return self.settings.dedup_window

    # ------------------------------------------------------------------
    # Due computation
    # ------------------------------------------------------------------

    def compute_due(
        self,
        occurrences: Iterable[EventOccurrence],
        configs: Iterable[ReminderConfig],
        now: datetime,
    ) -> list[DuePair]:
        """Return the (occurrence, config) pairs that should fire at ``now``.

        A pair is due once its fire time has passed and the occurrence has
        not started yet, unless it was attempted within the dedup window or
        has already been settled. Inactive configs are cancelled first and
        never produce pairs.
        """
        configs = list(configs)
        occurrences = list(occurrences)
        self.cancel_inactive(configs)

        due: list[DuePair] = []
        for config in configs:
            if not config.active:
                continue
            for occurrence in occurrences:
                if not config.targets(occurrence):
                    continue
                if now < config.fire_at(occurrence) or now >= occurrence.start:
                    continue
                if self._settled(config, occurrence, now):
                    continue
                due.append((occurrence, config))

        due.sort(key=lambda pair: (pair[1].fire_at(pair[0]), pair[1].id))
        logger.debug("%d reminder(s) due at %s", len(due), now.isoformat())
        return due

    def _settled(self, config: ReminderConfig, occurrence: EventOccurrence, now: datetime) -> bool:
        try:
            records = self._log.attempts_for(config.id, occurrence.occurrence_id)
        except DatastoreError as exc:
            # dispatch() still claims each identity before sending
            logger.error("Cannot read attempts of %s for '%s': %s", config.id, occurrence.title, exc)
            return False
        attempts = [r for r in records if r.attempted_at is not None]
        if not attempts:
            return False
        cutoff = now - self.dedup_window
        if any(r.attempted_at >= cutoff for r in attempts):
            return True
        # Old failures and claims that never recorded an outcome are retried
        return not any(r.status in (DispatchStatus.FAILED, DispatchStatus.SCHEDULED) for r in attempts)

    # ------------------------------------------------------------------
    # Recipients and rendering
    # ------------------------------------------------------------------

    def resolve_recipients(self, config: ReminderConfig, occurrence: EventOccurrence) -> list[Recipient]:
        """Resolve a config's audience, one entry per recipient id.

        Recipients without an address for the config's channel are
        dropped. Raises ``ResolutionError`` when the resolver fails.
        """
        try:
            found = self._resolver.resolve(config.audience, occurrence)
        except ResolutionError:
            raise
        except (DatastoreError, httpx.HTTPError) as exc:
            raise ResolutionError(f"{config.id}: {exc}") from exc

        seen: set[str] = set()
        recipients: list[Recipient] = []
        for recipient in found:
            if recipient.id in seen:
                continue
            seen.add(recipient.id)
            if not recipient.address_for(config.channel):
                logger.debug("Skipping %s: no %s address", recipient.id, config.channel.value)
                continue
            recipients.append(recipient)
        return recipients

    def render(
        self,
        template: str,
        occurrence: EventOccurrence,
        recipient: Recipient,
        now: Optional[datetime] = None,
    ) -> str:
        """Render a template in the organization's timezone."""
        return templating.render(template, occurrence, recipient, now=now, zone=self._zone)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(
        self,
        occurrence: EventOccurrence,
        config: ReminderConfig,
        recipient: Recipient,
        now: datetime,
    ) -> DispatchResult:
        """Deliver one reminder to one recipient, at most once per identity.

        The identity is claimed in the log before sending; the outcome is
        written back whether the send succeeds or fails, and skips are
        journaled beside the record. An unreachable log or an unexpected
        provider error comes back as a ``failed`` result, so callers can
        always move on to the next recipient. Failures are not retried here.
        """
        identity: DispatchIdentity = (config.id, occurrence.occurrence_id, recipient.id)
        try:
            existing = self._log.find(identity)
        except DatastoreError as exc:
            return self._unrecorded_failure(identity, f"dispatch log unavailable: {exc}")
        if existing is not None:
            reason = self._skip_reason(existing, now)
            if reason:
                return self._skip(identity, reason, now, existing)

        fire_at = config.fire_at(occurrence)
        late = now > fire_at + self.settings.late_grace
        message = self.render(config.message_template, occurrence, recipient, now)
        if late:
            message = templating.LATE_PREFIX + message
        if config.channel is Channel.SMS:
            message = templating.to_plain_text(message)

        record = ReminderDispatch(
            config_id=config.id,
            occurrence_id=occurrence.occurrence_id,
            recipient_id=recipient.id,
            scheduled_at=fire_at,
            attempted_at=now,
            status=DispatchStatus.SCHEDULED,
            rendered_message=message,
            address=recipient.address_for(config.channel),
            channel=config.channel,
            series_id=occurrence.series_id,
            late=late,
            offset_hours=config.offset_hours,
        )
        try:
            self._log.claim(record, retry_before=now - self.dedup_window)
        except DuplicateDispatch:
            return self._skip(identity, "duplicate", now)
        except DatastoreError as exc:
            return self._unrecorded_failure(identity, f"dispatch log unavailable: {exc}")

        try:
            provider_id = self._send(config, occurrence, record.address or "", message)
        except DispatchError as exc:
            return self._record_failure(record, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error sending %s to %s", config.id, recipient.id)
            return self._record_failure(record, f"unexpected error: {exc}")

        record.status = DispatchStatus.SENT
        record.sent_at = now
        record.provider_id = provider_id
        try:
            self._log.update(record)
        except DatastoreError as exc:
            # The claim stays SCHEDULED and is taken over after the dedup window
            reason = f"sent but not recorded: {exc}"
            logger.error("Reminder %s to %s %s", config.id, recipient.id, reason)
            return DispatchResult(DispatchResult.FAILED, identity, reason=reason, record=record)
        logger.info(
            "Sent %sreminder %s for '%s' to %s",
            "late " if late else "",
            config.id,
            occurrence.title,
            recipient.id,
        )
        return DispatchResult(DispatchResult.SENT, identity, record=record)

    def _send(self, config: ReminderConfig, occurrence: EventOccurrence, address: str, message: str) -> str:
        dispatcher = self._dispatchers.get(config.channel)
        if dispatcher is None:
            raise DispatchError(f"no dispatcher configured for {config.channel.value}")
        subject = f"Reminder: {occurrence.title or 'Event'}"
        return dispatcher.send(address, message, subject=subject)

    def _record_failure(self, record: ReminderDispatch, reason: str) -> DispatchResult:
        record.status = DispatchStatus.FAILED
        record.error = reason
        logger.warning("Reminder %s to %s failed: %s", record.config_id, record.recipient_id, reason)
        try:
            self._log.update(record)
        except DatastoreError as exc:
            logger.error("Could not record failure of %s: %s", record.identity, exc)
        return DispatchResult(DispatchResult.FAILED, record.identity, reason=reason, record=record)

    def _unrecorded_failure(self, identity: DispatchIdentity, reason: str) -> DispatchResult:
        logger.error("Reminder %s to %s failed: %s", identity[0], identity[2], reason)
        return DispatchResult(DispatchResult.FAILED, identity, reason=reason)

    def _skip(
        self,
        identity: DispatchIdentity,
        reason: str,
        now: datetime,
        existing: Optional[ReminderDispatch] = None,
    ) -> DispatchResult:
        logger.info("Skipping %s for %s: %s", identity[0], identity[2], reason)
        try:
            self._log.record_skip(DispatchSkip(*identity, reason=reason, skipped_at=now))
        except DatastoreError as exc:
            logger.error("Could not record skip of %s: %s", identity, exc)
        return DispatchResult(DispatchResult.SKIPPED, identity, reason=reason, record=existing)

    def _skip_reason(self, existing: ReminderDispatch, now: datetime) -> Optional[str]:
        if existing.status is DispatchStatus.SENT:
            return "duplicate"
        if is_claimable(existing, now - self.dedup_window):
            return None
        if existing.status is DispatchStatus.CANCELLED:
            return "cancelled"
        return "duplicate"

    def send_test(
        self,
        config: ReminderConfig,
        occurrence: EventOccurrence,
        address: str,
        now: datetime,
    ) -> str:
        """Send a config's message to any address, outside the dispatch log.

        The message is rendered for a sample member and prefixed with
        ``[TEST] ``. Returns the provider id; provider failures raise
        ``DispatchError``.
        """
        sample = Recipient(id="test", name=templating.TEST_MEMBER_NAME)
        message = templating.TEST_PREFIX + self.render(config.message_template, occurrence, sample, now)
        if config.channel is Channel.SMS:
            message = templating.to_plain_text(message)
        provider_id = self._send(config, occurrence, address, message)
        logger.info("Sent test of reminder %s to %s", config.id, address)
        return provider_id

    def recipient_count(self, config: ReminderConfig, occurrence: EventOccurrence) -> int:
        """Audience size of ``config`` for ``occurrence``."""
        return len(self.resolve_recipients(config, occurrence))

    # ------------------------------------------------------------------
    # Planning and cancellation
    # ------------------------------------------------------------------

    def plan(
        self,
        occurrences: Iterable[EventOccurrence],
        configs: Iterable[ReminderConfig],
        now: datetime,
    ) -> int:
        """Record ``SCHEDULED`` dispatches for reminders that fire after ``now``.

        Planned records make the upcoming queue visible and are claimed
        by ``dispatch()`` when they come due. Returns the number of new
        records.
        """
        occurrences = list(occurrences)
        planned = 0
        for config in configs:
            if not config.active:
                continue
            for occurrence in occurrences:
                if not config.targets(occurrence) or config.fire_at(occurrence) <= now:
                    continue
                try:
                    recipients = self.resolve_recipients(config, occurrence)
                except ResolutionError as exc:
                    logger.error("Cannot plan %s for '%s': %s", config.id, occurrence.title, exc)
                    continue
                for recipient in recipients:
                    identity = (config.id, occurrence.occurrence_id, recipient.id)
                    if self._log.find(identity) is not None:
                        continue
                    record = ReminderDispatch(
                        config_id=config.id,
                        occurrence_id=occurrence.occurrence_id,
                        recipient_id=recipient.id,
                        scheduled_at=config.fire_at(occurrence),
                        address=recipient.address_for(config.channel),
                        channel=config.channel,
                        series_id=occurrence.series_id,
                        offset_hours=config.offset_hours,
                    )
                    try:
                        self._log.claim(record, retry_before=now - self.dedup_window)
                    except DuplicateDispatch:
                        continue
                    planned += 1
        if planned:
            logger.info("Planned %d reminder dispatch(es)", planned)
        return planned

    def cancel_inactive(self, configs: Iterable[ReminderConfig]) -> int:
        """Mark scheduled-but-unsent records of inactive configs as cancelled.

        Records are kept for audit, never deleted. Planned records
        cancelled here are delivered again if the config is re-enabled
        before they fire. Returns the number of records cancelled.
        """
        cancelled = 0
        for config in configs:
            if config.active:
                continue
            try:
                for record in self._log.scheduled_for_config(config.id):
                    record.status = DispatchStatus.CANCELLED
                    record.error = DEACTIVATED_REASON
                    self._log.update(record)
                    cancelled += 1
            except DatastoreError as exc:
                logger.error("Cannot cancel dispatches of inactive reminder %s: %s", config.id, exc)
        if cancelled:
            logger.info("Cancelled %d scheduled dispatch(es) of inactive reminders", cancelled)
        return cancelled

    def mark_terminal(self, identity: DispatchIdentity) -> bool:
        """Stop a failed or planned dispatch for good.

        Unlike a deactivation, a terminal cancellation is never resumed.
        """
        record = self._log.find(identity)
        if record is None or record.status is DispatchStatus.SENT:
            return False
        record.status = DispatchStatus.CANCELLED
        record.error = f"{TERMINAL_REASON}: {record.error}" if record.error else TERMINAL_REASON
        self._log.update(record)
        return True

    def stats(self, occurrence_id: Optional[str] = None, series_id: Optional[str] = None) -> dict:
        return reminder_stats(
            self._log.all_records(),
            occurrence_id=occurrence_id,
            series_id=series_id,
            skips=self._log.skips(),
        )

    # ------------------------------------------------------------------
    # Tick driver
    # ------------------------------------------------------------------

    def run_tick(
        self,
        series_list: Iterable[EventSeries],
        configs: Iterable[ReminderConfig],
        now: datetime,
    ) -> TickSummary:
        """One pass of the periodic driver: expand, compute due, dispatch.

        A resolver failure skips that reminder for this tick; a failed
        recipient never blocks the others.
        """
        configs = list(configs)
        summary = TickSummary()
        summary.cancelled = self.cancel_inactive(configs)

        active = [c for c in configs if c.active]
        if not active:
            logger.info("No active reminders.")
            return summary

        # Only occurrences starting within the largest offset can be due.
        max_offset = max(c.offset for c in active)
        occurrences: list[EventOccurrence] = []
        for series in series_list:
            occurrences.extend(expand(series, now, now + max_offset))

        for occurrence, config in self.compute_due(occurrences, active, now):
            row = {
                "event": occurrence.title,
                "occurrence_id": occurrence.occurrence_id,
                "config": config.name or config.id,
                "recipients": 0,
                "sent": 0,
                "failed": 0,
                "skipped": 0,
            }
            summary.results.append(row)
            try:
                recipients = self.resolve_recipients(config, occurrence)
            except ResolutionError as exc:
                logger.error("Reminder %s for '%s' skipped this tick: %s", config.id, occurrence.title, exc)
                row["error"] = str(exc)
                summary.errors.append(str(exc))
                continue

            row["recipients"] = len(recipients)
            for recipient in recipients:
                try:
                    result = self.dispatch(occurrence, config, recipient, now)
                except Exception as exc:
                    logger.exception("Reminder %s to %s failed", config.id, recipient.id)
                    result = DispatchResult(
                        DispatchResult.FAILED,
                        (config.id, occurrence.occurrence_id, recipient.id),
                        reason=str(exc),
                    )
                    summary.errors.append(f"{config.id}/{recipient.id}: {exc}")
                summary.tally(result)
                row[result.outcome] += 1

            logger.info(
                "Completed reminder %s for '%s': %d sent, %d failed, %d skipped",
                config.id,
                occurrence.title,
                row["sent"],
                row["failed"],
                row["skipped"],
            )
        return summary


# ------------------------------------------------------------------
# Statistics
# ------------------------------------------------------------------

def reminder_stats(
    records: Iterable[ReminderDispatch],
    occurrence_id: Optional[str] = None,
    series_id: Optional[str] = None,
    skips: Iterable[DispatchSkip] = (),
) -> dict:
    """Summarize dispatch records, optionally for one occurrence or series."""
    selected = [
        r for r in records
        if (occurrence_id is None or r.occurrence_id == occurrence_id)
        and (series_id is None or r.series_id == series_id)
    ]
    # Skips carry no series id; they count when their record was selected
    identities = {r.identity for r in selected}
    skipped = sum(1 for s in skips if s.identity in identities)
    by_status = Counter(r.status for r in selected)
    attempted = by_status[DispatchStatus.SENT] + by_status[DispatchStatus.FAILED]
    timing = Counter(
        _format_hours(r.offset_hours)
        for r in selected
        if r.offset_hours is not None and r.attempted_at is not None
    )
    return {
        "total": len(selected),
        "sent": by_status[DispatchStatus.SENT],
        "failed": by_status[DispatchStatus.FAILED],
        "scheduled": by_status[DispatchStatus.SCHEDULED],
        "cancelled": by_status[DispatchStatus.CANCELLED],
        "skipped": skipped,
        "late": sum(1 for r in selected if r.late),
        "delivery_rate": round(by_status[DispatchStatus.SENT] / attempted * 100) if attempted else 0,
        "timing_breakdown": dict(sorted(timing.items())),
    }


def _format_hours(hours: float) -> str:
    return f"{hours:g}h"
