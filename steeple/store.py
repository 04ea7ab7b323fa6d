"""JSON-backed datastore and dispatch log."""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional

from steeple.config import DEFAULT_DATA_DIR
from steeple.errors import ConfigurationError, DuplicateDispatch
from steeple.models import (
    DispatchIdentity,
    DispatchSkip,
    DispatchStatus,
    EventOccurrence,
    EventSeries,
    ReminderConfig,
    ReminderDispatch,
)
from steeple.resolver import DirectoryResolver

logger = logging.getLogger(__name__)

SERIES_FILE = "series.json"
REMINDERS_FILE = "reminders.json"
OCCURRENCES_FILE = "occurrences.json"
ARCHIVE_FILE = "archive.json"
MEMBERS_FILE = "members.json"
GROUPS_FILE = "groups.json"
RSVPS_FILE = "rsvps.json"
DISPATCHES_FILE = "dispatches.json"
SKIPS_FILE = "skips.json"


# ------------------------------------------------------------------
# Dispatch log
# ------------------------------------------------------------------

class DispatchLog(ABC):
    """Append-mostly record of reminder dispatches.

    Each composite identity ``(config_id, occurrence_id, recipient_id)``
    has at most one record. ``claim()`` is the uniqueness constraint:
    it raises ``DuplicateDispatch`` instead of creating a second record.
    """

    @abstractmethod
    def find(self, identity: DispatchIdentity) -> Optional[ReminderDispatch]:
        ...

    @abstractmethod
    def attempts_for(self, config_id: str, occurrence_id: str) -> list[ReminderDispatch]:
        """All records for a (config, occurrence) pair, any recipient."""
        ...

    @abstractmethod
    def claim(self, record: ReminderDispatch, retry_before: datetime) -> ReminderDispatch:
        """Atomically create the record for ``record.identity``.

        An existing record is replaced only when ``is_claimable()``
        allows it; otherwise ``DuplicateDispatch`` is raised.
        """
        ...

    @abstractmethod
    def update(self, record: ReminderDispatch) -> None:
        ...

    @abstractmethod
    def scheduled_for_config(self, config_id: str) -> list[ReminderDispatch]:
        """Records of ``config_id`` still in ``SCHEDULED`` status."""
        ...

    @abstractmethod
    def all_records(self) -> list[ReminderDispatch]:
        ...

    @abstractmethod
    def record_skip(self, skip: DispatchSkip) -> None:
        """Append a skipped attempt. Never touches the dispatch record."""
        ...

    @abstractmethod
    def skips(self) -> list[DispatchSkip]:
        ...


def is_claimable(existing: ReminderDispatch, retry_before: datetime) -> bool:
    """Whether a new attempt may take over an existing record.

    Planned records, plans cancelled by deactivation, and claims or
    failures last attempted before ``retry_before`` may be taken over.
    A claim still ``SCHEDULED`` that old never recorded its outcome.
    """
    if existing.status in (DispatchStatus.SCHEDULED, DispatchStatus.FAILED):
        return existing.attempted_at is None or existing.attempted_at < retry_before
    return existing.resumable


def _record_order(record: ReminderDispatch) -> tuple:
    return (record.attempted_at or record.scheduled_at, record.identity)


class InMemoryDispatchLog(DispatchLog):
    """Dispatch log held in a dict, guarded by a lock."""

    def __init__(
        self,
        records: Optional[list[ReminderDispatch]] = None,
        skips: Optional[list[DispatchSkip]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._records: dict[DispatchIdentity, ReminderDispatch] = {}
        self._skips: list[DispatchSkip] = list(skips or [])
        for record in records or []:
            self._records[record.identity] = record

    def find(self, identity: DispatchIdentity) -> Optional[ReminderDispatch]:
        with self._lock:
            return self._records.get(identity)

    def attempts_for(self, config_id: str, occurrence_id: str) -> list[ReminderDispatch]:
        with self._lock:
            return [
                r for r in self._records.values()
                if r.config_id == config_id and r.occurrence_id == occurrence_id
            ]

    def claim(self, record: ReminderDispatch, retry_before: datetime) -> ReminderDispatch:
        with self._lock:
            existing = self._records.get(record.identity)
            if existing is not None and not is_claimable(existing, retry_before):
                raise DuplicateDispatch(record.identity)
            self._records[record.identity] = record
            self._persist()
            return record

    def update(self, record: ReminderDispatch) -> None:
        with self._lock:
            self._records[record.identity] = record
            self._persist()

    def scheduled_for_config(self, config_id: str) -> list[ReminderDispatch]:
        with self._lock:
            return [
                r for r in self._records.values()
                if r.config_id == config_id and r.status is DispatchStatus.SCHEDULED
            ]

    def all_records(self) -> list[ReminderDispatch]:
        with self._lock:
            return sorted(self._records.values(), key=_record_order)

    def record_skip(self, skip: DispatchSkip) -> None:
        with self._lock:
            self._skips.append(skip)
            self._persist_skips()

    def skips(self) -> list[DispatchSkip]:
        with self._lock:
            return list(self._skips)

    def _persist(self) -> None:
        """Hook called with the lock held after every write."""

    def _persist_skips(self) -> None:
        """Hook called with the lock held after every recorded skip."""


class JsonDispatchLog(InMemoryDispatchLog):
    """Dispatch log persisted to JSON files after every write.

    Records live in ``path``; skipped attempts are journaled to a
    sibling ``skips.json``.
    """

    def __init__(self, path: Path, skips_path: Optional[Path] = None) -> None:
        self.path = path
        self.skips_path = skips_path or path.with_name(SKIPS_FILE)
        super().__init__(
            _load_rows(path, ReminderDispatch.from_dict),
            _load_rows(self.skips_path, DispatchSkip.from_dict),
        )

    def _persist(self) -> None:
        records = sorted(self._records.values(), key=_record_order)
        _write_json(self.path, [r.to_dict() for r in records])

    def _persist_skips(self) -> None:
        _write_json(self.skips_path, [s.to_dict() for s in self._skips])


# ------------------------------------------------------------------
# Datastore
# ------------------------------------------------------------------

class DataStore:
    """Manages series, reminders, member directory and occurrences in JSON files.

    File layout:
        data/
            series.json       master event definitions
            reminders.json    reminder configurations
            occurrences.json  materialized current/future occurrences
            archive.json      past occurrences
            members.json      member directory
            groups.json       groups with their member ids
            rsvps.json        RSVP rows (series_id, member_id, status)
            dispatches.json   dispatch log
            skips.json        skipped dispatch attempts
    """

    def __init__(self, data_dir: Optional[Path] = None, organization_id: Optional[str] = None) -> None:
        self.data_dir = data_dir or DEFAULT_DATA_DIR
        self.organization_id = organization_id
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._dispatch_log: Optional[JsonDispatchLog] = None

    def _path(self, name: str) -> Path:
        return self.data_dir / name

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def load_series(self) -> tuple[list[EventSeries], list[ConfigurationError]]:
        """Load every series; rows that fail validation are returned as errors."""
        return self._load_validated(SERIES_FILE, EventSeries.from_dict)

    def load_reminders(self) -> tuple[list[ReminderConfig], list[ConfigurationError]]:
        """Load every reminder config; invalid rows are returned as errors."""
        return self._load_validated(REMINDERS_FILE, ReminderConfig.from_dict)

    def get_series(self, series_id: str) -> Optional[EventSeries]:
        series, _errors = self.load_series()
        return next((s for s in series if s.id == series_id), None)

    def get_reminder(self, config_id: str) -> Optional[ReminderConfig]:
        configs, _errors = self.load_reminders()
        return next((c for c in configs if c.id == config_id), None)

    def save_series(self, series: list[EventSeries]) -> None:
        _write_json(self._path(SERIES_FILE), [s.to_dict() for s in series])

    def save_reminders(self, configs: list[ReminderConfig]) -> None:
        _write_json(self._path(REMINDERS_FILE), [c.to_dict() for c in configs])

    def set_reminder_active(self, config_id: str, active: bool) -> bool:
        """Toggle a reminder config. Returns False if the id is unknown."""
        rows = _read_json(self._path(REMINDERS_FILE))
        found = False
        for row in rows:
            if row.get("id") == config_id:
                row["is_active"] = active
                found = True
        if found:
            _write_json(self._path(REMINDERS_FILE), rows)
        return found

    # ------------------------------------------------------------------
    # Member directory
    # ------------------------------------------------------------------

    def load_members(self) -> list[dict]:
        return _read_json(self._path(MEMBERS_FILE))

    def load_groups(self) -> list[dict]:
        return _read_json(self._path(GROUPS_FILE))

    def load_rsvps(self) -> list[dict]:
        return _read_json(self._path(RSVPS_FILE))

    # ------------------------------------------------------------------
    # Occurrences
    # ------------------------------------------------------------------

    def load_occurrences(self) -> list[EventOccurrence]:
        return _load_rows(self._path(OCCURRENCES_FILE), EventOccurrence.from_dict)

    def load_archive(self) -> list[EventOccurrence]:
        return _load_rows(self._path(ARCHIVE_FILE), EventOccurrence.from_dict)

    def save_occurrences(self, occurrences: list[EventOccurrence]) -> None:
        occurrences = sorted(occurrences, key=lambda o: o.sort_key)
        _write_json(self._path(OCCURRENCES_FILE), [o.to_dict() for o in occurrences])

    def upsert_occurrences(self, incoming: list[EventOccurrence]) -> tuple[int, int]:
        """Merge occurrences into the store keyed by their deterministic id.

        Re-running with the same expansion restores missing rows and
        leaves existing ones in place.

        Returns:
            (added, updated) counts.
        """
        existing = {o.occurrence_id: o for o in self.load_occurrences()}
        added = 0
        updated = 0

        for occurrence in incoming:
            if occurrence.occurrence_id in existing:
                updated += 1
            else:
                added += 1
            existing[occurrence.occurrence_id] = occurrence

        self.save_occurrences(list(existing.values()))
        logger.info("Upsert complete: %d added, %d updated", added, updated)
        return added, updated

    def archive_past_occurrences(self, now: datetime) -> int:
        """Move occurrences that ended before ``now`` into the archive.

        Returns:
            Number of occurrences archived.
        """
        current = []
        newly_archived = []
        for occurrence in self.load_occurrences():
            if occurrence.end < now:
                newly_archived.append(occurrence)
            else:
                current.append(occurrence)

        if not newly_archived:
            logger.info("No past occurrences to archive.")
            return 0

        archive = {o.occurrence_id: o for o in self.load_archive()}
        for occurrence in newly_archived:
            archive.setdefault(occurrence.occurrence_id, occurrence)

        self.save_occurrences(current)
        _write_json(
            self._path(ARCHIVE_FILE),
            [o.to_dict() for o in sorted(archive.values(), key=lambda o: o.sort_key)],
        )
        logger.info("Archived %d occurrence(s).", len(newly_archived))
        return len(newly_archived)

    # ------------------------------------------------------------------
    # Dispatch log
    # ------------------------------------------------------------------

    @property
    def dispatch_log(self) -> JsonDispatchLog:
        if self._dispatch_log is None:
            self._dispatch_log = JsonDispatchLog(self._path(DISPATCHES_FILE))
        return self._dispatch_log

    def resolver(self) -> DirectoryResolver:
        return DirectoryResolver(self, self.organization_id)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        """Return summary counts."""
        series, series_errors = self.load_series()
        configs, config_errors = self.load_reminders()
        return {
            "series": len(series),
            "invalid_series": len(series_errors),
            "reminders": len(configs),
            "invalid_reminders": len(config_errors),
            "occurrences": len(self.load_occurrences()),
            "archived_occurrences": len(self.load_archive()),
            "dispatches": len(self.dispatch_log.all_records()),
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load_validated(self, name: str, factory) -> tuple[list, list[ConfigurationError]]:
        items = []
        errors: list[ConfigurationError] = []
        for row in _read_json(self._path(name)):
            try:
                items.append(factory(row))
            except ConfigurationError as exc:
                logger.warning("Skipping invalid row in %s: %s", name, exc)
                errors.append(exc)
        return items, errors


def _read_json(path: Path) -> list[dict]:
    if not path.exists():
        return []
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _load_rows(path: Path, factory) -> list:
    return [factory(item) for item in _read_json(path)]


def _write_json(path: Path, rows: list[dict]) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(rows, f, indent=2, ensure_ascii=False)
