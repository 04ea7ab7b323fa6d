import json
import tempfile
import unittest
from pathlib import Path

from click.testing import CliRunner

from steeple.cli import cli
from steeple.store import DataStore
from tests.fakes import reminder, weekly_series

MEMBERS = [
    {"id": 1, "firstname": "Alice", "lastname": "Smith", "phone": "+15550001", "status": "active"},
    {"id": 2, "firstname": "Bob", "lastname": "Jones", "phone": "+15550002", "status": "active"},
]


class CLITests(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._td.name) / "data"
        store = DataStore(self.data_dir)
        store.save_series([weekly_series()])
        store.save_reminders([reminder("r24", template="Hi {member_name}, {event_title} starts at {event_time}.")])
        (self.data_dir / "members.json").write_text(json.dumps(MEMBERS), encoding="utf-8")
        self.runner = CliRunner()

    def tearDown(self):
        self._td.cleanup()

    def _run(self, *args):
        return self.runner.invoke(cli, ["--data-dir", str(self.data_dir), "--timezone", "UTC", *args])

    def _records(self):
        return json.loads((self.data_dir / "dispatches.json").read_text(encoding="utf-8"))

    def test_expand(self):
        result = self._run("expand", "svc", "--days", "14", "--now", "2025-01-01T00:00:00Z")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Sunday Service (Weekly)", result.output)
        self.assertIn("01/13/2025 7:00 PM", result.output)
        self.assertIn("2 occurrence(s).", result.output)

    def test_expand_unknown_series(self):
        result = self._run("expand", "nope")
        self.assertNotEqual(result.exit_code, 0)
        self.assertIn("Unknown series: nope", result.output)

    def test_bad_now_is_usage_error(self):
        result = self._run("next", "--now", "yesterday")
        self.assertEqual(result.exit_code, 2)

    def test_next(self):
        result = self._run("next", "--now", "2025-01-14T00:00:00Z")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("01/20/2025 7:00 PM", result.output)

    def test_tick_dry_run_sends_once(self):
        result = self._run("tick", "--dry-run", "--now", "2025-01-12T19:00:00Z")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Done. 2 sent, 0 failed, 0 skipped, 0 cancelled.", result.output)
        self.assertEqual({r["status"] for r in self._records()}, {"sent"})

        again = self._run("tick", "--dry-run", "--now", "2025-01-12T19:10:00Z")
        self.assertIn("Done. 0 sent", again.output)
        self.assertEqual(len(self._records()), 2)

    def test_tick_without_providers_records_failures(self):
        result = self._run("tick", "--now", "2025-01-12T19:00:00Z")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("0 sent, 2 failed", result.output)

    def test_plan_then_deactivate_cancels(self):
        planned = self._run("plan", "--days", "7", "--now", "2025-01-10T00:00:00Z")
        self.assertIn("Planned 2 reminder dispatch(es).", planned.output)

        result = self._run("deactivate", "r24")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("cancelled 2 scheduled dispatch(es)", result.output)
        self.assertEqual({r["status"] for r in self._records()}, {"cancelled"})

        stats = self._run("stats")
        self.assertIn("Cancelled:        2", stats.output)

    def test_deactivate_unknown(self):
        result = self._run("deactivate", "missing")
        self.assertNotEqual(result.exit_code, 0)

    def test_preview(self):
        result = self._run("preview", "r24", "--now", "2025-01-10T00:00:00Z")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Hi John Doe, Sunday Service starts at 7:00 PM.", result.output)
        self.assertIn("Recipients: 2", result.output)

    def test_test_send_dry_run(self):
        result = self._run("test-send", "r24", "+15559999", "--dry-run", "--now", "2025-01-10T00:00:00Z")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Sent test of r24 to +15559999 (console-1).", result.output)
        self.assertFalse((self.data_dir / "dispatches.json").exists())

    def test_test_send_without_provider_fails(self):
        result = self._run("test-send", "r24", "+15559999", "--now", "2025-01-10T00:00:00Z")
        self.assertNotEqual(result.exit_code, 0)
        self.assertIn("no dispatcher configured for sms", result.output)

    def test_stats_reports_skipped_line(self):
        self._run("tick", "--dry-run", "--now", "2025-01-12T19:00:00Z")
        self._run("tick", "--dry-run", "--now", "2025-01-12T19:10:00Z")
        result = self._run("stats")
        self.assertIn("Sent:             2", result.output)
        self.assertIn("Skipped:          0", result.output)

    def test_materialize_and_archive(self):
        result = self._run("materialize", "--days", "14", "--now", "2025-01-01T00:00:00Z")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Materialized 2 occurrence(s) from 1 series.", result.output)
        self.assertIn("2 added, 0 updated.", result.output)
        self.assertEqual(len(DataStore(self.data_dir).load_occurrences()), 2)

        later = self._run("materialize", "--days", "14", "--now", "2025-01-10T00:00:00Z")
        self.assertIn("1 added, 1 updated.", later.output)
        self.assertIn("Archived 1 past occurrence(s).", later.output)

    def test_publish(self):
        out = Path(self._td.name) / "out"
        result = self._run("publish", "--output-dir", str(out), "--now", "2025-01-01T00:00:00Z")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertTrue((out / "AGENDA.md").exists())
        self.assertTrue((out / "REMINDERS.md").exists())

    def test_invalid_rows_are_reported(self):
        rows = json.loads((self.data_dir / "series.json").read_text(encoding="utf-8"))
        rows.append({"id": "broken", "start_date": "2025-01-01T10:00:00"})
        (self.data_dir / "series.json").write_text(json.dumps(rows), encoding="utf-8")
        result = self._run("next", "--now", "2025-01-14T00:00:00Z")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("skipped invalid row", result.output)

    def test_unknown_timezone(self):
        result = self.runner.invoke(cli, ["--data-dir", str(self.data_dir), "--timezone", "Nowhere/Town", "next"])
        self.assertNotEqual(result.exit_code, 0)
        self.assertIn("Unknown timezone", result.output)


if __name__ == "__main__":
    unittest.main()
