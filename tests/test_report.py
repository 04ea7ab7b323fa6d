import tempfile
import unittest
from pathlib import Path

from dateutil import tz

from steeple.models import DispatchStatus, ReminderDispatch
from steeple.recurrence import expand
from steeple.report import publish, render_agenda, render_dispatch_log
from tests.fakes import reminder, utc, weekly_series


class AgendaTests(unittest.TestCase):
    def test_groups_by_local_date(self):
        series = weekly_series()
        occurrences = list(expand(series, utc(2025, 1, 1), utc(2025, 1, 15)))
        text = render_agenda(occurrences, [series], [reminder()], utc(2025, 1, 1))
        self.assertIn("## Monday, January 6, 2025", text)
        self.assertIn("## Monday, January 13, 2025", text)
        self.assertIn("- **Time:** 7:00 PM - 8:00 PM", text)
        self.assertIn("- **Repeats:** Weekly", text)
        self.assertIn("- **Reminder:** r24, sms, 1 day before", text)

    def test_zone_shifts_date_heading(self):
        series = weekly_series()
        occurrences = list(expand(series, utc(2025, 1, 1), utc(2025, 1, 7)))
        text = render_agenda(occurrences, [series], [], utc(2025, 1, 1), zone=tz.gettz("Asia/Tokyo"))
        self.assertIn("## Tuesday, January 7, 2025", text)
        self.assertIn("4:00 AM", text)

    def test_empty_agenda(self):
        self.assertIn("*No upcoming events.*", render_agenda([], [], [], utc(2025, 1, 1)))


class DispatchLogReportTests(unittest.TestCase):
    def test_summary_and_rows(self):
        records = [
            ReminderDispatch("r24", "occ", "m1", utc(2025, 1, 12, 19), utc(2025, 1, 12, 19),
                             DispatchStatus.SENT, provider_id="SM1"),
            ReminderDispatch("r24", "occ", "m2", utc(2025, 1, 12, 19), utc(2025, 1, 12, 19),
                             DispatchStatus.FAILED, error="HTTP 400"),
        ]
        text = render_dispatch_log(records, utc(2025, 1, 13))
        self.assertIn("- **Delivery rate:** 50%", text)
        self.assertIn("| 2025-01-12 19:00 | r24 | m1 | sent | SM1 |", text)
        self.assertIn("| failed | HTTP 400 |", text)


class PublishTests(unittest.TestCase):
    def test_writes_both_files(self):
        series = weekly_series()
        occurrences = list(expand(series, utc(2025, 1, 1), utc(2025, 1, 15)))
        with tempfile.TemporaryDirectory() as td:
            agenda, reminders = publish(occurrences, [series], [], [], utc(2025, 1, 1), output_dir=Path(td))
            self.assertEqual(agenda.name, "AGENDA.md")
            self.assertTrue(agenda.read_text(encoding="utf-8").startswith("# Upcoming Events"))
            self.assertIn("*No reminders recorded.*", reminders.read_text(encoding="utf-8"))


if __name__ == "__main__":
    unittest.main()
