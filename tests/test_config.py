import unittest
from datetime import timedelta
from pathlib import Path

from steeple.config import DEDUP_WINDOW, Settings, resolve_timezone
from steeple.errors import ConfigurationError


class SettingsTests(unittest.TestCase):
    def test_defaults(self):
        settings = Settings()
        self.assertEqual(settings.timezone, "UTC")
        self.assertEqual(settings.dedup_window, timedelta(hours=2))
        self.assertEqual(settings.late_grace, DEDUP_WINDOW)
        self.assertEqual(settings.lookahead_days, 90)
        self.assertFalse(settings.has_twilio)

    def test_unknown_timezone_fails_fast(self):
        with self.assertRaises(ConfigurationError):
            Settings(timezone="Mars/Olympus_Mons")
        with self.assertRaises(ConfigurationError):
            resolve_timezone("Not/AZone")

    def test_from_env(self):
        settings = Settings.from_env({
            "STEEPLE_TIMEZONE": "America/Chicago",
            "STEEPLE_DATA_DIR": "/tmp/steeple",
            "STEEPLE_DEDUP_MINUTES": "30",
            "STEEPLE_ORGANIZATION_ID": "org1",
            "TWILIO_ACCOUNT_SID": "AC1",
            "TWILIO_AUTH_TOKEN": "tok",
            "TWILIO_PHONE_NUMBER": "+15550000",
            "RESEND_API_KEY": " ",
        })
        self.assertEqual(settings.timezone, "America/Chicago")
        self.assertEqual(settings.data_dir, Path("/tmp/steeple"))
        self.assertEqual(settings.dedup_window, timedelta(minutes=30))
        self.assertEqual(settings.organization_id, "org1")
        self.assertTrue(settings.has_twilio)
        self.assertFalse(settings.has_resend)
        self.assertNotIn("tok", repr(settings))

    def test_from_env_rejects_bad_numbers(self):
        with self.assertRaises(ConfigurationError):
            Settings.from_env({"STEEPLE_LOOKAHEAD_DAYS": "soon"})

    def test_with_overrides_ignores_none(self):
        settings = Settings().with_overrides(timezone=None, lookahead_days=30)
        self.assertEqual(settings.timezone, "UTC")
        self.assertEqual(settings.lookahead_days, 30)


if __name__ == "__main__":
    unittest.main()
