import json
import unittest
from urllib.parse import parse_qs

import httpx

from steeple.config import Settings
from steeple.errors import DispatchError
from steeple.messaging import (
    ConsoleDispatcher,
    DispatcherRegistry,
    ResendDispatcher,
    TwilioDispatcher,
    build_dispatchers,
)
from steeple.models import Channel


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


class TwilioDispatcherTests(unittest.TestCase):
    def test_posts_form_and_returns_sid(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(201, json={"sid": "SM123", "status": "queued"})

        with TwilioDispatcher("AC1", "secret", "+15550000", client=_client(handler)) as sms:
            sid = sms.send("+15550001", "Service at 7:00 PM")

        self.assertEqual(sid, "SM123")
        self.assertEqual(seen["url"], "https://api.twilio.com/2010-04-01/Accounts/AC1/Messages.json")
        self.assertTrue(seen["auth"].startswith("Basic "))
        self.assertEqual(seen["form"]["To"], ["+15550001"])
        self.assertEqual(seen["form"]["From"], ["+15550000"])
        self.assertEqual(seen["form"]["Body"], ["Service at 7:00 PM"])

    def test_provider_error_becomes_dispatch_error(self):
        def handler(request):
            return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

        sms = TwilioDispatcher("AC1", "secret", "+15550000", client=_client(handler))
        with self.assertRaises(DispatchError) as ctx:
            sms.send("bogus", "hi")
        self.assertIn("Invalid 'To' Phone Number", str(ctx.exception))

    def test_timeout_becomes_dispatch_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        sms = TwilioDispatcher("AC1", "secret", "+15550000", client=_client(handler))
        with self.assertRaises(DispatchError) as ctx:
            sms.send("+15550001", "hi")
        self.assertIn("timed out", str(ctx.exception))

    def test_empty_address_rejected(self):
        sms = TwilioDispatcher("AC1", "secret", "+15550000", client=_client(lambda r: httpx.Response(500)))
        with self.assertRaises(DispatchError):
            sms.send("", "hi")


class ResendDispatcherTests(unittest.TestCase):
    def test_posts_json_with_text_and_html(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "email-1"})

        email = ResendDispatcher("re_key", "Church <noreply@example.org>", client=_client(handler))
        email_id = email.send("alice@example.com", "<p>Hi Alice</p>", subject="Reminder: Sunday Service")

        self.assertEqual(email_id, "email-1")
        self.assertEqual(seen["auth"], "Bearer re_key")
        body = seen["body"]
        self.assertEqual(body["to"], ["alice@example.com"])
        self.assertEqual(body["subject"], "Reminder: Sunday Service")
        self.assertEqual(body["text"], "Hi Alice")
        self.assertEqual(body["html"], "<p>Hi Alice</p>")

    def test_plain_message_has_no_html_part(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "email-2"})

        email = ResendDispatcher("re_key", "noreply@example.org", client=_client(handler))
        email.send("bob@example.com", "See you Sunday")
        self.assertNotIn("html", seen["body"])
        self.assertEqual(seen["body"]["subject"], "Event reminder")

    def test_missing_id_is_an_error(self):
        email = ResendDispatcher("k", "f@example.org", client=_client(lambda r: httpx.Response(200, json={})))
        with self.assertRaises(DispatchError):
            email.send("bob@example.com", "hi")


class RegistryTests(unittest.TestCase):
    def test_providers_registered(self):
        self.assertIs(DispatcherRegistry.get("twilio"), TwilioDispatcher)
        self.assertIs(DispatcherRegistry.get("resend"), ResendDispatcher)
        self.assertIs(DispatcherRegistry.get("console"), ConsoleDispatcher)

    def test_build_dispatchers_from_credentials(self):
        settings = Settings(
            twilio_account_sid="AC1",
            twilio_auth_token="t",
            twilio_from_number="+15550000",
        )
        dispatchers = build_dispatchers(settings)
        self.assertIsInstance(dispatchers[Channel.SMS], TwilioDispatcher)
        self.assertNotIn(Channel.EMAIL, dispatchers)
        dispatchers[Channel.SMS].close()

    def test_dry_run_uses_console(self):
        dispatchers = build_dispatchers(Settings(), dry_run=True)
        console = dispatchers[Channel.SMS]
        self.assertIs(console, dispatchers[Channel.EMAIL])
        self.assertEqual(console.send("+15550001", "hello"), "console-1")
        self.assertEqual(console.sent, [("+15550001", "hello")])


if __name__ == "__main__":
    unittest.main()
