import json
import unittest

import httpx

from steeple.errors import DatastoreError, DuplicateDispatch, ResolutionError
from steeple.models import (
    DEACTIVATED_REASON,
    AllMembers,
    Channel,
    DispatchSkip,
    DispatchStatus,
    Groups,
    ReminderDispatch,
)
from steeple.recurrence import expand
from steeple.supabase import (
    SupabaseClient,
    SupabaseDispatchLog,
    SupabaseResolver,
    SupabaseStore,
    dispatch_from_row,
    dispatch_to_row,
)
from tests.fakes import utc, weekly_series


class FakePostgrest:
    """Records requests and answers from a queue of (method, table) -> response."""

    def __init__(self):
        self.requests = []
        self.routes = {}

    def on(self, method, table, *responses):
        self.routes.setdefault((method, table), []).extend(responses)

    def __call__(self, request):
        table = request.url.path.rsplit("/", 1)[-1]
        self.requests.append(request)
        queue = self.routes.get((request.method, table))
        if not queue:
            raise AssertionError(f"unexpected {request.method} {table}")
        return queue.pop(0)

    def client(self):
        http = httpx.Client(transport=httpx.MockTransport(self))
        return SupabaseClient("https://proj.supabase.co", "service-key", client=http)


def _record(**overrides):
    data = dict(
        config_id="cfg",
        occurrence_id="occ",
        recipient_id="m1",
        scheduled_at=utc(2025, 1, 12, 19),
        attempted_at=utc(2025, 1, 12, 19, 5),
        rendered_message="Hi",
        address="+15550001",
        channel=Channel.SMS,
        series_id="svc",
        offset_hours=24.0,
    )
    data.update(overrides)
    return ReminderDispatch(**data)


class ClientTests(unittest.TestCase):
    def test_select_sends_auth_headers_and_filters(self):
        api = FakePostgrest()
        api.on("GET", "members", httpx.Response(200, json=[{"id": 1}]))
        rows = api.client().select("members", {"status": "eq.active"})
        self.assertEqual(rows, [{"id": 1}])
        request = api.requests[0]
        self.assertEqual(request.headers["apikey"], "service-key")
        self.assertEqual(request.headers["authorization"], "Bearer service-key")
        self.assertEqual(request.url.params["status"], "eq.active")
        self.assertEqual(request.url.path, "/rest/v1/members")

    def test_http_error_carries_status(self):
        api = FakePostgrest()
        api.on("GET", "events", httpx.Response(500, json={"message": "db down"}))
        with self.assertRaises(DatastoreError) as ctx:
            api.client().select("events")
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertIn("db down", str(ctx.exception))

    def test_network_error_becomes_datastore_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        http = httpx.Client(transport=httpx.MockTransport(handler))
        client = SupabaseClient("https://proj.supabase.co", "k", client=http)
        with self.assertRaises(DatastoreError):
            client.select("events")


class DispatchLogTests(unittest.TestCase):
    def test_row_mapping(self):
        row = dispatch_to_row(_record(status=DispatchStatus.SENT, late=True))
        self.assertEqual(row["reminder_config_id"], "cfg")
        self.assertEqual(row["member_id"], "m1")
        self.assertEqual(row["phone_number"], "+15550001")
        self.assertIsNone(row["email"])
        self.assertTrue(row["was_missed"])
        self.assertEqual(dispatch_from_row(row), _record(status=DispatchStatus.SENT, late=True))

    def test_claim_inserts_new_row(self):
        api = FakePostgrest()
        api.on("POST", "event_reminder_logs", httpx.Response(201, json=[{"id": 1}]))
        log = SupabaseDispatchLog(api.client())
        log.claim(_record(), retry_before=utc(2025, 1, 12, 17))
        body = json.loads(api.requests[0].content)
        self.assertEqual(body["status"], "scheduled")
        self.assertEqual(api.requests[0].headers["prefer"], "return=representation")

    def test_conflict_on_sent_row_is_duplicate(self):
        api = FakePostgrest()
        api.on("POST", "event_reminder_logs", httpx.Response(409, json={"message": "duplicate key"}))
        api.on("GET", "event_reminder_logs",
               httpx.Response(200, json=[dispatch_to_row(_record(status=DispatchStatus.SENT))]))
        log = SupabaseDispatchLog(api.client())
        with self.assertRaises(DuplicateDispatch):
            log.claim(_record(), retry_before=utc(2025, 1, 12, 17))

    def test_conflict_on_planned_row_takes_it_over(self):
        planned = _record(attempted_at=None, rendered_message="")
        api = FakePostgrest()
        api.on("POST", "event_reminder_logs", httpx.Response(409, json={"message": "duplicate key"}))
        api.on("GET", "event_reminder_logs", httpx.Response(200, json=[dispatch_to_row(planned)]))
        api.on("PATCH", "event_reminder_logs", httpx.Response(200, json=[dispatch_to_row(_record())]))
        log = SupabaseDispatchLog(api.client())
        log.claim(_record(), retry_before=utc(2025, 1, 12, 17))
        patch = api.requests[-1]
        self.assertEqual(patch.url.params["attempted_at"], "is.null")
        self.assertEqual(patch.url.params["status"], "eq.scheduled")
        self.assertEqual(patch.url.params["member_id"], "eq.m1")

    def test_lost_takeover_race_is_duplicate(self):
        failed = _record(status=DispatchStatus.FAILED, attempted_at=utc(2025, 1, 12, 14))
        api = FakePostgrest()
        api.on("POST", "event_reminder_logs", httpx.Response(409, json={"message": "duplicate key"}))
        api.on("GET", "event_reminder_logs", httpx.Response(200, json=[dispatch_to_row(failed)]))
        api.on("PATCH", "event_reminder_logs", httpx.Response(200, json=[]))
        log = SupabaseDispatchLog(api.client())
        with self.assertRaises(DuplicateDispatch):
            log.claim(_record(), retry_before=utc(2025, 1, 12, 17))
        self.assertTrue(api.requests[-1].url.params["attempted_at"].startswith("lt."))

    def test_conflict_on_deactivated_plan_takes_it_over(self):
        cancelled = _record(attempted_at=None, status=DispatchStatus.CANCELLED, error=DEACTIVATED_REASON)
        api = FakePostgrest()
        api.on("POST", "event_reminder_logs", httpx.Response(409, json={"message": "duplicate key"}))
        api.on("GET", "event_reminder_logs", httpx.Response(200, json=[dispatch_to_row(cancelled)]))
        api.on("PATCH", "event_reminder_logs", httpx.Response(200, json=[dispatch_to_row(_record())]))
        log = SupabaseDispatchLog(api.client())
        log.claim(_record(), retry_before=utc(2025, 1, 12, 17))
        params = api.requests[-1].url.params
        self.assertEqual(params["status"], "eq.cancelled")
        self.assertEqual(params["attempted_at"], "is.null")
        self.assertEqual(params["error_message"], f"eq.{DEACTIVATED_REASON}")

    def test_skips_go_to_their_own_table(self):
        api = FakePostgrest()
        api.on("POST", "event_reminder_skips", httpx.Response(201, json=[]))
        api.on("GET", "event_reminder_skips", httpx.Response(200, json=[{
            "reminder_config_id": "cfg",
            "occurrence_id": "occ",
            "member_id": 7,
            "reason": "duplicate",
            "skipped_at": "2025-01-12T19:10:00+00:00",
        }]))
        log = SupabaseDispatchLog(api.client())
        log.record_skip(DispatchSkip("cfg", "occ", "m1", reason="duplicate", skipped_at=utc(2025, 1, 12, 19, 10)))
        body = json.loads(api.requests[0].content)
        self.assertEqual(body["member_id"], "m1")
        self.assertEqual(body["reason"], "duplicate")
        skips = log.skips()
        self.assertEqual(skips[0].identity, ("cfg", "occ", "7"))
        self.assertEqual(skips[0].skipped_at, utc(2025, 1, 12, 19, 10))

    def test_other_insert_errors_propagate(self):
        api = FakePostgrest()
        api.on("POST", "event_reminder_logs", httpx.Response(400, json={"message": "bad column"}))
        log = SupabaseDispatchLog(api.client())
        with self.assertRaises(DatastoreError):
            log.claim(_record(), retry_before=utc(2025, 1, 12, 17))


class ResolverTests(unittest.TestCase):
    def test_groups_resolve_through_embedded_members(self):
        api = FakePostgrest()
        api.on("GET", "group_members", httpx.Response(200, json=[
            {"member": {"id": 1, "firstname": "Alice", "lastname": "Smith", "phone": "+1", "status": "active"}},
            {"member": {"id": 2, "firstname": "Old", "lastname": "Member", "status": "inactive"}},
            {"member": None},
        ]))
        resolver = SupabaseResolver(api.client(), organization_id="org1")
        occurrence = next(expand(weekly_series(), utc(2025, 1, 13), utc(2025, 1, 14)))
        recipients = resolver.resolve(Groups(("g1", "g2")), occurrence)
        self.assertEqual([r.name for r in recipients], ["Alice Smith"])
        self.assertEqual(api.requests[0].url.params["group_id"], "in.(g1,g2)")

    def test_all_members_filters_active_and_org(self):
        api = FakePostgrest()
        api.on("GET", "members", httpx.Response(200, json=[]))
        resolver = SupabaseResolver(api.client(), organization_id="org1")
        occurrence = next(expand(weekly_series(), utc(2025, 1, 13), utc(2025, 1, 14)))
        resolver.resolve(AllMembers(), occurrence)
        params = api.requests[0].url.params
        self.assertEqual(params["status"], "eq.active")
        self.assertEqual(params["organization_id"], "eq.org1")

    def test_datastore_failure_is_resolution_error(self):
        api = FakePostgrest()
        api.on("GET", "members", httpx.Response(503, json={"message": "unavailable"}))
        resolver = SupabaseResolver(api.client())
        occurrence = next(expand(weekly_series(), utc(2025, 1, 13), utc(2025, 1, 14)))
        with self.assertRaises(ResolutionError):
            resolver.resolve(AllMembers(), occurrence)


class StoreTests(unittest.TestCase):
    def test_load_series_reports_bad_rows(self):
        good = weekly_series().to_dict()
        good["is_master"] = True
        bad = {"id": "broken", "start_date": "2025-01-01T10:00:00Z", "end_date": "2025-01-01T09:00:00Z"}
        api = FakePostgrest()
        api.on("GET", "events", httpx.Response(200, json=[good, bad]))
        store = SupabaseStore(api.client(), organization_id="org1")
        series, errors = store.load_series()
        self.assertEqual([s.id for s in series], ["svc"])
        self.assertEqual(len(errors), 1)
        params = api.requests[0].url.params
        self.assertEqual(params["or"], "(is_master.eq.true,is_recurring.eq.false)")
        self.assertEqual(params["organization_id"], "eq.org1")

    def test_upsert_occurrences(self):
        occurrences = list(expand(weekly_series(), utc(2025, 1, 1), utc(2025, 1, 20)))
        api = FakePostgrest()
        api.on("GET", "events", httpx.Response(200, json=[{"id": occurrences[0].occurrence_id}]))
        api.on("POST", "events", httpx.Response(201))
        store = SupabaseStore(api.client(), organization_id="org1")
        self.assertEqual(store.upsert_occurrences(occurrences), (1, 1))
        lookup = api.requests[0]
        self.assertEqual(lookup.url.params["select"], "id")
        self.assertTrue(lookup.url.params["id"].startswith("in.("))
        request = api.requests[1]
        self.assertEqual(request.url.params["on_conflict"], "id")
        rows = json.loads(request.content)
        self.assertEqual(rows[0]["parent_event_id"], "svc")
        self.assertFalse(rows[0]["is_master"])
        self.assertEqual(rows[0]["id"], occurrences[0].occurrence_id)
        self.assertIn("merge-duplicates", request.headers["prefer"])

    def test_upsert_nothing(self):
        api = FakePostgrest()
        store = SupabaseStore(api.client())
        self.assertEqual(store.upsert_occurrences([]), (0, 0))
        self.assertEqual(api.requests, [])

    def test_set_reminder_active(self):
        api = FakePostgrest()
        api.on("PATCH", "event_reminder_configs", httpx.Response(200, json=[{"id": "cfg"}]))
        store = SupabaseStore(api.client())
        self.assertTrue(store.set_reminder_active("cfg", False))
        self.assertEqual(json.loads(api.requests[0].content), {"is_active": False})


if __name__ == "__main__":
    unittest.main()
