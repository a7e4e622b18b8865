"""Tests for the backend query/subscribe layer"""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from snackzo.backend import (
    EVENT_DELETE,
    EVENT_INSERT,
    EVENT_UPDATE,
    BackendError,
    InMemoryBackend,
    PollingSubscription,
    RestBackend,
    encode_filter,
    eq,
    gt,
    in_,
    is_null,
    lt,
    neq,
    not_null,
    parse_content_range,
)


class TestInMemoryBackend:
    """Queries, writes, RPC and change events on the in-process backend"""

    @pytest.fixture
    def db(self):
        return InMemoryBackend({
            "orders": [
                {"id": "o1", "status": "placed", "total": 50, "created_at": "2025-03-14T18:00:00+00:00"},
                {"id": "o2", "status": "packed", "total": 120, "created_at": "2025-03-14T17:00:00+00:00"},
                {"id": "o3", "status": "delivered", "total": 80, "created_at": None},
            ]
        })

    def test_filters(self, db):
        assert [r["id"] for r in db.select("orders", [eq("status", "placed")])] == ["o1"]
        assert {r["id"] for r in db.select("orders", [neq("status", "placed")])} == {"o2", "o3"}
        assert {r["id"] for r in db.select("orders", [in_("status", ["placed", "packed"])])} == {"o1", "o2"}
        assert [r["id"] for r in db.select("orders", [gt("total", 100)])] == ["o2"]
        assert [r["id"] for r in db.select("orders", [is_null("created_at")])] == ["o3"]
        assert db.count("orders", [not_null("created_at")]) == 2

    def test_timestamp_comparison_against_datetime(self, db):
        cutoff = datetime(2025, 3, 14, 17, 30, tzinfo=timezone.utc)
        assert [r["id"] for r in db.select("orders", [lt("created_at", cutoff)])] == ["o2"]

    def test_order_by_puts_nulls_last(self, db):
        asc = [r["id"] for r in db.select("orders", order_by="created_at")]
        desc = [r["id"] for r in db.select("orders", order_by="created_at", descending=True)]
        assert asc == ["o2", "o1", "o3"]
        assert desc == ["o1", "o2", "o3"]

    def test_limit_and_select_one(self, db):
        assert len(db.select("orders", limit=2)) == 2
        assert db.select_one("orders", [eq("id", "missing")]) is None

    def test_rows_are_copies(self, db):
        """Mutating a returned row does not change stored state"""
        row = db.select_one("orders", [eq("id", "o1")])
        row["status"] = "hacked"
        assert db.select_one("orders", [eq("id", "o1")])["status"] == "placed"

    def test_insert_assigns_id(self, db):
        row = db.insert("orders", {"status": "placed"})
        assert row["id"], "Insert should assign an id"
        assert db.count("orders") == 4

    def test_update_returns_updated_rows(self, db):
        rows = db.update("orders", {"status": "cancelled"}, [in_("id", ["o1", "o2"])])
        assert {r["id"] for r in rows} == {"o1", "o2"}
        assert db.count("orders", [eq("status", "cancelled")]) == 2

    def test_upsert_on_conflict_column(self, db):
        db.upsert("subs", {"endpoint": "https://push/1", "user_id": "u1"}, on_conflict="endpoint")
        db.upsert("subs", {"endpoint": "https://push/1", "user_id": "u2"}, on_conflict="endpoint")
        rows = db.select("subs")
        assert len(rows) == 1
        assert rows[0]["user_id"] == "u2"

    def test_delete_returns_count(self, db):
        assert db.delete("orders", [eq("status", "delivered")]) == 1
        assert db.delete("orders", [eq("status", "delivered")]) == 0

    def test_rpc(self, db):
        db.register_rpc("double", lambda x: x * 2)
        assert db.rpc("double", {"x": 21}) == 42
        with pytest.raises(BackendError):
            db.rpc("missing")

    def test_rpc_errors_become_backend_errors(self, db):
        def broken(**params):
            raise RuntimeError("function crashed")

        db.register_rpc("broken", broken)
        with pytest.raises(BackendError, match="function crashed"):
            db.rpc("broken")

    def test_change_events(self, db):
        """Subscribers receive matching events only, until they unsubscribe"""
        events = []
        sub = db.subscribe("orders", events.append, filters=[eq("id", "o1")])

        db.update("orders", {"status": "packed"}, [eq("id", "o1")])
        db.update("orders", {"status": "packed"}, [eq("id", "o3")])
        db.delete("orders", [eq("id", "o1")])
        sub.unsubscribe()
        db.insert("orders", {"id": "o1", "status": "placed"})

        assert [e.event for e in events] == [EVENT_UPDATE, EVENT_DELETE]
        assert events[0].old["status"] == "placed"
        assert events[0].new["status"] == "packed"
        assert events[1].row["id"] == "o1"

    def test_event_type_filter(self, db):
        inserts = []
        db.subscribe("orders", inserts.append, event=EVENT_INSERT)
        db.update("orders", {"status": "packed"}, [eq("id", "o1")])
        db.insert("orders", {"status": "placed"})
        assert len(inserts) == 1

    def test_failing_subscriber_does_not_break_write(self, db):
        def boom(change):
            raise RuntimeError("subscriber bug")

        db.subscribe("orders", boom)
        rows = db.update("orders", {"status": "packed"}, [eq("id", "o1")])
        assert len(rows) == 1


class TestRestEncoding:
    """PostgREST query encoding"""

    def test_encode_filter(self):
        assert encode_filter(eq("status", "placed")) == ("status", "eq.placed")
        assert encode_filter(in_("status", ["packed", "out_for_delivery"])) == ("status", "in.(packed,out_for_delivery)")
        assert encode_filter(eq("is_active", True)) == ("is_active", "eq.true")
        assert encode_filter(is_null("delivered_at")) == ("delivered_at", "is.null")
        assert encode_filter(not_null("delivered_at")) == ("delivered_at", "not.is.null")

    def test_parse_content_range(self):
        assert parse_content_range("0-9/42") == 42
        assert parse_content_range("*/0") == 0
        with pytest.raises(BackendError):
            parse_content_range(None)
        with pytest.raises(BackendError):
            parse_content_range("0-9/*")


class TestRestBackend:
    """RestBackend over a mocked requests session"""

    @pytest.fixture
    def session(self):
        return MagicMock()

    @pytest.fixture
    def rest(self, session):
        return RestBackend("https://db.example.com/", "service-key", session=session)

    @staticmethod
    def response(body=None, headers=None):
        resp = MagicMock()
        resp.content = b"x" if body is not None else b""
        resp.json.return_value = body
        resp.headers = headers or {}
        return resp

    def test_select_builds_query(self, rest, session):
        session.request.return_value = self.response([{"id": "o1"}])
        rows = rest.select("orders", [eq("status", "placed")], order_by="created_at", descending=True, limit=5)

        assert rows == [{"id": "o1"}]
        method, url = session.request.call_args[0]
        params = session.request.call_args[1]["params"]
        assert method == "GET"
        assert url == "https://db.example.com/rest/v1/orders"
        assert ("status", "eq.placed") in params
        assert ("order", "created_at.desc.nullslast") in params
        assert ("limit", "5") in params

    def test_count_reads_content_range(self, rest, session):
        session.request.return_value = self.response(headers={"Content-Range": "0-1/2"})
        assert rest.count("orders") == 2
        assert session.request.call_args[1]["headers"] == {"Prefer": "count=exact"}

    def test_rpc_posts_params(self, rest, session):
        session.request.return_value = self.response(17)
        assert rest.rpc("calculate_delivery_estimate", {"p_runner_id": None}) == 17
        method, url = session.request.call_args[0]
        assert method == "POST"
        assert url.endswith("/rest/v1/rpc/calculate_delivery_estimate")

    def test_request_failure_raises_backend_error(self, rest, session):
        session.request.side_effect = requests.exceptions.ConnectionError("down")
        with pytest.raises(BackendError):
            rest.select("orders")

    def test_requires_url(self, monkeypatch):
        monkeypatch.setattr("snackzo.config.SUPABASE_URL", "")
        with pytest.raises(ValueError):
            RestBackend("", "key", session=MagicMock())


class TestPollingSubscription:
    """Diff-based change events for the REST backend"""

    def test_poll_once_emits_diffs(self):
        backend = MagicMock()
        events = []
        sub = PollingSubscription(backend, "runners", events.append)

        backend.select.return_value = [{"id": "r1", "lat": 1.0}, {"id": "r2", "lat": 2.0}]
        assert sub.poll_once() == [], "First poll only takes a snapshot"

        backend.select.return_value = [{"id": "r1", "lat": 1.5}, {"id": "r3", "lat": 3.0}]
        sub.poll_once()

        kinds = sorted((e.event, e.row["id"]) for e in events)
        assert kinds == [(EVENT_DELETE, "r2"), (EVENT_INSERT, "r3"), (EVENT_UPDATE, "r1")]
