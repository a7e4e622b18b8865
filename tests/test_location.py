"""Tests for runner location tracking and watching"""
import os
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from conftest import ORDER_OUT
from snackzo.backend import BackendError, InMemoryBackend, eq
from snackzo.location import (
    ManualPositionSource,
    ReplayPositionSource,
    RunnerLocationTracker,
    RunnerLocationWatcher,
    load_fixes_csv,
    order_location_trail,
    trail_distance_km,
)
from snackzo.models import LocationFix
from snackzo.seed import DEFAULT_DATA_DIR

T0 = datetime(2025, 3, 14, 19, 3, tzinfo=timezone.utc)


def fix_at(seconds, lat=12.9692, lng=79.1559):
    return LocationFix(lat=lat, lng=lng, timestamp=T0 + timedelta(seconds=seconds), accuracy_m=5.0)


class TestRunnerLocationTracker:
    """Runner-side fix handling: throttling, writes and lifecycle"""

    @pytest.fixture
    def db(self):
        return InMemoryBackend({"runners": [{"id": "r-1", "name": "Test Runner", "is_online": False}]})

    @pytest.fixture
    def source(self):
        return ManualPositionSource()

    @pytest.fixture
    def tracker(self, db, source):
        return RunnerLocationTracker(db, "r-1", source, min_interval_seconds=5, clock=lambda: T0)

    def test_fix_updates_runner_row(self, db, source, tracker):
        assert tracker.start_tracking()
        source.push(fix_at(0))

        runner = db.select_one("runners", [eq("id", "r-1")])
        assert runner["current_lat"] == 12.9692
        assert runner["current_lng"] == 79.1559
        assert runner["is_online"] is True
        assert runner["last_location_update"] == T0.isoformat()
        assert tracker.last_update == T0
        assert db.count("order_location_history") == 0, "No order set, nothing to record"

    def test_fixes_are_throttled(self, source, tracker):
        """Fixes closer than the minimum interval are dropped"""
        tracker.start_tracking()
        for seconds in (0, 2, 4, 6, 10, 11):
            source.push(fix_at(seconds))
        # accepted: 0, 6, 11
        assert tracker.updates_recorded == 3

    def test_history_recorded_while_delivering(self, db, source, tracker):
        tracker.set_current_order("o-1")
        tracker.start_tracking()
        source.push(fix_at(0))
        source.push(fix_at(6, lat=12.9700))

        rows = db.select("order_location_history", order_by="recorded_at")
        assert [r["lat"] for r in rows] == [12.9692, 12.9700]
        assert all(r["order_id"] == "o-1" and r["runner_id"] == "r-1" for r in rows)
        assert rows[0]["accuracy_m"] == 5.0

    def test_invalid_coordinates_rejected(self, db, tracker):
        assert tracker.update_location(LocationFix(91.0, 0.0, T0)) is False
        assert tracker.update_location(LocationFix(float("nan"), 0.0, T0)) is False
        assert db.select_one("runners", [eq("id", "r-1")]).get("current_lat") is None

    def test_stop_clears_watch_and_goes_offline(self, db, source, tracker):
        tracker.start_tracking()
        source.push(fix_at(0))
        tracker.stop_tracking()

        assert source.watcher_count == 0
        assert tracker.is_tracking is False
        assert db.select_one("runners", [eq("id", "r-1")])["is_online"] is False

        source.push(fix_at(10))
        assert tracker.updates_recorded == 1, "No fixes after stop"

    def test_stop_clears_watch_when_offline_write_fails(self, source):
        db = MagicMock()
        db.update.side_effect = BackendError("connection reset")
        tracker = RunnerLocationTracker(db, "r-1", source, min_interval_seconds=5)
        tracker.start_tracking()

        tracker.stop_tracking()

        assert source.watcher_count == 0
        assert tracker.is_tracking is False

    def test_concurrent_fixes_respect_interval(self, tracker):
        """Fixes arriving from several threads at once are recorded once"""
        barrier = threading.Barrier(8)
        results = []

        def report():
            barrier.wait()
            results.append(tracker.update_location(fix_at(0)))

        threads = [threading.Thread(target=report) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert tracker.updates_recorded == 1

    def test_start_is_idempotent(self, source, tracker):
        tracker.start_tracking()
        tracker.start_tracking()
        assert source.watcher_count == 1

    def test_no_source_means_no_tracking(self, db):
        tracker = RunnerLocationTracker(db, "r-1", None)
        assert tracker.start_tracking() is False
        assert tracker.is_tracking is False

    def test_sync_starts_but_never_stops(self, tracker):
        assert tracker.sync(is_delivering=True, current_order_id="o-9") is True
        assert tracker.current_order_id == "o-9"
        assert tracker.sync(is_delivering=False) is True
        assert tracker.current_order_id is None

    def test_backend_failure_is_reported(self, source):
        db = MagicMock()
        db.update.side_effect = BackendError("connection reset")
        tracker = RunnerLocationTracker(db, "r-1", source, min_interval_seconds=5)

        assert tracker.update_location(fix_at(0)) is False
        assert isinstance(tracker.last_error, BackendError)
        assert tracker.updates_recorded == 0

    def test_position_error_is_kept(self, tracker, source):
        tracker.start_tracking()
        source.fail(TimeoutError("position timeout"))
        assert isinstance(tracker.last_error, TimeoutError)


class TestReplay:
    """Recorded fix files and the replay source"""

    def test_replay_demo_fixes(self, backend):
        """Seven fixes, the 2 s one is throttled"""
        fixes = load_fixes_csv(os.path.join(DEFAULT_DATA_DIR, "fixes_r001.csv"))
        source = ReplayPositionSource(fixes)
        tracker = RunnerLocationTracker(backend, "r-001", source, min_interval_seconds=5)
        tracker.set_current_order(ORDER_OUT)
        tracker.start_tracking()

        assert source.replay() == 7
        assert tracker.updates_recorded == 6
        assert len(order_location_trail(backend, ORDER_OUT)) == 4 + 6

    def test_replay_stops_without_watchers(self):
        source = ReplayPositionSource([fix_at(0), fix_at(10)])
        assert source.replay() == 0

    def test_replay_delivers_errors(self, backend):
        source = ReplayPositionSource([fix_at(0), RuntimeError("permission denied"), fix_at(10)])
        tracker = RunnerLocationTracker(backend, "r-001", source, min_interval_seconds=5)
        tracker.start_tracking()

        assert source.replay() == 2
        assert isinstance(tracker.last_error, RuntimeError)

    def test_load_fixes_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_fixes_csv(str(tmp_path / "nope.csv"))

    def test_load_fixes_bad_row(self, tmp_path):
        path = tmp_path / "fixes.csv"
        path.write_text(
            "lat,lng,timestamp\n"
            "12.9,79.1,2025-03-14T19:03:00+00:00\n"
            "north,79.1,2025-03-14T19:03:05+00:00\n"
        )
        with pytest.raises(ValueError, match="line 3"):
            load_fixes_csv(str(path))


class TestRunnerLocationWatcher:
    """Customer-side view of a runner's position"""

    @pytest.fixture
    def db(self):
        return InMemoryBackend({"runners": [
            {"id": "r-1", "current_lat": 12.9692, "current_lng": 79.1559,
             "last_location_update": "2025-03-14T19:03:00+00:00", "is_online": True},
            {"id": "r-2", "current_lat": None, "current_lng": None},
        ]})

    def test_start_reads_current_position(self, db):
        watcher = RunnerLocationWatcher(db, "r-1")
        position = watcher.start()
        assert position.loc == (12.9692, 79.1559)
        assert position.is_online is True

    def test_updates_are_followed(self, db):
        seen = []
        watcher = RunnerLocationWatcher(db, "r-1", on_change=seen.append)
        watcher.start()

        db.update("runners", {"current_lat": 12.9700}, [eq("id", "r-1")])
        db.update("runners", {"current_lat": 13.0}, [eq("id", "r-2")])

        assert len(seen) == 1
        assert watcher.position.lat == 12.9700

        watcher.stop()
        db.update("runners", {"current_lat": 12.9800}, [eq("id", "r-1")])
        assert watcher.position.lat == 12.9700, "No updates after stop"

    def test_runner_without_coordinates(self, db):
        watcher = RunnerLocationWatcher(db, "r-2")
        assert watcher.start() is None
        assert watcher.is_stale()
        assert watcher.distance_to_km(12.97, 79.15) is None
        assert watcher.is_nearby(12.97, 79.15) is False

    def test_staleness(self, db):
        watcher = RunnerLocationWatcher(db, "r-1")
        watcher.fetch()
        updated = datetime(2025, 3, 14, 19, 3, tzinfo=timezone.utc)

        assert watcher.seconds_since_update(updated + timedelta(seconds=30)) == 30
        assert not watcher.is_stale(updated + timedelta(seconds=30))
        assert watcher.is_stale(updated + timedelta(seconds=130))
        assert watcher.is_stale(updated + timedelta(seconds=30), max_age_seconds=10)

    def test_nearby(self, db):
        watcher = RunnerLocationWatcher(db, "r-1")
        watcher.fetch()
        assert watcher.is_nearby(12.9700, 79.1565), "About 110 m away"
        assert not watcher.is_nearby(12.9780, 79.1559), "About 1 km away"

    def test_fetch_failure_returns_none(self):
        db = MagicMock()
        db.select_one.side_effect = BackendError("timeout")
        assert RunnerLocationWatcher(db, "r-1").fetch() is None


class TestTrail:
    """Order location history"""

    def test_trail_is_ordered(self):
        db = InMemoryBackend({"order_location_history": [
            {"order_id": "o-1", "lat": 12.97, "lng": 79.16, "recorded_at": "2025-03-14T19:05:00+00:00"},
            {"order_id": "o-1", "lat": 12.96, "lng": 79.15, "recorded_at": "2025-03-14T19:00:00+00:00"},
            {"order_id": "o-2", "lat": 0, "lng": 0, "recorded_at": "2025-03-14T19:01:00+00:00"},
        ]})
        trail = order_location_trail(db, "o-1")
        assert [f.lat for f in trail] == [12.96, 12.97]
        assert trail[0].accuracy_m is None

    def test_demo_trail_distance(self, backend):
        trail = order_location_trail(backend, ORDER_OUT)
        assert len(trail) == 4
        assert 0.05 < trail_distance_km(trail) < 0.2
        assert trail_distance_km(trail[:1]) == 0
