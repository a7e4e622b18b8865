# snackzo/location.py
"""
Runner live-location tracking.

Runner side:
    RunnerLocationTracker turns a stream of geolocation fixes into writes:
    - every accepted fix updates the runner row (current_lat / current_lng /
      last_location_update / is_online)
    - while an order is being delivered, the fix is also appended to
      order_location_history
    Fixes are throttled to MIN_UPDATE_INTERVAL_SECONDS per runner.

Customer side:
    RunnerLocationWatcher reads the runner row and follows UPDATE events on
    it, exposing staleness and distance-to-destination helpers.

Position sources abstract the browser geolocation watch: something that
calls back with fixes (or errors) until the watch is cleared.
"""

from __future__ import annotations

import csv
import itertools
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from . import config, utils
from .backend import EVENT_UPDATE, Backend, BackendError, ChangeEvent, Subscription, eq
from .models import LocationFix, RunnerPosition

logger = logging.getLogger(__name__)

FixCallback = Callable[[LocationFix], object]
ErrorCallback = Callable[[Exception], object]


# =============================================================================
# POSITION SOURCES
# =============================================================================

class PositionSource(ABC):
    """A geolocation watch: calls `on_fix` for each reading until cleared."""

    @abstractmethod
    def watch(self, on_fix: FixCallback, on_error: Optional[ErrorCallback] = None) -> int:
        """Start delivering fixes; returns a watch id."""

    @abstractmethod
    def clear_watch(self, watch_id: int) -> None:
        """Stop delivering fixes to the given watch."""


class _CallbackSource(PositionSource):
    """Keeps the registered watchers and fans readings out to them."""

    def __init__(self) -> None:
        self._watchers: Dict[int, Tuple[FixCallback, Optional[ErrorCallback]]] = {}
        self._ids = itertools.count(1)

    def watch(self, on_fix, on_error=None):
        watch_id = next(self._ids)
        self._watchers[watch_id] = (on_fix, on_error)
        return watch_id

    def clear_watch(self, watch_id):
        self._watchers.pop(watch_id, None)

    @property
    def watcher_count(self) -> int:
        return len(self._watchers)

    def _emit_fix(self, fix: LocationFix) -> None:
        for on_fix, _ in list(self._watchers.values()):
            on_fix(fix)

    def _emit_error(self, error: Exception) -> None:
        for _, on_error in list(self._watchers.values()):
            if on_error is not None:
                on_error(error)


class ManualPositionSource(_CallbackSource):
    """Fixes are pushed in from outside (e.g. an HTTP endpoint)."""

    def push(self, fix: LocationFix) -> None:
        self._emit_fix(fix)

    def fail(self, error: Exception) -> None:
        self._emit_error(error)


class ReplayPositionSource(_CallbackSource):
    """
    Replays a recorded sequence of fixes.

    Exceptions in the sequence are delivered to the error callback, the way
    a geolocation timeout or permission error would be.
    """

    def __init__(self, readings: Iterable[Union[LocationFix, Exception]]) -> None:
        super().__init__()
        self.readings: List[Union[LocationFix, Exception]] = list(readings)

    def replay(self) -> int:
        """Deliver every reading to the active watchers. Returns fixes delivered."""
        delivered = 0
        for reading in self.readings:
            if not self._watchers:
                break
            if isinstance(reading, Exception):
                self._emit_error(reading)
            else:
                self._emit_fix(reading)
                delivered += 1
        return delivered


def load_fixes_csv(path: str) -> List[LocationFix]:
    """
    Load recorded fixes from a CSV with columns lat, lng, timestamp and an
    optional accuracy_m.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If a row is malformed
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Fix file not found: {path}")

    fixes: List[LocationFix] = []
    with open(path, 'r', newline='') as f:
        reader = csv.DictReader(f)
        for line_no, row in enumerate(reader, start=2):
            try:
                accuracy = row.get("accuracy_m")
                fixes.append(LocationFix(
                    lat=float(row["lat"]),
                    lng=float(row["lng"]),
                    timestamp=utils.parse_timestamp(row["timestamp"]),
                    accuracy_m=float(accuracy) if accuracy not in (None, "") else None,
                ))
            except (KeyError, ValueError) as e:
                raise ValueError(f"Invalid fix in {path} line {line_no}: {e}")
    return fixes


# =============================================================================
# RUNNER SIDE
# =============================================================================

class RunnerLocationTracker:
    """
    Shares one runner's location while they are on duty.

    Attributes:
        backend: Storage used for the runner row and the history table
        runner_id: The runner being tracked
        source: Where fixes come from; None means geolocation is unavailable
        min_interval_seconds: Fixes closer together than this are dropped
    """

    def __init__(
        self,
        backend: Backend,
        runner_id: str,
        source: Optional[PositionSource],
        min_interval_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utils.utcnow,
    ) -> None:
        self.backend = backend
        self.runner_id = runner_id
        self.source = source
        self.min_interval_seconds = (
            config.MIN_UPDATE_INTERVAL_SECONDS if min_interval_seconds is None else min_interval_seconds
        )
        self.clock = clock

        self._watch_id: Optional[int] = None
        self._is_tracking = False
        self._last_update: Optional[datetime] = None
        self._last_fix_time: Optional[datetime] = None
        self._current_order_id: Optional[str] = None
        self.last_error: Optional[Exception] = None
        self.updates_recorded = 0
        # Held across throttle check and write; sources may call from any thread
        self.lock = threading.RLock()

    @property
    def is_tracking(self) -> bool:
        return self._is_tracking

    @property
    def last_update(self) -> Optional[datetime]:
        """Wall-clock time of the last successful write."""
        return self._last_update

    @property
    def current_order_id(self) -> Optional[str]:
        return self._current_order_id

    def set_current_order(self, order_id: Optional[str]) -> None:
        self._current_order_id = order_id

    def start_tracking(self) -> bool:
        """
        Start the position watch.

        Returns:
            True if tracking is active afterwards, False if no position
            source is available
        """
        if self.source is None:
            logger.error(f"Runner {self.runner_id}: geolocation is not supported")
            return False
        if self._is_tracking:
            return True

        self._watch_id = self.source.watch(self.update_location, self._on_position_error)
        self._is_tracking = True
        logger.info(f"Runner {self.runner_id}: location tracking started")
        return True

    def stop_tracking(self) -> None:
        """Clear the watch and mark the runner offline."""
        self._clear_watch()
        try:
            self.backend.update("runners", {"is_online": False}, [eq("id", self.runner_id)])
        except BackendError as e:
            logger.error(f"Runner {self.runner_id}: failed to mark offline: {e}")
        self._is_tracking = False
        logger.info(f"Runner {self.runner_id}: location tracking stopped")

    def close(self) -> None:
        """Release the watch without touching the runner's online flag."""
        self._clear_watch()
        self._is_tracking = False

    def sync(self, is_delivering: bool, current_order_id: Optional[str] = None) -> bool:
        """
        Align tracking with the runner's delivery state.

        Tracking starts automatically once the runner is delivering; it is
        never stopped here (the runner stops it explicitly).
        """
        self._current_order_id = current_order_id
        if is_delivering and not self._is_tracking:
            return self.start_tracking()
        return self._is_tracking

    def update_location(self, fix: LocationFix) -> bool:
        """
        Record one fix.

        Returns:
            True if the runner row was written, False if the fix was
            invalid, throttled, or the write failed
        """
        if not utils.is_valid_coordinate(fix.lat, fix.lng):
            logger.warning(f"Runner {self.runner_id}: ignoring invalid fix {fix.lat}, {fix.lng}")
            return False

        with self.lock:
            if self._last_fix_time is not None:
                elapsed = (fix.timestamp - self._last_fix_time).total_seconds()
                if elapsed < self.min_interval_seconds:
                    logger.debug(f"Runner {self.runner_id}: throttled fix ({elapsed:.1f}s since last)")
                    return False

            now = self.clock()
            try:
                self.backend.update(
                    "runners",
                    {
                        "current_lat": fix.lat,
                        "current_lng": fix.lng,
                        "last_location_update": utils.to_iso(now),
                        "is_online": True,
                    },
                    [eq("id", self.runner_id)],
                )

                if self._current_order_id:
                    self.backend.insert("order_location_history", {
                        "order_id": self._current_order_id,
                        "runner_id": self.runner_id,
                        "lat": fix.lat,
                        "lng": fix.lng,
                        "accuracy_m": fix.accuracy_m,
                        "recorded_at": utils.to_iso(fix.timestamp),
                    })
            except BackendError as e:
                logger.error(f"Runner {self.runner_id}: error updating location: {e}")
                self.last_error = e
                return False

            self._last_fix_time = fix.timestamp
            self._last_update = now
            self.updates_recorded += 1
            return True

    def _on_position_error(self, error: Exception) -> None:
        self.last_error = error
        logger.error(f"Runner {self.runner_id}: geolocation error: {error}")

    def _clear_watch(self) -> None:
        if self._watch_id is not None and self.source is not None:
            self.source.clear_watch(self._watch_id)
        self._watch_id = None

    def __repr__(self) -> str:
        return f"RunnerLocationTracker({self.runner_id}, tracking={self._is_tracking})"


# =============================================================================
# CUSTOMER SIDE
# =============================================================================

class RunnerLocationWatcher:
    """
    Follows a runner's position for the order tracking screen.

    The position is read once on `start()` and then replaced by every UPDATE
    event on the runner row that carries coordinates.
    """

    def __init__(
        self,
        backend: Backend,
        runner_id: str,
        on_change: Optional[Callable[[RunnerPosition], None]] = None,
    ) -> None:
        self.backend = backend
        self.runner_id = runner_id
        self.on_change = on_change
        self.position: Optional[RunnerPosition] = None
        self._subscription: Optional[Subscription] = None

    def fetch(self) -> Optional[RunnerPosition]:
        """Read the runner row. None if it has no coordinates or the read fails."""
        try:
            row = self.backend.select_one("runners", [eq("id", self.runner_id)])
        except BackendError as e:
            logger.error(f"Error fetching runner {self.runner_id} location: {e}")
            return None
        if row is None:
            return None
        position = RunnerPosition.from_row(row)
        if position is not None:
            self.position = position
        return position

    def start(self) -> Optional[RunnerPosition]:
        self.fetch()
        if self._subscription is None:
            self._subscription = self.backend.subscribe(
                "runners", self._handle_change, event=EVENT_UPDATE,
                filters=[eq("id", self.runner_id)],
            )
        return self.position

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _handle_change(self, change: ChangeEvent) -> None:
        position = RunnerPosition.from_row(change.new or {})
        if position is None:
            return
        self.position = position
        if self.on_change is not None:
            self.on_change(position)

    def seconds_since_update(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.position is None or self.position.last_update is None:
            return None
        now = now or utils.utcnow()
        return max(0.0, (now - self.position.last_update).total_seconds())

    def is_stale(self, now: Optional[datetime] = None, max_age_seconds: Optional[float] = None) -> bool:
        """True when there is no position or it is older than the staleness limit."""
        max_age = config.STALE_LOCATION_SECONDS if max_age_seconds is None else max_age_seconds
        age = self.seconds_since_update(now)
        return age is None or age > max_age

    def distance_to_km(self, lat: float, lng: float) -> Optional[float]:
        if self.position is None:
            return None
        return utils.get_distance(self.position.lat, self.position.lng, lat, lng)

    def is_nearby(self, lat: float, lng: float, radius_km: Optional[float] = None) -> bool:
        radius = config.NEARBY_RADIUS_KM if radius_km is None else radius_km
        distance = self.distance_to_km(lat, lng)
        return distance is not None and distance <= radius


# =============================================================================
# HISTORY
# =============================================================================

def order_location_trail(backend: Backend, order_id: str) -> List[LocationFix]:
    """The recorded runner path for an order, oldest first."""
    rows = backend.select(
        "order_location_history", [eq("order_id", order_id)], order_by="recorded_at"
    )
    trail: List[LocationFix] = []
    for row in rows:
        accuracy = row.get("accuracy_m")
        trail.append(LocationFix(
            lat=float(row["lat"]),
            lng=float(row["lng"]),
            timestamp=utils.parse_timestamp(row["recorded_at"]),
            accuracy_m=float(accuracy) if accuracy not in (None, "") else None,
        ))
    return trail


def trail_distance_km(trail: List[LocationFix]) -> float:
    """Total straight-line distance covered along a trail."""
    return sum(
        utils.haversine_distance(a.lat, a.lng, b.lat, b.lng)
        for a, b in zip(trail, trail[1:])
    )
