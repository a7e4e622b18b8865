# snackzo/eta.py
"""
Delivery estimates.

Two estimates coexist:

1. **Enhanced ETA** (`calculate_enhanced_eta`): an additive model computed
   here from the order queue, traffic, distance, express flag and the
   runner's recent delivery times.

2. **RPC estimate** (`DeliveryEstimator`): a single call to the database
   function `calculate_delivery_estimate`, plus a confidence heuristic based
   on how much delivery history the runner has. If the call fails the
   estimate falls back to a fixed 15 minutes with low confidence.

Key rules:
- Every lookup failure degrades to a default instead of raising
- Estimates never go below the regular/express floor
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from . import config, utils
from .backend import Backend, BackendError, eq, in_, not_null
from .models import (
    Confidence,
    DeliveryEstimate,
    ETABreakdown,
    ETAFactors,
    ETAResult,
    OrderStatus,
    TimeOfDay,
    TrafficLevel,
)

logger = logging.getLogger(__name__)

QUEUED_STATUSES = (OrderStatus.PACKED.value, OrderStatus.OUT_FOR_DELIVERY.value)


# =============================================================================
# CLOCK-DERIVED FACTORS
# =============================================================================

def time_of_day(hour: int) -> str:
    """Bucket an hour (0-23) into morning / afternoon / evening / night."""
    if 6 <= hour < 12:
        return TimeOfDay.MORNING.value
    if 12 <= hour < 17:
        return TimeOfDay.AFTERNOON.value
    if 17 <= hour < 21:
        return TimeOfDay.EVENING.value
    return TimeOfDay.NIGHT.value


def traffic_level(hour: int) -> str:
    """
    Simulated campus traffic by hour.

    Peak hours (08-10, 17-20) are high, daytime is medium, the rest is low.
    """
    if 8 <= hour < 10 or 17 <= hour < 20:
        return TrafficLevel.HIGH.value
    if 10 <= hour < 17:
        return TrafficLevel.MEDIUM.value
    return TrafficLevel.LOW.value


# =============================================================================
# DELAY COMPONENTS
# =============================================================================

def queue_delay(queue: int) -> int:
    """Each order already queued on the runner adds a fixed delay."""
    return queue * config.QUEUE_DELAY_PER_ORDER_MINS


def traffic_delay(level: str, tod: str) -> int:
    """Delay for a traffic level; evening rush hour adds extra on top of 'high'."""
    delay = config.TRAFFIC_DELAY_MINS.get(level, 0)
    if tod == TimeOfDay.EVENING.value and level == TrafficLevel.HIGH.value:
        delay += config.EVENING_RUSH_EXTRA_MINS
    return delay


def distance_delay(distance_km: float) -> int:
    return utils.round_half_up(distance_km * config.DISTANCE_DELAY_MINS_PER_KM)


def confidence_for(runner_id: Optional[str], queue: Optional[int], level: Optional[str]) -> Confidence:
    """
    Score the inputs: +2 runner assigned, +1 short queue (<= 1), +1 low traffic.
    3 or more is high, 2 is medium, anything else low.
    """
    score = 0
    if runner_id:
        score += 2
    if queue is not None and queue <= 1:
        score += 1
    if level == TrafficLevel.LOW.value:
        score += 1

    if score >= 3:
        return Confidence.HIGH
    if score >= 2:
        return Confidence.MEDIUM
    return Confidence.LOW


# =============================================================================
# BACKEND LOOKUPS
# =============================================================================

def get_order_queue(backend: Optional[Backend], runner_id: Optional[str]) -> int:
    """Number of the runner's orders that are packed or out for delivery."""
    if not runner_id or backend is None:
        return 0
    try:
        return backend.count("orders", [eq("runner_id", runner_id), in_("status", QUEUED_STATUSES)])
    except BackendError as e:
        logger.error(f"Error fetching order queue: {e}")
        return 0


def get_estimated_distance(backend: Optional[Backend], order_id: Optional[str]) -> float:
    """Stored delivery distance for the order, or the default distance."""
    if not order_id or backend is None:
        return config.DEFAULT_DISTANCE_KM
    try:
        row = backend.select_one("delivery_estimates", [eq("order_id", order_id)])
    except BackendError:
        return config.DEFAULT_DISTANCE_KM
    if not row or not row.get("distance_km"):
        return config.DEFAULT_DISTANCE_KM
    return float(row["distance_km"])


def get_runner_stats(backend: Optional[Backend], runner_id: str) -> Optional[Dict[str, int]]:
    """
    Average delivery time over the runner's most recent deliveries.

    Durations outside (0, RUNNER_STATS_OUTLIER_MINS) minutes are treated as
    outliers and ignored.

    Returns:
        {"avg_delivery_time": minutes, "total_deliveries": n} or None when
        there is no usable history
    """
    if backend is None:
        return None
    try:
        rows = backend.select(
            "orders",
            [eq("runner_id", runner_id), eq("status", OrderStatus.DELIVERED.value), not_null("delivered_at")],
            order_by="delivered_at",
            descending=True,
            limit=config.RUNNER_STATS_SAMPLE,
        )
    except BackendError as e:
        logger.error(f"Error fetching runner stats: {e}")
        return None

    durations = []
    for row in rows:
        try:
            created = utils.parse_timestamp(row["created_at"])
            delivered = utils.parse_timestamp(row["delivered_at"])
        except (KeyError, TypeError, ValueError):
            continue
        minutes = (delivered - created).total_seconds() / 60
        if 0 < minutes < config.RUNNER_STATS_OUTLIER_MINS:
            durations.append(minutes)

    if not durations:
        return None

    return {
        "avg_delivery_time": utils.round_half_up(sum(durations) / len(durations)),
        "total_deliveries": len(durations),
    }


# =============================================================================
# ENHANCED ETA
# =============================================================================

def calculate_enhanced_eta(
    factors: ETAFactors,
    backend: Optional[Backend] = None,
    now: Optional[datetime] = None,
) -> ETAResult:
    """
    Calculate the enhanced delivery ETA.

    Args:
        factors: Known inputs; missing ones are looked up or derived
        backend: Storage for queue, distance and runner history lookups
        now: Current time (timezone-aware); defaults to the wall clock

    Returns:
        ETAResult with minutes, arrival time, confidence and breakdown
    """
    now = now or utils.utcnow()
    hour = utils.local_time(now).hour

    base_time = config.EXPRESS_BASE_DELIVERY_MINS if factors.is_express else config.BASE_DELIVERY_MINS
    tod = factors.time_of_day or time_of_day(hour)
    queue = factors.order_queue if factors.order_queue is not None else get_order_queue(backend, factors.runner_id)

    if factors.distance_km is not None:
        distance = factors.distance_km
    elif factors.runner_location is not None and factors.destination is not None:
        distance = utils.get_distance(*factors.runner_location, *factors.destination)
    else:
        distance = get_estimated_distance(backend, factors.order_id)

    traffic = factors.traffic_level or traffic_level(hour)

    q_delay = queue_delay(queue)
    t_delay = traffic_delay(traffic, tod)
    d_delay = distance_delay(distance)
    express_bonus = config.EXPRESS_BONUS_MINS if factors.is_express else 0

    runner_adjustment = 0.0
    if factors.runner_id:
        stats = get_runner_stats(backend, factors.runner_id)
        if stats and stats["avg_delivery_time"] < base_time:
            runner_adjustment = -(base_time - stats["avg_delivery_time"]) * config.RUNNER_SPEEDUP_FACTOR

    floor = config.MIN_EXPRESS_DELIVERY_MINS if factors.is_express else config.MIN_DELIVERY_MINS
    total = max(
        floor,
        utils.round_half_up(base_time + q_delay + t_delay + d_delay + express_bonus + runner_adjustment),
    )

    return ETAResult(
        estimated_minutes=total,
        estimated_seconds=total * 60,
        estimated_time=now + timedelta(minutes=total),
        confidence=confidence_for(factors.runner_id, queue, traffic),
        factors=ETABreakdown(
            base_time=base_time,
            queue_delay=q_delay,
            traffic_delay=t_delay,
            distance_delay=d_delay,
            express_bonus=express_bonus,
            runner_adjustment=runner_adjustment,
        ),
    )


def format_eta(minutes: int) -> str:
    """'Less than 1 minute', '12 min' or '1h 5m'."""
    if minutes < 1:
        return "Less than 1 minute"
    if minutes < 60:
        return f"{minutes} min"
    return f"{minutes // 60}h {minutes % 60}m"


def countdown_seconds(estimated_time: datetime, now: Optional[datetime] = None) -> int:
    """Whole seconds until `estimated_time`, never negative."""
    now = now or utils.utcnow()
    return max(0, math.floor((estimated_time - now).total_seconds()))


def format_countdown(seconds: int) -> str:
    if seconds <= 0:
        return "Arriving now"
    minutes, secs = divmod(seconds, 60)
    if minutes > 0:
        return f"{minutes}:{secs:02d}"
    return f"{secs}s"


def is_overdue(estimated_time: datetime, now: Optional[datetime] = None) -> bool:
    now = now or utils.utcnow()
    return now > estimated_time


# =============================================================================
# RPC ESTIMATE
# =============================================================================

CONFIDENCE_LABELS: Dict[Confidence, str] = {
    Confidence.HIGH: "Based on runner history",
    Confidence.MEDIUM: "Estimated",
    Confidence.LOW: "Approximate",
}


class DeliveryEstimator:
    """
    RPC-backed delivery estimate with a client-side confidence heuristic.

    Usage:
        estimator = DeliveryEstimator(backend)
        estimate = estimator.estimate(runner_id="r-1")
        low, high = estimator.estimate_range(estimate)
    """

    RPC_NAME = "calculate_delivery_estimate"

    def __init__(self, backend: Backend) -> None:
        self.backend = backend

    def estimate(self, runner_id: Optional[str] = None, now: Optional[datetime] = None) -> DeliveryEstimate:
        now = now or utils.utcnow()
        tod = time_of_day(utils.local_time(now).hour)

        try:
            minutes = self._scalar(self.backend.rpc(self.RPC_NAME, {
                "p_runner_id": runner_id or None,
                "p_time_of_day": tod,
            }))
        except (BackendError, TypeError, ValueError) as e:
            logger.error(f"Error calculating estimate: {e}")
            minutes = None

        if not minutes:
            return DeliveryEstimate(
                minutes=config.FALLBACK_ESTIMATE_MINS,
                confidence=Confidence.LOW,
                time_of_day=tod,
                runner_assigned=bool(runner_id),
                from_fallback=True,
            )

        return DeliveryEstimate(
            minutes=minutes,
            confidence=self._confidence(runner_id),
            time_of_day=tod,
            runner_assigned=bool(runner_id),
        )

    def _scalar(self, result) -> Optional[int]:
        """Whole minutes from a scalar or set-returning (list of rows) RPC result."""
        if isinstance(result, list):
            result = result[0] if result else None
        if isinstance(result, dict):
            result = result.get(self.RPC_NAME)
        if result is None:
            return None
        return int(result)

    def _confidence(self, runner_id: Optional[str]) -> Confidence:
        if not runner_id:
            return Confidence.LOW
        try:
            count = self.backend.count("delivery_metrics", [eq("runner_id", runner_id)])
        except BackendError as e:
            logger.warning(f"Could not count delivery history for runner {runner_id}: {e}")
            return Confidence.LOW

        if count > config.HIGH_CONFIDENCE_MIN_DELIVERIES:
            return Confidence.HIGH
        if count > config.MEDIUM_CONFIDENCE_MIN_DELIVERIES:
            return Confidence.MEDIUM
        return Confidence.LOW

    @staticmethod
    def estimate_range(estimate: Optional[DeliveryEstimate]) -> Tuple[int, int]:
        """Display range around the estimate; wider when confidence is lower."""
        if estimate is None or not estimate.minutes:
            return (10, 20)

        m = estimate.minutes
        if estimate.confidence == Confidence.HIGH:
            low, high = m - 2, m + 3
        elif estimate.confidence == Confidence.MEDIUM:
            low, high = m - 5, m + 5
        else:
            low, high = m - 5, m + 10
        return (max(1, low), high)

    @staticmethod
    def confidence_label(confidence: Confidence) -> str:
        return CONFIDENCE_LABELS[confidence]
