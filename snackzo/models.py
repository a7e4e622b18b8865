# snackzo/models.py
"""
Core domain models for the Snackzo delivery backend.

This module defines the data structures shared by tracking, estimates and
notifications:
- LocationFix / RunnerPosition: where a runner is, and when we learned it
- ETAFactors / ETAResult: inputs and output of the enhanced delivery ETA
- DeliveryEstimate: the RPC-backed estimate shown on order cards
- NotificationPayload: what a channel needs to deliver a message
- SpinSegment / SpinResult / CheckinResult / FlashDeal: gamification rules
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from . import utils


class OrderStatus(Enum):
    """Lifecycle states for an order."""
    PLACED = "placed"
    PACKED = "packed"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class NotificationChannel(Enum):
    """Delivery channels the dispatcher knows about."""
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    PUSH = "push"


class NotificationPreference(Enum):
    """Channel preference stored on runner and customer profiles."""
    SMS = "sms"
    WHATSAPP = "whatsapp"
    BOTH = "both"
    PUSH = "push"

    @classmethod
    def wants_whatsapp(cls, value: Optional[str]) -> bool:
        return value in (cls.WHATSAPP.value, cls.BOTH.value)


class WhatsAppNotificationType(Enum):
    RUNNER_ASSIGNMENT = "runner_assignment"
    ORDER_STATUS = "order_status"


class Confidence(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TrafficLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TimeOfDay(Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


@dataclass
class LocationFix:
    """
    A single geolocation reading.

    Attributes:
        lat: Latitude in decimal degrees
        lng: Longitude in decimal degrees
        timestamp: When the reading was taken (timezone-aware)
        accuracy_m: Reported accuracy radius in meters, if known
    """
    lat: float
    lng: float
    timestamp: datetime = field(default_factory=utils.utcnow)
    accuracy_m: Optional[float] = None

    @property
    def loc(self) -> Tuple[float, float]:
        """Returns the location as a (lat, lng) tuple."""
        return (self.lat, self.lng)

    def __repr__(self) -> str:
        return f"LocationFix({self.lat:.5f}, {self.lng:.5f} @ {self.timestamp:%H:%M:%S})"


@dataclass
class RunnerPosition:
    """Last known position of a runner as stored on the runner row."""
    runner_id: str
    lat: float
    lng: float
    last_update: Optional[datetime] = None
    is_online: bool = False

    @property
    def loc(self) -> Tuple[float, float]:
        return (self.lat, self.lng)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Optional["RunnerPosition"]:
        """Build from a `runners` row; None when the row has no coordinates."""
        lat, lng = row.get("current_lat"), row.get("current_lng")
        if lat in (None, "") or lng in (None, ""):
            return None
        last_update = row.get("last_location_update")
        return cls(
            runner_id=str(row.get("id")),
            lat=float(lat),
            lng=float(lng),
            last_update=utils.parse_timestamp(last_update) if last_update else None,
            is_online=bool(row.get("is_online", False)),
        )


@dataclass
class ETAFactors:
    """
    Inputs to the enhanced ETA. Anything left as None is looked up or
    derived from the clock.

    Attributes:
        runner_id: Assigned runner, if any
        order_id: Order being estimated (used for the stored distance)
        is_express: Express orders have a shorter base time
        time_of_day: Override for the time-of-day bucket
        order_queue: Override for the runner's queued order count
        distance_km: Override for the delivery distance
        traffic_level: Override for the traffic level
        runner_location: Live runner position, used with destination
        destination: Drop-off coordinates
    """
    runner_id: Optional[str] = None
    order_id: Optional[str] = None
    is_express: bool = False
    time_of_day: Optional[str] = None
    order_queue: Optional[int] = None
    distance_km: Optional[float] = None
    traffic_level: Optional[str] = None
    runner_location: Optional[Tuple[float, float]] = None
    destination: Optional[Tuple[float, float]] = None


@dataclass
class ETABreakdown:
    base_time: int
    queue_delay: int
    traffic_delay: int
    distance_delay: int
    express_bonus: int
    runner_adjustment: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseTime": self.base_time,
            "queueDelay": self.queue_delay,
            "trafficDelay": self.traffic_delay,
            "distanceDelay": self.distance_delay,
            "expressBonus": self.express_bonus,
            "runnerAdjustment": round(self.runner_adjustment, 2),
        }


@dataclass
class ETAResult:
    """Output of the enhanced ETA calculation."""
    estimated_minutes: int
    estimated_seconds: int
    estimated_time: datetime
    confidence: Confidence
    factors: ETABreakdown

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON shape served by the API."""
        return {
            "estimatedMinutes": self.estimated_minutes,
            "estimatedSeconds": self.estimated_seconds,
            "estimatedTime": utils.to_iso(self.estimated_time),
            "confidence": self.confidence.value,
            "factors": self.factors.to_dict(),
        }


@dataclass
class DeliveryEstimate:
    """RPC-backed estimate shown on order cards."""
    minutes: Optional[int]
    confidence: Confidence
    time_of_day: str
    runner_assigned: bool = False
    from_fallback: bool = False

    def __repr__(self) -> str:
        return f"DeliveryEstimate({self.minutes} min, {self.confidence.value})"


@dataclass
class NotificationPayload:
    """
    What a channel needs to deliver one message.

    Attributes:
        to: E-mail address or phone number
        subject: E-mail subject
        message: Text body for SMS / WhatsApp
        html: HTML body for e-mail
        data: Extra template data
    """
    to: str
    subject: Optional[str] = None
    message: Optional[str] = None
    html: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SpinSegment:
    """One slice of the spin wheel. `probability` is a relative weight."""
    id: str
    label: str
    value: float
    type: str  # points, discount_percent, discount_fixed, free_delivery, nothing
    probability: float
    color: str = "#FFFFFF"


@dataclass
class SpinResult:
    segment: SpinSegment
    spun_at: datetime
    points_earned: Optional[int] = None
    discount_code: Optional[str] = None

    @property
    def is_win(self) -> bool:
        return self.segment.type != "nothing"


@dataclass
class CheckinResult:
    points_earned: int
    new_streak: int
    longest_streak: int
    already_checked_in: bool = False


@dataclass
class FlashDeal:
    """A time-boxed discount."""
    id: str
    title: str
    discount_type: str  # percentage or fixed
    discount_value: float
    starts_at: datetime
    ends_at: datetime
    min_order_value: float = 0.0
    max_discount: Optional[float] = None
    usage_limit: Optional[int] = None
    used_count: int = 0
    is_active: bool = True
    description: str = ""
    promo_code: Optional[str] = None
    product_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FlashDeal":
        """Build from a `flash_deals` row."""
        max_discount = row.get("max_discount")
        usage_limit = row.get("usage_limit")
        return cls(
            id=str(row["id"]),
            title=row.get("title", ""),
            discount_type=row.get("discount_type", "percentage"),
            discount_value=float(row.get("discount_value", 0)),
            starts_at=utils.parse_timestamp(row["starts_at"]),
            ends_at=utils.parse_timestamp(row["ends_at"]),
            min_order_value=float(row.get("min_order_value") or 0),
            max_discount=float(max_discount) if max_discount not in (None, "") else None,
            usage_limit=int(usage_limit) if usage_limit not in (None, "") else None,
            used_count=int(row.get("used_count") or 0),
            is_active=bool(row.get("is_active", True)),
            description=row.get("description", ""),
            promo_code=row.get("promo_code"),
            product_ids=list(row.get("product_ids") or []),
        )

    def __repr__(self) -> str:
        return f"FlashDeal({self.id}, {self.discount_type}:{self.discount_value})"
