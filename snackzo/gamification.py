# snackzo/gamification.py
"""
Loyalty rules: daily check-in streaks, the spin wheel and flash deals.
"""

from __future__ import annotations

import logging
import random
import secrets
from datetime import date, datetime, timedelta
from typing import List, Optional

from . import config, utils
from .backend import Backend, NotFoundError, eq
from .models import CheckinResult, FlashDeal, SpinResult, SpinSegment

logger = logging.getLogger(__name__)


class SpinNotAvailable(Exception):
    """The user is still inside the spin cooldown."""


class DealClaimError(Exception):
    """A flash deal cannot be claimed."""


# =============================================================================
# DAILY CHECK-IN
# =============================================================================

def checkin_points(streak: int) -> int:
    """Base points, plus the milestone bonus on every Nth streak day."""
    points = config.CHECKIN_BASE_POINTS
    if streak > 0 and streak % config.STREAK_MILESTONE_DAYS == 0:
        points += config.STREAK_MILESTONE_BONUS
    return points


def _as_date(value) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def daily_checkin(backend: Backend, user_id: str, today: Optional[date] = None) -> CheckinResult:
    """
    Record today's check-in for a user.

    Checking in twice on the same day earns nothing. A check-in the day after
    the previous one extends the streak; any gap restarts it at 1.

    Raises:
        NotFoundError: No profile for the user
    """
    today = today or utils.local_time().date()
    profile = backend.select_one("profiles", [eq("user_id", user_id)])
    if profile is None:
        raise NotFoundError(f"Profile not found for user {user_id}")

    current = int(profile.get("current_streak") or 0)
    longest = int(profile.get("longest_streak") or 0)
    last = _as_date(profile.get("last_checkin_date"))

    if last == today:
        return CheckinResult(0, current, longest, already_checked_in=True)

    streak = current + 1 if last == today - timedelta(days=1) else 1
    longest = max(longest, streak)
    points = checkin_points(streak)

    backend.update("profiles", {
        "current_streak": streak,
        "longest_streak": longest,
        "last_checkin_date": today.isoformat(),
        "loyalty_points": int(profile.get("loyalty_points") or 0) + points,
    }, [eq("user_id", user_id)])

    logger.info(f"User {user_id} checked in: day {streak}, +{points} points")
    return CheckinResult(points, streak, longest)


# =============================================================================
# SPIN WHEEL
# =============================================================================

DEFAULT_SEGMENTS: List[SpinSegment] = [
    SpinSegment("1", "50 Points", 50, "points", 30, "#FF6B6B"),
    SpinSegment("2", "10% OFF", 10, "discount_percent", 15, "#4ECDC4"),
    SpinSegment("3", "100 Points", 100, "points", 20, "#45B7D1"),
    SpinSegment("4", "Free Delivery", 0, "free_delivery", 10, "#96CEB4"),
    SpinSegment("5", "Try Again", 0, "nothing", 20, "#FFEAA7"),
    SpinSegment("6", "₹20 OFF", 20, "discount_fixed", 5, "#DDA0DD"),
]

DISCOUNT_TYPES = ("discount_percent", "discount_fixed", "free_delivery")


def load_segments(backend: Backend) -> List[SpinSegment]:
    """Active wheel segments in display order, or the defaults."""
    rows = backend.select("spin_wheel_segments", [eq("is_active", True)], order_by="position")
    if not rows:
        return list(DEFAULT_SEGMENTS)
    return [
        SpinSegment(
            id=str(row["id"]),
            label=row.get("label", ""),
            value=float(row.get("value") or 0),
            type=row.get("type", "nothing"),
            probability=float(row.get("probability") or 0),
            color=row.get("color") or "#FFFFFF",
        )
        for row in rows
    ]


def last_spin_time(backend: Backend, user_id: str) -> Optional[datetime]:
    rows = backend.select(
        "spin_history", [eq("user_id", user_id)], order_by="spun_at", descending=True, limit=1
    )
    if not rows:
        return None
    return utils.parse_timestamp(rows[0]["spun_at"])


def can_spin(last_spin: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if last_spin is None:
        return True
    now = now or utils.utcnow()
    return now - last_spin >= timedelta(hours=config.SPIN_COOLDOWN_HOURS)


def time_until_next_spin(last_spin: Optional[datetime], now: Optional[datetime] = None) -> timedelta:
    if last_spin is None:
        return timedelta(0)
    now = now or utils.utcnow()
    remaining = last_spin + timedelta(hours=config.SPIN_COOLDOWN_HOURS) - now
    return max(remaining, timedelta(0))


def pick_segment(segments: List[SpinSegment], rng: Optional[random.Random] = None) -> SpinSegment:
    """Weighted pick by segment probability."""
    if not segments:
        raise ValueError("The wheel has no segments")
    rng = rng or random.Random()
    weights = [max(s.probability, 0) for s in segments]
    if sum(weights) <= 0:
        return rng.choice(segments)
    return rng.choices(segments, weights=weights, k=1)[0]


def perform_spin(
    backend: Backend,
    user_id: str,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
    segments: Optional[List[SpinSegment]] = None,
) -> SpinResult:
    """
    Spin the wheel for a user and apply the reward.

    Raises:
        SpinNotAvailable: The last spin was less than the cooldown ago
    """
    now = now or utils.utcnow()
    last = last_spin_time(backend, user_id)
    if not can_spin(last, now):
        remaining = time_until_next_spin(last, now)
        raise SpinNotAvailable(f"Next spin available in {utils.format_time_duration(remaining.total_seconds() / 60)}")

    segment = pick_segment(segments or load_segments(backend), rng)
    result = SpinResult(segment=segment, spun_at=now)

    if segment.type == "points":
        result.points_earned = int(segment.value)
        profile = backend.select_one("profiles", [eq("user_id", user_id)])
        if profile is not None:
            backend.update(
                "profiles",
                {"loyalty_points": int(profile.get("loyalty_points") or 0) + result.points_earned},
                [eq("user_id", user_id)],
            )
    elif segment.type in DISCOUNT_TYPES:
        result.discount_code = f"SPIN{secrets.token_hex(3).upper()}"

    backend.insert("spin_history", {
        "user_id": user_id,
        "segment_id": segment.id,
        "reward_type": segment.type,
        "reward_value": segment.value,
        "discount_code": result.discount_code,
        "spun_at": utils.to_iso(now),
    })
    logger.info(f"User {user_id} spun '{segment.label}'")
    return result


# =============================================================================
# FLASH DEALS
# =============================================================================

def active_deals(backend: Backend, now: Optional[datetime] = None) -> List[FlashDeal]:
    """Active deals inside their time window, highest discount first."""
    now = now or utils.utcnow()
    rows = backend.select("flash_deals", [eq("is_active", True)])
    deals = [FlashDeal.from_row(row) for row in rows]
    deals = [d for d in deals if d.starts_at <= now < d.ends_at]
    return sorted(deals, key=lambda d: d.discount_value, reverse=True)


def deal_discount(deal: FlashDeal, cart_total: float) -> float:
    if deal.discount_type == "percentage":
        discount = cart_total * deal.discount_value / 100
    else:
        discount = deal.discount_value
    if deal.max_discount:
        discount = min(discount, deal.max_discount)
    return round(discount, 2)


def claim_deal(
    backend: Backend,
    user_id: str,
    deal: FlashDeal,
    cart_total: float,
    now: Optional[datetime] = None,
) -> float:
    """
    Claim a deal for a user's cart.

    Returns:
        The discount amount

    Raises:
        DealClaimError: Inactive or expired deal, minimum order not met,
            usage limit reached, or already claimed
    """
    now = now or utils.utcnow()
    if not deal.is_active or not (deal.starts_at <= now < deal.ends_at):
        raise DealClaimError("This deal is no longer available")
    if cart_total < deal.min_order_value:
        raise DealClaimError(f"Add ₹{deal.min_order_value - cart_total:.2f} more to use this deal")
    if deal.usage_limit is not None and deal.used_count >= deal.usage_limit:
        raise DealClaimError("This deal has been fully claimed")
    if backend.count("flash_deal_claims", [eq("deal_id", deal.id), eq("user_id", user_id)]):
        raise DealClaimError("You have already claimed this deal")

    discount = deal_discount(deal, cart_total)
    backend.insert("flash_deal_claims", {
        "deal_id": deal.id,
        "user_id": user_id,
        "claimed_at": utils.to_iso(now),
    })
    deal.used_count += 1
    backend.update("flash_deals", {"used_count": deal.used_count}, [eq("id", deal.id)])
    logger.info(f"User {user_id} claimed deal {deal.id}, saved ₹{discount:.2f}")
    return discount


def time_left_seconds(deal: FlashDeal, now: Optional[datetime] = None) -> int:
    now = now or utils.utcnow()
    return max(0, int((deal.ends_at - now).total_seconds()))


def is_expiring_soon(deal: FlashDeal, now: Optional[datetime] = None) -> bool:
    left = time_left_seconds(deal, now)
    return 0 < left < config.FLASH_DEAL_EXPIRING_SOON_SECONDS
