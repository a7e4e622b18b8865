"""Tests for check-in streaks, the spin wheel and flash deals"""
import random
from datetime import date, datetime, timedelta, timezone

import pytest

from snackzo.backend import InMemoryBackend, NotFoundError, eq
from snackzo.gamification import (
    DEFAULT_SEGMENTS,
    DealClaimError,
    SpinNotAvailable,
    active_deals,
    can_spin,
    checkin_points,
    claim_deal,
    daily_checkin,
    deal_discount,
    is_expiring_soon,
    load_segments,
    perform_spin,
    pick_segment,
    time_left_seconds,
    time_until_next_spin,
)
from snackzo.models import FlashDeal, SpinSegment

NOW = datetime(2026, 6, 1, 20, 0, tzinfo=timezone.utc)


def profile(backend, user_id):
    return backend.select_one("profiles", [eq("user_id", user_id)])


class TestDailyCheckin:
    """Streak rules and points"""

    def test_points(self):
        assert checkin_points(1) == 10
        assert checkin_points(6) == 10
        assert checkin_points(7) == 60
        assert checkin_points(14) == 60

    def test_consecutive_day_extends_streak(self, backend):
        result = daily_checkin(backend, "u-101", date(2025, 3, 14))

        assert (result.points_earned, result.new_streak, result.longest_streak) == (10, 4, 5)
        row = profile(backend, "u-101")
        assert row["current_streak"] == 4
        assert row["loyalty_points"] == 130
        assert row["last_checkin_date"] == "2025-03-14"

    def test_second_checkin_same_day(self, backend):
        daily_checkin(backend, "u-101", date(2025, 3, 14))
        again = daily_checkin(backend, "u-101", date(2025, 3, 14))
        assert again.already_checked_in
        assert again.points_earned == 0
        assert profile(backend, "u-101")["loyalty_points"] == 130

    def test_milestone_day(self, backend):
        result = daily_checkin(backend, "u-103", date(2025, 3, 14))
        assert result.new_streak == 7
        assert result.points_earned == 60
        assert result.longest_streak == 7

    def test_gap_restarts_streak(self, backend):
        result = daily_checkin(backend, "u-101", date(2025, 3, 16))
        assert result.new_streak == 1
        assert result.longest_streak == 5

    def test_first_checkin(self, backend):
        result = daily_checkin(backend, "u-102", date(2025, 3, 14))
        assert result.new_streak == 1

    def test_unknown_user(self, backend):
        with pytest.raises(NotFoundError):
            daily_checkin(backend, "u-999", date(2025, 3, 14))


class TestSpinWheel:
    """Cooldown, weighted pick and reward application"""

    POINTS = SpinSegment("p", "50 Points", 50, "points", 1)
    DISCOUNT = SpinSegment("d", "10% OFF", 10, "discount_percent", 1)
    NOTHING = SpinSegment("n", "Try Again", 0, "nothing", 1)

    def test_default_segments_when_none_configured(self, backend):
        assert load_segments(backend) == DEFAULT_SEGMENTS

    def test_configured_segments_in_order(self):
        db = InMemoryBackend({"spin_wheel_segments": [
            {"id": "b", "label": "B", "value": 5, "type": "points", "probability": 1, "position": 2, "is_active": True},
            {"id": "a", "label": "A", "value": 0, "type": "nothing", "probability": 1, "position": 1, "is_active": True},
            {"id": "c", "label": "C", "value": 0, "type": "nothing", "probability": 1, "position": 0, "is_active": False},
        ]})
        assert [s.id for s in load_segments(db)] == ["a", "b"]

    def test_pick_respects_weights(self):
        segments = [self.POINTS, SpinSegment("z", "Zero", 0, "nothing", 0)]
        rng = random.Random(7)
        assert all(pick_segment(segments, rng) is self.POINTS for _ in range(20))

    def test_pick_from_empty_wheel(self):
        with pytest.raises(ValueError):
            pick_segment([])

    def test_points_are_credited(self, backend):
        result = perform_spin(backend, "u-101", now=NOW, segments=[self.POINTS])

        assert result.is_win
        assert result.points_earned == 50
        assert result.discount_code is None
        assert profile(backend, "u-101")["loyalty_points"] == 170
        history = backend.select("spin_history", [eq("user_id", "u-101")])
        assert history[0]["segment_id"] == "p"
        assert history[0]["reward_type"] == "points"

    def test_discount_gets_code(self, backend):
        result = perform_spin(backend, "u-102", now=NOW, segments=[self.DISCOUNT])
        assert result.discount_code.startswith("SPIN")
        assert len(result.discount_code) == 10

    def test_try_again(self, backend):
        result = perform_spin(backend, "u-102", now=NOW, segments=[self.NOTHING])
        assert not result.is_win
        assert result.points_earned is None
        assert result.discount_code is None

    def test_cooldown(self, backend):
        perform_spin(backend, "u-101", now=NOW, segments=[self.NOTHING])

        with pytest.raises(SpinNotAvailable, match="1h 0m"):
            perform_spin(backend, "u-101", now=NOW + timedelta(hours=23), segments=[self.NOTHING])

        perform_spin(backend, "u-101", now=NOW + timedelta(hours=24), segments=[self.NOTHING])
        assert backend.count("spin_history", [eq("user_id", "u-101")]) == 2

    def test_cooldown_helpers(self):
        assert can_spin(None)
        assert not can_spin(NOW, NOW + timedelta(hours=1))
        assert time_until_next_spin(NOW, NOW + timedelta(hours=20)) == timedelta(hours=4)
        assert time_until_next_spin(NOW, NOW + timedelta(hours=30)) == timedelta(0)


class TestFlashDeals:
    """Active deals, discounts and claims"""

    @pytest.fixture
    def deals(self, backend):
        return {d.id: d for d in active_deals(backend, NOW)}

    def test_active_deals_sorted_by_discount(self, backend):
        assert [d.id for d in active_deals(backend, NOW)] == ["fd-2", "fd-1"]
        assert active_deals(backend, datetime(2031, 1, 1, tzinfo=timezone.utc)) == []

    def test_discount_amounts(self, deals):
        assert deal_discount(deals["fd-1"], 400) == 50.0, "Capped at max_discount"
        assert deal_discount(deals["fd-1"], 150) == 30.0
        assert deal_discount(deals["fd-2"], 500) == 30.0

    def test_claim(self, backend, deals):
        assert claim_deal(backend, "u-101", deals["fd-1"], 200, NOW) == 40.0
        assert backend.select_one("flash_deals", [eq("id", "fd-1")])["used_count"] == 13

        with pytest.raises(DealClaimError, match="already claimed"):
            claim_deal(backend, "u-101", deals["fd-1"], 200, NOW)

    def test_minimum_order(self, backend, deals):
        with pytest.raises(DealClaimError, match="Add ₹49.00 more"):
            claim_deal(backend, "u-101", deals["fd-1"], 50, NOW)

    def test_fully_claimed(self, backend, deals):
        with pytest.raises(DealClaimError, match="fully claimed"):
            claim_deal(backend, "u-101", deals["fd-2"], 300, NOW)

    def test_expired(self, backend, deals):
        with pytest.raises(DealClaimError, match="no longer available"):
            claim_deal(backend, "u-101", deals["fd-1"], 200, datetime(2031, 1, 1, tzinfo=timezone.utc))

    def test_expiring_soon(self):
        deal = FlashDeal("x", "Hour deal", "fixed", 10, NOW - timedelta(hours=1), NOW + timedelta(minutes=30))
        assert time_left_seconds(deal, NOW) == 1800
        assert is_expiring_soon(deal, NOW)
        assert not is_expiring_soon(deal, NOW - timedelta(hours=1))
        assert not is_expiring_soon(deal, NOW + timedelta(hours=1))
