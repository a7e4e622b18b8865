#!/usr/bin/env python3
# snackzo/main.py
"""
Command-Line Interface for the Snackzo delivery backend.

Runs against the demo data in data/ by default, or the hosted database with
--remote (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY).

Usage:
    python main.py estimate --runner r-001          # RPC delivery estimate
    python main.py eta <order-id> --express         # Enhanced ETA breakdown
    python main.py notify sms 9876543210 -m "Hi"    # Send one notification
    python main.py track r-001 data/fixes_r001.csv --order <order-id>
    python main.py serve --port 8000                # Run the HTTP API
    python main.py spin u-101                       # Spin the wheel
    python main.py checkin u-101                    # Daily check-in

Exit Codes:
    0: Success
    1: Data loading / argument error
    2: Runtime error
"""

from __future__ import annotations

import argparse
import logging
import os
import random
import sys
from datetime import date
from typing import Optional

from snackzo import config, utils
from snackzo.api import create_app
from snackzo.backend import Backend, BackendError, NotFoundError, RestBackend, eq
from snackzo.eta import DeliveryEstimator, calculate_enhanced_eta, format_eta
from snackzo.gamification import SpinNotAvailable, daily_checkin, perform_spin
from snackzo.location import ReplayPositionSource, RunnerLocationTracker, load_fixes_csv, order_location_trail, trail_distance_km
from snackzo.models import ETAFactors, NotificationPayload
from snackzo.notifications import NotificationDispatcher, OrderNotifier, OrderStatusListener
from snackzo.providers import ProviderError
from snackzo.seed import DEFAULT_DATA_DIR, load_demo_backend


def print_header(title: str) -> None:
    """Print the CLI header."""
    print("\n" + "=" * 60)
    print(f"  SNACKZO - {title}")
    print("=" * 60 + "\n")


def load_backend_safe(args: argparse.Namespace) -> Optional[Backend]:
    """
    Build the backend with graceful error handling.

    Returns:
        Backend or None if the data could not be loaded
    """
    if args.remote:
        if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE_KEY:
            print("ERROR: SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set for --remote")
            return None
        return RestBackend(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE_KEY)

    if not os.path.isdir(args.data_dir):
        print(f"ERROR: Data directory not found: {args.data_dir}")
        return None
    try:
        return load_demo_backend(args.data_dir)
    except (OSError, ValueError) as e:
        print(f"ERROR: Failed to load data: {e}")
        return None


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_estimate(backend: Backend, args: argparse.Namespace) -> int:
    estimator = DeliveryEstimator(backend)
    estimate = estimator.estimate(args.runner)
    low, high = estimator.estimate_range(estimate)

    print_header("Delivery Estimate")
    print(f"  Runner:      {args.runner or '(unassigned)'}")
    print(f"  Time of day: {estimate.time_of_day}")
    print(f"  Estimate:    {estimate.minutes} min ({low}-{high} min)")
    print(f"  Confidence:  {estimate.confidence.value} - {estimator.confidence_label(estimate.confidence)}")
    if estimate.from_fallback:
        print("  (fallback estimate, the backend function was unavailable)")
    return 0


def cmd_eta(backend: Backend, args: argparse.Namespace) -> int:
    order = backend.select_one("orders", [eq("id", args.order_id)])
    if order is None:
        print(f"ERROR: Order not found: {args.order_id}")
        return 1

    factors = ETAFactors(
        runner_id=args.runner or order.get("runner_id"),
        order_id=args.order_id,
        is_express=args.express or bool(order.get("is_express")),
    )
    result = calculate_enhanced_eta(factors, backend)

    print_header(f"ETA for order #{utils.short_order_id(args.order_id)}")
    for name, value in result.factors.to_dict().items():
        print(f"  {name:<18} {value:>6}")
    print("-" * 30)
    print(f"  ETA:        {format_eta(result.estimated_minutes)}")
    print(f"  Arrives at: {result.estimated_time:%H:%M} UTC")
    print(f"  Confidence: {result.confidence.value}")
    return 0


def cmd_notify(backend: Backend, args: argparse.Namespace) -> int:
    dispatcher = NotificationDispatcher()
    payload = NotificationPayload(to=args.to, subject=args.subject, message=args.message, html=args.html)
    try:
        result = dispatcher.dispatch(args.channel, payload)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1
    except ProviderError as e:
        print(f"ERROR: {e}")
        return 2

    status = "sent" if result.success else "FAILED"
    print(f"[{result.provider}] {args.channel} to {args.to}: {status}")
    if result.error:
        print(f"  {result.error}")
    return 0 if result.success else 2


def cmd_track(backend: Backend, args: argparse.Namespace) -> int:
    try:
        fixes = load_fixes_csv(args.fixes)
    except (OSError, ValueError) as e:
        print(f"ERROR: {e}")
        return 1

    source = ReplayPositionSource(fixes)
    tracker = RunnerLocationTracker(backend, args.runner_id, source, min_interval_seconds=args.min_interval)
    tracker.set_current_order(args.order)
    tracker.start_tracking()
    delivered = source.replay()
    recorded = tracker.updates_recorded
    tracker.close()

    print_header(f"Tracking replay for runner {args.runner_id}")
    print(f"  Fixes read:     {len(fixes)}")
    print(f"  Fixes delivered: {delivered}")
    print(f"  Fixes recorded: {recorded} (min interval {tracker.min_interval_seconds:.0f}s)")

    if args.order:
        trail = order_location_trail(backend, args.order)
        print(f"\n  Trail for order #{utils.short_order_id(args.order)} ({len(trail)} points, "
              f"{trail_distance_km(trail):.2f} km):")
        for fix in trail:
            print(f"    {fix.timestamp:%H:%M:%S}  {fix.lat:.5f}, {fix.lng:.5f}")
    return 0


def cmd_serve(backend: Backend, args: argparse.Namespace) -> int:
    notifier = OrderNotifier(backend)
    app = create_app(backend, notifier=notifier)
    listener = OrderStatusListener(backend, notifier)
    if args.listen:
        listener.start()
    try:
        app.run(host=args.host, port=args.port)
    finally:
        listener.stop()
    return 0


def cmd_spin(backend: Backend, args: argparse.Namespace) -> int:
    rng = random.Random(args.seed) if args.seed is not None else None
    try:
        result = perform_spin(backend, args.user_id, rng=rng)
    except SpinNotAvailable as e:
        print(f"Not yet: {e}")
        return 1

    print(f"🎡 {result.segment.label}")
    if result.points_earned:
        print(f"  +{result.points_earned} loyalty points")
    if result.discount_code:
        print(f"  Use code: {result.discount_code}")
    return 0


def cmd_checkin(backend: Backend, args: argparse.Namespace) -> int:
    try:
        today = date.fromisoformat(args.date) if args.date else None
        result = daily_checkin(backend, args.user_id, today)
    except (NotFoundError, ValueError) as e:
        print(f"ERROR: {e}")
        return 1

    if result.already_checked_in:
        print(f"Already checked in today (streak: {result.new_streak} days)")
    else:
        print(f"🎉 +{result.points_earned} points! Day {result.new_streak} streak (best: {result.longest_streak})")
    return 0


COMMANDS = {
    "estimate": cmd_estimate,
    "eta": cmd_eta,
    "notify": cmd_notify,
    "track": cmd_track,
    "serve": cmd_serve,
    "spin": cmd_spin,
    "checkin": cmd_checkin,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Snackzo delivery backend CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--data-dir", default=DEFAULT_DATA_DIR, help="Demo data directory (default: data/)")
    parser.add_argument("--remote", action="store_true", help="Use the hosted database instead of demo data")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("estimate", help="RPC-backed delivery estimate")
    p.add_argument("--runner", "-r", help="Assigned runner id")

    p = sub.add_parser("eta", help="Enhanced ETA for an order")
    p.add_argument("order_id")
    p.add_argument("--runner", "-r", help="Override the assigned runner")
    p.add_argument("--express", action="store_true", help="Treat as an express order")

    p = sub.add_parser("notify", help="Send a single notification")
    p.add_argument("channel", choices=["email", "sms", "whatsapp"])
    p.add_argument("to", help="E-mail address or phone number")
    p.add_argument("--subject", "-s")
    p.add_argument("--message", "-m")
    p.add_argument("--html")

    p = sub.add_parser("track", help="Replay recorded fixes through the location tracker")
    p.add_argument("runner_id")
    p.add_argument("fixes", help="CSV with lat,lng,timestamp[,accuracy_m]")
    p.add_argument("--order", "-o", help="Order being delivered (records the trail)")
    p.add_argument("--min-interval", type=float, default=None,
                   help=f"Minimum seconds between fixes (default: {config.MIN_UPDATE_INTERVAL_SECONDS:.0f})")

    p = sub.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--listen", action="store_true", help="Send notifications on order status changes")

    p = sub.add_parser("spin", help="Spin the reward wheel for a user")
    p.add_argument("user_id")
    p.add_argument("--seed", type=int, default=None, help="Random seed")

    p = sub.add_parser("checkin", help="Daily check-in for a user")
    p.add_argument("user_id")
    p.add_argument("--date", help="Check-in date (YYYY-MM-DD, default: today)")

    return parser


def main(argv: Optional[list] = None) -> int:
    """
    Main entry point for the CLI.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    backend = load_backend_safe(args)
    if backend is None:
        return 1

    try:
        return COMMANDS[args.command](backend, args)
    except BackendError as e:
        print(f"ERROR: Backend request failed: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
