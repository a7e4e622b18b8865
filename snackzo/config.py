# snackzo/config.py
"""
Configuration parameters for the Snackzo delivery backend.

This module centralizes all tunable parameters, making it easy to:
- Adjust how often runner locations are written
- Fine-tune the delivery estimate heuristics
- Point the notification layer at provider credentials

Credentials are read from the environment (a local .env file is loaded
first when present). Everything else is a plain module constant that the
dashboard and tests may override at runtime.
"""

import os
from typing import Dict, Final

from dotenv import load_dotenv

load_dotenv()

# =============================================================================
# HOSTED BACKEND
# =============================================================================

SUPABASE_URL: str = os.environ.get("SUPABASE_URL", "")
"""Base URL of the hosted Postgres/REST backend. Empty = use the demo backend."""

SUPABASE_SERVICE_ROLE_KEY: str = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
"""Service key sent as both `apikey` and bearer token."""

BACKEND_TIMEOUT_SECONDS: float = 10.0
"""Timeout for REST backend requests."""

REALTIME_POLL_INTERVAL_SECONDS: float = 5.0
"""
Polling period for REST subscriptions.
Matches the 5 s refresh the tracking screens fall back to.
"""

# =============================================================================
# RUNNER LOCATION TRACKING
# =============================================================================

MIN_UPDATE_INTERVAL_SECONDS: float = 5.0
"""
Minimum spacing between two recorded fixes for the same runner.
Fixes arriving faster are dropped (geolocation maximumAge of 5000 ms).
"""

POSITION_TIMEOUT_SECONDS: float = 10.0
"""How long a position source may take to produce a fix."""

STALE_LOCATION_SECONDS: float = 120.0
"""A runner position older than this is shown as stale."""

NEARBY_RADIUS_KM: float = 0.2
"""Distance under which a runner counts as 'nearby' the drop-off point."""

# =============================================================================
# DELIVERY ESTIMATE
# =============================================================================

BASE_DELIVERY_MINS: int = 15
"""Base delivery time for a regular order."""

EXPRESS_BASE_DELIVERY_MINS: int = 10
"""Base delivery time for an express order."""

MIN_DELIVERY_MINS: int = 10
"""Floor for regular estimates."""

MIN_EXPRESS_DELIVERY_MINS: int = 8
"""Floor for express estimates."""

EXPRESS_BONUS_MINS: int = -2
"""Adjustment applied to express orders."""

QUEUE_DELAY_PER_ORDER_MINS: int = 4
"""Delay added per order already queued on the runner (packed / out for delivery)."""

TRAFFIC_DELAY_MINS: Final[Dict[str, int]] = {
    "low": 0,
    "medium": 2,
    "high": 5,
}
"""Delay per traffic level."""

EVENING_RUSH_EXTRA_MINS: int = 3
"""Extra delay when traffic is high in the evening."""

DISTANCE_DELAY_MINS_PER_KM: float = 2.0
"""One minute per 500 m."""

DEFAULT_DISTANCE_KM: float = 0.5
"""Distance assumed when nothing better is known (campus scale)."""

RUNNER_SPEEDUP_FACTOR: float = 0.3
"""Share of a fast runner's advantage over base time that is credited."""

RUNNER_STATS_SAMPLE: int = 20
"""Number of recent deliveries used for runner statistics."""

RUNNER_STATS_OUTLIER_MINS: float = 60.0
"""Deliveries taking this long or longer are ignored in runner statistics."""

FALLBACK_ESTIMATE_MINS: int = 15
"""Estimate returned when the estimate RPC fails."""

HIGH_CONFIDENCE_MIN_DELIVERIES: int = 10
"""Runner delivery count above which the RPC estimate is high confidence."""

MEDIUM_CONFIDENCE_MIN_DELIVERIES: int = 3
"""Runner delivery count above which the RPC estimate is medium confidence."""

TIMEZONE: str = os.environ.get("SNACKZO_TIMEZONE", "Asia/Kolkata")
"""
IANA timezone of the campus. Time-of-day buckets and traffic levels use the
local hour here, not UTC.
"""

# =============================================================================
# ROAD DISTANCE (OSRM) CONFIGURATION
# =============================================================================

AVG_SPEED_KMH: float = 20.0
"""Average runner speed in km/h (bicycle / scooter on campus)."""

USE_ROAD_DISTANCE: bool = os.environ.get("SNACKZO_USE_ROAD_DISTANCE", "false").lower() == "true"
"""
Enable real road distance calculation via OSRM.
When False, uses Haversine (great-circle) distance.
"""

OSRM_SERVER_URL: str = os.environ.get("OSRM_SERVER_URL", "https://router.project-osrm.org")
"""
OSRM server URL. Options:
- "https://router.project-osrm.org" (public demo, rate-limited)
- "http://localhost:5000" (local Docker instance)
"""

OSRM_TIMEOUT_SECONDS: float = 5.0
"""Timeout for OSRM API requests."""

OSRM_CACHE_SIZE: int = 10000
"""Maximum number of route results to cache."""

HAVERSINE_FALLBACK_MULTIPLIER: float = 1.4
"""
Multiplier applied to Haversine distance when OSRM fails.
Typical roads are 1.3-1.5x longer than straight-line distance.
"""

# =============================================================================
# NOTIFICATION PROVIDERS
# =============================================================================

BRAND_NAME: str = "Snackzo"
"""Name used in message bodies and subjects."""

PROVIDER_TIMEOUT_SECONDS: float = 10.0
"""Timeout for provider REST calls."""

RESEND_API_URL: str = "https://api.resend.com/emails"
RESEND_API_KEY: str = os.environ.get("RESEND_API_KEY", "")
RESEND_FROM: str = os.environ.get("RESEND_FROM", "Snackzo <orders@snackzo.tech>")

FAST2SMS_API_URL: str = "https://www.fast2sms.com/dev/bulkV2"
FAST2SMS_API_KEY: str = os.environ.get("FAST2SMS_API_KEY", "")

TWILIO_API_BASE: str = "https://api.twilio.com/2010-04-01"
TWILIO_ACCOUNT_SID: str = os.environ.get("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN: str = os.environ.get("TWILIO_AUTH_TOKEN", "")
TWILIO_PHONE_NUMBER: str = os.environ.get("TWILIO_PHONE_NUMBER", "")

TWILIO_SANDBOX_WHATSAPP: str = "whatsapp:+14155238886"
"""Twilio WhatsApp sandbox sender, used when no sender is configured."""

TWILIO_WHATSAPP_NUMBER: str = os.environ.get("TWILIO_WHATSAPP_NUMBER", TWILIO_SANDBOX_WHATSAPP)

VAPID_PUBLIC_KEY: str = os.environ.get("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY: str = os.environ.get("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT: str = os.environ.get("VAPID_SUBJECT", "mailto:admin@example.com")

DEFAULT_COUNTRY_CODE: str = "+91"
"""Prefix added to phone numbers stored without one."""

MIN_PHONE_DIGITS: int = 10
"""Shorter SMS destinations are rejected."""

SIMULATE_SMS: bool = True
"""
Log SMS instead of sending when no SMS provider is configured.
Keeps local development quiet without credentials.
"""

NOTIFICATION_HISTORY_SIZE: int = 200
"""Number of dispatch attempts kept in memory for the dashboard."""

# =============================================================================
# GAMIFICATION
# =============================================================================

SPIN_COOLDOWN_HOURS: float = 24.0
"""Hours between two spins of the wheel."""

CHECKIN_BASE_POINTS: int = 10
"""Points for a daily check-in."""

STREAK_MILESTONE_DAYS: int = 7
"""Every N-th consecutive day earns the milestone bonus."""

STREAK_MILESTONE_BONUS: int = 50
"""Bonus points on a streak milestone."""

FLASH_DEAL_EXPIRING_SOON_SECONDS: int = 3600
"""Deals ending within this window are flagged as expiring soon."""

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL: str = os.environ.get("SNACKZO_LOG_LEVEL", "INFO")
"""Default log level for the CLI and the HTTP server."""
