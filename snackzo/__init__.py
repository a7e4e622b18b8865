# snackzo/__init__.py

from .models import (
    OrderStatus,
    NotificationChannel,
    Confidence,
    LocationFix,
    RunnerPosition,
    ETAFactors,
    ETAResult,
    DeliveryEstimate,
    NotificationPayload,
)
from .config import (
    MIN_UPDATE_INTERVAL_SECONDS,
    BASE_DELIVERY_MINS,
    EXPRESS_BASE_DELIVERY_MINS,
    AVG_SPEED_KMH,
)
from .backend import Backend, InMemoryBackend, RestBackend, BackendError
from .location import RunnerLocationTracker, RunnerLocationWatcher
from .eta import calculate_enhanced_eta, DeliveryEstimator, format_eta
from .notifications import NotificationDispatcher, OrderNotifier, OrderStatusListener
from .seed import load_demo_backend

__version__ = "1.0.0"
__author__ = "Snackzo Team"

__all__ = [
    # Models
    "OrderStatus",
    "NotificationChannel",
    "Confidence",
    "LocationFix",
    "RunnerPosition",
    "ETAFactors",
    "ETAResult",
    "DeliveryEstimate",
    "NotificationPayload",
    # Core
    "Backend",
    "InMemoryBackend",
    "RestBackend",
    "BackendError",
    "RunnerLocationTracker",
    "RunnerLocationWatcher",
    "DeliveryEstimator",
    "NotificationDispatcher",
    "OrderNotifier",
    "OrderStatusListener",
    # Functions
    "calculate_enhanced_eta",
    "format_eta",
    "load_demo_backend",
    # Config
    "MIN_UPDATE_INTERVAL_SECONDS",
    "BASE_DELIVERY_MINS",
    "EXPRESS_BASE_DELIVERY_MINS",
    "AVG_SPEED_KMH",
]
