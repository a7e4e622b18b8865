# snackzo/seed.py
"""
Demo data loader.

Builds an InMemoryBackend from the CSV files in `data/` so the CLI, the API
and the dashboard can run without a hosted database. Also registers a local
`calculate_delivery_estimate` function standing in for the database RPC.
"""

from __future__ import annotations

import csv
import logging
import os
from typing import Any, Callable, Dict, List, Optional

from . import config
from .backend import InMemoryBackend, eq

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data")


def _to_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "t")


def _to_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(";") if part.strip()]


# Column coercions per table; anything not listed stays a string.
COLUMN_TYPES: Dict[str, Dict[str, Callable[[str], Any]]] = {
    "runners": {
        "is_online": _to_bool,
        "current_lat": float,
        "current_lng": float,
    },
    "profiles": {
        "loyalty_points": int,
        "current_streak": int,
        "longest_streak": int,
    },
    "orders": {
        "total": float,
        "is_express": _to_bool,
        "delivery_lat": float,
        "delivery_lng": float,
    },
    "delivery_metrics": {
        "delivery_time_minutes": float,
    },
    "delivery_estimates": {
        "distance_km": float,
    },
    "order_location_history": {
        "lat": float,
        "lng": float,
        "accuracy_m": float,
    },
    "flash_deals": {
        "discount_value": float,
        "min_order_value": float,
        "max_discount": float,
        "usage_limit": int,
        "used_count": int,
        "is_active": _to_bool,
        "product_ids": _to_list,
    },
    "spin_wheel_segments": {
        "value": float,
        "probability": float,
        "position": int,
        "is_active": _to_bool,
    },
}

SEED_TABLES = list(COLUMN_TYPES)

TIME_OF_DAY_ADJUSTMENT_MINS: Dict[str, int] = {
    "morning": 0,
    "afternoon": 1,
    "evening": 3,
    "night": -1,
}
"""Local stand-in for the database function's time-of-day adjustment."""


def read_table(path: str, table: str) -> List[Dict[str, Any]]:
    """
    Read one CSV file into typed rows. Empty cells become None.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If a row cannot be converted
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Data file not found: {path}")

    types = COLUMN_TYPES.get(table, {})
    rows: List[Dict[str, Any]] = []
    with open(path, 'r', newline='', encoding='utf-8') as f:
        reader = csv.DictReader(f)
        for line_no, raw in enumerate(reader, start=2):
            row: Dict[str, Any] = {}
            try:
                for column, value in raw.items():
                    if value is None or value == "":
                        row[column] = None
                    elif column in types:
                        row[column] = types[column](value)
                    else:
                        row[column] = value
            except ValueError as e:
                raise ValueError(f"Invalid {table} data in {path} line {line_no}: {e}")
            rows.append(row)
    return rows


def make_delivery_estimate_rpc(backend: InMemoryBackend) -> Callable[..., int]:
    """
    Local `calculate_delivery_estimate(p_runner_id, p_time_of_day)`.

    Uses the runner's average recorded delivery time when there is one,
    otherwise the base estimate, plus a time-of-day adjustment.
    """
    def calculate_delivery_estimate(p_runner_id: Optional[str] = None, p_time_of_day: Optional[str] = None) -> int:
        base = float(config.BASE_DELIVERY_MINS)
        if p_runner_id:
            metrics = backend.select("delivery_metrics", [eq("runner_id", p_runner_id)])
            durations = [m["delivery_time_minutes"] for m in metrics if m.get("delivery_time_minutes")]
            if durations:
                base = sum(durations) / len(durations)
        return max(1, round(base + TIME_OF_DAY_ADJUSTMENT_MINS.get(p_time_of_day or "", 0)))

    return calculate_delivery_estimate


def load_demo_backend(data_dir: Optional[str] = None) -> InMemoryBackend:
    """
    Build the demo backend from `<data_dir>/<table>.csv`. Missing files are
    skipped.
    """
    data_dir = data_dir or DEFAULT_DATA_DIR
    backend = InMemoryBackend()

    for table in SEED_TABLES:
        path = os.path.join(data_dir, f"{table}.csv")
        if not os.path.exists(path):
            logger.debug(f"No seed file for {table}")
            continue
        rows = read_table(path, table)
        backend.load(table, rows)
        logger.info(f"Loaded {len(rows)} {table} rows from {path}")

    backend.register_rpc("calculate_delivery_estimate", make_delivery_estimate_rpc(backend))
    return backend
