# snackzo/api.py
"""
HTTP surface for the delivery backend.

Serves the notification endpoints the storefront calls (the generic
`/api/notify` relay plus the order-flow functions), runner location
ingestion, and delivery estimates. Request bodies use camelCase keys.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from . import utils
from .backend import Backend, BackendError, NotFoundError, eq
from .eta import DeliveryEstimator, calculate_enhanced_eta, format_eta
from .location import ManualPositionSource, RunnerLocationTracker, RunnerLocationWatcher
from .models import ETAFactors, LocationFix, NotificationPayload
from .notifications import (
    NotificationDispatcher,
    NotificationError,
    OrderNotifier,
    save_push_subscription,
)
from .providers import ProviderError

logger = logging.getLogger(__name__)


def _truthy(value: Optional[str]) -> bool:
    return str(value).lower() in ("1", "true", "yes")


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


class TrackerRegistry:
    """One tracker (fed by a manual source) per runner reporting over HTTP."""

    def __init__(self, backend: Backend) -> None:
        self.backend = backend
        self._trackers: Dict[str, RunnerLocationTracker] = {}
        self._sources: Dict[str, ManualPositionSource] = {}
        self._lock = threading.Lock()

    def get(self, runner_id: str) -> RunnerLocationTracker:
        with self._lock:
            if runner_id not in self._trackers:
                source = ManualPositionSource()
                self._sources[runner_id] = source
                self._trackers[runner_id] = RunnerLocationTracker(self.backend, runner_id, source)
            return self._trackers[runner_id]

    def push(self, runner_id: str, fix: LocationFix, order_id: Optional[str]) -> bool:
        """Feed a fix through the runner's source. True if it was recorded."""
        tracker = self.get(runner_id)
        with tracker.lock:
            tracker.sync(is_delivering=True, current_order_id=order_id)
            before = tracker.updates_recorded
            self._sources[runner_id].push(fix)
            return tracker.updates_recorded > before

    def stop(self, runner_id: str) -> None:
        tracker = self.get(runner_id)
        with tracker.lock:
            tracker.stop_tracking()


def create_app(
    backend: Backend,
    dispatcher: Optional[NotificationDispatcher] = None,
    notifier: Optional[OrderNotifier] = None,
) -> Flask:
    """Build the Flask app around a backend and notification stack."""
    app = Flask(__name__)
    CORS(app)

    dispatcher = dispatcher or (notifier.dispatcher if notifier else NotificationDispatcher())
    notifier = notifier or OrderNotifier(backend, dispatcher)
    estimator = DeliveryEstimator(backend)
    trackers = TrackerRegistry(backend)

    app.extensions["snackzo"] = {
        "backend": backend,
        "dispatcher": dispatcher,
        "notifier": notifier,
        "trackers": trackers,
    }

    # --- errors --------------------------------------------------------------

    @app.errorhandler(ValueError)
    def bad_request(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(NotFoundError)
    def not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(ProviderError)
    @app.errorhandler(NotificationError)
    @app.errorhandler(BackendError)
    def server_error(e):
        logger.error(f"{request.path} failed: {e}")
        return jsonify({"error": str(e)}), 500

    # --- notifications -------------------------------------------------------

    @app.route("/api/notify", methods=["POST"])
    def notify():
        data = _body()
        payload = NotificationPayload(
            to=data.get("to") or "",
            subject=data.get("subject"),
            message=data.get("message"),
            html=data.get("html"),
        )
        if not payload.to:
            raise ValueError("'to' is required")
        result = dispatcher.dispatch(data.get("channel"), payload)
        return jsonify(result.to_dict())

    @app.route("/functions/notify-order-status", methods=["POST"])
    def notify_order_status():
        data = _body()
        return jsonify(notifier.notify_order_status(
            data.get("orderId"), data.get("newStatus"), data.get("userEmail"),
        ))

    @app.route("/functions/notify-runner-sms", methods=["POST"])
    def notify_runner_sms():
        data = _body()
        return jsonify(notifier.notify_runner_sms(data.get("orderId"), data.get("runnerId")))

    @app.route("/functions/notify-whatsapp", methods=["POST"])
    def notify_whatsapp():
        data = _body()
        return jsonify(notifier.notify_whatsapp(
            data.get("type"),
            data.get("orderId"),
            runner_id=data.get("runnerId"),
            user_id=data.get("userId"),
            new_status=data.get("newStatus"),
        ))

    @app.route("/functions/send-push-notification", methods=["POST"])
    def send_push_notification():
        data = _body()
        return jsonify(notifier.send_push(
            data.get("userId"),
            data.get("title") or "",
            data.get("body") or "",
            url=data.get("url"),
            order_id=data.get("orderId"),
        ))

    @app.route("/api/push-subscriptions", methods=["POST"])
    def push_subscriptions():
        data = _body()
        row = save_push_subscription(backend, data.get("userId"), data.get("subscription") or data)
        return jsonify({"success": True, "id": row.get("id")}), 201

    # --- runner location -------------------------------------------------------

    @app.route("/api/runners/<runner_id>/location", methods=["POST"])
    def post_location(runner_id: str):
        data = _body()
        if data.get("lat") is None or data.get("lng") is None:
            raise ValueError("lat and lng are required")
        timestamp = data.get("timestamp")
        fix = LocationFix(
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            timestamp=utils.parse_timestamp(timestamp) if timestamp else utils.utcnow(),
            accuracy_m=float(data["accuracy"]) if data.get("accuracy") is not None else None,
        )
        recorded = trackers.push(runner_id, fix, data.get("orderId"))
        return jsonify({"recorded": recorded})

    @app.route("/api/runners/<runner_id>/location", methods=["DELETE"])
    def delete_location(runner_id: str):
        trackers.stop(runner_id)
        return jsonify({"tracking": False})

    @app.route("/api/runners/<runner_id>/location", methods=["GET"])
    def get_location(runner_id: str):
        if backend.select_one("runners", [eq("id", runner_id)]) is None:
            raise NotFoundError("Runner not found")
        watcher = RunnerLocationWatcher(backend, runner_id)
        position = watcher.fetch()
        if position is None:
            return jsonify({"runnerId": runner_id, "position": None, "stale": True})
        return jsonify({
            "runnerId": runner_id,
            "position": {"lat": position.lat, "lng": position.lng},
            "lastUpdate": utils.to_iso(position.last_update) if position.last_update else None,
            "isOnline": position.is_online,
            "secondsSinceUpdate": watcher.seconds_since_update(),
            "stale": watcher.is_stale(),
        })

    # --- estimates -------------------------------------------------------------

    @app.route("/api/orders/<order_id>/eta", methods=["GET"])
    def order_eta(order_id: str):
        order = backend.select_one("orders", [eq("id", order_id)])
        if order is None:
            raise NotFoundError("Order not found")

        runner_id = request.args.get("runnerId") or order.get("runner_id")
        express = request.args.get("express")
        factors = ETAFactors(
            runner_id=runner_id,
            order_id=order_id,
            is_express=_truthy(express) if express is not None else bool(order.get("is_express")),
        )

        if runner_id and order.get("delivery_lat") is not None and order.get("delivery_lng") is not None:
            runner = backend.select_one("runners", [eq("id", runner_id)])
            if runner and runner.get("current_lat") is not None and runner.get("current_lng") is not None:
                factors.runner_location = (float(runner["current_lat"]), float(runner["current_lng"]))
                factors.destination = (float(order["delivery_lat"]), float(order["delivery_lng"]))

        result = calculate_enhanced_eta(factors, backend)
        data = result.to_dict()
        data["display"] = format_eta(result.estimated_minutes)
        return jsonify(data)

    @app.route("/api/delivery-estimate", methods=["GET"])
    def delivery_estimate():
        estimate = estimator.estimate(request.args.get("runnerId"))
        low, high = estimator.estimate_range(estimate)
        return jsonify({
            "minutes": estimate.minutes,
            "confidence": estimate.confidence.value,
            "label": estimator.confidence_label(estimate.confidence),
            "range": [low, high],
            "timeOfDay": estimate.time_of_day,
            "fallback": estimate.from_fallback,
        })

    return app
