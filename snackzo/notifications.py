# snackzo/notifications.py
"""
Multi-channel notification dispatch.

The dispatcher routes a payload to one channel:

    email    -> Resend
    whatsapp -> Twilio WhatsApp
    sms      -> Fast2SMS, else Twilio SMS, else the log simulator
    push     -> Web Push (payload.data["subscription"])

OrderNotifier builds on it with the order flows (status e-mails, runner
assignment SMS/WhatsApp, customer push), and OrderStatusListener runs those
flows whenever an order's status changes in the backend.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Mapping, Optional, Union

from . import config, templates, utils
from .backend import EVENT_UPDATE, Backend, BackendError, ChangeEvent, NotFoundError, Subscription, eq
from .models import NotificationChannel, NotificationPayload, NotificationPreference, WhatsAppNotificationType
from .providers import (
    Fast2SMSProvider,
    ProviderConfigError,
    ProviderError,
    ProviderResult,
    ResendEmailProvider,
    TwilioProvider,
    WebPushProvider,
)

logger = logging.getLogger(__name__)

EXPIRED_PUSH_STATUSES = (404, 410)


class NotificationError(Exception):
    """A notification flow failed in a way the caller must see."""


@dataclass
class NotificationRecord:
    """One dispatch attempt, kept for the dashboard."""
    channel: str
    to: str
    provider: str
    success: bool
    error: Optional[str] = None
    sent_at: datetime = field(default_factory=utils.utcnow)


def _digits(phone: str) -> str:
    return "".join(ch for ch in str(phone) if ch.isdigit())


# =============================================================================
# DISPATCHER
# =============================================================================

class NotificationDispatcher:
    """
    Routes payloads to providers and keeps a bounded history.

    Usage:
        dispatcher = NotificationDispatcher()
        dispatcher.send("sms", NotificationPayload(to="9876543210", message="Hi"))
    """

    def __init__(
        self,
        email: Optional[ResendEmailProvider] = None,
        sms: Optional[Fast2SMSProvider] = None,
        twilio: Optional[TwilioProvider] = None,
        push: Optional[WebPushProvider] = None,
        simulate_sms: Optional[bool] = None,
        history_size: Optional[int] = None,
    ) -> None:
        self.email = email or ResendEmailProvider()
        self.sms = sms or Fast2SMSProvider()
        self.twilio = twilio or TwilioProvider()
        self.push = push or WebPushProvider()
        self.simulate_sms = config.SIMULATE_SMS if simulate_sms is None else simulate_sms
        self.history: Deque[NotificationRecord] = deque(
            maxlen=history_size or config.NOTIFICATION_HISTORY_SIZE
        )

    def dispatch(
        self,
        channel: Union[str, NotificationChannel],
        payload: NotificationPayload,
    ) -> ProviderResult:
        """
        Send one payload on one channel.

        Raises:
            ValueError: Unknown channel or invalid recipient
            ProviderConfigError: The channel's provider has no credentials
        """
        channel = NotificationChannel(channel)
        logger.info(f"Sending {channel.value} to {payload.to}")

        if channel == NotificationChannel.EMAIL:
            result = self.email.send(payload.to, payload.subject, payload.html)
        elif channel == NotificationChannel.WHATSAPP:
            result = self.twilio.send_whatsapp(payload.to, payload.message or "")
        elif channel == NotificationChannel.SMS:
            result = self._dispatch_sms(payload)
        else:
            result = self._dispatch_push(payload)

        self.record(channel.value, payload.to, result.provider, result.success, result.error)
        return result

    def _dispatch_sms(self, payload: NotificationPayload) -> ProviderResult:
        if not payload.to or len(_digits(payload.to)) < config.MIN_PHONE_DIGITS:
            raise ValueError(f"Invalid phone number: {payload.to!r}")
        message = payload.message or ""

        if self.sms.configured:
            return self.sms.send(payload.to, message)
        if self.twilio.sms_configured:
            return self.twilio.send_sms(utils.format_phone(payload.to), message)
        if self.simulate_sms:
            logger.info(f"[SMS SIMULATION] To: {payload.to} | Msg: {message}")
            return ProviderResult(True, "Simulator", {"simulated": True})
        raise ProviderConfigError("No SMS provider is configured")

    def _dispatch_push(self, payload: NotificationPayload) -> ProviderResult:
        subscription = payload.data.get("subscription")
        if not subscription:
            raise ValueError("Push payload needs a subscription")
        body = {
            "title": payload.subject,
            "body": payload.message,
            "url": payload.data.get("url"),
            "orderId": payload.data.get("order_id"),
        }
        return self.push.send(subscription, body)

    def send(self, channel: Union[str, NotificationChannel], payload: NotificationPayload) -> bool:
        """Like `dispatch`, but failures are logged and reported as False."""
        try:
            result = self.dispatch(channel, payload)
        except (ValueError, ProviderError) as e:
            logger.error(f"{channel} notification to {payload.to} failed: {e}")
            name = channel.value if isinstance(channel, NotificationChannel) else str(channel)
            self.record(name, payload.to, "none", False, str(e))
            return False

        if not result.success:
            logger.error(f"{result.provider} failed for {payload.to}: {result.error}")
        return result.success

    def record(self, channel: str, to: str, provider: str, success: bool, error: Optional[str]) -> None:
        self.history.append(NotificationRecord(channel, to, provider, success, error))


# =============================================================================
# ORDER FLOWS
# =============================================================================

class OrderNotifier:
    """Order-level notification flows on top of the dispatcher."""

    def __init__(self, backend: Backend, dispatcher: Optional[NotificationDispatcher] = None) -> None:
        self.backend = backend
        self.dispatcher = dispatcher or NotificationDispatcher()

    def _get_order(self, order_id: str) -> Dict[str, Any]:
        try:
            order = self.backend.select_one("orders", [eq("id", order_id)])
        except BackendError as e:
            logger.error(f"Failed to fetch order {order_id}: {e}")
            order = None
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def _get_profile(self, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not user_id:
            return None
        return self.backend.select_one("profiles", [eq("user_id", user_id)])

    # --- customer convenience flows ---------------------------------------

    def notify_order_confirmed(self, email: Optional[str], phone: Optional[str], order: Mapping[str, Any]) -> Dict[str, bool]:
        """E-mail then WhatsApp confirmation; each only when we have the address."""
        sent: Dict[str, bool] = {}
        if email:
            content = templates.order_confirmed_email(order)
            sent["email"] = self.dispatcher.send(
                NotificationChannel.EMAIL,
                NotificationPayload(to=email, subject=content["subject"], html=content["html"]),
            )
        if phone:
            sent["whatsapp"] = self.dispatcher.send(
                NotificationChannel.WHATSAPP,
                NotificationPayload(to=phone, message=templates.order_confirmed_whatsapp(order)),
            )
        return sent

    def notify_order_placed(self, phone: str, order_id: str, amount: float) -> bool:
        return self.dispatcher.send(
            NotificationChannel.SMS,
            NotificationPayload(to=phone, message=templates.order_placed_sms(order_id, amount)),
        )

    def notify_out_for_delivery(self, phone: str, runner_name: str) -> bool:
        return self.dispatcher.send(
            NotificationChannel.SMS,
            NotificationPayload(to=phone, message=templates.out_for_delivery_sms(runner_name)),
        )

    def notify_order_arrived(self, phone: str) -> bool:
        return self.dispatcher.send(
            NotificationChannel.SMS,
            NotificationPayload(to=phone, message=templates.order_arrived_sms()),
        )

    # --- server-side flows ---------------------------------------------------

    def notify_order_status(self, order_id: str, new_status: str, user_email: Optional[str] = None) -> Dict[str, Any]:
        """
        E-mail the customer about a status change.

        Raises:
            ValueError: Missing order id or status
            NotFoundError: The order does not exist (only checked when the
                e-mail has to be looked up)
        """
        logger.info(f"Processing notification for order {order_id}, status: {new_status}")
        if not order_id or not new_status:
            raise ValueError("orderId and newStatus are required")

        if templates.status_email(new_status) is None:
            logger.info(f"Unknown status: {new_status}, skipping notification")
            return {"success": True, "skipped": True}

        email = user_email
        if not email:
            order = self._get_order(order_id)
            profile = self._get_profile(order.get("user_id"))
            email = (profile or {}).get("email")
            if not email:
                logger.info("Could not get user email, skipping notification")
                return {"success": True, "skipped": True, "reason": "no email"}

        logger.info(f"Sending email to {email}")
        result = self.dispatcher.dispatch(
            NotificationChannel.EMAIL,
            NotificationPayload(
                to=email,
                subject=templates.status_email_subject(new_status),
                html=templates.status_email_html(order_id, new_status),
            ),
        )
        return {"success": result.success, "emailResult": result.to_dict()}

    def notify_runner_sms(self, order_id: str, runner_id: str) -> Dict[str, Any]:
        """SMS a runner about a newly assigned order via Twilio."""
        logger.info(f"Processing SMS notification for runner {runner_id}, order {order_id}")
        if not order_id or not runner_id:
            raise ValueError("orderId and runnerId are required")

        twilio = self.dispatcher.twilio
        if not twilio.sms_configured:
            logger.error("Twilio credentials not configured")
            return {"success": False, "error": "SMS not configured"}

        runner = self.backend.select_one("runners", [eq("id", runner_id)])
        if runner is None:
            raise NotFoundError("Runner not found")
        order = self._get_order(order_id)

        to_phone = utils.format_phone(runner.get("phone") or "")
        logger.info(f"Sending SMS to {to_phone}")
        result = twilio.send_sms(to_phone, templates.runner_assignment_sms(order))
        self.dispatcher.record(NotificationChannel.SMS.value, to_phone, result.provider, result.success, result.error)
        if not result.success:
            raise NotificationError(result.error or "Failed to send SMS")
        return {"success": True, "messageSid": result.message_id}

    def notify_whatsapp(
        self,
        type: str,
        order_id: str,
        runner_id: Optional[str] = None,
        user_id: Optional[str] = None,
        new_status: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        WhatsApp a runner (assignment) or a customer (status update),
        respecting their notification preference.
        """
        logger.info(f"Processing WhatsApp notification: type={type}, orderId={order_id}")
        if not order_id:
            raise ValueError("orderId is required")

        twilio = self.dispatcher.twilio
        if not twilio.configured:
            logger.error("Twilio credentials not configured")
            return {"success": False, "error": "WhatsApp not configured"}

        order = self._get_order(order_id)

        if type == WhatsAppNotificationType.RUNNER_ASSIGNMENT.value and runner_id:
            runner = self.backend.select_one("runners", [eq("id", runner_id)])
            if runner is None:
                raise NotFoundError("Runner not found")
            if not NotificationPreference.wants_whatsapp(runner.get("notification_preference")):
                logger.info("Runner doesn't prefer WhatsApp, skipping")
                return {"success": True, "skipped": True, "reason": "Runner prefers SMS"}
            to_phone = runner.get("phone") or ""
            message = templates.runner_assignment_whatsapp(order)

        elif type == WhatsAppNotificationType.ORDER_STATUS.value and user_id:
            profile = self._get_profile(user_id)
            if not profile or not profile.get("phone"):
                logger.error(f"No profile phone for user {user_id}")
                return {"success": False, "error": "Customer phone not found"}
            if not NotificationPreference.wants_whatsapp(profile.get("notification_preference")):
                logger.info("Customer doesn't prefer WhatsApp, skipping")
                return {"success": True, "skipped": True, "reason": "Customer prefers push"}
            to_phone = profile["phone"]
            message = templates.order_status_whatsapp(order_id, new_status or order.get("status", ""))

        else:
            raise ValueError("Invalid request type or missing parameters")

        whatsapp_to = f"whatsapp:{utils.format_phone(to_phone)}"
        logger.info(f"Sending WhatsApp to {whatsapp_to}")
        result = self.dispatcher.dispatch(
            NotificationChannel.WHATSAPP, NotificationPayload(to=whatsapp_to, message=message)
        )
        if not result.success:
            raise NotificationError(result.error or "Failed to send WhatsApp message")
        return {"success": True, "messageSid": result.message_id}

    def send_push(
        self,
        user_id: str,
        title: str,
        body: str,
        url: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Push to every subscription the user has registered. Subscriptions the
        push service reports as gone (404/410) are deleted.
        """
        if not user_id:
            raise ValueError("userId is required")
        logger.info(f"Processing push for user {user_id}")

        subscriptions = self.backend.select("push_subscriptions", [eq("user_id", user_id)])
        if not subscriptions:
            logger.info("No subscriptions found.")
            return {"success": True, "message": "No subscriptions"}

        results: List[Dict[str, Any]] = []
        for sub in subscriptions:
            payload = NotificationPayload(
                to=sub["endpoint"],
                subject=title,
                message=body,
                data={"subscription": sub, "url": url, "order_id": order_id},
            )
            result = self.dispatcher.dispatch(NotificationChannel.PUSH, payload)
            if result.success:
                results.append({"endpoint": sub["endpoint"], "status": "sent"})
            elif result.status_code in EXPIRED_PUSH_STATUSES:
                logger.info(f"Removing expired subscription: {sub.get('id')}")
                self.backend.delete("push_subscriptions", [eq("id", sub["id"])])
                results.append({"endpoint": sub["endpoint"], "status": "expired_removed"})
            else:
                results.append({"endpoint": sub["endpoint"], "status": "failed", "error": result.error})

        return {"success": True, "results": results}

    def handle_status_change(self, order_id: str, new_status: str) -> Dict[str, Dict[str, Any]]:
        """
        Fan a status change out to e-mail, WhatsApp and push.

        A failing channel is logged and reported in the summary; it never
        stops the remaining channels.
        """
        order = self._get_order(order_id)
        user_id = order.get("user_id")
        push_content = templates.status_push(order_id, new_status)

        channels = {
            "email": lambda: self.notify_order_status(order_id, new_status),
            "whatsapp": lambda: self.notify_whatsapp(
                WhatsAppNotificationType.ORDER_STATUS.value, order_id,
                user_id=user_id, new_status=new_status,
            ),
            "push": lambda: self.send_push(
                user_id, push_content["title"], push_content["body"],
                url=f"/orders/{order_id}", order_id=order_id,
            ),
        }

        summary: Dict[str, Dict[str, Any]] = {}
        for name, run in channels.items():
            try:
                summary[name] = run()
            except (ValueError, NotFoundError, ProviderError, NotificationError, BackendError) as e:
                logger.error(f"{name} notification for order {order_id} failed: {e}")
                summary[name] = {"success": False, "error": str(e)}
        return summary


# =============================================================================
# REALTIME TRIGGER
# =============================================================================

class OrderStatusListener:
    """Runs `handle_status_change` for every order status transition."""

    def __init__(self, backend: Backend, notifier: OrderNotifier) -> None:
        self.backend = backend
        self.notifier = notifier
        self.handled: List[Dict[str, Dict[str, Any]]] = []
        self._subscription: Optional[Subscription] = None

    @property
    def running(self) -> bool:
        return self._subscription is not None

    def start(self) -> None:
        if self._subscription is None:
            self._subscription = self.backend.subscribe("orders", self._on_change, event=EVENT_UPDATE)
            logger.info("Listening for order status changes")

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_change(self, change: ChangeEvent) -> None:
        new = change.new or {}
        status = new.get("status")
        if not status or not new.get("id"):
            return
        if change.old is not None and change.old.get("status") == status:
            return
        logger.info(f"Order {new['id']} moved to {status}")
        self.handled.append(self.notifier.handle_status_change(new["id"], status))


# =============================================================================
# PUSH SUBSCRIPTIONS
# =============================================================================

def save_push_subscription(backend: Backend, user_id: str, subscription: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Register a browser push subscription for a user.

    Accepts the browser's `PushSubscription.toJSON()` shape
    ({endpoint, keys: {p256dh, auth}}) or a flat row.
    """
    keys = subscription.get("keys") or {}
    row = {
        "user_id": user_id,
        "endpoint": subscription.get("endpoint"),
        "p256dh": keys.get("p256dh") or subscription.get("p256dh"),
        "auth": keys.get("auth") or subscription.get("auth"),
    }
    if not user_id or not all(row.values()):
        raise ValueError("Subscription needs user, endpoint, p256dh and auth")
    return backend.upsert("push_subscriptions", row, on_conflict="endpoint")


def remove_push_subscription(backend: Backend, endpoint: str) -> int:
    return backend.delete("push_subscriptions", [eq("endpoint", endpoint)])
