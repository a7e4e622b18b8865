# snackzo/templates.py
"""
Message templates for e-mail, SMS and WhatsApp notifications.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from . import config, utils
from .models import OrderStatus

# =============================================================================
# STATUS MAPS
# =============================================================================

STATUS_EMAILS: Dict[str, Dict[str, str]] = {
    OrderStatus.PLACED.value: {
        "subject": "Order Confirmed! 🎉",
        "message": "Your order has been placed successfully and is being prepared.",
    },
    OrderStatus.PACKED.value: {
        "subject": "Order Packed! 📦",
        "message": "Great news! Your order has been packed and is ready for delivery.",
    },
    OrderStatus.OUT_FOR_DELIVERY.value: {
        "subject": "Order on the Way! 🚴",
        "message": "Your order is out for delivery. Our runner is on the way!",
    },
    OrderStatus.DELIVERED.value: {
        "subject": "Order Delivered! ✅",
        "message": "Your order has been delivered. Enjoy your snacks!",
    },
    OrderStatus.CANCELLED.value: {
        "subject": "Order Cancelled",
        "message": "Your order has been cancelled. If you have questions, please contact us.",
    },
}

WHATSAPP_STATUS_EMOJIS: Dict[str, str] = {
    OrderStatus.PLACED.value: "📦",
    OrderStatus.PACKED.value: "📦✅",
    OrderStatus.OUT_FOR_DELIVERY.value: "🚀",
    OrderStatus.DELIVERED.value: "✅🎉",
    OrderStatus.CANCELLED.value: "❌",
}

WHATSAPP_STATUS_MESSAGES: Dict[str, str] = {
    OrderStatus.PLACED.value: "Your order has been placed!",
    OrderStatus.PACKED.value: "Your order is packed and ready!",
    OrderStatus.OUT_FOR_DELIVERY.value: "Your order is out for delivery!",
    OrderStatus.DELIVERED.value: "Your order has been delivered!",
    OrderStatus.CANCELLED.value: "Your order has been cancelled.",
}


def status_email(status: str) -> Optional[Dict[str, str]]:
    """Subject and message for a status, None for statuses we don't announce."""
    return STATUS_EMAILS.get(status)


def _payment_label(payment_method: Optional[str], decorated: bool = False) -> str:
    if payment_method == "cod":
        return "Cash on Delivery 💵" if decorated else "Cash on Delivery"
    return "Prepaid ✅" if decorated else "Prepaid"


# =============================================================================
# E-MAIL
# =============================================================================

def status_email_subject(status: str) -> str:
    return f"{config.BRAND_NAME} - {STATUS_EMAILS[status]['subject']}"


def status_email_html(order_id: str, status: str) -> str:
    info = STATUS_EMAILS[status]
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: #0a0a0a; color: #ffffff; padding: 40px 20px; margin: 0;">
  <div style="max-width: 480px; margin: 0 auto; background: #1a1a2e; border-radius: 16px; padding: 32px; border: 1px solid #2d2d4a;">
    <div style="text-align: center; margin-bottom: 24px;">
      <h1 style="font-size: 24px; margin: 0;">🛒 {config.BRAND_NAME}</h1>
    </div>
    <div style="text-align: center; padding: 24px; background: rgba(168, 85, 247, 0.1); border-radius: 12px; margin-bottom: 24px;">
      <h2 style="margin: 0 0 8px 0; font-size: 20px;">{info['subject']}</h2>
      <p style="margin: 0; color: #a1a1aa; font-size: 14px;">{info['message']}</p>
    </div>
    <div style="padding: 16px; background: rgba(255, 255, 255, 0.05); border-radius: 8px; margin-bottom: 24px;">
      <p style="margin: 0 0 8px 0; font-size: 12px; color: #71717a; text-transform: uppercase;">Order ID</p>
      <p style="margin: 0; font-size: 16px; font-weight: bold;">#{utils.short_order_id(order_id)}</p>
    </div>
    <div style="text-align: center; padding-top: 16px; border-top: 1px solid #2d2d4a;">
      <p style="margin: 0; font-size: 12px; color: #71717a;">Late night cravings? We've got you covered! 🌙</p>
    </div>
  </div>
</body>
</html>"""


def order_confirmed_email(order: Mapping[str, Any]) -> Dict[str, str]:
    short_id = str(order["id"])[:6]
    return {
        "subject": f"Order Confirmed #{short_id}",
        "html": (
            "<h1>Order Confirmed!</h1><p>Your food is being prepared.</p>"
            f"<p>Total: ₹{order.get('total')}</p>"
        ),
    }


# =============================================================================
# SMS
# =============================================================================

def order_placed_sms(order_id: str, amount: float) -> str:
    return (
        f"{config.BRAND_NAME}: Order #{str(order_id)[:6]} confirmed for Rs.{amount}. "
        "We are packing it now! 🍔"
    )


def out_for_delivery_sms(runner_name: str) -> str:
    return f"{config.BRAND_NAME}: Your order is Out for Delivery! {runner_name} is on the way. 🛵"


def order_arrived_sms() -> str:
    return f"{config.BRAND_NAME}: Your food has arrived! Please collect it from the runner. 📍"


def runner_assignment_sms(order: Mapping[str, Any]) -> str:
    return (
        "🛒 New Order Assigned!\n\n"
        f"Order #{utils.short_order_id(order['id'])}\n"
        f"Address: {order.get('delivery_address')}\n"
        f"Total: ₹{order.get('total')}\n"
        f"Payment: {_payment_label(order.get('payment_method'))}\n\n"
        "Login to your Runner Dashboard to view details."
    )


# =============================================================================
# WHATSAPP
# =============================================================================

def order_confirmed_whatsapp(order: Mapping[str, Any]) -> str:
    return (
        f"*{config.BRAND_NAME} Order Confirmed*\n"
        f"Order #{utils.short_order_id(order['id'], 6)} is confirmed! We are preparing your food. 🍔"
    )


def runner_assignment_whatsapp(order: Mapping[str, Any]) -> str:
    return (
        "🛒 *New Order Assigned!*\n\n"
        f"*Order:* #{utils.short_order_id(order['id'])}\n"
        f"*Address:* {order.get('delivery_address')}\n"
        f"*Total:* ₹{order.get('total')}\n"
        f"*Payment:* {_payment_label(order.get('payment_method'), decorated=True)}\n\n"
        "Login to your Runner Dashboard to view details."
    )


def order_status_whatsapp(order_id: str, status: str) -> str:
    return (
        f"{WHATSAPP_STATUS_EMOJIS.get(status, '📋')} *Order Update*\n\n"
        f"*Order:* #{utils.short_order_id(order_id)}\n"
        f"*Status:* {WHATSAPP_STATUS_MESSAGES.get(status, status)}\n\n"
        f"Thank you for ordering with {config.BRAND_NAME}! 🛍️"
    )


# =============================================================================
# PUSH
# =============================================================================

def status_push(order_id: str, status: str) -> Dict[str, str]:
    """Title and body for a status push notification."""
    info = STATUS_EMAILS.get(status)
    if info is None:
        return {
            "title": "Order Update",
            "body": f"Order #{utils.short_order_id(order_id)} is now {status}",
        }
    return {
        "title": info["subject"],
        "body": f"#{utils.short_order_id(order_id)}: {info['message']}",
    }
