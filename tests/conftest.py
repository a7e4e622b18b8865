"""Shared fixtures: the demo backend, a fixed clock and offline providers."""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from snackzo import config
from snackzo.notifications import NotificationDispatcher
from snackzo.providers import (
    Fast2SMSProvider,
    ProviderResult,
    ResendEmailProvider,
    TwilioProvider,
    WebPushProvider,
)
from snackzo.seed import load_demo_backend

ORDER_OUT = "3f2a9c1e-0b7d-4c1e-9a51-1d2f3e4a5b61"
ORDER_PACKED = "7b1d2e3f-4a5b-4c6d-8e9f-0a1b2c3d4e52"
ORDER_PLACED = "9c8b7a6d-5e4f-4a3b-2c1d-0e9f8a7b6c43"


@pytest.fixture(autouse=True)
def straight_line_distances(monkeypatch):
    """Never hit OSRM from tests."""
    monkeypatch.setattr(config, "USE_ROAD_DISTANCE", False)


@pytest.fixture
def backend():
    """Fresh demo backend loaded from data/."""
    return load_demo_backend()


@pytest.fixture
def evening():
    """2025-03-14 19:05 campus time (13:35 UTC): evening, high traffic."""
    return datetime(2025, 3, 14, 13, 35, tzinfo=timezone.utc)


@pytest.fixture
def offline_dispatcher():
    """Dispatcher whose providers have no credentials; SMS goes to the simulator."""
    return NotificationDispatcher(
        email=ResendEmailProvider(api_key="", session=MagicMock()),
        sms=Fast2SMSProvider(api_key="", session=MagicMock()),
        twilio=TwilioProvider(account_sid="", auth_token="", phone_number="", session=MagicMock()),
        push=WebPushProvider(private_key=""),
        simulate_sms=True,
    )


@pytest.fixture
def mocked_dispatcher():
    """Dispatcher with every provider replaced by a mock that succeeds."""
    email = MagicMock()
    email.send.return_value = ProviderResult(True, "Resend", {"id": "em_1"}, message_id="em_1")

    sms = MagicMock()
    sms.configured = False

    twilio = MagicMock()
    twilio.configured = True
    twilio.sms_configured = True
    twilio.send_sms.return_value = ProviderResult(True, "Twilio", {"sid": "SM1"}, message_id="SM1")
    twilio.send_whatsapp.return_value = ProviderResult(True, "Twilio", {"sid": "WA1"}, message_id="WA1")

    push = MagicMock()
    push.send.return_value = ProviderResult(True, "WebPush", status_code=201)

    return NotificationDispatcher(email=email, sms=sms, twilio=twilio, push=push, simulate_sms=False)
