# snackzo/providers.py
"""
Third-party delivery providers.

- ResendEmailProvider: e-mail over the Resend HTTP API
- Fast2SMSProvider: SMS over the Fast2SMS bulk API (India)
- TwilioProvider: SMS and WhatsApp over the Twilio Messages API
- WebPushProvider: browser push via pywebpush and VAPID keys

HTTP error responses come back as a failed ProviderResult; only missing
credentials raise (ProviderConfigError).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

import requests
from pywebpush import WebPushException, webpush

from . import config

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base error for provider clients."""


class ProviderConfigError(ProviderError):
    """The provider's credentials are not configured."""


@dataclass
class ProviderResult:
    """
    Outcome of a single provider call.

    Attributes:
        success: Whether the provider accepted the message
        provider: Provider name (Resend, Fast2SMS, Twilio, WebPush, Simulator)
        response: Parsed response body, if any
        message_id: Provider message id, if any
        error: Error message for failed calls
        status_code: HTTP status of the provider response, if any
    """
    success: bool
    provider: str
    response: Dict[str, Any] = field(default_factory=dict)
    message_id: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.response)
        data.update({"success": self.success, "provider": self.provider})
        if self.message_id:
            data["id"] = self.message_id
        if self.error:
            data["error"] = self.error
        return data


def _json_body(response: requests.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"raw": response.text}
    return body if isinstance(body, dict) else {"data": body}


class _HttpProvider:
    name = "Unknown"

    def __init__(self, session: Optional[requests.Session] = None, timeout: Optional[float] = None) -> None:
        self.session = session or requests.Session()
        self.timeout = config.PROVIDER_TIMEOUT_SECONDS if timeout is None else timeout

    @property
    def configured(self) -> bool:
        raise NotImplementedError

    def _require_configured(self) -> None:
        if not self.configured:
            raise ProviderConfigError(f"{self.name} credentials are not configured")

    def _network_failure(self, error: requests.exceptions.RequestException) -> ProviderResult:
        logger.error(f"{self.name} request failed: {error}")
        return ProviderResult(success=False, provider=self.name, error=str(error))


class ResendEmailProvider(_HttpProvider):
    """Transactional e-mail through Resend."""

    name = "Resend"

    def __init__(
        self,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        url: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.api_key = config.RESEND_API_KEY if api_key is None else api_key
        self.sender = sender or config.RESEND_FROM
        self.url = url or config.RESEND_API_URL

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def send(self, to: str, subject: Optional[str], html: Optional[str]) -> ProviderResult:
        self._require_configured()
        try:
            response = self.session.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json={"from": self.sender, "to": [to], "subject": subject, "html": html},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            return self._network_failure(e)

        body = _json_body(response)
        if not response.ok:
            error = body.get("message") or body.get("error") or f"HTTP {response.status_code}"
            logger.error(f"Resend rejected e-mail to {to}: {error}")
            return ProviderResult(False, self.name, body, error=str(error), status_code=response.status_code)

        return ProviderResult(True, self.name, body, message_id=body.get("id"), status_code=response.status_code)


class Fast2SMSProvider(_HttpProvider):
    """SMS through the Fast2SMS bulk route."""

    name = "Fast2SMS"

    def __init__(self, api_key: Optional[str] = None, url: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_key = config.FAST2SMS_API_KEY if api_key is None else api_key
        self.url = url or config.FAST2SMS_API_URL

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def send(self, numbers: Union[str, List[str]], message: str) -> ProviderResult:
        self._require_configured()
        if not isinstance(numbers, str):
            numbers = ",".join(numbers)
        try:
            response = self.session.post(
                self.url,
                headers={"authorization": self.api_key, "Content-Type": "application/json"},
                json={
                    "route": "v3",
                    "sender_id": "TXTIND",
                    "message": message,
                    "language": "english",
                    "flash": 0,
                    "numbers": numbers,
                },
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            return self._network_failure(e)

        body = _json_body(response)
        if not body.get("return"):
            error = body.get("message") or f"HTTP {response.status_code}"
            if isinstance(error, list):
                error = "; ".join(str(part) for part in error)
            logger.warning(f"Fast2SMS provider error: {body}")
            return ProviderResult(False, self.name, body, error=str(error), status_code=response.status_code)

        logger.info(f"SMS sent to {numbers}")
        return ProviderResult(True, self.name, body, message_id=body.get("request_id"), status_code=response.status_code)


class TwilioProvider(_HttpProvider):
    """SMS and WhatsApp through the Twilio Messages resource."""

    name = "Twilio"

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        phone_number: Optional[str] = None,
        whatsapp_number: Optional[str] = None,
        api_base: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.account_sid = config.TWILIO_ACCOUNT_SID if account_sid is None else account_sid
        self.auth_token = config.TWILIO_AUTH_TOKEN if auth_token is None else auth_token
        self.phone_number = config.TWILIO_PHONE_NUMBER if phone_number is None else phone_number
        self.whatsapp_number = whatsapp_number or config.TWILIO_WHATSAPP_NUMBER
        self.api_base = api_base or config.TWILIO_API_BASE

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token)

    @property
    def sms_configured(self) -> bool:
        """SMS additionally needs a sending number."""
        return self.configured and bool(self.phone_number)

    @property
    def messages_url(self) -> str:
        return f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"

    def send_sms(self, to: str, body: str) -> ProviderResult:
        if not self.sms_configured:
            raise ProviderConfigError("Twilio SMS credentials are not configured")
        return self._send(to, self.phone_number, body)

    def send_whatsapp(self, to: str, body: str) -> ProviderResult:
        self._require_configured()
        if not to.startswith("whatsapp:"):
            to = f"whatsapp:{to}"
        sender = self.whatsapp_number
        if not sender.startswith("whatsapp:"):
            sender = f"whatsapp:{sender}"
        return self._send(to, sender, body)

    def _send(self, to: str, sender: str, body: str) -> ProviderResult:
        try:
            response = self.session.post(
                self.messages_url,
                auth=(self.account_sid, self.auth_token),
                data={"To": to, "From": sender, "Body": body},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            return self._network_failure(e)

        result = _json_body(response)
        if not response.ok:
            error = result.get("message") or f"HTTP {response.status_code}"
            logger.error(f"Twilio error sending to {to}: {result}")
            return ProviderResult(False, self.name, result, error=str(error), status_code=response.status_code)

        logger.info(f"Twilio message sent to {to}: {result.get('sid')}")
        return ProviderResult(True, self.name, result, message_id=result.get("sid"), status_code=response.status_code)


class WebPushProvider:
    """Browser push notifications signed with the VAPID key pair."""

    name = "WebPush"

    def __init__(
        self,
        private_key: Optional[str] = None,
        public_key: Optional[str] = None,
        subject: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.private_key = config.VAPID_PRIVATE_KEY if private_key is None else private_key
        self.public_key = config.VAPID_PUBLIC_KEY if public_key is None else public_key
        self.subject = subject or config.VAPID_SUBJECT
        self.timeout = config.PROVIDER_TIMEOUT_SECONDS if timeout is None else timeout

    @property
    def configured(self) -> bool:
        return bool(self.private_key)

    @staticmethod
    def subscription_info(row: Mapping[str, Any]) -> Dict[str, Any]:
        """Turn a `push_subscriptions` row into the Web Push subscription shape."""
        return {
            "endpoint": row["endpoint"],
            "keys": {"p256dh": row["p256dh"], "auth": row["auth"]},
        }

    def send(self, subscription: Mapping[str, Any], payload: Mapping[str, Any]) -> ProviderResult:
        if not self.configured:
            raise ProviderConfigError("VAPID keys are not configured")
        try:
            response = webpush(
                subscription_info=self.subscription_info(subscription),
                data=json.dumps(dict(payload)),
                vapid_private_key=self.private_key,
                vapid_claims={"sub": self.subject},
                timeout=self.timeout,
            )
        except WebPushException as e:
            status = e.response.status_code if e.response is not None else None
            logger.error(f"Failed to send push to {subscription.get('endpoint')}: {e}")
            return ProviderResult(False, self.name, error=str(e), status_code=status)
        except requests.exceptions.RequestException as e:
            logger.error(f"Push request failed for {subscription.get('endpoint')}: {e}")
            return ProviderResult(False, self.name, error=str(e))

        return ProviderResult(True, self.name, status_code=getattr(response, "status_code", None))
