"""
Telnyx messaging adapter.

Sends SMS through the Telnyx v2 REST API and normalizes its webhook payloads onto
the message ledger's status vocabulary. The client never retries: a failed call is
reported once as a failed ``SendResult`` and the caller decides what to do.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

import requests
from django.conf import settings

log = logging.getLogger(__name__)

BASE_URL = "https://api.telnyx.com/v2"

RELEVANT_EVENTS = {"message.sent", "message.finalized", "message.received"}

OPT_OUT_KEYWORDS = frozenset({"stop", "unsubscribe", "cancel", "quit", "end"})
OPT_IN_KEYWORDS = frozenset({"start", "yes", "unstop"})
HELP_KEYWORDS = frozenset({"help", "info"})

# Telnyx delivery vocabulary -> ledger status
STATUS_MAP = {
    "queued": "queued",
    "sending": "sending",
    "sent": "sent",
    "delivered": "delivered",
    "delivery_unconfirmed": "sent",
    "delivery_failed": "failed",
    "sending_failed": "failed",
    "failed": "failed",
    "undelivered": "undelivered",
    "rejected": "rejected",
}

_NANP_DISPLAY = re.compile(r"^\+1(\d{3})(\d{3})(\d{4})$")


class InvalidWebhook(ValueError):
    """Payload without the ``data`` envelope."""


@dataclass
class SendResult:
    success: bool
    provider_message_id: Optional[str] = None
    status: Optional[str] = None
    cost: Optional[float] = None
    carrier: Optional[str] = None
    line_type: Optional[str] = None
    parts: int = 1
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class WebhookEvent:
    event_type: str
    ignored: bool = False
    provider_message_id: Optional[str] = None
    raw_status: Optional[str] = None
    normalized_status: Optional[str] = None
    direction: Optional[str] = None
    from_phone: Optional[str] = None
    to_phone: Optional[str] = None
    text: str = ""
    cost: Optional[float] = None
    carrier: Optional[str] = None
    errors: list = field(default_factory=list)
    is_inbound: bool = False
    is_opt_out: bool = False
    is_opt_in: bool = False
    is_help: bool = False

    @property
    def error_detail(self) -> Optional[str]:
        if not self.errors:
            return None
        first = self.errors[0] or {}
        return first.get("detail") or first.get("title") or "Unknown error"

    @property
    def error_code(self) -> Optional[str]:
        if not self.errors:
            return None
        code = (self.errors[0] or {}).get("code")
        return str(code) if code is not None else None


def format_phone(phone: Any) -> Optional[str]:
    """Normalize to E.164. Returns None when the number cannot be normalized."""
    if not phone:
        return None
    cleaned = re.sub(r"[^\d+]", "", str(phone))

    if cleaned.startswith("+1") and len(cleaned) == 12:
        return cleaned
    if cleaned.startswith("+"):
        return cleaned if len(cleaned) >= 11 else None
    if cleaned.startswith("1") and len(cleaned) == 11:
        return "+" + cleaned
    if len(cleaned) == 10:
        return "+1" + cleaned
    return None


def format_for_display(phone: Any) -> str:
    formatted = format_phone(phone)
    if not formatted:
        return "" if phone is None else str(phone)
    m = _NANP_DISPLAY.match(formatted)
    if m:
        return f"+1 ({m.group(1)}) {m.group(2)}-{m.group(3)}"
    return formatted


def normalize_status(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    return STATUS_MAP.get(raw.lower())


def _amount(cost: Optional[dict]) -> Optional[float]:
    if not cost or cost.get("amount") in (None, ""):
        return None
    try:
        return float(cost["amount"])
    except (TypeError, ValueError):
        return None


def parse_webhook(payload: Any) -> WebhookEvent:
    """Turn a raw Telnyx webhook body into a ``WebhookEvent``."""
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        raise InvalidWebhook("Invalid webhook payload")

    event_type = data.get("event_type") or ""
    if event_type not in RELEVANT_EVENTS:
        return WebhookEvent(event_type=event_type, ignored=True)

    msg = data.get("payload") or {}
    if not isinstance(msg, dict):
        raise InvalidWebhook("Invalid webhook payload")
    recipients = msg.get("to")
    to = recipients[0] if isinstance(recipients, list) and recipients else {}
    to = to if isinstance(to, dict) else {}
    sender = msg.get("from") if isinstance(msg.get("from"), dict) else {}
    raw_status = to.get("status")

    event = WebhookEvent(
        event_type=event_type,
        provider_message_id=msg.get("id"),
        raw_status=raw_status,
        normalized_status=normalize_status(raw_status),
        direction=msg.get("direction"),
        from_phone=sender.get("phone_number"),
        to_phone=to.get("phone_number"),
        text=msg.get("text") or "",
        cost=_amount(msg.get("cost")),
        carrier=to.get("carrier") or sender.get("carrier"),
        errors=msg.get("errors") or [],
    )

    if event_type == "message.received":
        keyword = event.text.lower().strip()
        event.is_inbound = True
        event.normalized_status = None
        event.is_opt_out = keyword in OPT_OUT_KEYWORDS
        event.is_opt_in = keyword in OPT_IN_KEYWORDS
        event.is_help = keyword in HELP_KEYWORDS

    return event


class TelnyxClient:
    """
    Thin wrapper over ``POST /v2/messages``.

    Attributes:
        api_key: Telnyx API key (Bearer token)
        from_number: sending number in E.164
        messaging_profile_id: Telnyx messaging profile
        webhook_url: URL Telnyx calls back with delivery events
        timeout: request timeout in seconds
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_number: Optional[str] = None,
        messaging_profile_id: Optional[str] = None,
        webhook_url: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.TELNYX_API_KEY
        self.from_number = from_number if from_number is not None else settings.TELNYX_FROM_NUMBER
        self.messaging_profile_id = (
            messaging_profile_id if messaging_profile_id is not None else settings.TELNYX_MESSAGING_PROFILE_ID
        )
        self.webhook_url = webhook_url if webhook_url is not None else settings.TELNYX_WEBHOOK_URL
        self.timeout = timeout or getattr(settings, "TELNYX_TIMEOUT", 30)
        self.base_url = BASE_URL
        self._session = session or requests.Session()
        self._headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def send(self, to: str, text: str) -> SendResult:
        formatted = format_phone(to)
        if not formatted:
            return SendResult(success=False, error="Invalid phone number format")

        payload = {
            "from": self.from_number,
            "to": formatted,
            "text": text,
            "messaging_profile_id": self.messaging_profile_id,
        }
        if self.webhook_url:
            payload["webhook_url"] = self.webhook_url
            payload["webhook_failover_url"] = self.webhook_url

        log.debug("sending sms to=%s", formatted)
        try:
            response = self._session.post(
                f"{self.base_url}/messages",
                json=payload,
                headers=self._headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.HTTPError as e:
            detail, code = self._error_from_response(e.response)
            log.warning("telnyx rejected sms to=%s code=%s detail=%s", formatted, code, detail)
            return SendResult(success=False, error=detail or str(e), error_code=code)
        except requests.RequestException as e:
            log.warning("telnyx request failed to=%s error=%s", formatted, e)
            return SendResult(success=False, error=str(e))

        data = (response.json() or {}).get("data") or {}
        to_info = (data.get("to") or [{}])[0] or {}
        result = SendResult(
            success=True,
            provider_message_id=data.get("id"),
            status=to_info.get("status") or "queued",
            cost=_amount(data.get("cost")),
            carrier=to_info.get("carrier"),
            line_type=to_info.get("line_type"),
            parts=data.get("parts") or 1,
        )
        log.info("sms queued id=%s status=%s", result.provider_message_id, result.status)
        return result

    def send_stop_confirmation(self, to: str) -> SendResult:
        return self.send(to, "Jersey Pickles: You have been unsubscribed and will no longer receive "
                             "messages from us. Reply START to resubscribe.")

    def send_start_confirmation(self, to: str) -> SendResult:
        return self.send(to, "Jersey Pickles: Welcome back! You're now subscribed to our VIP Text Club. "
                             "Reply STOP to opt out anytime.")

    def send_help_response(self, to: str) -> SendResult:
        return self.send(to, "Jersey Pickles: For help, contact support@jerseypickles.com. "
                             "Msg&data rates may apply. Reply STOP to opt out.")

    @staticmethod
    def _error_from_response(response: Optional[requests.Response]) -> tuple[Optional[str], Optional[str]]:
        if response is None:
            return None, None
        try:
            errors = (response.json() or {}).get("errors") or []
        except ValueError:
            return response.text[:200] or None, None
        if not errors:
            return None, None
        first = errors[0] or {}
        code = first.get("code")
        return first.get("detail") or first.get("title"), (str(code) if code is not None else None)


def get_client() -> TelnyxClient:
    return TelnyxClient()
