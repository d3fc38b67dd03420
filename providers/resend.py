"""
Resend email adapter.

Sends campaign email through the Resend REST API and parses its webhook events.
Like the SMS client, a failed call comes back once as a failed ``EmailResult``.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from django.conf import settings

log = logging.getLogger(__name__)

BASE_URL = "https://api.resend.com"

EVENT_TYPES = {
    "email.sent": "sent",
    "email.delivered": "delivered",
    "email.delivery_delayed": "delayed",
    "email.bounced": "bounced",
    "email.opened": "opened",
    "email.clicked": "clicked",
    "email.complained": "complained",
}

# bounce.type values Resend (and SES underneath) report for permanent failures
HARD_BOUNCE_TYPES = {"permanent", "hard", "hardbounce", "hard_bounce"}


@dataclass
class EmailEvent:
    event_type: Optional[str]
    raw_type: str
    email: Optional[str] = None
    provider_message_id: Optional[str] = None
    campaign_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    bounce_kind: Optional[str] = None
    reason: str = ""

    @property
    def ignored(self) -> bool:
        return self.event_type is None


def _tags(data: dict) -> dict:
    tags = data.get("tags")
    if isinstance(tags, list):
        return {t.get("name"): t.get("value") for t in tags if isinstance(t, dict)}
    if isinstance(tags, dict):
        return tags
    return {}


def parse_event(payload: Any) -> EmailEvent:
    payload = payload if isinstance(payload, dict) else {}
    raw_type = payload.get("type") or ""
    data = payload.get("data")
    data = data if isinstance(data, dict) else {}
    tags = _tags(data)

    to = data.get("to")
    email = to[0] if isinstance(to, list) and to else (to or data.get("email"))
    email = email if isinstance(email, str) else ""

    event = EmailEvent(
        event_type=EVENT_TYPES.get(raw_type),
        raw_type=raw_type,
        email=email.strip().lower() or None,
        provider_message_id=data.get("email_id") or None,
        campaign_ref=tags.get("campaign_id"),
        customer_ref=tags.get("customer_id"),
    )
    if event.event_type == "bounced":
        bounce = data.get("bounce")
        bounce = bounce if isinstance(bounce, dict) else {}
        kind = str(bounce.get("type") or "").replace(" ", "").lower()
        event.bounce_kind = "hard" if kind in HARD_BOUNCE_TYPES else "soft"
        event.reason = bounce.get("message") or bounce.get("subType") or ""
    return event


@dataclass
class EmailResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None


class ResendClient:
    """
    Thin wrapper over ``POST /emails``.

    Tags ride along with the message and come back on every webhook event,
    which is how bounces and opens find their way back to a send row.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        reply_to: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.from_email = from_email if from_email is not None else settings.RESEND_FROM_EMAIL
        self.reply_to = reply_to if reply_to is not None else getattr(settings, "RESEND_REPLY_TO", "")
        self.timeout = timeout or getattr(settings, "RESEND_TIMEOUT", 30)
        self._session = session or requests.Session()
        self._headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def send(
        self,
        to: str,
        subject: str,
        html: str,
        *,
        from_email: str = "",
        reply_to: str = "",
        tags: Optional[Dict[str, str]] = None,
    ) -> EmailResult:
        payload = {
            "from": from_email or self.from_email,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if reply_to or self.reply_to:
            payload["reply_to"] = reply_to or self.reply_to
        if tags:
            # tag values only allow ASCII letters, digits, underscores and dashes
            payload["tags"] = [{"name": k, "value": str(v)} for k, v in tags.items()]

        try:
            response = self._session.post(f"{BASE_URL}/emails", json=payload, headers=self._headers,
                                          timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as e:
            code = getattr(e.response, "status_code", None)
            detail = self._error_from_response(e.response)
            log.warning("resend rejected email to=%s status=%s detail=%s", to, code, detail)
            return EmailResult(success=False, error=detail or str(e), status_code=code)
        except requests.RequestException as e:
            log.warning("resend request failed to=%s error=%s", to, e)
            return EmailResult(success=False, error=str(e))

        message_id = (response.json() or {}).get("id")
        log.info("email accepted id=%s", message_id)
        return EmailResult(success=True, provider_message_id=message_id)

    @staticmethod
    def _error_from_response(response: Optional[requests.Response]) -> Optional[str]:
        if response is None:
            return None
        try:
            body = response.json() or {}
        except ValueError:
            return response.text[:200] or None
        return body.get("message") or body.get("name")


def get_client() -> ResendClient:
    return ResendClient()
