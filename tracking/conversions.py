"""
Order attribution for Shopify ``orders/create`` payloads.

An order is attributed through its discount codes (a campaign's code sent to the
ordering phone, or a subscriber's personal welcome code) and through the short-link
click code the storefront copies from the ``sms_click`` cookie into the order's
note attributes.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional
import logging

from django.conf import settings
from django.utils import timezone

from audience.models import Subscriber
from campaign.models import CampaignStatus, Message
from campaign.services import ledger
from providers import telnyx
from . import shortener

log = logging.getLogger(__name__)

ATTRIBUTABLE_CAMPAIGN_STATUSES = [CampaignStatus.Sending, CampaignStatus.Paused, CampaignStatus.Sent]


def _float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def order_summary(order: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "order_id": str(order.get("id") or ""),
        "order_number": str(order.get("order_number") or order.get("name") or ""),
        "order_total": _float(order.get("total_price")),
        "subtotal": _float(order.get("subtotal_price")),
        "currency": order.get("currency") or "USD",
        "item_count": len(order.get("line_items") or []),
    }


def order_phone(order: Dict[str, Any]) -> Optional[str]:
    candidates = [
        order.get("phone"),
        (order.get("customer") or {}).get("phone"),
        (order.get("billing_address") or {}).get("phone"),
        (order.get("shipping_address") or {}).get("phone"),
    ]
    for raw in candidates:
        formatted = telnyx.format_phone(raw)
        if formatted:
            return formatted
    return None


def click_code(order: Dict[str, Any]) -> Optional[str]:
    name = getattr(settings, "SHORT_URL_COOKIE_NAME", "sms_click")
    for attr in order.get("note_attributes") or []:
        if isinstance(attr, dict) and attr.get("name") == name and attr.get("value"):
            return str(attr["value"]).strip()
    return None


def _campaign_message(code: str, phone: Optional[str]) -> Optional[Message]:
    if not phone:
        return None
    return (
        Message.objects.filter(
            discount_code__iexact=code,
            phone=phone,
            converted=False,
            campaign__status__in=ATTRIBUTABLE_CAMPAIGN_STATUSES,
        )
        .exclude(sent_at__isnull=True)
        .select_related("campaign")
        .order_by("-sent_at")
        .first()
    )


def _welcome_conversion(code: str, summary: Dict[str, Any]) -> bool:
    now = timezone.now()
    updated = Subscriber.objects.filter(discount_code__iexact=code, converted=False).update(
        converted=True, last_engaged_at=now, updated_at=now,
    )
    if updated:
        log.info("welcome code conversion code=%s order=%s", code, summary["order_id"])
    return bool(updated)


def attribute_order(order: Dict[str, Any]) -> Dict[str, Any]:
    summary = order_summary(order)
    phone = order_phone(order)
    results: Dict[str, Any] = {
        "order_id": summary["order_id"],
        "campaign_conversions": [],
        "welcome_conversion": False,
        "short_url_conversion": False,
    }

    codes: List[Dict[str, Any]] = [d for d in order.get("discount_codes") or [] if isinstance(d, dict)]
    for discount in codes:
        code = str(discount.get("code") or "").strip().upper()
        if not code:
            continue
        data = {**summary, "discount_code": code, "discount_amount": _float(discount.get("amount"))}

        message = _campaign_message(code, phone)
        if message and ledger.record_conversion(message, data):
            results["campaign_conversions"].append(str(message.campaign_id))

        if _welcome_conversion(code, summary):
            results["welcome_conversion"] = True

    code = click_code(order)
    if code:
        results["short_url_conversion"] = shortener.record_conversion(code, summary)

    log.info("order attributed order=%s campaigns=%s welcome=%s click=%s",
             summary["order_id"], results["campaign_conversions"],
             results["welcome_conversion"], results["short_url_conversion"])
    return results
