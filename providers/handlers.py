"""
Webhook event handlers. Called from the Celery tasks in ``providers.tasks``.
"""
from __future__ import annotations
import logging
import uuid
from typing import Dict, Optional

from django.db.models import F

from audience.models import Customer, Subscriber, SubscriberStatus
from audience.services import bounces
from campaign.models import Campaign, Message
from campaign.services import ledger
from providers import telnyx
from providers.resend import EmailEvent

log = logging.getLogger(__name__)


def handle_status_event(event: telnyx.WebhookEvent) -> Dict:
    if not event.provider_message_id or not event.normalized_status:
        log.debug("status event without id/status type=%s raw=%s", event.event_type, event.raw_status)
        return {"updated": False}

    extra = {
        "cost": event.cost,
        "carrier": event.carrier,
        "error_code": event.error_code,
        "error_message": event.error_detail,
    }
    message = ledger.update_from_provider_event(event.provider_message_id, event.normalized_status, extra)
    return {"updated": message is not None, "status": event.normalized_status}


def _find_subscriber(phone: Optional[str]) -> Optional[Subscriber]:
    formatted = telnyx.format_phone(phone)
    if not formatted:
        return None
    return Subscriber.objects.filter(phone=formatted).first()


def _count_campaign_unsubscribe(subscriber: Subscriber) -> Optional[str]:
    latest = (
        Message.objects.filter(subscriber=subscriber)
        .exclude(sent_at__isnull=True)
        .order_by("-sent_at")
        .only("campaign_id")
        .first()
    )
    if latest is None:
        return None
    Campaign.objects.filter(pk=latest.campaign_id).update(unsubscribed_count=F("unsubscribed_count") + 1)
    return str(latest.campaign_id)


def handle_inbound_message(event: telnyx.WebhookEvent, client: Optional[telnyx.TelnyxClient] = None) -> Dict:
    """STOP / START / HELP keywords from a subscriber's reply."""
    if not (event.is_opt_out or event.is_opt_in or event.is_help):
        log.info("inbound sms from=%s (no keyword)", event.from_phone)
        return {"action": None}

    client = client or telnyx.get_client()
    subscriber = _find_subscriber(event.from_phone)
    keyword = event.text.strip()

    if event.is_opt_out:
        campaign_ref = None
        if subscriber and subscriber.status != SubscriberStatus.UNSUBSCRIBED:
            subscriber.mark_unsubscribed(keyword=keyword)
            campaign_ref = _count_campaign_unsubscribe(subscriber)
        log.info("opt-out from=%s keyword=%s campaign=%s", event.from_phone, keyword.upper(), campaign_ref)
        client.send_stop_confirmation(event.from_phone)
        return {"action": "unsubscribed", "campaign": campaign_ref}

    if event.is_opt_in:
        if subscriber is None:
            log.info("opt-in from unknown number=%s", event.from_phone)
            return {"action": None}
        subscriber.mark_resubscribed()
        log.info("opt-in from=%s", event.from_phone)
        client.send_start_confirmation(event.from_phone)
        return {"action": "resubscribed"}

    client.send_help_response(event.from_phone)
    return {"action": "help"}


def _customer_by_ref(ref: Optional[str]) -> Optional[Customer]:
    if not ref:
        return None
    try:
        pk = uuid.UUID(str(ref))
    except ValueError:
        return None
    return Customer.objects.filter(pk=pk).first()


def handle_email_event(event: EmailEvent) -> Dict:
    if event.event_type not in {"bounced", "complained"}:
        return {"action": None}

    customer = _customer_by_ref(event.customer_ref)
    if customer is None and event.email:
        customer = Customer.objects.filter(email=event.email).first()
    if customer is None:
        log.info("email event for unknown customer email=%s type=%s", event.email, event.event_type)
        return {"action": None}

    if event.event_type == "complained":
        customer.mark_complained()
        log.info("complaint email=%s", customer.email)
        return {"action": "complained"}

    customer = bounces.mark_as_bounced(
        customer, kind=event.bounce_kind, reason=event.reason, campaign_ref=event.campaign_ref,
    )
    return {"action": "bounced", "bounce_type": customer.bounce_type, "is_bounced": customer.is_bounced}
