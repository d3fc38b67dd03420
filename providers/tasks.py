import logging
from typing import Dict

from celery import shared_task

from campaign.services import email_service
from providers import handlers, resend, telnyx
from tracking import conversions

log = logging.getLogger(__name__)


# Webhooks are acknowledged before these run; a bad body is logged and dropped.

@shared_task(ignore_result=True)
def process_telnyx_event(payload: dict) -> Dict:
    try:
        event = telnyx.parse_webhook(payload)
        if event.ignored:
            log.debug("telnyx event ignored type=%s", event.event_type)
            return {"ignored": True}
        if event.is_inbound:
            return handlers.handle_inbound_message(event)
        return handlers.handle_status_event(event)
    except telnyx.InvalidWebhook as e:
        log.warning("telnyx webhook dropped: %s", e)
        return {"detail": str(e)}
    except Exception:
        log.exception("telnyx event processing failed")
        return {"detail": "processing failed"}


@shared_task(ignore_result=True)
def process_resend_event(payload: dict) -> Dict:
    try:
        event = resend.parse_event(payload)
        if event.ignored:
            log.debug("resend event ignored type=%s", event.raw_type)
            return {"ignored": True}
        email_service.record_event(event)
        return handlers.handle_email_event(event)
    except Exception:
        log.exception("resend event processing failed")
        return {"detail": "processing failed"}


@shared_task(ignore_result=True)
def process_shopify_order(order: dict) -> Dict:
    try:
        return conversions.attribute_order(order)
    except Exception:
        log.exception("order attribution failed order=%s", order.get("id") if isinstance(order, dict) else None)
        return {"detail": "processing failed"}
