from __future__ import annotations
from typing import Callable, Dict, Optional
import logging
import time

from django.conf import settings
from django.db import transaction

from campaign.models import Campaign, CampaignStatus, Message, MessageStatus
from providers import telnyx
from . import ledger
from .exceptions import RecipientError
from .rendering import render_message

log = logging.getLogger(__name__)


def _current_status(campaign_id: str) -> Optional[str]:
    return Campaign.objects.filter(pk=campaign_id).values_list("status", flat=True).first()


def send_one(campaign: Campaign, message: Message, client: telnyx.TelnyxClient) -> bool:
    """Render, send and persist one row. Provider and per-recipient failures fail the row only."""
    try:
        body = render_message(campaign, message)
    except RecipientError as e:
        log.warning("campaign=%s recipient=%s skipped: %s", campaign.pk, message.phone, e)
        ledger.mark_send_failed(message, error=str(e))
        return False

    result = client.send(message.phone, body)
    if result.success:
        ledger.mark_dispatched(
            message,
            body=body,
            provider_message_id=result.provider_message_id,
            cost=result.cost,
            carrier=result.carrier,
        )
        return True

    log.warning("campaign=%s send failed to=%s error=%s", campaign.pk, message.phone, result.error)
    ledger.mark_send_failed(message, error=result.error or "send failed", error_code=result.error_code, body=body)
    return False


def finalize(campaign_id: str) -> Dict:
    with transaction.atomic():
        c = Campaign.objects.select_for_update().get(pk=campaign_id)
        if c.status != CampaignStatus.Sending:
            return {"status": c.status}
        if Message.objects.filter(campaign=c, status=MessageStatus.PENDING).exists():
            return {"status": c.status, "detail": "pending rows remain"}
        for field, value in ledger.aggregate_stats(c).items():
            setattr(c, field, value)
        c.update_rates()
        c.mark_sent()
        c.save()
    log.info("campaign=%s sent: sent=%s failed=%s", campaign_id, c.sent_count, c.failed_count)
    return {"status": c.status, "sent": c.sent_count, "failed": c.failed_count}


def fail_campaign(campaign_id: str, error: str) -> None:
    with transaction.atomic():
        c = Campaign.objects.select_for_update().filter(pk=campaign_id).first()
        if c is None or c.is_terminal:
            return
        c.mark_failed(error)
        c.save(update_fields=["status", "completed_at", "notes", "updated_at"])


def process_queue(
    campaign_id: str,
    *,
    client: Optional[telnyx.TelnyxClient] = None,
    batch_size: Optional[int] = None,
    delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    heartbeat: Optional[Callable[[], object]] = None,
) -> Dict:
    """
    Drain a sending campaign's pending rows, one provider call at a time.

    The campaign status is re-read before every row, so a pause or cancel takes
    effect at the next row. Returns a summary of what this run did.
    """
    client = client or telnyx.get_client()
    batch_size = batch_size or int(getattr(settings, "SMS_QUEUE_BATCH_SIZE", 50))
    delay = float(getattr(settings, "SMS_SEND_DELAY_SECONDS", 1.1)) if delay is None else delay

    sent = failed = 0
    try:
        campaign = Campaign.objects.get(pk=campaign_id)
    except Campaign.DoesNotExist:
        return {"detail": "Campaign not found"}

    log.info("queue start campaign=%s status=%s", campaign_id, campaign.status)
    try:
        while True:
            campaign.refresh_from_db()
            if campaign.status != CampaignStatus.Sending:
                log.info("queue stop campaign=%s status=%s", campaign_id, campaign.status)
                return {"status": campaign.status, "sent": sent, "failed": failed}

            batch = ledger.pending_batch(campaign_id, batch_size)
            if not batch:
                return {**finalize(campaign_id), "sent_this_run": sent, "failed_this_run": failed}

            for message in batch:
                status = _current_status(campaign_id)
                if status != CampaignStatus.Sending:
                    log.info("queue stop campaign=%s status=%s", campaign_id, status)
                    return {"status": status, "sent": sent, "failed": failed}
                if heartbeat and heartbeat() is False:
                    # another run may own the queue now
                    log.warning("queue lock lost campaign=%s", campaign_id)
                    return {"status": status, "detail": "Queue lock lost", "sent": sent, "failed": failed}

                if send_one(campaign, message, client):
                    sent += 1
                else:
                    failed += 1
                if delay:
                    sleep(delay)
    except Exception as e:
        log.exception("queue failed campaign=%s", campaign_id)
        fail_campaign(campaign_id, str(e))
        return {"status": CampaignStatus.Failed, "error": str(e), "sent": sent, "failed": failed}
