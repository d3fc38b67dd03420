"""
Email campaigns: recipient snapshot, the Resend send loop and the send ledger.

Rows are written ``pending`` when a campaign starts and sent one provider call at
a time. Resend webhook events move rows forward and bump the campaign counters
with ``F()`` in the same transaction.
"""
from __future__ import annotations
from typing import Any, Callable, Dict, Optional
import logging
import time
import uuid

from django.conf import settings
from django.db import transaction
from django.db.models import Count, F
from django.utils import timezone

from audience.models import Customer, EmailStatus
from campaign.models import (
    CampaignStatus, EmailCampaign, EmailSend, EmailSendStatus, FINAL_EMAIL_STATUSES,
)
from campaign.tasks import process_email_campaign
from providers import resend
from .exceptions import InvalidState, ZeroRecipients

log = logging.getLogger(__name__)

# statuses a row passes through on the way to a later one
_MILESTONES = (
    (EmailSendStatus.DELIVERED, "delivered_count"),
    (EmailSendStatus.OPENED, "opened_count"),
    (EmailSendStatus.CLICKED, "clicked_count"),
)
_TERMINAL_COUNTERS = {
    EmailSendStatus.BOUNCED: "bounced_count",
    EmailSendStatus.COMPLAINED: "complained_count",
}


def recipient_qs_for(campaign: EmailCampaign):
    if campaign.mailing_list_id is None:
        return Customer.objects.none()
    return campaign.mailing_list.members.filter(email_status=EmailStatus.ACTIVE).order_by("created_at", "id")


def build_html(campaign: EmailCampaign, send: EmailSend) -> str:
    # plain replace; email html is full of css braces
    first_name = send.customer.first_name or "there"
    return campaign.html.replace("{first_name}", first_name).replace("{email}", send.email)


# ------------ Start / cancel ------------

def send_email_campaign(*, campaign_id: str | None) -> Dict[str, Any]:
    with transaction.atomic():
        c = EmailCampaign.objects.select_for_update().get(pk=campaign_id)
        if c.status != CampaignStatus.Draft:
            raise InvalidState(f"Email campaign already {c.status}.")
        rows = [EmailSend(email_campaign=c, customer=customer, email=customer.email)
                for customer in recipient_qs_for(c)]
        if not rows:
            raise ZeroRecipients("No deliverable customers for this email campaign.")
        EmailSend.objects.bulk_create(rows, batch_size=500)
        c.mark_sending()
        c.recipients_count = len(rows)
        c.save(update_fields=["status", "started_at", "recipients_count", "updated_at"])
        transaction.on_commit(lambda: process_email_campaign.delay(str(c.id)))

    log.info("email campaign=%s sending, %s rows queued", c.pk, len(rows))
    return {"campaign_id": str(c.id), "queued": len(rows)}


def cancel_email_campaign(campaign_id: str | None) -> Dict[str, Any]:
    with transaction.atomic():
        c = EmailCampaign.objects.select_for_update().get(pk=campaign_id)
        if c.status not in {CampaignStatus.Draft, CampaignStatus.Sending}:
            raise InvalidState(f"Email campaign cannot be cancelled (status={c.status}).")
        removed, _ = EmailSend.objects.filter(email_campaign=c, status=EmailSendStatus.PENDING).delete()
        c.mark_cancelled()
        c.save(update_fields=["status", "completed_at", "updated_at"])
    log.info("email campaign=%s cancelled, %s pending rows removed", campaign_id, removed)
    return {"campaign": c, "removed_pending": removed}


# ------------ Send loop ------------

def _mark_row(send: EmailSend, status: str, **fields) -> bool:
    counter = "sent_count" if status == EmailSendStatus.SENT else "failed_count"
    stamp = f"{status}_at"
    with transaction.atomic():
        updated = EmailSend.objects.filter(pk=send.pk, status=EmailSendStatus.PENDING).update(
            status=status, **{stamp: timezone.now()}, **fields,
        )
        if updated:
            EmailCampaign.objects.filter(pk=send.email_campaign_id).update(**{counter: F(counter) + 1})
    return bool(updated)


def send_one(campaign: EmailCampaign, send: EmailSend, client: resend.ResendClient) -> bool:
    """Send one row. A customer suppressed since the snapshot fails the row without a provider call."""
    customer = send.customer
    if not customer.can_receive_email:
        log.info("email campaign=%s skipped %s: %s", campaign.pk, send.email, customer.email_status)
        _mark_row(send, EmailSendStatus.FAILED, error_message=f"suppressed: {customer.email_status}")
        return False

    result = client.send(
        send.email,
        campaign.subject,
        build_html(campaign, send),
        from_email=campaign.from_email,
        reply_to=campaign.reply_to,
        tags={"campaign_id": str(campaign.pk), "customer_id": str(customer.pk)},
    )
    if result.success:
        _mark_row(send, EmailSendStatus.SENT, provider_message_id=result.provider_message_id)
        return True

    log.warning("email campaign=%s send failed to=%s error=%s", campaign.pk, send.email, result.error)
    _mark_row(send, EmailSendStatus.FAILED, error_message=result.error or "send failed")
    return False


def finalize(campaign_id: str) -> Dict:
    with transaction.atomic():
        c = EmailCampaign.objects.select_for_update().get(pk=campaign_id)
        if c.status != CampaignStatus.Sending:
            return {"status": c.status}
        if EmailSend.objects.filter(email_campaign=c, status=EmailSendStatus.PENDING).exists():
            return {"status": c.status, "detail": "pending rows remain"}
        c.mark_sent()
        c.save(update_fields=["status", "completed_at", "updated_at"])
    log.info("email campaign=%s sent: sent=%s failed=%s", campaign_id, c.sent_count, c.failed_count)
    return {"status": c.status, "sent": c.sent_count, "failed": c.failed_count}


def fail_campaign(campaign_id: str, error: str) -> None:
    with transaction.atomic():
        c = EmailCampaign.objects.select_for_update().filter(pk=campaign_id).first()
        if c is None or c.is_terminal:
            return
        c.mark_failed(error)
        c.save(update_fields=["status", "completed_at", "notes", "updated_at"])


def process_queue(
    campaign_id: str,
    *,
    client: Optional[resend.ResendClient] = None,
    batch_size: Optional[int] = None,
    delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    heartbeat: Optional[Callable[[], object]] = None,
) -> Dict:
    client = client or resend.get_client()
    batch_size = batch_size or int(getattr(settings, "SMS_QUEUE_BATCH_SIZE", 50))
    delay = float(getattr(settings, "EMAIL_SEND_DELAY_SECONDS", 0.1)) if delay is None else delay

    sent = failed = 0
    campaign = EmailCampaign.objects.filter(pk=campaign_id).first()
    if campaign is None:
        return {"detail": "Email campaign not found"}

    try:
        while True:
            campaign.refresh_from_db()
            if campaign.status != CampaignStatus.Sending:
                return {"status": campaign.status, "sent": sent, "failed": failed}

            batch = list(
                EmailSend.objects.filter(email_campaign_id=campaign_id, status=EmailSendStatus.PENDING)
                .select_related("customer")
                .order_by("created_at", "id")[:batch_size]
            )
            if not batch:
                return {**finalize(campaign_id), "sent_this_run": sent, "failed_this_run": failed}

            for send in batch:
                status = EmailCampaign.objects.filter(pk=campaign_id).values_list("status", flat=True).first()
                if status != CampaignStatus.Sending:
                    return {"status": status, "sent": sent, "failed": failed}
                if heartbeat and heartbeat() is False:
                    log.warning("email queue lock lost campaign=%s", campaign_id)
                    return {"status": status, "detail": "Queue lock lost", "sent": sent, "failed": failed}

                if send_one(campaign, send, client):
                    sent += 1
                else:
                    failed += 1
                if delay:
                    sleep(delay)
    except Exception as e:
        log.exception("email queue failed campaign=%s", campaign_id)
        fail_campaign(campaign_id, str(e))
        return {"status": CampaignStatus.Failed, "error": str(e), "sent": sent, "failed": failed}


# ------------ Webhook events ------------

def _find_send(event: resend.EmailEvent) -> Optional[EmailSend]:
    qs = EmailSend.objects.select_for_update()
    if event.provider_message_id:
        send = qs.filter(provider_message_id=event.provider_message_id).first()
        if send is not None:
            return send
    if event.campaign_ref and event.email:
        try:
            campaign_id = uuid.UUID(str(event.campaign_ref))
        except ValueError:
            return None
        return qs.filter(email_campaign_id=campaign_id, email=event.email).first()
    return None


def record_event(event: resend.EmailEvent) -> Optional[EmailSend]:
    """
    Move the matching send row forward. Replays and events that would move a
    row backwards are no-ops. Returns the row when it changed.
    """
    status = event.event_type
    # pending -> sent belongs to the send loop
    if status not in EmailSendStatus.values or status in (EmailSendStatus.PENDING, EmailSendStatus.SENT):
        return None

    with transaction.atomic():
        send = _find_send(event)
        if send is None:
            return None
        previous = send.status
        if previous == EmailSendStatus.PENDING or not EmailSendStatus.can_transition(previous, status):
            return None

        send.status = status
        fields = ["status", "updated_at"]
        stamp = f"{status}_at"
        if getattr(send, stamp) is None:
            setattr(send, stamp, timezone.now())
            fields.append(stamp)
        if status in FINAL_EMAIL_STATUSES and event.reason:
            send.error_message = event.reason
            fields.append("error_message")
        send.save(update_fields=fields)

        counters = {}
        if status in _TERMINAL_COUNTERS:
            counters[_TERMINAL_COUNTERS[status]] = F(_TERMINAL_COUNTERS[status]) + 1
        else:
            # an open implies delivery even when the delivered event never came
            for milestone, counter in _MILESTONES:
                if EmailSendStatus.rank(previous) < EmailSendStatus.rank(milestone) <= EmailSendStatus.rank(status):
                    counters[counter] = F(counter) + 1
        if counters:
            EmailCampaign.objects.filter(pk=send.email_campaign_id).update(**counters)

    log.info("email send %s %s -> %s", send.pk, previous, status)
    return send


# ------------ Stats ------------

def campaign_stats(campaign: EmailCampaign) -> Dict[str, Any]:
    campaign.refresh_from_db()
    breakdown = {s: 0 for s in EmailSendStatus.values}
    for row in EmailSend.objects.filter(email_campaign=campaign).values("status").annotate(n=Count("id")):
        breakdown[row["status"]] = row["n"]
    return {"stats": campaign.stats(), "sends": breakdown}
