from __future__ import annotations
from datetime import timedelta
from typing import Any, Dict, Optional, TypedDict
import logging

from django.db import transaction
from django.db.models import Count, Sum
from django.utils import timezone

from campaign.models import Campaign, CampaignStatus, DiscountType, Message, MessageStatus
from campaign.tasks import process_campaign_queue
from campaign.services import exceptions, ledger, rendering
from providers import shopify, telnyx
from tracking import shortener

log = logging.getLogger(__name__)


class SendResult(TypedDict):
    campaign_id: str
    queued: int


# ------------ Discounts ------------

def provision_dynamic_rules(campaign: Campaign, client: Optional[shopify.ShopifyClient] = None) -> Dict[str, Dict]:
    """One store discount per whole percent in [dynamic_min, dynamic_max]."""
    if campaign.dynamic_min is None or campaign.dynamic_max is None or campaign.dynamic_min > campaign.dynamic_max:
        raise exceptions.DiscountProvisioningError("Dynamic discount range is not configured.")

    client = client or shopify.get_client()
    rules: Dict[str, Dict] = {}
    for percent in range(campaign.dynamic_min, campaign.dynamic_max + 1):
        code = rendering.dynamic_code(campaign, percent)
        try:
            rules[str(percent)] = client.provision_discount(code, percent)
        except shopify.ShopifyError as e:
            log.error("campaign=%s discount %s%% failed: %s", campaign.pk, percent, e)
            raise exceptions.DiscountProvisioningError(f"Could not create discount {code}: {e}") from e
    return rules


# ------------ Sending ------------

def _recipients(campaign: Campaign):
    for subscriber in campaign.eligible_subscribers():
        code, percent = rendering.assign_discount(campaign)
        yield ledger.Recipient(subscriber=subscriber, phone=subscriber.phone, discount_code=code, discount_percent=percent)


def send_campaign(*, campaign_id: str | None, shopify_client: Optional[shopify.ShopifyClient] = None) -> SendResult:
    campaign = Campaign.objects.get(pk=campaign_id)
    if campaign.status not in {CampaignStatus.Draft, CampaignStatus.Scheduled}:
        raise exceptions.InvalidState(f"Campaign already {campaign.status}.")
    if campaign.get_eligible_count() == 0:
        raise exceptions.ZeroRecipients("No eligible subscribers for this campaign.")

    if campaign.discount_type == DiscountType.DYNAMIC:
        campaign.discount_rules = provision_dynamic_rules(campaign, shopify_client)
        campaign.save(update_fields=["discount_rules", "updated_at"])

    with transaction.atomic():
        # Lock row to avoid double-send races under concurrent requests
        c = Campaign.objects.select_for_update().get(pk=campaign_id)
        if c.status not in {CampaignStatus.Draft, CampaignStatus.Scheduled}:
            raise exceptions.InvalidState(f"Campaign already {c.status}.")
        queued = ledger.insert_batch(c, _recipients(c))
        if queued == 0:
            raise exceptions.ZeroRecipients("No eligible subscribers for this campaign.")
        c.mark_sending()
        c.eligible_count = queued
        c.queued_count = queued
        c.save(update_fields=["status", "started_at", "eligible_count", "queued_count", "updated_at"])
        transaction.on_commit(lambda: process_campaign_queue.delay(str(c.id)))

    log.info("campaign=%s sending, %s rows queued", c.pk, queued)
    return {"campaign_id": str(c.id), "queued": queued}


def pause_campaign(campaign_id: str | None) -> Campaign:
    with transaction.atomic():
        c = Campaign.objects.select_for_update().get(pk=campaign_id)
        if c.status != CampaignStatus.Sending:
            raise exceptions.InvalidState(f"Only sending campaigns can be paused (status={c.status}).")
        c.mark_paused()
        c.save(update_fields=["status", "updated_at"])
    log.info("campaign=%s paused", campaign_id)
    return c


def resume_campaign(campaign_id: str | None) -> Campaign:
    with transaction.atomic():
        c = Campaign.objects.select_for_update().get(pk=campaign_id)
        if c.status != CampaignStatus.Paused:
            raise exceptions.InvalidState(f"Only paused campaigns can be resumed (status={c.status}).")
        c.mark_sending()
        c.save(update_fields=["status", "started_at", "updated_at"])
        # kick the processor; a run still holding the lock makes this a no-op
        transaction.on_commit(lambda: process_campaign_queue.delay(str(c.id)))
    log.info("campaign=%s resumed", campaign_id)
    return c


def cancel_campaign(campaign_id: str | None, reason: str = "") -> Dict[str, Any]:
    with transaction.atomic():
        c = Campaign.objects.select_for_update().get(pk=campaign_id)
        if c.status not in {CampaignStatus.Sending, CampaignStatus.Paused, CampaignStatus.Scheduled}:
            raise exceptions.InvalidState(f"Campaign cannot be cancelled (status={c.status}).")
        removed, _ = Message.objects.filter(campaign=c, status=MessageStatus.PENDING).delete()
        c.mark_cancelled(reason)
        c.queued_count = 0
        c.save(update_fields=["status", "completed_at", "queued_count", "notes", "updated_at"])
    log.info("campaign=%s cancelled, %s pending rows removed", campaign_id, removed)
    return {"campaign": c, "removed_pending": removed}


def send_test_sms(*, campaign_id: str | None, phone: str, client: Optional[telnyx.TelnyxClient] = None) -> Dict[str, Any]:
    campaign = Campaign.objects.get(pk=campaign_id)
    formatted = telnyx.format_phone(phone)
    if not formatted:
        raise exceptions.InvalidPhone(f"Invalid phone number: {phone!r}.")

    if campaign.discount_type == DiscountType.DYNAMIC:
        percent = campaign.dynamic_min
        code = rendering.dynamic_code(campaign, percent) if percent is not None else ""
    else:
        code, percent = campaign.discount_code, campaign.discount_percent
    body = "[TEST] " + rendering.apply_discount(campaign.message, code, percent)

    client = client or telnyx.get_client()
    result = client.send(formatted, body)
    status = "sent" if result.success else "failed"
    campaign.record_test_send(formatted, result.provider_message_id, status)
    log.info("campaign=%s test sms to=%s status=%s", campaign.pk, formatted, status)
    return {
        "sent_to": formatted,
        "success": result.success,
        "message_id": result.provider_message_id,
        "error": result.error,
    }


# ------------ Edits ------------

def update_campaign(campaign: Campaign, serializer) -> Campaign:
    if not campaign.is_editable:
        raise exceptions.InvalidState(f"Campaign cannot be edited (status={campaign.status}).")
    with transaction.atomic():
        campaign = serializer.save()
        if campaign.scheduled_at and campaign.status == CampaignStatus.Draft:
            campaign.mark_scheduled(campaign.scheduled_at)
        elif not campaign.scheduled_at and campaign.status == CampaignStatus.Scheduled:
            campaign.status = CampaignStatus.Draft
        campaign.eligible_count = campaign.get_eligible_count()
        campaign.save(update_fields=["status", "scheduled_at", "eligible_count", "updated_at"])
    return campaign


def delete_campaign(campaign: Campaign) -> None:
    if campaign.status == CampaignStatus.Sending:
        raise exceptions.InvalidState("Pause or cancel the campaign before deleting it.")
    with transaction.atomic():
        removed, _ = Message.objects.filter(campaign=campaign).delete()
        campaign.delete()
    log.info("campaign=%s deleted with %s ledger rows", campaign.pk, removed)


# ------------ Stats ------------

def recalculate_stats(campaign: Campaign) -> Campaign:
    with transaction.atomic():
        c = Campaign.objects.select_for_update().get(pk=campaign.pk)
        for field, value in ledger.aggregate_stats(c).items():
            setattr(c, field, value)
        c.update_rates()
        c.save(update_fields=[
            "queued_count", "sent_count", "delivered_count", "failed_count", "clicked_count",
            "converted_count", "total_revenue", "total_cost", "delivery_rate", "click_rate",
            "conversion_rate", "roi", "updated_at",
        ])
    return c


def campaign_stats(campaign: Campaign) -> Dict[str, Any]:
    campaign = recalculate_stats(campaign)
    recent = (
        Message.objects.filter(campaign=campaign, converted=True)
        .order_by("-converted_at")
        .values("phone", "discount_code", "revenue", "converted_at", "conversion_data")[:10]
    )
    return {
        "stats": campaign.stats(),
        "messages": ledger.message_breakdown(campaign),
        "recent_conversions": [
            {
                "phone": telnyx.format_for_display(r["phone"]),
                "discount_code": r["discount_code"],
                "revenue": float(r["revenue"]),
                "order_number": (r["conversion_data"] or {}).get("order_number"),
                "converted_at": r["converted_at"],
            }
            for r in recent
        ],
        "clicks": shortener.campaign_click_stats(campaign),
    }


def audience_preview(campaign: Campaign, sample_size: int = 10) -> Dict[str, Any]:
    sample = campaign.eligible_subscribers(limit=sample_size)
    return {
        "eligible": campaign.get_eligible_count(),
        "sample": [
            {"id": str(s.pk), "phone": telnyx.format_for_display(s.phone), "country_code": s.country_code,
             "converted": s.converted}
            for s in sample
        ],
    }


def audience_count(*, audience_type: str, target_country: str = "all", custom_filter: Optional[dict] = None) -> int:
    unsaved = Campaign(audience_type=audience_type, target_country=target_country or "all",
                     custom_filter=custom_filter or {})
    return unsaved.get_eligible_count()


def stats_overview(days: int = 30) -> Dict[str, Any]:
    since = timezone.now() - timedelta(days=days)
    sent = Campaign.objects.filter(status=CampaignStatus.Sent, completed_at__gte=since)
    totals = sent.aggregate(
        campaigns=Count("id"),
        sent=Sum("sent_count"),
        delivered=Sum("delivered_count"),
        clicked=Sum("clicked_count"),
        converted=Sum("converted_count"),
        unsubscribed=Sum("unsubscribed_count"),
        revenue=Sum("total_revenue"),
        cost=Sum("total_cost"),
    )
    summary = {k: (v or 0) for k, v in totals.items()}
    summary["revenue"] = float(summary["revenue"])
    summary["cost"] = float(summary["cost"])
    summary["delivery_rate"] = round(summary["delivered"] * 100 / summary["sent"], 1) if summary["sent"] else 0.0
    summary["click_rate"] = round(summary["clicked"] * 100 / summary["delivered"], 1) if summary["delivered"] else 0.0
    summary["conversion_rate"] = (
        round(summary["converted"] * 100 / summary["delivered"], 1) if summary["delivered"] else 0.0
    )

    by_status = {s: 0 for s in CampaignStatus.values}
    for row in Campaign.objects.values("status").annotate(n=Count("id")):
        by_status[row["status"]] = row["n"]
    return {"days": days, "summary": summary, "by_status": by_status}
