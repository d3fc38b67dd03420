"""
Message ledger: the per-recipient send record of a campaign.

Every counter on ``Campaign`` that moves because a row moved is updated with an
``F()`` expression in the same transaction as the row, so concurrent workers and
webhook deliveries never lose increments.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
import logging

from django.db import transaction
from django.db.models import Count, F, Q, Sum
from django.utils import timezone

from audience.models import Subscriber
from campaign.models import (
    FAILURE_MESSAGE_STATUSES, Campaign, Message, MessageStatus, count_segments,
)

log = logging.getLogger(__name__)


@dataclass
class Recipient:
    subscriber: Subscriber
    phone: str
    discount_code: str = ""
    discount_percent: Optional[int] = None


def _money(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    return Decimal(str(value))


# ------------ Writes from the send path ------------

def insert_batch(campaign: Campaign, recipients: Iterable[Recipient]) -> int:
    """
    Write one ``pending`` row per recipient. A (campaign, subscriber) pair that
    already exists raises ``IntegrityError`` and nothing from the batch is kept.
    """
    now = timezone.now()
    rows = [
        Message(
            campaign=campaign,
            subscriber=r.subscriber,
            phone=r.phone,
            discount_code=r.discount_code or "",
            discount_percent=r.discount_percent,
            queued_at=now,
        )
        for r in recipients
    ]
    with transaction.atomic():
        Message.objects.bulk_create(rows, batch_size=500)
    return len(rows)


def pending_batch(campaign_id: str, limit: int) -> List[Message]:
    return list(
        Message.objects.filter(campaign_id=campaign_id, status=MessageStatus.PENDING)
        .select_related("subscriber")
        .order_by("created_at", "id")[:limit]
    )


def mark_dispatched(message: Message, *, body: str, provider_message_id: Optional[str],
                    cost: Any = None, carrier: Optional[str] = None) -> None:
    """Provider accepted the message: row -> sent, campaign queued -1 / sent +1."""
    cost = _money(cost) if cost is not None else None
    now = timezone.now()
    with transaction.atomic():
        updated = Message.objects.filter(pk=message.pk, status=MessageStatus.PENDING).update(
            status=MessageStatus.SENT,
            body=body,
            segments=count_segments(body),
            provider_message_id=provider_message_id,
            sent_at=now,
            cost=cost,
            carrier=carrier or "",
            updated_at=now,
        )
        if not updated:
            return
        Campaign.objects.filter(pk=message.campaign_id).update(
            queued_count=F("queued_count") - 1,
            sent_count=F("sent_count") + 1,
            total_cost=F("total_cost") + (cost or 0),
        )


def mark_send_failed(message: Message, *, error: str, error_code: Optional[str] = None, body: str = "") -> None:
    """Send attempt failed: row -> failed, campaign queued -1 / failed +1."""
    now = timezone.now()
    with transaction.atomic():
        updated = Message.objects.filter(pk=message.pk, status=MessageStatus.PENDING).update(
            status=MessageStatus.FAILED,
            body=body,
            error_message=error or "",
            error_code=error_code or "",
            failed_at=now,
            updated_at=now,
        )
        if not updated:
            return
        Campaign.objects.filter(pk=message.campaign_id).update(
            queued_count=F("queued_count") - 1,
            failed_count=F("failed_count") + 1,
        )


# ------------ Provider receipts ------------

_STATUS_TIMESTAMP = {
    MessageStatus.QUEUED: "queued_at",
    MessageStatus.SENT: "sent_at",
    MessageStatus.DELIVERED: "delivered_at",
    MessageStatus.FAILED: "failed_at",
    MessageStatus.UNDELIVERED: "failed_at",
    MessageStatus.REJECTED: "failed_at",
}


def update_from_provider_event(provider_message_id: str, normalized_status: str,
                               extra: Optional[Dict[str, Any]] = None) -> Optional[Message]:
    """
    Apply a delivery receipt. Replays and out-of-order receipts that would move
    a row backwards are no-ops. Returns the row when it changed.
    """
    extra = extra or {}
    with transaction.atomic():
        message = (
            Message.objects.select_for_update()
            .filter(provider_message_id=provider_message_id)
            .first()
        )
        if message is None:
            log.debug("receipt for unknown message id=%s", provider_message_id)
            return None

        previous = message.status
        if not MessageStatus.can_transition(previous, normalized_status):
            log.debug("receipt ignored id=%s %s -> %s", provider_message_id, previous, normalized_status)
            return None

        now = timezone.now()
        message.status = normalized_status
        fields = ["status", "updated_at"]
        stamp = _STATUS_TIMESTAMP.get(normalized_status)
        if stamp and getattr(message, stamp) is None:
            setattr(message, stamp, now)
            fields.append(stamp)
        if extra.get("cost") is not None:
            message.cost = _money(extra["cost"])
            fields.append("cost")
        if extra.get("carrier"):
            message.carrier = extra["carrier"]
            fields.append("carrier")
        if normalized_status in FAILURE_MESSAGE_STATUSES:
            message.error_code = extra.get("error_code") or ""
            message.error_message = extra.get("error_message") or ""
            fields += ["error_code", "error_message"]
        message.save(update_fields=fields)

        counters = {}
        if normalized_status == MessageStatus.DELIVERED:
            counters["delivered_count"] = F("delivered_count") + 1
        elif normalized_status in FAILURE_MESSAGE_STATUSES and previous == MessageStatus.SENT:
            counters["sent_count"] = F("sent_count") - 1
            counters["failed_count"] = F("failed_count") + 1
        if counters:
            Campaign.objects.filter(pk=message.campaign_id).update(**counters)

    log.info("message %s %s -> %s", provider_message_id, previous, normalized_status)
    return message


# ------------ Engagement ------------

def record_click(message: Message, click_info: Dict[str, Any]) -> bool:
    """First click wins; later clicks on the same message are ignored."""
    now = timezone.now()
    with transaction.atomic():
        updated = Message.objects.filter(pk=message.pk, clicked=False).update(
            clicked=True, clicked_at=now, click_data=click_info, updated_at=now,
        )
        if updated:
            Campaign.objects.filter(pk=message.campaign_id).update(clicked_count=F("clicked_count") + 1)
    return bool(updated)


def record_conversion(message: Message, order: Dict[str, Any]) -> bool:
    """First conversion wins. Bumps campaign converted/revenue and marks the subscriber converted."""
    revenue = _money(order.get("order_total"))
    now = timezone.now()
    with transaction.atomic():
        updated = Message.objects.filter(pk=message.pk, converted=False).update(
            converted=True,
            converted_at=now,
            conversion_data=order,
            revenue=revenue,
            updated_at=now,
        )
        if not updated:
            return False
        Campaign.objects.filter(pk=message.campaign_id).update(
            converted_count=F("converted_count") + 1,
            total_revenue=F("total_revenue") + revenue,
        )
        Subscriber.objects.filter(pk=message.subscriber_id).update(
            converted=True, last_engaged_at=now, updated_at=now,
        )
    log.info("conversion campaign=%s message=%s order=%s revenue=%s",
             message.campaign_id, message.pk, order.get("order_id"), revenue)
    return True


# ------------ Reads ------------

def message_breakdown(campaign: Campaign) -> Dict[str, Any]:
    qs = Message.objects.filter(campaign=campaign)
    by_status = {s: 0 for s in MessageStatus.values}
    for row in qs.values("status").annotate(n=Count("id")):
        by_status[row["status"]] = row["n"]
    total_cost = qs.aggregate(c=Sum("cost"))["c"] or Decimal("0")
    return {"by_status": by_status, "total": sum(by_status.values()), "total_cost": float(total_cost)}


def aggregate_stats(campaign: Campaign) -> Dict[str, Any]:
    """Counters re-derived from the rows; used to repair drifted rollups."""
    qs = Message.objects.filter(campaign=campaign)
    by_status = message_breakdown(campaign)["by_status"]
    failed = sum(by_status[s] for s in FAILURE_MESSAGE_STATUSES)
    sums = qs.aggregate(
        clicked=Count("id", filter=Q(clicked=True)),
        converted=Count("id", filter=Q(converted=True)),
        revenue=Sum("revenue"),
        cost=Sum("cost"),
    )
    return {
        "queued_count": by_status[MessageStatus.PENDING],
        # a delivered row was sent first
        "sent_count": by_status[MessageStatus.QUEUED] + by_status[MessageStatus.SENDING]
        + by_status[MessageStatus.SENT] + by_status[MessageStatus.DELIVERED],
        "delivered_count": by_status[MessageStatus.DELIVERED],
        "failed_count": failed,
        "clicked_count": sums["clicked"] or 0,
        "converted_count": sums["converted"] or 0,
        "total_revenue": sums["revenue"] or Decimal("0"),
        "total_cost": sums["cost"] or Decimal("0"),
    }
