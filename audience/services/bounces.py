"""
Bounce/suppression handling for email customers.

A hard bounce suppresses the customer immediately. Soft bounces are counted and
escalate to a hard bounce once ``SOFT_BOUNCE_THRESHOLD`` is reached. Suppression
pulls the customer out of every mailing list in one bulk delete.
"""
from __future__ import annotations
import logging
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.db.models import F, Value
from django.db.models.functions import Greatest
from django.utils import timezone

from audience.models import BounceType, Customer, EmailStatus, MailingList

log = logging.getLogger(__name__)


def soft_bounce_threshold() -> int:
    return int(getattr(settings, "SOFT_BOUNCE_THRESHOLD", 3))


def _remove_from_all_lists(customer: Customer) -> int:
    through = MailingList.members.through
    memberships = through.objects.filter(customer_id=customer.pk)
    list_ids = list(memberships.values_list("mailinglist_id", flat=True))
    if not list_ids:
        return 0
    memberships.delete()
    MailingList.objects.filter(pk__in=list_ids).update(
        member_count=Greatest(F("member_count") - 1, Value(0))
    )
    return len(list_ids)


def mark_as_bounced(
    customer: Customer,
    kind: str = BounceType.SOFT,
    reason: str = "",
    campaign_ref: Optional[str] = None,
) -> Customer:
    """Record one bounce; returns the refreshed customer."""
    with transaction.atomic():
        c = Customer.objects.select_for_update().get(pk=customer.pk)
        c.bounce_count += 1
        c.last_bounce_at = timezone.now()
        c.bounce_reason = reason or ""
        c.bounce_type = BounceType.HARD if kind == BounceType.HARD else BounceType.SOFT
        if campaign_ref:
            c.bounced_campaign_ref = str(campaign_ref)

        promote = c.bounce_type == BounceType.HARD or c.bounce_count >= soft_bounce_threshold()
        if promote:
            c.bounce_type = BounceType.HARD
            c.is_bounced = True
            c.email_status = EmailStatus.BOUNCED

        c.save(update_fields=[
            "bounce_count", "last_bounce_at", "bounce_reason", "bounce_type",
            "bounced_campaign_ref", "is_bounced", "email_status", "updated_at",
        ])

        removed = _remove_from_all_lists(c) if promote else 0

    if promote:
        log.info("hard bounce email=%s count=%s lists_removed=%s", c.email, c.bounce_count, removed)
    else:
        log.info("soft bounce email=%s count=%s/%s", c.email, c.bounce_count, soft_bounce_threshold())
    return c


def reset_bounce_info(customer: Customer) -> Customer:
    customer.email_status = EmailStatus.ACTIVE
    customer.is_bounced = False
    customer.bounce_type = None
    customer.bounce_count = 0
    customer.last_bounce_at = None
    customer.bounce_reason = ""
    customer.bounced_campaign_ref = ""
    customer.save(update_fields=[
        "email_status", "is_bounced", "bounce_type", "bounce_count",
        "last_bounce_at", "bounce_reason", "bounced_campaign_ref", "updated_at",
    ])
    log.info("bounce info reset email=%s", customer.email)
    return customer
