from datetime import timedelta
from decimal import Decimal
import logging
import re
import uuid

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone

log = logging.getLogger(__name__)

MESSAGE_MAX_LENGTH = getattr(settings, "SMS_MESSAGE_MAX_LENGTH", 1600)

_NON_ASCII = re.compile(r"[^\x00-\x7F]")


def count_segments(text: str) -> int:
    """SMS segments for ``text``: GSM-7 160/153, anything non-ASCII 70/67."""
    length = len(text or "")
    if _NON_ASCII.search(text or ""):
        single, multi = 70, 67
    else:
        single, multi = 160, 153
    if length <= single:
        return 1
    return -(-length // multi)


class CampaignStatus(models.TextChoices):
    Draft = "draft", "Draft"
    Scheduled = "scheduled", "Scheduled"
    Sending = "sending", "Sending"
    Paused = "paused", "Paused"
    Sent = "sent", "Sent"
    Cancelled = "cancelled", "Cancelled"
    Failed = "failed", "Failed"


TERMINAL_STATUSES = {CampaignStatus.Sent, CampaignStatus.Cancelled, CampaignStatus.Failed}
EDITABLE_STATUSES = {CampaignStatus.Draft, CampaignStatus.Scheduled}


class DiscountType(models.TextChoices):
    NONE = "none", "None"
    STATIC = "static", "Static"
    DYNAMIC = "dynamic", "Dynamic"


class AudienceType(models.TextChoices):
    ALL_DELIVERED = "all_delivered", "All delivered"
    NOT_CONVERTED = "not_converted", "Not converted"
    CONVERTED = "converted", "Converted"
    RECENT_7D = "recent_7d", "Subscribed in last 7 days"
    RECENT_30D = "recent_30d", "Subscribed in last 30 days"
    INACTIVE_30D = "inactive_30d", "No engagement in 30 days"
    CUSTOM = "custom", "Custom"


# Subscriber lookups accepted in ``custom_filter``
CUSTOM_FILTER_FIELDS = frozenset({
    "converted",
    "country_code",
    "country_code__in",
    "source",
    "source__in",
    "discount_percent",
    "discount_percent__gte",
    "discount_percent__lte",
    "created_at__gte",
    "created_at__lte",
    "last_engaged_at__gte",
    "last_engaged_at__lt",
    "last_engaged_at__isnull",
})


class Campaign(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="")
    status = models.CharField(max_length=20, choices=CampaignStatus.choices, default=CampaignStatus.Draft, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    # Message
    message = models.TextField(max_length=MESSAGE_MAX_LENGTH)
    message_length = models.PositiveIntegerField(default=0)
    segments = models.PositiveSmallIntegerField(default=1)

    # Discount
    discount_type = models.CharField(max_length=10, choices=DiscountType.choices, default=DiscountType.NONE)
    discount_code = models.CharField(max_length=40, blank=True, default="")
    discount_percent = models.PositiveSmallIntegerField(null=True, blank=True)
    dynamic_min = models.PositiveSmallIntegerField(null=True, blank=True)
    dynamic_max = models.PositiveSmallIntegerField(null=True, blank=True)
    dynamic_code_prefix = models.CharField(max_length=20, blank=True, default="SMS")
    discount_rules = models.JSONField(default=dict, blank=True)  # "15" -> {code, price_rule_id, discount_id}

    # Audience
    audience_type = models.CharField(max_length=20, choices=AudienceType.choices, default=AudienceType.ALL_DELIVERED)
    target_country = models.CharField(max_length=3, blank=True, default="all")
    custom_filter = models.JSONField(default=dict, blank=True)
    excluded_subscribers = models.ManyToManyField("audience.Subscriber", blank=True, related_name="excluded_from_campaigns")

    # Scheduling
    scheduled_at = models.DateTimeField(null=True, blank=True, db_index=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    # Stats (denormalized rollups)
    eligible_count = models.PositiveIntegerField(default=0)
    queued_count = models.IntegerField(default=0)
    sent_count = models.IntegerField(default=0)
    delivered_count = models.IntegerField(default=0)
    failed_count = models.IntegerField(default=0)
    clicked_count = models.IntegerField(default=0)
    converted_count = models.IntegerField(default=0)
    unsubscribed_count = models.IntegerField(default=0)
    total_revenue = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_cost = models.DecimalField(max_digits=12, decimal_places=4, default=0)
    delivery_rate = models.DecimalField(max_digits=5, decimal_places=1, default=0)   # percent
    click_rate = models.DecimalField(max_digits=5, decimal_places=1, default=0)      # percent
    conversion_rate = models.DecimalField(max_digits=5, decimal_places=1, default=0)  # percent
    roi = models.DecimalField(max_digits=12, decimal_places=0, default=0)            # percent

    test_sends = models.JSONField(default=list, blank=True)
    tags = models.JSONField(default=list, blank=True)
    notes = models.TextField(blank=True, default="")

    class Meta:
        indexes = [
            models.Index(fields=["status", "scheduled_at"]),
        ]
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.name} ({self.status})"

    def save(self, *args, **kwargs):
        self.message_length = len(self.message or "")
        self.segments = count_segments(self.message)
        update_fields = kwargs.get("update_fields")
        if update_fields is not None and "message" in update_fields:
            kwargs["update_fields"] = set(update_fields) | {"message_length", "segments"}
        super().save(*args, **kwargs)

    # ---- audience ----

    def build_audience_filter(self) -> Q:
        # Base audience: active and the welcome SMS reached the handset
        q = Q(status="active", welcome_status="delivered")
        if self.target_country and self.target_country != "all":
            q &= Q(country_code=self.target_country)

        now = timezone.now()
        kind = self.audience_type
        if kind == AudienceType.NOT_CONVERTED:
            q &= Q(converted=False)
        elif kind == AudienceType.CONVERTED:
            q &= Q(converted=True)
        elif kind == AudienceType.RECENT_7D:
            q &= Q(created_at__gte=now - timedelta(days=7))
        elif kind == AudienceType.RECENT_30D:
            q &= Q(created_at__gte=now - timedelta(days=30))
        elif kind == AudienceType.INACTIVE_30D:
            q &= Q(last_engaged_at__lt=now - timedelta(days=30))
        elif kind == AudienceType.CUSTOM:
            q &= Q(**self.allowed_custom_filter())
        return q

    def allowed_custom_filter(self) -> dict:
        raw = self.custom_filter or {}
        unknown = set(raw) - CUSTOM_FILTER_FIELDS
        if unknown:
            log.warning("campaign=%s ignoring custom filter lookups %s", self.pk, sorted(unknown))
        return {k: v for k, v in raw.items() if k in CUSTOM_FILTER_FIELDS}

    def eligible_subscribers(self, limit: int | None = None):
        from audience.models import Subscriber

        qs = Subscriber.objects.filter(self.build_audience_filter())
        if self.pk and not self._state.adding:
            excluded = self.excluded_subscribers.values_list("pk", flat=True)
            qs = qs.exclude(pk__in=excluded)
        qs = qs.order_by("created_at", "pk")
        if limit:
            qs = qs[:limit]
        return qs

    def get_eligible_count(self) -> int:
        return self.eligible_subscribers().count()

    # ---- lifecycle ----

    @property
    def is_editable(self) -> bool:
        return self.status in EDITABLE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_scheduled(self, when):
        self.status = CampaignStatus.Scheduled
        self.scheduled_at = when

    def mark_sending(self):
        self.status = CampaignStatus.Sending
        self.started_at = self.started_at or timezone.now()

    def mark_paused(self):
        self.status = CampaignStatus.Paused

    def mark_sent(self):
        self.status = CampaignStatus.Sent
        self.completed_at = timezone.now()

    def mark_cancelled(self, reason: str = ""):
        self.status = CampaignStatus.Cancelled
        self.completed_at = timezone.now()
        if reason:
            self.add_note(f"cancelled: {reason}")

    def mark_failed(self, error: str):
        self.status = CampaignStatus.Failed
        self.completed_at = timezone.now()
        self.add_note(f"send failed: {error}")

    def add_note(self, text: str):
        stamp = timezone.now().isoformat(timespec="seconds")
        self.notes = f"{self.notes}\n[{stamp}] {text}".strip()

    # ---- stats ----

    def update_rates(self):
        def pct(part, whole) -> Decimal:
            return (Decimal(part) * 100 / Decimal(whole)).quantize(Decimal("0.1"))

        self.delivery_rate = pct(self.delivered_count, self.sent_count) if self.sent_count > 0 else Decimal("0")
        if self.delivered_count > 0:
            self.click_rate = pct(self.clicked_count, self.delivered_count)
            self.conversion_rate = pct(self.converted_count, self.delivered_count)
        else:
            self.click_rate = self.conversion_rate = Decimal("0")
        cost = Decimal(self.total_cost or 0)
        if cost > 0:
            self.roi = ((Decimal(self.total_revenue or 0) - cost) * 100 / cost).quantize(Decimal("1"))
        else:
            self.roi = Decimal("0")
        return self

    def stats(self) -> dict:
        return {
            "eligible": self.eligible_count,
            "queued": self.queued_count,
            "sent": self.sent_count,
            "delivered": self.delivered_count,
            "failed": self.failed_count,
            "clicked": self.clicked_count,
            "converted": self.converted_count,
            "unsubscribed": self.unsubscribed_count,
            "total_revenue": float(self.total_revenue or 0),
            "total_cost": float(self.total_cost or 0),
            "delivery_rate": float(self.delivery_rate),
            "click_rate": float(self.click_rate),
            "conversion_rate": float(self.conversion_rate),
            "roi": float(self.roi),
        }

    def record_test_send(self, phone: str, provider_message_id: str | None, status: str):
        self.test_sends = list(self.test_sends or []) + [{
            "phone": phone,
            "sent_at": timezone.now().isoformat(),
            "status": status,
            "message_id": provider_message_id,
        }]
        self.save(update_fields=["test_sends", "updated_at"])


class MessageStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    QUEUED = "queued", "Queued"
    SENDING = "sending", "Sending"
    SENT = "sent", "Sent"
    DELIVERED = "delivered", "Delivered"
    FAILED = "failed", "Failed"
    UNDELIVERED = "undelivered", "Undelivered"
    REJECTED = "rejected", "Rejected"

    @classmethod
    def rank(cls, value: str) -> int:
        return _MESSAGE_RANK.get(value, -1)

    @classmethod
    def is_terminal(cls, value: str) -> bool:
        return value in FINAL_MESSAGE_STATUSES

    @classmethod
    def can_transition(cls, current: str, new: str) -> bool:
        """Forward-only; nothing leaves a final status."""
        if current == new or cls.is_terminal(current):
            return False
        return cls.rank(new) > cls.rank(current)


FAILURE_MESSAGE_STATUSES = {MessageStatus.FAILED, MessageStatus.UNDELIVERED, MessageStatus.REJECTED}
FINAL_MESSAGE_STATUSES = {MessageStatus.DELIVERED} | FAILURE_MESSAGE_STATUSES

_MESSAGE_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.QUEUED: 1,
    MessageStatus.SENDING: 2,
    MessageStatus.SENT: 3,
    MessageStatus.DELIVERED: 4,
    MessageStatus.FAILED: 4,
    MessageStatus.UNDELIVERED: 4,
    MessageStatus.REJECTED: 4,
}


class Message(models.Model):
    """
    One row per (campaign, subscriber). Rows are written in ``pending`` when the
    campaign starts sending and only ever move forward.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    campaign = models.ForeignKey(Campaign, on_delete=models.CASCADE, related_name="messages")
    subscriber = models.ForeignKey("audience.Subscriber", on_delete=models.CASCADE, related_name="campaign_messages")
    phone = models.CharField(max_length=20)

    body = models.TextField(blank=True, default="")
    segments = models.PositiveSmallIntegerField(default=1)
    discount_code = models.CharField(max_length=40, blank=True, default="", db_index=True)
    discount_percent = models.PositiveSmallIntegerField(null=True, blank=True)

    provider_message_id = models.CharField(max_length=100, null=True, blank=True, unique=True)
    status = models.CharField(max_length=20, choices=MessageStatus.choices, default=MessageStatus.PENDING, db_index=True)
    error_code = models.CharField(max_length=40, blank=True, default="")
    error_message = models.TextField(blank=True, default="")

    queued_at = models.DateTimeField(null=True, blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)

    clicked = models.BooleanField(default=False)
    clicked_at = models.DateTimeField(null=True, blank=True)
    click_data = models.JSONField(default=dict, blank=True)

    converted = models.BooleanField(default=False, db_index=True)
    converted_at = models.DateTimeField(null=True, blank=True)
    conversion_data = models.JSONField(default=dict, blank=True)
    revenue = models.DecimalField(max_digits=12, decimal_places=2, default=0)

    cost = models.DecimalField(max_digits=10, decimal_places=4, null=True, blank=True)
    carrier = models.CharField(max_length=100, blank=True, default="")
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["campaign", "subscriber"], name="uniq_campaign_subscriber"),
        ]
        indexes = [
            models.Index(fields=["campaign", "status"]),
            models.Index(fields=["campaign", "converted"]),
            models.Index(fields=["phone"]),
        ]
        ordering = ["created_at"]

    def __str__(self):
        return f"{self.campaign_id} -> {self.phone} ({self.status})"


class EmailCampaign(models.Model):
    """
    One email blast to a mailing list, sent through Resend.

    Shares the campaign status vocabulary but only walks
    draft -> sending -> sent, with cancelled and failed as exits.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    subject = models.CharField(max_length=255)
    html = models.TextField()
    from_email = models.CharField(max_length=255, blank=True, default="")
    reply_to = models.CharField(max_length=255, blank=True, default="")
    mailing_list = models.ForeignKey("audience.MailingList", on_delete=models.SET_NULL, null=True, blank=True,
                                     related_name="email_campaigns")
    status = models.CharField(max_length=20, choices=CampaignStatus.choices, default=CampaignStatus.Draft,
                              db_index=True)

    recipients_count = models.PositiveIntegerField(default=0)
    sent_count = models.PositiveIntegerField(default=0)
    failed_count = models.PositiveIntegerField(default=0)
    delivered_count = models.PositiveIntegerField(default=0)
    opened_count = models.PositiveIntegerField(default=0)
    clicked_count = models.PositiveIntegerField(default=0)
    bounced_count = models.PositiveIntegerField(default=0)
    complained_count = models.PositiveIntegerField(default=0)

    notes = models.TextField(blank=True, default="")
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.name} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_sending(self):
        self.status = CampaignStatus.Sending
        self.started_at = self.started_at or timezone.now()

    def mark_sent(self):
        self.status = CampaignStatus.Sent
        self.completed_at = timezone.now()

    def mark_cancelled(self):
        self.status = CampaignStatus.Cancelled
        self.completed_at = timezone.now()

    def mark_failed(self, error: str):
        self.status = CampaignStatus.Failed
        self.completed_at = timezone.now()
        stamp = timezone.now().isoformat(timespec="seconds")
        self.notes = f"{self.notes}\n[{stamp}] send failed: {error}".strip()

    def stats(self) -> dict:
        def pct(part, whole):
            return round(part * 100 / whole, 1) if whole else 0.0

        return {
            "recipients": self.recipients_count,
            "sent": self.sent_count,
            "failed": self.failed_count,
            "delivered": self.delivered_count,
            "opened": self.opened_count,
            "clicked": self.clicked_count,
            "bounced": self.bounced_count,
            "complained": self.complained_count,
            "delivery_rate": pct(self.delivered_count, self.sent_count),
            "open_rate": pct(self.opened_count, self.delivered_count),
            "click_rate": pct(self.clicked_count, self.delivered_count),
            "bounce_rate": pct(self.bounced_count, self.sent_count),
        }


class EmailSendStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    SENT = "sent", "Sent"
    DELIVERED = "delivered", "Delivered"
    OPENED = "opened", "Opened"
    CLICKED = "clicked", "Clicked"
    BOUNCED = "bounced", "Bounced"
    COMPLAINED = "complained", "Complained"
    FAILED = "failed", "Failed"

    @classmethod
    def rank(cls, value: str) -> int:
        return _EMAIL_RANK.get(value, -1)

    @classmethod
    def can_transition(cls, current: str, new: str) -> bool:
        if current == new or current in FINAL_EMAIL_STATUSES:
            return False
        return cls.rank(new) > cls.rank(current)


FINAL_EMAIL_STATUSES = {EmailSendStatus.BOUNCED, EmailSendStatus.COMPLAINED, EmailSendStatus.FAILED}

_EMAIL_RANK = {
    EmailSendStatus.PENDING: 0,
    EmailSendStatus.SENT: 1,
    EmailSendStatus.DELIVERED: 2,
    EmailSendStatus.OPENED: 3,
    EmailSendStatus.CLICKED: 4,
    EmailSendStatus.BOUNCED: 5,
    EmailSendStatus.COMPLAINED: 5,
    EmailSendStatus.FAILED: 5,
}


class EmailSend(models.Model):
    """One row per (email campaign, customer); moves forward like ``Message``."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email_campaign = models.ForeignKey(EmailCampaign, on_delete=models.CASCADE, related_name="sends")
    customer = models.ForeignKey("audience.Customer", on_delete=models.CASCADE, related_name="email_sends")
    email = models.EmailField()

    provider_message_id = models.CharField(max_length=100, null=True, blank=True, unique=True)
    status = models.CharField(max_length=20, choices=EmailSendStatus.choices, default=EmailSendStatus.PENDING,
                              db_index=True)
    error_message = models.TextField(blank=True, default="")

    sent_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    opened_at = models.DateTimeField(null=True, blank=True)
    clicked_at = models.DateTimeField(null=True, blank=True)
    bounced_at = models.DateTimeField(null=True, blank=True)
    complained_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["email_campaign", "customer"], name="uniq_email_campaign_customer"),
        ]
        indexes = [
            models.Index(fields=["email_campaign", "status"]),
            models.Index(fields=["email"]),
        ]
        ordering = ["created_at"]

    def __str__(self):
        return f"{self.email_campaign_id} -> {self.email} ({self.status})"
