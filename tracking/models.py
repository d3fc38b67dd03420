from django.db import models
from django.utils import timezone
import uuid


class SourceType(models.TextChoices):
    SMS_CAMPAIGN = "sms_campaign", "SMS campaign"
    SMS_WELCOME = "sms_welcome", "SMS welcome"
    SMS_SECOND_CHANCE = "sms_second_chance", "SMS second chance"
    SMS_TRANSACTIONAL = "sms_transactional", "SMS transactional"
    OTHER = "other", "Other"


class ShortUrl(models.Model):
    """
    One short code per (message, destination URL). ``clicked_ips`` and
    ``click_history`` are bounded lists, so ``unique_clicks`` is approximate once
    more than ``SHORT_URL_IP_LIMIT`` distinct IPs have clicked.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=32, unique=True)
    original_url = models.TextField()
    source_type = models.CharField(max_length=24, choices=SourceType.choices, default=SourceType.OTHER, db_index=True)

    campaign = models.ForeignKey("campaign.Campaign", null=True, blank=True, on_delete=models.SET_NULL, related_name="short_urls")
    subscriber = models.ForeignKey("audience.Subscriber", null=True, blank=True, on_delete=models.SET_NULL, related_name="short_urls")
    message = models.ForeignKey("campaign.Message", null=True, blank=True, on_delete=models.SET_NULL, related_name="short_urls")

    # Click counters
    clicks = models.PositiveIntegerField(default=0)
    unique_clicks = models.PositiveIntegerField(default=0)
    clicked_ips = models.JSONField(default=list, blank=True)
    click_history = models.JSONField(default=list, blank=True)
    last_clicked_at = models.DateTimeField(null=True, blank=True)

    converted = models.BooleanField(default=False)
    conversion_data = models.JSONField(default=dict, blank=True)

    discount_code = models.CharField(max_length=40, blank=True, default="")
    metadata = models.JSONField(default=dict, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        indexes = [
            models.Index(fields=["campaign", "clicks"]),
            models.Index(fields=["source_type", "created_at"]),
        ]

    def __str__(self):
        return f"{self.code} → {self.original_url}"

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at <= timezone.now()

    @property
    def is_usable(self) -> bool:
        return self.is_active and not self.is_expired
