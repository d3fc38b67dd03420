from django.db import models
from django.utils import timezone
import uuid


class SubscriberStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    UNSUBSCRIBED = "unsubscribed", "Unsubscribed"
    BOUNCED = "bounced", "Bounced"
    INVALID = "invalid", "Invalid"


class Source(models.TextChoices):
    POPUP = "popup", "Popup"
    CHECKOUT = "checkout", "Checkout"
    LANDING_PAGE = "landing_page", "Landing page"
    IMPORT = "import", "Import"
    MANUAL = "manual", "Manual"
    API = "api", "API"
    TEST = "test", "Test"


class EmailStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    BOUNCED = "bounced", "Bounced"
    UNSUBSCRIBED = "unsubscribed", "Unsubscribed"
    COMPLAINED = "complained", "Complained"


class BounceType(models.TextChoices):
    HARD = "hard", "Hard"
    SOFT = "soft", "Soft"


class Customer(models.Model):
    """Email audience member. Bounce state lives on the row."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email = models.EmailField(unique=True)
    first_name = models.CharField(max_length=100, blank=True, default="")
    last_name = models.CharField(max_length=100, blank=True, default="")
    phone = models.CharField(max_length=32, blank=True, default="")
    accepts_marketing = models.BooleanField(default=False, db_index=True)

    email_status = models.CharField(max_length=20, choices=EmailStatus.choices, default=EmailStatus.ACTIVE, db_index=True)

    # Bounce info
    is_bounced = models.BooleanField(default=False, db_index=True)
    bounce_type = models.CharField(max_length=10, choices=BounceType.choices, null=True, blank=True)
    bounce_count = models.PositiveIntegerField(default=0)
    last_bounce_at = models.DateTimeField(null=True, blank=True)
    bounce_reason = models.TextField(blank=True, default="")
    bounced_campaign_ref = models.CharField(max_length=64, blank=True, default="")

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["email_status", "is_bounced"]),
            models.Index(fields=["bounce_type"]),
        ]
        ordering = ["-created_at"]

    def __str__(self):
        return self.email

    def save(self, *args, **kwargs):
        if self.email:
            self.email = self.email.strip().lower()
        super().save(*args, **kwargs)

    @property
    def can_receive_email(self) -> bool:
        return self.email_status == EmailStatus.ACTIVE

    def mark_complained(self):
        if self.email_status != EmailStatus.COMPLAINED:
            self.email_status = EmailStatus.COMPLAINED
            self.save(update_fields=["email_status", "updated_at"])


class Subscriber(models.Model):
    """SMS audience member (one row per phone number)."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    phone = models.CharField(max_length=20, unique=True)
    phone_formatted = models.CharField(max_length=32, blank=True, default="")

    status = models.CharField(max_length=20, choices=SubscriberStatus.choices, default=SubscriberStatus.ACTIVE, db_index=True)
    source = models.CharField(max_length=20, choices=Source.choices, default=Source.POPUP)

    # Personal welcome code
    discount_code = models.CharField(max_length=40, unique=True, null=True, blank=True)
    discount_percent = models.PositiveSmallIntegerField(default=15)

    welcome_status = models.CharField(max_length=30, default="pending", db_index=True)
    welcome_sent_at = models.DateTimeField(null=True, blank=True)

    converted = models.BooleanField(default=False, db_index=True)
    country_code = models.CharField(max_length=2, blank=True, default="")

    last_engaged_at = models.DateTimeField(null=True, blank=True)
    unsubscribed_at = models.DateTimeField(null=True, blank=True)
    unsubscribe_reason = models.CharField(max_length=40, blank=True, default="")
    unsubscribe_keyword = models.CharField(max_length=20, blank=True, default="")

    customer = models.ForeignKey(Customer, null=True, blank=True, on_delete=models.SET_NULL, related_name="subscribers")

    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status", "welcome_status"]),
            models.Index(fields=["status", "converted"]),
        ]
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.phone} ({self.status})"

    @property
    def can_receive(self) -> bool:
        return self.status == SubscriberStatus.ACTIVE

    def mark_unsubscribed(self, keyword: str = "", reason: str = "stop_keyword"):
        if self.status != SubscriberStatus.UNSUBSCRIBED:
            self.status = SubscriberStatus.UNSUBSCRIBED
            self.unsubscribed_at = timezone.now()
            self.unsubscribe_reason = reason
            self.unsubscribe_keyword = keyword.upper()
            self.save(update_fields=["status", "unsubscribed_at", "unsubscribe_reason", "unsubscribe_keyword", "updated_at"])

    def mark_resubscribed(self):
        if self.status == SubscriberStatus.UNSUBSCRIBED:
            self.status = SubscriberStatus.ACTIVE
            self.unsubscribed_at = None
            self.unsubscribe_reason = ""
            self.unsubscribe_keyword = ""
            self.save(update_fields=["status", "unsubscribed_at", "unsubscribe_reason", "unsubscribe_keyword", "updated_at"])


class MailingList(models.Model):
    """Static list of customers. member_count is a cached copy of members.count()."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="")
    members = models.ManyToManyField(Customer, related_name="lists", blank=True)
    member_count = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return self.name

    def update_member_count(self):
        self.member_count = self.members.count()
        self.save(update_fields=["member_count"])

    def add_member(self, customer: Customer):
        if not self.members.filter(pk=customer.pk).exists():
            self.members.add(customer)
            self.update_member_count()

    def remove_member(self, customer: Customer):
        self.members.remove(customer)
        self.update_member_count()
