# campaign/admin.py
from django.contrib import admin

from .models import Campaign, EmailCampaign, EmailSend, Message
from .services import campaigns, email_service, exceptions


@admin.register(Campaign)
class CampaignAdmin(admin.ModelAdmin):
    list_display = (
        "name", "status", "audience_type", "eligible_count",
        "sent_count", "delivered_count", "converted_count", "created_at",
    )
    list_filter = ("status", "audience_type", "discount_type", "created_at")
    search_fields = ("name", "message")
    date_hierarchy = "created_at"
    filter_horizontal = ("excluded_subscribers",)

    # runtime fields are written by the send path only
    readonly_fields = (
        "id", "created_at", "updated_at", "status",
        "message_length", "segments", "discount_rules",
        "started_at", "completed_at",
        "eligible_count", "queued_count", "sent_count", "delivered_count", "failed_count",
        "clicked_count", "converted_count", "unsubscribed_count",
        "total_revenue", "total_cost", "delivery_rate", "click_rate", "conversion_rate", "roi",
        "test_sends",
    )

    fieldsets = (
        ("Basics", {
            "fields": ("name", "description", "status", "tags"),
        }),
        ("Message", {
            "fields": ("message", "message_length", "segments"),
        }),
        ("Discount", {
            "fields": ("discount_type", "discount_code", "discount_percent",
                       "dynamic_min", "dynamic_max", "dynamic_code_prefix", "discount_rules"),
        }),
        ("Audience", {
            "fields": ("audience_type", "target_country", "custom_filter", "excluded_subscribers"),
        }),
        ("Sending", {
            "fields": ("scheduled_at", "started_at", "completed_at"),
        }),
        ("Stats", {
            "fields": ("eligible_count", "queued_count", "sent_count", "delivered_count", "failed_count",
                       "clicked_count", "converted_count", "unsubscribed_count",
                       "total_revenue", "total_cost", "delivery_rate", "click_rate", "conversion_rate", "roi"),
        }),
        ("Meta", {
            "fields": ("id", "test_sends", "notes", "created_at", "updated_at"),
        }),
    )

    actions = ["recalculate_stats", "send_now"]

    def recalculate_stats(self, request, queryset):
        for campaign in queryset:
            campaigns.recalculate_stats(campaign)
        self.message_user(request, f"Recalculated stats for {queryset.count()} campaign(s).")
    recalculate_stats.short_description = "Recalculate stats from messages"

    def send_now(self, request, queryset):
        started = 0
        for campaign in queryset:
            try:
                campaigns.send_campaign(campaign_id=campaign.pk)
                started += 1
            except exceptions.DomainError as e:
                self.message_user(request, f"{campaign.name}: {e}", level="warning")
        self.message_user(request, f"Started sending for {started} campaign(s).")
    send_now.short_description = "Send now (enqueue Celery tasks)"


@admin.register(Message)
class MessageAdmin(admin.ModelAdmin):
    list_display = ("phone", "campaign", "status", "clicked", "converted", "revenue", "sent_at")
    list_filter = ("status", "clicked", "converted")
    search_fields = ("phone", "provider_message_id", "discount_code")
    raw_id_fields = ("campaign", "subscriber")
    readonly_fields = ("provider_message_id", "queued_at", "sent_at", "delivered_at", "failed_at",
                       "clicked_at", "click_data", "converted_at", "conversion_data")


@admin.register(EmailCampaign)
class EmailCampaignAdmin(admin.ModelAdmin):
    list_display = ("name", "subject", "mailing_list", "status", "recipients_count", "sent_count",
                    "opened_count", "bounced_count", "created_at")
    list_filter = ("status", "created_at")
    search_fields = ("name", "subject")
    readonly_fields = ("id", "status", "recipients_count", "sent_count", "failed_count", "delivered_count",
                       "opened_count", "clicked_count", "bounced_count", "complained_count",
                       "started_at", "completed_at", "created_at", "updated_at")

    actions = ["send_now"]

    def send_now(self, request, queryset):
        started = 0
        for campaign in queryset:
            try:
                email_service.send_email_campaign(campaign_id=campaign.pk)
                started += 1
            except exceptions.DomainError as e:
                self.message_user(request, f"{campaign.name}: {e}", level="warning")
        self.message_user(request, f"Started sending for {started} email campaign(s).")
    send_now.short_description = "Send now (enqueue Celery tasks)"


@admin.register(EmailSend)
class EmailSendAdmin(admin.ModelAdmin):
    list_display = ("email", "email_campaign", "status", "sent_at", "opened_at")
    list_filter = ("status",)
    search_fields = ("email", "provider_message_id")
    raw_id_fields = ("email_campaign", "customer")
