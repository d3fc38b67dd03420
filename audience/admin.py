from django.contrib import admin

from .models import Customer, MailingList, Subscriber
from .services import bounces


@admin.register(Subscriber)
class SubscriberAdmin(admin.ModelAdmin):
    list_display = ("phone", "status", "welcome_status", "converted", "country_code", "created_at")
    list_filter = ("status", "welcome_status", "converted", "country_code", "source")
    search_fields = ("phone", "discount_code")
    date_hierarchy = "created_at"


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = ("email", "email_status", "is_bounced", "bounce_type", "bounce_count", "last_bounce_at")
    list_filter = ("email_status", "is_bounced", "bounce_type")
    search_fields = ("email", "first_name", "last_name")
    readonly_fields = ("is_bounced", "bounce_type", "bounce_count", "last_bounce_at", "bounce_reason", "bounced_campaign_ref")
    actions = ["reset_bounces"]

    def reset_bounces(self, request, queryset):
        for customer in queryset:
            bounces.reset_bounce_info(customer)
        self.message_user(request, f"Reset bounce info for {queryset.count()} customer(s).")
    reset_bounces.short_description = "Reset bounce info"


@admin.register(MailingList)
class MailingListAdmin(admin.ModelAdmin):
    list_display = ("name", "member_count", "is_active", "created_at")
    search_fields = ("name",)
    readonly_fields = ("member_count",)
