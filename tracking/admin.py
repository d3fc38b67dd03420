from django.contrib import admin

from .models import ShortUrl


@admin.register(ShortUrl)
class ShortUrlAdmin(admin.ModelAdmin):
    list_display = ("code", "original_url", "source_type", "clicks", "unique_clicks", "converted", "is_active", "created_at")
    list_filter = ("source_type", "converted", "is_active")
    search_fields = ("code", "original_url", "discount_code")
    readonly_fields = ("clicks", "unique_clicks", "clicked_ips", "click_history", "last_clicked_at", "conversion_data")
    raw_id_fields = ("campaign", "subscriber", "message")
