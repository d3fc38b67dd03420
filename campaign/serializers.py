from django.utils import timezone
from rest_framework import serializers

from audience.models import MailingList, Subscriber
from providers import telnyx
from .models import (
    CUSTOM_FILTER_FIELDS, MESSAGE_MAX_LENGTH, AudienceType, Campaign, CampaignStatus, DiscountType, EmailCampaign,
)

STAT_FIELDS = [
    "eligible_count", "queued_count", "sent_count", "delivered_count", "failed_count",
    "clicked_count", "converted_count", "unsubscribed_count", "total_revenue", "total_cost",
    "delivery_rate", "click_rate", "conversion_rate", "roi",
]


def validate_custom_filter(value):
    if not isinstance(value, dict):
        raise serializers.ValidationError("Must be an object of subscriber lookups.")
    unknown = sorted(set(value) - CUSTOM_FILTER_FIELDS)
    if unknown:
        raise serializers.ValidationError(f"Unsupported lookups: {', '.join(unknown)}.")
    return value


class CampaignSerializer(serializers.ModelSerializer):
    message = serializers.CharField(max_length=MESSAGE_MAX_LENGTH)
    excluded_subscribers = serializers.PrimaryKeyRelatedField(
        many=True, queryset=Subscriber.objects.all(), required=False,
    )

    class Meta:
        model = Campaign
        fields = [
            "id", "name", "description", "status", "message", "message_length", "segments",
            "discount_type", "discount_code", "discount_percent", "dynamic_min", "dynamic_max",
            "dynamic_code_prefix", "discount_rules",
            "audience_type", "target_country", "custom_filter", "excluded_subscribers",
            "scheduled_at", "started_at", "completed_at",
            *STAT_FIELDS,
            "test_sends", "tags", "notes", "created_at", "updated_at",
        ]
        read_only_fields = [
            "status", "message_length", "segments", "discount_rules",
            "started_at", "completed_at", *STAT_FIELDS, "test_sends", "created_at", "updated_at",
        ]

    def validate_custom_filter(self, value):
        return validate_custom_filter(value)

    def validate_scheduled_at(self, value):
        if value and value <= timezone.now():
            raise serializers.ValidationError("Scheduled time must be in the future.")
        return value

    def validate(self, attrs):
        inst = getattr(self, "instance", None)

        def current(name):
            if name in attrs:
                return attrs[name]
            return getattr(inst, name, None) if inst else None

        kind = current("discount_type") or DiscountType.NONE
        if kind == DiscountType.STATIC:
            if not current("discount_code"):
                raise serializers.ValidationError({"discount_code": "Required for a static discount."})
        elif kind == DiscountType.DYNAMIC:
            low, high = current("dynamic_min"), current("dynamic_max")
            if low is None or high is None:
                raise serializers.ValidationError({"dynamic_min": "Dynamic discounts need dynamic_min and dynamic_max."})
            if not 1 <= low <= high <= 100:
                raise serializers.ValidationError({"dynamic_max": "Need 1 <= dynamic_min <= dynamic_max <= 100."})
        if current("audience_type") == AudienceType.CUSTOM and not current("custom_filter"):
            raise serializers.ValidationError({"custom_filter": "Required for a custom audience."})
        return super().validate(attrs)

    def create(self, validated_data):
        excluded = validated_data.pop("excluded_subscribers", [])
        validated_data["status"] = (
            CampaignStatus.Scheduled if validated_data.get("scheduled_at") else CampaignStatus.Draft
        )
        if validated_data.get("discount_code"):
            validated_data["discount_code"] = validated_data["discount_code"].upper()
        campaign = super().create(validated_data)
        if excluded:
            campaign.excluded_subscribers.set(excluded)
        campaign.eligible_count = campaign.get_eligible_count()
        campaign.save(update_fields=["eligible_count"])
        return campaign

    def update(self, instance, validated_data):
        if validated_data.get("discount_code"):
            validated_data["discount_code"] = validated_data["discount_code"].upper()
        return super().update(instance, validated_data)


class SendTestSerializer(serializers.Serializer):
    phone = serializers.CharField(max_length=32)

    def validate_phone(self, value):
        if not telnyx.format_phone(value):
            raise serializers.ValidationError("Invalid phone number.")
        return value


class AudienceCountSerializer(serializers.Serializer):
    audience_type = serializers.ChoiceField(choices=AudienceType.choices, default=AudienceType.ALL_DELIVERED)
    target_country = serializers.CharField(max_length=3, required=False, default="all")
    custom_filter = serializers.JSONField(required=False, default=dict, binary=True)

    def validate_custom_filter(self, value):
        return validate_custom_filter(value or {})


class OverviewSerializer(serializers.Serializer):
    days = serializers.IntegerField(min_value=1, max_value=365, default=30)


EMAIL_STAT_FIELDS = [
    "recipients_count", "sent_count", "failed_count", "delivered_count", "opened_count",
    "clicked_count", "bounced_count", "complained_count",
]


class EmailCampaignSerializer(serializers.ModelSerializer):
    mailing_list = serializers.PrimaryKeyRelatedField(queryset=MailingList.objects.filter(is_active=True))

    class Meta:
        model = EmailCampaign
        fields = [
            "id", "name", "subject", "html", "from_email", "reply_to", "mailing_list", "status",
            *EMAIL_STAT_FIELDS, "notes", "started_at", "completed_at", "created_at", "updated_at",
        ]
        read_only_fields = ["status", *EMAIL_STAT_FIELDS, "started_at", "completed_at", "created_at", "updated_at"]
