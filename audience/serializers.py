from rest_framework import serializers
from audience.models import Customer, MailingList, Subscriber
from providers import telnyx


class SubscriberSerializer(serializers.ModelSerializer):

    class Meta:
        model = Subscriber
        fields = [
            "id", "phone", "phone_formatted", "status", "source", "discount_code",
            "discount_percent", "welcome_status", "converted", "country_code",
            "last_engaged_at", "unsubscribed_at", "unsubscribe_reason", "created_at",
        ]
        read_only_fields = ["phone_formatted", "last_engaged_at", "unsubscribed_at", "unsubscribe_reason", "created_at"]

    def validate_phone(self, value):
        formatted = telnyx.format_phone(value)
        if not formatted:
            raise serializers.ValidationError("Invalid phone number.")
        return formatted

    def create(self, validated_data):
        validated_data["phone_formatted"] = telnyx.format_for_display(validated_data["phone"])
        return super().create(validated_data)


class CustomerSerializer(serializers.ModelSerializer):
    list_names = serializers.SlugRelatedField(source="lists", many=True, read_only=True, slug_field="name")

    class Meta:
        model = Customer
        fields = [
            "id", "email", "first_name", "last_name", "phone", "accepts_marketing",
            "email_status", "is_bounced", "bounce_type", "bounce_count", "last_bounce_at",
            "bounce_reason", "bounced_campaign_ref", "list_names", "created_at",
        ]
        read_only_fields = [
            "email_status", "is_bounced", "bounce_type", "bounce_count",
            "last_bounce_at", "bounce_reason", "bounced_campaign_ref", "created_at",
        ]


class MailingListSerializer(serializers.ModelSerializer):

    class Meta:
        model = MailingList
        fields = ["id", "name", "description", "member_count", "is_active", "created_at"]
        read_only_fields = ["member_count", "created_at"]


class MailingListDetailSerializer(serializers.ModelSerializer):
    members = serializers.SlugRelatedField(many=True, read_only=True, slug_field="email")

    class Meta:
        model = MailingList
        fields = ["id", "name", "description", "member_count", "members", "is_active", "created_at"]


class MembershipSerializer(serializers.Serializer):
    customer_id = serializers.PrimaryKeyRelatedField(queryset=Customer.objects.all(), source="customer")
