from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from django.utils import timezone

from campaign.models import Campaign, Message, count_segments
from campaign.services import campaigns, exceptions
from campaign.tasks import dispatch_due_campaigns
from providers.shopify import ShopifyError

pytestmark = pytest.mark.django_db


@pytest.fixture
def no_queue():
    with patch("campaign.services.campaigns.process_campaign_queue") as task:
        yield task


class TestSegments:

    @pytest.mark.parametrize("text, expected", [
        ("", 1),
        ("a" * 160, 1),
        ("a" * 161, 2),
        ("a" * 306, 2),
        ("a" * 307, 3),
        ("ñ" * 70, 1),
        ("ñ" * 71, 2),
    ])
    def test_count_segments(self, text, expected):
        assert count_segments(text) == expected

    def test_save_computes_length_and_segments(self, make_campaign):
        campaign = make_campaign(message="a" * 200)
        assert campaign.message_length == 200
        assert campaign.segments == 2

        campaign.message = "short"
        campaign.save(update_fields=["message"])
        campaign.refresh_from_db()
        assert campaign.message_length == 5
        assert campaign.segments == 1


class TestAudience:

    def test_base_filter_requires_active_and_welcome_delivered(self, make_campaign, make_subscriber):
        ok = make_subscriber()
        make_subscriber(status="unsubscribed")
        make_subscriber(welcome_status="failed")
        campaign = make_campaign()
        assert list(campaign.eligible_subscribers()) == [ok]

    def test_country_and_conversion_filters(self, make_campaign, make_subscriber):
        us_new = make_subscriber(country_code="US")
        make_subscriber(country_code="US", converted=True)
        make_subscriber(country_code="CA")
        campaign = make_campaign(audience_type="not_converted", target_country="US")
        assert list(campaign.eligible_subscribers()) == [us_new]

    def test_inactive_30d(self, make_campaign, make_subscriber):
        stale = make_subscriber(last_engaged_at=timezone.now() - timedelta(days=45))
        make_subscriber(last_engaged_at=timezone.now() - timedelta(days=2))
        campaign = make_campaign(audience_type="inactive_30d")
        assert list(campaign.eligible_subscribers()) == [stale]

    def test_excluded_subscribers(self, make_campaign, make_subscriber):
        keep, skip = make_subscriber(), make_subscriber()
        campaign = make_campaign()
        campaign.excluded_subscribers.add(skip)
        assert list(campaign.eligible_subscribers()) == [keep]

    def test_custom_filter_drops_unknown_lookups(self, make_campaign, make_subscriber):
        ca = make_subscriber(country_code="CA")
        make_subscriber(country_code="US")
        campaign = make_campaign(audience_type="custom",
                                 custom_filter={"country_code__in": ["CA"], "phone__startswith": "+1"})
        assert campaign.allowed_custom_filter() == {"country_code__in": ["CA"]}
        assert list(campaign.eligible_subscribers()) == [ca]

    def test_audience_count_without_saving(self, make_subscriber):
        make_subscriber(converted=True)
        make_subscriber()
        assert campaigns.audience_count(audience_type="converted") == 1
        assert campaigns.audience_count(audience_type="all_delivered", target_country="CA") == 0


class TestSendCampaign:

    def test_snapshot_matches_eligible_count(self, make_campaign, make_subscriber, no_queue,
                                             django_capture_on_commit_callbacks):
        for _ in range(3):
            make_subscriber()
        make_subscriber(status="unsubscribed")
        campaign = make_campaign(discount_type="static", discount_code="PICKLE15", discount_percent=15)

        with django_capture_on_commit_callbacks(execute=True):
            result = campaigns.send_campaign(campaign_id=campaign.pk)

        campaign.refresh_from_db()
        assert result == {"campaign_id": str(campaign.pk), "queued": 3}
        assert campaign.status == "sending"
        assert campaign.started_at is not None
        assert campaign.eligible_count == campaign.queued_count == 3
        rows = Message.objects.filter(campaign=campaign)
        assert rows.count() == 3
        assert set(rows.values_list("discount_code", flat=True)) == {"PICKLE15"}
        no_queue.delay.assert_called_once_with(str(campaign.pk))

    def test_only_draft_or_scheduled(self, make_campaign, make_subscriber, no_queue):
        make_subscriber()
        campaign = make_campaign(status="sent")
        with pytest.raises(exceptions.InvalidState):
            campaigns.send_campaign(campaign_id=campaign.pk)
        assert not Message.objects.exists()

    def test_zero_recipients(self, make_campaign, no_queue):
        campaign = make_campaign()
        with pytest.raises(exceptions.ZeroRecipients):
            campaigns.send_campaign(campaign_id=campaign.pk)
        campaign.refresh_from_db()
        assert campaign.status == "draft"

    def test_dynamic_rules_are_provisioned(self, make_campaign, make_subscriber, no_queue):
        for _ in range(4):
            make_subscriber()
        campaign = make_campaign(discount_type="dynamic", dynamic_min=10, dynamic_max=12, dynamic_code_prefix="sms")
        client = MagicMock()
        client.provision_discount.side_effect = lambda code, pct: {"code": code, "price_rule_id": "1", "discount_id": "2"}

        campaigns.send_campaign(campaign_id=campaign.pk, shopify_client=client)

        campaign.refresh_from_db()
        assert sorted(campaign.discount_rules) == ["10", "11", "12"]
        assert campaign.discount_rules["11"]["code"] == "SMS11"
        for code, pct in Message.objects.filter(campaign=campaign).values_list("discount_code", "discount_percent"):
            assert 10 <= pct <= 12
            assert code == f"SMS{pct}"

    def test_provisioning_failure_leaves_draft(self, make_campaign, make_subscriber, no_queue):
        make_subscriber()
        campaign = make_campaign(discount_type="dynamic", dynamic_min=10, dynamic_max=11)
        client = MagicMock()
        client.provision_discount.side_effect = [{"code": "SMS10"}, ShopifyError("403 Forbidden")]

        with pytest.raises(exceptions.DiscountProvisioningError):
            campaigns.send_campaign(campaign_id=campaign.pk, shopify_client=client)

        campaign.refresh_from_db()
        assert campaign.status == "draft"
        assert not Message.objects.filter(campaign=campaign).exists()
        no_queue.delay.assert_not_called()


class TestLifecycle:

    def _sending(self, make_campaign, make_subscriber, n=2):
        for _ in range(n):
            make_subscriber()
        campaign = make_campaign()
        campaigns.send_campaign(campaign_id=campaign.pk)
        return campaign

    def test_pause_and_resume(self, make_campaign, make_subscriber, no_queue, django_capture_on_commit_callbacks):
        campaign = self._sending(make_campaign, make_subscriber)
        assert campaigns.pause_campaign(campaign.pk).status == "paused"
        with pytest.raises(exceptions.InvalidState):
            campaigns.pause_campaign(campaign.pk)

        with django_capture_on_commit_callbacks(execute=True):
            assert campaigns.resume_campaign(campaign.pk).status == "sending"
        no_queue.delay.assert_called_with(str(campaign.pk))

    def test_resume_requires_paused(self, make_campaign):
        campaign = make_campaign()
        with pytest.raises(exceptions.InvalidState):
            campaigns.resume_campaign(campaign.pk)

    def test_cancel_removes_pending_rows(self, make_campaign, make_subscriber, no_queue):
        campaign = self._sending(make_campaign, make_subscriber, n=3)
        sent = Message.objects.filter(campaign=campaign).first()
        Message.objects.filter(pk=sent.pk).update(status="sent")

        result = campaigns.cancel_campaign(campaign.pk)

        campaign.refresh_from_db()
        assert result["removed_pending"] == 2
        assert campaign.status == "cancelled"
        assert campaign.completed_at is not None
        assert list(Message.objects.filter(campaign=campaign).values_list("status", flat=True)) == ["sent"]

    def test_cannot_cancel_draft(self, make_campaign):
        with pytest.raises(exceptions.InvalidState):
            campaigns.cancel_campaign(make_campaign().pk)

    def test_delete_refuses_sending(self, make_campaign):
        campaign = make_campaign(status="sending")
        with pytest.raises(exceptions.InvalidState):
            campaigns.delete_campaign(campaign)
        assert Campaign.objects.filter(pk=campaign.pk).exists()


class TestTestSend:

    def test_invalid_phone(self, make_campaign, sms_client):
        with pytest.raises(exceptions.InvalidPhone):
            campaigns.send_test_sms(campaign_id=make_campaign().pk, phone="123", client=sms_client)
        assert sms_client.sent == []

    def test_prefix_and_history(self, make_campaign, sms_client):
        campaign = make_campaign(discount_type="static", discount_code="PICKLE15", discount_percent=15)

        result = campaigns.send_test_sms(campaign_id=campaign.pk, phone="(908) 555-0000", client=sms_client)

        campaign.refresh_from_db()
        to, body = sms_client.sent[0]
        assert to == "+19085550000"
        assert body.startswith("[TEST] Jersey Pickles: 15% off with PICKLE15")
        assert result["success"] and result["sent_to"] == "+19085550000"
        assert campaign.test_sends[0]["status"] == "sent"
        assert not Message.objects.filter(campaign=campaign).exists()


class TestStats:

    def test_recalculate_repairs_drift(self, make_campaign, make_subscriber):
        campaign = make_campaign(status="sent", sent_count=99, delivered_count=42)
        for status in ("delivered", "delivered", "failed"):
            sub = make_subscriber()
            Message.objects.create(campaign=campaign, subscriber=sub, phone=sub.phone, status=status)

        campaign = campaigns.recalculate_stats(campaign)

        assert campaign.sent_count == 2
        assert campaign.delivered_count == 2
        assert campaign.failed_count == 1
        assert float(campaign.delivery_rate) == 100.0

    def test_campaign_stats_shape(self, make_campaign):
        data = campaigns.campaign_stats(make_campaign())
        assert set(data) == {"stats", "messages", "recent_conversions", "clicks"}
        assert data["stats"]["eligible"] == 0


class TestScheduler:

    def test_due_campaign_starts(self, make_campaign, make_subscriber, no_queue):
        make_subscriber()
        due = make_campaign(status="scheduled", scheduled_at=timezone.now() - timedelta(minutes=1))
        later = make_campaign(status="scheduled", scheduled_at=timezone.now() + timedelta(hours=1))

        result = dispatch_due_campaigns()

        due.refresh_from_db()
        later.refresh_from_db()
        assert result["started"] == [str(due.pk)]
        assert due.status == "sending"
        assert later.status == "scheduled"

    def test_due_campaign_without_audience_is_cancelled(self, make_campaign, no_queue):
        due = make_campaign(status="scheduled", scheduled_at=timezone.now() - timedelta(minutes=1))
        dispatch_due_campaigns()
        due.refresh_from_db()
        assert due.status == "cancelled"
        assert due.completed_at is not None
        assert "cancelled: No eligible subscribers" in due.notes
        dispatch_due_campaigns()
        due.refresh_from_db()
        assert due.status == "cancelled"
