import pytest

from audience.services import bounces

pytestmark = pytest.mark.django_db


class TestMarkAsBounced:

    def test_hard_bounce_suppresses_and_leaves_lists(self, make_customer, make_list):
        customer = make_customer()
        other = make_customer()
        vip = make_list("VIP", [customer, other])
        news = make_list("News", [customer])

        customer = bounces.mark_as_bounced(customer, kind="hard", reason="mailbox does not exist", campaign_ref="c1")

        assert customer.is_bounced
        assert customer.bounce_type == "hard"
        assert customer.email_status == "bounced"
        assert customer.bounced_campaign_ref == "c1"
        assert not customer.can_receive_email
        vip.refresh_from_db()
        news.refresh_from_db()
        assert vip.member_count == 1
        assert news.member_count == 0
        assert list(vip.members.all()) == [other]

    def test_soft_bounces_escalate_at_threshold(self, make_customer, make_list):
        customer = make_customer()
        vip = make_list("VIP", [customer])

        for _ in range(2):
            customer = bounces.mark_as_bounced(customer, kind="soft")
        assert customer.bounce_type == "soft"
        assert customer.bounce_count == 2
        assert not customer.is_bounced
        vip.refresh_from_db()
        assert vip.member_count == 1

        customer = bounces.mark_as_bounced(customer, kind="soft")
        assert customer.bounce_type == "hard"
        assert customer.is_bounced
        vip.refresh_from_db()
        assert vip.member_count == 0

    def test_threshold_comes_from_settings(self, make_customer, settings):
        settings.SOFT_BOUNCE_THRESHOLD = 1
        customer = bounces.mark_as_bounced(make_customer(), kind="soft")
        assert customer.is_bounced

    def test_reset(self, make_customer):
        customer = bounces.mark_as_bounced(make_customer(), kind="hard", reason="nope")
        customer = bounces.reset_bounce_info(customer)
        customer.refresh_from_db()
        assert customer.email_status == "active"
        assert not customer.is_bounced
        assert customer.bounce_type is None
        assert customer.bounce_count == 0
        assert customer.bounce_reason == ""
