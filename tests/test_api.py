import json
from datetime import timedelta
from unittest.mock import patch

import pytest
from django.test import Client
from django.utils import timezone
from rest_framework.test import APIClient

from campaign.models import MESSAGE_MAX_LENGTH, Message
from tracking import shortener

pytestmark = pytest.mark.django_db

CAMPAIGNS = "/api/campaigns/"


@pytest.fixture
def api():
    return APIClient()


@pytest.fixture
def no_queue():
    with patch("campaign.services.campaigns.process_campaign_queue") as task:
        yield task


def _detail(campaign, action=""):
    return f"{CAMPAIGNS}{campaign.pk}/{action + '/' if action else ''}"


class TestCampaignCrud:

    def test_create_draft(self, api, make_subscriber):
        make_subscriber()
        make_subscriber()
        response = api.post(CAMPAIGNS, {
            "name": "Spring",
            "message": "Jersey Pickles: {discount}% off with {code}",
            "discount_type": "static",
            "discount_code": "spring10",
            "discount_percent": 10,
        }, format="json")

        assert response.status_code == 201, response.content
        body = response.json()
        assert body["status"] == "draft"
        assert body["discount_code"] == "SPRING10"
        assert body["eligible_count"] == 2
        assert body["segments"] == 1

    def test_create_scheduled(self, api):
        when = (timezone.now() + timedelta(hours=2)).isoformat()
        response = api.post(CAMPAIGNS, {"name": "Later", "message": "hi", "scheduled_at": when}, format="json")
        assert response.status_code == 201
        assert response.json()["status"] == "scheduled"

    @pytest.mark.parametrize("payload, field", [
        ({"discount_type": "static"}, "discount_code"),
        ({"discount_type": "dynamic", "dynamic_min": 20, "dynamic_max": 10}, "dynamic_max"),
        ({"audience_type": "custom", "custom_filter": {"phone__startswith": "+1"}}, "custom_filter"),
        ({"scheduled_at": "2001-01-01T00:00:00Z"}, "scheduled_at"),
    ])
    def test_validation(self, api, payload, field):
        response = api.post(CAMPAIGNS, {"name": "Bad", "message": "hi", **payload}, format="json")
        assert response.status_code == 400
        assert field in response.json()

    def test_message_too_long(self, api):
        response = api.post(CAMPAIGNS, {"name": "Long", "message": "a" * 1601}, format="json")
        assert response.status_code == 400

    def test_message_limit_follows_setting(self, api, settings):
        limit = settings.SMS_MESSAGE_MAX_LENGTH
        assert MESSAGE_MAX_LENGTH == limit
        ok = api.post(CAMPAIGNS, {"name": "Edge", "message": "a" * limit}, format="json")
        over = api.post(CAMPAIGNS, {"name": "Over", "message": "a" * (limit + 1)}, format="json")
        assert ok.status_code == 201
        assert over.status_code == 400
        assert "message" in over.json()

    def test_list(self, api, make_campaign):
        make_campaign(name="A")
        make_campaign(name="B", status="sent")
        response = api.get(CAMPAIGNS, {"status": "sent"})
        assert response.status_code == 200
        assert [c["name"] for c in response.json()["results"]] == ["B"]

    def test_edit_only_while_editable(self, api, make_campaign):
        draft = make_campaign()
        sent = make_campaign(status="sent")
        assert api.patch(_detail(draft), {"name": "Renamed"}, format="json").status_code == 200
        assert api.patch(_detail(sent), {"name": "Renamed"}, format="json").status_code == 409

    def test_delete(self, api, make_campaign):
        assert api.delete(_detail(make_campaign(status="sending"))).status_code == 409
        assert api.delete(_detail(make_campaign())).status_code == 204


class TestCampaignActions:

    def test_send(self, api, make_campaign, make_subscriber, no_queue):
        make_subscriber()
        campaign = make_campaign()
        response = api.post(_detail(campaign, "send"))
        assert response.status_code == 202
        assert response.json()["queued"] == 1
        assert Message.objects.filter(campaign=campaign).count() == 1

    def test_send_twice_conflicts(self, api, make_campaign, make_subscriber, no_queue):
        make_subscriber()
        campaign = make_campaign()
        api.post(_detail(campaign, "send"))
        assert api.post(_detail(campaign, "send")).status_code == 409
        assert Message.objects.filter(campaign=campaign).count() == 1

    def test_send_without_audience(self, api, make_campaign, no_queue):
        response = api.post(_detail(make_campaign(), "send"))
        assert response.status_code == 400
        assert "No eligible subscribers" in response.json()["detail"]

    def test_pause_resume_cancel(self, api, make_campaign, make_subscriber, no_queue):
        make_subscriber()
        campaign = make_campaign()
        assert api.post(_detail(campaign, "pause")).status_code == 409
        api.post(_detail(campaign, "send"))

        assert api.post(_detail(campaign, "pause")).json()["status"] == "paused"
        assert api.post(_detail(campaign, "resume")).json()["status"] == "sending"
        response = api.post(_detail(campaign, "cancel"))
        assert response.json() == {"detail": "Cancelled.", "status": "cancelled", "removed_pending": 1}

    def test_send_test(self, api, make_campaign, sms_client):
        campaign = make_campaign()
        with patch("providers.telnyx.get_client", return_value=sms_client):
            ok = api.post(_detail(campaign, "test"), {"phone": "908-555-0000"}, format="json")
            bad = api.post(_detail(campaign, "test"), {"phone": "12"}, format="json")
        assert ok.status_code == 200
        assert ok.json()["sent_to"] == "+19085550000"
        assert bad.status_code == 400

    def test_send_test_provider_failure(self, api, make_campaign, scripted_client):
        client = scripted_client(fail_for=["9085550000"])
        with patch("providers.telnyx.get_client", return_value=client):
            response = api.post(_detail(make_campaign(), "test"), {"phone": "9085550000"}, format="json")
        assert response.status_code == 502
        assert response.json()["error"] == "Carrier rejected"

    def test_stats_and_audience(self, api, make_campaign, make_subscriber):
        make_subscriber()
        campaign = make_campaign()
        stats = api.get(_detail(campaign, "stats")).json()
        assert set(stats) == {"stats", "messages", "recent_conversions", "clicks"}
        audience = api.get(_detail(campaign, "audience")).json()
        assert audience["eligible"] == 1
        assert audience["sample"][0]["phone"].startswith("+1 (908)")
        assert api.post(_detail(campaign, "recalculate")).status_code == 200

    def test_audience_count(self, api, make_subscriber):
        make_subscriber(country_code="CA")
        make_subscriber(country_code="US")
        response = api.get(f"{CAMPAIGNS}audience-count/", {
            "audience_type": "custom", "custom_filter": json.dumps({"country_code__in": ["CA"]}),
        })
        assert response.status_code == 200
        assert response.json()["count"] == 1

        bad = api.get(f"{CAMPAIGNS}audience-count/", {
            "audience_type": "custom", "custom_filter": json.dumps({"phone": "x"}),
        })
        assert bad.status_code == 400

    def test_overview(self, api, make_campaign):
        make_campaign(status="sent", completed_at=timezone.now(), sent_count=10, delivered_count=8, clicked_count=2)
        make_campaign()
        body = api.get(f"{CAMPAIGNS}overview/", {"days": 7}).json()
        assert body["days"] == 7
        assert body["summary"]["campaigns"] == 1
        assert body["summary"]["delivery_rate"] == 80.0
        assert body["summary"]["click_rate"] == 25.0
        assert body["by_status"]["draft"] == 1


class TestAudienceApi:

    def test_reset_bounce(self, api, make_customer):
        customer = make_customer(is_bounced=True, bounce_type="hard", bounce_count=3, email_status="bounced")
        response = api.post(f"/api/audience/customers/{customer.pk}/reset-bounce/")
        assert response.status_code == 200
        assert response.json()["email_status"] == "active"
        assert response.json()["bounce_count"] == 0

    def test_create_subscriber_normalizes_phone(self, api):
        response = api.post("/api/audience/subscribers/", {"phone": "(973) 555-0101"}, format="json")
        assert response.status_code == 201
        assert response.json()["phone"] == "+19735550101"
        assert response.json()["phone_formatted"] == "+1 (973) 555-0101"

    def test_list_membership(self, api, make_customer, make_list):
        customer = make_customer()
        vip = make_list("VIP")
        response = api.post(f"/api/audience/lists/{vip.pk}/members/", {"customer_id": str(customer.pk)}, format="json")
        assert response.status_code == 200
        assert response.json()["member_count"] == 1
        detail = api.get(f"/api/audience/lists/{vip.pk}/", {"include_members": "true"}).json()
        assert detail["members"] == [customer.email]


class TestShortLinks:

    def test_redirect_sets_click_cookie(self):
        short = shortener.create_short_url("https://shop.example.com/deals")
        response = Client().get(f"/s/{short.code}", HTTP_USER_AGENT="Mozilla/5.0", REMOTE_ADDR="1.2.3.4")

        assert response.status_code == 302
        assert response["Location"] == "https://shop.example.com/deals"
        cookie = response.cookies["sms_click"]
        assert cookie.value == short.code
        assert cookie["httponly"]
        short.refresh_from_db()
        assert short.clicks == 1

    def test_unknown_code_goes_to_fallback(self):
        response = Client().get("/s/nope")
        assert response.status_code == 302
        assert response["Location"] == "https://jerseypickles.com"
        assert "sms_click" not in response.cookies

    def test_preview(self):
        short = shortener.create_short_url("https://shop.example.com")
        client = Client()
        assert client.get(f"/s/{short.code}/preview").json()["short_url"] == f"https://t.example.com/s/{short.code}"
        assert client.get("/s/nope/preview").status_code == 404
