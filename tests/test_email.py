"""
Email campaigns: snapshot, the Resend send loop, webhook events and the API.
"""
from unittest.mock import patch

import pytest
from rest_framework.test import APIClient

from campaign.models import EmailCampaign, EmailSend
from campaign.services import email_service, exceptions, redis_service
from campaign.tasks import process_email_campaign, reconcile_sending_campaign_stats
from providers.resend import EmailResult
from providers.tasks import process_resend_event

pytestmark = pytest.mark.django_db


class ScriptedMailer:
    """Records every send; addresses in ``fail_for`` are rejected."""

    def __init__(self, fail_for=(), on_send=None):
        self.fail_for = set(fail_for)
        self.on_send = on_send
        self.sent = []

    def send(self, to, subject, html, *, from_email="", reply_to="", tags=None):
        self.sent.append({"to": to, "subject": subject, "html": html, "tags": tags})
        if self.on_send:
            self.on_send(to)
        if to in self.fail_for:
            return EmailResult(success=False, error="Invalid `to` field.", status_code=422)
        return EmailResult(success=True, provider_message_id=f"re_{len(self.sent)}")


@pytest.fixture
def no_email_queue():
    with patch("campaign.services.email_service.process_email_campaign") as task:
        yield task


@pytest.fixture
def newsletter(make_customer, make_list):
    customers = [make_customer(first_name=name) for name in ("Pat", "Sam", "")]
    bounced = make_customer(email_status="bounced", is_bounced=True)
    mailing_list = make_list("Newsletter", members=[*customers, bounced])
    mailing_list.customers = customers
    return mailing_list


@pytest.fixture
def make_email_campaign(newsletter):
    def _make(**kwargs) -> EmailCampaign:
        defaults = {
            "name": "Pickle Friday",
            "subject": "Fresh brine",
            "html": "<style>p {color: green}</style><p>Hi {first_name}, this went to {email}</p>",
            "mailing_list": newsletter,
        }
        defaults.update(kwargs)
        return EmailCampaign.objects.create(**defaults)
    return _make


@pytest.fixture
def sending_email(make_email_campaign, no_email_queue):
    campaign = make_email_campaign()
    email_service.send_email_campaign(campaign_id=campaign.pk)
    campaign.refresh_from_db()
    return campaign


def run(campaign, client, **kwargs):
    return email_service.process_queue(str(campaign.pk), client=client, delay=0, **kwargs)


class TestSendEmailCampaign:

    def test_snapshot_skips_suppressed_customers(self, make_email_campaign, newsletter, no_email_queue):
        campaign = make_email_campaign()

        result = email_service.send_email_campaign(campaign_id=campaign.pk)

        campaign.refresh_from_db()
        assert result == {"campaign_id": str(campaign.pk), "queued": 3}
        assert campaign.status == "sending"
        assert campaign.recipients_count == 3
        emails = set(EmailSend.objects.filter(email_campaign=campaign).values_list("email", flat=True))
        assert emails == {c.email for c in newsletter.customers}

    def test_send_twice_conflicts(self, sending_email):
        with pytest.raises(exceptions.InvalidState):
            email_service.send_email_campaign(campaign_id=sending_email.pk)
        assert EmailSend.objects.filter(email_campaign=sending_email).count() == 3

    def test_empty_list(self, make_email_campaign, make_list, no_email_queue):
        campaign = make_email_campaign(mailing_list=make_list("Empty"))
        with pytest.raises(exceptions.ZeroRecipients):
            email_service.send_email_campaign(campaign_id=campaign.pk)
        campaign.refresh_from_db()
        assert campaign.status == "draft"

    def test_cancel_removes_pending_rows(self, sending_email):
        result = email_service.cancel_email_campaign(sending_email.pk)
        assert result["removed_pending"] == 3
        assert result["campaign"].status == "cancelled"
        with pytest.raises(exceptions.InvalidState):
            email_service.cancel_email_campaign(sending_email.pk)


class TestEmailQueue:

    def test_sends_personalized_html_with_tags(self, sending_email, newsletter):
        mailer = ScriptedMailer()

        result = run(sending_email, mailer)

        sending_email.refresh_from_db()
        assert result["status"] == "sent"
        assert sending_email.status == "sent"
        assert sending_email.sent_count == 3
        pat = next(c for c in newsletter.customers if c.first_name == "Pat")
        first = next(m for m in mailer.sent if m["to"] == pat.email)
        assert first["html"] == f"<style>p {{color: green}}</style><p>Hi Pat, this went to {pat.email}</p>"
        assert first["tags"] == {"campaign_id": str(sending_email.pk), "customer_id": str(pat.pk)}
        assert any("Hi there" in m["html"] for m in mailer.sent)
        row = EmailSend.objects.get(email_campaign=sending_email, customer=pat)
        assert row.status == "sent"
        assert row.provider_message_id.startswith("re_")

    def test_one_rejection_does_not_stop_the_run(self, sending_email, newsletter):
        bad = newsletter.customers[1].email
        mailer = ScriptedMailer(fail_for=[bad])

        run(sending_email, mailer)

        sending_email.refresh_from_db()
        assert sending_email.sent_count == 2
        assert sending_email.failed_count == 1
        assert EmailSend.objects.get(email=bad).error_message == "Invalid `to` field."

    def test_customer_bounced_after_snapshot_is_skipped(self, sending_email, newsletter):
        late = newsletter.customers[0]
        late.email_status = "bounced"
        late.save()
        mailer = ScriptedMailer()

        run(sending_email, mailer)

        assert late.email not in [m["to"] for m in mailer.sent]
        row = EmailSend.objects.get(email_campaign=sending_email, customer=late)
        assert row.status == "failed"
        assert row.error_message == "suppressed: bounced"

    def test_cancel_takes_effect_at_next_row(self, sending_email):
        def cancel(to):
            EmailCampaign.objects.filter(pk=sending_email.pk).update(status="cancelled")

        mailer = ScriptedMailer(on_send=cancel)
        result = run(sending_email, mailer)

        assert result["status"] == "cancelled"
        assert len(mailer.sent) == 1

    def test_lost_lock_stops_the_run(self, sending_email):
        mailer = ScriptedMailer()
        result = run(sending_email, mailer, heartbeat=lambda: False)
        assert result["detail"] == "Queue lock lost"
        assert mailer.sent == []

    def test_busy_lock_is_a_noop(self, sending_email, memory_redis):
        memory_redis.set(f"lock:{redis_service.lock_key(sending_email.pk)}", "someone-else")
        with patch("campaign.services.email_service.process_queue") as process:
            assert process_email_campaign(str(sending_email.pk)) == {"detail": "Queue lock busy"}
        process.assert_not_called()

    def test_reconcile_restarts_stalled_email_queue(self, sending_email, memory_redis):
        with patch("campaign.tasks.process_email_campaign") as task:
            reconcile_sending_campaign_stats()
        task.delay.assert_called_once_with(str(sending_email.pk))


class TestEmailEvents:

    @pytest.fixture
    def delivered_row(self, sending_email):
        run(sending_email, ScriptedMailer())
        return EmailSend.objects.filter(email_campaign=sending_email).order_by("created_at", "id").first()

    def _event(self, kind, row, **data):
        return {"type": f"email.{kind}", "data": {"email_id": row.provider_message_id, "to": [row.email], **data}}

    def test_open_counts_delivery_once(self, delivered_row):
        process_resend_event(self._event("opened", delivered_row))
        process_resend_event(self._event("delivered", delivered_row))
        process_resend_event(self._event("opened", delivered_row))

        delivered_row.refresh_from_db()
        campaign = delivered_row.email_campaign
        campaign.refresh_from_db()
        assert delivered_row.status == "opened"
        assert delivered_row.opened_at is not None
        assert campaign.delivered_count == 1
        assert campaign.opened_count == 1

    def test_bounce_updates_row_campaign_and_customer(self, delivered_row):
        result = process_resend_event(self._event("bounced", delivered_row,
                                                  bounce={"type": "Permanent", "message": "no such user"}))

        delivered_row.refresh_from_db()
        delivered_row.customer.refresh_from_db()
        delivered_row.email_campaign.refresh_from_db()
        assert result["action"] == "bounced"
        assert delivered_row.status == "bounced"
        assert delivered_row.error_message == "no such user"
        assert delivered_row.email_campaign.bounced_count == 1
        assert delivered_row.customer.email_status == "bounced"

    def test_rows_are_found_by_campaign_tag_without_email_id(self, delivered_row):
        process_resend_event({"type": "email.complained", "data": {
            "to": [delivered_row.email.upper()],
            "tags": [{"name": "campaign_id", "value": str(delivered_row.email_campaign_id)}],
        }})
        delivered_row.refresh_from_db()
        assert delivered_row.status == "complained"

    def test_nothing_leaves_a_final_status(self, delivered_row):
        process_resend_event(self._event("complained", delivered_row))
        process_resend_event(self._event("clicked", delivered_row))
        delivered_row.refresh_from_db()
        assert delivered_row.status == "complained"
        assert delivered_row.email_campaign.clicked_count == 0

    def test_pending_rows_wait_for_the_send_loop(self, sending_email):
        row = EmailSend.objects.filter(email_campaign=sending_email).first()
        event = {"type": "email.delivered", "data": {
            "to": [row.email], "tags": {"campaign_id": str(sending_email.pk)},
        }}
        process_resend_event(event)
        row.refresh_from_db()
        assert row.status == "pending"


class TestEmailApi:

    @pytest.fixture
    def api(self):
        return APIClient()

    def test_create_send_and_stats(self, api, newsletter, no_email_queue):
        created = api.post("/api/email-campaigns/", {
            "name": "Friday", "subject": "Brine time", "html": "<p>Hi {first_name}</p>",
            "mailing_list": str(newsletter.pk),
        }, format="json")
        assert created.status_code == 201, created.content
        assert created.json()["status"] == "draft"
        url = f"/api/email-campaigns/{created.json()['id']}/"

        sent = api.post(f"{url}send/")
        assert sent.status_code == 202
        assert sent.json()["queued"] == 3
        assert api.post(f"{url}send/").status_code == 409
        assert api.patch(url, {"subject": "Too late"}, format="json").status_code == 409

        stats = api.get(f"{url}stats/").json()
        assert stats["stats"]["recipients"] == 3
        assert stats["sends"]["pending"] == 3

    def test_send_to_empty_list(self, api, make_email_campaign, make_list, no_email_queue):
        campaign = make_email_campaign(mailing_list=make_list("Empty"))
        response = api.post(f"/api/email-campaigns/{campaign.pk}/send/")
        assert response.status_code == 400
        assert "No deliverable customers" in response.json()["detail"]
