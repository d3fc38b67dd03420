"""
Shared fixtures: model factories, a scripted SMS client and an in-memory stand-in
for the Redis connection used by the queue lock.
"""
import itertools
from unittest.mock import patch

import pytest

from audience.models import Customer, MailingList, Subscriber
from campaign.models import Campaign
from providers.telnyx import SendResult, format_phone

_seq = itertools.count(1)


@pytest.fixture
def make_subscriber(db):
    def _make(**kwargs) -> Subscriber:
        n = next(_seq)
        phone = format_phone(kwargs.pop("phone", f"908555{n:04d}"))
        defaults = {
            "phone": phone,
            "status": "active",
            "welcome_status": "delivered",
            "country_code": "US",
            "discount_code": f"JP-{n:05d}",
        }
        defaults.update(kwargs)
        return Subscriber.objects.create(**defaults)
    return _make


@pytest.fixture
def make_customer(db):
    def _make(**kwargs) -> Customer:
        n = next(_seq)
        defaults = {"email": f"customer{n}@example.com", "first_name": "Pat"}
        defaults.update(kwargs)
        return Customer.objects.create(**defaults)
    return _make


@pytest.fixture
def make_list(db):
    def _make(name="VIP", members=()) -> MailingList:
        mailing_list = MailingList.objects.create(name=name)
        for customer in members:
            mailing_list.add_member(customer)
        return mailing_list
    return _make


@pytest.fixture
def make_campaign(db):
    def _make(**kwargs) -> Campaign:
        defaults = {
            "name": f"Campaign {next(_seq)}",
            "message": "Jersey Pickles: {discount}% off with {code} https://shop.example.com/deals",
        }
        defaults.update(kwargs)
        return Campaign.objects.create(**defaults)
    return _make


class ScriptedClient:
    """Records every send; phones in ``fail_for`` get a provider failure."""

    def __init__(self, fail_for=(), on_send=None):
        self.fail_for = {format_phone(p) for p in fail_for}
        self.on_send = on_send
        self.sent = []

    def send(self, to, text):
        self.sent.append((to, text))
        if self.on_send:
            self.on_send(to, text)
        if format_phone(to) in self.fail_for:
            return SendResult(success=False, error="Carrier rejected", error_code="40300")
        return SendResult(success=True, provider_message_id=f"msg-{len(self.sent)}", status="queued",
                          cost=0.004, carrier="T-Mobile")

    def send_stop_confirmation(self, to):
        return self.send(to, "stop-confirmation")

    def send_start_confirmation(self, to):
        return self.send(to, "start-confirmation")

    def send_help_response(self, to):
        return self.send(to, "help-response")


@pytest.fixture
def sms_client():
    return ScriptedClient()


@pytest.fixture
def scripted_client():
    return ScriptedClient


class MemoryRedis:
    """The handful of commands the queue lock issues."""

    def __init__(self):
        self.store = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value.encode() if isinstance(value, str) else value
        return True

    def get(self, key):
        return self.store.get(key)

    def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0

    def expire(self, key, ttl):
        return key in self.store


@pytest.fixture
def memory_redis():
    conn = MemoryRedis()
    with patch("campaign.services.redis_service.conn", return_value=conn):
        yield conn
