from io import StringIO

import pytest
from django.core.management import call_command

from audience.models import Customer, MailingList, Subscriber


@pytest.mark.django_db
def test_seed_audience_is_consistent():
    out = StringIO()
    call_command("seed_audience", subscribers=5, customers=4, lists=2, stdout=out)

    assert Subscriber.objects.count() == 5
    assert Customer.objects.count() == 4
    assert sorted(MailingList.objects.values_list("name", flat=True)) == ["Newsletter", "VIP"]
    for mailing_list in MailingList.objects.all():
        assert mailing_list.member_count == mailing_list.members.count()
    assert all(s.phone.startswith("+1201555") for s in Subscriber.objects.all())
    assert "Done." in out.getvalue()
