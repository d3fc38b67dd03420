from django.core.management.base import BaseCommand
from django.db import transaction
from django.utils import timezone

from faker import Faker
import random

from audience.models import (
    Customer, MailingList, Subscriber, SubscriberStatus, Source,
)
from providers import telnyx


class Command(BaseCommand):
    help = "Populate Subscriber/Customer/MailingList tables with dummy data."

    def add_arguments(self, parser):
        parser.add_argument("--subscribers", type=int, default=200, help="Number of SMS subscribers to create")
        parser.add_argument("--customers", type=int, default=200, help="Number of email customers to create")
        parser.add_argument("--lists", type=int, default=3, help="Number of mailing lists to create")
        parser.add_argument("--clear", action="store_true", help="Delete existing data first")
        parser.add_argument("--seed", type=int, default=42, help="Random seed for reproducibility")

    @transaction.atomic
    def handle(self, *args, **opts):
        rng = random.Random(opts["seed"])
        fake = Faker("en_US")
        Faker.seed(opts["seed"])

        if opts["clear"]:
            self.stdout.write(self.style.WARNING("Clearing existing data…"))
            MailingList.objects.all().delete()
            Subscriber.objects.all().delete()
            Customer.objects.all().delete()

        self.stdout.write(self.style.MIGRATE_HEADING("Seeding data…"))
        now = timezone.now()

        # --- Subscribers ---
        subscribers = []
        for i in range(opts["subscribers"]):
            phone = telnyx.format_phone(f"201555{i:04d}")
            joined = now - timezone.timedelta(days=rng.randint(0, 90), hours=rng.randint(0, 23))
            status = self._weighted_status(rng)
            subscribers.append(Subscriber(
                phone=phone,
                phone_formatted=telnyx.format_for_display(phone),
                status=status,
                source=rng.choice([Source.POPUP, Source.CHECKOUT, Source.LANDING_PAGE]),
                discount_code=f"JP-{i:05d}",
                welcome_status=rng.choices(["delivered", "failed", "pending"], weights=[0.85, 0.1, 0.05], k=1)[0],
                welcome_sent_at=joined,
                converted=rng.random() < 0.2,
                country_code=rng.choices(["US", "CA"], weights=[0.9, 0.1], k=1)[0],
                last_engaged_at=joined + timezone.timedelta(days=rng.randint(0, 30)),
                created_at=joined,
            ))
        Subscriber.objects.bulk_create(subscribers, batch_size=1000, ignore_conflicts=True)

        # --- Customers ---
        customers = []
        for i in range(opts["customers"]):
            first = fake.first_name()
            last = fake.last_name()
            customers.append(Customer(
                email=f"{first}.{last}.{i}@example.com".lower(),
                first_name=first,
                last_name=last,
                accepts_marketing=rng.random() < 0.8,
                created_at=now - timezone.timedelta(days=rng.randint(0, 365)),
            ))
        Customer.objects.bulk_create(customers, batch_size=1000, ignore_conflicts=True)
        customers = list(Customer.objects.all())

        # --- Lists ---
        for name in self._default_list_names(opts["lists"]):
            mailing_list, _ = MailingList.objects.get_or_create(name=name)
            k = rng.randint(0, len(customers))
            mailing_list.members.add(*rng.sample(customers, k))
            mailing_list.update_member_count()

        self.stdout.write(self.style.SUCCESS(
            f"Done. {Subscriber.objects.count()} subscribers, {Customer.objects.count()} customers, "
            f"{MailingList.objects.count()} lists."
        ))

    # --- helpers ---

    def _weighted_status(self, rng: random.Random) -> str:
        return rng.choices(
            population=[SubscriberStatus.ACTIVE, SubscriberStatus.UNSUBSCRIBED, SubscriberStatus.INVALID],
            weights=[0.8, 0.15, 0.05],
            k=1,
        )[0]

    def _default_list_names(self, count: int):
        base = ["Newsletter", "VIP", "Wholesale", "Holiday Promo", "Pickle Club"]
        if count <= len(base):
            return base[:count]
        return base + [f"List {i}" for i in range(1, count - len(base) + 1)]
