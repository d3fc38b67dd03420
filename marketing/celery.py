import os

from celery import Celery
from celery.schedules import crontab

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "marketing.settings")

app = Celery("marketing")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()

app.conf.beat_schedule = {
    "dispatch-due-campaigns": {
        "task": "campaign.tasks.dispatch_due_campaigns",
        "schedule": crontab(),
    },
    "reconcile-campaign-stats": {
        "task": "campaign.tasks.reconcile_sending_campaign_stats",
        "schedule": crontab(minute="*/15"),
    },
    "deactivate-expired-short-urls": {
        "task": "tracking.tasks.deactivate_expired_short_urls",
        "schedule": crontab(minute=0),
    },
}
