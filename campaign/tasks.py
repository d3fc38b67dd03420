from datetime import timedelta
from typing import Dict
import logging

from celery import shared_task
from django.utils import timezone

from campaign.models import (
    Campaign, CampaignStatus, EmailSend, EmailSendStatus, Message, MessageStatus,
)
from campaign.services import dispatcher_service, exceptions, redis_service

log = logging.getLogger(__name__)

RECONCILE_SENT_WITHIN = timedelta(days=3)   # delivery receipts keep arriving after a campaign finishes


@shared_task(bind=True, acks_late=True)
def process_campaign_queue(self, campaign_id: str) -> Dict:
    try:
        with redis_service.queue_lock(campaign_id) as heartbeat:
            return dispatcher_service.process_queue(campaign_id, heartbeat=heartbeat)
    except exceptions.LockBusy:
        log.info("queue already running campaign=%s", campaign_id)
        return {"detail": "Queue lock busy"}


@shared_task(bind=True, acks_late=True)
def process_email_campaign(self, campaign_id: str) -> Dict:
    from campaign.services import email_service

    try:
        with redis_service.queue_lock(campaign_id) as heartbeat:
            return email_service.process_queue(campaign_id, heartbeat=heartbeat)
    except exceptions.LockBusy:
        log.info("email queue already running campaign=%s", campaign_id)
        return {"detail": "Queue lock busy"}


@shared_task(ignore_result=True)
def dispatch_due_campaigns() -> Dict:
    from campaign.services import campaigns

    started, skipped = [], []
    due = Campaign.objects.filter(status=CampaignStatus.Scheduled, scheduled_at__lte=timezone.now())
    for campaign_id in due.values_list("id", flat=True):
        try:
            campaigns.send_campaign(campaign_id=campaign_id)
            started.append(str(campaign_id))
        except exceptions.ZeroRecipients as e:
            # scheduled -> cancelled, so the next tick does not pick it up again
            campaigns.cancel_campaign(campaign_id, reason=str(e))
            skipped.append(str(campaign_id))
        except exceptions.DomainError as e:
            log.warning("scheduled campaign=%s not started: %s", campaign_id, e)
            skipped.append(str(campaign_id))
    if started or skipped:
        log.info("due campaigns started=%s skipped=%s", started, skipped)
    return {"started": started, "skipped": skipped}


@shared_task(ignore_result=True)
def reconcile_sending_campaign_stats() -> int:
    """
    Rebuild counters from the ledger and restart queues that stopped short.

    A sending campaign with pending rows and no running processor (a resume
    that hit a busy lock, a worker that died) gets a fresh queue task; the
    queue lock turns the kick into a no-op when a run is still alive.
    """
    from campaign.services import campaigns

    recent = timezone.now() - RECONCILE_SENT_WITHIN
    qs = Campaign.objects.filter(status__in=[CampaignStatus.Sending, CampaignStatus.Paused]) | Campaign.objects.filter(
        status=CampaignStatus.Sent, completed_at__gte=recent,
    )
    n = 0
    for campaign in qs:
        campaigns.recalculate_stats(campaign)
        n += 1
        if campaign.status == CampaignStatus.Sending and Message.objects.filter(
            campaign=campaign, status=MessageStatus.PENDING,
        ).exists():
            log.info("restarting queue campaign=%s", campaign.pk)
            process_campaign_queue.delay(str(campaign.pk))

    stalled_email = list(EmailSend.objects.filter(
        email_campaign__status=CampaignStatus.Sending, status=EmailSendStatus.PENDING,
    ).order_by().values_list("email_campaign_id", flat=True).distinct())
    for campaign_id in stalled_email:
        log.info("restarting email queue campaign=%s", campaign_id)
        process_email_campaign.delay(str(campaign_id))

    log.info("reconciled stats for %s campaign(s)", n)
    return n
