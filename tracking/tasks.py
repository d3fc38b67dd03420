from celery import shared_task

from . import shortener


@shared_task(ignore_result=True)
def deactivate_expired_short_urls() -> int:
    return shortener.deactivate_expired()
