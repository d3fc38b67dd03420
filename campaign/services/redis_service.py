from __future__ import annotations
from contextlib import contextmanager
from typing import Callable, Iterator, Optional
import logging
import uuid

from django.conf import settings
from django_redis import get_redis_connection
from redis.exceptions import RedisError

from .exceptions import LockBusy

log = logging.getLogger(__name__)


# ------------ Keys ------------
def lock_key(campaign_id: str) -> str:
    return f"campaign:{campaign_id}:queue-lock"


def lock_ttl() -> int:
    return int(getattr(settings, "SMS_QUEUE_LOCK_TTL", 60))


# ------------ Conn ------------
def conn():
    return get_redis_connection("default")


def _decode(value) -> Optional[str]:
    return value.decode() if isinstance(value, bytes) else value


# ------------ Lock ------------
@contextmanager
def redis_lock(name: str, ttl: int = 15) -> Iterator[Optional[str]]:
    """Yields the lock token when acquired, ``None`` when someone else holds it."""
    k = f"lock:{name}"
    v = str(uuid.uuid4())
    c = conn()
    acquired = c.set(k, v, nx=True, ex=ttl)
    try:
        yield v if acquired else None
    finally:
        if acquired:
            try:
                if _decode(c.get(k)) == v:
                    c.delete(k)
            except RedisError as e:
                log.warning("lock release failed key=%s error=%s (expires in %ss)", k, e, ttl)


def refresh_lock(name: str, token: str, ttl: int) -> bool:
    k = f"lock:{name}"
    c = conn()
    if _decode(c.get(k)) != token:
        return False
    return bool(c.expire(k, ttl))


@contextmanager
def queue_lock(campaign_id: str) -> Iterator[Callable[[], bool]]:
    """
    Single-flight guard for one campaign's queue run.

    Yields a ``heartbeat`` callable that pushes the lock expiry forward; raises
    ``LockBusy`` when another run holds the lock.
    """
    name, ttl = lock_key(campaign_id), lock_ttl()
    with redis_lock(name, ttl=ttl) as token:
        if token is None:
            raise LockBusy(f"Queue already running for campaign {campaign_id}.")
        yield lambda: refresh_lock(name, token, ttl)
