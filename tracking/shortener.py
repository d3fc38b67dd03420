"""
Short links for SMS bodies.

Each distinct URL in a message becomes a ``ShortUrl`` tied to the campaign,
subscriber and message it was sent in, so a click or an order can be attributed
back to the exact send.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
import logging
import re
import secrets
import string

from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import Count, Q, Sum
from django.db.models.functions import TruncDate
from django.utils import timezone

from audience.models import Subscriber
from campaign.services import ledger
from .models import ShortUrl, SourceType

log = logging.getLogger(__name__)

ALPHABET = string.ascii_letters + string.digits
URL_RE = re.compile(r"https?://\S+")
TRAILING_PUNCTUATION = ".,!?;:"
MAX_HEX_BYTES = 16   # token_hex doubles it; ShortUrl.code holds 32 chars


class ShortCodeExhausted(RuntimeError):
    """No free code could be produced."""


@dataclass
class ClickResult:
    original_url: str
    is_unique_click: bool
    short_url: ShortUrl


def _setting(name: str, default):
    return getattr(settings, name, default)


def _code_taken(code: str) -> bool:
    return ShortUrl.objects.filter(code=code).exists()


def generate_code(length: Optional[int] = None) -> str:
    length = length or _setting("SHORT_CODE_LENGTH", 6)
    for _ in range(_setting("SHORT_CODE_MAX_ATTEMPTS", 10)):
        code = "".join(secrets.choice(ALPHABET) for _ in range(length))
        if not _code_taken(code):
            return code

    # Random space is crowded; fall back to hex and grow until free.
    nbytes = max(4, (length + 1) // 2)
    for _ in range(16):
        code = secrets.token_hex(nbytes)
        if not _code_taken(code):
            return code
        nbytes = min(nbytes + 1, MAX_HEX_BYTES)
    raise ShortCodeExhausted("Could not generate a unique short code.")


def short_link(code: str) -> str:
    return f"{_setting('SHORT_URL_BASE', '').rstrip('/')}/s/{code}"


def create_short_url(
    original_url: str,
    source_type: str = SourceType.OTHER,
    *,
    campaign=None,
    subscriber=None,
    message=None,
    discount_code: str = "",
    metadata: Optional[Dict[str, Any]] = None,
    expires_at=None,
) -> ShortUrl:
    return ShortUrl.objects.create(
        code=generate_code(),
        original_url=original_url,
        source_type=source_type,
        campaign=campaign,
        subscriber=subscriber,
        message=message,
        discount_code=discount_code or "",
        metadata=metadata or {},
        expires_at=expires_at,
    )


def find_usable(code: str) -> Optional[ShortUrl]:
    short = ShortUrl.objects.filter(code=code).first()
    if short is None or not short.is_usable:
        return None
    return short


def process_message_urls(text: str, source_type: str = SourceType.SMS_CAMPAIGN, **refs) -> Tuple[str, List[ShortUrl]]:
    """
    Replace every http(s) URL in ``text`` with a short link. The same URL appearing
    twice gets one code. A URL that fails to shorten is left as written.
    """
    if not text:
        return text, []

    replacements: Dict[str, str] = {}
    created: List[ShortUrl] = []
    for match in URL_RE.finditer(text):
        url = match.group(0).rstrip(TRAILING_PUNCTUATION)
        if not url or url in replacements:
            continue
        try:
            with transaction.atomic():
                short = create_short_url(url, source_type, **refs)
        except (DatabaseError, ShortCodeExhausted) as e:
            log.warning("could not shorten url=%s error=%s", url, e)
            continue
        replacements[url] = short_link(short.code)
        created.append(short)

    def swap(match):
        raw = match.group(0)
        url = raw.rstrip(TRAILING_PUNCTUATION)
        return replacements.get(url, url) + raw[len(url):]

    return URL_RE.sub(swap, text), created


def record_click(code: str, ip: Optional[str] = None, user_agent: str = "", referer: str = "") -> Optional[ClickResult]:
    now = timezone.now()
    ip_limit = _setting("SHORT_URL_IP_LIMIT", 1000)
    history_limit = _setting("SHORT_URL_CLICK_HISTORY_LIMIT", 100)

    with transaction.atomic():
        short = ShortUrl.objects.select_for_update().filter(code=code).first()
        if short is None or not short.is_usable:
            return None

        ips = list(short.clicked_ips or [])
        is_unique = bool(ip) and ip not in ips
        if is_unique:
            ips.append(ip)
            ips = ips[-ip_limit:]

        history = list(short.click_history or [])
        history.append({
            "timestamp": now.isoformat(),
            "ip": ip,
            "user_agent": (user_agent or "")[:512],
            "referer": (referer or "")[:512],
        })

        short.clicks += 1
        if is_unique:
            short.unique_clicks += 1
        short.clicked_ips = ips
        short.click_history = history[-history_limit:]
        short.last_clicked_at = now
        short.save(update_fields=["clicks", "unique_clicks", "clicked_ips", "click_history", "last_clicked_at"])

    if short.source_type == SourceType.SMS_CAMPAIGN and short.message_id:
        ledger.record_click(short.message, {
            "code": code, "url": short.original_url, "ip": ip, "user_agent": (user_agent or "")[:512],
        })
    elif short.source_type in {SourceType.SMS_WELCOME, SourceType.SMS_SECOND_CHANCE} and short.subscriber_id:
        Subscriber.objects.filter(pk=short.subscriber_id).update(last_engaged_at=now)

    return ClickResult(original_url=short.original_url, is_unique_click=is_unique, short_url=short)


def record_conversion(code: str, order: Dict[str, Any]) -> bool:
    """Mark the short URL (and the message it was sent in) converted. Idempotent."""
    with transaction.atomic():
        short = ShortUrl.objects.select_for_update().filter(code=code).first()
        if short is None or short.converted:
            return False
        short.converted = True
        short.conversion_data = {**order, "converted_at": timezone.now().isoformat()}
        short.save(update_fields=["converted", "conversion_data"])

    if short.message_id:
        ledger.record_conversion(short.message, order)
    log.info("short url converted code=%s order=%s", code, order.get("order_id"))
    return True


def campaign_click_stats(campaign, days: int = 7, top: int = 10) -> Dict[str, Any]:
    qs = ShortUrl.objects.filter(campaign=campaign)
    totals = qs.aggregate(
        links=Count("id"),
        clicks=Sum("clicks"),
        unique_clicks=Sum("unique_clicks"),
        converted=Count("id", filter=Q(converted=True)),
    )
    top_urls = list(
        qs.values("original_url")
        .annotate(clicks=Sum("clicks"), unique_clicks=Sum("unique_clicks"))
        .filter(clicks__gt=0)
        .order_by("-clicks")[:top]
    )

    # timeline of first-touch clicks, from the ledger rows the links point at
    since = timezone.now() - timedelta(days=days)
    timeline = [
        {"date": row["day"].isoformat(), "clicks": row["n"]}
        for row in (
            campaign.messages.filter(clicked=True, clicked_at__gte=since)
            .annotate(day=TruncDate("clicked_at"))
            .values("day")
            .annotate(n=Count("id"))
            .order_by("day")
        )
    ]
    return {
        "links": totals["links"] or 0,
        "clicks": totals["clicks"] or 0,
        "unique_clicks": totals["unique_clicks"] or 0,
        "converted": totals["converted"] or 0,
        "top_urls": top_urls,
        "timeline": timeline,
    }


def deactivate_expired() -> int:
    n = ShortUrl.objects.filter(is_active=True, expires_at__lte=timezone.now()).update(is_active=False)
    if n:
        log.info("deactivated %s expired short urls", n)
    return n
