from __future__ import annotations
from typing import Optional, Tuple
import random

from campaign.models import Campaign, DiscountType, Message
from campaign.services.exceptions import RecipientError
from tracking import shortener
from tracking.models import SourceType

_rng = random.SystemRandom()


def apply_discount(template: str, code: str = "", percent: Optional[int] = None) -> str:
    text = template or ""
    text = text.replace("{code}", code or "")
    text = text.replace("{discount}", "" if percent is None else str(percent))
    return text


def dynamic_code(campaign: Campaign, percent: int) -> str:
    return f"{campaign.dynamic_code_prefix}{percent}".upper()


def assign_discount(campaign: Campaign, rng: random.Random = _rng) -> Tuple[str, Optional[int]]:
    """Code and percent a new ledger row carries, picked once at snapshot time."""
    if campaign.discount_type == DiscountType.STATIC:
        return campaign.discount_code, campaign.discount_percent
    if campaign.discount_type == DiscountType.DYNAMIC:
        percent = rng.randint(campaign.dynamic_min, campaign.dynamic_max)
        rule = (campaign.discount_rules or {}).get(str(percent)) or {}
        return rule.get("code", ""), percent
    return "", None


def resolve_discount(campaign: Campaign, message: Message) -> Tuple[str, Optional[int]]:
    if campaign.discount_type != DiscountType.DYNAMIC:
        return message.discount_code, message.discount_percent
    rule = (campaign.discount_rules or {}).get(str(message.discount_percent))
    if not rule or not rule.get("code"):
        raise RecipientError(f"No discount rule provisioned for {message.discount_percent}%.")
    return rule["code"], message.discount_percent


def render_message(campaign: Campaign, message: Message) -> str:
    """Final body for one ledger row: discount placeholders filled, URLs shortened."""
    code, percent = resolve_discount(campaign, message)
    body = apply_discount(campaign.message, code, percent)
    body, _ = shortener.process_message_urls(
        body,
        SourceType.SMS_CAMPAIGN,
        campaign=campaign,
        subscriber=message.subscriber,
        message=message,
        discount_code=code,
    )
    return body
