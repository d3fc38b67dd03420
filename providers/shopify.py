"""
Shopify Admin REST adapter for discount provisioning.

Only the two calls the campaign send path needs: create a percentage price rule
and attach a discount code to it.
"""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Optional

import requests
from django.conf import settings
from django.utils import timezone

log = logging.getLogger(__name__)


class ShopifyError(Exception):
    """Shopify call failed or returned an unusable body."""


class ShopifyClient:
    def __init__(
        self,
        store: Optional[str] = None,
        access_token: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        self.store = store if store is not None else settings.SHOPIFY_STORE
        self.access_token = access_token if access_token is not None else settings.SHOPIFY_ACCESS_TOKEN
        self.api_version = api_version or settings.SHOPIFY_API_VERSION
        self.timeout = timeout
        self.base_url = f"https://{self.store}/admin/api/{self.api_version}"
        self._session = session or requests.Session()
        self._headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }

    def _post(self, path: str, body: dict) -> dict:
        try:
            response = self._session.post(
                f"{self.base_url}{path}", json=body, headers=self._headers, timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json() or {}
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 403:
                log.error("shopify permission error: access token needs write_price_rules scope")
            raise ShopifyError(f"Shopify {path} failed with HTTP {status}") from e
        except (requests.RequestException, ValueError) as e:
            raise ShopifyError(f"Shopify {path} failed: {e}") from e

    def create_price_rule(self, title: str, percent: int, ends_at: Optional[datetime] = None,
                          usage_limit: Optional[int] = None) -> str:
        rule = {
            "title": title,
            "target_type": "line_item",
            "target_selection": "all",
            "allocation_method": "across",
            "value_type": "percentage",
            "value": f"-{percent}",
            "customer_selection": "all",
            "once_per_customer": True,
            "starts_at": timezone.now().isoformat(),
        }
        if ends_at:
            rule["ends_at"] = ends_at.isoformat()
        if usage_limit:
            rule["usage_limit"] = usage_limit
        body = self._post("/price_rules.json", {"price_rule": rule})
        rule_id = (body.get("price_rule") or {}).get("id")
        if not rule_id:
            raise ShopifyError("Shopify returned a price rule without id")
        return str(rule_id)

    def create_discount_code(self, price_rule_id: str, code: str) -> str:
        body = self._post(
            f"/price_rules/{price_rule_id}/discount_codes.json",
            {"discount_code": {"code": code}},
        )
        discount_id = (body.get("discount_code") or {}).get("id")
        if not discount_id:
            raise ShopifyError("Shopify returned a discount code without id")
        return str(discount_id)

    def provision_discount(self, code: str, percent: int, valid_days: int = 30) -> dict:
        ends_at = timezone.now() + timedelta(days=valid_days)
        rule_id = self.create_price_rule(f"SMS Campaign - {code}", percent, ends_at=ends_at)
        discount_id = self.create_discount_code(rule_id, code)
        log.info("shopify discount provisioned code=%s percent=%s rule=%s", code, percent, rule_id)
        return {"code": code, "price_rule_id": rule_id, "discount_id": discount_id}


def get_client() -> ShopifyClient:
    return ShopifyClient()
