import base64
import hashlib
import hmac
import logging

from django.conf import settings
from rest_framework import status
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.exceptions import ParseError
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from .tasks import process_resend_event, process_shopify_order, process_telnyx_event

log = logging.getLogger(__name__)

RECEIVED = {"received": True}


def _payload(request) -> dict:
    try:
        data = request.data
    except ParseError:
        log.warning("webhook body is not valid JSON path=%s", request.path)
        return {}
    return data if isinstance(data, dict) else {}


def _enqueue(task, payload: dict) -> None:
    # the provider is acknowledged whether or not the broker takes the job
    try:
        task.delay(payload)
    except Exception:
        log.exception("could not enqueue webhook job task=%s", getattr(task, "name", task))


def verify_shopify_hmac(raw_body: bytes, header: str, secret: str) -> bool:
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode()
    return hmac.compare_digest(expected, header or "")


@api_view(["POST"])
@authentication_classes([])
@permission_classes([AllowAny])
def telnyx_webhook(request):
    # Telnyx retries on anything but a fast 2xx
    payload = _payload(request)
    data = payload.get("data")
    event_type = data.get("event_type") if isinstance(data, dict) else None
    log.info("telnyx webhook event=%s", event_type)
    if payload:
        _enqueue(process_telnyx_event, payload)
    return Response(RECEIVED, status=status.HTTP_200_OK)


@api_view(["POST"])
@authentication_classes([])
@permission_classes([AllowAny])
def resend_webhook(request):
    payload = _payload(request)
    log.info("resend webhook type=%s", payload.get("type"))
    if payload:
        _enqueue(process_resend_event, payload)
    return Response(RECEIVED, status=status.HTTP_200_OK)


@api_view(["POST"])
@authentication_classes([])
@permission_classes([AllowAny])
def shopify_order_webhook(request):
    secret = getattr(settings, "SHOPIFY_WEBHOOK_SECRET", "")
    if secret:
        raw = request.body
        if not verify_shopify_hmac(raw, request.headers.get("X-Shopify-Hmac-Sha256", ""), secret):
            log.warning("shopify webhook rejected: bad hmac")
            return Response({"detail": "Invalid signature."}, status=status.HTTP_401_UNAUTHORIZED)

    payload = _payload(request)
    log.info("shopify order webhook order=%s", payload.get("id"))
    if payload:
        _enqueue(process_shopify_order, payload)
    return Response(RECEIVED, status=status.HTTP_200_OK)
