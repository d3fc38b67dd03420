import logging

from django.conf import settings
from django.db import DatabaseError
from django.http import HttpResponseRedirect, JsonResponse
from django.views.decorators.http import require_GET

from . import shortener

log = logging.getLogger(__name__)

# ---- Config (override in settings.py if you like) ----
FALLBACK_URL = getattr(settings, "SHORT_URL_FALLBACK_URL", "/")
COOKIE_NAME = getattr(settings, "SHORT_URL_COOKIE_NAME", "sms_click")
COOKIE_MAX_AGE = getattr(settings, "SHORT_URL_COOKIE_MAX_AGE", 30 * 24 * 60 * 60)


def _client_ip(request):
    xff = request.META.get("HTTP_X_FORWARDED_FOR")
    return xff.split(",")[0].strip() if xff else request.META.get("REMOTE_ADDR")


@require_GET
def short_redirect(request, code: str):
    try:
        result = shortener.record_click(
            code,
            ip=_client_ip(request),
            user_agent=request.META.get("HTTP_USER_AGENT") or "",
            referer=request.META.get("HTTP_REFERER") or "",
        )
    except DatabaseError:
        log.exception("click recording failed code=%s", code)
        return HttpResponseRedirect(FALLBACK_URL)

    if result is None:
        log.info("short url miss code=%s", code)
        return HttpResponseRedirect(FALLBACK_URL)

    response = HttpResponseRedirect(result.original_url)
    # Checkout copies this into the order's note attributes for attribution.
    response.set_cookie(COOKIE_NAME, code, max_age=COOKIE_MAX_AGE, httponly=True, samesite="Lax")
    return response


@require_GET
def short_preview(request, code: str):
    short = shortener.find_usable(code)
    if short is None:
        return JsonResponse({"detail": "Not found."}, status=404)
    return JsonResponse({
        "code": short.code,
        "original_url": short.original_url,
        "short_url": shortener.short_link(short.code),
        "source_type": short.source_type,
        "clicks": short.clicks,
        "unique_clicks": short.unique_clicks,
        "created_at": short.created_at.isoformat(),
        "expires_at": short.expires_at.isoformat() if short.expires_at else None,
    })
