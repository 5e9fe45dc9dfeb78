"""Webhook endpoints for Instagram messages and payment gateways."""

from __future__ import annotations

from django.conf import settings
from django.http import HttpRequest, HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods, require_POST

from apps.common.utils import correlation_id_for, error_json, minimal_ok
from apps.webhooks.gateway import WebhookGateway
from apps.webhooks.models import WebhookProvider

gateway = WebhookGateway()


def _respond(provider: str, request: HttpRequest) -> JsonResponse:
    result = gateway.ingest(
        provider,
        request.body,
        request.headers,
        correlation_id=correlation_id_for(request),
    )
    if not result.ok:
        return error_json(result.body.get("error", "error"), result.status_code)
    extra = {key: value for key, value in result.body.items() if key != "ok"}
    return minimal_ok(**extra)


def _verify_subscription(request: HttpRequest) -> HttpResponse:
    mode = request.GET.get("hub.mode")
    token = request.GET.get("hub.verify_token")
    challenge = request.GET.get("hub.challenge", "")
    expected = settings.INSTAGRAM_VERIFY_TOKEN
    if mode == "subscribe" and expected and token == expected:
        return HttpResponse(challenge, content_type="text/plain")
    return HttpResponse("forbidden", status=403, content_type="text/plain")


@csrf_exempt
@require_http_methods(["GET", "POST"])
def instagram_webhook(request: HttpRequest) -> HttpResponse:
    if request.method == "GET":
        return _verify_subscription(request)
    return _respond(WebhookProvider.INSTAGRAM, request)


@csrf_exempt
@require_POST
def razorpay_webhook(request: HttpRequest) -> JsonResponse:
    return _respond(WebhookProvider.RAZORPAY, request)


@csrf_exempt
@require_POST
def paypal_webhook(request: HttpRequest) -> JsonResponse:
    return _respond(WebhookProvider.PAYPAL, request)
