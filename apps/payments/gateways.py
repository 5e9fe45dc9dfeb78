"""Payment gateway adapters (Razorpay for domestic, PayPal for international)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

import requests
from django.conf import settings
from django.utils import timezone

from apps.payments.models import PaymentGateway
from apps.webhooks.event_ids import payload_hash
from apps.webhooks.signatures import verify_razorpay_signature

logger = logging.getLogger(__name__)

PAYMENT_TIMEOUT_SECONDS = int(getattr(settings, "PAYMENT_TIMEOUT_SECONDS", 10))
PAYMENT_LINK_EXPIRY_MINUTES = int(getattr(settings, "PAYMENT_LINK_EXPIRY_MINUTES", 1440))

REGION_GATEWAYS = {
    "IN": PaymentGateway.RAZORPAY,
    "US": PaymentGateway.PAYPAL,
    "UK": PaymentGateway.PAYPAL,
    "GB": PaymentGateway.PAYPAL,
    "EU": PaymentGateway.PAYPAL,
}
DEFAULT_GATEWAY = PaymentGateway.RAZORPAY

PAYPAL_VERIFY_HEADERS = {
    "auth_algo": "PayPal-Auth-Algo",
    "cert_url": "PayPal-Cert-Url",
    "transmission_id": "PayPal-Transmission-Id",
    "transmission_sig": "PayPal-Transmission-Sig",
    "transmission_time": "PayPal-Transmission-Time",
}


class PaymentGatewayError(RuntimeError):
    """Raised when a gateway call fails; callers may retry."""


@dataclass(slots=True)
class PayerInfo:
    name: str = ""
    phone: str = ""
    email: str = ""


@dataclass(slots=True)
class PaymentLinkResult:
    url: str
    gateway_order_id: str
    expires_at: datetime | None = None


@dataclass(slots=True)
class CapturedPayment:
    gateway_order_id: str
    gateway_payment_id: str
    amount_minor: int
    currency: str


@dataclass(slots=True)
class FailedPayment:
    gateway_order_id: str
    gateway_payment_id: str = ""
    reason: str = ""


def select_gateway(region: str | None) -> str:
    return REGION_GATEWAYS.get((region or "").strip().upper(), DEFAULT_GATEWAY)


def _header(headers: Mapping[str, str] | None, name: str) -> str:
    if not headers:
        return ""
    return headers.get(name) or headers.get(name.lower()) or ""


def _post(url: str, *, gateway: str, **kwargs) -> dict:
    try:
        response = requests.post(url, timeout=PAYMENT_TIMEOUT_SECONDS, **kwargs)
    except requests.RequestException as exc:
        raise PaymentGatewayError(f"{gateway}_unreachable") from exc
    if response.status_code >= 400:
        logger.error(
            "payments.gateway_error",
            extra={"gateway": gateway, "status_code": response.status_code},
        )
        raise PaymentGatewayError(f"{gateway}_http_{response.status_code}")
    try:
        return response.json()
    except ValueError as exc:
        raise PaymentGatewayError(f"{gateway}_invalid_response") from exc


class RazorpayAdapter:
    """Razorpay payment links API."""

    gateway = PaymentGateway.RAZORPAY
    SUCCESS_EVENTS = {"payment.captured", "payment_link.paid"}
    FAILURE_EVENTS = {"payment.failed"}

    def _credentials(self) -> tuple[str, str]:
        key_id = settings.RAZORPAY_KEY_ID
        key_secret = settings.RAZORPAY_KEY_SECRET
        if not key_id or not key_secret:
            raise PaymentGatewayError("razorpay_not_configured")
        return key_id, key_secret

    def create_link(
        self,
        *,
        amount_minor: int,
        currency: str,
        reference_id: str,
        payer: PayerInfo,
        description: str,
    ) -> PaymentLinkResult:
        expire_by = timezone.now() + timedelta(minutes=PAYMENT_LINK_EXPIRY_MINUTES)
        body: dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency,
            "reference_id": reference_id,
            "description": description,
            "expire_by": int(expire_by.timestamp()),
        }
        customer = {key: value for key, value in (("name", payer.name), ("contact", payer.phone), ("email", payer.email)) if value}
        if customer:
            body["customer"] = customer
        data = _post(
            f"{settings.RAZORPAY_API_BASE.rstrip('/')}/v1/payment_links",
            gateway=self.gateway,
            json=body,
            auth=self._credentials(),
        )
        link_id = data.get("id")
        url = data.get("short_url")
        if not link_id or not url:
            raise PaymentGatewayError("razorpay_missing_link")
        expires_at = (
            datetime.fromtimestamp(int(data["expire_by"]), tz=dt_timezone.utc)
            if data.get("expire_by")
            else expire_by
        )
        return PaymentLinkResult(url=url, gateway_order_id=link_id, expires_at=expires_at)

    def verify_webhook(self, signature: str | None, raw_body: bytes, headers: Mapping[str, str] | None = None) -> bool:
        return verify_razorpay_signature(raw_body, signature)

    def extract_event_id(self, payload: Any, headers: Mapping[str, str] | None = None) -> str:
        header_id = _header(headers, "X-Razorpay-Event-Id")
        if header_id:
            return header_id
        body = payload if isinstance(payload, dict) else {}
        entities = body.get("payload") or {}
        entity = (entities.get("payment") or {}).get("entity") or (entities.get("payment_link") or {}).get("entity") or {}
        entity_id = entity.get("id") or body.get("id")
        if entity_id:
            return f"razorpay-{entity_id}"
        return f"razorpay-fallback-{payload_hash(payload)}"

    def parse_success_payload(self, payload: Any) -> CapturedPayment | None:
        if not isinstance(payload, dict) or payload.get("event") not in self.SUCCESS_EVENTS:
            return None
        entities = payload.get("payload") or {}
        payment = (entities.get("payment") or {}).get("entity") or {}
        plink = (entities.get("payment_link") or {}).get("entity") or {}
        order = (entities.get("order") or {}).get("entity") or {}
        amount = payment.get("amount") or order.get("amount_paid") or plink.get("amount_paid") or plink.get("amount")
        currency = payment.get("currency") or order.get("currency") or plink.get("currency")
        order_id = plink.get("id") or order.get("id") or payment.get("order_id")
        if not order_id or amount is None or not currency:
            return None
        return CapturedPayment(
            gateway_order_id=str(order_id),
            gateway_payment_id=str(payment.get("id") or ""),
            amount_minor=int(amount),
            currency=str(currency).upper(),
        )

    def parse_failure_payload(self, payload: Any) -> FailedPayment | None:
        if not isinstance(payload, dict) or payload.get("event") not in self.FAILURE_EVENTS:
            return None
        entities = payload.get("payload") or {}
        payment = (entities.get("payment") or {}).get("entity") or {}
        plink = (entities.get("payment_link") or {}).get("entity") or {}
        order = (entities.get("order") or {}).get("entity") or {}
        order_id = plink.get("id") or order.get("id") or payment.get("order_id")
        if not order_id:
            return None
        return FailedPayment(
            gateway_order_id=str(order_id),
            gateway_payment_id=str(payment.get("id") or ""),
            reason=str(payment.get("error_code") or payment.get("error_reason") or ""),
        )


class PayPalAdapter:
    """PayPal Orders v2 API."""

    gateway = PaymentGateway.PAYPAL
    SUCCESS_EVENT = "PAYMENT.CAPTURE.COMPLETED"
    FAILURE_EVENTS = {"PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"}

    @property
    def base_url(self) -> str:
        if settings.PAYPAL_MODE == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    def _access_token(self) -> str:
        client_id = settings.PAYPAL_CLIENT_ID
        client_secret = settings.PAYPAL_CLIENT_SECRET
        if not client_id or not client_secret:
            raise PaymentGatewayError("paypal_not_configured")
        data = _post(
            f"{self.base_url}/v1/oauth2/token",
            gateway=self.gateway,
            data={"grant_type": "client_credentials"},
            auth=(client_id, client_secret),
        )
        token = data.get("access_token")
        if not token:
            raise PaymentGatewayError("paypal_missing_token")
        return token

    def create_link(
        self,
        *,
        amount_minor: int,
        currency: str,
        reference_id: str,
        payer: PayerInfo,
        description: str,
    ) -> PaymentLinkResult:
        token = self._access_token()
        value = (Decimal(amount_minor) / Decimal(100)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        data = _post(
            f"{self.base_url}/v2/checkout/orders",
            gateway=self.gateway,
            json={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "reference_id": reference_id,
                        "description": description,
                        "amount": {"currency_code": currency, "value": str(value)},
                    }
                ],
            },
            headers={"Authorization": f"Bearer {token}"},
        )
        order_id = data.get("id")
        if not order_id:
            raise PaymentGatewayError("paypal_missing_order")
        approve = next(
            (link.get("href") for link in data.get("links") or [] if link.get("rel") == "approve"),
            None,
        )
        return PaymentLinkResult(
            url=approve or f"{self.base_url}/checkoutnow?token={order_id}",
            gateway_order_id=order_id,
        )

    def verify_webhook(self, signature: str | None, raw_body: bytes, headers: Mapping[str, str] | None = None) -> bool:
        """Ask PayPal to verify the transmission headers for this body."""
        fields = {key: _header(headers, name) for key, name in PAYPAL_VERIFY_HEADERS.items()}
        if not all(fields.values()):
            return False
        webhook_id = settings.PAYPAL_WEBHOOK_ID
        if not webhook_id:
            logger.error("webhook.signature_unconfigured", extra={"provider": "paypal"})
            return False
        try:
            event = json.loads(raw_body.decode("utf-8"))
            token = self._access_token()
            data = _post(
                f"{self.base_url}/v1/notifications/verify-webhook-signature",
                gateway=self.gateway,
                json={**fields, "webhook_id": webhook_id, "webhook_event": event},
                headers={"Authorization": f"Bearer {token}"},
            )
        except (ValueError, PaymentGatewayError) as exc:
            logger.warning("webhook.paypal_verification_error", extra={"error": str(exc)})
            return False
        return data.get("verification_status") == "SUCCESS"

    def extract_event_id(self, payload: Any, headers: Mapping[str, str] | None = None) -> str:
        header_id = _header(headers, "PayPal-Transmission-Id")
        if header_id:
            return header_id
        if isinstance(payload, dict) and payload.get("id"):
            return f"paypal-{payload['id']}"
        return f"paypal-fallback-{payload_hash(payload)}"

    def parse_success_payload(self, payload: Any) -> CapturedPayment | None:
        if not isinstance(payload, dict) or payload.get("event_type") != self.SUCCESS_EVENT:
            return None
        resource = payload.get("resource") or {}
        amount = resource.get("amount") or {}
        capture_id = resource.get("id")
        value = amount.get("value")
        currency = amount.get("currency_code")
        if not capture_id or not value or not currency:
            return None
        order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
        minor = int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return CapturedPayment(
            gateway_order_id=str(order_id or capture_id),
            gateway_payment_id=str(capture_id),
            amount_minor=minor,
            currency=str(currency).upper(),
        )

    def parse_failure_payload(self, payload: Any) -> FailedPayment | None:
        if not isinstance(payload, dict) or payload.get("event_type") not in self.FAILURE_EVENTS:
            return None
        resource = payload.get("resource") or {}
        capture_id = resource.get("id")
        order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
        if not order_id and not capture_id:
            return None
        reason = (resource.get("status_details") or {}).get("reason") or resource.get("status") or ""
        return FailedPayment(
            gateway_order_id=str(order_id or capture_id),
            gateway_payment_id=str(capture_id or ""),
            reason=str(reason),
        )


_ADAPTERS = {
    PaymentGateway.RAZORPAY: RazorpayAdapter(),
    PaymentGateway.PAYPAL: PayPalAdapter(),
}


def get_adapter(gateway: str):
    try:
        return _ADAPTERS[gateway]
    except KeyError as exc:
        raise PaymentGatewayError(f"unsupported_gateway:{gateway}") from exc
