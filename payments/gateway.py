import itertools
import json
import logging
from typing import Dict, List, Optional

import stripe

from booking_schemas import GatewayEvent
from errors import GatewayVerificationError, PaymentGatewayError, TransientError

logger = logging.getLogger(__name__)

# Stripe only accepts these refund reasons; free text goes into metadata
STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


class GatewayResponse:
    def __init__(self, success: bool, gateway_id: str = None, client_secret: str = None,
                 status: str = None, raw: dict = None):
        self.success = success
        self.gateway_id = gateway_id
        self.client_secret = client_secret
        self.status = status
        self.raw = raw or {}


class StripeGateway:
    """
    Payment gateway adapter backed by Stripe PaymentIntents.
    Each create_intent() call is one checkout attempt with its own PaymentIntent id.
    Callers pass an idempotency key derived from stored state, so replaying a request whose
    local commit failed returns the original intent or refund instead of a second one.
    """

    def __init__(self, api_key: str):
        self.api_key = api_key

    def create_intent(self, amount_minor: int, currency: str, metadata: Dict[str, str],
                      description: str, idempotency_key: Optional[str] = None) -> GatewayResponse:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_minor,
                currency=currency,
                metadata=metadata,
                description=description,
                api_key=self.api_key,
                idempotency_key=idempotency_key,
            )
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise TransientError(f"Stripe unavailable: {exc}")
        except stripe.StripeError as exc:
            logger.error("Stripe payment intent creation failed: %s", exc)
            raise PaymentGatewayError("Failed to create payment intent")
        return GatewayResponse(success=True, gateway_id=intent.id, client_secret=intent.client_secret,
                               status=intent.status)

    def refund(self, gateway_id: str, amount_minor: int, reason: Optional[str] = None,
               idempotency_key: Optional[str] = None) -> GatewayResponse:
        params = {
            "payment_intent": gateway_id,
            "amount": amount_minor,
            "metadata": {"original_payment_intent": gateway_id, "reason": reason or ""},
            "api_key": self.api_key,
            "idempotency_key": idempotency_key,
        }
        if reason in STRIPE_REFUND_REASONS:
            params["reason"] = reason
        try:
            refund = stripe.Refund.create(**params)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise TransientError(f"Stripe unavailable: {exc}")
        except stripe.StripeError as exc:
            logger.error("Stripe refund failed for %s: %s", gateway_id, exc)
            raise PaymentGatewayError("Failed to process refund")
        return GatewayResponse(success=True, gateway_id=refund.id, status=refund.status)


class MockGateway:
    """
    Deterministic in-process gateway for the demo and tests.
    """

    def __init__(self, prefix: str = "pi_mock"):
        self.prefix = prefix
        self._counter = itertools.count(1)
        self.intents: Dict[str, dict] = {}
        self.refunds: List[dict] = []
        self.fail_next_with: Optional[Exception] = None
        self._replies: Dict[str, GatewayResponse] = {}

    def _maybe_fail(self):
        if self.fail_next_with is not None:
            exc, self.fail_next_with = self.fail_next_with, None
            raise exc

    def create_intent(self, amount_minor: int, currency: str, metadata: Dict[str, str],
                      description: str, idempotency_key: Optional[str] = None) -> GatewayResponse:
        self._maybe_fail()
        if idempotency_key in self._replies:
            return self._replies[idempotency_key]
        gateway_id = f"{self.prefix}_{next(self._counter)}"
        self.intents[gateway_id] = {"amount": amount_minor, "currency": currency, "metadata": metadata}
        resp = GatewayResponse(success=True, gateway_id=gateway_id, client_secret=f"{gateway_id}_secret",
                               status="requires_payment_method")
        return self._remember(idempotency_key, resp)

    def refund(self, gateway_id: str, amount_minor: int, reason: Optional[str] = None,
               idempotency_key: Optional[str] = None) -> GatewayResponse:
        self._maybe_fail()
        if idempotency_key in self._replies:
            return self._replies[idempotency_key]
        refund_id = f"re_mock_{len(self.refunds) + 1}"
        self.refunds.append({"id": refund_id, "payment_intent": gateway_id, "amount": amount_minor,
                             "reason": reason})
        resp = GatewayResponse(success=True, gateway_id=refund_id, status="succeeded")
        return self._remember(idempotency_key, resp)

    def _remember(self, idempotency_key: Optional[str], resp: GatewayResponse) -> GatewayResponse:
        # same key, same answer, like Stripe's idempotent requests
        if idempotency_key is not None:
            self._replies[idempotency_key] = resp
        return resp


def verify_gateway_event(raw_payload, signature_header: Optional[str], secret: Optional[str]) -> dict:
    """
    Check a webhook delivery against the shared secret and return the decoded event.
    Independent of the HTTP framework: pass the raw body bytes exactly as received.
    """
    if not secret:
        raise GatewayVerificationError("Webhook secret not configured")
    if not signature_header:
        raise GatewayVerificationError("Missing Stripe-Signature header")
    if isinstance(raw_payload, bytes):
        try:
            raw_payload = raw_payload.decode("utf-8")
        except UnicodeDecodeError:
            raise GatewayVerificationError("Invalid payload encoding")
    try:
        stripe.WebhookSignature.verify_header(raw_payload, signature_header, secret,
                                              tolerance=stripe.Webhook.DEFAULT_TOLERANCE)
    except stripe.SignatureVerificationError as exc:
        raise GatewayVerificationError(f"Invalid Stripe signature: {exc}")
    try:
        return json.loads(raw_payload)
    except ValueError:
        raise GatewayVerificationError("Invalid payload")


def to_gateway_event(event: dict) -> Optional[GatewayEvent]:
    """Reduce a verified Stripe event to a GatewayEvent, or None for event types we ignore."""
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    gateway_id = obj.get("id")
    if not gateway_id:
        return None
    if event_type == "payment_intent.succeeded":
        return GatewayEvent(type="succeeded", gateway_id=gateway_id, event_id=event.get("id"))
    if event_type == "payment_intent.payment_failed":
        error = obj.get("last_payment_error") or {}
        return GatewayEvent(type="failed", gateway_id=gateway_id, event_id=event.get("id"),
                            failure_reason=error.get("message"))
    return None
