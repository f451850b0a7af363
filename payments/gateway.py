"""
Payment gateway interface and its Stripe implementation.

Services only see ``PaymentGateway``; the concrete class is chosen by the
PAYMENT_GATEWAY_CLASS setting and built once by ``get_gateway()``.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import stripe
from django.conf import settings
from django.utils.module_loading import import_string

from core.exceptions import UpstreamError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    status: str
    raw: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class GatewayRefund:
    id: str
    amount_minor_units: int
    currency: str


@dataclass(frozen=True)
class GatewayEvent:
    id: str
    type: str
    object: dict


class PaymentGateway(ABC):

    @abstractmethod
    def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        """Fetch the authoritative state of a payment intent."""

    @abstractmethod
    def refund(self, intent_id: str, amount_minor_units: Optional[int] = None, *,
               idempotency_key: Optional[str] = None,
               metadata: Optional[dict] = None) -> GatewayRefund:
        """Refund all of an intent, or ``amount_minor_units`` of it."""

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: str) -> GatewayEvent:
        """Verify a webhook delivery and return the event it carries."""


class StripeGateway(PaymentGateway):
    """PaymentGateway backed by the Stripe API."""

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

    def retrieve_intent(self, intent_id):
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Stripe retrieve failed for {intent_id}: {e}")
            raise UpstreamError(f"Payment gateway error: {e.user_message or 'retrieve failed'}") from e
        return PaymentIntent(id=intent.id, status=intent.status, raw=intent.to_dict())

    def refund(self, intent_id, amount_minor_units=None, *, idempotency_key=None, metadata=None):
        params = {
            'payment_intent': intent_id,
            'reason': 'requested_by_customer',
            'metadata': metadata or {},
        }
        if amount_minor_units is not None:
            params['amount'] = amount_minor_units
        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                idempotency_key=idempotency_key,
                **params
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe refund failed for {intent_id}: {e}")
            raise UpstreamError(f"Payment gateway error: {e.user_message or 'refund failed'}") from e
        return GatewayRefund(id=refund.id, amount_minor_units=refund.amount, currency=refund.currency)

    def parse_webhook(self, payload, signature):
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise ValidationError("Invalid webhook payload or signature") from e
        return GatewayEvent(id=event.id, type=event.type, object=event.data.object.to_dict())


_gateway = None
_gateway_lock = threading.Lock()


def get_gateway() -> PaymentGateway:
    """Return the process-wide gateway, building it on first use."""
    global _gateway
    if _gateway is None:
        with _gateway_lock:
            if _gateway is None:
                gateway_class = import_string(settings.PAYMENT_GATEWAY_CLASS)
                _gateway = gateway_class()
    return _gateway


def reset_gateway() -> None:
    """Drop the cached gateway; the next ``get_gateway()`` builds a new one."""
    global _gateway
    with _gateway_lock:
        _gateway = None
